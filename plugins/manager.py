"""Plugin discovery and per-request plugin configuration checks."""

from __future__ import annotations

import importlib
import logging
import pkgutil
from typing import Any, Iterable
from urllib.parse import urlparse

from plugins.base import PluginError, VideoPlugin, is_blank

logger = logging.getLogger(__name__)

_NON_PLUGIN_MODULES = {"base", "manager"}


def discover_plugins(package_name: str = "plugins") -> list[VideoPlugin]:
    """Instantiate every ``VideoPlugin`` subclass defined in ``package_name``.

    A module that fails to import is logged and skipped.
    """
    package = importlib.import_module(package_name)
    found: list[VideoPlugin] = []
    for info in pkgutil.iter_modules(package.__path__):
        if info.name in _NON_PLUGIN_MODULES or info.name.startswith("_"):
            continue
        module_name = f"{package_name}.{info.name}"
        try:
            module = importlib.import_module(module_name)
        except Exception:
            logger.exception("Failed to load plugin module %s", module_name)
            continue
        for attr in vars(module).values():
            if not (isinstance(attr, type) and issubclass(attr, VideoPlugin)):
                continue
            if attr is VideoPlugin or attr.__module__ != module.__name__ or not attr.name:
                continue
            try:
                plugin = attr()
            except Exception:
                logger.exception("Failed to instantiate plugin %s", attr.__name__)
                continue
            found.append(plugin)
            logger.info("Plugin loaded: %s", plugin.name)
    return found


def _is_valid_url(value) -> bool:
    if not isinstance(value, str):
        return False
    parsed = urlparse(value)
    return bool(parsed.scheme and parsed.netloc)


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class PluginManager:
    def __init__(self, plugins: Iterable[VideoPlugin] | None = None) -> None:
        self._plugins: dict[str, VideoPlugin] = {}
        for plugin in discover_plugins() if plugins is None else plugins:
            self.register(plugin)

    def register(self, plugin: VideoPlugin) -> None:
        if not plugin.name:
            raise ValueError("plugin name is required")
        if plugin.name in self._plugins:
            logger.warning("Plugin %s registered twice; keeping the latest", plugin.name)
        self._plugins[plugin.name] = plugin

    def get_plugin(self, name: str) -> VideoPlugin | None:
        return self._plugins.get(name)

    def all_plugins(self) -> list[VideoPlugin]:
        return list(self._plugins.values())

    def active_plugins(self, config: dict[str, Any] | None = None) -> list[VideoPlugin]:
        config = config or {}
        active = []
        for plugin in self._plugins.values():
            plugin_config = config.get(plugin.name)
            if isinstance(plugin_config, dict) and self.is_plugin_configured(plugin, plugin_config):
                active.append(plugin)
        return active

    def is_plugin_configured(self, plugin: VideoPlugin, plugin_config: dict[str, Any]) -> bool:
        for key, field in plugin.config_schema().items():
            if field.get("required") and is_blank(plugin_config.get(key)):
                return False
        return True

    def validate_plugin_config(self, name: str, plugin_config: dict[str, Any]) -> list[str]:
        plugin = self.get_plugin(name)
        if plugin is None:
            raise PluginError(f"Plugin {name} not found", status_code=404)

        errors: list[str] = []
        for key, field in plugin.config_schema().items():
            value = plugin_config.get(key)
            if field.get("required") and is_blank(value):
                errors.append(f"{key} is required")
                continue
            if is_blank(value):
                continue

            field_type = field.get("type")
            if field_type == "string" and not isinstance(value, str):
                errors.append(f"{key} must be a string")
            elif field_type == "number" and not _is_number(value):
                errors.append(f"{key} must be a number")
            elif field_type == "array" and not isinstance(value, list):
                errors.append(f"{key} must be an array")

            if field_type == "number" and _is_number(value):
                if field.get("min") is not None and value < field["min"]:
                    errors.append(f"{key} must be at least {field['min']}")
                if field.get("max") is not None and value > field["max"]:
                    errors.append(f"{key} must be at most {field['max']}")

            if field_type == "array" and isinstance(value, list) and field.get("items"):
                for index, item in enumerate(value):
                    if field["items"] == "string" and not isinstance(item, str):
                        errors.append(f"{key}[{index}] must be a string")
                    elif field["items"] == "url" and not _is_valid_url(item):
                        errors.append(f"{key}[{index}] must be a valid URL")
        return errors
