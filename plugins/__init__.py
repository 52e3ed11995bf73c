from .base import PluginError, VideoItem, VideoPlugin, format_duration, sanitize_string
from .manager import PluginManager, discover_plugins

__all__ = [
    "PluginError",
    "PluginManager",
    "VideoItem",
    "VideoPlugin",
    "discover_plugins",
    "format_duration",
    "sanitize_string",
]
