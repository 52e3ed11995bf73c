#!/usr/bin/env python3
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

import anyio
from fastapi import APIRouter, Body, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import BaseModel
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from api.addon import (
    CATALOG_SEPARATOR,
    ID_SEPARATOR,
    base_url,
    build_manifest,
    decode_config,
    parse_extra,
    split_id,
    stream_entries,
    video_from_ytdlp_info,
    video_to_meta,
)
from config.settings import APP_HOST, APP_NAME, APP_PORT, LOG_DIR, LOG_LEVEL, TRUST_PROXY, StreamSettings
from plugins import PluginError, PluginManager
from streaming.errors import StreamError
from streaming.events import safe_json_dumps
from streaming.proxy import ProxyController
from streaming.runtime import get_runtime_info

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"

_INDEX_HTML = """<html>
<head><title>Streamgate - Universal Video Gateway</title></head>
<body>
    <h1>Streamgate</h1>
    <p>Universal addon gateway</p>
    <p><a href="/api/plugins">Available Plugins</a></p>
    <p><a href="/manifest.json">Base Manifest</a></p>
</body>
</html>
"""


def _setup_logging(log_dir=None, level=LOG_LEVEL):
    root = logging.getLogger("")
    root.setLevel(level)
    formatter = logging.Formatter(_LOG_FORMAT)
    has_console = any(
        type(handler) is logging.StreamHandler for handler in root.handlers
    )
    if not has_console:
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        root.addHandler(console)
    if not log_dir:
        return
    os.makedirs(log_dir, exist_ok=True)
    log_path = os.path.join(log_dir, "streamgate.log")
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler):
            if os.path.abspath(getattr(handler, "baseFilename", "")) == os.path.abspath(log_path):
                return
    file_handler = logging.FileHandler(log_path)
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)


class SafeJSONResponse(JSONResponse):
    def render(self, content):
        return safe_json_dumps(content, allow_nan=False, separators=(",", ":")).encode("utf-8")


class PluginConfigPayload(BaseModel):
    config: dict = {}


router = APIRouter()


def _plugins(request: Request) -> PluginManager:
    return request.app.state.plugins


def _controller(request: Request) -> ProxyController:
    return request.app.state.controller


def _plugin_or_404(request: Request, name: str):
    plugin = _plugins(request).get_plugin(name)
    if plugin is None:
        raise HTTPException(status_code=404, detail="Plugin not found")
    return plugin


@router.get("/", response_class=HTMLResponse)
async def index():
    return _INDEX_HTML


@router.get("/health")
async def health(request: Request):
    controller = _controller(request)
    version = request.app.state.ytdlp_version
    return {
        "status": "ok",
        "plugins": [plugin.name for plugin in _plugins(request).all_plugins()],
        "ytdlp": {"available": version is not None, "version": version},
        **controller.snapshot(),
    }


@router.get("/api/version")
async def api_version():
    return get_runtime_info()


@router.get("/api/plugins")
async def api_plugins(request: Request):
    return {
        "plugins": [
            {
                "name": plugin.name,
                "displayName": plugin.display_name,
                "configSchema": plugin.config_schema(),
            }
            for plugin in _plugins(request).all_plugins()
        ]
    }


@router.post("/api/plugins/{plugin_name}/validate")
async def api_validate_plugin_config(
    request: Request,
    plugin_name: str,
    payload: PluginConfigPayload = Body(default=PluginConfigPayload()),
):
    try:
        errors = _plugins(request).validate_plugin_config(plugin_name, payload.config)
    except PluginError as exc:
        raise HTTPException(status_code=exc.status_code or 400, detail=str(exc)) from exc
    return {"valid": not errors, "errors": errors}


@router.get("/manifest.json")
async def manifest(request: Request, config: Optional[str] = Query(None)):
    try:
        return build_manifest(base_url(request), decode_config(config), _plugins(request))
    except Exception:
        logger.exception("Manifest generation failed")
        return JSONResponse({"error": "Manifest generation failed"}, status_code=500)


async def _catalog(request: Request, catalog_id: str, extra: Optional[str], config: Optional[str]):
    plugin_name, _, catalog_type = catalog_id.partition(CATALOG_SEPARATOR)
    plugin = _plugin_or_404(request, plugin_name)
    plugin_config = decode_config(config).get(plugin_name) or {}
    extras = parse_extra(extra)
    with_genre = catalog_type in ("channels", "categories")
    videos = []
    try:
        if catalog_type == "search":
            query = extras.get("search", "").strip()
            if query:
                videos = await anyio.to_thread.run_sync(plugin.search, query, plugin_config)
        elif with_genre:
            videos = await anyio.to_thread.run_sync(plugin.channel_feed, plugin_config)
    except Exception:
        logger.exception("Catalog request failed plugin=%s catalog=%s", plugin_name, catalog_type)
        videos = []
    return {
        "metas": [
            video_to_meta(f"{plugin_name}{ID_SEPARATOR}{video['id']}", video, with_genre=with_genre)
            for video in videos
        ]
    }


@router.get("/catalog/{content_type}/{catalog_id}.json")
async def catalog(request: Request, content_type: str, catalog_id: str, config: Optional[str] = Query(None)):
    return await _catalog(request, catalog_id, None, config)


@router.get("/catalog/{content_type}/{catalog_id}/{extra}.json")
async def catalog_with_extra(
    request: Request,
    content_type: str,
    catalog_id: str,
    extra: str,
    config: Optional[str] = Query(None),
):
    return await _catalog(request, catalog_id, extra, config)


@router.get("/meta/{content_type}/{meta_id}.json")
async def meta(request: Request, content_type: str, meta_id: str, config: Optional[str] = Query(None)):
    parts = split_id(meta_id)
    if parts is None:
        raise HTTPException(status_code=404, detail="Plugin not found")
    plugin_name, video_id = parts
    plugin = _plugin_or_404(request, plugin_name)
    plugin_config = decode_config(config).get(plugin_name) or {}

    try:
        if _plugins(request).is_plugin_configured(plugin, plugin_config):
            video = await anyio.to_thread.run_sync(plugin.video_meta, video_id, plugin_config)
        else:
            # No API credentials: ask the extractor instead.
            info = await _controller(request).extractor.metadata(plugin.video_url(video_id, plugin_config))
            video = video_from_ytdlp_info(info, video_id)
    except StreamError as exc:
        logger.error("Meta extraction failed id=%s: %s", meta_id, exc)
        return JSONResponse(exc.to_payload(), status_code=exc.status_code)
    except PluginError:
        logger.exception("Meta generation failed id=%s", meta_id)
        return JSONResponse({"error": "Meta generation failed"}, status_code=500)
    return {"meta": video_to_meta(meta_id, video)}


@router.get("/stream/{content_type}/{stream_id}.json")
async def stream(request: Request, content_type: str, stream_id: str, config: Optional[str] = Query(None)):
    parts = split_id(stream_id)
    if parts is None:
        raise HTTPException(status_code=404, detail="Plugin not found")
    plugin_name, video_id = parts
    _plugin_or_404(request, plugin_name)
    settings = request.app.state.settings
    return {
        "streams": stream_entries(
            base_url(request),
            plugin_name,
            video_id,
            config_param=config,
            fast_max_height=settings.fast_max_height,
        )
    }


@router.api_route("/proxy/{plugin_name}/{video_id}", methods=["GET", "HEAD"])
async def proxy(
    request: Request,
    plugin_name: str,
    video_id: str,
    quality: Optional[str] = Query(None),
    redirect: bool = Query(False),
    config: Optional[str] = Query(None),
):
    plugin = _plugin_or_404(request, plugin_name)
    plugin_config = decode_config(config).get(plugin_name) or {}
    source_ref = plugin.video_url(video_id, plugin_config)
    if not plugin.is_video_supported(source_ref):
        raise HTTPException(status_code=400, detail="Unsupported video id")
    return await _controller(request).handle(request, source_ref, quality, redirect=redirect)


def create_app(
    settings: Optional[StreamSettings] = None,
    *,
    plugin_manager: Optional[PluginManager] = None,
    controller: Optional[ProxyController] = None,
) -> FastAPI:
    settings = settings or StreamSettings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        _setup_logging(LOG_DIR)
        app.state.ytdlp_version = await app.state.controller.extractor.version()
        if app.state.ytdlp_version is None:
            logger.warning("yt-dlp is not available; stream requests will fail")
        else:
            logger.info("yt-dlp %s available", app.state.ytdlp_version)
        logger.info(
            "%s ready plugins=%s",
            APP_NAME,
            ", ".join(plugin.name for plugin in app.state.plugins.all_plugins()) or "-",
        )
        try:
            yield
        finally:
            await app.state.controller.aclose()

    app = FastAPI(
        title=APP_NAME,
        description="Streamgate API: addon catalog gateway and yt-dlp stream proxy.",
        default_response_class=SafeJSONResponse,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.plugins = plugin_manager if plugin_manager is not None else PluginManager()
    app.state.controller = controller if controller is not None else ProxyController(settings)
    app.state.ytdlp_version = None

    if TRUST_PROXY:
        app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)
    return app


app = create_app()


def main():
    import uvicorn

    _setup_logging(LOG_DIR)
    uvicorn.run("api.main:app", host=APP_HOST, port=APP_PORT, reload=False)


if __name__ == "__main__":
    main()
