"""HTTP front for the status board.

``GET /`` is served from the view cache. A conditional request whose
``If-None-Match`` matches the current ETag is answered with 304 before the
cache or the store is touched; everything else goes through
``ViewCache.serve``, which only renders on a miss.
"""

from __future__ import annotations

from typing import Any, Callable

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse, Response

from host_checks.config import LoadedConfig
from host_checks.poller import ProbeScheduler, ResolvedAddresses
from host_checks.probes import ProbeClient, icmp_worker_count
from host_checks.store import ReadStore, ResultStore
from host_checks.targets import build_targets
from status_page.assets import IMMUTABLE_CACHE_CONTROL, StaticAssets, load_assets
from status_page.render import PageRenderer, retarget_refresh
from status_page.ui_state import UiState, parse_ui_cookie
from status_page.view_cache import ViewCache


logger = structlog.get_logger(__name__)

HTML_MEDIA_TYPE = "text/html; charset=utf-8"
NO_CACHE = "no-cache"


def etag_matches(if_none_match: str | None, etag: str | None) -> bool:
    """Weak comparison against an ``If-None-Match`` list (``W/`` prefixes ignored)."""
    if not if_none_match or not etag:
        return False
    for candidate in if_none_match.split(","):
        candidate = candidate.strip()
        if candidate.startswith("W/"):
            candidate = candidate[2:]
        if candidate == "*" or candidate == etag:
            return True
    return False


def _immutable(body: bytes, media_type: str) -> Response:
    return Response(content=body, media_type=media_type, headers={"Cache-Control": IMMUTABLE_CACHE_CONTROL})


def create_app(
    loaded: LoadedConfig,
    *,
    probe_client: ProbeClient | None = None,
    start_poller: bool = True,
    on_fatal: Callable[[BaseException], None] | None = None,
) -> FastAPI:
    """Build the app. Stores, cache and poller are opened on startup and stored on ``app.state``."""
    config = loaded.config
    app = FastAPI(title="pi-glass", version="0.1.0", docs_url=None, redoc_url=None, openapi_url=None)
    app.state.config = config
    app.state.assets = assets = load_assets()

    if config.compression == "gzip":
        app.add_middleware(GZipMiddleware, minimum_size=500)
    elif config.compression != "none":
        logger.warning("Unknown compression setting, serving uncompressed", compression=config.compression)

    @app.middleware("http")
    async def _cors_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers["Access-Control-Allow-Origin"] = "*"
        response.headers["Access-Control-Allow-Private-Network"] = "true"
        return response

    @app.on_event("startup")
    def _startup() -> None:
        targets = build_targets(config)
        # ICMP capability is checked before anything is opened.
        client = probe_client or ProbeClient(config.ping_timeout_secs, icmp_workers=icmp_worker_count(targets))
        app.state.probe_client = client if probe_client is None else None
        # The writer creates the schema before the read-only handle opens.
        result_store = ResultStore(config.db_path, wal_mode=config.wal_mode)
        read_store = ReadStore(config.db_path)
        addresses = ResolvedAddresses()

        renderer = PageRenderer(
            name=config.name,
            hosts=config.hosts,
            services=config.services,
            assets=assets,
            default_config_yaml=loaded.default_yaml,
        )

        def _render(ui: UiState, refresh_secs: int) -> bytes:
            return renderer.render(read_store, ui, addresses.snapshot(), refresh_secs)

        view_cache = ViewCache(_render, poll_interval_secs=config.poll_interval_secs, retarget=retarget_refresh)
        view_cache.prime()

        poller = ProbeScheduler(
            targets=targets,
            client=client,
            store=result_store,
            addresses=addresses,
            interval_seconds=config.poll_interval_secs,
            retention_days=config.retention_days,
            on_cycle_committed=view_cache.advance_cycle,
            on_fatal=on_fatal,
        )

        app.state.result_store = result_store
        app.state.read_store = read_store
        app.state.renderer = renderer
        app.state.view_cache = view_cache
        app.state.poller = poller

        if start_poller:
            poller.start()
        logger.info(
            "Status board ready",
            name=config.name,
            hosts=len(config.hosts),
            services=len(config.services),
            db_path=config.db_path,
            stored_rows=read_store.count_rows(),
        )

    @app.on_event("shutdown")
    def _shutdown() -> None:
        poller: ProbeScheduler | None = getattr(app.state, "poller", None)
        if poller is not None:
            poller.stop()
        for name in ("read_store", "result_store"):
            store = getattr(app.state, name, None)
            if store is not None:
                store.close()
        client: ProbeClient | None = getattr(app.state, "probe_client", None)
        if client is not None:
            client.close()
        logger.info("Status board stopped")

    # Sync endpoint: renders on a miss run on the threadpool, never on the event loop.
    @app.get("/")
    def index(request: Request) -> Response:
        view_cache: ViewCache = app.state.view_cache
        ui = parse_ui_cookie(request.headers.get("cookie"))
        selector = ui.selector

        current = view_cache.etag_for(selector)
        if etag_matches(request.headers.get("if-none-match"), current):
            return Response(status_code=304, headers={"ETag": current, "Cache-Control": NO_CACHE})

        try:
            served = view_cache.serve(ui)
        except Exception as exc:
            logger.exception("Render failed", selector=selector, error=f"{type(exc).__name__}: {exc}")
            return Response(content=b"Internal Server Error", status_code=500, media_type="text/plain")

        return Response(
            content=served.body,
            media_type=HTML_MEDIA_TYPE,
            headers={"ETag": served.etag, "Cache-Control": NO_CACHE},
        )

    @app.get("/static/{name}")
    def static_asset(name: str) -> Response:
        a: StaticAssets = app.state.assets
        if name == f"{a.css_hash}.css":
            return _immutable(a.css, "text/css; charset=utf-8")
        if name == f"{a.js_hash}.js":
            return _immutable(a.js, "application/javascript; charset=utf-8")
        return Response(status_code=404)

    @app.get("/favicon.svg")
    def favicon() -> Response:
        return _immutable(app.state.assets.favicon_svg, "image/svg+xml")

    @app.get("/site.webmanifest")
    def manifest() -> Response:
        return _immutable(app.state.assets.manifest, "application/manifest+json")

    @app.get("/health")
    def health() -> JSONResponse:
        view_cache: ViewCache | None = getattr(app.state, "view_cache", None)
        poller: ProbeScheduler | None = getattr(app.state, "poller", None)
        body: dict[str, Any] = {
            "ok": view_cache is not None and (poller is None or poller.failure is None),
            "generation": view_cache.generation if view_cache is not None else None,
            "effective_refresh_secs": view_cache.effective_refresh_secs if view_cache is not None else None,
        }
        return JSONResponse(body, status_code=200 if body["ok"] else 503, headers={"Cache-Control": NO_CACHE})

    return app
