"""
FastAPI routes for the coin frame.
Thin callers of the refresh coordinator: every route reads the payload
through it and only shapes the response.
"""

import asyncio
import html
import json
import time
import traceback
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, Response
from starlette.middleware.gzip import GZipMiddleware

from ..config import Settings, get_settings
from ..errors import (
    CoinframeError,
    CorruptCacheEntry,
    RefreshTimedOut,
    RenderFailed,
    StoreUnavailable,
    UpstreamFetchFailed,
)
from ..models import SubjectSelector
from ..services.coingecko import CoinGeckoClient, CoinGeckoSource
from ..services.og_card import OgCardRenderer, decode_data_uri
from ..services.refresh import RefreshCoordinator
from ..services.store import MemoryStore, RedisStore
from ..utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["Coin Frame"])

FRAME_FALLBACK_IMAGE = (
    "https://wallet.coinbase.com/api/miniapps/social-swap/image"
    "?networkId=networks/ethereum-mainnet&nativeAssetSymbol=ETH"
)

# CoinGecko ids are lowercase slugs; empty is left to the "Missing id" check
COIN_ID_PATTERN = r"^([a-z0-9][a-z0-9._-]*)?$"

# error type -> (status code, error slug)
ERROR_STATUS: dict[type, tuple[int, str]] = {
    RefreshTimedOut: (503, "refresh_timed_out"),
    StoreUnavailable: (503, "store_unavailable"),
    UpstreamFetchFailed: (502, "upstream_fetch_failed"),
    RenderFailed: (500, "render_failed"),
    CorruptCacheEntry: (500, "corrupt_cache_entry"),
}


# ===================
# Dependencies
# ===================

def get_coordinator(request: Request) -> RefreshCoordinator:
    return request.app.state.coordinator


def get_source(request: Request) -> CoinGeckoSource:
    return request.app.state.source


def get_renderer(request: Request) -> OgCardRenderer:
    return request.app.state.renderer


# ===================
# Routes
# ===================

@router.get("/api/random-coin")
async def random_coin(coordinator: RefreshCoordinator = Depends(get_coordinator)):
    """Current subject coin, and whether it was served from cache."""
    payload, source = await coordinator.get_or_refresh_with_source()
    return {"source": source.value, "coin": payload.coin.model_dump()}


@router.get("/api/frame-image")
async def frame_image(coordinator: RefreshCoordinator = Depends(get_coordinator)):
    """Cached share card as a PNG."""
    payload = await coordinator.get_or_refresh()
    if not payload.og_image_base64:
        raise HTTPException(status_code=404, detail="No image available")

    return Response(
        content=decode_data_uri(payload.og_image_base64),
        media_type="image/png",
        headers={"Cache-Control": f"public, max-age={int(coordinator.cache_ttl)}"},
    )


@router.get("/api/og")
async def og_image(
    id: Optional[str] = Query(default=None, pattern=COIN_ID_PATTERN),
    days: int = Query(default=7, ge=1, le=365),
    source: CoinGeckoSource = Depends(get_source),
    renderer: OgCardRenderer = Depends(get_renderer),
):
    """On-demand card for any coin. Not cached."""
    if not id:
        raise HTTPException(status_code=400, detail="Missing id")

    detail, chart = await source.fetch(SubjectSelector(mode="exact", coin_id=id, chart_days=days))
    data_uri = await asyncio.to_thread(renderer.render, detail, chart)
    return Response(content=decode_data_uri(data_uri), media_type="image/png")


@router.get("/", response_class=HTMLResponse)
async def home(request: Request, coordinator: RefreshCoordinator = Depends(get_coordinator)):
    """Landing page carrying the fc:frame meta tag."""
    settings: Settings = request.app.state.settings
    try:
        payload = await coordinator.get_or_refresh()
        token_name = payload.coin.name
        image_url = f"{settings.public_base_url}/api/frame-image"
    except CoinframeError as e:
        logger.warning("Home page rendered without payload", error=str(e))
        token_name = "Token"
        image_url = None

    frame = {
        "version": "next",
        "imageUrl": image_url or FRAME_FALLBACK_IMAGE,
        "button": {
            "title": "Trade",
            "action": {
                "type": "view_token",
                "swap": True,
                "token": "eip155:1/slip44:60",
                "name": f"Swap {token_name}",
                "url": "https://wallet.coinbase.com/asset?networkId=networks/ethereum-mainnet&contractAddress=native",
                "splashImageUrl": "https://go.wallet.coinbase.com/static/wallets/coinbase-wallet.svg",
                "splashBackgroundColor": "#0a0b0d",
            },
        },
    }

    title = html.escape(f"Random Swap - {token_name}")
    if image_url:
        body = (
            f'<img src="{html.escape(image_url)}" alt="Price chart for {html.escape(token_name)}" '
            'width="1200" height="630" style="width:100%;height:auto;border-radius:16px">'
        )
    else:
        body = "<p>No coin selected.</p>"

    return HTMLResponse(
        "<!doctype html>"
        "<html><head>"
        f"<title>{title}</title>"
        '<meta name="description" content="Swap a random token each visit.">'
        f'<meta name="fc:frame" content="{html.escape(json.dumps(frame))}">'
        "</head><body>"
        f"<main><h1>{title}</h1>{body}</main>"
        "</body></html>"
    )


@router.get("/health", tags=["meta"])
async def health(request: Request):
    """Store health and refresh counters."""
    store = request.app.state.store
    coordinator: RefreshCoordinator = request.app.state.coordinator
    store_health = await store.health_check()
    return {
        "status": "healthy" if store_health.get("status") == "healthy" else "degraded",
        "store": store_health,
        "refresh": coordinator.stats(),
        "cache_key": coordinator.cache_key(),
    }


# ===================
# App factory
# ===================

async def _build_store(settings: Settings):
    if not settings.redis_url:
        logger.warning("REDIS_URL not set, using in-process store (no cross-instance locking)")
        return MemoryStore()

    store = RedisStore(
        settings.redis_url,
        pool_size=settings.redis_pool_size,
        socket_timeout=settings.redis_socket_timeout,
    )
    await store.connect()
    return store


def create_api_app(
    settings: Optional[Settings] = None,
    *,
    store=None,
    source=None,
    renderer=None,
    coordinator: Optional[RefreshCoordinator] = None,
) -> FastAPI:
    """Create the FastAPI application.

    Collaborators that are not passed in are built once at startup and
    closed at shutdown.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = []
        app_store = store
        if app_store is None:
            app_store = await _build_store(settings)
            owned.append(app_store)
        try:
            app_source = source
            if app_source is None:
                app_source = CoinGeckoSource(CoinGeckoClient.from_settings(settings))
                owned.append(app_source)
            app_renderer = renderer or OgCardRenderer()

            app.state.settings = settings
            app.state.store = app_store
            app.state.source = app_source
            app.state.renderer = app_renderer
            app.state.coordinator = coordinator or RefreshCoordinator.from_settings(
                settings, app_store, app_source, app_renderer
            )
            logger.info("API started", mode=settings.app_mode, cache_key=app.state.coordinator.cache_key())
            yield
        finally:
            for resource in owned:
                await resource.close()
            logger.info("API stopped")

    app = FastAPI(
        title="Coinframe API",
        description="Cached coin share card with stampede-safe refresh",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(GZipMiddleware, minimum_size=1000)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    # Timing middleware: logs duration and adds X-Response-Time header
    @app.middleware("http")
    async def timing_middleware(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time"] = f"{elapsed_ms:.1f}ms"
        logger.info(
            "request_completed",
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            duration_ms=round(elapsed_ms, 1),
        )
        return response

    @app.exception_handler(CoinframeError)
    async def coinframe_exception_handler(request: Request, exc: CoinframeError):
        status, error = next(
            (v for t, v in ERROR_STATUS.items() if isinstance(exc, t)),
            (500, "internal_server_error"),
        )
        headers = None
        if isinstance(exc, RefreshTimedOut):
            headers = {"Retry-After": str(max(1, int(settings.lock_ttl)))}
        logger.warning("request_failed", path=request.url.path, error_type=type(exc).__name__, error=str(exc))
        return JSONResponse(
            status_code=status,
            content={"error": error, "detail": str(exc)},
            headers=headers,
        )

    # Global exception handler returning a clean JSON body
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(
            "unhandled_exception",
            path=str(request.url.path),
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
            traceback=traceback.format_exc(),
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "detail": "An unexpected error occurred. Please try again.",
            },
        )

    app.include_router(router)
    return app
