"""
FastAPI application for transcript retrieval.

Provides HTTP API for fetching video captions through a proxy pool.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from caption.api import cache_routes, proxy_routes, routes
from caption.config import get_settings, load_proxies_config
from caption.errors import CaptionError, RateLimited
from caption.logging_config import setup_logging
from caption.services.retrieval import TranscriptRetriever, get_retriever, set_retriever

# Configure logging before anything else
settings = get_settings()
setup_logging(settings)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Builds the retriever once (settings, pool, limiter, cache, client) and
    closes its HTTP clients on shutdown.
    """
    logger.info("Starting Caption API")
    logger.info(f"Log level: {settings.log_level}")
    logger.info(f"Upstream: {settings.youtube_base_url}")

    retriever = TranscriptRetriever.from_settings(settings, load_proxies_config(settings))
    set_retriever(retriever)
    logger.info(
        f"Retriever ready: {len(retriever.pool)} endpoint(s), "
        f"cache ttl={settings.cache_ttl:.0f}s capacity={settings.cache_capacity}"
    )

    yield

    logger.info("Shutting down Caption API")
    await retriever.close()
    set_retriever(None)


app = FastAPI(
    title="Caption API",
    description="API for video transcript retrieval",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(routes.router)
app.include_router(cache_routes.router)
app.include_router(proxy_routes.router)


@app.exception_handler(CaptionError)
async def caption_error_handler(request: Request, exc: CaptionError) -> JSONResponse:
    """Map retrieval errors to the JSON error envelope."""
    headers = None
    if isinstance(exc, RateLimited):
        # Retry-After takes whole seconds
        headers = {"Retry-After": str(max(1, int(exc.retry_after + 0.999)))}

    if exc.status_code >= 500:
        logger.warning(f"{request.method} {request.url.path} -> {exc.status_code}: {exc}")

    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.to_dict()},
        headers=headers,
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed request bodies and parameters are answered with 400."""
    messages = [
        f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={
            "error": {
                "code": "invalid_request",
                "message": "; ".join(messages),
                "retryable": False,
            }
        },
    )


@app.get("/health")
async def health_check() -> dict:
    """
    Health check endpoint.

    Returns:
        Status plus counts of healthy proxy endpoints and cached transcripts
    """
    retriever = get_retriever()
    healthy = retriever.pool.healthy_count()
    return {
        "status": "ok" if healthy else "degraded",
        "proxies_healthy": healthy,
        "proxies_total": len(retriever.pool),
        "cached_transcripts": len(retriever.cache),
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "caption.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
