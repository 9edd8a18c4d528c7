import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI

from .api.proxy import router as proxy_router
from .api.routes_health import router as health_router
from .core.config import settings
from .core.logging_setup import configure_logging

configure_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # one pooled client for every origin fetch; redirects go back to the caller
    app.state.http_client = httpx.AsyncClient(
        timeout=settings.ORIGIN_TIMEOUT,
        follow_redirects=False,
    )
    logger.info("[startup] %s ready", settings.APP_NAME)
    try:
        yield
    finally:
        await app.state.http_client.aclose()


app = FastAPI(
    title=settings.APP_NAME,
    description="Bandwidth-saving image compression proxy",
    lifespan=lifespan,
)

app.include_router(health_router)
app.include_router(proxy_router)


def run() -> None:
    """Serve the app. A bare `uvicorn bwproxy.main:app` needs `--no-date-header`."""
    import uvicorn
    uvicorn.run(
        "bwproxy.main:app",
        host=settings.HOST,
        port=settings.PORT,
        # uvicorn adds Date below the app, so only the server can drop it from redirects
        date_header=False,
    )


if __name__ == "__main__":
    run()
