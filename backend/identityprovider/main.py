"""Identity provider gateway - FastAPI application."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from identityprovider.config import get_settings
from identityprovider.config_source import ConfigSource, JSONFileConfigSource, ProviderConfigWatcher
from identityprovider.limiter import limiter
from identityprovider.manager import get_provider_manager
from identityprovider.metrics import setup_metrics
from identityprovider.router import router as oauth_router

logger = logging.getLogger(__name__)


def create_app(source: ConfigSource | None = None) -> FastAPI:
    """Create the application.

    Args:
        source: Provider configuration source; defaults to IDP_PROVIDERS_FILE
    """
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan events."""
        config_source = source
        if config_source is None and settings.providers_file:
            config_source = JSONFileConfigSource(
                settings.providers_file, poll_interval=settings.config_poll_interval
            )

        watcher = None
        if config_source is not None:
            watcher = ProviderConfigWatcher(get_provider_manager(), config_source)
            report = await watcher.start()
            logger.info(
                f"Loaded identity providers: {report.built}, {len(report.errors)} errors"
            )
        else:
            logger.warning("No provider configuration source; no providers configured")
        yield
        if watcher is not None:
            await watcher.stop()

    app = FastAPI(
        title="Identity Provider Gateway",
        description="Pluggable external identity providers",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.include_router(oauth_router)
    setup_metrics(app)

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "healthy"}

    return app


app = create_app()
