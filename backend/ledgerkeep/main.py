"""LedgerKeep local control API - Main Application"""
import structlog
from contextlib import asynccontextmanager
from typing import Optional
from fastapi import FastAPI

from ledgerkeep.config import get_settings
from ledgerkeep.api.v1.router import api_router
from ledgerkeep.api.websocket import manager, websocket_router
from ledgerkeep.models.database import open_store, close_store
from ledgerkeep.services.feed import feed
from ledgerkeep.services.runtime import get_runtime, close_runtime
from ledgerkeep.services.sync import start_sync_scheduler, stop_sync_scheduler
from ledgerkeep.services.wallet import CredentialStore, PriceOracle, WalletBridge, registry

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.dev.ConsoleRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()
settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    logger.info("Starting LedgerKeep API", version=settings.app_version, variant=settings.app_variant)

    await open_store()
    await manager.start(feed)

    # Background sync only runs once the host has registered a wallet
    if registry.ready:
        runtime = await get_runtime()
        await start_sync_scheduler(
            runtime.wallet_sync.run_background_sync,
            interval_seconds=settings.sync_interval_seconds,
        )
    else:
        logger.warning("No wallet registered - sync scheduler not started")

    yield

    # Cleanup
    await stop_sync_scheduler()
    await manager.stop()
    await close_runtime()
    await close_store()
    logger.info("LedgerKeep API shutdown complete")


def create_app(
    wallet: Optional[WalletBridge] = None,
    credentials: Optional[CredentialStore] = None,
    prices: Optional[PriceOracle] = None,
) -> FastAPI:
    """Create FastAPI application, registering any collaborators supplied by the host"""
    if wallet is not None or credentials is not None or prices is not None:
        registry.register(wallet=wallet, credentials=credentials, prices=prices)

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Local control API for wallet backups and ledger reconciliation",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # Include routers
    app.include_router(api_router, prefix=settings.api_prefix)
    app.include_router(websocket_router)

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "version": settings.app_version,
            "variant": settings.app_variant,
            "wallet_registered": registry.ready,
        }

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "ledgerkeep.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
    )
