from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import asyncio
import logging
import sys

import httpx

from config import settings, Settings
from api.routes import router
from infrastructure.database import init_db, close_db, AsyncSessionLocal
from infrastructure.chain_client import ChainRPCClient
from infrastructure.deposit_listener import DepositReconciler, TreasuryBalanceMonitor

logging.basicConfig(
    level=logging.INFO if not settings.debug else logging.DEBUG,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)

logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Payment-gated query proxy for AI seller services",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router, prefix="/api/v1", tags=["marketplace"])


def build_reconciler(chain: ChainRPCClient) -> DepositReconciler:
    monitor = TreasuryBalanceMonitor(
        chain,
        settings.treasury_address,
        token_contract_address=settings.token_contract_address
    )
    return DepositReconciler(
        chain,
        AsyncSessionLocal,
        settings.treasury_address,
        token_contract_address=settings.token_contract_address,
        token_decimals=settings.token_decimals,
        confirmations=settings.listener_confirmations,
        rescan_window=settings.listener_rescan_window,
        max_blocks_per_batch=settings.listener_max_blocks_per_batch,
        poll_interval_seconds=settings.listener_poll_interval_seconds,
        monitor=monitor,
        monitor_interval_seconds=settings.balance_monitor_interval_seconds
    )


def check_settings(config: Settings) -> None:
    """Fail fast on settings that would break every request or the listener."""
    if config.service_resolver not in ("keyword", "classifier"):
        raise RuntimeError(f"Unknown service_resolver: {config.service_resolver!r}")
    if config.service_resolver == "classifier" and not config.router_worker_url:
        raise RuntimeError("router_worker_url is required for the classifier resolver")
    if config.deposit_listener_enabled and not config.treasury_address:
        raise RuntimeError("treasury_address is required when the deposit listener is enabled")


@app.on_event("startup")
async def startup_event():
    logger.info("Starting application...")
    check_settings(settings)
    try:
        await init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}", exc_info=True)
        raise

    app.state.http_client = httpx.AsyncClient()
    app.state.reconciler = None
    app.state.reconciler_task = None

    if settings.deposit_listener_enabled:
        app.state.chain_client = ChainRPCClient(
            settings.chain_rpc_url,
            timeout_seconds=settings.rpc_timeout_seconds,
            max_retries=settings.rpc_max_retries
        )
        app.state.reconciler = build_reconciler(app.state.chain_client)
        app.state.reconciler_task = asyncio.create_task(app.state.reconciler.run())
        logger.info("Deposit listener started")


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Shutting down application...")
    if app.state.reconciler_task is not None:
        app.state.reconciler.stop()
        try:
            await asyncio.wait_for(app.state.reconciler_task, timeout=30)
        except asyncio.TimeoutError:
            logger.warning("Deposit listener did not stop in time, cancelling")
            app.state.reconciler_task.cancel()
        await app.state.chain_client.close()
    await app.state.http_client.aclose()
    await close_db()


@app.get("/")
async def root():
    return {
        "service": settings.app_name,
        "version": settings.app_version,
        "status": "running"
    }


@app.get("/health")
async def health():
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug
    )
