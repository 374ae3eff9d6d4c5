"""Run the deposit listener as a standalone process (Ctrl+C to stop)."""

import asyncio
import logging
import signal
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from config import settings
from infrastructure.database import init_db, close_db
from infrastructure.chain_client import ChainRPCClient
from main import build_reconciler

logger = logging.getLogger("run_listener")


async def main():
    if not settings.treasury_address:
        logger.error("TREASURY_ADDRESS is not configured")
        sys.exit(1)

    await init_db()
    chain = ChainRPCClient(
        settings.chain_rpc_url,
        timeout_seconds=settings.rpc_timeout_seconds,
        max_retries=settings.rpc_max_retries
    )
    reconciler = build_reconciler(chain)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, reconciler.stop)
        except (NotImplementedError, RuntimeError):
            pass

    try:
        head = await chain.block_number()
        logger.info(f"Connected to {settings.chain_rpc_url}, current block {head}")
        await reconciler.run()
    finally:
        await chain.close()
        await close_db()


if __name__ == "__main__":
    asyncio.run(main())
