"""Create the marketplace tables (accounts, services, transactions, deposits, ...)."""

import asyncio
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from infrastructure.database import init_db, close_db

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger("init_database")


async def main() -> int:
    try:
        await init_db()
    except Exception as e:
        logger.error(f"Database initialization failed: {e}", exc_info=True)
        return 1
    finally:
        await close_db()
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
