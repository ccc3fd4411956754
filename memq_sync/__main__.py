"""
Run the sync daemon in the foreground.

    python -m memq_sync

Configuration comes from the environment (see memq_sync.config).
"""

import asyncio
import logging

from .config import SyncConfig
from .service import SyncService

logger = logging.getLogger("memq_sync")


async def run(config: SyncConfig) -> None:
    service = SyncService(config)
    await service.start()
    try:
        # The watcher task runs until cancelled
        await service.watcher_task
    finally:
        await service.stop()


def main() -> None:
    config = SyncConfig.from_env()
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )
    logger.info(f"Projects: {config.watch.projects_path}, database: {config.db_path}")

    try:
        asyncio.run(run(config))
    except KeyboardInterrupt:
        logger.info("Stopping sync daemon...")


if __name__ == "__main__":
    main()
