"""
Standalone expiration sweeper.
Runs the same sweep loop as the bot, for deployments that split the two.

    python -m slotfill.worker
"""
import asyncio
import logging

from slotfill.config import get_config
from slotfill.database import close_database, init_database
from slotfill.services.expiration_sweeper import ExpirationSweeper, run_expiration_sweeper
from slotfill.services.notification_service import NotificationService

logger = logging.getLogger(__name__)


async def run_worker() -> None:
    config = get_config()
    notifier = None
    if config.telegram_bot_token:
        from telegram import Bot

        notifier = NotificationService.from_config(Bot(config.telegram_bot_token), config)

    try:
        await run_expiration_sweeper(
            ExpirationSweeper(),
            config.sweep_interval,
            alert=notifier.send_admin_alert if notifier else None,
        )
    finally:
        if notifier is not None:
            await notifier.close()


def main() -> None:
    """Start the sweeper worker"""
    logging.basicConfig(
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        level=logging.INFO
    )

    logger.info("Initializing database...")
    init_database()
    try:
        asyncio.run(run_worker())
    except KeyboardInterrupt:
        logger.info("Sweeper worker stopped")
    finally:
        close_database()


if __name__ == '__main__':
    main()
