"""
Waitlist Slot-Fill Bot - Main Entry Point
Minimal bot setup that wires together commands, the reply handler and the sweeper.
"""
import logging
from telegram import BotCommand
from telegram.ext import Application, CommandHandler, MessageHandler, filters

from slotfill.config import get_config
from slotfill.database import init_database

# Import commands
from slotfill.commands.start import start_command, link_command
from slotfill.commands.fillslot import fillslot_command
from slotfill.commands.sweep import sweep_command
from slotfill.commands.status import status_command
from slotfill.commands.stats import stats_command

# Import handlers
from slotfill.handlers.replies import reply_message

# Import services
from slotfill.services.notification_service import NotificationService
from slotfill.services.offer_orchestrator import OfferOrchestrator
from slotfill.services.response_resolver import ResponseResolver
from slotfill.services.expiration_sweeper import ExpirationSweeper, run_expiration_sweeper

# Configure logging
logging.basicConfig(
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    level=logging.INFO
)
logger = logging.getLogger(__name__)


async def post_init(application: Application) -> None:
    """Post-initialization callback - wire services, set bot commands, start sweeper"""
    config = get_config()
    notifier = NotificationService.from_config(application.bot, config)

    application.bot_data["notifier"] = notifier
    application.bot_data["orchestrator"] = OfferOrchestrator(notifier, config=config)
    application.bot_data["resolver"] = ResponseResolver(notifier, config=config)
    application.bot_data["sweeper"] = ExpirationSweeper()

    # Set bot commands for menu
    commands = [
        BotCommand("start", "Start the bot"),
        BotCommand("link", "Link this chat to your phone number"),
        BotCommand("status", "Show your waitlist entries"),
        BotCommand("stats", "Show waitlist statistics"),
    ]
    await application.bot.set_my_commands(commands)
    logger.info("Bot commands set")

    # Start background task for expiring offers
    application.create_task(
        run_expiration_sweeper(
            application.bot_data["sweeper"],
            config.sweep_interval,
            alert=notifier.send_admin_alert,
        )
    )
    logger.info("Background expiration sweeper started")


async def post_shutdown(application: Application) -> None:
    """Release outbound clients"""
    notifier = application.bot_data.get("notifier")
    if notifier is not None:
        await notifier.close()


def main() -> None:
    """Start the bot"""
    config = get_config()
    if not config.telegram_bot_token:
        raise SystemExit("TELEGRAM_BOT_TOKEN is not set")

    # Initialize database
    logger.info("Initializing database...")
    init_database()

    # Create application
    application = (
        Application.builder()
        .token(config.telegram_bot_token)
        .post_init(post_init)
        .post_shutdown(post_shutdown)
        .build()
    )

    # Register command handlers
    application.add_handler(CommandHandler("start", start_command))
    application.add_handler(CommandHandler("link", link_command))
    application.add_handler(CommandHandler("fillslot", fillslot_command))
    application.add_handler(CommandHandler("sweep", sweep_command))
    application.add_handler(CommandHandler("status", status_command))
    application.add_handler(CommandHandler("stats", stats_command))

    # Every other text message may be an acceptance
    application.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, reply_message))

    # Start bot
    logger.info("Starting bot...")
    application.run_polling(allowed_updates=["message"])


if __name__ == '__main__':
    main()
