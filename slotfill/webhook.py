"""
Inbound SMS webhook server.
Runs beside the bot so SMS-only customers can answer offers.

    python -m slotfill.webhook
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from slotfill.config import WaitlistConfig, get_config
from slotfill.database import close_database, init_database
from slotfill.routes.twilio import router as twilio_router
from slotfill.services.notification_service import NotificationService
from slotfill.services.response_resolver import ResponseResolver

logger = logging.getLogger(__name__)


def create_app(
    resolver: Optional[ResponseResolver] = None,
    config: Optional[WaitlistConfig] = None,
) -> FastAPI:
    """
    Build the webhook app.

    Without a resolver one is created at startup, with a notifier that can
    reach Telegram when a bot token is configured; it is closed on shutdown.
    """
    config = config or get_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        notifier = None
        if app.state.resolver is None:
            bot = None
            if config.telegram_bot_token:
                from telegram import Bot

                bot = Bot(config.telegram_bot_token)
            notifier = NotificationService.from_config(bot, config)
            app.state.resolver = ResponseResolver(notifier, config=config)
        logger.info("Inbound SMS webhook ready")
        try:
            yield
        finally:
            if notifier is not None:
                await notifier.close()

    app = FastAPI(title="Slotfill webhooks", lifespan=lifespan)
    app.state.config = config
    app.state.resolver = resolver
    app.include_router(twilio_router)

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok"}

    return app


def main() -> None:
    """Start the webhook server"""
    import uvicorn

    logging.basicConfig(
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        level=logging.INFO
    )

    config = get_config()
    logger.info("Initializing database...")
    init_database()
    try:
        uvicorn.run(create_app(config=config), host=config.webhook_host, port=config.webhook_port)
    finally:
        close_database()


if __name__ == '__main__':
    main()
