"""
Reply handler for free-text Telegram messages.
Routes every text reply into the response resolver.
"""

import logging
from telegram import Update
from telegram.ext import ContextTypes

from slotfill.identity import telegram_identity

logger = logging.getLogger(__name__)


async def reply_message(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Treat a text message as a possible acceptance of a pending offer"""
    if not update.message or not update.message.text:
        return

    resolver = context.bot_data["resolver"]
    result = await resolver.handle_inbound_message(
        telegram_identity(update.effective_chat.id), update.message.text
    )

    if result.reply:
        await update.message.reply_text(result.reply)
