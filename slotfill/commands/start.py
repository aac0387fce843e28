"""
/start and /link commands - Welcome customers and attach their chat to a contact
"""

import logging
from telegram import Update
from telegram.ext import ContextTypes

from slotfill.database import get_session
from slotfill.identity import normalize_phone, telegram_identity
from slotfill.repositories import CustomerRepository

logger = logging.getLogger(__name__)


async def start_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle the /start command"""
    chat_id = update.effective_chat.id

    with get_session() as session:
        contact = CustomerRepository(session).find_by_sender(telegram_identity(chat_id))
        linked = contact is not None

    welcome_msg = (
        "👋 <b>Welcome to the waitlist!</b>\n\n"
        "When a spot opens up for a service you're waiting for, "
        "we'll message you here. The first to reply <b>YES</b> gets it.\n\n"
    )
    if linked:
        welcome_msg += "✅ This chat is linked to your account. See /status for your waitlist."
    else:
        welcome_msg += (
            "🔗 To receive offers here, link the phone number you gave us:\n"
            "<code>/link +1 555 123 4567</code>"
        )

    await update.message.reply_text(welcome_msg, parse_mode="HTML")


async def link_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /link <phone> to receive offers in this chat"""
    if not context.args:
        await update.message.reply_text(
            "Usage: <code>/link PHONE</code>\n\nExample: <code>/link +1 555 123 4567</code>",
            parse_mode="HTML",
        )
        return

    phone = normalize_phone(" ".join(context.args))
    chat_id = update.effective_chat.id

    if phone is None:
        await update.message.reply_text("❌ That doesn't look like a phone number.")
        return

    with get_session() as session:
        contact = CustomerRepository(session).link_telegram(phone, chat_id)
        customer_id = contact.customer_id if contact else None

    if customer_id is None:
        logger.info(f"Chat {chat_id} tried to link unknown phone {phone}")
        await update.message.reply_text(
            "❌ We couldn't find that number on the waitlist.\n"
            "Please use the phone number you gave the clinic."
        )
        return

    logger.info(f"Linked chat {chat_id} to customer {customer_id}")
    await update.message.reply_text(
        "✅ Linked! Waitlist offers will now arrive in this chat."
    )
