"""
/status command - Show the caller's waitlist entries
"""

import logging
from telegram import Update
from telegram.ext import ContextTypes

from slotfill.database import get_session
from slotfill.db_models import WaitlistStatus
from slotfill.identity import telegram_identity
from slotfill.repositories import CustomerRepository, WaitlistRepository
from slotfill.services_catalog import get_service_name

logger = logging.getLogger(__name__)

STATUS_ICONS = {
    WaitlistStatus.ACTIVE: "⏳",
    WaitlistStatus.NOTIFIED: "📨",
    WaitlistStatus.BOOKED: "✅",
    WaitlistStatus.EXPIRED_OFFER: "⌛",
    WaitlistStatus.CANCELLED: "🚫",
}


async def status_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Show waitlist status"""
    chat_id = update.effective_chat.id

    with get_session() as session:
        contact = CustomerRepository(session).find_by_sender(telegram_identity(chat_id))
        entries = None
        if contact:
            entries = WaitlistRepository(session).get_customer_entries(contact.customer_id)

    if entries is None:
        await update.message.reply_text(
            "❌ This chat is not linked to a customer.\n\nUse /link PHONE first."
        )
        return

    if not entries:
        await update.message.reply_text("📋 You have no waitlist entries.")
        return

    lines = []
    for entry in entries:
        status = WaitlistStatus(entry.status)
        line = (
            f"{STATUS_ICONS[status]} {get_service_name(entry.service_id)} "
            f"around {entry.requested_date.isoformat()} - {status.value}"
        )
        if status == WaitlistStatus.NOTIFIED and entry.offer_expires_at:
            line += f" (reply YES before {entry.offer_expires_at.strftime('%H:%M')} UTC)"
        lines.append(line)

    await update.message.reply_text(
        "📊 <b>Your Waitlist</b>\n\n" + "\n".join(lines), parse_mode="HTML"
    )
