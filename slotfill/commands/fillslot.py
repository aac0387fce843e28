"""
/fillslot command - Offer an open slot to the waitlist (admin only)
"""

import logging
from datetime import datetime, timedelta
from telegram import Update
from telegram.ext import ContextTypes

from slotfill.config import get_config
from slotfill.errors import InvalidOfferRequest
from slotfill.models import Slot

logger = logging.getLogger(__name__)

USAGE = (
    "Usage: <code>/fillslot SERVICE_ID YYYY-MM-DD HH:MM [DISCOUNT] [WINDOW_HOURS]</code>\n\n"
    "Example: <code>/fillslot grooming 2025-06-03 10:00 15 2</code>"
)


def is_admin(update: Update) -> bool:
    admin_id = get_config().admin_telegram_id
    return admin_id is not None and update.effective_user.id == admin_id


async def fillslot_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /fillslot - match the waitlist and broadcast an offer"""
    if not is_admin(update):
        logger.warning(f"Non-admin user {update.effective_user.id} tried /fillslot")
        await update.message.reply_text("❌ This command is for clinic staff only.")
        return

    args = context.args or []
    if not 3 <= len(args) <= 5:
        await update.message.reply_text(USAGE, parse_mode="HTML")
        return

    service_id, day, time_of_day = args[:3]
    try:
        slot_start = datetime.strptime(f"{day} {time_of_day}", "%Y-%m-%d %H:%M")
        discount = int(args[3]) if len(args) > 3 else None
        window = timedelta(hours=float(args[4])) if len(args) > 4 else None
    except ValueError:
        await update.message.reply_text(
            "❌ Invalid arguments.\n\n" + USAGE, parse_mode="HTML"
        )
        return

    orchestrator = context.bot_data["orchestrator"]
    slot = Slot(service_id=service_id, start=slot_start)

    try:
        result = await orchestrator.fill_slot(
            slot, discount_percent=discount, response_window=window
        )
    except InvalidOfferRequest as e:
        await update.message.reply_text(f"❌ {e}")
        return

    if not result.created:
        await update.message.reply_text(
            f"ℹ️ No offer sent for {service_id} on {day} {time_of_day}: {result.reason}."
        )
        return

    await update.message.reply_text(
        "✅ <b>Offer sent</b>\n\n"
        f"🆔 <code>{result.offer_id}</code>\n"
        f"👥 Candidates: {len(result.candidate_ids)}\n"
        f"📨 Delivered: {result.notifications_sent}, failed: {result.notifications_failed}\n"
        f"⏰ Expires: {result.expires_at.strftime('%Y-%m-%d %H:%M')} UTC",
        parse_mode="HTML",
    )
