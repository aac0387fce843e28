"""
/stats command - Show sweeper statistics and store counts
"""

import logging
from telegram import Update
from telegram.ext import ContextTypes

from slotfill.database import get_session
from slotfill.repositories import OfferRepository, WaitlistRepository
from slotfill.services.expiration_sweeper import get_stats

logger = logging.getLogger(__name__)


def _format_counts(counts: dict) -> str:
    if not counts:
        return "none"
    return ", ".join(f"{status}: {count}" for status, count in sorted(counts.items()))


async def stats_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Show bot statistics"""
    stats = get_stats()

    with get_session() as session:
        entry_counts = WaitlistRepository(session).count_by_status()
        offer_counts = OfferRepository(session).count_by_status()

    message = (
        "📈 <b>Waitlist Statistics</b>\n\n"
        f"📋 Entries: {_format_counts(entry_counts)}\n"
        f"🎁 Offers: {_format_counts(offer_counts)}\n\n"
        f"🧹 Total sweeps: {stats['total_sweeps']}\n"
        f"❌ Failed: {stats['failed_sweeps']}\n"
        f"⌛ Offers expired: {stats['offers_expired']}\n"
    )

    if stats["last_sweep_time"]:
        message += f"\n⏰ Last sweep: {stats['last_sweep_time'].strftime('%H:%M:%S')}"
    if stats["last_success_time"]:
        message += (
            f"\n✅ Last success: {stats['last_success_time'].strftime('%H:%M:%S')}"
        )

    await update.message.reply_text(message, parse_mode="HTML")
