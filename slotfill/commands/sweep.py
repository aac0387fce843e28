"""
/sweep command - Force an expiration sweep (admin only)
"""

import logging
from telegram import Update
from telegram.ext import ContextTypes

from slotfill.commands.fillslot import is_admin
from slotfill.services.expiration_sweeper import run_sweep

logger = logging.getLogger(__name__)


async def sweep_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Run the expiration sweep now"""
    if not is_admin(update):
        await update.message.reply_text("❌ This command is for clinic staff only.")
        return

    expired = await run_sweep(context.bot_data["sweeper"])
    if expired is None:
        await update.message.reply_text("❌ Sweep failed, see the logs.")
        return

    logger.info(f"Manual sweep by {update.effective_user.id} expired {expired} offers")
    await update.message.reply_text(f"🧹 Sweep done: {expired} offer(s) expired.")
