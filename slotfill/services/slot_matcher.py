"""
Slot matcher - finds the waitlist entries that could take an open slot.
Pure read: nothing is modified here.
"""

import logging
from datetime import timedelta
from typing import List, Optional

from sqlmodel import Session

from slotfill.config import WaitlistConfig, get_config
from slotfill.db_models import TimePreference, WaitlistEntry
from slotfill.models import Slot
from slotfill.repositories import WaitlistRepository

logger = logging.getLogger(__name__)

AFTERNOON_STARTS_AT_HOUR = 12


def fits_time_preference(entry: WaitlistEntry, slot: Slot) -> bool:
    """Check if a slot's start time suits the entry's morning/afternoon preference"""
    preference = TimePreference(entry.time_preference)
    if preference == TimePreference.MORNING:
        return slot.start.hour < AFTERNOON_STARTS_AT_HOUR
    if preference == TimePreference.AFTERNOON:
        return slot.start.hour >= AFTERNOON_STARTS_AT_HOUR
    return True


def find_candidates(
    session: Session,
    slot: Slot,
    max_date_skew_days: Optional[int] = None,
    limit: Optional[int] = None,
    config: Optional[WaitlistConfig] = None,
) -> List[WaitlistEntry]:
    """
    Rank the active waitlist entries eligible for a slot.

    An entry is eligible when it is active, asks for the slot's service and its
    requested date lies within max_date_skew_days of the slot date. Entries are
    ranked by priority (highest first), then by waiting time (oldest first),
    and only the top `limit` are returned.

    Args:
        session: Database session
        slot: The open slot
        max_date_skew_days: Overrides the configured date tolerance
        limit: Overrides the configured candidate cap
        config: Configuration, defaults to the global one

    Returns:
        Ranked entries; an empty list means no match
    """
    config = config or get_config()
    skew = config.max_date_skew_days if max_date_skew_days is None else max_date_skew_days
    cap = config.max_candidates if limit is None else limit
    if cap <= 0:
        return []

    skew_delta = timedelta(days=skew)
    repo = WaitlistRepository(session)

    if config.match_time_preference:
        entries = repo.find_active_entries(
            slot.service_id, slot.date - skew_delta, slot.date + skew_delta
        )
        entries = [entry for entry in entries if fits_time_preference(entry, slot)][:cap]
    else:
        entries = repo.find_active_entries(
            slot.service_id, slot.date - skew_delta, slot.date + skew_delta, limit=cap
        )

    logger.info(
        f"Matched {len(entries)} waitlist entries for service {slot.service_id} at {slot.start.isoformat()}"
    )
    return entries
