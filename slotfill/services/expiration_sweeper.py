"""
Expiration sweeper - background task that closes lapsed offers.
Expires pending offers past their window and returns their candidates to the waitlist.
"""

import asyncio
import logging
from contextlib import AbstractContextManager
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from sqlmodel import Session

from slotfill.config import get_config
from slotfill.database import get_session
from slotfill.db_models import OfferStatus, utcnow
from slotfill.repositories import OfferRepository, WaitlistRepository

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractContextManager[Session]]
AlertCallback = Callable[[str], Awaitable[None]]

# A claim older than this has finished booking or will never finish
STALE_CLAIM_AFTER = timedelta(minutes=10)

# Global stats tracking
stats = {
    "total_sweeps": 0,
    "failed_sweeps": 0,
    "offers_expired": 0,
    "consecutive_failures": 0,
    "last_sweep_time": None,
    "last_success_time": None,
}


def get_stats() -> dict:
    """Get current statistics"""
    return stats


def reset_stats() -> None:
    """Zero all counters"""
    stats.update(
        total_sweeps=0,
        failed_sweeps=0,
        offers_expired=0,
        consecutive_failures=0,
        last_sweep_time=None,
        last_success_time=None,
    )


class ExpirationSweeper:
    """Expires lapsed pending offers"""

    def __init__(
        self,
        session_factory: SessionFactory = get_session,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.clock = clock

    def sweep(self, now: Optional[datetime] = None) -> int:
        """
        Expire every pending offer whose window closed at or before now.

        Each offer is expired with its own compare-and-set, so an offer claimed
        a moment earlier is skipped and two sweepers never both release the
        same candidates. The transition and the release of its candidates are
        committed together; if the release fails the offer stays pending and
        the next sweep retries it. Released entries become active again and can
        be matched for the next opening.

        Afterwards any candidate still held by an expired offer, or by a claim
        older than STALE_CLAIM_AFTER that it did not win, is released too.

        Returns:
            Number of offers this call expired
        """
        now = now or self.clock()
        expired = 0

        with self.session_factory() as session:
            offer_repo = OfferRepository(session)
            waitlist_repo = WaitlistRepository(session)

            for offer in offer_repo.find_lapsed_pending(now):
                if not offer_repo.try_transition(
                    offer.id,
                    OfferStatus.PENDING,
                    OfferStatus.EXPIRED,
                    {"expired_at": now},
                    lapsed_at=now,
                    commit=False,
                ):
                    logger.debug(f"Offer {offer.id} changed state before it could be expired")
                    continue

                released = waitlist_repo.release_entries(
                    offer_repo.get_candidate_ids(offer.id), offer.id, commit=False
                )
                session.commit()
                expired += 1
                logger.info(
                    f"Offer {offer.id} expired without a claim; released {len(released)} entries"
                )

            stranded = waitlist_repo.find_stranded_holds(now - STALE_CLAIM_AFTER)
            for entry_id, offer_id in stranded:
                waitlist_repo.release_entries([entry_id], offer_id, commit=False)
            if stranded:
                session.commit()
                logger.warning(f"Released {len(stranded)} entries held by closed offers")

        if expired:
            logger.info(f"Sweep expired {expired} offers")
        else:
            logger.debug("Sweep found no lapsed offers")
        return expired


async def run_sweep(
    sweeper: ExpirationSweeper,
    alert: Optional[AlertCallback] = None,
    max_consecutive_failures: Optional[int] = None,
) -> Optional[int]:
    """
    Run one sweep and record it in the stats.

    A failing sweep is logged and counted, never raised; once the failures in a
    row reach max_consecutive_failures the alert callback is invoked.

    Returns:
        Offers expired, or None if the sweep failed
    """
    if max_consecutive_failures is None:
        max_consecutive_failures = get_config().max_consecutive_failures

    stats["last_sweep_time"] = datetime.now()
    stats["total_sweeps"] += 1

    try:
        expired = await asyncio.to_thread(sweeper.sweep)
    except Exception as e:
        logger.error(f"Error in expiration sweep: {e}")
        stats["failed_sweeps"] += 1
        stats["consecutive_failures"] += 1

        if alert is not None and stats["consecutive_failures"] >= max_consecutive_failures:
            await alert(
                f"Expiration sweeper has failed {stats['consecutive_failures']} consecutive sweeps!\n"
                f"Last error: {str(e)}"
            )
        return None

    stats["offers_expired"] += expired
    stats["last_success_time"] = datetime.now()
    stats["consecutive_failures"] = 0
    return expired


async def run_expiration_sweeper(
    sweeper: ExpirationSweeper,
    interval_seconds: Optional[int] = None,
    alert: Optional[AlertCallback] = None,
) -> None:
    """
    Background task that sweeps on a fixed interval.
    Runs until cancelled.
    """
    config = get_config()
    interval = interval_seconds or config.sweep_interval
    logger.info(f"Expiration sweeper started, sweeping every {interval}s")

    while True:
        await run_sweep(sweeper, alert, config.max_consecutive_failures)
        await asyncio.sleep(interval)
