"""
Offer orchestrator - turns matched waitlist entries into a live slot offer.
Creates the offer and its candidate set atomically, then broadcasts it.
"""

import logging
import uuid
from contextlib import AbstractContextManager
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence, Union

from sqlmodel import Session

from slotfill.config import WaitlistConfig, get_config
from slotfill.database import get_session
from slotfill.db_models import SlotOffer, WaitlistEntry, utcnow
from slotfill.errors import InvalidOfferRequest
from slotfill.models import OfferCreationResult, Slot
from slotfill.repositories import CustomerRepository, OfferRepository, WaitlistRepository
from slotfill.services.notification_service import NotificationService, format_offer_message
from slotfill.services.slot_matcher import find_candidates
from slotfill.services_catalog import get_service_name

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractContextManager[Session]]

NO_ELIGIBLE_CANDIDATES = "no eligible candidates remain"
NO_MATCHING_ENTRIES = "no matching waitlist entries"


class OfferOrchestrator:
    """Creates slot offers and dispatches them to their candidates"""

    def __init__(
        self,
        notifier: NotificationService,
        session_factory: SessionFactory = get_session,
        config: Optional[WaitlistConfig] = None,
        service_name_lookup: Callable[[str], str] = get_service_name,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.notifier = notifier
        self.session_factory = session_factory
        self.config = config or get_config()
        self.service_name_lookup = service_name_lookup
        self.clock = clock

    def validate_terms(self, discount_percent: int, response_window: timedelta) -> None:
        """Raise InvalidOfferRequest if discount or window is out of bounds"""
        config = self.config
        if not (
            config.min_discount_percent <= discount_percent <= config.max_discount_percent
        ):
            raise InvalidOfferRequest(
                f"discount_percent must be between {config.min_discount_percent} "
                f"and {config.max_discount_percent}, got {discount_percent}"
            )
        if not (config.min_response_window <= response_window <= config.max_response_window):
            raise InvalidOfferRequest(
                f"response window must be between {config.min_response_window} "
                f"and {config.max_response_window}, got {response_window}"
            )

    async def create_offer(
        self,
        slot: Slot,
        candidates: Sequence[Union[WaitlistEntry, uuid.UUID]],
        discount_percent: int,
        response_window: timedelta,
        now: Optional[datetime] = None,
    ) -> OfferCreationResult:
        """
        Create a pending offer for a slot and notify its candidates.

        Candidates that stopped being active since they were matched are
        dropped. The response window starts now, not at delivery.

        Args:
            slot: The open slot
            candidates: Ranked entries (or entry IDs) to offer the slot to
            discount_percent: Discount passed through to the booking
            response_window: How long the offer stays open

        Returns:
            OfferCreationResult; offer_id is None when no candidate was still active

        Raises:
            InvalidOfferRequest: empty candidate list or terms out of bounds
        """
        if not candidates:
            raise InvalidOfferRequest("at least one candidate is required")
        self.validate_terms(discount_percent, response_window)

        candidate_ids = [
            candidate.id if isinstance(candidate, WaitlistEntry) else candidate
            for candidate in candidates
        ]
        now = now or self.clock()

        with self.session_factory() as session:
            offer, survivors = OfferRepository(session).create_offer(
                slot, candidate_ids, discount_percent, response_window, now=now
            )

        if offer is None:
            logger.info(
                f"No offer created for service {slot.service_id} at {slot.start.isoformat()}: {NO_ELIGIBLE_CANDIDATES}"
            )
            return OfferCreationResult(offer_id=None, reason=NO_ELIGIBLE_CANDIDATES)

        dropped = len(candidate_ids) - len(survivors)
        logger.info(
            f"Created offer {offer.id} for {len(survivors)} candidates "
            f"({dropped} dropped), expires at {offer.expires_at.isoformat()}"
        )

        sent, failed = await self._dispatch(offer, survivors)
        return OfferCreationResult(
            offer_id=offer.id,
            expires_at=offer.expires_at,
            candidate_ids=survivors,
            notifications_sent=sent,
            notifications_failed=failed,
        )

    async def fill_slot(
        self,
        slot: Slot,
        discount_percent: Optional[int] = None,
        response_window: Optional[timedelta] = None,
        entry_ids: Optional[Sequence[uuid.UUID]] = None,
        now: Optional[datetime] = None,
    ) -> OfferCreationResult:
        """
        Admin action: offer an open slot to the waitlist.

        Uses the hand-picked entry_ids when given, otherwise the slot matcher.
        Discount and window fall back to the configured defaults.
        """
        if discount_percent is None:
            discount_percent = self.config.default_discount_percent
        if response_window is None:
            response_window = self.config.default_response_window
        self.validate_terms(discount_percent, response_window)

        with self.session_factory() as session:
            if entry_ids:
                if len(entry_ids) > self.config.max_candidates:
                    raise InvalidOfferRequest(
                        f"at most {self.config.max_candidates} waitlist entries can be offered at once"
                    )
                candidates = self._load_selected_entries(session, slot, entry_ids)
            else:
                candidates = find_candidates(session, slot, config=self.config)
            candidate_ids = [entry.id for entry in candidates]

        if not candidate_ids:
            logger.info(
                f"No waitlist match for service {slot.service_id} at {slot.start.isoformat()}"
            )
            return OfferCreationResult(offer_id=None, reason=NO_MATCHING_ENTRIES)

        return await self.create_offer(
            slot, candidate_ids, discount_percent, response_window, now=now
        )

    def _load_selected_entries(
        self, session: Session, slot: Slot, entry_ids: Sequence[uuid.UUID]
    ) -> List[WaitlistEntry]:
        entries = WaitlistRepository(session).get_entries(entry_ids)
        selected = []
        for entry in entries:
            if entry.service_id != slot.service_id:
                logger.warning(
                    f"Skipping entry {entry.id}: waiting for service {entry.service_id}, slot is {slot.service_id}"
                )
                continue
            selected.append(entry)
        return selected

    async def _dispatch(self, offer: SlotOffer, candidate_ids: List[uuid.UUID]) -> tuple:
        """Send the offer to every surviving candidate; failures never undo the offer"""
        with self.session_factory() as session:
            entries = WaitlistRepository(session).get_entries(candidate_ids)
            contacts = CustomerRepository(session).get_contacts(
                entry.customer_id for entry in entries
            )

        text = format_offer_message(
            self.service_name_lookup(offer.service_id),
            offer.slot_start,
            offer.discount_percent,
            offer.expires_at,
            offer.id,
        )
        sent, failed = await self.notifier.send_many(
            (contacts.get(entry.customer_id), text) for entry in entries
        )
        if failed:
            logger.warning(f"Offer {offer.id}: {failed} of {len(entries)} notifications failed")
        else:
            logger.info(f"Offer {offer.id}: notified {sent} candidates")
        return sent, failed
