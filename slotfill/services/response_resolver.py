"""
Response resolver - turns customer acceptances into at most one booking per offer.

The claim itself is a single compare-and-set on the offer row
(pending -> claimed, only while unexpired). Whoever commits it first wins;
everybody else is told the slot is gone. A claim whose booking fails is
handed back so another candidate can still win.
"""

import asyncio
import logging
import re
import uuid
from contextlib import AbstractContextManager
from datetime import datetime
from typing import Callable, Iterable, Optional

from sqlmodel import Session

from slotfill.booking_api import BookingApiClient, get_booking_client
from slotfill.config import WaitlistConfig, get_config
from slotfill.database import get_session
from slotfill.db_models import (
    OfferStatus,
    SlotOffer,
    WaitlistEntry,
    WaitlistStatus,
    utcnow,
)
from slotfill.identity import normalize_sender
from slotfill.models import ResolveOutcome, ResolveResult
from slotfill.repositories import (
    RELEASABLE_STATUSES,
    AcceptanceLogRepository,
    CustomerRepository,
    OfferRepository,
    WaitlistRepository,
)
from slotfill.services.notification_service import (
    SLOT_GONE_MESSAGE,
    NotificationService,
    format_already_booked_message,
    format_confirmation_message,
    format_slot_filled_message,
)
from slotfill.services_catalog import get_service_name

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractContextManager[Session]]

# A claim can only fail while pending if a rollback reopened the offer in between
MAX_CLAIM_ATTEMPTS = 3

# Extra time granted over the HTTP timeout before a booking call is abandoned
BOOKING_TIMEOUT_GRACE_SECONDS = 5

CLAIM_HINT_MESSAGE = "To claim the open spot, reply YES."
BOOKING_IN_PROGRESS_MESSAGE = "We're still confirming your booking. You'll get a message as soon as it's done."

_PUNCTUATION = re.compile(r"[^\w\s]")


def is_affirmative(text: str, replies: Iterable[str]) -> bool:
    """
    Check if a reply accepts an offer.

    Matches case-insensitively after stripping punctuation: either the whole
    reply is an accepted word ("Yes!", "ok") or a short reply starts with one
    ("yes please").
    """
    accepted = set(replies)
    words = _PUNCTUATION.sub(" ", text.lower()).split()
    if not words:
        return False
    if " ".join(words) in accepted:
        return True
    return words[0] in accepted and len(words) <= 3


class ResponseResolver:
    """Resolves acceptances of slot offers"""

    def __init__(
        self,
        notifier: NotificationService,
        booking_client: Optional[BookingApiClient] = None,
        session_factory: SessionFactory = get_session,
        config: Optional[WaitlistConfig] = None,
        service_name_lookup: Callable[[str], str] = get_service_name,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.notifier = notifier
        self.booking_client = booking_client or get_booking_client()
        self.session_factory = session_factory
        self.config = config or get_config()
        self.service_name_lookup = service_name_lookup
        self.clock = clock

    async def resolve(
        self,
        offer_id: uuid.UUID,
        claimant_entry_id: uuid.UUID,
        now: Optional[datetime] = None,
    ) -> ResolveResult:
        """
        Accept an offer on behalf of one of its candidates.

        Safe under any number of concurrent calls for the same offer: at most
        one returns BOOKED. A repeat from the winner returns ALREADY_BOOKED once
        the appointment is recorded, BOOKING_IN_PROGRESS before that, and never
        books twice. Acceptances after the deadline return EXPIRED even
        if the sweeper has not run yet.

        Args:
            offer_id: The offer being accepted
            claimant_entry_id: The candidate's waitlist entry
            now: Claim time, defaults to the clock

        Returns:
            ResolveResult with the reply owed to the respondent

        Raises:
            SQLAlchemyError: storage failures are never swallowed
        """
        claimed_at = now or self.clock()

        with self.session_factory() as session:
            offer_repo = OfferRepository(session)
            offer = offer_repo.get_offer(offer_id)
            if offer is None or not offer_repo.is_candidate(offer_id, claimant_entry_id):
                logger.debug(
                    f"Entry {claimant_entry_id} has no offer {offer_id} to accept"
                )
                return ResolveResult(
                    ResolveOutcome.NOT_FOUND, offer_id, claimant_entry_id
                )

            claimant = WaitlistRepository(session).get_entry(claimant_entry_id)
            if claimant is None or claimant.status == WaitlistStatus.CANCELLED:
                logger.debug(f"Entry {claimant_entry_id} is cancelled, ignoring acceptance")
                return ResolveResult(
                    ResolveOutcome.NOT_FOUND, offer_id, claimant_entry_id
                )

            claimed = False
            for _ in range(MAX_CLAIM_ATTEMPTS):
                claimed = offer_repo.try_transition(
                    offer_id,
                    OfferStatus.PENDING,
                    OfferStatus.CLAIMED,
                    {"claimant_entry_id": claimant_entry_id, "claimed_at": claimed_at},
                    live_at=claimed_at,
                )
                if claimed:
                    break
                offer = offer_repo.get_offer(offer_id)
                if not (
                    offer.status == OfferStatus.PENDING
                    and offer.expires_at > claimed_at
                ):
                    return self._lost_claim(offer, claimant_entry_id, claimed_at)

            if not claimed:
                return self._lost_claim(offer, claimant_entry_id, claimed_at)
            offer = offer_repo.get_offer(offer_id)

        logger.info(f"Offer {offer_id} claimed by entry {claimant_entry_id}")

        try:
            appointment_id = await self._book(offer, claimant)
        except Exception:
            self._roll_back_claim(offer, claimant_entry_id, now)
            raise

        if appointment_id is None:
            logger.warning(
                f"Booking failed for offer {offer_id} after a successful claim; "
                "slot was likely taken outside the waitlist, reopening the offer"
            )
            self._roll_back_claim(offer, claimant_entry_id, now)
            return ResolveResult(
                ResolveOutcome.BOOKING_FAILED,
                offer_id,
                claimant_entry_id,
                reply=SLOT_GONE_MESSAGE,
            )

        return await self._complete_booking(offer, claimant_entry_id, appointment_id)

    def _lost_claim(
        self, offer: SlotOffer, claimant_entry_id: uuid.UUID, claimed_at: datetime
    ) -> ResolveResult:
        """Classify a failed claim; race losses are routine, not errors"""
        if offer.status == OfferStatus.CLAIMED:
            if offer.claimant_entry_id == claimant_entry_id:
                if offer.appointment_id is None:
                    logger.info(
                        f"Repeated acceptance of offer {offer.id} while its booking is in progress"
                    )
                    return ResolveResult(
                        ResolveOutcome.BOOKING_IN_PROGRESS,
                        offer.id,
                        claimant_entry_id,
                        reply=BOOKING_IN_PROGRESS_MESSAGE,
                    )
                logger.info(
                    f"Repeated acceptance of offer {offer.id} from its winner {claimant_entry_id}"
                )
                return ResolveResult(
                    ResolveOutcome.ALREADY_BOOKED,
                    offer.id,
                    claimant_entry_id,
                    appointment_id=offer.appointment_id,
                    reply=format_already_booked_message(
                        self.service_name_lookup(offer.service_id), offer.slot_start
                    ),
                )
            logger.info(f"Entry {claimant_entry_id} lost offer {offer.id}: already claimed")
            return ResolveResult(
                ResolveOutcome.ALREADY_CLAIMED,
                offer.id,
                claimant_entry_id,
                reply=SLOT_GONE_MESSAGE,
            )

        logger.info(
            f"Entry {claimant_entry_id} answered offer {offer.id} too late "
            f"(status {OfferStatus(offer.status).value}, expired {offer.expires_at.isoformat()})"
        )
        return ResolveResult(
            ResolveOutcome.EXPIRED,
            offer.id,
            claimant_entry_id,
            reply=SLOT_GONE_MESSAGE,
        )

    async def _book(self, offer: SlotOffer, claimant: WaitlistEntry) -> Optional[str]:
        """Create the appointment; a timeout counts as a failed booking"""
        timeout = self.config.booking_timeout_seconds + BOOKING_TIMEOUT_GRACE_SECONDS
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(
                    self.booking_client.create_appointment,
                    customer_id=claimant.customer_id,
                    pet_id=claimant.pet_id,
                    service_id=offer.service_id,
                    slot_time=offer.slot_start,
                    discount_percent=offer.discount_percent,
                    idempotency_key=f"{offer.id}:{claimant.id}",
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Booking call for offer {offer.id} timed out after {timeout}s")
            return None

    def _roll_back_claim(
        self,
        offer: SlotOffer,
        claimant_entry_id: uuid.UUID,
        now: Optional[datetime],
    ) -> None:
        """
        Hand a claim back after its booking failed.

        Reopens the offer if it is still inside its window, otherwise expires
        it and frees every candidate in the same commit.
        """
        checked_at = now or self.clock()

        with self.session_factory() as session:
            offer_repo = OfferRepository(session)
            reopened = offer_repo.try_transition(
                offer.id,
                OfferStatus.CLAIMED,
                OfferStatus.PENDING,
                {"claimant_entry_id": None, "claimed_at": None},
                live_at=checked_at,
                expected_claimant=claimant_entry_id,
            )
            if reopened:
                logger.info(f"Offer {offer.id} reopened for the remaining candidates")
                return

            expired = offer_repo.try_transition(
                offer.id,
                OfferStatus.CLAIMED,
                OfferStatus.EXPIRED,
                {"expired_at": checked_at},
                expected_claimant=claimant_entry_id,
                commit=False,
            )
            if expired:
                released = WaitlistRepository(session).release_entries(
                    offer_repo.get_candidate_ids(offer.id), offer.id, commit=False
                )
                session.commit()
                logger.info(
                    f"Offer {offer.id} lapsed during a failed booking; released {len(released)} entries"
                )

    async def _complete_booking(
        self,
        offer: SlotOffer,
        claimant_entry_id: uuid.UUID,
        appointment_id: str,
    ) -> ResolveResult:
        """Record the booking, free the other candidates and tell them"""
        with self.session_factory() as session:
            offer_repo = OfferRepository(session)
            waitlist_repo = WaitlistRepository(session)

            offer_repo.try_transition(
                offer.id,
                OfferStatus.CLAIMED,
                OfferStatus.CLAIMED,
                {"appointment_id": appointment_id},
                expected_claimant=claimant_entry_id,
                commit=False,
            )
            booked = waitlist_repo.try_transition(
                claimant_entry_id,
                RELEASABLE_STATUSES,
                WaitlistStatus.BOOKED,
                {"offer_expires_at": None},
                offer_id=offer.id,
                commit=False,
            )
            if not booked:
                logger.warning(
                    f"Entry {claimant_entry_id} changed state while offer {offer.id} was being booked"
                )

            others = [
                entry_id
                for entry_id in offer_repo.get_candidate_ids(offer.id)
                if entry_id != claimant_entry_id
            ]
            released = waitlist_repo.release_entries(others, offer.id, commit=False)
            session.commit()
            released_entries = waitlist_repo.get_entries(released)
            contacts = CustomerRepository(session).get_contacts(
                entry.customer_id for entry in released_entries
            )

        service_name = self.service_name_lookup(offer.service_id)
        logger.info(
            f"Offer {offer.id} booked as appointment {appointment_id}; released {len(released)} other candidates"
        )

        if released_entries:
            filled = format_slot_filled_message(service_name, offer.slot_start)
            sent, failed = await self.notifier.send_many(
                (contacts.get(entry.customer_id), filled) for entry in released_entries
            )
            if failed:
                logger.warning(f"Offer {offer.id}: {failed} slot-filled notices failed")

        return ResolveResult(
            ResolveOutcome.BOOKED,
            offer.id,
            claimant_entry_id,
            appointment_id=appointment_id,
            reply=format_confirmation_message(
                service_name, offer.slot_start, offer.discount_percent, appointment_id
            ),
            released_entry_ids=released,
        )

    async def handle_inbound_message(
        self, sender: str, text: str, now: Optional[datetime] = None
    ) -> ResolveResult:
        """
        Process one inbound reply from any channel.

        The sender is matched against the candidates of offers that are pending
        or still inside their window. Non-affirmative text and unknown senders
        produce no state change.

        Args:
            sender: "telegram:<chat id>" or a phone number in any common format
            text: Free-form reply

        Returns:
            ResolveResult; outcome IGNORED for non-affirmative text, NOT_FOUND
            when no offer correlates to the sender
        """
        identity = normalize_sender(sender)
        checked_at = now or self.clock()

        with self.session_factory() as session:
            contact = CustomerRepository(session).find_by_sender(identity)
            offers = []
            if contact is not None:
                offers = OfferRepository(session).find_offers_for_customer(
                    contact.customer_id, checked_at
                )

        if not offers:
            logger.debug(f"No offer correlates to inbound message from {identity}")
            result = ResolveResult(ResolveOutcome.NOT_FOUND)
        else:
            offer, entry_id = offers[0]
            if not is_affirmative(text, self.config.affirmative_replies):
                claimable = (
                    offer.status == OfferStatus.PENDING and offer.expires_at > checked_at
                )
                result = ResolveResult(
                    ResolveOutcome.IGNORED,
                    offer.id,
                    entry_id,
                    reply=CLAIM_HINT_MESSAGE if claimable else None,
                )
            else:
                result = await self.resolve(offer.id, entry_id, now=now)

        with self.session_factory() as session:
            AcceptanceLogRepository(session).log_acceptance(
                sender=identity,
                text=text,
                outcome=result.outcome.value,
                offer_id=result.offer_id,
                waitlist_entry_id=result.waitlist_entry_id,
            )
        return result
