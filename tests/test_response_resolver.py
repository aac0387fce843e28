"""
Tests for claiming offers - the at-most-one-booking guarantees
"""

import asyncio
import threading
import uuid
from datetime import datetime, timedelta
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from slotfill.db_models import OfferStatus, SlotOffer, WaitlistEntry, WaitlistStatus
from slotfill.models import ResolveOutcome, Slot
from slotfill.repositories import OfferRepository, WaitlistRepository
from slotfill.services.expiration_sweeper import STALE_CLAIM_AFTER, ExpirationSweeper
from slotfill.services.notification_service import SLOT_GONE_MESSAGE
from slotfill.services.response_resolver import BOOKING_IN_PROGRESS_MESSAGE, ResponseResolver

from conftest import START, service_name

SLOT = Slot(service_id="grooming", start=datetime(2025, 6, 3, 10, 0))


@pytest.fixture
def resolver(notifier, booking_client, session_factory, config, clock):
    return ResponseResolver(
        notifier,
        booking_client=booking_client,
        session_factory=session_factory,
        config=config,
        service_name_lookup=service_name,
        clock=clock,
    )


@pytest.fixture
def make_offer(db_session):
    def make_offer(entries, window=timedelta(hours=2)):
        offer, _ = OfferRepository(db_session).create_offer(
            SLOT, [entry.id for entry in entries], 10, window, now=START
        )
        return offer

    return make_offer


def load(db_session, model, key):
    db_session.expire_all()
    return db_session.get(model, key)


class TestWinningClaim:
    """A single acceptance of a live offer"""

    @pytest.mark.asyncio
    async def test_first_acceptance_books(
        self, resolver, booking_client, db_session, make_entry, make_offer, clock
    ):
        """Test the claimant is booked and the offer records the appointment"""
        a = make_entry("alice")
        b = make_entry("bob")
        offer = make_offer([a, b])
        clock.advance(minutes=10)

        result = await resolver.resolve(offer.id, b.id)

        assert result.outcome == ResolveOutcome.BOOKED
        assert result.booked
        assert result.appointment_id == "appt-1"
        assert "Confirmed" in result.reply

        stored = load(db_session, SlotOffer, offer.id)
        assert stored.status == OfferStatus.CLAIMED
        assert stored.claimant_entry_id == b.id
        assert stored.claimed_at == START + timedelta(minutes=10)
        assert stored.appointment_id == "appt-1"
        assert load(db_session, WaitlistEntry, b.id).status == WaitlistStatus.BOOKED

        booking_client.create_appointment.assert_called_once_with(
            customer_id="bob",
            pet_id="pet-bob",
            service_id="grooming",
            slot_time=SLOT.start,
            discount_percent=10,
            idempotency_key=f"{offer.id}:{b.id}",
        )

    @pytest.mark.asyncio
    async def test_other_candidates_released_and_told(
        self, resolver, notifier, db_session, make_entry, make_offer
    ):
        """Test everyone else returns to the waitlist and hears the slot is filled"""
        a = make_entry("alice")
        b = make_entry("bob")
        c = make_entry("carol")
        offer = make_offer([a, b, c])

        result = await resolver.resolve(offer.id, a.id)

        assert sorted(result.released_entry_ids) == sorted([b.id, c.id])
        for entry_id in (b.id, c.id):
            entry = load(db_session, WaitlistEntry, entry_id)
            assert entry.status == WaitlistStatus.ACTIVE
            assert entry.offer_id is None

        told = sorted(contact.customer_id for contact, _ in notifier.sent)
        assert told == ["bob", "carol"]
        assert all("has been filled" in text for _, text in notifier.sent)


class TestIdempotentReplay:
    """Repeated acceptances from the winner"""

    @pytest.mark.asyncio
    async def test_replay_never_books_twice(
        self, resolver, booking_client, make_entry, make_offer
    ):
        """Test the winner's repeats report already booked"""
        a = make_entry("alice")
        offer = make_offer([a])

        first = await resolver.resolve(offer.id, a.id)
        second = await resolver.resolve(offer.id, a.id)
        third = await resolver.resolve(offer.id, a.id)

        assert first.outcome == ResolveOutcome.BOOKED
        assert second.outcome == ResolveOutcome.ALREADY_BOOKED
        assert third.outcome == ResolveOutcome.ALREADY_BOOKED
        assert second.appointment_id == "appt-1"
        assert "already booked" in second.reply
        booking_client.create_appointment.assert_called_once()

    @pytest.mark.asyncio
    async def test_replay_while_booking_is_running(
        self, resolver, booking_client, db_session, make_entry, make_offer
    ):
        """Test a repeat during a booking that then fails is never told it is booked"""
        a = make_entry("alice")
        offer = make_offer([a])
        started = threading.Event()
        release = threading.Event()

        def slow_failure(**kwargs):
            started.set()
            release.wait(5)
            return None

        booking_client.create_appointment.side_effect = slow_failure

        first = asyncio.create_task(resolver.resolve(offer.id, a.id))
        try:
            assert await asyncio.to_thread(started.wait, 5)
            replay = await resolver.resolve(offer.id, a.id)
        finally:
            release.set()
        result = await first

        assert replay.outcome == ResolveOutcome.BOOKING_IN_PROGRESS
        assert replay.reply == BOOKING_IN_PROGRESS_MESSAGE
        assert replay.appointment_id is None
        assert result.outcome == ResolveOutcome.BOOKING_FAILED
        booking_client.create_appointment.assert_called_once()
        assert load(db_session, SlotOffer, offer.id).status == OfferStatus.PENDING

    @pytest.mark.asyncio
    async def test_loser_after_win(self, resolver, make_entry, make_offer):
        """Test a late acceptance from another candidate is told the slot is gone"""
        a = make_entry("alice")
        b = make_entry("bob")
        offer = make_offer([a, b])

        await resolver.resolve(offer.id, a.id)
        result = await resolver.resolve(offer.id, b.id)

        assert result.outcome == ResolveOutcome.ALREADY_CLAIMED
        assert result.reply == SLOT_GONE_MESSAGE


class TestExpiration:
    """Acceptances after the deadline"""

    @pytest.mark.asyncio
    async def test_late_acceptance_without_sweep(
        self, resolver, booking_client, db_session, make_entry, make_offer, clock
    ):
        """Test an unswept but lapsed offer cannot be claimed"""
        a = make_entry("alice")
        offer = make_offer([a])
        clock.advance(hours=2, seconds=1)

        result = await resolver.resolve(offer.id, a.id)

        assert result.outcome == ResolveOutcome.EXPIRED
        assert result.reply == SLOT_GONE_MESSAGE
        booking_client.create_appointment.assert_not_called()
        assert load(db_session, SlotOffer, offer.id).status == OfferStatus.PENDING

    @pytest.mark.asyncio
    async def test_acceptance_at_exact_deadline(self, resolver, make_entry, make_offer, clock):
        """Test the deadline itself is already too late"""
        a = make_entry("alice")
        offer = make_offer([a])
        clock.advance(hours=2)

        result = await resolver.resolve(offer.id, a.id)

        assert result.outcome == ResolveOutcome.EXPIRED

    @pytest.mark.asyncio
    async def test_acceptance_after_sweep(
        self, resolver, session_factory, make_entry, make_offer, clock
    ):
        """Test a swept offer reports expired"""
        a = make_entry("alice")
        offer = make_offer([a])
        clock.advance(hours=3)
        ExpirationSweeper(session_factory, clock).sweep()

        result = await resolver.resolve(offer.id, a.id)

        assert result.outcome == ResolveOutcome.EXPIRED


class TestNotFound:
    """Acceptances that do not correspond to a candidacy"""

    @pytest.mark.asyncio
    async def test_unknown_offer(self, resolver, make_entry):
        a = make_entry("alice")
        result = await resolver.resolve(uuid.uuid4(), a.id)
        assert result.outcome == ResolveOutcome.NOT_FOUND

    @pytest.mark.asyncio
    async def test_not_a_candidate(self, resolver, booking_client, make_entry, make_offer):
        """Test entries outside the candidate set cannot claim"""
        a = make_entry("alice")
        outsider = make_entry("mallory")
        offer = make_offer([a])

        result = await resolver.resolve(offer.id, outsider.id)

        assert result.outcome == ResolveOutcome.NOT_FOUND
        booking_client.create_appointment.assert_not_called()

    @pytest.mark.asyncio
    async def test_cancelled_candidate(self, resolver, db_session, make_entry, make_offer):
        """Test a candidate who left the waitlist cannot claim"""
        a = make_entry("alice")
        offer = make_offer([a])
        WaitlistRepository(db_session).cancel_entry(a.id)

        result = await resolver.resolve(offer.id, a.id)

        assert result.outcome == ResolveOutcome.NOT_FOUND
        assert load(db_session, SlotOffer, offer.id).status == OfferStatus.PENDING


class TestBookingFailure:
    """Claims whose booking does not go through"""

    @pytest.mark.asyncio
    async def test_failed_booking_reopens_offer(
        self, resolver, booking_client, db_session, make_entry, make_offer
    ):
        """Test the claim is handed back and another candidate can win"""
        a = make_entry("alice")
        b = make_entry("bob")
        offer = make_offer([a, b])
        booking_client.create_appointment.side_effect = [None, "appt-2"]

        failed = await resolver.resolve(offer.id, a.id)

        assert failed.outcome == ResolveOutcome.BOOKING_FAILED
        assert failed.reply == SLOT_GONE_MESSAGE
        stored = load(db_session, SlotOffer, offer.id)
        assert stored.status == OfferStatus.PENDING
        assert stored.claimant_entry_id is None
        assert load(db_session, WaitlistEntry, a.id).status == WaitlistStatus.NOTIFIED

        retry = await resolver.resolve(offer.id, b.id)

        assert retry.outcome == ResolveOutcome.BOOKED
        assert retry.appointment_id == "appt-2"
        assert load(db_session, WaitlistEntry, a.id).status == WaitlistStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_failed_booking_after_deadline_expires_offer(
        self, resolver, booking_client, db_session, make_entry, make_offer, clock
    ):
        """Test a claim handed back after the window closed frees every candidate"""
        a = make_entry("alice")
        b = make_entry("bob")
        offer = make_offer([a, b])
        clock.advance(minutes=119)

        def slow_failure(**kwargs):
            clock.advance(minutes=5)
            return None

        booking_client.create_appointment.side_effect = slow_failure

        result = await resolver.resolve(offer.id, a.id)

        assert result.outcome == ResolveOutcome.BOOKING_FAILED
        stored = load(db_session, SlotOffer, offer.id)
        assert stored.status == OfferStatus.EXPIRED
        assert stored.expired_at == START + timedelta(minutes=124)
        for entry_id in (a.id, b.id):
            assert load(db_session, WaitlistEntry, entry_id).status == WaitlistStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_booking_error_reopens_and_raises(
        self, resolver, booking_client, db_session, make_entry, make_offer
    ):
        """Test unexpected booking errors propagate after the rollback"""
        a = make_entry("alice")
        offer = make_offer([a])
        booking_client.create_appointment.side_effect = RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await resolver.resolve(offer.id, a.id)

        assert load(db_session, SlotOffer, offer.id).status == OfferStatus.PENDING

    @pytest.mark.asyncio
    async def test_booking_timeout_is_a_failure(
        self, resolver, booking_client, db_session, make_entry, make_offer
    ):
        """Test a hung booking call is abandoned and the claim handed back"""
        a = make_entry("alice")
        offer = make_offer([a])
        release = threading.Event()
        booking_client.create_appointment.side_effect = lambda **kwargs: release.wait(5) and None

        try:
            with patch("slotfill.services.response_resolver.BOOKING_TIMEOUT_GRACE_SECONDS", 0):
                result = await resolver.resolve(offer.id, a.id)
        finally:
            release.set()

        assert result.outcome == ResolveOutcome.BOOKING_FAILED
        assert load(db_session, SlotOffer, offer.id).status == OfferStatus.PENDING


    @pytest.mark.asyncio
    async def test_failed_release_after_booking_writes_nothing(
        self, resolver, session_factory, db_session, make_entry, make_offer, clock
    ):
        """
        Test a storage error while freeing the other candidates undoes the whole
        completion, and the sweeper later frees them once the claim is stale.
        """
        a = make_entry("alice")
        b = make_entry("bob")
        offer = make_offer([a, b])

        with patch.object(
            WaitlistRepository,
            "release_entries",
            side_effect=OperationalError("UPDATE", {}, Exception("database is locked")),
        ):
            with pytest.raises(OperationalError):
                await resolver.resolve(offer.id, a.id)

        stored = load(db_session, SlotOffer, offer.id)
        assert stored.status == OfferStatus.CLAIMED
        assert stored.appointment_id is None
        assert load(db_session, WaitlistEntry, a.id).status == WaitlistStatus.NOTIFIED
        assert load(db_session, WaitlistEntry, b.id).status == WaitlistStatus.NOTIFIED

        ExpirationSweeper(session_factory, clock).sweep(START + STALE_CLAIM_AFTER)

        assert load(db_session, WaitlistEntry, b.id).status == WaitlistStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_failed_release_after_deadline_keeps_claim(
        self, resolver, booking_client, db_session, make_entry, make_offer, clock
    ):
        """Test a failed booking past the deadline is not expired unless its candidates are freed too"""
        a = make_entry("alice")
        b = make_entry("bob")
        offer = make_offer([a, b])
        clock.advance(minutes=119)

        def slow_failure(**kwargs):
            clock.advance(minutes=5)
            return None

        booking_client.create_appointment.side_effect = slow_failure

        with patch.object(
            WaitlistRepository,
            "release_entries",
            side_effect=OperationalError("UPDATE", {}, Exception("database is locked")),
        ):
            with pytest.raises(OperationalError):
                await resolver.resolve(offer.id, a.id)

        stored = load(db_session, SlotOffer, offer.id)
        assert stored.status == OfferStatus.CLAIMED
        assert stored.expired_at is None
        assert load(db_session, WaitlistEntry, b.id).status == WaitlistStatus.NOTIFIED


class TestConcurrentClaims:
    """Many candidates accepting at once"""

    @pytest.mark.asyncio
    async def test_at_most_one_claim(self, resolver, booking_client, make_entry, make_offer):
        """Test exactly one of many simultaneous acceptances is booked"""
        entries = [make_entry(f"customer-{index}") for index in range(6)]
        offer = make_offer(entries)

        results = await asyncio.gather(
            *(resolver.resolve(offer.id, entry.id) for entry in entries)
        )

        outcomes = [result.outcome for result in results]
        assert outcomes.count(ResolveOutcome.BOOKED) == 1
        assert outcomes.count(ResolveOutcome.ALREADY_CLAIMED) == len(entries) - 1
        booking_client.create_appointment.assert_called_once()

    @pytest.mark.asyncio
    async def test_two_candidates_same_second(
        self, resolver, notifier, db_session, make_entry, make_offer, clock
    ):
        """
        Offer to A, B and C for two hours; B and C accept ten minutes in.
        One of them is booked, the other is told the slot is filled, and A
        returns to the waitlist once the slot is taken.
        """
        a = make_entry("alice")
        b = make_entry("bob")
        c = make_entry("carol")
        offer = make_offer([a, b, c])
        clock.advance(minutes=10)

        assert load(db_session, WaitlistEntry, a.id).status == WaitlistStatus.NOTIFIED

        result_b, result_c = await asyncio.gather(
            resolver.resolve(offer.id, b.id), resolver.resolve(offer.id, c.id)
        )

        by_outcome = {result_b.outcome: result_b, result_c.outcome: result_c}
        assert set(by_outcome) == {ResolveOutcome.BOOKED, ResolveOutcome.ALREADY_CLAIMED}
        winner = by_outcome[ResolveOutcome.BOOKED].waitlist_entry_id
        loser = by_outcome[ResolveOutcome.ALREADY_CLAIMED].waitlist_entry_id

        assert load(db_session, WaitlistEntry, winner).status == WaitlistStatus.BOOKED
        assert load(db_session, WaitlistEntry, loser).status == WaitlistStatus.ACTIVE
        assert load(db_session, WaitlistEntry, a.id).status == WaitlistStatus.ACTIVE

        loser_name = load(db_session, WaitlistEntry, loser).customer_id
        filled = [text for contact, text in notifier.sent if contact.customer_id == loser_name]
        assert len(filled) == 1
        assert "has been filled" in filled[0]
