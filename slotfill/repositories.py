"""
Repository pattern for database access
Provides clean separation between business logic and data access.

Every status change of an offer or a waitlist entry goes through a
conditional UPDATE (try_transition) whose affected-row count decides
whether the caller won. Nothing here reads a status and writes it back
in a separate statement.
"""

import uuid
from sqlalchemy import update, func
from sqlmodel import Session, select
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
from datetime import date, datetime, timedelta

from slotfill.db_models import (
    AcceptanceLog,
    CustomerContact,
    OfferCandidate,
    OfferStatus,
    SlotOffer,
    TimePreference,
    WaitlistEntry,
    WaitlistStatus,
    utcnow,
)
from slotfill.identity import normalize_phone, parse_telegram_identity
from slotfill.models import Slot

# Marks an optional guard that was not requested (None is a meaningful value)
_UNSET: Any = object()

RELEASABLE_STATUSES = (WaitlistStatus.NOTIFIED, WaitlistStatus.EXPIRED_OFFER)
CANCELLABLE_STATUSES = (
    WaitlistStatus.ACTIVE,
    WaitlistStatus.NOTIFIED,
    WaitlistStatus.EXPIRED_OFFER,
)


class WaitlistRepository:
    """Repository for WaitlistEntry operations"""

    def __init__(self, session: Session):
        self.session = session

    def create_entry(
        self,
        customer_id: str,
        pet_id: str,
        service_id: str,
        requested_date: date,
        time_preference: TimePreference = TimePreference.ANY,
        priority: int = 0,
        notes: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> WaitlistEntry:
        """Create new waitlist entry in the active state"""
        entry = WaitlistEntry(
            customer_id=customer_id,
            pet_id=pet_id,
            service_id=service_id,
            requested_date=requested_date,
            time_preference=time_preference,
            priority=priority,
            notes=notes,
        )
        if created_at is not None:
            entry.created_at = created_at
        self.session.add(entry)
        self.session.commit()
        self.session.refresh(entry)
        return entry

    def get_entry(self, entry_id: uuid.UUID) -> Optional[WaitlistEntry]:
        """Get entry by ID"""
        return self.session.get(WaitlistEntry, entry_id)

    def get_entries(self, entry_ids: Iterable[uuid.UUID]) -> List[WaitlistEntry]:
        """Get entries by ID, in the order the IDs were given"""
        ids = list(entry_ids)
        if not ids:
            return []
        statement = select(WaitlistEntry).where(WaitlistEntry.id.in_(ids))
        by_id = {entry.id: entry for entry in self.session.exec(statement)}
        return [by_id[entry_id] for entry_id in ids if entry_id in by_id]

    def get_customer_entries(self, customer_id: str) -> List[WaitlistEntry]:
        """Get all entries of a customer, oldest first"""
        statement = (
            select(WaitlistEntry)
            .where(WaitlistEntry.customer_id == customer_id)
            .order_by(WaitlistEntry.created_at)
        )
        return list(self.session.exec(statement))

    def find_active_entries(
        self,
        service_id: str,
        earliest: date,
        latest: date,
        limit: Optional[int] = None,
    ) -> List[WaitlistEntry]:
        """
        Active entries for a service whose requested date falls in [earliest, latest]

        Ordered by priority (highest first), then by age (oldest first).
        """
        statement = (
            select(WaitlistEntry)
            .where(
                WaitlistEntry.status == WaitlistStatus.ACTIVE,
                WaitlistEntry.service_id == service_id,
                WaitlistEntry.requested_date >= earliest,
                WaitlistEntry.requested_date <= latest,
            )
            .order_by(
                WaitlistEntry.priority.desc(),
                WaitlistEntry.created_at.asc(),
                WaitlistEntry.id.asc(),
            )
        )
        if limit is not None:
            statement = statement.limit(limit)
        return list(self.session.exec(statement))

    def try_transition(
        self,
        entry_id: uuid.UUID,
        from_statuses: Sequence[WaitlistStatus],
        new_status: WaitlistStatus,
        values: Optional[Dict[str, Any]] = None,
        *,
        offer_id: Any = _UNSET,
        commit: bool = True,
    ) -> bool:
        """
        Move an entry to new_status if its stored status is one of from_statuses.

        Args:
            offer_id: when given, the entry must also still reference this offer
            commit: commit immediately; pass False to batch into a larger unit

        Returns:
            True if exactly this call performed the transition
        """
        statement = update(WaitlistEntry).where(
            WaitlistEntry.id == entry_id,
            WaitlistEntry.status.in_(list(from_statuses)),
        )
        if offer_id is not _UNSET:
            if offer_id is None:
                statement = statement.where(WaitlistEntry.offer_id.is_(None))
            else:
                statement = statement.where(WaitlistEntry.offer_id == offer_id)
        statement = statement.values(status=new_status, **(values or {}))

        result = self.session.exec(statement)
        if commit:
            self.session.commit()
        return result.rowcount == 1

    def release_entries(
        self,
        entry_ids: Iterable[uuid.UUID],
        offer_id: uuid.UUID,
        commit: bool = True,
    ) -> List[uuid.UUID]:
        """
        Return entries held by an offer to the active pool.

        Only entries still notified (or marked expired_offer) for this very offer
        are touched; booked, cancelled or re-offered entries are left alone.

        Returns:
            IDs of the entries that were released
        """
        released = []
        for entry_id in entry_ids:
            if self.try_transition(
                entry_id,
                RELEASABLE_STATUSES,
                WaitlistStatus.ACTIVE,
                {"offer_id": None, "notified_at": None, "offer_expires_at": None},
                offer_id=offer_id,
                commit=False,
            ):
                released.append(entry_id)
        if commit:
            self.session.commit()
        return released

    def find_stranded_holds(
        self, claimed_before: datetime
    ) -> List[Tuple[uuid.UUID, uuid.UUID]]:
        """
        Entries still held by an offer that can no longer use them.

        That is every held candidate of an expired offer, and the non-winning
        candidates of an offer claimed at or before claimed_before. Claims newer
        than that may still be booking and are left alone.

        Returns:
            (entry_id, offer_id) pairs
        """
        statement = (
            select(WaitlistEntry.id, WaitlistEntry.offer_id)
            .join(SlotOffer, SlotOffer.id == WaitlistEntry.offer_id)
            .where(
                WaitlistEntry.status.in_(list(RELEASABLE_STATUSES)),
                (SlotOffer.status == OfferStatus.EXPIRED)
                | (
                    (SlotOffer.status == OfferStatus.CLAIMED)
                    & (SlotOffer.claimed_at <= claimed_before)
                    & (SlotOffer.claimant_entry_id != WaitlistEntry.id)
                ),
            )
        )
        return [(entry_id, offer_id) for entry_id, offer_id in self.session.exec(statement)]

    def cancel_entry(self, entry_id: uuid.UUID) -> bool:
        """Cancel an entry unless it is already booked or cancelled"""
        return self.try_transition(
            entry_id, CANCELLABLE_STATUSES, WaitlistStatus.CANCELLED
        )

    def count_by_status(self) -> Dict[str, int]:
        """Number of entries per status"""
        statement = select(WaitlistEntry.status, func.count()).group_by(
            WaitlistEntry.status
        )
        return {
            WaitlistStatus(status).value: count
            for status, count in self.session.exec(statement)
        }


class OfferRepository:
    """Repository for SlotOffer operations"""

    def __init__(self, session: Session):
        self.session = session

    def create_offer(
        self,
        slot: Slot,
        candidate_ids: Sequence[uuid.UUID],
        discount_percent: int,
        response_window: timedelta,
        now: Optional[datetime] = None,
    ) -> Tuple[Optional[SlotOffer], List[uuid.UUID]]:
        """
        Create a pending offer and claim its candidates, as one unit.

        Each candidate is moved from active to notified with a conditional
        update; candidates that are no longer active are dropped. If nobody
        survives, nothing is written.

        Returns:
            (offer, surviving candidate IDs in rank order), offer is None when
            no candidate survived
        """
        now = now or utcnow()
        expires_at = now + response_window
        offer = SlotOffer(
            service_id=slot.service_id,
            slot_start=slot.start,
            discount_percent=discount_percent,
            response_window_minutes=int(response_window.total_seconds() // 60),
            created_at=now,
            expires_at=expires_at,
        )

        waitlist_repo = WaitlistRepository(self.session)
        survivors: List[uuid.UUID] = []
        try:
            self.session.add(offer)
            self.session.flush()

            for entry_id in dict.fromkeys(candidate_ids):
                notified = waitlist_repo.try_transition(
                    entry_id,
                    (WaitlistStatus.ACTIVE,),
                    WaitlistStatus.NOTIFIED,
                    {
                        "offer_id": offer.id,
                        "notified_at": now,
                        "offer_expires_at": expires_at,
                    },
                    commit=False,
                )
                if notified:
                    self.session.add(
                        OfferCandidate(
                            offer_id=offer.id,
                            waitlist_entry_id=entry_id,
                            position=len(survivors),
                        )
                    )
                    survivors.append(entry_id)

            if not survivors:
                self.session.rollback()
                return None, []

            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        self.session.refresh(offer)
        return offer, survivors

    def get_offer(self, offer_id: uuid.UUID) -> Optional[SlotOffer]:
        """Get offer by ID, always re-read from the database"""
        offer = self.session.get(SlotOffer, offer_id)
        if offer is not None:
            self.session.refresh(offer)
        return offer

    def get_candidate_ids(self, offer_id: uuid.UUID) -> List[uuid.UUID]:
        """Candidate entry IDs of an offer in rank order"""
        statement = (
            select(OfferCandidate.waitlist_entry_id)
            .where(OfferCandidate.offer_id == offer_id)
            .order_by(OfferCandidate.position)
        )
        return list(self.session.exec(statement))

    def is_candidate(self, offer_id: uuid.UUID, entry_id: uuid.UUID) -> bool:
        """Check if an entry is among the candidates of an offer"""
        return self.session.get(OfferCandidate, (offer_id, entry_id)) is not None

    def try_transition(
        self,
        offer_id: uuid.UUID,
        expected_status: OfferStatus,
        new_status: OfferStatus,
        values: Optional[Dict[str, Any]] = None,
        *,
        live_at: Optional[datetime] = None,
        lapsed_at: Optional[datetime] = None,
        expected_claimant: Any = _UNSET,
        commit: bool = True,
    ) -> bool:
        """
        Compare-and-set on an offer's status.

        Args:
            expected_status: status the stored row must still have
            new_status: status to write
            values: extra columns to write in the same statement
            live_at: require expires_at > live_at (offer not yet lapsed)
            lapsed_at: require expires_at <= lapsed_at (offer already lapsed)
            expected_claimant: require this claimant_entry_id (None for no claimant)
            commit: commit immediately; pass False to batch into a larger unit

        Returns:
            True if this call changed the row; of any number of concurrent
            calls with the same expected_status, at most one returns True
        """
        statement = update(SlotOffer).where(
            SlotOffer.id == offer_id,
            SlotOffer.status == expected_status,
        )
        if live_at is not None:
            statement = statement.where(SlotOffer.expires_at > live_at)
        if lapsed_at is not None:
            statement = statement.where(SlotOffer.expires_at <= lapsed_at)
        if expected_claimant is not _UNSET:
            if expected_claimant is None:
                statement = statement.where(SlotOffer.claimant_entry_id.is_(None))
            else:
                statement = statement.where(
                    SlotOffer.claimant_entry_id == expected_claimant
                )
        statement = statement.values(status=new_status, **(values or {}))

        result = self.session.exec(statement)
        if commit:
            self.session.commit()
        return result.rowcount == 1

    def find_lapsed_pending(
        self, now: datetime, limit: Optional[int] = None
    ) -> List[SlotOffer]:
        """Pending offers whose expiration timestamp is at or before now"""
        statement = (
            select(SlotOffer)
            .where(
                SlotOffer.status == OfferStatus.PENDING,
                SlotOffer.expires_at <= now,
            )
            .order_by(SlotOffer.expires_at)
        )
        if limit is not None:
            statement = statement.limit(limit)
        return list(self.session.exec(statement))

    def find_offers_for_customer(
        self, customer_id: str, now: datetime
    ) -> List[Tuple[SlotOffer, uuid.UUID]]:
        """
        Offers a customer could be replying to, with the customer's entry on each.

        An offer qualifies while it is pending or still inside its response
        window. Offers that can still be claimed come first, then the ones
        expiring soonest.
        """
        statement = (
            select(SlotOffer, OfferCandidate.waitlist_entry_id)
            .join(OfferCandidate, OfferCandidate.offer_id == SlotOffer.id)
            .join(WaitlistEntry, WaitlistEntry.id == OfferCandidate.waitlist_entry_id)
            .where(
                WaitlistEntry.customer_id == customer_id,
                (SlotOffer.status == OfferStatus.PENDING)
                | (SlotOffer.expires_at > now),
            )
        )
        rows = list(self.session.exec(statement))
        rows.sort(
            key=lambda row: (
                not (row[0].status == OfferStatus.PENDING and row[0].expires_at > now),
                row[0].expires_at,
            )
        )
        return rows

    def count_by_status(self) -> Dict[str, int]:
        """Number of offers per status"""
        statement = select(SlotOffer.status, func.count()).group_by(SlotOffer.status)
        return {
            OfferStatus(status).value: count
            for status, count in self.session.exec(statement)
        }


class CustomerRepository:
    """Repository for CustomerContact operations"""

    def __init__(self, session: Session):
        self.session = session

    def get_contact(self, customer_id: str) -> Optional[CustomerContact]:
        """Get contact by customer ID"""
        return self.session.get(CustomerContact, customer_id)

    def get_contacts(self, customer_ids: Iterable[str]) -> Dict[str, CustomerContact]:
        """Get contacts keyed by customer ID"""
        ids = list(set(customer_ids))
        if not ids:
            return {}
        statement = select(CustomerContact).where(CustomerContact.customer_id.in_(ids))
        return {contact.customer_id: contact for contact in self.session.exec(statement)}

    def upsert_contact(
        self,
        customer_id: str,
        name: Optional[str] = None,
        phone: Optional[str] = None,
        telegram_chat_id: Optional[int] = None,
    ) -> CustomerContact:
        """Create or update a customer's contact details"""
        contact = self.get_contact(customer_id)
        if contact is None:
            contact = CustomerContact(customer_id=customer_id)
            self.session.add(contact)

        if name is not None:
            contact.name = name
        if phone is not None:
            contact.phone = normalize_phone(phone)
        if telegram_chat_id is not None:
            contact.telegram_chat_id = telegram_chat_id

        self.session.commit()
        self.session.refresh(contact)
        return contact

    def find_by_phone(self, phone: str) -> Optional[CustomerContact]:
        """Find contact by phone number in any common format"""
        statement = select(CustomerContact).where(
            CustomerContact.phone == normalize_phone(phone)
        )
        return self.session.exec(statement).first()

    def find_by_sender(self, sender: str) -> Optional[CustomerContact]:
        """
        Find the contact behind a normalized sender identity

        Args:
            sender: "telegram:<chat id>" or an E.164 phone number
        """
        chat_id = parse_telegram_identity(sender)
        if chat_id is not None:
            statement = select(CustomerContact).where(
                CustomerContact.telegram_chat_id == chat_id
            )
            return self.session.exec(statement).first()
        return self.find_by_phone(sender)

    def link_telegram(self, phone: str, chat_id: int) -> Optional[CustomerContact]:
        """Attach a Telegram chat to the contact owning this phone number"""
        contact = self.find_by_phone(phone)
        if contact is None:
            return None
        contact.telegram_chat_id = chat_id
        self.session.commit()
        self.session.refresh(contact)
        return contact


class AcceptanceLogRepository:
    """Repository for AcceptanceLog operations"""

    def __init__(self, session: Session):
        self.session = session

    def log_acceptance(
        self,
        sender: str,
        text: str,
        outcome: str,
        offer_id: Optional[uuid.UUID] = None,
        waitlist_entry_id: Optional[uuid.UUID] = None,
    ) -> AcceptanceLog:
        """Record a processed inbound message"""
        log = AcceptanceLog(
            sender=sender,
            text=text,
            outcome=outcome,
            offer_id=offer_id,
            waitlist_entry_id=waitlist_entry_id,
        )
        self.session.add(log)
        self.session.commit()
        self.session.refresh(log)
        return log

    def get_recent_logs(
        self, offer_id: Optional[uuid.UUID] = None, limit: int = 100
    ) -> List[AcceptanceLog]:
        """Get recent inbound messages, newest first"""
        statement = select(AcceptanceLog).order_by(AcceptanceLog.received_at.desc())

        if offer_id:
            statement = statement.where(AcceptanceLog.offer_id == offer_id)

        statement = statement.limit(limit)
        return list(self.session.exec(statement))
