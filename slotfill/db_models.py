"""
Database models using SQLModel
Waitlist entries, slot offers and their candidates, contacts and the reply audit log
"""

import uuid
from enum import Enum
from sqlmodel import SQLModel, Field
from typing import Optional
from datetime import date, datetime, timezone


def utcnow() -> datetime:
    """Naive UTC timestamp, the format every table stores"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class WaitlistStatus(str, Enum):
    ACTIVE = "active"
    NOTIFIED = "notified"
    BOOKED = "booked"
    EXPIRED_OFFER = "expired_offer"
    CANCELLED = "cancelled"


class OfferStatus(str, Enum):
    PENDING = "pending"
    CLAIMED = "claimed"
    EXPIRED = "expired"


class TimePreference(str, Enum):
    MORNING = "morning"
    AFTERNOON = "afternoon"
    ANY = "any"


class WaitlistEntry(SQLModel, table=True):
    """A customer's request to be offered an opening for a service"""

    __tablename__ = "waitlist_entries"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    customer_id: str = Field(index=True, max_length=64)
    pet_id: str = Field(max_length=64)
    service_id: str = Field(index=True, max_length=64)
    requested_date: date
    time_preference: TimePreference = Field(default=TimePreference.ANY)
    priority: int = Field(default=0)
    notes: Optional[str] = Field(default=None)
    status: WaitlistStatus = Field(default=WaitlistStatus.ACTIVE, index=True)
    created_at: datetime = Field(default_factory=utcnow, index=True)

    # Live offer tracking, cleared when the entry is released
    offer_id: Optional[uuid.UUID] = Field(default=None, index=True)
    notified_at: Optional[datetime] = Field(default=None)
    offer_expires_at: Optional[datetime] = Field(default=None)


class SlotOffer(SQLModel, table=True):
    """Time-boxed offer of one open slot to a ranked set of waitlist entries"""

    __tablename__ = "slot_offers"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    service_id: str = Field(index=True, max_length=64)
    slot_start: datetime
    discount_percent: int = Field(default=0, ge=0, le=100)
    response_window_minutes: int
    status: OfferStatus = Field(default=OfferStatus.PENDING, index=True)
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime = Field(index=True)

    claimant_entry_id: Optional[uuid.UUID] = Field(default=None)
    claimed_at: Optional[datetime] = Field(default=None)
    appointment_id: Optional[str] = Field(default=None, max_length=128)
    expired_at: Optional[datetime] = Field(default=None)


class OfferCandidate(SQLModel, table=True):
    """Ordered membership of a waitlist entry in an offer"""

    __tablename__ = "offer_candidates"

    offer_id: uuid.UUID = Field(foreign_key="slot_offers.id", primary_key=True)
    waitlist_entry_id: uuid.UUID = Field(
        foreign_key="waitlist_entries.id", primary_key=True, index=True
    )
    position: int


class CustomerContact(SQLModel, table=True):
    """Where to reach a customer, and how to recognise their replies"""

    __tablename__ = "customer_contacts"

    customer_id: str = Field(primary_key=True, max_length=64)
    name: Optional[str] = Field(default=None, max_length=255)
    phone: Optional[str] = Field(default=None, index=True, max_length=32)
    telegram_chat_id: Optional[int] = Field(default=None, index=True)


class AcceptanceLog(SQLModel, table=True):
    """Audit trail of processed inbound replies"""

    __tablename__ = "acceptance_logs"

    id: Optional[int] = Field(default=None, primary_key=True)
    received_at: datetime = Field(default_factory=utcnow, index=True)
    sender: str = Field(max_length=64)
    text: str
    offer_id: Optional[uuid.UUID] = Field(default=None, index=True)
    waitlist_entry_id: Optional[uuid.UUID] = Field(default=None)
    outcome: str = Field(max_length=32)
