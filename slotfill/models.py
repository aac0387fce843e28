"""
Type-safe data models for the engine
Uses dataclasses and enums for results passed between services and surfaces
"""
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import List, Optional


@dataclass(frozen=True)
class Slot:
    """An opening of one service at one start time"""
    service_id: str
    start: datetime

    @property
    def date(self) -> date:
        return self.start.date()


class ResolveOutcome(str, Enum):
    BOOKED = "booked"
    ALREADY_BOOKED = "already_booked"
    BOOKING_IN_PROGRESS = "booking_in_progress"
    ALREADY_CLAIMED = "already_claimed"
    EXPIRED = "expired"
    NOT_FOUND = "not_found"
    BOOKING_FAILED = "booking_failed"
    IGNORED = "ignored"


@dataclass
class ResolveResult:
    """Outcome of one acceptance, plus the reply owed to the respondent"""
    outcome: ResolveOutcome
    offer_id: Optional[uuid.UUID] = None
    waitlist_entry_id: Optional[uuid.UUID] = None
    appointment_id: Optional[str] = None
    reply: Optional[str] = None
    released_entry_ids: List[uuid.UUID] = field(default_factory=list)

    @property
    def booked(self) -> bool:
        return self.outcome == ResolveOutcome.BOOKED


@dataclass
class OfferCreationResult:
    """What the admin slot-fill action reports back"""
    offer_id: Optional[uuid.UUID]
    expires_at: Optional[datetime] = None
    candidate_ids: List[uuid.UUID] = field(default_factory=list)
    notifications_sent: int = 0
    notifications_failed: int = 0
    reason: Optional[str] = None

    @property
    def created(self) -> bool:
        return self.offer_id is not None
