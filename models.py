import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import field_validator
from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes. SQLite hands timestamps back without tzinfo."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def timestamp_field(**kwargs):
    return Field(sa_type=DateTime(timezone=True), **kwargs)


class TrackedRecord(SQLModel):
    """Base for versioned records; timestamps are always timezone-aware UTC."""

    @field_validator(
        "created_at", "updated_at", "completed_at", "cancelled_at", mode="after", check_fields=False
    )
    @classmethod
    def _utc_timestamps(cls, value):
        return as_utc(value)


class OrgRole(str, Enum):
    DONOR = "donor"
    RECIPIENT = "recipient"


class DonationStatus(str, Enum):
    OPEN = "open"
    MATCHED = "matched"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class MatchStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Condition(str, Enum):
    NEW = "new"
    GOOD = "good"
    USED = "used"


class Urgency(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Organization(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    email: str = Field(index=True)
    name: str
    role: OrgRole
    password_hash: str


class Donation(TrackedRecord, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    donor_org_id: str = Field(index=True)

    category: str = Field(index=True)
    quantity: str
    condition: Condition
    description: str = ""
    city: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    status: DonationStatus = Field(default=DonationStatus.OPEN, index=True)
    match_id: Optional[str] = None

    version: int = 1
    created_at: datetime = timestamp_field(default_factory=utcnow)
    updated_at: datetime = timestamp_field(default_factory=utcnow)


class Request(TrackedRecord, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    requesting_org_id: str = Field(index=True)

    category: str = Field(index=True)
    quantity: str
    urgency: Urgency = Urgency.MEDIUM
    description: str = ""
    city: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    fulfilled: bool = Field(default=False, index=True)
    fulfilled_by_match_id: Optional[str] = None

    version: int = 1
    created_at: datetime = timestamp_field(default_factory=utcnow)
    updated_at: datetime = timestamp_field(default_factory=utcnow)


class Match(TrackedRecord, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    donation_id: str = Field(index=True)
    request_id: Optional[str] = None
    claimant_org_id: str = Field(index=True)

    status: MatchStatus = Field(default=MatchStatus.ACTIVE, index=True)
    score: Optional[float] = None

    version: int = 1
    created_at: datetime = timestamp_field(default_factory=utcnow)
    updated_at: datetime = timestamp_field(default_factory=utcnow)
    completed_at: Optional[datetime] = timestamp_field(default=None)
    cancelled_at: Optional[datetime] = timestamp_field(default=None)
