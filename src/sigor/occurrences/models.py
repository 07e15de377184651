"""Pydantic models for occurrences, dispatches, and their audit trail."""

import secrets
from datetime import datetime

from pydantic import Field

from sigor.core.constants import TERMINAL_STATUSES, OccurrenceStatus, OccurrenceType, PriorityLevel
from sigor.core.store import Document, utcnow

MAX_DESCRIPTION_LENGTH = 10_000


class Occurrence(Document):
    """An incident tracked from the first call to closure.

    Occurrences are never deleted: a mistaken or withdrawn call moves to
    ``cancelled``.
    """

    code: str = Field(max_length=40)  # e.g. "OC-20261018-3FA9C1"
    organization_id: str
    type: OccurrenceType
    priority: PriorityLevel
    status: OccurrenceStatus = "pending"
    title: str = Field(min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=MAX_DESCRIPTION_LENGTH)

    # Caller and location
    caller_name: str | None = Field(default=None, max_length=200)
    caller_phone: str | None = Field(default=None, max_length=40)
    location_address: str | None = Field(default=None, max_length=500)
    location_reference: str | None = Field(default=None, max_length=500)
    latitude: float | None = None
    longitude: float | None = None

    # Tracking
    created_by: str
    closed_by: str | None = None
    closed_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class Dispatch(Document):
    """One assignment of a vehicle to an occurrence.

    The dispatch status drives the occurrence status. An occurrence can
    collect several dispatches over its life (re-dispatch), normally with
    one open at a time.
    """

    occurrence_id: str
    vehicle_id: str
    dispatched_by: str
    status: OccurrenceStatus = "dispatched"
    notes: str | None = Field(default=None, max_length=2000)
    dispatched_at: datetime = Field(default_factory=utcnow)
    acknowledged_at: datetime | None = None  # first en_route only
    arrived_at: datetime | None = None  # latest on_scene
    completed_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime | None = None

    @property
    def is_open(self) -> bool:
        return self.status not in TERMINAL_STATUSES


class OccurrenceHistory(Document):
    """Append-only audit entry for one status transition."""

    occurrence_id: str  # Partition key
    dispatch_id: str | None = None
    previous_status: OccurrenceStatus | None = None
    new_status: OccurrenceStatus
    changed_by: str
    notes: str | None = Field(default=None, max_length=2000)
    created_at: datetime = Field(default_factory=utcnow)


def generate_code(prefix: str, now: datetime | None = None) -> str:
    """Human-readable occurrence code, e.g. ``OC-20261018-3FA9C1``.

    Uniqueness is the backend's concern; collisions are not checked here.
    """
    now = now or utcnow()
    return f"{prefix}-{now:%Y%m%d}-{secrets.token_hex(3).upper()}"
