"""Pydantic models for organizations, bases, vehicles, profiles, and crews."""

from datetime import datetime

from pydantic import Field

from sigor.core.constants import AppRole, OrganizationType, VehicleStatus
from sigor.core.store import Document, utcnow


class Organization(Document):
    """A responding agency (police, medical service, or fire department)."""

    name: str = Field(max_length=200)
    type: OrganizationType
    code: str = Field(max_length=20)
    phone: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime | None = None


class Base(Document):
    """A station belonging to one organization."""

    organization_id: str
    name: str = Field(max_length=200)
    address: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime | None = None


class Vehicle(Document):
    """A vehicle stationed at a base.

    ``organization_id`` is copied from the base at creation so that
    organization-scoped queries filter in the backend instead of joining.
    ``status`` must be ``busy`` while a dispatch is open; the lifecycle
    mutators maintain that, the store does not.
    """

    base_id: str
    organization_id: str
    identifier: str = Field(max_length=40)  # e.g. "VTR-1021", "USA-03"
    type: str = ""  # e.g. "patrol", "ambulance", "engine"
    status: VehicleStatus = "available"
    capacity: int = 4
    base_name: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime | None = None


class Profile(Document):
    """A user. ``id`` is the auth service's user id."""

    full_name: str = Field(max_length=200)
    badge_number: str | None = None
    phone: str | None = None
    organization_id: str | None = None
    base_id: str | None = None
    roles: list[AppRole] = Field(default_factory=list)
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime | None = None


class CrewAssignment(Document):
    """A user's tour of duty aboard a vehicle (``vehicle_crew``).

    At most one row per user has ``is_active = True``: that row's
    vehicle is the user's current vehicle.
    """

    vehicle_id: str
    user_id: str
    joined_at: datetime = Field(default_factory=utcnow)
    left_at: datetime | None = None
    is_active: bool = True
    updated_at: datetime | None = None
