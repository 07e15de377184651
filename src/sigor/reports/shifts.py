"""Crew shift aggregation for the shift report.

A shift is one ``vehicle_crew`` row. Open shifts (no ``left_at``) count
up to a single ``now`` chosen per report, so every total in one report
agrees with the others.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo

from sigor.core.config import get_timezone
from sigor.core.store import Backend, utcnow
from sigor.fleet.models import CrewAssignment, Vehicle
from sigor.fleet.store import CrewStore, ProfileStore, StationStore, VehicleStore

logger = logging.getLogger(__name__)

_MINUTE_US = 60_000_000


def shift_minutes(joined_at: datetime, left_at: datetime | None, now: datetime) -> int:
    """Whole minutes from ``joined_at`` to ``left_at`` (or ``now``), truncated toward zero."""
    micros = ((left_at or now) - joined_at) // timedelta(microseconds=1)
    minutes = abs(micros) // _MINUTE_US
    return minutes if micros >= 0 else -minutes


def format_duration(minutes: int) -> str:
    """``125`` -> ``"2h 5min"``."""
    sign = "-" if minutes < 0 else ""
    hours, mins = divmod(abs(minutes), 60)
    return f"{sign}{hours}h {mins}min"


def local_day_bounds(
    start: date, end: date, tz: ZoneInfo | None = None
) -> tuple[datetime, datetime]:
    """Start of ``start`` through the last millisecond of ``end``, in local time."""
    tz = tz or get_timezone()
    lower = datetime.combine(start, time.min, tzinfo=tz)
    upper = datetime.combine(end, time(23, 59, 59, 999_000), tzinfo=tz)
    return lower, upper


@dataclass
class ShiftRecord:
    """A crew assignment joined with its vehicle, base, and operator."""

    assignment: CrewAssignment
    vehicle: Vehicle | None = None
    base_name: str | None = None
    operator_name: str | None = None

    @property
    def user_id(self) -> str:
        return self.assignment.user_id

    @property
    def vehicle_id(self) -> str:
        return self.assignment.vehicle_id

    @property
    def joined_at(self) -> datetime:
        return self.assignment.joined_at

    @property
    def left_at(self) -> datetime | None:
        return self.assignment.left_at

    def minutes(self, now: datetime) -> int:
        return shift_minutes(self.joined_at, self.left_at, now)


@dataclass
class VehicleSummary:
    vehicle_id: str
    identifier: str
    type: str
    base_name: str
    total_minutes: int = 0
    shifts: int = 0


@dataclass
class OperatorSummary:
    user_id: str
    name: str
    total_minutes: int = 0
    shifts: int = 0
    vehicles: list[str] = field(default_factory=list)


async def fetch_shifts(
    backend: Backend,
    start: date,
    end: date,
    *,
    user_id: str | None = None,
    vehicle_id: str | None = None,
) -> list[ShiftRecord]:
    """Shifts that began between two local dates (inclusive), newest first.

    Args:
        backend: Connected backend
        start: First local day
        end: Last local day
        user_id: Only this operator's shifts
        vehicle_id: Only shifts aboard this vehicle

    Returns:
        Joined shift records; vehicle, base, or operator is None when the
        referenced record no longer exists
    """
    lower, upper = local_day_bounds(start, end)
    assignments = await CrewStore(backend).list_shifts(
        lower, upper, user_id=user_id, vehicle_id=vehicle_id
    )

    vehicles = await VehicleStore(backend).get_many([a.vehicle_id for a in assignments])
    profiles = await ProfileStore(backend).get_many([a.user_id for a in assignments])
    bases = await StationStore(backend).get_many([v.base_id for v in vehicles.values()])

    records = []
    for a in assignments:
        vehicle = vehicles.get(a.vehicle_id)
        base_name = None
        if vehicle is not None:
            base = bases.get(vehicle.base_id)
            base_name = base.name if base else (vehicle.base_name or None)
        profile = profiles.get(a.user_id)
        records.append(
            ShiftRecord(
                assignment=a,
                vehicle=vehicle,
                base_name=base_name,
                operator_name=profile.full_name if profile else None,
            )
        )
    logger.info("Loaded %d shifts for %s..%s", len(records), start, end)
    return records


def total_minutes(records: list[ShiftRecord], now: datetime | None = None) -> int:
    now = now or utcnow()
    return sum(r.minutes(now) for r in records)


def vehicle_summary(
    records: list[ShiftRecord], now: datetime | None = None
) -> list[VehicleSummary]:
    """Hours per vehicle, most hours first. Shifts of deleted vehicles are skipped."""
    now = now or utcnow()
    summary: dict[str, VehicleSummary] = {}
    for r in records:
        if r.vehicle is None:
            continue
        entry = summary.get(r.vehicle_id)
        if entry is None:
            entry = summary[r.vehicle_id] = VehicleSummary(
                vehicle_id=r.vehicle_id,
                identifier=r.vehicle.identifier,
                type=r.vehicle.type,
                base_name=r.base_name or "N/A",
            )
        entry.total_minutes += r.minutes(now)
        entry.shifts += 1
    return sorted(summary.values(), key=lambda s: s.total_minutes, reverse=True)


def operator_summary(
    records: list[ShiftRecord], now: datetime | None = None
) -> list[OperatorSummary]:
    """Hours per operator, most hours first. Shifts of unknown users are skipped."""
    now = now or utcnow()
    summary: dict[str, OperatorSummary] = {}
    for r in records:
        if r.operator_name is None:
            continue
        entry = summary.get(r.user_id)
        if entry is None:
            entry = summary[r.user_id] = OperatorSummary(user_id=r.user_id, name=r.operator_name)
        entry.total_minutes += r.minutes(now)
        entry.shifts += 1
        if r.vehicle is not None and r.vehicle.identifier not in entry.vehicles:
            entry.vehicles.append(r.vehicle.identifier)
    return sorted(summary.values(), key=lambda s: s.total_minutes, reverse=True)
