"""Role-specific dashboards and the occurrence stats strip.

Each dashboard fans its reads out with ``asyncio.gather`` and degrades
to zeros or empty lists for any read that fails, so a backend hiccup
shows an empty board instead of an error.
"""

import asyncio
import logging
from collections import Counter
from datetime import timedelta
from pathlib import Path

from jinja2 import Environment, FileSystemLoader

from sigor.auth import UserContext, get_current_user
from sigor.core.config import get_org_config, get_timezone, local_now
from sigor.core.constants import (
    ACTIVE_STATUSES,
    IN_PROGRESS_STATUSES,
    OCCURRENCE_TYPE_LABELS,
    PRIORITY_LABELS,
    ROLE_LABELS,
    STATUS_LABELS,
    TERMINAL_STATUSES,
)
from sigor.core.store import Backend
from sigor.fleet.store import CrewStore, OrganizationStore, ProfileStore, VehicleStore
from sigor.occurrences.models import Occurrence
from sigor.occurrences.store import DispatchStore, OccurrenceStore

logger = logging.getLogger(__name__)

_TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"
_jinja_env = Environment(loader=FileSystemLoader(_TEMPLATES_DIR), autoescape=True)

MAX_OCCURRENCES = 10_000
RECENT_LIMIT = 10
TREND_DAYS = 7


def dashboard_kind(user: UserContext) -> str:
    """Pick the dashboard for a user: admin > dispatcher > team > observer."""
    if user.is_admin:
        return "admin"
    if user.is_dispatcher:
        return "dispatcher"
    if user.is_operational:
        return "team"
    if user.is_observer:
        return "observer"
    return "dispatcher"


def _or_default(result, default, what: str):
    """Replace a failed gather result with ``default``, logging the failure."""
    if isinstance(result, BaseException):
        logger.error("Dashboard: %s fetch failed", what, exc_info=result)
        return default
    return result


def _labelled_counts(counts: Counter, labels: dict[str, str], key: str) -> list[dict]:
    """Non-zero counts in vocabulary order, each with its display label."""
    return [
        {key: value, "name": label, "value": counts[value]}
        for value, label in labels.items()
        if counts[value]
    ]


def _weekly_trend(occurrences: list[Occurrence]) -> list[dict]:
    """Occurrences created per local day over the last week, oldest first."""
    tz = get_timezone()
    per_day = Counter(o.created_at.astimezone(tz).date() for o in occurrences)
    today = local_now().date()
    trend = []
    for offset in range(TREND_DAYS - 1, -1, -1):
        day = today - timedelta(days=offset)
        trend.append({"date": day.isoformat(), "day": f"{day:%a}", "occurrences": per_day[day]})
    return trend


def _occurrence_row(occurrence: Occurrence) -> dict:
    row = occurrence.to_cosmos()
    row["status_label"] = STATUS_LABELS.get(occurrence.status, occurrence.status)
    row["priority_label"] = PRIORITY_LABELS.get(occurrence.priority, occurrence.priority)
    row["type_label"] = OCCURRENCE_TYPE_LABELS.get(occurrence.type, occurrence.type)
    return row


# ---------------------------------------------------------------------------
# Dashboards
# ---------------------------------------------------------------------------


async def get_admin_dashboard(backend: Backend) -> dict:
    """System-wide counts, occurrence breakdowns, and the weekly trend."""
    users, organizations, vehicles, occurrences = await asyncio.gather(
        ProfileStore(backend).count(),
        OrganizationStore(backend).count(),
        VehicleStore(backend).count(),
        OccurrenceStore(backend).list_occurrences(max_items=MAX_OCCURRENCES),
        return_exceptions=True,
    )
    users = _or_default(users, 0, "profiles")
    organizations = _or_default(organizations, 0, "organizations")
    vehicles = _or_default(vehicles, 0, "vehicles")
    occurrences = _or_default(occurrences, [], "occurrences")

    active = [o for o in occurrences if o.status in ACTIVE_STATUSES]
    return {
        "total_users": users,
        "total_organizations": organizations,
        "total_vehicles": vehicles,
        "total_occurrences": len(occurrences),
        "active_occurrences": len(active),
        "critical_occurrences": sum(1 for o in active if o.priority == "critical"),
        "occurrences_by_type": _labelled_counts(
            Counter(o.type for o in occurrences), OCCURRENCE_TYPE_LABELS, "type"
        ),
        "occurrences_by_priority": _labelled_counts(
            Counter(o.priority for o in occurrences), PRIORITY_LABELS, "priority"
        ),
        "weekly_trend": _weekly_trend(occurrences),
    }


async def get_dispatcher_dashboard(backend: Backend, organization_id: str | None) -> dict:
    """The dispatch queue and the vehicles free to take it."""
    queue, vehicles = await asyncio.gather(
        OccurrenceStore(backend).list_occurrences(
            organization_id=organization_id,
            statuses={"pending", "dispatched"},
            queue=True,
        ),
        VehicleStore(backend).list_available(organization_id),
        return_exceptions=True,
    )
    queue = _or_default(queue, [], "dispatch queue")
    vehicles = _or_default(vehicles, [], "available vehicles")

    return {
        "pending_occurrences": [_occurrence_row(o) for o in queue],
        "available_vehicles": [v.to_cosmos() for v in vehicles],
        "critical_count": sum(1 for o in queue if o.priority == "critical"),
        "high_count": sum(1 for o in queue if o.priority == "high"),
    }


async def get_observer_dashboard(backend: Backend) -> dict:
    """Read-only overview across every organization."""
    try:
        occurrences = await OccurrenceStore(backend).list_occurrences(max_items=MAX_OCCURRENCES)
    except Exception:
        logger.exception("Dashboard: observer occurrences fetch failed")
        occurrences = []

    try:
        orgs = await OrganizationStore(backend).get_many([o.organization_id for o in occurrences])
    except Exception:
        logger.exception("Dashboard: organization names fetch failed")
        orgs = {}

    def org_name(o: Occurrence) -> str:
        org = orgs.get(o.organization_id)
        return org.name if org else "Unknown"

    recent = []
    for o in occurrences[:RECENT_LIMIT]:
        row = _occurrence_row(o)
        row["organization_name"] = org_name(o)
        recent.append(row)

    return {
        "total": len(occurrences),
        "active": sum(1 for o in occurrences if o.status in ACTIVE_STATUSES),
        "completed": sum(1 for o in occurrences if o.status == "completed"),
        "by_organization": [
            {"name": name, "value": n} for name, n in Counter(map(org_name, occurrences)).items()
        ],
        "by_status": _labelled_counts(
            Counter(o.status for o in occurrences), STATUS_LABELS, "status"
        ),
        "recent_occurrences": recent,
    }


async def get_team_dashboard(backend: Backend, user_id: str) -> dict:
    """The crew member's current vehicle and its open dispatches."""
    empty = {"vehicle": None, "dispatches": []}
    try:
        assignment = await CrewStore(backend).get_active_for_user(user_id)
        if assignment is None:
            return empty

        vehicle, dispatches = await asyncio.gather(
            VehicleStore(backend).get(assignment.vehicle_id),
            DispatchStore(backend).list_dispatches(
                vehicle_id=assignment.vehicle_id, open_only=True
            ),
        )
        occurrences = await OccurrenceStore(backend).get_many(
            [d.occurrence_id for d in dispatches]
        )
    except Exception:
        logger.exception("Dashboard: team data fetch failed for %s", user_id)
        return empty

    rows = []
    for d in dispatches:
        row = d.to_cosmos()
        occurrence = occurrences.get(d.occurrence_id)
        row["occurrence"] = _occurrence_row(occurrence) if occurrence else None
        rows.append(row)

    return {
        "vehicle": vehicle.to_cosmos() if vehicle else None,
        "joined_at": assignment.joined_at.isoformat(),
        "dispatches": rows,
    }


async def get_stats(backend: Backend, organization_id: str | None = None) -> dict:
    """Occurrence and vehicle counters shown above every dashboard."""
    occurrences, vehicle_counts = await asyncio.gather(
        OccurrenceStore(backend).list_occurrences(
            organization_id=organization_id, max_items=MAX_OCCURRENCES
        ),
        VehicleStore(backend).count_by_status(),
        return_exceptions=True,
    )
    occurrences = _or_default(occurrences, [], "stats occurrences")
    vehicle_counts = _or_default(vehicle_counts, {}, "vehicle status counts")

    statuses = Counter(o.status for o in occurrences)
    return {
        "total": len(occurrences),
        "pending": statuses["pending"],
        "in_progress": sum(statuses[s] for s in IN_PROGRESS_STATUSES),
        "completed": sum(statuses[s] for s in TERMINAL_STATUSES),
        "vehicles_available": vehicle_counts.get("available", 0),
        "vehicles_busy": vehicle_counts.get("busy", 0),
    }


async def get_dashboard(backend: Backend) -> dict:
    """Dashboard for the current user, with the stats strip.

    Returns:
        Dict with "kind", "user", "stats", and "data"
    """
    user = get_current_user()
    kind = dashboard_kind(user)
    logger.info("Dashboard (%s) requested by %s", kind, user.email or user.user_id)

    if kind == "admin":
        data_coro = get_admin_dashboard(backend)
    elif kind == "team":
        data_coro = get_team_dashboard(backend, user.user_id)
    elif kind == "observer":
        data_coro = get_observer_dashboard(backend)
    else:
        data_coro = get_dispatcher_dashboard(backend, user.organization_id)

    data, stats = await asyncio.gather(data_coro, get_stats(backend, user.organization_id))
    return {
        "kind": kind,
        "user": {
            "id": user.user_id,
            "name": user.name,
            "roles": sorted(ROLE_LABELS.get(r, r) for r in user.roles),
        },
        "stats": stats,
        "data": data,
    }


async def render_dashboard_html(backend: Backend) -> str:
    """Render the current user's dashboard as a standalone HTML page."""
    context = await get_dashboard(backend)
    template = _jinja_env.get_template("dashboard.html")
    return template.render(
        company_name=get_org_config().company_name,
        generated_at=f"{local_now():%d/%m/%Y %H:%M}",
        **context,
    )
