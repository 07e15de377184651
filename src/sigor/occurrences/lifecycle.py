"""Occurrence and dispatch status lifecycle.

States::

    pending -> dispatched -> en_route -> on_scene -> transporting -> completed
                    \\________________________________________________/
                                  cancelled (from any open state)

Crews may skip forward (``dispatched -> on_scene``), and re-sending the
current state is accepted. Nothing leaves ``completed`` or ``cancelled``.

Every mutator here performs several independent writes with no
transaction: a failure partway leaves the earlier writes in place.
"""

import logging

from sigor.auth import get_current_user
from sigor.core.config import get_org_config
from sigor.core.constants import TERMINAL_STATUSES, OccurrenceStatus
from sigor.core.store import Backend, NotFoundError, utcnow
from sigor.fleet.store import VehicleStore
from sigor.occurrences.models import Dispatch, Occurrence, OccurrenceHistory, generate_code
from sigor.occurrences.store import DispatchStore, HistoryStore, OccurrenceStore

logger = logging.getLogger(__name__)

TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"dispatched", "cancelled"}),
    "dispatched": frozenset({"en_route", "on_scene", "completed", "cancelled"}),
    "en_route": frozenset({"on_scene", "completed", "cancelled"}),
    "on_scene": frozenset({"transporting", "completed", "cancelled"}),
    "transporting": frozenset({"completed", "cancelled"}),
    "completed": frozenset(),
    "cancelled": frozenset(),
}

# Optional fields a caller may set when registering an occurrence
OCCURRENCE_DETAIL_FIELDS = frozenset(
    {
        "description",
        "caller_name",
        "caller_phone",
        "location_address",
        "location_reference",
        "latitude",
        "longitude",
    }
)


class InvalidTransitionError(ValueError):
    """Raised for a status move the lifecycle does not allow."""

    def __init__(self, current: str, new: str) -> None:
        super().__init__(f"Invalid status transition: {current} -> {new}")
        self.current = current
        self.new = new


def can_transition(current: str, new: str) -> bool:
    if current in TERMINAL_STATUSES:
        return False
    return new == current or new in TRANSITIONS.get(current, frozenset())


def validate_transition(current: str, new: str) -> None:
    """Raise InvalidTransitionError unless ``current -> new`` is legal."""
    if new not in TRANSITIONS:
        raise ValueError(f"Unknown status: {new}")
    if not can_transition(current, new):
        raise InvalidTransitionError(current, new)


async def create_occurrence(
    backend: Backend,
    organization_id: str,
    type: str,
    priority: str,
    title: str,
    **details,
) -> Occurrence:
    """Register a new pending occurrence on behalf of the current user.

    Args:
        backend: Connected backend
        organization_id: Owning organization
        type: Occurrence type (police, medical, fire, rescue, other)
        priority: low, medium, high or critical
        title: Short summary shown in queues and alerts
        **details: Optional description, caller and location fields

    Raises:
        RuntimeError: If no user is authenticated
        ValueError: If ``details`` names a field outside the caller and
            location details
        pydantic.ValidationError: If a field is invalid
    """
    unknown = sorted(set(details) - OCCURRENCE_DETAIL_FIELDS)
    if unknown:
        raise ValueError(f"Unknown occurrence fields: {', '.join(unknown)}")

    user = get_current_user()
    occurrence = Occurrence(
        code=generate_code(get_org_config().occurrence_code_prefix),
        organization_id=organization_id,
        type=type,
        priority=priority,
        title=title,
        created_by=user.user_id,
        **details,
    )
    created = await OccurrenceStore(backend).create(occurrence)
    logger.info(
        "Occurrence %s created (%s, %s) by %s", created.code, type, priority, user.user_id
    )
    return created


async def dispatch_vehicle(
    backend: Backend,
    occurrence_id: str,
    vehicle_id: str,
    dispatched_by: str,
    notes: str | None = None,
    *,
    record_history: bool = False,
) -> Dispatch:
    """Assign a vehicle to an occurrence.

    Writes, in order: vehicle -> ``busy``, new Dispatch (``dispatched``),
    occurrence -> ``dispatched``. The vehicle's availability is not
    re-checked and calling twice creates two dispatches.

    Args:
        backend: Connected backend
        occurrence_id: Occurrence to respond to
        vehicle_id: Vehicle being sent (expected to be ``available``)
        dispatched_by: User id of the dispatcher
        notes: Optional instructions for the crew
        record_history: Also append a ``pending -> dispatched`` history row

    Raises:
        NotFoundError: If the occurrence or vehicle does not exist
        InvalidTransitionError: If the occurrence is already closed
    """
    occurrences = OccurrenceStore(backend)
    occurrence = await occurrences.get(occurrence_id)
    if occurrence is None:
        raise NotFoundError(f"Occurrence not found: {occurrence_id}")
    if occurrence.is_terminal:
        raise InvalidTransitionError(occurrence.status, "dispatched")

    await VehicleStore(backend).set_status(vehicle_id, "busy")

    dispatch = await DispatchStore(backend).create(
        Dispatch(
            occurrence_id=occurrence_id,
            vehicle_id=vehicle_id,
            dispatched_by=dispatched_by,
            notes=notes,
        )
    )

    previous = occurrence.status
    occurrence.status = "dispatched"
    await occurrences.replace(occurrence)

    if record_history:
        await HistoryStore(backend).append(
            OccurrenceHistory(
                occurrence_id=occurrence_id,
                dispatch_id=dispatch.id,
                previous_status=previous,
                new_status="dispatched",
                changed_by=dispatched_by,
                notes=notes,
            )
        )

    logger.info("Vehicle %s dispatched to occurrence %s", vehicle_id, occurrence.code)
    return dispatch


async def update_dispatch_status(
    backend: Backend,
    dispatch_id: str,
    new_status: OccurrenceStatus,
    notes: str | None = None,
) -> Dispatch:
    """Advance a dispatch and carry the occurrence along with it.

    Stamps ``acknowledged_at`` on the first ``en_route``, ``arrived_at`` on
    every ``on_scene``, and ``completed_at`` on completion or
    cancellation, which also frees the vehicle. Appends exactly one
    history row.

    A terminal status only closes the occurrence once no other dispatch
    on it is open; until then the occurrence keeps its current status.

    Raises:
        RuntimeError: If no user is authenticated
        NotFoundError: If the dispatch does not exist
        InvalidTransitionError: If the move is not allowed
    """
    user = get_current_user()

    dispatches = DispatchStore(backend)
    dispatch = await dispatches.get(dispatch_id)
    if dispatch is None:
        raise NotFoundError(f"Dispatch not found: {dispatch_id}")

    previous = dispatch.status
    validate_transition(previous, new_status)

    now = utcnow()
    dispatch.status = new_status
    if new_status == "en_route":
        if dispatch.acknowledged_at is None:
            dispatch.acknowledged_at = now
    elif new_status == "on_scene":
        dispatch.arrived_at = now
    elif new_status in TERMINAL_STATUSES:
        dispatch.completed_at = now
        await VehicleStore(backend).set_status(dispatch.vehicle_id, "available")

    updated = await dispatches.replace(dispatch)

    occurrences = OccurrenceStore(backend)
    occurrence = await occurrences.get(dispatch.occurrence_id)
    if occurrence is None:
        logger.warning(
            "Dispatch %s references missing occurrence %s", dispatch_id, dispatch.occurrence_id
        )
    elif not occurrence.is_terminal:
        still_open = []
        if new_status in TERMINAL_STATUSES:
            still_open = await dispatches.list_open_for_occurrence(dispatch.occurrence_id)
        if still_open:
            logger.info(
                "Occurrence %s stays open: %d other dispatch(es) active",
                occurrence.code,
                len(still_open),
            )
        else:
            occurrence.status = new_status
            if new_status in TERMINAL_STATUSES:
                occurrence.closed_by = user.user_id
                occurrence.closed_at = now
            await occurrences.replace(occurrence)

    await HistoryStore(backend).append(
        OccurrenceHistory(
            occurrence_id=dispatch.occurrence_id,
            dispatch_id=dispatch_id,
            previous_status=previous,
            new_status=new_status,
            changed_by=user.user_id,
            notes=notes,
        )
    )
    return updated


async def cancel_occurrence(
    backend: Backend, occurrence_id: str, notes: str | None = None
) -> Occurrence:
    """Withdraw an open occurrence, cancelling its open dispatches.

    Each open dispatch goes through :func:`update_dispatch_status`, so
    vehicles are freed and history rows written. An occurrence with no
    open dispatch gets a single history row of its own.

    Raises:
        RuntimeError: If no user is authenticated
        NotFoundError: If the occurrence does not exist
        InvalidTransitionError: If the occurrence is already closed
    """
    user = get_current_user()

    occurrences = OccurrenceStore(backend)
    occurrence = await occurrences.get(occurrence_id)
    if occurrence is None:
        raise NotFoundError(f"Occurrence not found: {occurrence_id}")
    validate_transition(occurrence.status, "cancelled")

    open_dispatches = await DispatchStore(backend).list_open_for_occurrence(occurrence_id)
    for dispatch in open_dispatches:
        await update_dispatch_status(backend, dispatch.id, "cancelled", notes)

    # Re-read: the dispatch updates above already moved the occurrence
    occurrence = await occurrences.get(occurrence_id)
    if not occurrence.is_terminal:
        previous = occurrence.status
        occurrence.status = "cancelled"
        occurrence.closed_by = user.user_id
        occurrence.closed_at = utcnow()
        occurrence = await occurrences.replace(occurrence)

        if not open_dispatches:
            await HistoryStore(backend).append(
                OccurrenceHistory(
                    occurrence_id=occurrence_id,
                    previous_status=previous,
                    new_status="cancelled",
                    changed_by=user.user_id,
                    notes=notes,
                )
            )

    logger.info("Occurrence %s cancelled by %s", occurrence.code, user.user_id)
    return occurrence
