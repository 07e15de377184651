"""User-facing occurrence actions.

Each function wraps a lifecycle mutator or a read and reports failures as
``{"error": "..."}`` instead of raising, so the HTTP layer can show the
message to the user as-is.
"""

import logging

from sigor.auth import get_current_user
from sigor.core.store import Backend
from sigor.fleet.store import ProfileStore
from sigor.occurrences import lifecycle
from sigor.occurrences.store import HistoryStore

logger = logging.getLogger(__name__)


async def create_occurrence(backend: Backend, **fields) -> dict:
    """Register a new occurrence.

    Args:
        backend: Connected backend
        **fields: organization_id, type, priority, title and optional details

    Returns:
        The stored occurrence, or ``{"error": ...}``
    """
    try:
        occurrence = await lifecycle.create_occurrence(backend, **fields)
        return occurrence.to_cosmos()
    except Exception as e:
        logger.exception("Failed to create occurrence")
        return {"error": str(e)}


async def dispatch_vehicle(
    backend: Backend, occurrence_id: str, vehicle_id: str, notes: str | None = None
) -> dict:
    """Send a vehicle to an occurrence as the current user."""
    try:
        user = get_current_user()
        dispatch = await lifecycle.dispatch_vehicle(
            backend, occurrence_id, vehicle_id, user.user_id, notes
        )
        return dispatch.to_cosmos()
    except Exception as e:
        logger.exception("Failed to dispatch vehicle %s to %s", vehicle_id, occurrence_id)
        return {"error": str(e)}


async def update_dispatch_status(
    backend: Backend, dispatch_id: str, status: str, notes: str | None = None
) -> dict:
    try:
        dispatch = await lifecycle.update_dispatch_status(backend, dispatch_id, status, notes)
        return dispatch.to_cosmos()
    except Exception as e:
        logger.exception("Failed to update dispatch %s to %s", dispatch_id, status)
        return {"error": str(e)}


async def cancel_occurrence(backend: Backend, occurrence_id: str, notes: str | None = None) -> dict:
    try:
        occurrence = await lifecycle.cancel_occurrence(backend, occurrence_id, notes)
        return occurrence.to_cosmos()
    except Exception as e:
        logger.exception("Failed to cancel occurrence %s", occurrence_id)
        return {"error": str(e)}


async def get_history(backend: Backend, occurrence_id: str) -> dict:
    """Audit trail for an occurrence with the name of whoever made each change.

    Returns:
        Dict with "history" list and "count", or ``{"error": ...}``
    """
    try:
        entries = await HistoryStore(backend).list_for_occurrence(occurrence_id)
        profiles = await ProfileStore(backend).get_many([e.changed_by for e in entries])
        history = []
        for entry in entries:
            row = entry.to_cosmos()
            profile = profiles.get(entry.changed_by)
            row["changed_by_name"] = profile.full_name if profile else None
            history.append(row)
        return {"history": history, "count": len(history)}
    except Exception as e:
        logger.exception("Failed to load history for %s", occurrence_id)
        return {"error": str(e)}
