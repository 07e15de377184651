"""Crew actions for the signed-in user: boarding and leaving a vehicle."""

import logging

from sigor.auth import get_current_user
from sigor.core.store import Backend, NotFoundError
from sigor.fleet.store import CrewStore, VehicleStore

logger = logging.getLogger(__name__)


async def join_vehicle(backend: Backend, vehicle_id: str) -> dict:
    """Start a tour of duty on a vehicle as the current user.

    Any assignment the user still has open is closed first.

    Returns:
        The active crew assignment, or ``{"error": ...}``
    """
    try:
        user = get_current_user()
        if await VehicleStore(backend).get(vehicle_id) is None:
            raise NotFoundError(f"Vehicle not found: {vehicle_id}")
        assignment = await CrewStore(backend).join_vehicle(user.user_id, vehicle_id)
        return assignment.to_cosmos()
    except Exception as e:
        logger.exception("Failed to join vehicle %s", vehicle_id)
        return {"error": str(e)}


async def leave_vehicle(backend: Backend) -> dict:
    """End the current user's tour of duty."""
    try:
        user = get_current_user()
        assignment = await CrewStore(backend).leave_vehicle(user.user_id)
        return assignment.to_cosmos()
    except Exception as e:
        logger.exception("Failed to leave vehicle")
        return {"error": str(e)}
