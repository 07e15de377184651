"""Domain vocabulary and display labels shared across the codebase.

Status sets are imported by the lifecycle rules, dashboards, and the
alert pipeline:
- ACTIVE_STATUSES: occurrences still being worked
- TERMINAL_STATUSES: no further transitions allowed
"""

from typing import Literal

__all__ = [
    "ACTIVE_STATUSES",
    "DISPATCHER_ROLES",
    "OPERATIONAL_ROLES",
    "PRIORITY_ORDER",
    "TERMINAL_STATUSES",
]

AppRole = Literal[
    "admin",
    "dispatcher_police",
    "police_officer",
    "dispatcher_medical",
    "medical_team",
    "dispatcher_fire",
    "firefighter",
    "observer",
]
OrganizationType = Literal["police", "medical", "fire"]
OccurrenceType = Literal["police", "medical", "fire", "rescue", "other"]
PriorityLevel = Literal["low", "medium", "high", "critical"]
OccurrenceStatus = Literal[
    "pending",
    "dispatched",
    "en_route",
    "on_scene",
    "transporting",
    "completed",
    "cancelled",
]
VehicleStatus = Literal["available", "busy", "maintenance", "off_duty"]
RoomType = Literal["occurrence", "vehicle"]

ACTIVE_STATUSES: frozenset[str] = frozenset(
    {"pending", "dispatched", "en_route", "on_scene", "transporting"}
)
IN_PROGRESS_STATUSES: frozenset[str] = ACTIVE_STATUSES - {"pending"}
TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "cancelled"})

# Higher number sorts first in dispatcher queues
PRIORITY_ORDER: dict[str, int] = {"low": 0, "medium": 1, "high": 2, "critical": 3}

DISPATCHER_ROLES: frozenset[str] = frozenset(
    {"dispatcher_police", "dispatcher_medical", "dispatcher_fire"}
)
OPERATIONAL_ROLES: frozenset[str] = frozenset({"police_officer", "medical_team", "firefighter"})

ROLE_LABELS: dict[str, str] = {
    "admin": "Administrator",
    "dispatcher_police": "Police Dispatcher",
    "police_officer": "Police Officer",
    "dispatcher_medical": "Medical Dispatcher",
    "medical_team": "Medical Team",
    "dispatcher_fire": "Fire Dispatcher",
    "firefighter": "Firefighter",
    "observer": "Observer",
}

ORGANIZATION_LABELS: dict[str, str] = {
    "police": "Police",
    "medical": "Medical Service",
    "fire": "Fire Department",
}

OCCURRENCE_TYPE_LABELS: dict[str, str] = {
    "police": "Police",
    "medical": "Medical",
    "fire": "Fire",
    "rescue": "Rescue",
    "other": "Other",
}

PRIORITY_LABELS: dict[str, str] = {
    "low": "Low",
    "medium": "Medium",
    "high": "High",
    "critical": "Critical",
}

STATUS_LABELS: dict[str, str] = {
    "pending": "Pending",
    "dispatched": "Dispatched",
    "en_route": "En Route",
    "on_scene": "On Scene",
    "transporting": "Transporting",
    "completed": "Closed",
    "cancelled": "Cancelled",
}

VEHICLE_STATUS_LABELS: dict[str, str] = {
    "available": "Available",
    "busy": "Busy",
    "maintenance": "Maintenance",
    "off_duty": "Off Duty",
}
