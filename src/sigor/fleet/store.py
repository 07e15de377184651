"""Async Cosmos DB operations for organizations, bases, vehicles, profiles, and crews.

When the backend runs without ``COSMOS_ENDPOINT``, every query falls back
to filtering the in-memory tables.
"""

import logging
from datetime import datetime

from sigor.core.store import BaseStore, NotFoundError, to_iso, utcnow
from sigor.fleet.models import Base, CrewAssignment, Organization, Profile, Vehicle

logger = logging.getLogger(__name__)


class OrganizationStore(BaseStore):
    """Async CRUD for organization documents."""

    container_name = "organizations"
    model = Organization


class StationStore(BaseStore):
    """Async CRUD for base (station) documents."""

    container_name = "bases"
    model = Base

    async def list_for_organization(self, organization_id: str) -> list[Base]:
        if self._in_memory:
            bases = [b for b in self._scan() if b.organization_id == organization_id]
            return sorted(bases, key=lambda b: b.name)

        return await self._query(
            "SELECT * FROM c WHERE c.organization_id = @org ORDER BY c.name ASC",
            [{"name": "@org", "value": organization_id}],
        )


class ProfileStore(BaseStore):
    """Async CRUD for user profiles."""

    container_name = "profiles"
    model = Profile

    async def list_active(self) -> list[Profile]:
        """Active profiles ordered by full name (operator pickers)."""
        if self._in_memory:
            profiles = [p for p in self._scan() if p.is_active]
            return sorted(profiles, key=lambda p: p.full_name)

        return await self._query(
            "SELECT * FROM c WHERE c.is_active = true ORDER BY c.full_name ASC"
        )


class VehicleStore(BaseStore):
    """Async CRUD and status writes for vehicles."""

    container_name = "vehicles"
    model = Vehicle

    async def list_vehicles(
        self,
        *,
        organization_id: str | None = None,
        status: str | None = None,
        max_items: int = 500,
    ) -> list[Vehicle]:
        """List vehicles, optionally filtered by organization and/or status.

        Args:
            organization_id: Only vehicles of this organization
            status: Only vehicles in this status
            max_items: Maximum number of results

        Returns:
            Vehicles ordered by identifier
        """
        if self._in_memory:
            results = []
            for v in self._scan():
                if organization_id and v.organization_id != organization_id:
                    continue
                if status and v.status != status:
                    continue
                results.append(v)
            results.sort(key=lambda v: v.identifier)
            return results[:max_items]

        conditions = []
        parameters = []
        if organization_id:
            conditions.append("c.organization_id = @org")
            parameters.append({"name": "@org", "value": organization_id})
        if status:
            conditions.append("c.status = @status")
            parameters.append({"name": "@status", "value": status})

        where_clause = f" WHERE {' AND '.join(conditions)}" if conditions else ""
        query = f"SELECT * FROM c{where_clause} ORDER BY c.identifier ASC"
        return await self._query(query, parameters, max_items=max_items)

    async def list_available(self, organization_id: str | None = None) -> list[Vehicle]:
        """Vehicles a dispatcher may assign right now."""
        return await self.list_vehicles(organization_id=organization_id, status="available")

    async def count_by_status(self) -> dict[str, int]:
        """Tally vehicles per status."""
        if self._in_memory:
            counts: dict[str, int] = {}
            for data in self._memory.values():
                counts[data["status"]] = counts.get(data["status"], 0) + 1
            return counts

        counts = {}
        query = "SELECT c.status, COUNT(1) AS n FROM c GROUP BY c.status"
        async for row in self._container.query_items(query=query):
            counts[row["status"]] = row["n"]
        return counts

    async def set_status(self, vehicle_id: str, status: str) -> Vehicle:
        """Overwrite a vehicle's status (last write wins).

        Raises:
            NotFoundError: If the vehicle does not exist
        """
        vehicle = await self.get(vehicle_id)
        if vehicle is None:
            raise NotFoundError(f"Vehicle not found: {vehicle_id}")
        previous = vehicle.status
        vehicle.status = status
        updated = await self.replace(vehicle)
        logger.info("Vehicle %s status %s -> %s", vehicle.identifier, previous, status)
        return updated


class CrewStore(BaseStore):
    """Async CRUD for crew assignments (``vehicle_crew``)."""

    container_name = "vehicle_crew"
    model = CrewAssignment

    async def get_active_for_user(self, user_id: str) -> CrewAssignment | None:
        """The user's current assignment, if any."""
        if self._in_memory:
            for a in self._scan():
                if a.user_id == user_id and a.is_active:
                    return a
            return None

        items = await self._query(
            "SELECT * FROM c WHERE c.user_id = @uid AND c.is_active = true",
            [{"name": "@uid", "value": user_id}],
            max_items=1,
        )
        return items[0] if items else None

    async def list_active_for_vehicle(self, vehicle_id: str) -> list[CrewAssignment]:
        """Everyone currently aboard a vehicle."""
        if self._in_memory:
            return [a for a in self._scan() if a.vehicle_id == vehicle_id and a.is_active]

        return await self._query(
            "SELECT * FROM c WHERE c.vehicle_id = @vid AND c.is_active = true",
            [{"name": "@vid", "value": vehicle_id}],
        )

    async def join_vehicle(self, user_id: str, vehicle_id: str) -> CrewAssignment:
        """Start a tour of duty, closing any assignment the user still has open.

        Keeps the one-active-assignment-per-user invariant.
        """
        current = await self.get_active_for_user(user_id)
        if current is not None:
            if current.vehicle_id == vehicle_id:
                return current
            await self.leave_vehicle(user_id)

        assignment = CrewAssignment(user_id=user_id, vehicle_id=vehicle_id)
        created = await self.create(assignment)
        logger.info("User %s joined vehicle %s", user_id, vehicle_id)
        return created

    async def leave_vehicle(self, user_id: str) -> CrewAssignment:
        """End the user's active tour of duty.

        Raises:
            NotFoundError: If the user has no active assignment
        """
        current = await self.get_active_for_user(user_id)
        if current is None:
            raise NotFoundError(f"No active crew assignment for user {user_id}")
        current.is_active = False
        current.left_at = utcnow()
        updated = await self.replace(current)
        logger.info("User %s left vehicle %s", user_id, current.vehicle_id)
        return updated

    async def list_shifts(
        self,
        start: datetime,
        end: datetime,
        *,
        user_id: str | None = None,
        vehicle_id: str | None = None,
        max_items: int = 1000,
    ) -> list[CrewAssignment]:
        """List assignments that began within [start, end].

        Args:
            start: Inclusive lower bound on ``joined_at``
            end: Inclusive upper bound on ``joined_at``
            user_id: Only this operator's shifts
            vehicle_id: Only shifts aboard this vehicle
            max_items: Maximum number of results

        Returns:
            Assignments ordered by joined_at descending
        """
        if self._in_memory:
            results = []
            for a in self._scan():
                if not (start <= a.joined_at <= end):
                    continue
                if user_id and a.user_id != user_id:
                    continue
                if vehicle_id and a.vehicle_id != vehicle_id:
                    continue
                results.append(a)
            results.sort(key=lambda a: a.joined_at, reverse=True)
            return results[:max_items]

        conditions = ["c.joined_at >= @start", "c.joined_at <= @end"]
        parameters = [
            {"name": "@start", "value": to_iso(start)},
            {"name": "@end", "value": to_iso(end)},
        ]
        if user_id:
            conditions.append("c.user_id = @uid")
            parameters.append({"name": "@uid", "value": user_id})
        if vehicle_id:
            conditions.append("c.vehicle_id = @vid")
            parameters.append({"name": "@vid", "value": vehicle_id})

        query = f"SELECT * FROM c WHERE {' AND '.join(conditions)} ORDER BY c.joined_at DESC"
        return await self._query(query, parameters, max_items=max_items)
