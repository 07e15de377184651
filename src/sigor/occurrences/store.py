"""Async Cosmos DB operations for occurrences, dispatches, and history.

Internal implementation detail: user-facing callers go through
:mod:`sigor.occurrences.lifecycle`, which keeps vehicle and occurrence
status consistent with the dispatch writes.
"""

import logging
from collections.abc import Iterable

from sigor.core.constants import PRIORITY_ORDER, TERMINAL_STATUSES
from sigor.core.store import BaseStore
from sigor.occurrences.models import Dispatch, Occurrence, OccurrenceHistory

logger = logging.getLogger(__name__)


class OccurrenceStore(BaseStore):
    """Async CRUD for occurrence documents.

    Usage::

        store = OccurrenceStore(backend)
        occurrence = await store.create(doc)
        queue = await store.list_occurrences(statuses={"pending", "dispatched"}, queue=True)
    """

    container_name = "occurrences"
    model = Occurrence

    async def list_occurrences(
        self,
        *,
        organization_id: str | None = None,
        statuses: Iterable[str] | None = None,
        queue: bool = False,
        max_items: int = 500,
    ) -> list[Occurrence]:
        """List occurrences, optionally filtered by organization and status.

        Args:
            organization_id: Only occurrences of this organization
            statuses: Only occurrences in one of these statuses
            queue: Dispatcher queue ordering (priority desc, then oldest
                first) instead of newest first
            max_items: Maximum number of results

        Returns:
            Matching occurrences in the requested order
        """
        wanted = set(statuses) if statuses is not None else None

        if self._in_memory:
            results = []
            for o in self._scan():
                if organization_id and o.organization_id != organization_id:
                    continue
                if wanted is not None and o.status not in wanted:
                    continue
                results.append(o)
            return _order(results, queue=queue)[:max_items]

        conditions = []
        parameters: list[dict] = []
        if organization_id:
            conditions.append("c.organization_id = @org")
            parameters.append({"name": "@org", "value": organization_id})
        if wanted is not None:
            conditions.append("ARRAY_CONTAINS(@statuses, c.status)")
            parameters.append({"name": "@statuses", "value": sorted(wanted)})

        where_clause = f" WHERE {' AND '.join(conditions)}" if conditions else ""
        query = f"SELECT * FROM c{where_clause} ORDER BY c.created_at DESC"
        items = await self._query(query, parameters, max_items=max_items)
        # Priority is a label, not sortable server-side; reorder locally
        return _order(items, queue=queue)

    async def count_for_organization(self, organization_id: str | None = None) -> int:
        """Count occurrences without fetching them."""
        if organization_id is None:
            return await self.count()

        if self._in_memory:
            return sum(1 for d in self._memory.values() if d["organization_id"] == organization_id)

        return await self._count(
            " WHERE c.organization_id = @org", [{"name": "@org", "value": organization_id}]
        )


def _order(occurrences: list[Occurrence], *, queue: bool) -> list[Occurrence]:
    if queue:
        # Oldest first within a priority, most urgent priority first
        by_age = sorted(occurrences, key=lambda o: o.created_at)
        return sorted(by_age, key=lambda o: PRIORITY_ORDER[o.priority], reverse=True)
    return sorted(occurrences, key=lambda o: o.created_at, reverse=True)


class DispatchStore(BaseStore):
    """Async CRUD for dispatch documents."""

    container_name = "dispatches"
    model = Dispatch

    async def list_dispatches(
        self,
        *,
        occurrence_id: str | None = None,
        vehicle_id: str | None = None,
        open_only: bool = False,
        max_items: int = 500,
    ) -> list[Dispatch]:
        """List dispatches, newest first.

        Args:
            occurrence_id: Only dispatches for this occurrence
            vehicle_id: Only dispatches of this vehicle
            open_only: Skip completed and cancelled dispatches
            max_items: Maximum number of results
        """
        if self._in_memory:
            results = []
            for d in self._scan():
                if occurrence_id and d.occurrence_id != occurrence_id:
                    continue
                if vehicle_id and d.vehicle_id != vehicle_id:
                    continue
                if open_only and not d.is_open:
                    continue
                results.append(d)
            results.sort(key=lambda d: d.dispatched_at, reverse=True)
            return results[:max_items]

        conditions = []
        parameters: list[dict] = []
        if occurrence_id:
            conditions.append("c.occurrence_id = @oid")
            parameters.append({"name": "@oid", "value": occurrence_id})
        if vehicle_id:
            conditions.append("c.vehicle_id = @vid")
            parameters.append({"name": "@vid", "value": vehicle_id})
        if open_only:
            conditions.append("NOT ARRAY_CONTAINS(@terminal, c.status)")
            parameters.append({"name": "@terminal", "value": sorted(TERMINAL_STATUSES)})

        where_clause = f" WHERE {' AND '.join(conditions)}" if conditions else ""
        query = f"SELECT * FROM c{where_clause} ORDER BY c.dispatched_at DESC"
        return await self._query(query, parameters, max_items=max_items)

    async def list_for_occurrence(self, occurrence_id: str) -> list[Dispatch]:
        return await self.list_dispatches(occurrence_id=occurrence_id)

    async def list_open_for_occurrence(self, occurrence_id: str) -> list[Dispatch]:
        return await self.list_dispatches(occurrence_id=occurrence_id, open_only=True)


class HistoryStore(BaseStore):
    """Append-only store for occurrence status history.

    Partitioned on ``occurrence_id``; rows are never updated or deleted.
    """

    container_name = "occurrence_history"
    model = OccurrenceHistory
    partition_field = "occurrence_id"

    async def append(self, entry: OccurrenceHistory) -> OccurrenceHistory:
        created = await self.create(entry)
        logger.info(
            "History %s: %s -> %s by %s",
            entry.occurrence_id,
            entry.previous_status,
            entry.new_status,
            entry.changed_by,
        )
        return created

    async def list_for_occurrence(self, occurrence_id: str) -> list[OccurrenceHistory]:
        """Audit trail for an occurrence, oldest first."""
        if self._in_memory:
            entries = [h for h in self._scan() if h.occurrence_id == occurrence_id]
            return sorted(entries, key=lambda h: h.created_at)

        return await self._query(
            "SELECT * FROM c WHERE c.occurrence_id = @oid ORDER BY c.created_at ASC",
            [{"name": "@oid", "value": occurrence_id}],
            partition_key=occurrence_id,
        )
