"""Change-feed subscriptions and the reducer that folds events into state.

Every write made through a :class:`~sigor.core.store.Backend` publishes a
:class:`ChangeEvent`. Consumers subscribe per table with an optional
event kind and equality filters, and iterate the events asynchronously::

    async with feed.subscribe("dispatches", event="insert", filters={"vehicle_id": vid}) as sub:
        async for event in sub:
            ...

Delivery is at-least-once and carries no ordering guarantee relative to
the writes themselves, so consumers treat events as hints: patch local
state with :func:`apply_change` or refetch.

In Cosmos mode, :func:`watch_container` polls a container's change feed
and republishes what other clients wrote.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Literal, Self

from pydantic import BaseModel

logger = logging.getLogger(__name__)

EventKind = Literal["insert", "update", "delete"]

_CLOSED = object()


@dataclass(frozen=True)
class ChangeEvent:
    """A single row change on a table."""

    table: str
    kind: EventKind
    new: dict = field(default_factory=dict)
    old: dict = field(default_factory=dict)

    @property
    def row(self) -> dict:
        """The row the event is about (``old`` for deletes)."""
        return self.new or self.old


class Subscription:
    """Async iterator over change events matching a table/kind/filter.

    Closing the subscription is the only cancellation primitive; pending
    iterations end with ``StopAsyncIteration``.
    """

    def __init__(
        self,
        feed: ChangeFeed,
        table: str,
        event: EventKind | Literal["*"] = "*",
        filters: dict[str, Any] | None = None,
    ) -> None:
        self.table = table
        self.event = event
        self.filters = dict(filters or {})
        self._feed = feed
        self._queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def matches(self, event: ChangeEvent) -> bool:
        """Check table, kind, and every equality filter against the row."""
        if event.table != self.table:
            return False
        if self.event != "*" and event.kind != self.event:
            return False
        row = event.row
        return all(row.get(k) == v for k, v in self.filters.items())

    def deliver(self, event: ChangeEvent) -> None:
        if not self.closed:
            self._queue.put_nowait(event)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._feed.remove(self)
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> Self:
        return self

    async def __anext__(self) -> ChangeEvent:
        if self.closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class ChangeFeed:
    """In-process fan-out of change events to subscriptions."""

    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []

    def subscribe(
        self,
        table: str,
        *,
        event: EventKind | Literal["*"] = "*",
        filters: dict[str, Any] | None = None,
    ) -> Subscription:
        """Open a subscription. Events published afterwards are delivered."""
        sub = Subscription(self, table, event, filters)
        self._subscriptions.append(sub)
        logger.debug("Subscribed to %s (%s) filters=%s", table, event, sub.filters)
        return sub

    def remove(self, sub: Subscription) -> None:
        if sub in self._subscriptions:
            self._subscriptions.remove(sub)

    def publish(self, event: ChangeEvent) -> int:
        """Deliver an event to every matching subscription.

        Returns:
            Number of subscriptions the event was delivered to
        """
        delivered = 0
        for sub in list(self._subscriptions):
            if sub.matches(event):
                sub.deliver(event)
                delivered += 1
        return delivered

    def close(self) -> None:
        """Close every open subscription."""
        for sub in list(self._subscriptions):
            sub.close()

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)


# ---------------------------------------------------------------------------
# Reducer
# ---------------------------------------------------------------------------


def _key_of(row: dict | BaseModel, key: str) -> Any:
    if isinstance(row, BaseModel):
        return getattr(row, key, None)
    return row.get(key)


def _merge(row: dict | BaseModel, changes: dict) -> dict | BaseModel:
    if isinstance(row, BaseModel):
        return type(row).model_validate({**row.model_dump(mode="json"), **changes})
    return {**row, **changes}


def apply_change(
    rows: list,
    event: ChangeEvent,
    *,
    key: str = "id",
    factory: Callable[[dict], Any] | None = None,
) -> list:
    """Fold a change event into a list of rows, returning a new list.

    - insert: append, or replace a row with the same key
    - update: merge changed fields into the matching row (append if absent)
    - delete: drop the matching row

    Args:
        rows: Current rows (dicts or pydantic models)
        event: The change to apply
        key: Field identifying a row
        factory: Builds a row from the event dict for appended rows;
            defaults to the dict itself
    """
    build = factory or (lambda data: data)
    event_key = event.row.get(key)

    if event.kind == "delete":
        return [r for r in rows if _key_of(r, key) != event_key]

    result = []
    found = False
    for r in rows:
        if _key_of(r, key) == event_key:
            found = True
            result.append(build(event.new) if event.kind == "insert" else _merge(r, event.new))
        else:
            result.append(r)
    if not found:
        result.append(build(event.new))
    return result


# ---------------------------------------------------------------------------
# Cosmos change feed polling
# ---------------------------------------------------------------------------


def classify_change(item: dict) -> EventKind:
    """Cosmos' latest-version change feed doesn't tell inserts from updates.

    Documents are written with ``updated_at = null`` on insert and
    stamped on every replace, so that field decides.
    """
    return "insert" if not item.get("updated_at") else "update"


async def watch_container(
    container,
    table: str,
    feed: ChangeFeed,
    *,
    poll_interval: float = 1.0,
) -> None:
    """Poll a Cosmos container's change feed and republish locally.

    Runs until cancelled. Poll errors are logged and the loop carries on
    from the last continuation token.
    """
    continuation: str | None = None
    while True:
        try:
            if continuation is None:
                pages = container.query_items_change_feed(start_time="Now")
            else:
                pages = container.query_items_change_feed(continuation=continuation)
            async for item in pages:
                feed.publish(ChangeEvent(table=table, kind=classify_change(item), new=item))
            continuation = container.client_connection.last_response_headers.get("etag")
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.warning("Change feed poll failed for %s", table, exc_info=True)
        await asyncio.sleep(poll_interval)
