"""Dispatch alert pipeline for one signed-in crew member.

Follows the user's active crew assignment, listens for new dispatches of
that vehicle, and turns each into a :class:`DispatchAlert`: published as
the current alert (latest wins), shown as an OS notification when the
user opted in, and announced with the alert tone.

Usage::

    async with AlertPipeline(backend, user_id, notifier=notifier) as pipeline:
        pipeline.add_listener(on_alert)
        ...
        pipeline.dismiss()

or, to consume alerts as a stream (the HTTP server does this)::

    async with AlertPipeline(backend, user_id) as pipeline:
        async for alert in pipeline.events():
            ...
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Self

from sigor.alerts.models import DispatchAlert
from sigor.alerts.notify import LoggingNotifier, Notification, Notifier
from sigor.alerts.sound import AlertSoundPlayer
from sigor.core.config import get_org_config
from sigor.core.realtime import ChangeEvent, Subscription
from sigor.core.store import Backend
from sigor.fleet.store import CrewStore, VehicleStore
from sigor.occurrences.store import OccurrenceStore
from sigor.preferences.models import UserPreferences
from sigor.preferences.store import PreferencesStore

logger = logging.getLogger(__name__)

AlertListener = Callable[[DispatchAlert | None], None]

_STOPPED = object()


class AlertPipeline:
    """Per-user realtime alerting state machine."""

    def __init__(
        self,
        backend: Backend,
        user_id: str,
        *,
        notifier: Notifier | None = None,
        player: AlertSoundPlayer | None = None,
    ) -> None:
        self.backend = backend
        self.user_id = user_id
        self.notifier = notifier or LoggingNotifier()
        self.player = player or AlertSoundPlayer()
        self.preferences = UserPreferences(user_id=user_id)
        self.current_vehicle_id: str | None = None
        self.current_alert: DispatchAlert | None = None
        self._listeners: list[AlertListener] = []
        self._subscriptions: dict[str, Subscription] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._streams: list[asyncio.Queue] = []
        self._ended = False

    async def __aenter__(self) -> Self:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    def add_listener(self, listener: AlertListener) -> None:
        """Call ``listener(alert)`` on every new alert and ``listener(None)`` on dismissal."""
        self._listeners.append(listener)

    async def events(self) -> AsyncIterator[DispatchAlert | None]:
        """Yield every new alert, and None on dismissal.

        Ends when the pipeline stops or the backend's change feed closes.
        """
        if self._ended:
            return
        queue: asyncio.Queue = asyncio.Queue()
        self._streams.append(queue)
        try:
            while (item := await queue.get()) is not _STOPPED:
                yield item
        finally:
            self._streams.remove(queue)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Load preferences and crew assignment, then open subscriptions."""
        self._ended = False
        try:
            self.preferences = await PreferencesStore(self.backend).get_or_create(self.user_id)
        except Exception:
            logger.warning("Using default preferences for %s", self.user_id, exc_info=True)

        try:
            if self.notifier.permission == "default":
                await self.notifier.request_permission()
        except Exception:
            logger.warning("Notification permission request failed", exc_info=True)

        # Subscribe before reading so an assignment made in between is not missed
        self._listen(
            "crew",
            self.backend.feed.subscribe("vehicle_crew", filters={"user_id": self.user_id}),
            self._on_crew_change,
            on_close=self._end_streams,
        )
        self._listen(
            "preferences",
            self.backend.feed.subscribe(
                "user_preferences", event="update", filters={"user_id": self.user_id}
            ),
            self._on_preferences_change,
        )

        vehicle_id = None
        try:
            assignment = await CrewStore(self.backend).get_active_for_user(self.user_id)
            vehicle_id = assignment.vehicle_id if assignment else None
        except Exception:
            logger.warning("Could not resolve crew assignment for %s", self.user_id, exc_info=True)
        self.set_vehicle(vehicle_id)

    async def stop(self) -> None:
        """Close every subscription and silence the alert tone."""
        for sub in self._subscriptions.values():
            sub.close()
        self._subscriptions.clear()
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self.player.stop()
        self._end_streams()

    def set_vehicle(self, vehicle_id: str | None) -> None:
        """Retarget the dispatch subscription to ``vehicle_id`` (None: stop listening)."""
        if vehicle_id == self.current_vehicle_id and (
            vehicle_id is None or "dispatches" in self._subscriptions
        ):
            return

        old = self._subscriptions.pop("dispatches", None)
        if old is not None:
            old.close()

        self.current_vehicle_id = vehicle_id
        if vehicle_id is None:
            logger.info("User %s has no vehicle; dispatch alerts paused", self.user_id)
            return

        self._listen(
            "dispatches",
            self.backend.feed.subscribe(
                "dispatches", event="insert", filters={"vehicle_id": vehicle_id}
            ),
            self._on_dispatch,
        )
        logger.info("Listening for dispatches of vehicle %s", vehicle_id)

    def dismiss(self) -> None:
        """Clear the current alert and stop the tone. Writes nothing."""
        self.player.stop()
        if self.current_alert is None:
            return
        self.current_alert = None
        self._notify_listeners(None)

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    def _listen(
        self,
        name: str,
        sub: Subscription,
        handler: Callable[[ChangeEvent], Awaitable[None]],
        on_close: Callable[[], None] | None = None,
    ) -> None:
        self._subscriptions[name] = sub
        self._tasks = {k: t for k, t in self._tasks.items() if not t.done()}
        self._tasks[f"{name}:{id(sub)}"] = asyncio.create_task(
            self._consume(sub, handler, on_close)
        )

    async def _consume(
        self,
        sub: Subscription,
        handler: Callable[[ChangeEvent], Awaitable[None]],
        on_close: Callable[[], None] | None = None,
    ) -> None:
        async for event in sub:
            try:
                await handler(event)
            except Exception:
                logger.warning("Failed to handle %s event", event.table, exc_info=True)
        if on_close is not None:
            on_close()

    def _end_streams(self) -> None:
        self._ended = True
        for queue in self._streams:
            queue.put_nowait(_STOPPED)

    async def _on_crew_change(self, event: ChangeEvent) -> None:
        row = event.new
        if event.kind == "insert" and row.get("is_active"):
            self.set_vehicle(row["vehicle_id"])
        elif event.kind == "update" and not row.get("is_active"):
            # Only clear if the closed row is the one we are following
            if row.get("vehicle_id") == self.current_vehicle_id:
                self.set_vehicle(None)

    async def _on_preferences_change(self, event: ChangeEvent) -> None:
        self.preferences = UserPreferences.model_validate(event.new)

    async def _on_dispatch(self, event: ChangeEvent) -> None:
        alert = await self.build_alert(event.new)
        if alert is not None:
            await self.publish(alert)

    async def build_alert(self, dispatch: dict) -> DispatchAlert | None:
        """Join a dispatch row with its occurrence and vehicle.

        Returns None (and logs) when either lookup fails or finds nothing.
        """
        occurrence, vehicle = await asyncio.gather(
            OccurrenceStore(self.backend).get(dispatch["occurrence_id"]),
            VehicleStore(self.backend).get(dispatch["vehicle_id"]),
            return_exceptions=True,
        )
        if isinstance(occurrence, BaseException) or isinstance(vehicle, BaseException):
            logger.warning("Dropping alert for dispatch %s: lookup failed", dispatch.get("id"))
            return None
        if occurrence is None or vehicle is None:
            logger.warning("Dropping alert for dispatch %s: missing record", dispatch.get("id"))
            return None

        return DispatchAlert(
            id=dispatch["id"],
            occurrence_id=occurrence.id,
            occurrence_code=occurrence.code,
            occurrence_title=occurrence.title,
            occurrence_priority=occurrence.priority,
            occurrence_address=occurrence.location_address,
            vehicle_identifier=vehicle.identifier,
        )

    async def publish(self, alert: DispatchAlert) -> None:
        """Make ``alert`` the current alert, replacing any previous one."""
        self.current_alert = alert
        logger.info(
            "Dispatch alert %s for vehicle %s (%s)",
            alert.occurrence_code,
            alert.vehicle_identifier,
            alert.occurrence_priority,
        )
        self._notify_listeners(alert)

        if self.preferences.push_notifications and self.notifier.permission == "granted":
            try:
                await self.notifier.show(
                    Notification(
                        title=alert.notification_title,
                        body=alert.notification_body,
                        icon=get_org_config().alert_icon,
                        tag=alert.id,
                        require_interaction=True,
                    )
                )
            except Exception:
                logger.warning("Notification for %s failed", alert.id, exc_info=True)

        if self.preferences.sound_enabled:
            self.player.play(self.preferences.sound_volume)

    def _notify_listeners(self, alert: DispatchAlert | None) -> None:
        for listener in list(self._listeners):
            try:
                listener(alert)
            except Exception:
                logger.warning("Alert listener failed", exc_info=True)
        for queue in self._streams:
            queue.put_nowait(alert)
