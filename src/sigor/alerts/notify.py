"""OS-level notification outputs for dispatch alerts."""

import logging
from dataclasses import dataclass
from typing import Literal

from sigor.alerts.push import PushClient

logger = logging.getLogger(__name__)

Permission = Literal["default", "granted", "denied"]


@dataclass(frozen=True)
class Notification:
    title: str
    body: str
    icon: str
    tag: str  # notifications with the same tag replace each other
    require_interaction: bool = True


class Notifier:
    """Base notification output. Subclasses implement :meth:`show`."""

    def __init__(self, permission: Permission = "default") -> None:
        self.permission: Permission = permission

    async def request_permission(self) -> Permission:
        return self.permission

    async def show(self, notification: Notification) -> None:
        raise NotImplementedError


class MemoryNotifier(Notifier):
    """Keeps shown notifications in memory, one per tag."""

    def __init__(self, permission: Permission = "default", *, grant_on_request: bool = True):
        super().__init__(permission)
        self.grant_on_request = grant_on_request
        self.permission_requests = 0
        self.shown: dict[str, Notification] = {}

    async def request_permission(self) -> Permission:
        self.permission_requests += 1
        if self.permission == "default":
            self.permission = "granted" if self.grant_on_request else "denied"
        return self.permission

    async def show(self, notification: Notification) -> None:
        self.shown[notification.tag] = notification


class LoggingNotifier(Notifier):
    """Writes notifications to the log (server and CLI use)."""

    def __init__(self) -> None:
        super().__init__("granted")

    async def show(self, notification: Notification) -> None:
        logger.info("NOTIFY [%s] %s: %s", notification.tag, notification.title, notification.body)


class PushNotifier(Notifier):
    """Forwards notifications to the push endpoint for one subscription."""

    def __init__(self, client: PushClient, subscription: dict | None = None) -> None:
        super().__init__("granted")
        self.client = client
        self.subscription = subscription

    async def show(self, notification: Notification) -> None:
        result = await self.client.send(self.subscription, notification.body, notification.title)
        if "error" in result:
            raise RuntimeError(result["error"])
