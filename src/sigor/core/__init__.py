"""Core utilities: configuration, backend connection, and change feed."""

from sigor.core.config import get_org_config, get_timezone, local_now
from sigor.core.realtime import ChangeEvent, ChangeFeed, Subscription, apply_change
from sigor.core.store import Backend, BaseStore, Document

__all__ = [
    "Backend",
    "BaseStore",
    "ChangeEvent",
    "ChangeFeed",
    "Document",
    "Subscription",
    "apply_change",
    "get_org_config",
    "get_timezone",
    "local_now",
]
