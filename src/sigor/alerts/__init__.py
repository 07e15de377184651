"""Realtime dispatch alerts: pipeline, notifications, and alert tone."""

from sigor.alerts.models import DispatchAlert
from sigor.alerts.pipeline import AlertPipeline
from sigor.alerts.sound import ALERT_PATTERN, AlertSoundPlayer

__all__ = ["ALERT_PATTERN", "AlertPipeline", "AlertSoundPlayer", "DispatchAlert"]
