"""Per-user alert and notification preferences."""

from datetime import datetime

from pydantic import Field, model_validator

from sigor.core.store import Document, utcnow

EDITABLE_FIELDS = frozenset(
    {
        "sound_enabled",
        "sound_volume",
        "critical_alerts",
        "high_priority_alerts",
        "email_notifications",
        "push_notifications",
    }
)


class UserPreferences(Document):
    """One row per user; ``id`` is always the user id."""

    user_id: str
    sound_enabled: bool = True
    sound_volume: float = Field(default=0.5, ge=0.0, le=1.0)
    critical_alerts: bool = True
    high_priority_alerts: bool = True
    email_notifications: bool = False
    push_notifications: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime | None = None

    @model_validator(mode="before")
    @classmethod
    def _id_is_user_id(cls, data):
        if isinstance(data, dict) and data.get("user_id") and not data.get("id"):
            data = {**data, "id": data["user_id"]}
        return data
