"""Chat message model for occurrence and vehicle rooms."""

from datetime import datetime

from pydantic import Field

from sigor.core.constants import RoomType
from sigor.core.store import Document, utcnow

MAX_MESSAGE_LENGTH = 4000


class ChatMessage(Document):
    """One message in a room. Messages are append-only."""

    room_type: RoomType
    room_id: str  # Partition key: occurrence id or vehicle id
    user_id: str
    message: str = Field(min_length=1, max_length=MAX_MESSAGE_LENGTH)
    created_at: datetime = Field(default_factory=utcnow)
