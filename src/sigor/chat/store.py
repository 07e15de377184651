"""Async Cosmos DB operations for chat rooms.

Author names are joined from profiles and kept in a short-lived cache,
since the same few crew members post most messages in a room.
"""

import logging

from cachetools import TTLCache

from sigor.auth import get_current_user
from sigor.chat.models import ChatMessage
from sigor.core.realtime import Subscription
from sigor.core.store import BaseStore
from sigor.fleet.store import ProfileStore

logger = logging.getLogger(__name__)

# user_id -> full_name
_author_names: TTLCache[str, str] = TTLCache(maxsize=1024, ttl=300)


class ChatStore(BaseStore):
    """Messages for occurrence and vehicle rooms, partitioned by room id.

    Usage::

        chat = ChatStore(backend)
        await chat.post("occurrence", occurrence_id, "En route, ETA 5 min")
        messages = await chat.list_room("occurrence", occurrence_id)
    """

    container_name = "chat_messages"
    model = ChatMessage
    partition_field = "room_id"

    async def list_messages(self, room_type: str, room_id: str) -> list[ChatMessage]:
        """Messages in a room, oldest first."""
        if self._in_memory:
            messages = [
                m for m in self._scan() if m.room_type == room_type and m.room_id == room_id
            ]
            return sorted(messages, key=lambda m: m.created_at)

        return await self._query(
            "SELECT * FROM c WHERE c.room_type = @type AND c.room_id = @room"
            " ORDER BY c.created_at ASC",
            [{"name": "@type", "value": room_type}, {"name": "@room", "value": room_id}],
            partition_key=room_id,
        )

    async def list_room(self, room_type: str, room_id: str) -> list[dict]:
        """Messages in a room, oldest first, each with an ``author_name``."""
        messages = await self.list_messages(room_type, room_id)
        names = await self.author_names([m.user_id for m in messages])
        results = []
        for m in messages:
            row = m.to_cosmos()
            row["author_name"] = names.get(m.user_id)
            results.append(row)
        return results

    async def author_names(self, user_ids: list[str]) -> dict[str, str]:
        """Full names for the given users. Unknown users are omitted."""
        names = {uid: _author_names[uid] for uid in set(user_ids) if uid in _author_names}
        missing = [uid for uid in dict.fromkeys(user_ids) if uid not in names]
        if missing:
            profiles = await ProfileStore(self._backend).get_many(missing)
            for uid, profile in profiles.items():
                _author_names[uid] = profile.full_name
                names[uid] = profile.full_name
        return names

    async def post(self, room_type: str, room_id: str, message: str) -> ChatMessage:
        """Post a message as the current user.

        Raises:
            RuntimeError: If no user is authenticated
            ValueError: If the message is empty after trimming
        """
        user = get_current_user()
        text = message.strip()
        if not text:
            raise ValueError("Message is empty")

        created = await self.create(
            ChatMessage(room_type=room_type, room_id=room_id, user_id=user.user_id, message=text)
        )
        logger.debug("Chat %s/%s: message from %s", room_type, room_id, user.user_id)
        return created

    def subscribe_room(self, room_type: str, room_id: str) -> Subscription:
        """Subscribe to new messages in a room."""
        return self.feed.subscribe(
            self.container_name,
            event="insert",
            filters={"room_type": room_type, "room_id": room_id},
        )


def clear_author_cache() -> None:
    _author_names.clear()
