"""Async Cosmos DB storage for user preferences."""

import logging

from sigor.core.store import BaseStore
from sigor.preferences.models import EDITABLE_FIELDS, UserPreferences

logger = logging.getLogger(__name__)


class PreferencesStore(BaseStore):
    """Preferences keyed by user id (document id == user id)."""

    container_name = "user_preferences"
    model = UserPreferences

    async def get_or_create(self, user_id: str) -> UserPreferences:
        """Read the user's preferences, inserting the defaults on first use."""
        existing = await self.get(user_id)
        if existing is not None:
            return existing

        logger.info("Creating default preferences for %s", user_id)
        return await self.create(UserPreferences(user_id=user_id))

    async def update(self, user_id: str, **changes) -> UserPreferences:
        """Apply partial changes and write the row.

        Raises:
            ValueError: For unknown fields
            pydantic.ValidationError: For out-of-range values
        """
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown preference fields: {', '.join(sorted(unknown))}")

        current = await self.get_or_create(user_id)
        updated = UserPreferences.model_validate({**current.to_cosmos(), **changes})
        return await self.replace(updated)
