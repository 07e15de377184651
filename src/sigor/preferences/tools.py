"""Preference reads and writes for the current user."""

import logging

from sigor.auth import get_current_user
from sigor.core.store import Backend
from sigor.preferences.models import UserPreferences
from sigor.preferences.store import PreferencesStore

logger = logging.getLogger(__name__)


async def get_preferences(backend: Backend) -> dict:
    """Current user's preferences.

    Falls back to unsaved defaults when the backend is unavailable, so
    alerting keeps working with sound on.
    """
    user = get_current_user()
    try:
        prefs = await PreferencesStore(backend).get_or_create(user.user_id)
    except Exception:
        logger.warning("Failed to load preferences for %s", user.user_id, exc_info=True)
        prefs = UserPreferences(user_id=user.user_id)
    return prefs.to_cosmos()


async def update_preferences(backend: Backend, **changes) -> dict:
    try:
        user = get_current_user()
        prefs = await PreferencesStore(backend).update(user.user_id, **changes)
        logger.info("Preferences updated for %s: %s", user.user_id, sorted(changes))
        return prefs.to_cosmos()
    except Exception as e:
        logger.exception("Failed to update preferences")
        return {"error": str(e)}
