"""
Decide which part of the app a cold start should land on.
"""
from __future__ import annotations

import enum
import logging

logger = logging.getLogger(__name__)


class LaunchState(str, enum.Enum):
    ONBOARDING = 'onboarding'
    AUTH = 'auth'
    MAIN = 'main'


async def resolve_launch_state(manager) -> LaunchState:
    """Restore the persisted session and pick the first screen group.

    * onboarding never completed -> ``ONBOARDING``
    * no session, or the backend rejects the token -> ``AUTH``
    * profile fetched successfully -> ``MAIN``

    Anything unexpected sends the user to onboarding for a clean start.
    """
    try:
        await manager.initialize()

        if not await manager.has_completed_onboarding():
            logger.info('Launching into onboarding: not completed')
            return LaunchState.ONBOARDING

        if not await manager.is_logged_in():
            logger.info('Launching into auth: no valid session')
            return LaunchState.AUTH

        try:
            response = await manager.get_current_user()
        except Exception as exc:
            logger.warning('Profile fetch failed at launch, redirecting to auth: %s', exc)
            return LaunchState.AUTH
        if not response.success:
            return LaunchState.AUTH
        return LaunchState.MAIN
    except Exception:
        logger.exception('Launch state resolution failed; falling back to onboarding')
        return LaunchState.ONBOARDING
