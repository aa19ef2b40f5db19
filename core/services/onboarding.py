import logging

from core.storage import CredentialStore

logger = logging.getLogger(__name__)

ONBOARDING_KEY = 'onboarding_completed'


class OnboardingFlag:
    """Persisted first-run marker (``onboarding_completed = "true"`` or absent).

    Store failures never propagate: an unreadable flag reads as "not
    completed", which only sends the user through onboarding again.
    """

    def __init__(self, store: CredentialStore):
        self.store = store

    async def has_completed(self) -> bool:
        try:
            return await self.store.get_item(ONBOARDING_KEY) == 'true'
        except Exception:
            logger.exception('Error checking onboarding status')
            return False

    async def mark_completed(self) -> None:
        try:
            await self.store.set_item(ONBOARDING_KEY, 'true')
        except Exception:
            logger.exception('Error setting onboarding completed')

    async def clear(self) -> None:
        try:
            await self.store.remove_item(ONBOARDING_KEY)
        except Exception:
            logger.exception('Error clearing onboarding status')
