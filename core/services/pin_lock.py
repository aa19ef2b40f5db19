"""
Local app-lock PIN.

The PIN never leaves the device and is never stored in clear: only a
Django password hash lives under ``user_pin``.  Read failures count as
"no PIN" / "wrong PIN"; a failed write is raised to the caller because
the user must know the PIN was not saved.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from asgiref.sync import sync_to_async
from django.contrib.auth.hashers import check_password, make_password

from core.exceptions import ApiError, ErrorKind
from core.serializers.auth import PinSerializer, first_error_message
from core.storage import CredentialStore

logger = logging.getLogger(__name__)

PIN_KEY = 'user_pin'


@dataclass
class PinChange:
    success: bool
    error: Optional[str] = None


class PinLock:

    def __init__(self, store: CredentialStore):
        self.store = store

    async def has_pin(self) -> bool:
        try:
            return await self.store.get_item(PIN_KEY) is not None
        except Exception:
            logger.exception('Error checking PIN')
            return False

    async def set_pin(self, pin: str) -> None:
        s = PinSerializer(data={'pin': pin})
        if not s.is_valid():
            raise ApiError(first_error_message(s.errors), ErrorKind.VALIDATION, errors=[s.errors])
        hashed = await sync_to_async(make_password, thread_sensitive=False)(s.validated_data['pin'])
        await self.store.set_item(PIN_KEY, hashed)
        logger.info('App-lock PIN set')

    async def verify_pin(self, pin: str) -> bool:
        try:
            hashed = await self.store.get_item(PIN_KEY)
        except Exception:
            logger.exception('Error verifying PIN')
            return False
        if not hashed:
            return False
        return await sync_to_async(check_password, thread_sensitive=False)(pin, hashed)

    async def change_pin(self, old_pin: str, new_pin: str) -> PinChange:
        if not await self.verify_pin(old_pin):
            return PinChange(False, 'Current PIN is incorrect')
        try:
            await self.set_pin(new_pin)
        except ApiError as exc:
            return PinChange(False, exc.message)
        except Exception:
            logger.exception('Error changing PIN')
            return PinChange(False, 'Failed to change PIN')
        return PinChange(True)

    async def reset_pin(self) -> None:
        try:
            await self.store.remove_item(PIN_KEY)
        except Exception:
            logger.exception('Error resetting PIN')
