"""
Credential store backends.

The session manager only relies on a small asynchronous key/value
contract (get/set/remove, their multi-key variants and key
enumeration).  Two backends are provided:

``DatabaseCredentialStore``
    Persists items in the ``core.StoredItem`` table.  Django's ORM is
    synchronous, so every operation runs through ``sync_to_async``;
    multi-key writes happen inside a single transaction.

``MemoryCredentialStore``
    Keeps items in a process-local dict.  Useful for tests and for
    short-lived clients that must not leave anything on disk.
"""
from __future__ import annotations

from typing import Iterable, Optional

from asgiref.sync import sync_to_async
from django.conf import settings
from django.db import transaction
from django.utils.module_loading import import_string

from core.models import StoredItem


class CredentialStore:
    """Asynchronous key/value contract consumed by the session manager."""

    async def get_item(self, key: str) -> Optional[str]:
        raise NotImplementedError

    async def set_item(self, key: str, value: str) -> None:
        raise NotImplementedError

    async def remove_item(self, key: str) -> None:
        raise NotImplementedError

    async def multi_get(self, keys: Iterable[str]) -> list[tuple[str, Optional[str]]]:
        return [(key, await self.get_item(key)) for key in keys]

    async def multi_set(self, pairs: Iterable[tuple[str, str]]) -> None:
        raise NotImplementedError

    async def multi_remove(self, keys: Iterable[str]) -> None:
        raise NotImplementedError

    async def get_all_keys(self) -> list[str]:
        raise NotImplementedError

    async def clear(self) -> None:
        await self.multi_remove(await self.get_all_keys())


class DatabaseCredentialStore(CredentialStore):
    """Credential store backed by the ``StoredItem`` model."""

    async def get_item(self, key: str) -> Optional[str]:
        return await sync_to_async(self._get)(key)

    async def set_item(self, key: str, value: str) -> None:
        await sync_to_async(self._set_many)([(key, value)])

    async def remove_item(self, key: str) -> None:
        await sync_to_async(self._remove_many)([key])

    async def multi_get(self, keys: Iterable[str]) -> list[tuple[str, Optional[str]]]:
        return await sync_to_async(self._get_many)(list(keys))

    async def multi_set(self, pairs: Iterable[tuple[str, str]]) -> None:
        await sync_to_async(self._set_many)(list(pairs))

    async def multi_remove(self, keys: Iterable[str]) -> None:
        await sync_to_async(self._remove_many)(list(keys))

    async def get_all_keys(self) -> list[str]:
        return await sync_to_async(self._keys)()

    # ------------------------------------------------------------------
    # Synchronous ORM helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _get(key: str) -> Optional[str]:
        item = StoredItem.objects.filter(key=key).only('value').first()
        return item.value if item else None

    @staticmethod
    def _get_many(keys: list[str]) -> list[tuple[str, Optional[str]]]:
        found = dict(StoredItem.objects.filter(key__in=keys).values_list('key', 'value'))
        return [(key, found.get(key)) for key in keys]

    @staticmethod
    def _set_many(pairs: list[tuple[str, str]]) -> None:
        for key, value in pairs:
            if not isinstance(value, str):
                raise TypeError(f'value for {key!r} must be a string, got {type(value).__name__}')
        with transaction.atomic():
            for key, value in pairs:
                StoredItem.objects.update_or_create(key=key, defaults={'value': value})

    @staticmethod
    def _remove_many(keys: list[str]) -> None:
        if not keys:
            return
        with transaction.atomic():
            StoredItem.objects.filter(key__in=keys).delete()

    @staticmethod
    def _keys() -> list[str]:
        return list(StoredItem.objects.values_list('key', flat=True))


class MemoryCredentialStore(CredentialStore):
    """Credential store held in process memory."""

    def __init__(self, initial: Optional[dict[str, str]] = None):
        self._items: dict[str, str] = dict(initial or {})

    async def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    async def set_item(self, key: str, value: str) -> None:
        await self.multi_set([(key, value)])

    async def remove_item(self, key: str) -> None:
        self._items.pop(key, None)

    async def multi_set(self, pairs: Iterable[tuple[str, str]]) -> None:
        pairs = list(pairs)
        for key, value in pairs:
            if not isinstance(value, str):
                raise TypeError(f'value for {key!r} must be a string, got {type(value).__name__}')
        self._items.update(pairs)

    async def multi_remove(self, keys: Iterable[str]) -> None:
        for key in list(keys):
            self._items.pop(key, None)

    async def get_all_keys(self) -> list[str]:
        return list(self._items)

    def snapshot(self) -> dict[str, str]:
        """Return a copy of the stored items (diagnostics and tests)."""
        return dict(self._items)


def get_default_store() -> CredentialStore:
    """Instantiate the backend configured in ``MAMACARE_SESSION['STORE_BACKEND']``."""
    backend = settings.MAMACARE_SESSION.get('STORE_BACKEND', 'core.storage.DatabaseCredentialStore')
    store_cls = import_string(backend)
    return store_cls()
