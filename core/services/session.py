"""
Session manager for the MamaCare mobile client.

The manager owns the in-memory ``{token, user}`` pair, mediates login,
registration and logout, detects authentication failures and makes sure
that logging out (voluntarily or not) leaves no credential material in
the store.

Only users with the ``patient`` role may hold a session on this client.
Any other role that authenticates successfully against the backend is
rejected and the freshly issued token is discarded.

All operations are coroutines meant to be awaited one after the other
by the UI layer; the manager does not serialize overlapping calls.
"""
from __future__ import annotations

import asyncio
import enum
import inspect
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional

from django.conf import settings

from core.exceptions import ApiError, ErrorKind, NotAuthenticatedError, api_exception_payload, is_authentication_error
from core.permissions import has_mobile_access, is_staff_role
from core.serializers.auth import (
    ChangePasswordSerializer,
    LoginSerializer,
    RegisterSerializer,
    UserRecordSerializer,
    first_error_message,
)
from core.services.api_gateway import ApiResponse
from core.services.audit import log_action
from core.services.onboarding import ONBOARDING_KEY, OnboardingFlag
from core.services.pin_lock import PIN_KEY, PinChange, PinLock
from core.services.token_refresh import TokenRefresher, is_token_expired
from core.storage import CredentialStore

logger = logging.getLogger(__name__)

AUTH_TOKEN_KEY = 'auth_token'
USER_DATA_KEY = 'user_data'
CREDENTIAL_KEYS = (AUTH_TOKEN_KEY, USER_DATA_KEY)

ROLE_REJECTED_LOGIN = 'Only patients can sign in to the mobile app'
ROLE_REJECTED_REGISTER = 'Only patients can register via the mobile app'

FailureCallback = Callable[[], Any]


class SessionState(str, enum.Enum):
    UNAUTHENTICATED = 'unauthenticated'
    AUTHENTICATING = 'authenticating'
    AUTHENTICATED = 'authenticated'
    INVALIDATING = 'invalidating'


@dataclass
class UserRecord:
    id: str
    role: str
    first_name: str = ''
    last_name: str = ''
    email: str = ''
    phone: Optional[str] = None
    full_name: Optional[str] = None
    avatar: Optional[str] = None
    email_verified: Optional[bool] = None
    last_login: Optional[str] = None
    extra: dict = field(default_factory=dict)

    _FIELDS = {
        'id': 'id',
        'firstName': 'first_name',
        'lastName': 'last_name',
        'email': 'email',
        'role': 'role',
        'phone': 'phone',
        'fullName': 'full_name',
        'avatar': 'avatar',
        'emailVerified': 'email_verified',
        'lastLogin': 'last_login',
    }

    @classmethod
    def from_payload(cls, payload: Any) -> "UserRecord":
        """Build a record from the backend's camelCase user object."""
        serializer = UserRecordSerializer(data=payload)
        if not serializer.is_valid():
            raise ApiError(
                f'Invalid user data from server: {first_error_message(serializer.errors)}',
                ErrorKind.INVALID_RESPONSE,
                payload=payload,
            )
        vd = serializer.validated_data
        extra = {k: v for k, v in payload.items() if k not in cls._FIELDS and k != '_id'}
        return cls(extra=extra, **{attr: vd[key] for key, attr in cls._FIELDS.items() if key in vd})

    @classmethod
    def from_json(cls, raw: str) -> "UserRecord":
        return cls.from_payload(json.loads(raw))

    def to_payload(self) -> dict[str, Any]:
        payload = dict(self.extra)
        for key, attr in self._FIELDS.items():
            value = getattr(self, attr)
            if value is not None:
                payload[key] = value
        return payload

    def to_json(self) -> str:
        return json.dumps(self.to_payload())

    @property
    def display_name(self) -> str:
        return self.full_name or f'{self.first_name} {self.last_name}'.strip() or self.email


@dataclass
class AuthResult:
    """Outcome of :meth:`SessionManager.login` / :meth:`SessionManager.register`.

    ``reason`` tells failures apart: ``validation`` (rejected before any
    request), ``credentials`` (the backend declined) or ``role`` (a
    non-patient account authenticated and was turned away).
    """
    success: bool
    user: Optional[UserRecord] = None
    token: Optional[str] = None
    message: Optional[str] = None
    reason: Optional[str] = None
    errors: list = field(default_factory=list)


class SessionManager:

    def __init__(
        self,
        store: CredentialStore,
        gateway,
        *,
        onboarding: Optional[OnboardingFlag] = None,
        pin_lock: Optional[PinLock] = None,
        refresher: Optional[TokenRefresher] = None,
        preserved_key_prefixes: Optional[list[str]] = None,
        preserved_keys: Optional[list[str]] = None,
        legacy_keys: Optional[list[str]] = None,
        refresh_leeway: Optional[int] = None,
    ):
        conf = getattr(settings, 'MAMACARE_SESSION', {})
        self.store = store
        self.gateway = gateway
        self.onboarding = onboarding or OnboardingFlag(store)
        self.pin_lock = pin_lock or PinLock(store)
        self.refresher = refresher or TokenRefresher(gateway, self.get_token)
        self.preserved_key_prefixes = tuple(
            preserved_key_prefixes if preserved_key_prefixes is not None else conf.get('PRESERVED_KEY_PREFIXES', [])
        )
        self.preserved_keys = set(preserved_keys if preserved_keys is not None else conf.get('PRESERVED_KEYS', []))
        self.legacy_keys = list(legacy_keys if legacy_keys is not None else conf.get('LEGACY_KEYS', []))
        self.refresh_leeway = refresh_leeway if refresh_leeway is not None else conf.get('REFRESH_LEEWAY_SECONDS', 300)

        self._token: Optional[str] = None
        self._user: Optional[UserRecord] = None
        self._state = SessionState.UNAUTHENTICATED
        self._callbacks: list[FailureCallback] = []
        self._callback_tasks: set[asyncio.Future] = set()
        self._failures_handled = 0

        self.gateway.set_session_manager(self)

    # ------------------------------------------------------------------
    # Getters
    # ------------------------------------------------------------------
    @property
    def state(self) -> SessionState:
        return self._state

    def get_token(self) -> Optional[str]:
        return self._token

    def get_user(self) -> Optional[UserRecord]:
        return self._user

    def is_authenticated(self) -> bool:
        return self._token is not None and self._user is not None

    @property
    def known_keys(self) -> list[str]:
        """Keys removed on every complete wipe, whether or not enumeration works."""
        return [*CREDENTIAL_KEYS, ONBOARDING_KEY, PIN_KEY, *self.legacy_keys]

    def _set_session(self, token: Optional[str], user: Optional[UserRecord]) -> None:
        # token and user are always set and cleared together
        if token is None or user is None:
            self._token, self._user = None, None
            self._state = SessionState.UNAUTHENTICATED
        else:
            self._token, self._user = token, user
            self._state = SessionState.AUTHENTICATED

    def _settle_state(self) -> None:
        self._state = SessionState.AUTHENTICATED if self.is_authenticated() else SessionState.UNAUTHENTICATED

    # ------------------------------------------------------------------
    # Failure callbacks
    # ------------------------------------------------------------------
    def on_authentication_failure(self, callback: FailureCallback) -> None:
        self._callbacks.append(callback)

    def remove_authentication_failure_callback(self, callback: FailureCallback) -> None:
        self._callbacks = [cb for cb in self._callbacks if cb != callback]

    @property
    def failure_callbacks(self) -> tuple[FailureCallback, ...]:
        return tuple(self._callbacks)

    def _notify_authentication_failure(self, callbacks: Optional[list[FailureCallback]] = None) -> None:
        for callback in list(self._callbacks if callbacks is None else callbacks):
            try:
                result = callback()
            except Exception:
                logger.exception('Error in authentication failure callback %r', callback)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._callback_tasks.add(task)
                task.add_done_callback(self._callback_done)

    def _callback_done(self, task: asyncio.Future) -> None:
        self._callback_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error('Error in authentication failure callback', exc_info=task.exception())

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def initialize(self) -> SessionState:
        """Restore a persisted session without touching the network."""
        try:
            stored = dict(await self.store.multi_get(CREDENTIAL_KEYS))
        except Exception:
            logger.exception('Failed to initialize session from the credential store')
            return self._state

        token, raw_user = stored.get(AUTH_TOKEN_KEY), stored.get(USER_DATA_KEY)
        if not token or not raw_user:
            if token or raw_user:
                logger.warning('Persisted session is incomplete; starting unauthenticated')
            return self._state

        try:
            user = UserRecord.from_json(raw_user)
        except (ValueError, TypeError, ApiError) as exc:
            logger.warning('Persisted user data is unreadable (%s); starting unauthenticated', exc)
            return self._state

        if not has_mobile_access(user):
            logger.warning('Persisted session belongs to role %r; clearing it', user.role)
            await self.perform_complete_logout()
            return self._state

        self._set_session(token, user)
        logger.info('Session restored for user %s', user.id)
        return self._state

    async def login(self, credentials: Mapping[str, Any]) -> AuthResult:
        s = LoginSerializer(data=dict(credentials))
        if not s.is_valid():
            return AuthResult(False, message=first_error_message(s.errors), reason='validation', errors=[s.errors])
        return await self._authenticate('/auth/login', s.validated_data, ROLE_REJECTED_LOGIN, action='login')

    async def register(self, credentials: Mapping[str, Any]) -> AuthResult:
        s = RegisterSerializer(data=dict(credentials))
        if not s.is_valid():
            return AuthResult(False, message=first_error_message(s.errors), reason='validation', errors=[s.errors])
        return await self._authenticate('/auth/register', s.validated_data, ROLE_REJECTED_REGISTER, action='register')

    async def _authenticate(self, endpoint: str, body: dict, role_message: str, *, action: str) -> AuthResult:
        self._state = SessionState.AUTHENTICATING
        try:
            # 401 on these endpoints is credential feedback; the gateway does not broadcast it
            response = await self.gateway.post(endpoint, body)
            if not response.success or not isinstance(response.data, dict):
                log_action(action=action, result='declined', detail={'message': response.message})
                return AuthResult(False, message=response.message or 'Authentication failed',
                                  reason='credentials', errors=response.errors)
            data = response.data
            user = UserRecord.from_payload(data.get('user'))
            token = data.get('token')
            if not token:
                raise ApiError('No token in authentication response', ErrorKind.INVALID_RESPONSE, payload=data)
        except Exception as exc:
            log_action(action=action, result='error', detail=api_exception_payload(exc)['error'])
            raise
        finally:
            self._settle_state()

        if not has_mobile_access(user):
            await self.perform_complete_logout()
            log_action(user=user, action=action, result='role_rejected', detail={'staff_role': is_staff_role(user)})
            return AuthResult(False, message=role_message, reason='role')

        await self.refresh_for_new_user(token, user)
        log_action(user=user, action=action)
        return AuthResult(True, user=user, token=token, message=response.message)

    async def refresh_for_new_user(self, token: str, user: UserRecord) -> None:
        """Replace whatever the store holds with the new user's session."""
        await self._complete_wipe(keep_callbacks=True)
        self._set_session(token, user)
        try:
            await self.store.multi_set([(AUTH_TOKEN_KEY, token), (USER_DATA_KEY, user.to_json())])
        except Exception:
            logger.exception('Failed to persist session for user %s', user.id)
            self._set_session(None, None)
            raise
        await self.onboarding.mark_completed()
        logger.info('Session established for user %s', user.id)

    async def logout(self) -> None:
        if self._token:
            try:
                await self.gateway.post('/auth/logout')
                logger.info('Server logout successful')
            except Exception as exc:
                logger.warning('Server logout failed, continuing with local logout: %s', exc)
        await self.perform_complete_logout()
        log_action(action='logout')

    async def perform_complete_logout(self) -> None:
        await self._complete_wipe(keep_callbacks=False)

    async def force_complete_logout(self) -> None:
        """Emergency logout; always broadcasts so the UI leaves authenticated screens."""
        logger.warning('Force complete logout initiated')
        callbacks = list(self._callbacks)
        try:
            await self.perform_complete_logout()
        except Exception:
            logger.exception('Force logout cleanup failed')
        self._set_session(None, None)
        self._notify_authentication_failure(callbacks)
        log_action(action='force_logout')

    async def handle_authentication_failure(self) -> None:
        logger.warning('Handling authentication failure; clearing session')
        self._failures_handled += 1
        await self._complete_wipe(keep_callbacks=True)
        self._notify_authentication_failure()
        log_action(action='auth_failure', result='invalidated')

    # ------------------------------------------------------------------
    # Complete wipe
    # ------------------------------------------------------------------
    def _is_preserved(self, key: str) -> bool:
        return key in self.preserved_keys or key.startswith(self.preserved_key_prefixes)

    async def _remove_enumerated_keys(self) -> None:
        keys = await self.store.get_all_keys()
        removable = [k for k in keys if not self._is_preserved(k)]
        if removable:
            await self.store.multi_remove(removable)
            logger.debug('Cleared stored keys: %s', removable)

    async def _remove_known_keys(self) -> None:
        await self.store.multi_remove(self.known_keys)

    async def _verify_wiped(self) -> None:
        remaining = [k for k, v in await self.store.multi_get(CREDENTIAL_KEYS) if v is not None]
        if remaining:
            logger.warning('Credential keys still present after wipe (%s); removing again', ', '.join(remaining))
            await self.store.multi_remove(CREDENTIAL_KEYS)
        else:
            logger.debug('Complete wipe verified; no credential keys remain')

    async def _complete_wipe(self, *, keep_callbacks: bool) -> None:
        self._state = SessionState.INVALIDATING
        for name, stage in (('enumerated removal', self._remove_enumerated_keys),
                            ('known key removal', self._remove_known_keys)):
            try:
                await stage()
            except Exception:
                logger.exception('Session wipe stage "%s" failed', name)

        self._set_session(None, None)
        if not keep_callbacks:
            self._callbacks = []

        try:
            await self._verify_wiped()
        except Exception:
            logger.exception('Session wipe verification failed')

    async def verify_logout_status(self) -> bool:
        """True when neither memory nor the store holds credential material."""
        try:
            stored = [k for k, v in await self.store.multi_get(CREDENTIAL_KEYS) if v is not None]
        except Exception:
            logger.exception('Logout verification error')
            return False
        in_memory = self._token is not None or self._user is not None
        if stored or in_memory:
            logger.warning('Logout verification failed: stored=%s in_memory=%s', stored, in_memory)
            return False
        return True

    # ------------------------------------------------------------------
    # Authenticated calls
    # ------------------------------------------------------------------
    async def get_current_user(self) -> ApiResponse:
        if not self._token:
            raise NotAuthenticatedError()

        failures_before = self._failures_handled
        try:
            response = await self.gateway.get('/auth/me')
            if not response.success or not isinstance(response.data, dict):
                raise ApiError('Failed to get user data - token may be invalid', ErrorKind.UNAUTHORIZED,
                               status=response.status)
            user = UserRecord.from_payload(response.data.get('user'))
            if not has_mobile_access(user):
                raise ApiError(ROLE_REJECTED_LOGIN, ErrorKind.FORBIDDEN, status=response.status)
        except Exception as exc:
            if is_authentication_error(exc) and self._failures_handled == failures_before:
                logger.warning('Authentication error while fetching current user: %s', exc)
                await self.handle_authentication_failure()
            raise

        # The session may have ended while the request was in flight
        if self._token is not None:
            self._user = user
            try:
                await self.store.set_item(USER_DATA_KEY, user.to_json())
            except Exception:
                logger.exception('Failed to persist refreshed user profile')
        return response

    async def validate_token(self) -> bool:
        """Check the held token against the backend.

        Any failure, transport errors included, counts as an invalid token.
        """
        if not self._token:
            return False
        failures_before = self._failures_handled
        try:
            await self.get_current_user()
            return True
        except Exception as exc:
            logger.warning('Token validation failed: %s', exc)
            if self._failures_handled == failures_before:
                await self.handle_authentication_failure()
            return False

    async def is_logged_in(self) -> bool:
        if not self.is_authenticated():
            return False
        return await self.validate_token()

    async def refresh_token(self) -> bool:
        if not self._token:
            return False
        failures_before = self._failures_handled
        try:
            token = await self.refresher.refresh()
        except Exception as exc:
            logger.error('Token refresh failed: %s', exc)
            if self._failures_handled == failures_before:
                await self.handle_authentication_failure()
            return False

        if self._token is None:
            return False
        self._token = token
        try:
            await self.store.set_item(AUTH_TOKEN_KEY, token)
        except Exception:
            logger.exception('Failed to persist refreshed token')
        return True

    async def ensure_fresh_token(self) -> bool:
        """Refresh ahead of expiry when the held token is a JWT close to its ``exp``."""
        if not self._token:
            return False
        if not is_token_expired(self._token, self.refresh_leeway):
            return True
        return await self.refresh_token()

    async def change_password(self, current_password: str, new_password: str) -> ApiResponse:
        s = ChangePasswordSerializer(data={'currentPassword': current_password, 'newPassword': new_password})
        if not s.is_valid():
            raise ApiError(first_error_message(s.errors), ErrorKind.VALIDATION, errors=[s.errors])
        if not self._token:
            raise NotAuthenticatedError()
        return await self.gateway.put('/auth/change-password', dict(s.validated_data))

    # ------------------------------------------------------------------
    # Onboarding
    # ------------------------------------------------------------------
    async def has_completed_onboarding(self) -> bool:
        return await self.onboarding.has_completed()

    async def set_onboarding_completed(self) -> None:
        await self.onboarding.mark_completed()

    async def clear_onboarding_status(self) -> None:
        await self.onboarding.clear()

    # ------------------------------------------------------------------
    # App-lock PIN
    # ------------------------------------------------------------------
    async def has_pin(self) -> bool:
        return await self.pin_lock.has_pin()

    async def set_pin(self, pin: str) -> None:
        await self.pin_lock.set_pin(pin)

    async def verify_pin(self, pin: str) -> bool:
        return await self.pin_lock.verify_pin(pin)

    async def change_pin(self, old_pin: str, new_pin: str) -> PinChange:
        return await self.pin_lock.change_pin(old_pin, new_pin)

    async def reset_pin(self) -> None:
        await self.pin_lock.reset_pin()
