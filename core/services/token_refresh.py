"""
Bearer token refresh.

``TokenRefresher.refresh`` exchanges the current token for a new one at
``POST /auth/refresh``.  Concurrent callers share a single in-flight
request.  Expiry helpers read the ``exp`` claim without verifying the
signature: the client cannot verify it and only uses the value to decide
when to refresh ahead of time.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import jwt

from core.exceptions import ApiError, ErrorKind, NotAuthenticatedError

logger = logging.getLogger(__name__)

REFRESH_ENDPOINT = '/auth/refresh'


def token_expiry(token: Optional[str]) -> Optional[datetime]:
    """Return the ``exp`` claim of a JWT as an aware datetime, or None for opaque tokens."""
    if not token or token.count('.') != 2:
        return None
    try:
        claims = jwt.decode(token, options={'verify_signature': False, 'verify_exp': False})
    except jwt.PyJWTError:
        return None
    exp = claims.get('exp')
    if not isinstance(exp, (int, float)):
        return None
    return datetime.fromtimestamp(exp, tz=timezone.utc)


def is_token_expired(token: Optional[str], leeway: int = 300, *, now: Optional[datetime] = None) -> bool:
    """True when the token's expiry is known and falls within ``leeway`` seconds."""
    expiry = token_expiry(token)
    if expiry is None:
        return False
    now = now or datetime.now(timezone.utc)
    return now >= expiry - timedelta(seconds=leeway)


class TokenRefresher:

    def __init__(self, gateway, token_getter: Callable[[], Optional[str]]):
        self.gateway = gateway
        self.token_getter = token_getter
        self._inflight: Optional[asyncio.Future] = None

    async def refresh(self) -> str:
        if self._inflight is not None and not self._inflight.done():
            return await asyncio.shield(self._inflight)

        loop = asyncio.get_running_loop()
        self._inflight = loop.create_future()
        inflight = self._inflight
        try:
            token = await self._request_new_token()
        except asyncio.CancelledError:
            inflight.cancel()
            raise
        except Exception as exc:
            inflight.set_exception(exc)
            # Consume it so a refresh with no concurrent waiters does not warn
            inflight.exception()
            raise
        else:
            inflight.set_result(token)
            return token
        finally:
            if self._inflight is inflight:
                self._inflight = None

    async def _request_new_token(self) -> str:
        if not self.token_getter():
            raise NotAuthenticatedError('No token to refresh')
        response = await self.gateway.post(REFRESH_ENDPOINT)
        data = response.data if isinstance(response.data, dict) else {}
        token = data.get('token')
        if not response.success or not token:
            raise ApiError(response.message or 'No token in refresh response', ErrorKind.INVALID_RESPONSE,
                           status=response.status, payload=data)
        logger.info('Bearer token refreshed')
        return token
