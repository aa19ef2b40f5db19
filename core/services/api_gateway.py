"""
HTTP gateway to the MamaCare backend.

Every call goes through :meth:`ApiGateway.request`, which

* attaches ``Authorization: Bearer <token>`` using the session manager's
  in-memory token (the store is never read here),
* unwraps the backend envelope ``{success, message, data, errors}``,
* turns non-2xx answers and transport problems into :class:`ApiError`
  values tagged with an :class:`ErrorKind`,
* notifies the registered session manager when an authenticated call is
  rejected with 401/403, except on the login/register endpoints where
  such an answer only means the credentials were wrong.

``requests`` is blocking, so the actual I/O runs in a worker thread via
``sync_to_async``.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import requests
from asgiref.sync import sync_to_async
from django.conf import settings

from core.exceptions import ApiError, ErrorKind

logger = logging.getLogger(__name__)


@dataclass
class ApiResponse:
    success: bool
    data: Any = None
    message: Optional[str] = None
    errors: list = field(default_factory=list)
    status: Optional[int] = None

    @classmethod
    def from_payload(cls, payload: dict, status: Optional[int] = None) -> "ApiResponse":
        return cls(
            success=bool(payload.get('success')),
            data=payload.get('data'),
            message=payload.get('message'),
            errors=payload.get('errors') or [],
            status=status,
        )


class ApiGateway:
    """Async facade over a ``requests.Session`` bound to the backend base URL."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: int = 30,
        health_timeout: int = 5,
        fallback_urls: Optional[list[str]] = None,
        exempt_paths: Optional[list[str]] = None,
        http: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.health_timeout = health_timeout
        self.fallback_urls = [u.rstrip('/') for u in (fallback_urls or [])]
        self.exempt_paths = list(exempt_paths if exempt_paths is not None else ['/auth/login', '/auth/register'])
        self.http = http or requests.Session()
        self._session_manager = None

    @classmethod
    def from_settings(cls, **overrides) -> "ApiGateway":
        conf = settings.MAMACARE_API
        kwargs = {
            'base_url': conf['BASE_URL'],
            'timeout': conf.get('TIMEOUT', 30),
            'health_timeout': conf.get('HEALTH_TIMEOUT', 5),
            'fallback_urls': conf.get('FALLBACK_URLS', []),
            'exempt_paths': conf.get('AUTH_HOOK_EXEMPT_PATHS'),
        }
        kwargs.update(overrides)
        return cls(**kwargs)

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------
    def set_session_manager(self, manager) -> None:
        """Register the session manager that owns the bearer token and the failure hook."""
        self._session_manager = manager

    @property
    def session_manager(self):
        return self._session_manager

    def set_base_url(self, url: str) -> None:
        if not url:
            return
        url = url.rstrip('/')
        if url != self.base_url:
            logger.info('API base URL updated from %s to %s', self.base_url, url)
        self.base_url = url

    def get_base_url(self) -> str:
        return self.base_url

    # ------------------------------------------------------------------
    # Verbs
    # ------------------------------------------------------------------
    async def get(self, endpoint: str) -> ApiResponse:
        return await self.request('GET', endpoint)

    async def post(self, endpoint: str, data: Any = None) -> ApiResponse:
        return await self.request('POST', endpoint, data)

    async def put(self, endpoint: str, data: Any = None) -> ApiResponse:
        return await self.request('PUT', endpoint, data)

    async def patch(self, endpoint: str, data: Any = None) -> ApiResponse:
        return await self.request('PATCH', endpoint, data)

    async def delete(self, endpoint: str) -> ApiResponse:
        return await self.request('DELETE', endpoint)

    async def request(self, method: str, endpoint: str, data: Any = None) -> ApiResponse:
        headers = self._headers()
        url = f'{self.base_url}{endpoint}'
        logger.debug('%s %s', method, url)
        try:
            response = await sync_to_async(self._send, thread_sensitive=False)(method, url, data, headers)
        except ApiError as exc:
            if exc.kind not in (ErrorKind.NETWORK, ErrorKind.TIMEOUT):
                raise
            logger.info('Primary URL failed (%s), trying fallback URLs', exc.message)
            working_url = await self.find_working_url()
            if not working_url:
                raise
            url = f'{working_url}{endpoint}'
            logger.info('Retrying %s %s', method, url)
            response = await sync_to_async(self._send, thread_sensitive=False)(method, url, data, headers)
        return await self._handle_response(endpoint, response)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------
    async def test_connection(self) -> bool:
        """Probe ``<base_url>/health``."""
        return await sync_to_async(self._probe, thread_sensitive=False)(self.base_url)

    async def find_working_url(self) -> Optional[str]:
        """Return the first healthy URL among the base URL and the fallbacks and adopt it."""
        candidates = list(dict.fromkeys([self.base_url, *self.fallback_urls]))
        for url in candidates:
            if await sync_to_async(self._probe, thread_sensitive=False)(url):
                logger.info('Found working API URL: %s', url)
                self.set_base_url(url)
                return url
        logger.warning('No working API URL found among %s', candidates)
        return None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _headers(self) -> dict[str, str]:
        headers = {'Content-Type': 'application/json', 'Accept': 'application/json'}
        token = self._session_manager.get_token() if self._session_manager is not None else None
        if token:
            headers['Authorization'] = f'Bearer {token}'
        return headers

    def _is_hook_exempt(self, endpoint: str) -> bool:
        path = endpoint.split('?', 1)[0]
        return any(path == p or path.startswith(p.rstrip('/') + '/') for p in self.exempt_paths)

    def _send(self, method: str, url: str, data: Any, headers: dict[str, str]) -> requests.Response:
        try:
            return self.http.request(method, url, json=data, headers=headers, timeout=self.timeout)
        except requests.Timeout as exc:
            raise ApiError(
                f'Request timeout after {self.timeout} seconds. Please check your internet connection and server status.',
                ErrorKind.TIMEOUT,
            ) from exc
        except requests.RequestException as exc:
            raise ApiError(f'Network request failed: {exc}', ErrorKind.NETWORK) from exc

    def _probe(self, url: str) -> bool:
        try:
            r = self.http.get(f'{url}/health', timeout=self.health_timeout)
            return r.ok
        except requests.RequestException as exc:
            logger.debug('Health probe failed for %s: %s', url, exc)
            return False

    @staticmethod
    def _decode(response: requests.Response) -> Any:
        content_type = response.headers.get('content-type', '')
        if 'application/json' in content_type:
            try:
                return response.json()
            except ValueError:
                return {'message': response.text}
        return {'message': response.text}

    async def _handle_response(self, endpoint: str, response: requests.Response) -> ApiResponse:
        payload = self._decode(response)
        status = response.status_code

        if status in (401, 403):
            error = ApiError.from_status(status, payload)
            if self._is_hook_exempt(endpoint):
                logger.info('%s rejected the credentials (%s)', endpoint, status)
            elif self._session_manager is not None:
                logger.warning('Authenticated call to %s rejected (%s); invalidating session', endpoint, status)
                await self._session_manager.handle_authentication_failure()
                error.handled = True
            raise error

        if not response.ok:
            error = ApiError.from_status(status, payload)
            logger.info('Request to %s failed: %s - %s', endpoint, status, error.message)
            raise error

        if not isinstance(payload, dict):
            raise ApiError('Unexpected response from server', ErrorKind.INVALID_RESPONSE, status=status, payload=payload)
        return ApiResponse.from_payload(payload, status)
