"""REST accessor for the device platform.

One request/response round trip per call: the accessor encodes an optional
JSON body, checks the HTTP status, and returns the decoded payload.  Every
non-success outcome raises an ApiError subclass, so callers only ever see a
decoded result or an exception.

Idempotent methods that fail with a transient error (network failure,
timeout, 5xx, 429) are retried inside the accessor with random exponential
backoff.  Nothing above this layer retries.
"""

from __future__ import annotations

import json
import logging
import types
from typing import Any, Self

import aiohttp
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from devicecloud import constants
from devicecloud._logging import get_logger
from devicecloud.config import ClientConfig
from devicecloud.exceptions import (
    ApiError,
    ApiPermanentError,
    ApiTransientError,
    AuthenticationError,
)

logger = get_logger(__name__)

_HTTP_TOO_MANY_REQUESTS = 429
_HTTP_SERVER_ERROR = 500
_HTTP_AUTH_STATUSES = frozenset({401, 403})


def _error_message(status: int, reason: str | None, body: Any) -> str:
    """Prefer the platform's own error text over the bare HTTP reason."""
    if isinstance(body, dict):
        for key in ("error", "message", "detail"):
            if body.get(key):
                return f"{status} {reason or ''}: {body[key]}".strip()
    return f"{status} {reason or ''}".strip()


def _decode(body: bytes) -> Any:
    if not body:
        return None
    try:
        return json.loads(body)
    except ValueError:
        return body.decode(errors="replace")


class ApiClient:
    """Async accessor for the platform REST API.

    Owns an aiohttp session unless one is injected.  The session is also
    shared with WebSocket-based channels so all traffic uses one connector.

    Usage:
        async with ApiClient(config) as api:
            info = await api.call("/instances/abc")
            await api.call("/instances/abc/start", method="POST")
            png = await api.call("/instances/abc/screenshot.png", raw=True)
    """

    def __init__(
        self,
        config: ClientConfig,
        *,
        session: aiohttp.ClientSession | None = None,
        token: str | None = None,
    ) -> None:
        self._config = config
        self._session = session
        self._owns_session = session is None
        self._token = token

    async def __aenter__(self) -> Self:
        await self._ensure_session()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: types.TracebackType | None,
    ) -> None:
        await self.close()

    @property
    def config(self) -> ClientConfig:
        return self._config

    @property
    def token(self) -> str | None:
        return self._token

    @token.setter
    def token(self, value: str | None) -> None:
        self._token = value

    @property
    def headers(self) -> dict[str, str]:
        """Headers sent with every REST call and WebSocket handshake."""
        headers = {"Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    async def session(self) -> aiohttp.ClientSession:
        """Return the shared aiohttp session, creating it on first use."""
        return await self._ensure_session()

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._config.request_timeout_seconds),
                connector=aiohttp.TCPConnector(ssl=self._config.verify_tls),
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the session if this accessor created it.  Idempotent."""
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        if self._owns_session:
            self._session = None

    async def call(
        self,
        path: str,
        *,
        method: str = "GET",
        json: Any = None,
        params: dict[str, str] | None = None,
        raw: bool = False,
    ) -> Any:
        """Perform one REST call against the platform.

        Args:
            path: Resource path below the API prefix, e.g. "/instances/abc".
            method: HTTP method.
            json: Optional body, serialized as JSON.
            params: Optional query parameters.
            raw: Return the undecoded response body as bytes.

        Returns:
            Decoded JSON payload, None for an empty body, or bytes in raw mode.

        Raises:
            AuthenticationError: 401/403.
            ApiTransientError: Network failure, timeout, 5xx or 429.
            ApiPermanentError: Any other non-success status.
        """
        method = method.upper()
        attempts = self._config.api_max_attempts if method in constants.IDEMPOTENT_METHODS else 1

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_random_exponential(
                min=constants.API_RETRY_MIN_SECONDS,
                max=constants.API_RETRY_MAX_SECONDS,
            ),
            # Only transient failures are retried; 4xx fails immediately
            retry=retry_if_exception_type(ApiTransientError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                return await self._call_once(path, method=method, body=json, params=params, raw=raw)
        raise AssertionError("unreachable")  # pragma: no cover

    async def _call_once(
        self,
        path: str,
        *,
        method: str,
        body: Any,
        params: dict[str, str] | None,
        raw: bool,
    ) -> Any:
        session = await self._ensure_session()
        url = self._config.api_url + path
        try:
            async with session.request(method, url, json=body, params=params, headers=self.headers) as resp:
                payload = await resp.read()
                if resp.status >= 400:
                    raise self._status_error(path, resp.status, resp.reason, _decode(payload))
                return payload if raw else _decode(payload)
        except ApiError:
            raise
        except (aiohttp.ClientError, TimeoutError) as e:
            logger.debug("API call failed", extra={"method": method, "path": path, "error": str(e)})
            raise ApiTransientError(f"{method} {path} failed: {e}", path=path) from e

    @staticmethod
    def _status_error(path: str, status: int, reason: str | None, body: Any) -> ApiError:
        message = _error_message(status, reason, body)
        if status in _HTTP_AUTH_STATUSES:
            return AuthenticationError(message, status=status, path=path, body=body)
        if status == _HTTP_TOO_MANY_REQUESTS or status >= _HTTP_SERVER_ERROR:
            return ApiTransientError(message, status=status, path=path, body=body)
        return ApiPermanentError(message, status=status, path=path, body=body)
