"""Read-only client for the media relay's HTTP query API (``/v3/...``)."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable
from urllib.parse import quote

import aiohttp

from .errors import UpstreamHTTPError, UpstreamUnavailable

log = logging.getLogger("camrelay.relay_api")

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY_SECONDS = 1.0
DEFAULT_REQUEST_TIMEOUT_SECONDS = 10.0

# DNS failures, refused connections and unknown hosts all surface as
# ClientConnectorError (ClientConnectorDNSError is a subclass).
RETRYABLE_CONNECTION_ERRORS: tuple[type[BaseException], ...] = (aiohttp.ClientConnectorError,)

Sleep = Callable[[float], Awaitable[Any]]


def backoff_delay(base_delay: float, attempt: int) -> float:
    return base_delay * (2 ** (attempt - 1))


async def retry_api_call(
    session: aiohttp.ClientSession,
    url: str,
    *,
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY_SECONDS,
    sleep: Sleep = asyncio.sleep,
    **request_kwargs: Any,
) -> Any:
    """GET ``url`` and return its decoded JSON body.

    5xx answers and connection-level failures are retried with exponential
    backoff (``base_delay * 2**(attempt-1)``), up to ``max_retries`` attempts in
    total. 4xx answers and any other error fail at once.
    """

    attempts = max(1, int(max_retries))
    for attempt in range(1, attempts + 1):
        log.debug("API call to %s (attempt %d/%d)", url, attempt, attempts)
        try:
            async with session.get(url, **request_kwargs) as response:
                if response.status < 400:
                    try:
                        return await response.json(content_type=None)
                    except ValueError as exc:
                        raise UpstreamUnavailable(
                            "Invalid JSON from relay API", details=f"{url}: {exc}"
                        ) from exc
                status = response.status
                reason = response.reason or ""
        except RETRYABLE_CONNECTION_ERRORS as exc:
            log.warning("API call attempt %d to %s failed: %s", attempt, url, exc)
            if attempt >= attempts:
                raise UpstreamUnavailable("Relay API unreachable", details=f"{url}: {exc}") from exc
            delay = backoff_delay(base_delay, attempt)
            log.info("Connection error, retrying in %.1fs", delay)
            await sleep(delay)
            continue
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            log.warning("API call to %s failed: %s", url, exc)
            raise UpstreamUnavailable("Relay API request failed", details=f"{url}: {exc!r}") from exc

        if status >= 500 and attempt < attempts:
            delay = backoff_delay(base_delay, attempt)
            log.info("Server error %d from %s, retrying in %.1fs", status, url, delay)
            await sleep(delay)
            continue
        raise UpstreamHTTPError(status, reason, url=url)

    raise UpstreamUnavailable("Relay API unreachable", details=url)  # pragma: no cover


class RelayApiClient:
    """Typed accessors for the relay query endpoints.

    Credentials are looked up through ``credentials`` on every request so an
    edited ``authInternalUsers`` entry takes effect without a restart.
    """

    def __init__(
        self,
        base_url: str,
        *,
        credentials: Callable[[], tuple[str, str]],
        session: aiohttp.ClientSession | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay: float = DEFAULT_BASE_DELAY_SECONDS,
        timeout: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._credentials = credentials
        self._session = session
        self._owns_session = session is None
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.timeout = timeout
        self._sleep = sleep

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _auth_headers(self) -> dict[str, str]:
        user, password = self._credentials()
        return {"Authorization": aiohttp.encode_basic_auth(user, password)}

    def url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    async def get_json(self, path: str) -> Any:
        return await retry_api_call(
            self._get_session(),
            self.url(path),
            max_retries=self.max_retries,
            base_delay=self.base_delay,
            sleep=self._sleep,
            headers=self._auth_headers(),
        )

    async def _items(self, path: str) -> list[dict[str, Any]]:
        payload = await self.get_json(path)
        if not isinstance(payload, dict):
            return []
        items = payload.get("items")
        return [item for item in items if isinstance(item, dict)] if isinstance(items, list) else []

    async def global_config(self) -> Any:
        return await self.get_json("/v3/config/global/get")

    async def list_paths(self) -> list[dict[str, Any]]:
        return await self._items("/v3/paths/list")

    async def get_path(self, name: str) -> dict[str, Any]:
        payload = await self.get_json(f"/v3/paths/get/{quote(name, safe='/')}")
        return payload if isinstance(payload, dict) else {}

    async def list_rtsp_sessions(self) -> list[dict[str, Any]]:
        return await self._items("/v3/rtspsessions/list")

    async def list_rtmp_sessions(self) -> list[dict[str, Any]]:
        return await self._items("/v3/rtmpsessions/list")

    async def probe(
        self,
        *,
        attempts: int = 10,
        interval: float = 5.0,
        timeout: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
    ) -> bool:
        """Check that the query API answers before we start serving.

        Never raises: an unreachable relay is logged and the service starts
        anyway.
        """

        url = self.url("/v3/config/global/get")
        session = self._get_session()
        for attempt in range(1, attempts + 1):
            log.info("Testing relay API connection (attempt %d/%d)...", attempt, attempts)
            try:
                async with session.get(
                    url,
                    headers=self._auth_headers(),
                    timeout=aiohttp.ClientTimeout(total=timeout),
                ) as response:
                    if response.status < 400:
                        log.info("Relay API connection successful")
                        return True
                    log.warning("Relay API responded with status %d", response.status)
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                log.warning("Relay API connection failed (attempt %d): %s", attempt, exc)
            if attempt < attempts:
                log.info("Waiting %.0f seconds before retry...", interval)
                await self._sleep(interval)
        log.error(
            "Failed to connect to the relay API after %d attempts. "
            "Starting anyway; status calls may fail.",
            attempts,
        )
        return False
