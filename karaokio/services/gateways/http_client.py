"""Shared httpx plumbing for the collaborator service clients.

Each remote collaborator (catalog, video search, media transform) gets its
own ``ServiceClient`` with a lazily-created ``httpx.AsyncClient`` and its
own circuit breaker, so one dead service fails fast without affecting the
others.
"""
from __future__ import annotations

import asyncio
import logging
import time as _time
from pathlib import Path
from typing import Any, Optional

import httpx

from karaokio.services.gateways.base import ProgressCallback

logger = logging.getLogger(__name__)


class GatewayError(Exception):
    """Base class for collaborator service failures."""


class ServiceUnavailable(GatewayError):
    """Raised when a service call is refused because its breaker is open."""

    def __init__(self, service: str, cooldown: float):
        self.service = service
        super().__init__(f"{service} unavailable (circuit open, retry in <= {cooldown:g}s)")


class ServiceError(GatewayError):
    """Non-2xx response or malformed payload from a collaborator service."""


class _CircuitBreaker:
    """Fail fast after ``threshold`` consecutive failures.

    The circuit stays open for ``cooldown`` seconds, then lets one probe
    through (half-open).  Success closes it; failure re-opens it.
    """

    def __init__(self, name: str, threshold: int = 3, cooldown: float = 60.0):
        self.name = name
        self.threshold = threshold
        self.cooldown = cooldown
        self._failures = 0
        self._opened_at: float | None = None

    @property
    def is_open(self) -> bool:
        if self._opened_at is None:
            return False
        if _time.monotonic() - self._opened_at >= self.cooldown:
            return False
        return True

    def record_success(self) -> None:
        if self._opened_at is not None:
            logger.info(f"🟢 {self.name} circuit breaker CLOSED (successful request)")
        self._failures = 0
        self._opened_at = None

    def record_failure(self) -> None:
        self._failures += 1
        if self._failures >= self.threshold and self._opened_at is None:
            self._opened_at = _time.monotonic()
            logger.error(
                f"🔴 {self.name} circuit breaker OPEN after {self._failures} "
                f"consecutive failures, failing fast for {self.cooldown}s"
            )
        elif self._opened_at is not None:
            if _time.monotonic() - self._opened_at >= self.cooldown:
                self._opened_at = _time.monotonic()
                logger.error(
                    f"🔴 {self.name} circuit breaker re-opened (probe failed), "
                    f"failing fast for another {self.cooldown}s"
                )


_CONNECTION_LIMITS = httpx.Limits(
    max_connections=20,
    max_keepalive_connections=10,
    keepalive_expiry=30.0,
)

_DOWNLOAD_CHUNK = 64 * 1024


class ServiceClient:
    """Base class for JSON-over-HTTP collaborator clients."""

    service_name = "service"

    def __init__(
        self,
        base_url: str,
        timeout: float = 60.0,
        cb_threshold: int = 3,
        cb_cooldown: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._cb = _CircuitBreaker(self.service_name, cb_threshold, cb_cooldown)

    @property
    def circuit_breaker_open(self) -> bool:
        return self._cb.is_open

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(connect=5.0, read=float(self.timeout), write=30.0, pool=5.0),
                limits=_CONNECTION_LIMITS,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def request_json(
        self,
        method: str,
        path: str,
        *,
        allow_404: bool = False,
        **kwargs: Any,
    ) -> Optional[dict[str, Any]]:
        """Send a request and decode a JSON object body.

        Returns ``None`` for a 404 when ``allow_404`` is set.  Transport
        errors and 5xx responses count against the circuit breaker.
        """
        if self._cb.is_open:
            raise ServiceUnavailable(self.service_name, self._cb.cooldown)
        try:
            response = await self.client.request(method, path, **kwargs)
        except httpx.HTTPError:
            self._cb.record_failure()
            raise

        if response.status_code >= 500:
            self._cb.record_failure()
            raise ServiceError(
                f"{self.service_name} {method} {path} returned {response.status_code}: "
                f"{response.text[:200]}"
            )
        self._cb.record_success()

        if response.status_code == 404 and allow_404:
            return None
        if response.status_code >= 400:
            raise ServiceError(
                f"{self.service_name} {method} {path} returned {response.status_code}: "
                f"{response.text[:200]}"
            )
        payload = response.json()
        if not isinstance(payload, dict):
            raise ServiceError(f"{self.service_name} {method} {path} returned non-object JSON")
        return payload

    async def download(
        self,
        url: str,
        destination: Path,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Path:
        """Stream ``url`` into ``destination``, reporting fractional progress.

        A partially written file is removed when the download fails or is
        cancelled.
        """
        if self._cb.is_open:
            raise ServiceUnavailable(self.service_name, self._cb.cooldown)
        destination.parent.mkdir(parents=True, exist_ok=True)
        partial = destination.with_name(destination.name + ".part")
        try:
            async with self.client.stream("GET", url) as response:
                if response.status_code >= 400:
                    if response.status_code >= 500:
                        self._cb.record_failure()
                    raise ServiceError(
                        f"{self.service_name} download {url} returned {response.status_code}"
                    )
                total = int(response.headers.get("content-length") or 0)
                received = 0
                with partial.open("wb") as fh:
                    async for chunk in response.aiter_bytes(_DOWNLOAD_CHUNK):
                        fh.write(chunk)
                        received += len(chunk)
                        if on_progress is not None and total:
                            on_progress(min(received / total, 1.0))
            partial.replace(destination)
        except httpx.HTTPError:
            self._cb.record_failure()
            partial.unlink(missing_ok=True)
            raise
        except (ServiceError, asyncio.CancelledError, OSError):
            partial.unlink(missing_ok=True)
            raise

        self._cb.record_success()
        if on_progress is not None:
            on_progress(1.0)
        logger.info(f"⬇️ Downloaded {destination.name} from {self.service_name}")
        return destination
