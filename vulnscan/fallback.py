"""
VulnScan - Cascading Fallback Fetcher
Tries an ordered list of public endpoints and returns the first response that
passes a caller-supplied validity check. Every attempt is recorded as a
BenchmarkMetric so primary-vs-fallback usage can be measured without
special-casing callers.
"""

import asyncio
import json
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence
from urllib.parse import urlparse

import httpx

from vulnscan.config import USER_AGENT, FetcherConfig
from vulnscan.models import BenchmarkMetric, parse_iso


logger = logging.getLogger(__name__)


class NoFallbackAvailable(Exception):
    """Every candidate endpoint failed. Means "external data unavailable"."""

    def __init__(self, endpoints: Sequence[str], last_error: str = ""):
        self.endpoints = list(endpoints)
        self.last_error = last_error
        super().__init__(
            f"All {len(self.endpoints)} endpoints failed"
            + (f" (last error: {last_error})" if last_error else "")
        )


class _AttemptFailed(Exception):
    def __init__(self, reason: str, status: int = 0, retryable: bool = False):
        super().__init__(reason)
        self.status = status
        self.retryable = retryable


@dataclass
class FallbackResult:
    data: Any
    source: str  # hostname of the winning endpoint
    endpoint_used: str
    fallback_index: int
    latency_ms: int
    status_code: int

    @property
    def is_fallback(self) -> bool:
        return self.fallback_index > 0


def _host_of(url: str) -> str:
    return urlparse(url).hostname or url


class FallbackFetcher:
    """One cascading-fetch policy for the whole process. Construct once, inject everywhere."""

    def __init__(self, config: Optional[FetcherConfig] = None,
                 client: Optional[httpx.AsyncClient] = None):
        self.config = config or FetcherConfig()
        self._client = client
        self._owns_client = client is None
        self._metrics: List[BenchmarkMetric] = []

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                verify=False,
                follow_redirects=True,
                headers={
                    "User-Agent": USER_AGENT,
                    "Accept": "application/json, text/plain, */*",
                },
            )
        return self._client

    async def aclose(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    # ── Metrics ─────────────────────────────────────────────────

    def metrics(self, since: Optional[str] = None, until: Optional[str] = None) -> List[BenchmarkMetric]:
        """Recorded attempts, optionally limited to an ISO timestamp window."""
        if since is None and until is None:
            return list(self._metrics)
        lo = parse_iso(since) if since else None
        hi = parse_iso(until) if until else None
        out = []
        for m in self._metrics:
            ts = parse_iso(m.timestamp)
            if lo and ts < lo:
                continue
            if hi and ts > hi:
                continue
            out.append(m)
        return out

    def clear_metrics(self):
        self._metrics = []

    def _record(self, url: str, latency_ms: int, status: int, index: int, method: str):
        self._metrics.append(BenchmarkMetric(
            endpoint_url=url,
            source=_host_of(url),
            latency_ms=latency_ms,
            http_status=status,
            is_fallback=index > 0,
            method=method,
        ))
        cap = self.config.max_metrics
        if len(self._metrics) > cap:
            self._metrics = self._metrics[-cap:]

    # ── Fetch ───────────────────────────────────────────────────

    @staticmethod
    def _parse_body(resp: httpx.Response) -> Any:
        content_type = (resp.headers.get("content-type") or "").lower()
        if "json" in content_type:
            try:
                return resp.json()
            except (json.JSONDecodeError, ValueError) as e:
                raise _AttemptFailed(f"Malformed JSON: {e}", resp.status_code)
        return resp.text

    async def _attempt(self, url: str, is_valid: Callable[[Any], bool], method: str,
                       timeout: float, request_kwargs: dict) -> tuple:
        try:
            resp = await self.client.request(method, url, timeout=timeout, **request_kwargs)
        except httpx.TimeoutException as e:
            raise _AttemptFailed(f"Timeout: {e}", retryable=False)
        except httpx.HTTPError as e:
            raise _AttemptFailed(f"Transport error: {e}", retryable=True)

        if resp.status_code == 429:
            raise _AttemptFailed("Rate limited (429)", resp.status_code)
        if resp.status_code >= 500:
            raise _AttemptFailed(f"HTTP {resp.status_code}", resp.status_code, retryable=True)
        if not resp.is_success:
            raise _AttemptFailed(f"HTTP {resp.status_code}", resp.status_code)

        data = self._parse_body(resp)
        try:
            valid = bool(is_valid(data))
        except Exception as e:
            raise _AttemptFailed(f"Validator raised: {e}", resp.status_code)
        if not valid:
            raise _AttemptFailed("Validation failed", resp.status_code)
        return data, resp.status_code

    async def fetch_with_fallback(
        self,
        endpoints: Sequence[str],
        is_valid: Callable[[Any], bool],
        method: str = "GET",
        timeout: Optional[float] = None,
        retries: Optional[int] = None,
        **request_kwargs,
    ) -> FallbackResult:
        """Try endpoints strictly in order; first valid response wins.

        Raises NoFallbackAvailable once every endpoint has failed.
        """
        timeout = self.config.timeout_s if timeout is None else timeout
        retries = self.config.retries if retries is None else retries
        method = method.upper()
        last_error = ""

        for index, url in enumerate(endpoints):
            attempt = 0
            while True:
                started = time.perf_counter()
                try:
                    data, status = await self._attempt(url, is_valid, method, timeout, request_kwargs)
                except _AttemptFailed as e:
                    latency_ms = int((time.perf_counter() - started) * 1000)
                    self._record(url, latency_ms, e.status, index, method)
                    last_error = str(e)
                    if e.retryable and attempt < retries:
                        attempt += 1
                        await asyncio.sleep(0.5 + random.random() * 0.5)
                        continue
                    logger.debug("Endpoint %s failed: %s", url, e)
                    break

                latency_ms = int((time.perf_counter() - started) * 1000)
                self._record(url, latency_ms, status, index, method)
                if index > 0:
                    logger.info("Fallback endpoint %s used after %d failures", _host_of(url), index)
                return FallbackResult(
                    data=data,
                    source=_host_of(url),
                    endpoint_used=url,
                    fallback_index=index,
                    latency_ms=latency_ms,
                    status_code=status,
                )

        logger.warning("No fallback available across %d endpoints: %s", len(endpoints), last_error)
        raise NoFallbackAvailable(endpoints, last_error)
