"""
Single-request executor over an aiohttp session.
================================================
4xx/5xx responses are ordinary outcomes. Only transport problems (refused
connection, DNS failure, timeout) produce a failed outcome with ``error`` set
and every response field absent. Nothing is retried.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Union

import aiohttp
from multidict import CIMultiDict, CIMultiDictProxy

from load_metrics import MetricsAggregator

logger = logging.getLogger(__name__)

_EMPTY_HEADERS: CIMultiDictProxy = CIMultiDictProxy(CIMultiDict())


@dataclass(frozen=True)
class RequestOutcome:
    """Result of one HTTP request. Immutable once produced."""
    method: str
    url: str
    tag: Optional[str] = None
    status: Optional[int] = None
    headers: Mapping[str, str] = field(default_factory=lambda: _EMPTY_HEADERS)
    body: Optional[bytes] = None
    elapsed_ms: Optional[float] = None
    error: Optional[str] = None

    def __post_init__(self):
        # Header lookups are case-insensitive regardless of how the outcome was built
        if not isinstance(self.headers, CIMultiDictProxy):
            object.__setattr__(self, "headers", CIMultiDictProxy(CIMultiDict(self.headers or {})))

    @classmethod
    def transport_failure(cls, method: str, url: str, error: str, tag: Optional[str] = None) -> "RequestOutcome":
        return cls(method=method, url=url, tag=tag, error=error)

    @property
    def is_transport_error(self) -> bool:
        return self.error is not None

    @property
    def failed(self) -> bool:
        """Transport error or a status outside 2xx."""
        return self.is_transport_error or not (200 <= self.status < 300)

    def json(self) -> Any:
        """Decode the body as JSON. Raises if there is no body or it is not JSON."""
        if self.body is None:
            raise ValueError(f"no response body ({self.error or 'empty'})")
        return json.loads(self.body)


class RequestExecutor:
    """
    Issues requests on a shared session and feeds the request metrics
    (``http_reqs``, ``http_req_failed``, ``http_req_duration``).
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        metrics: MetricsAggregator,
        default_timeout: float = 60.0,
    ):
        self.session = session
        self.metrics = metrics
        self.default_timeout = default_timeout

    async def execute(
        self,
        method: str,
        url: str,
        body: Optional[Union[bytes, str]] = None,
        headers: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
        tag: Optional[str] = None,
    ) -> RequestOutcome:
        method = method.upper()
        client_timeout = aiohttp.ClientTimeout(
            total=timeout if timeout is not None else self.default_timeout
        )
        start = time.perf_counter()

        try:
            async with self.session.request(
                method,
                url,
                data=body,
                headers=dict(headers) if headers else None,
                timeout=client_timeout,
            ) as response:
                raw = await response.read()
                latency = (time.perf_counter() - start) * 1000
                outcome = RequestOutcome(
                    method=method,
                    url=url,
                    tag=tag,
                    status=response.status,
                    headers=CIMultiDictProxy(CIMultiDict(response.headers)),
                    body=raw,
                    elapsed_ms=latency,
                )

        except asyncio.CancelledError:
            # Abandoned after the graceful stop window: counts as a transport failure
            logger.debug("%s %s abandoned after %.0fms", method, url,
                         (time.perf_counter() - start) * 1000)
            self._record(RequestOutcome.transport_failure(method, url, "Abandoned", tag))
            raise
        except asyncio.TimeoutError:
            outcome = RequestOutcome.transport_failure(method, url, "Timeout", tag)
        except aiohttp.ClientConnectorError as e:
            outcome = RequestOutcome.transport_failure(
                method, url, f"ConnectionError: {type(e).__name__}", tag
            )
        except (aiohttp.ClientError, OSError) as e:
            outcome = RequestOutcome.transport_failure(method, url, type(e).__name__, tag)

        if outcome.is_transport_error:
            logger.debug("%s %s failed: %s", method, url, outcome.error)
        self._record(outcome)
        return outcome

    def _record(self, outcome: RequestOutcome):
        tags = {"name": outcome.tag or outcome.url, "method": outcome.method}
        if outcome.status is not None:
            tags["status"] = str(outcome.status)

        self.metrics.record("http_reqs", 1, tags)
        self.metrics.record("http_req_failed", 1 if outcome.failed else 0, tags)
        if outcome.elapsed_ms is not None:
            self.metrics.record("http_req_duration", outcome.elapsed_ms, tags)
