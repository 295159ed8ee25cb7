"""
HTTP transport with bounded retries.

Transient failures (rate limiting, overload, server errors, timeouts) are
retried with a fixed linear backoff. Every other non-2xx status is fatal and
returned to the caller immediately as FatalHttp.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Optional

import requests

from .errors import ExhaustedRetries, FatalHttp, OperationCancelled
from .events import CancellationToken, EventLevel, EventSink, emit

COMPONENT = "transport"

# Server overload / rate limited / internal error family
TRANSIENT_STATUSES: FrozenSet[int] = frozenset({429, 500, 502, 503, 504})

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 3.0
DEFAULT_TIMEOUT = 120.0


@dataclass(frozen=True)
class RequestSpec:
    """Everything needed to issue one HTTP request."""
    method: str
    url: str
    json: Optional[Any] = None
    data: Optional[bytes] = None
    headers: Dict[str, str] = field(default_factory=dict)
    params: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class LinearBackoff:
    """Wait ``(n - 1) * base_delay`` seconds before attempt ``n``.

    With a 3s base this waits 3s, 6s and 9s before attempts 2, 3 and 4.
    """
    base_delay: float = DEFAULT_BASE_DELAY

    def __post_init__(self):
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")

    def delay_before(self, attempt: int) -> float:
        if attempt <= 1:
            return 0.0
        return (attempt - 1) * self.base_delay


def is_transient_status(status: int) -> bool:
    return status in TRANSIENT_STATUSES


class TransientRetryClient:
    """Issues HTTP requests with a bounded number of attempts.

    Attempts are strictly sequential. The client holds no state beyond its
    configuration, so one instance can be shared by every component.
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        wait_policy: Optional[LinearBackoff] = None,
        timeout: float = DEFAULT_TIMEOUT,
        sleep: Callable[[float], None] = time.sleep,
        sink: Optional[EventSink] = None,
        cancel_token: Optional[CancellationToken] = None,
    ):
        """Initialize the client.

        Args:
            session: HTTP session (a new one is created if omitted)
            max_attempts: Default attempt budget per request
            wait_policy: Default backoff policy
            timeout: Per-request timeout in seconds
            sleep: Blocking wait function, replaceable in tests
            sink: Structured event sink
            cancel_token: Checked before every backoff wait

        Raises:
            ValueError: If max_attempts < 1 or timeout <= 0
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if timeout <= 0:
            raise ValueError("timeout must be > 0")
        self.session = session or requests.Session()
        self.max_attempts = max_attempts
        self.wait_policy = wait_policy or LinearBackoff()
        self.timeout = timeout
        self._sleep = sleep
        self._sink = sink
        self._cancel_token = cancel_token

    def send(
        self,
        spec: RequestSpec,
        max_attempts: Optional[int] = None,
        wait_policy: Optional[LinearBackoff] = None,
    ) -> requests.Response:
        """Send ``spec`` until it succeeds, fails fatally or runs out of attempts.

        Args:
            spec: Request to issue
            max_attempts: Override of the client's attempt budget
            wait_policy: Override of the client's backoff policy

        Returns:
            The first 2xx response

        Raises:
            FatalHttp: On a non-transient, non-2xx status
            ExhaustedRetries: After ``max_attempts`` transient failures
            OperationCancelled: If cancelled while waiting to retry
            requests.RequestException: Connection errors other than timeouts
        """
        attempts = max_attempts if max_attempts is not None else self.max_attempts
        if attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        policy = wait_policy or self.wait_policy

        last_cause = ""
        last_status: Optional[int] = None
        for attempt in range(1, attempts + 1):
            try:
                response = self.session.request(
                    spec.method,
                    spec.url,
                    json=spec.json,
                    data=spec.data,
                    headers=spec.headers or None,
                    params=spec.params or None,
                    timeout=self.timeout,
                )
            except requests.Timeout:
                last_cause = "timeout"
                last_status = None
            else:
                status = response.status_code
                if 200 <= status < 300:
                    return response
                if not is_transient_status(status):
                    raise FatalHttp(status, body=response.text, attempts=attempt)
                last_cause = str(status)
                last_status = status

            if attempt == attempts:
                break

            wait = policy.delay_before(attempt + 1)
            emit(
                self._sink,
                EventLevel.WARNING,
                COMPONENT,
                f"API {last_cause} - retry {attempt}/{attempts} in {wait:g}s",
                attempt=attempt,
                cause=last_cause,
                wait_seconds=wait,
                url=spec.url,
            )
            if self._cancel_token is not None and self._cancel_token.cancelled:
                raise OperationCancelled("Cancelled while waiting to retry")
            if wait > 0:
                self._sleep(wait)

        raise ExhaustedRetries(attempts, last_cause, status=last_status)
