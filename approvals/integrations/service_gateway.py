"""
Collaborating-service HTTP gateway.

All outbound HTTP calls to the product, party and graph services go through
this class.  Direct ``requests`` calls in services or handlers are not used.

  - Retry: max 2 retries, backoff 1 s → 4 s, only for retryable failures
  - Retryable: network errors, timeouts, HTTP 5xx, HTTP 429
  - Fatal: any other HTTP 4xx; returned immediately, never retried
  - Circuit breaker: ≥5 failures in 60 s → 30 s pause per host
  - Structured ``GatewayResult`` returned; ``raise_for_result`` maps it onto
    ``RetryableError`` / ``FatalError`` for callers that prefer exceptions

Testability: pass a mock ``session`` (and ``sleep``) to ServiceGateway() in
tests instead of letting it create a real requests.Session.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable
from urllib.parse import urlsplit

import requests

from approvals.core.exceptions import FatalError, RetryableError

logger = logging.getLogger(__name__)

# ── Circuit breaker constants ──────────────────────────────────────────────
_CB_FAILURE_THRESHOLD = 5          # failures within window before opening
_CB_WINDOW_SECONDS = 60            # failure counting window (seconds)
_CB_OPEN_DURATION_SECONDS = 30     # how long circuit stays open

# ── Retry constants ────────────────────────────────────────────────────────
_RETRY_MAX = 2
_RETRY_BACKOFF_SECONDS = [1, 4]    # sleep[0] after 1st fail, sleep[1] after 2nd

# ── Default request timeout ────────────────────────────────────────────────
_DEFAULT_TIMEOUT = 30


class GatewayResult:
    """Structured return value from ServiceGateway calls.

    Attributes:
        ok:           True if the call succeeded (HTTP 2xx, no exception).
        status_code:  HTTP status code (None for network-level failure).
        data:         Parsed JSON body (dict or list), else None.
        error:        Human-readable error message or None.
        retryable:    True when the failure is transient.
        duration_ms:  Round-trip latency of the last attempt.
        attempts:     Number of attempts made.
    """

    def __init__(
        self,
        ok: bool,
        status_code: int | None,
        data: dict | list | None,
        error: str | None,
        duration_ms: int,
        *,
        retryable: bool = False,
        attempts: int = 1,
    ) -> None:
        self.ok = ok
        self.status_code = status_code
        self.data = data
        self.error = error
        self.retryable = retryable
        self.duration_ms = duration_ms
        self.attempts = attempts

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "status_code": self.status_code,
            "error": self.error,
            "retryable": self.retryable,
            "duration_ms": self.duration_ms,
            "attempts": self.attempts,
        }

    def __repr__(self):
        return f"<GatewayResult ok={self.ok} status={self.status_code} attempts={self.attempts}>"


def is_retryable_status(status_code: int | None) -> bool:
    """Network failures (None), 429 and 5xx are transient; other 4xx are not."""
    if status_code is None:
        return True
    return status_code == 429 or status_code >= 500


def raise_for_result(result: GatewayResult, context: str = "") -> GatewayResult:
    """Return *result* if ok, else raise the matching classification error."""
    if result.ok:
        return result
    msg = f"{context}: {result.error}" if context else (result.error or "request failed")
    if result.retryable:
        raise RetryableError(msg)
    raise FatalError(msg)


class ServiceGateway:
    """HTTP gateway for collaborating bank services.

    Usage:
        gateway = ServiceGateway(timeout=app.config["SERVICE_CALL_TIMEOUT"])
        result = gateway.request("PUT", f"{base}/api/v1/solutions/{sid}/activate")
    """

    def __init__(
        self,
        session: requests.Session | None = None,
        *,
        timeout: int = _DEFAULT_TIMEOUT,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._session: requests.Session | None = session
        self._timeout = timeout
        self._sleep = sleep
        # Circuit breaker: host → {"failures": [datetime, ...], "open_until": datetime|None}
        self._cb_state: dict[str, dict] = {}

    @property
    def session(self) -> requests.Session:
        """Return (or lazily create) the requests.Session."""
        if self._session is None:
            self._session = requests.Session()
        return self._session

    # ── Circuit breaker ───────────────────────────────────────────────────────

    def _cb_entry(self, host: str) -> dict:
        return self._cb_state.setdefault(host, {"failures": [], "open_until": None})

    def _circuit_closed(self, host: str) -> bool:
        entry = self._cb_entry(host)
        now = datetime.now(timezone.utc)
        if entry["open_until"] and now < entry["open_until"]:
            return False
        if entry["open_until"]:
            entry["open_until"] = None
            entry["failures"] = []
        return True

    def _record_failure(self, host: str) -> None:
        entry = self._cb_entry(host)
        now = datetime.now(timezone.utc)
        window_start = now - timedelta(seconds=_CB_WINDOW_SECONDS)
        entry["failures"] = [t for t in entry["failures"] if t >= window_start] + [now]
        if len(entry["failures"]) >= _CB_FAILURE_THRESHOLD:
            entry["open_until"] = now + timedelta(seconds=_CB_OPEN_DURATION_SECONDS)
            logger.warning("Circuit opened for %s after %d failures", host, len(entry["failures"]))

    def _record_success(self, host: str) -> None:
        self._cb_entry(host)["failures"] = []

    # ── Core request dispatcher ───────────────────────────────────────────────

    def request(
        self,
        method: str,
        url: str,
        *,
        json_body: dict | list | None = None,
        params: dict | None = None,
        headers: dict | None = None,
        timeout: int | None = None,
    ) -> GatewayResult:
        """Execute a request with retries for transient failures.

        Returns:
            GatewayResult — always returns (never raises). Callers check .ok
            and .retryable.
        """
        host = urlsplit(url).netloc or url
        if not self._circuit_closed(host):
            return GatewayResult(
                ok=False, status_code=None, data=None,
                error=f"Circuit breaker is open for {host}",
                duration_ms=0, retryable=True, attempts=0,
            )

        timeout = timeout or self._timeout
        kwargs: dict[str, Any] = {
            "headers": {"Content-Type": "application/json", "Accept": "application/json",
                        **(headers or {})},
            "timeout": timeout,
        }
        if json_body is not None:
            kwargs["json"] = json_body
        if params:
            kwargs["params"] = params

        last_error = "Unknown error"
        last_status: int | None = None
        duration_ms = 0

        for attempt in range(_RETRY_MAX + 1):  # 0, 1, 2
            try:
                t0 = time.perf_counter()
                resp = self.session.request(method, url, **kwargs)
                duration_ms = int((time.perf_counter() - t0) * 1000)
                last_status = resp.status_code

                if resp.ok:
                    self._record_success(host)
                    try:
                        data = resp.json() if resp.content else {}
                    except ValueError:
                        data = {}
                    return GatewayResult(
                        ok=True, status_code=resp.status_code, data=data, error=None,
                        duration_ms=duration_ms, attempts=attempt + 1,
                    )

                last_error = f"HTTP {resp.status_code}: {resp.text[:500]}"
                if not is_retryable_status(resp.status_code):
                    logger.warning("%s %s rejected status=%d (not retried)",
                                   method, url, resp.status_code)
                    return GatewayResult(
                        ok=False, status_code=resp.status_code, data=None, error=last_error,
                        duration_ms=duration_ms, retryable=False, attempts=attempt + 1,
                    )
                self._record_failure(host)
                logger.warning("%s %s failed attempt=%d/%d status=%d",
                               method, url, attempt + 1, _RETRY_MAX + 1, resp.status_code)

            except requests.Timeout:
                last_status = None
                last_error = f"Request timed out after {timeout}s"
                self._record_failure(host)
                logger.warning("%s %s timed out attempt=%d/%d",
                               method, url, attempt + 1, _RETRY_MAX + 1)

            except requests.RequestException as exc:
                last_status = None
                last_error = str(exc)[:500]
                self._record_failure(host)
                logger.warning("%s %s network error attempt=%d/%d error=%s",
                               method, url, attempt + 1, _RETRY_MAX + 1, last_error)

            if attempt < _RETRY_MAX:
                sleep_s = _RETRY_BACKOFF_SECONDS[min(attempt, len(_RETRY_BACKOFF_SECONDS) - 1)]
                self._sleep(sleep_s)

        return GatewayResult(
            ok=False, status_code=last_status, data=None, error=last_error,
            duration_ms=duration_ms, retryable=True, attempts=_RETRY_MAX + 1,
        )

    def get(self, url: str, **kwargs) -> GatewayResult:
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs) -> GatewayResult:
        return self.request("POST", url, **kwargs)

    def put(self, url: str, **kwargs) -> GatewayResult:
        return self.request("PUT", url, **kwargs)
