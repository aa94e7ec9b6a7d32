"""
assetgate Oracle Client

Request/response access to the oracle network with bounded retries, and
cancelable subscriptions to ledger events.

Architecture:

    ExternalDataClient.fetch(request_id, params)
        │
        ▼
    RetryPolicy ──attempt──▶ OracleEndpoint.request(job_id, params)
        │                        │
        │     HTTP error / transport error / {"success": false}
        │◀───────────────────────┘          = failed attempt
        ▼
    OracleResponse  or  OracleUnavailable(attempts, last_error)

    ExternalDataClient.subscribe(source, event_name, callback)
        │
        ▼
    LedgerClient.subscribe ──event──▶ per-subscription queue ──▶ worker thread ──▶ callback

Each subscription owns its queue and worker, so a slow or failing callback
only delays its own events. Events are deduplicated by ledger event id
before queueing, giving at-most-once delivery per subscription.
"""

from __future__ import annotations

import itertools
import queue
import re
import threading
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import requests

from assetgate.errors import OracleRequestError, OracleUnavailable
from assetgate.hardening import Validators
from assetgate.ledger import LedgerClient, LedgerEvent, LedgerSubscription
from assetgate.models import OracleResponse
from assetgate.observability import Layer, get_logger
from assetgate.resilience import CancellationToken, RetryExhaustedError, RetryPolicy

logger = get_logger("oracle-client", Layer.ORACLE)

RETRYABLE_ERRORS = (OracleRequestError, ConnectionError, TimeoutError, requests.RequestException)


# ════════════════════════════════════════════════════════════════════════════
# ENDPOINTS
# ════════════════════════════════════════════════════════════════════════════


class OracleEndpoint(ABC):
    """Oracle transport: one request per call, no retries."""

    @abstractmethod
    def request(self, job_id: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """
        Run oracle job ``job_id`` with ``params``.

        Returns the decoded response body ``{success, data | error, requestId}``.

        Raises:
            OracleRequestError: non-success status or transport failure.
        """


class HttpOracleEndpoint(OracleEndpoint):
    """Oracle node reached over HTTP with ``requests``."""

    def __init__(
        self,
        node_url: str,
        access_key: str = "",
        timeout_seconds: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        self.node_url = node_url.rstrip("/")
        self._access_key = access_key
        self.timeout_seconds = timeout_seconds
        self._session = session or requests.Session()

    def __repr__(self) -> str:
        return f"HttpOracleEndpoint(node_url={self.node_url!r})"

    def request(self, job_id: str, params: Dict[str, Any]) -> Dict[str, Any]:
        body: Dict[str, Any] = {"jobId": job_id, "params": params}
        headers = {"Content-Type": "application/json"}
        if self._access_key:
            headers["Authorization"] = f"Bearer {self._access_key}"
            body["callback"] = f"{self.node_url}/callback"

        try:
            response = self._session.post(
                f"{self.node_url}/jobs/{job_id}/runs",
                json=body,
                headers=headers,
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as e:
            raise OracleRequestError(f"transport error: {e}") from e

        if not 200 <= response.status_code < 300:
            raise OracleRequestError(f"HTTP {response.status_code}: {response.reason}", status_code=response.status_code)

        try:
            return response.json()
        except ValueError as e:
            raise OracleRequestError(f"response is not JSON: {e}", status_code=response.status_code) from e

    def close(self) -> None:
        self._session.close()


# ════════════════════════════════════════════════════════════════════════════
# SUBSCRIPTIONS
# ════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class LedgerEventSource:
    """A ledger target (contract) whose events can be subscribed to."""
    ledger: LedgerClient
    target: str


@dataclass(frozen=True)
class SubscriptionHandle:
    handle_id: str
    target: str
    event_name: str


class _Subscription:
    """Queue, worker thread and dedupe window for one subscriber."""

    SEEN_WINDOW = 10_000

    def __init__(self, handle: SubscriptionHandle, callback: Callable[[LedgerEvent], Any]):
        self.handle = handle
        self.callback = callback
        self.ledger_sub: Optional[LedgerSubscription] = None
        self.source: Optional[LedgerEventSource] = None
        self.delivered = 0
        self.failed = 0
        self.duplicates = 0
        self._queue: "queue.Queue[Optional[LedgerEvent]]" = queue.Queue()
        self._seen: "OrderedDict[str, None]" = OrderedDict()
        self._lock = threading.Lock()
        self._active = True
        self._worker = threading.Thread(
            target=self._run,
            daemon=True,
            name=f"oracle-sub-{handle.handle_id}",
        )
        self._worker.start()

    def enqueue(self, event: LedgerEvent) -> None:
        with self._lock:
            if not self._active:
                return
            if event.event_id in self._seen:
                self.duplicates += 1
                return
            self._seen[event.event_id] = None
            if len(self._seen) > self.SEEN_WINDOW:
                self._seen.popitem(last=False)
        self._queue.put(event)

    def _run(self) -> None:
        while True:
            event = self._queue.get()
            if event is None:
                return
            with self._lock:
                if not self._active:
                    return
            try:
                self.callback(event)
                self.delivered += 1
            except Exception as e:
                self.failed += 1
                logger.error(
                    "Subscriber callback raised",
                    error_code="subscriber-callback-failed",
                    exc_info=True,
                    handle_id=self.handle.handle_id,
                    event=event.name,
                    event_id=event.event_id,
                    error=str(e),
                )

    def stop(self, timeout: float = 5.0) -> None:
        with self._lock:
            self._active = False
        self._queue.put(None)
        if threading.current_thread() is not self._worker:
            self._worker.join(timeout=timeout)


# ════════════════════════════════════════════════════════════════════════════
# CLIENT
# ════════════════════════════════════════════════════════════════════════════


class ExternalDataClient:
    """
    Oracle client with retry/backoff and ledger event subscriptions.

    No caching happens here; fallbacks belong to the caller.

    Example:
        client = ExternalDataClient(HttpOracleEndpoint("https://oracle.example"))
        response = client.fetch("metal-assay", {"assetId": "GOLD-001"})
    """

    def __init__(
        self,
        endpoint: OracleEndpoint,
        max_retries: int = 3,
        base_delay_ms: int = 1000,
        max_delay_ms: int = 10000,
        jitter_factor: float = 0.1,
        job_id_pattern: Optional[str] = None,
        sleep: Optional[Callable[[float], Any]] = None,
        rng: Optional[Callable[[], float]] = None,
    ):
        self.endpoint = endpoint
        self.retry = RetryPolicy(
            max_attempts=max_retries,
            base_delay_ms=base_delay_ms,
            max_delay_ms=max_delay_ms,
            jitter_factor=jitter_factor,
            retryable_exceptions=RETRYABLE_ERRORS,
            on_retry=self._log_retry,
            sleep=sleep,
            rng=rng,
        )
        self._job_id_pattern = re.compile(job_id_pattern) if job_id_pattern else None
        self._subscriptions: Dict[str, _Subscription] = {}
        self._sub_lock = threading.Lock()
        self._handle_ids = itertools.count(1)

    @classmethod
    def from_config(cls, manager, endpoint: Optional[OracleEndpoint] = None, **overrides: Any) -> "ExternalDataClient":
        if endpoint is None:
            endpoint = HttpOracleEndpoint(
                manager.get("oracle.node_url"),
                access_key=manager.get("oracle.access_key"),
                timeout_seconds=manager.get("oracle.request_timeout_seconds"),
            )
        kwargs: Dict[str, Any] = dict(
            max_retries=manager.get("oracle.max_retries"),
            base_delay_ms=manager.get("oracle.base_delay_ms"),
            max_delay_ms=manager.get("oracle.max_delay_ms"),
            jitter_factor=manager.get("oracle.jitter_factor"),
            job_id_pattern=manager.get("oracle.job_id_pattern"),
        )
        kwargs.update(overrides)
        return cls(endpoint, **kwargs)

    @staticmethod
    def _log_retry(attempt: int, error: Exception, delay: float) -> None:
        logger.warning(
            "Oracle attempt failed, backing off",
            attempt=attempt - 1,
            next_attempt=attempt,
            delay_ms=round(delay * 1000, 1),
            error=str(error),
        )

    def update_retry_config(self, **changes: Any) -> None:
        """Adjust retry settings (max_attempts, base_delay_ms, max_delay_ms, jitter_factor)."""
        if "max_retries" in changes:
            changes["max_attempts"] = changes.pop("max_retries")
        config = self.retry.update(**changes)
        logger.info(
            "Retry configuration updated",
            max_attempts=config.max_attempts,
            base_delay_ms=config.base_delay_ms,
            max_delay_ms=config.max_delay_ms,
        )

    # ─────────────────────────────────────────────────────────────────────
    # Fetch
    # ─────────────────────────────────────────────────────────────────────

    def _attempt(self, job_id: str, params: Dict[str, Any]) -> Dict[str, Any]:
        body = self.endpoint.request(job_id, params)
        if not isinstance(body, dict):
            raise OracleRequestError(f"malformed oracle response: {type(body).__name__}")
        if not body.get("success"):
            raise OracleRequestError(str(body.get("error") or "oracle reported failure"))
        data = body.get("data")
        if not isinstance(data, dict):
            raise OracleRequestError("oracle response has no data object")
        return data

    def fetch(
        self,
        request_id: str,
        params: Optional[Dict[str, Any]] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> OracleResponse:
        """
        Run one oracle request with retries.

        Raises:
            ValidationErrors: ``request_id`` is empty or malformed.
            OracleUnavailable: every attempt failed.
            OperationCancelled: cancelled between attempts.
        """
        job_id = Validators.validate_job_id(request_id, self._job_id_pattern).raise_if_invalid()
        params = dict(params or {})

        try:
            data = self.retry.execute(
                lambda: self._attempt(job_id, params),
                cancel_token=cancel_token,
                operation=f"oracle fetch {job_id}",
            )
        except RetryExhaustedError as e:
            logger.error(
                "Oracle retries exhausted",
                error_code=OracleUnavailable.code,
                request_id=job_id,
                attempts=e.attempts,
                error=str(e.last_exception),
            )
            raise OracleUnavailable(e.attempts, e.last_exception) from e.last_exception

        return OracleResponse(request_id=job_id, data=data)

    # ─────────────────────────────────────────────────────────────────────
    # Subscriptions
    # ─────────────────────────────────────────────────────────────────────

    def subscribe(
        self,
        source: LedgerEventSource,
        event_name: str,
        callback: Callable[[LedgerEvent], Any],
        event_filter: Optional[Dict[str, Any]] = None,
    ) -> SubscriptionHandle:
        """Deliver each matching ledger event to ``callback`` at most once."""
        Validators.validate_identifier(event_name, "event_name").raise_if_invalid()
        handle = SubscriptionHandle(f"h{next(self._handle_ids)}", source.target, event_name)
        sub = _Subscription(handle, callback)
        sub.source = source
        try:
            sub.ledger_sub = source.ledger.subscribe(source.target, event_name, sub.enqueue, event_filter)
        except Exception:
            sub.stop()
            raise
        with self._sub_lock:
            self._subscriptions[handle.handle_id] = sub
        logger.info("Subscribed to ledger events", handle_id=handle.handle_id, target=source.target, event=event_name)
        return handle

    def unsubscribe(self, handle: SubscriptionHandle) -> bool:
        """Remove a subscription. False if it was already removed."""
        with self._sub_lock:
            sub = self._subscriptions.pop(handle.handle_id, None)
        if sub is None:
            return False
        if sub.source is not None and sub.ledger_sub is not None:
            sub.source.ledger.unsubscribe(sub.ledger_sub)
        sub.stop()
        logger.info("Unsubscribed from ledger events", handle_id=handle.handle_id)
        return True

    def active_subscriptions(self) -> List[SubscriptionHandle]:
        with self._sub_lock:
            return [s.handle for s in self._subscriptions.values()]

    def subscription_stats(self, handle: SubscriptionHandle) -> Optional[Dict[str, int]]:
        with self._sub_lock:
            sub = self._subscriptions.get(handle.handle_id)
        if sub is None:
            return None
        return {"delivered": sub.delivered, "failed": sub.failed, "duplicates": sub.duplicates}

    def close(self) -> None:
        """Stop every subscription worker."""
        for handle in self.active_subscriptions():
            self.unsubscribe(handle)
