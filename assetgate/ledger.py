"""
assetgate Ledger Interface

The ledger is an opaque dependency reached through a narrow contract:

    call(target, method, args)                  -> Receipt   (raises LedgerError)
    subscribe(target, event_name, listener, filter) -> LedgerSubscription
    unsubscribe(subscription)                   -> bool

Any chain SDK can satisfy LedgerClient. InMemoryLedger is the deterministic
reference implementation used by tests and local runs: it mints sequential
token ids, emits TokenMinted / TokenRevoked events and supports failure
injection, unconfirmed receipts and artificial latency.
"""

from __future__ import annotations

import hashlib
import itertools
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from assetgate.errors import LedgerError
from assetgate.observability import Layer, get_logger

logger = get_logger("ledger", Layer.LEDGER)

TOKEN_MINTED = "TokenMinted"
TOKEN_REVOKED = "TokenRevoked"


class ReceiptStatus(Enum):
    """Status of a submitted ledger transaction."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FINALIZED = "finalized"
    FAILED = "failed"


@dataclass(frozen=True)
class LedgerEvent:
    """One event log emitted by a ledger transaction."""
    name: str
    target: str
    args: Dict[str, Any]
    tx_hash: str
    log_index: int = 0
    block_number: int = 0

    @property
    def event_id(self) -> str:
        return f"{self.tx_hash}:{self.log_index}"

    def matches(self, event_filter: Optional[Dict[str, Any]]) -> bool:
        if not event_filter:
            return True
        return all(self.args.get(k) == v for k, v in event_filter.items())


@dataclass
class Receipt:
    """Confirmation receipt for one ledger call."""
    tx_hash: str
    block_number: int
    status: ReceiptStatus
    events: List[LedgerEvent] = field(default_factory=list)

    @property
    def is_confirmed(self) -> bool:
        return self.status in (ReceiptStatus.CONFIRMED, ReceiptStatus.FINALIZED)

    def find_event(self, name: str) -> Optional[LedgerEvent]:
        for event in self.events:
            if event.name == name:
                return event
        return None


Listener = Callable[[LedgerEvent], None]


@dataclass(frozen=True)
class LedgerSubscription:
    """Handle returned by LedgerClient.subscribe."""
    subscription_id: str
    target: str
    event_name: str


class LedgerClient(ABC):
    """Abstract ledger contract."""

    @abstractmethod
    def call(self, target: str, method: str, args: Dict[str, Any]) -> Receipt:
        """Submit a state-changing call and wait for its receipt.

        Raises:
            LedgerError: on revert, timeout or transport failure.
        """

    @abstractmethod
    def subscribe(
        self,
        target: str,
        event_name: str,
        listener: Listener,
        event_filter: Optional[Dict[str, Any]] = None,
    ) -> LedgerSubscription:
        pass

    @abstractmethod
    def unsubscribe(self, subscription: LedgerSubscription) -> bool:
        pass


class InMemoryLedger(LedgerClient):
    """
    Deterministic in-process ledger.

    Methods:
        mint(owner, assetId, metadataRef)  emits TokenMinted{tokenId, owner, assetId, metadataRef}
        revoke(tokenId, reason)            emits TokenRevoked{tokenId, reason}

    Listeners run synchronously on the calling thread after the receipt is
    built; a listener error is logged and does not affect the call.
    """

    def __init__(self, latency_seconds: float = 0.0, start_block: int = 1_000_000):
        self._lock = threading.RLock()
        self._tokens: Dict[str, Dict[str, Any]] = {}
        self._token_ids = itertools.count(1)
        self._nonce = itertools.count(1)
        self._sub_ids = itertools.count(1)
        self._block_number = start_block
        self._listeners: Dict[str, Tuple[LedgerSubscription, Listener, Optional[Dict[str, Any]]]] = {}
        self._failures: Dict[str, List[Exception]] = {}
        self._unconfirmed: Dict[str, int] = {}
        self.latency_seconds = latency_seconds
        self.calls: List[Tuple[str, str, Dict[str, Any]]] = []

    # ─────────────────────────────────────────────────────────────────────
    # Test controls
    # ─────────────────────────────────────────────────────────────────────

    def fail_next(self, method: str, error: Optional[Exception] = None, count: int = 1) -> None:
        """Make the next ``count`` calls of ``method`` raise."""
        with self._lock:
            queue = self._failures.setdefault(method, [])
            for _ in range(count):
                queue.append(error or LedgerError(f"execution reverted: injected {method} failure"))

    def leave_unconfirmed(self, method: str, count: int = 1) -> None:
        """Make the next ``count`` calls of ``method`` return a pending receipt with no effect."""
        with self._lock:
            self._unconfirmed[method] = self._unconfirmed.get(method, 0) + count

    def token(self, token_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._tokens.get(token_id)
            return dict(record) if record else None

    @property
    def block_number(self) -> int:
        with self._lock:
            return self._block_number

    # ─────────────────────────────────────────────────────────────────────
    # LedgerClient
    # ─────────────────────────────────────────────────────────────────────

    def _tx_hash(self, target: str, method: str, args: Dict[str, Any]) -> str:
        seed = f"{target}|{method}|{sorted(args.items())!r}|{next(self._nonce)}"
        return "0x" + hashlib.sha256(seed.encode("utf-8")).hexdigest()

    def call(self, target: str, method: str, args: Dict[str, Any]) -> Receipt:
        if self.latency_seconds:
            time.sleep(self.latency_seconds)

        with self._lock:
            self.calls.append((target, method, dict(args)))

            failures = self._failures.get(method)
            if failures:
                raise failures.pop(0)

            tx_hash = self._tx_hash(target, method, args)
            self._block_number += 1
            block = self._block_number

            if self._unconfirmed.get(method):
                self._unconfirmed[method] -= 1
                return Receipt(tx_hash=tx_hash, block_number=block, status=ReceiptStatus.PENDING)

            if method == "mint":
                events = [self._mint(target, args, tx_hash, block)]
            elif method == "revoke":
                events = [self._revoke(target, args, tx_hash, block)]
            else:
                raise LedgerError(f"execution reverted: unknown method '{method}'")

            receipt = Receipt(tx_hash=tx_hash, block_number=block, status=ReceiptStatus.CONFIRMED, events=events)

        for event in receipt.events:
            self.deliver(event)
        return receipt

    def _mint(self, target: str, args: Dict[str, Any], tx_hash: str, block: int) -> LedgerEvent:
        for key in ("owner", "assetId", "metadataRef"):
            if not args.get(key):
                raise LedgerError(f"execution reverted: mint requires '{key}'")
        token_id = str(next(self._token_ids))
        self._tokens[token_id] = {
            "tokenId": token_id,
            "owner": args["owner"],
            "assetId": args["assetId"],
            "metadataRef": args["metadataRef"],
            "revoked": False,
        }
        return LedgerEvent(
            name=TOKEN_MINTED,
            target=target,
            args={"tokenId": token_id, "owner": args["owner"],
                  "assetId": args["assetId"], "metadataRef": args["metadataRef"]},
            tx_hash=tx_hash,
            block_number=block,
        )

    def _revoke(self, target: str, args: Dict[str, Any], tx_hash: str, block: int) -> LedgerEvent:
        token_id = str(args.get("tokenId", ""))
        record = self._tokens.get(token_id)
        if record is None:
            raise LedgerError(f"execution reverted: unknown token {token_id}")
        if record["revoked"]:
            raise LedgerError(f"execution reverted: token {token_id} already revoked")
        record["revoked"] = True
        return LedgerEvent(
            name=TOKEN_REVOKED,
            target=target,
            args={"tokenId": token_id, "reason": args.get("reason", "")},
            tx_hash=tx_hash,
            block_number=block,
        )

    def subscribe(
        self,
        target: str,
        event_name: str,
        listener: Listener,
        event_filter: Optional[Dict[str, Any]] = None,
    ) -> LedgerSubscription:
        with self._lock:
            sub = LedgerSubscription(f"sub-{next(self._sub_ids)}", target, event_name)
            self._listeners[sub.subscription_id] = (sub, listener, dict(event_filter or {}))
            return sub

    def unsubscribe(self, subscription: LedgerSubscription) -> bool:
        with self._lock:
            return self._listeners.pop(subscription.subscription_id, None) is not None

    def deliver(self, event: LedgerEvent) -> None:
        """Push ``event`` to matching listeners. Public so tests can replay events."""
        with self._lock:
            targets = [
                listener for sub, listener, flt in self._listeners.values()
                if sub.target == event.target and sub.event_name == event.name and event.matches(flt)
            ]
        for listener in targets:
            try:
                listener(event)
            except Exception as e:
                logger.error("Ledger listener failed", event=event.name, tx_hash=event.tx_hash, error=str(e))
