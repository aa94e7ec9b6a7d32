"""
assetgate Audit Trail

Append-only, hash-chained record of every verification, mint and revoke,
plus the token records and id mappings those operations maintain.

    auditLog/<entryId>       AuditEntry rows, sequence-numbered and chained
    auditMeta/head           {sequence, hash} of the newest row
    tokens/<tokenId>         TokenRecord
    tokenMappings/<tokenId>  {dealId, assetId}
    activeTokens/<assetId>   mint claim: one non-revoked token per asset
    assets/<assetId>         lifecycle state and the ``verified`` flag

Chain rule:
    entry_hash = sha256(canonical(entry without hash/signature) || previous_hash)
    previous_hash of the first entry is "genesis"

An append that cannot be persisted raises AuditStoreUnavailable; callers
treat that as fatal and stop.
"""

from __future__ import annotations

import hmac
import hashlib
import threading
import uuid
from contextlib import contextmanager
from dataclasses import replace
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from assetgate.core import canonical_json_bytes, canonicalize, now_precise
from assetgate.errors import AssetGateError, AuditStoreUnavailable, StoreUnavailable
from assetgate.hardening import KeyedLock
from assetgate.lifecycle import AssetEvent, AssetState, is_verified_state, next_state
from assetgate.models import AuditEntry, AuditKind, TokenRecord, VerificationResult
from assetgate.observability import Layer, get_correlation_id, get_logger
from assetgate.store import DocumentStore, InMemoryDocumentStore, JsonFileDocumentStore

logger = get_logger("audit-trail", Layer.AUDIT)

GENESIS_HASH = "genesis"

AUDIT_LOG = "auditLog"
AUDIT_META = "auditMeta"
TOKENS = "tokens"
TOKEN_MAPPINGS = "tokenMappings"
ACTIVE_TOKENS = "activeTokens"
ASSETS = "assets"


def compute_entry_hash(entry: AuditEntry) -> str:
    body = canonical_json_bytes(canonicalize(entry.chain_body()))
    return hashlib.sha256(body + entry.previous_hash.encode("utf-8")).hexdigest()


class AuditTrailStore:
    """
    Audit trail and token bookkeeping over a DocumentStore.

    Appends are serialized by one lock so sequence numbers and the hash
    chain stay gapless under concurrent writers.

    Example:
        audit = AuditTrailStore(InMemoryDocumentStore(), signing_key="k")
        entry_id = audit.append(AuditEntry(AuditKind.VERIFICATION, "asset-1", {...}, "svc"))
        latest = audit.get("asset-1")
    """

    def __init__(self, store: DocumentStore, signing_key: Union[str, bytes, None] = None):
        self.store = store
        if isinstance(signing_key, str):
            signing_key = signing_key.encode("utf-8")
        self._signing_key: Optional[bytes] = signing_key or None
        self._append_lock = threading.Lock()
        self._asset_locks = KeyedLock()

    @classmethod
    def from_config(cls, manager, store: Optional[DocumentStore] = None) -> "AuditTrailStore":
        if store is None:
            path = manager.get("audit.store_path")
            store = JsonFileDocumentStore(path) if path else InMemoryDocumentStore()
        return cls(store, signing_key=manager.get("audit.signing_key"))

    @property
    def signs_entries(self) -> bool:
        return self._signing_key is not None

    @contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        try:
            yield
        except AssetGateError:
            raise
        except Exception as e:
            logger.error("Document store failure", operation=operation, error=str(e))
            raise StoreUnavailable(f"{operation} failed: {e}") from e

    # ─────────────────────────────────────────────────────────────────────
    # Append / read
    # ─────────────────────────────────────────────────────────────────────

    def _sign(self, entry_hash: str) -> str:
        if self._signing_key is None:
            return ""
        return hmac.new(self._signing_key, entry_hash.encode("utf-8"), hashlib.sha256).hexdigest()

    def append(self, entry: AuditEntry) -> str:
        """
        Persist ``entry`` at the head of the chain and return its id.

        Raises:
            AuditStoreUnavailable: the entry could not be written.
        """
        with self._append_lock:
            try:
                head = self.store.get(AUDIT_META, "head") or {"sequence": 0, "hash": GENESIS_HASH}
                sealed = replace(
                    entry,
                    entry_id=entry.entry_id or f"{entry.kind.value}-{uuid.uuid4().hex[:16]}",
                    sequence=head["sequence"] + 1,
                    previous_hash=head["hash"],
                    correlation_id=entry.correlation_id or get_correlation_id(),
                    entry_hash="",
                    signature="",
                )
                entry_hash = compute_entry_hash(sealed)
                sealed = replace(sealed, entry_hash=entry_hash, signature=self._sign(entry_hash))

                self.store.set(AUDIT_LOG, sealed.entry_id, sealed.to_dict())
                try:
                    self.store.set(AUDIT_META, "head", {"sequence": sealed.sequence, "hash": entry_hash})
                except Exception:
                    self.store.delete(AUDIT_LOG, sealed.entry_id)
                    raise
            except Exception as e:
                logger.critical(
                    "Audit append failed",
                    error_code=AuditStoreUnavailable.code,
                    kind=entry.kind.value,
                    subject_id=entry.subject_id,
                    error=str(e),
                )
                raise AuditStoreUnavailable(f"Cannot append {entry.kind.value} entry for {entry.subject_id}: {e}") from e

        logger.debug(
            "Audit entry appended",
            entry_id=sealed.entry_id,
            kind=sealed.kind.value,
            subject_id=sealed.subject_id,
            sequence=sealed.sequence,
        )
        return sealed.entry_id

    def entry(self, entry_id: str) -> Optional[AuditEntry]:
        with self._guard("audit entry lookup"):
            doc = self.store.get(AUDIT_LOG, entry_id)
        return AuditEntry.from_dict(doc) if doc else None

    def get(self, subject_id: str, kind: Optional[AuditKind] = None) -> Optional[AuditEntry]:
        """Latest entry for a subject, optionally of one kind."""
        rows = self.query(kind=kind, subject_id=subject_id, limit=1, newest_first=True)
        return rows[0] if rows else None

    def query(
        self,
        kind: Optional[AuditKind] = None,
        subject_id: Optional[str] = None,
        actor: Optional[str] = None,
        limit: Optional[int] = None,
        newest_first: bool = False,
    ) -> List[AuditEntry]:
        """Entries matching every given filter, ordered by sequence."""
        filters: List[Tuple[str, Any]] = []
        if subject_id is not None:
            filters.append(("subjectId", subject_id))
        if kind is not None:
            filters.append(("kind", AuditKind(kind).value))
        if actor is not None:
            filters.append(("actor", actor))

        with self._guard("audit query"):
            if filters:
                q = self.store.where(AUDIT_LOG, *filters[0])
                for f in filters[1:]:
                    q = q.where(*f)
                rows = q.order_by("sequence", descending=newest_first)
                if limit is not None:
                    rows = rows.limit(limit)
                docs = [doc for _, doc in rows.get()]
            else:
                docs = sorted((doc for _, doc in self.store.scan(AUDIT_LOG)),
                              key=lambda d: d.get("sequence", 0), reverse=newest_first)
                if limit is not None:
                    docs = docs[:limit]
        return [AuditEntry.from_dict(d) for d in docs]

    def latest_verification(self, asset_id: str) -> Optional[VerificationResult]:
        entry = self.get(asset_id, AuditKind.VERIFICATION)
        if entry is None:
            return None
        return VerificationResult.from_dict(entry.payload)

    def latest_cached_response(self, asset_id: str) -> Optional[Dict[str, Any]]:
        """Newest oracle payload recorded for ``asset_id`` by any verification."""
        for entry in self.query(kind=AuditKind.VERIFICATION, subject_id=asset_id, newest_first=True):
            raw = entry.payload.get("rawResponse")
            if raw:
                return raw
        return None

    # ─────────────────────────────────────────────────────────────────────
    # Integrity
    # ─────────────────────────────────────────────────────────────────────

    def verify_signature(self, entry: AuditEntry) -> bool:
        if self._signing_key is None:
            return False
        return hmac.compare_digest(entry.signature, self._sign(entry.entry_hash))

    def verify_chain(self) -> List[str]:
        """Walk the whole log; returns a description of every break found."""
        problems: List[str] = []
        previous = GENESIS_HASH
        for expected_seq, entry in enumerate(self.query(), start=1):
            label = f"entry {entry.entry_id} (#{entry.sequence})"
            if entry.sequence != expected_seq:
                problems.append(f"{label}: expected sequence {expected_seq}")
            if entry.previous_hash != previous:
                problems.append(f"{label}: previous_hash does not match predecessor")
            if compute_entry_hash(entry) != entry.entry_hash:
                problems.append(f"{label}: entry_hash mismatch")
            if self._signing_key is not None and not self.verify_signature(entry):
                problems.append(f"{label}: bad signature")
            previous = entry.entry_hash
        return problems

    # ─────────────────────────────────────────────────────────────────────
    # Tokens and mappings
    # ─────────────────────────────────────────────────────────────────────

    def claim_asset(self, asset_id: str, claim: Dict[str, Any]) -> bool:
        """Reserve ``asset_id`` for a mint. False if a claim already exists."""
        with self._guard("mint claim"):
            return self.store.create(ACTIVE_TOKENS, asset_id, claim)

    def get_claim(self, asset_id: str) -> Optional[Dict[str, Any]]:
        with self._guard("mint claim lookup"):
            return self.store.get(ACTIVE_TOKENS, asset_id)

    def update_claim(self, asset_id: str, changes: Dict[str, Any]) -> None:
        with self._guard("mint claim update"):
            self.store.update(ACTIVE_TOKENS, asset_id, changes)

    def release_claim(self, asset_id: str) -> bool:
        with self._guard("mint claim release"):
            return self.store.delete(ACTIVE_TOKENS, asset_id)

    def put_token(self, record: TokenRecord) -> None:
        with self._guard("token write"):
            self.store.set(TOKENS, record.token_id, record.to_dict())
            self.store.set(TOKEN_MAPPINGS, record.token_id, {
                "tokenId": record.token_id,
                "dealId": record.deal_id,
                "assetId": record.asset_id,
            })

    def delete_token(self, token_id: str) -> None:
        with self._guard("token delete"):
            self.store.delete(TOKENS, token_id)
            self.store.delete(TOKEN_MAPPINGS, token_id)

    def get_token(self, token_id: str) -> Optional[TokenRecord]:
        with self._guard("token lookup"):
            doc = self.store.get(TOKENS, token_id)
        return TokenRecord.from_dict(doc) if doc else None

    def mark_token_revoked(
        self,
        token_id: str,
        changes: Dict[str, Any],
    ) -> Tuple[bool, Optional[TokenRecord]]:
        """Flip ``revoked`` only if it is still False. Returns (applied, record)."""
        with self._guard("token revoke"):
            applied, doc = self.store.compare_and_set(TOKENS, token_id, {"revoked": False}, changes)
        return applied, (TokenRecord.from_dict(doc) if doc else None)

    def mapping(self, token_id: str) -> Optional[Dict[str, Any]]:
        with self._guard("mapping lookup"):
            return self.store.get(TOKEN_MAPPINGS, token_id)

    def tokens_for_deal(self, deal_id: str) -> List[TokenRecord]:
        with self._guard("mapping query"):
            rows = self.store.where(TOKEN_MAPPINGS, "dealId", deal_id).get()
        return [t for t in (self.get_token(token_id) for token_id, _ in rows) if t is not None]

    def token_for_deal(self, deal_id: str) -> Optional[TokenRecord]:
        """Newest non-revoked token minted under ``deal_id``."""
        active = [t for t in self.tokens_for_deal(deal_id) if not t.revoked]
        active.sort(key=lambda t: t.minted_at, reverse=True)
        return active[0] if active else None

    def token_for_asset(self, asset_id: str) -> Optional[TokenRecord]:
        """The non-revoked token for ``asset_id``, if any."""
        with self._guard("token query"):
            rows = self.store.where(TOKENS, "assetId", asset_id).where("revoked", False).limit(1).get()
        return TokenRecord.from_dict(rows[0][1]) if rows else None

    # ─────────────────────────────────────────────────────────────────────
    # Asset lifecycle
    # ─────────────────────────────────────────────────────────────────────

    def asset_state(self, asset_id: str) -> AssetState:
        with self._guard("asset state lookup"):
            doc = self.store.get(ASSETS, asset_id)
        return AssetState(doc["state"]) if doc else AssetState.UNVERIFIED

    def is_verified(self, asset_id: str) -> bool:
        with self._guard("asset state lookup"):
            doc = self.store.get(ASSETS, asset_id)
        return bool(doc and doc.get("verified"))

    @contextmanager
    def hold_asset(self, asset_id: str) -> Iterator[None]:
        """
        Hold the lifecycle lock of ``asset_id`` for the block.

        ``transition_asset`` for the same asset must not be called inside
        the block; use ``set_asset_state``.
        """
        with self._asset_locks.hold(asset_id):
            yield

    def transition_asset(self, asset_id: str, event: AssetEvent, gated: bool = True) -> AssetState:
        """Apply a lifecycle event atomically per asset and return the new state.

        Raises:
            InvalidTransition: ``event`` is not allowed from the current state.
        """
        with self.hold_asset(asset_id):
            state = next_state(asset_id, self.asset_state(asset_id), event, gated=gated)
            self.set_asset_state(asset_id, state)
        return state

    def set_asset_state(self, asset_id: str, state: AssetState) -> None:
        with self._guard("asset state write"):
            self.store.set(ASSETS, asset_id, {
                "assetId": asset_id,
                "state": state.value,
                "verified": is_verified_state(state),
                "updatedAt": now_precise(),
            })
