"""
assetgate Ledger Tokenization

Mints one ledger token per verified asset and revokes it on demand.

Mint sequence:

    ┌──────────────┐   ┌──────────────┐   ┌──────────────┐   ┌──────────────┐
    │ per-asset    │──▶│ claim        │──▶│ gate on      │──▶│ provenance + │
    │ lock (try)   │   │ activeTokens │   │ verification │   │ CAS metadata │
    └──────────────┘   └──────────────┘   └──────────────┘   └──────┬───────┘
                                                                    │
    ┌──────────────┐   ┌──────────────┐   ┌──────────────┐   ┌──────▼───────┐
    │ audit "mint" │◀──│ claim active │◀──│ token record │◀──│ ledger mint, │
    │ entry        │   │ + TOKENIZED  │   │ + mapping    │   │ confirmed    │
    └──────────────┘   └──────────────┘   └──────────────┘   └──────────────┘

The audit entry is the commit point and nothing runs after it. A failure
before it deletes the local token and releases the claim, and the
lifecycle state is put back. The lifecycle write and the entry run under
the asset's lifecycle lock, so a verification recorded during the ledger
call cannot undo a durable mint.

Revocation takes a per-token lock and flips the record with an atomic
compare-and-set. If the revoke entry cannot be written the flipped record
stays (the ledger has already revoked the token) and a retried revoke
writes the missing entry.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from assetgate.audit import AuditTrailStore
from assetgate.cas import ContentStore, InMemoryContentStore
from assetgate.core import canonical_json_bytes, decimal_str, now_rfc3339, sha256_bytes, to_decimal
from assetgate.errors import (
    AlreadyRevoked,
    AlreadyTokenized,
    AssetNotVerified,
    AuditStoreUnavailable,
    ConcurrentMintConflict,
    InvalidTransition,
    LedgerCallFailed,
    TokenNotFound,
)
from assetgate.hardening import KeyedLock, Validators
from assetgate.ledger import TOKEN_MINTED, LedgerClient, Receipt
from assetgate.lifecycle import AssetEvent, AssetState, can_transition
from assetgate.models import AssetBatch, AuditEntry, AuditKind, TokenRecord
from assetgate.observability import Layer, get_logger, timed_operation
from assetgate.schema import validate_asset_batch

logger = get_logger("ledger-tokenization", Layer.TOKENIZATION)

METAL_IDENTIFYING_FIELDS = ("purity", "weight", "origin")
PROPERTY_IDENTIFYING_FIELDS = ("location", "coordinates", "size", "valuation", "zoning")


# ════════════════════════════════════════════════════════════════════════════
# PROVENANCE AND METADATA
# ════════════════════════════════════════════════════════════════════════════


def identifying_fields(batch: AssetBatch) -> Dict[str, Any]:
    """The immutable fields a provenance hash commits to."""
    names = METAL_IDENTIFYING_FIELDS if batch.asset_type.is_metal else PROPERTY_IDENTIFYING_FIELDS
    return {
        "assetId": batch.asset_id,
        "assetType": batch.asset_type.value,
        "owner": batch.owner,
        "attributes": {name: batch.attributes.get(name) for name in names},
    }


def _numbers_as_strings(obj: Any) -> Any:
    if isinstance(obj, bool) or obj is None:
        return obj
    if isinstance(obj, (int, float, Decimal)):
        return decimal_str(obj)
    if isinstance(obj, dict):
        return {k: _numbers_as_strings(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_numbers_as_strings(v) for v in obj]
    return obj


def provenance_hash(batch: AssetBatch) -> str:
    """sha256 over the canonical JSON of the identifying fields.

    Numbers are encoded as plain decimal strings, so ``1000``, ``1000.0``
    and ``Decimal("1000.00")`` hash identically.
    """
    return sha256_bytes(canonical_json_bytes(_numbers_as_strings(identifying_fields(batch))))


def purity_grade(purity: Union[int, float, str, Decimal]) -> str:
    p = to_decimal(purity)
    if p >= Decimal("99.99"):
        return "Ultra High Purity"
    if p >= Decimal("99.9"):
        return "High Purity"
    if p >= Decimal("99.5"):
        return "Standard Purity"
    if p >= Decimal("99.0"):
        return "Commercial Purity"
    return "Low Purity"


def valuation_band(valuation: Union[int, float, str, Decimal]) -> str:
    v = to_decimal(valuation)
    if v < 100_000:
        return "Under $100k"
    if v < 500_000:
        return "$100k - $500k"
    if v < 1_000_000:
        return "$500k - $1M"
    if v < 5_000_000:
        return "$1M - $5M"
    return "Over $5M"


def _trait(trait_type: str, value: Any, **extra: Any) -> Dict[str, Any]:
    trait = {"trait_type": trait_type, "value": value}
    trait.update(extra)
    return trait


def build_metadata(
    batch: AssetBatch,
    deal_id: str,
    provenance: str,
    image_base_url: str = "",
) -> Dict[str, Any]:
    """Token metadata document stored in the content-addressed store."""
    attrs = batch.attributes
    kind = batch.asset_type.value

    if batch.asset_type.is_metal:
        purity = decimal_str(attrs["purity"])
        weight = decimal_str(attrs["weight"])
        name = f"{kind.capitalize()} Batch {batch.asset_id}"
        description = f"{weight} g of {purity}% {kind} from {attrs['origin']}"
        traits = [
            _trait("Metal", kind),
            _trait("Purity", purity, display_type="number"),
            _trait("Purity Grade", purity_grade(attrs["purity"])),
            _trait("Weight (g)", weight, display_type="number"),
            _trait("Origin", attrs["origin"]),
        ]
        if attrs.get("assayer"):
            traits.append(_trait("Assayer", attrs["assayer"]))
    else:
        coords = attrs.get("coordinates") or {}
        name = f"{kind.capitalize()} Property {batch.asset_id}"
        description = f"{kind.capitalize()} property at {attrs['location']}"
        traits = [
            _trait("Property Type", kind),
            _trait("Location", attrs["location"]),
            _trait("Size (sq ft)", decimal_str(attrs["size"]), display_type="number"),
            _trait("Valuation (USD)", decimal_str(attrs["valuation"]), display_type="number"),
            _trait("Valuation Band", valuation_band(attrs["valuation"])),
            _trait("Zoning", attrs["zoning"]),
            _trait("Latitude", decimal_str(coords["lat"])),
            _trait("Longitude", decimal_str(coords["lng"])),
        ]

    return {
        "name": name,
        "description": description,
        "image": f"{image_base_url.rstrip('/')}/{kind}.png" if image_base_url else None,
        "external_url": batch.certificate_ref,
        "attributes": traits,
        "provenance_hash": provenance,
        "deal_id": deal_id,
        "asset_id": batch.asset_id,
    }


def _verified_mismatch(batch: AssetBatch, payload: Dict[str, Any]) -> Optional[str]:
    """First difference between ``batch`` and a verified oracle payload, or None."""
    if payload.get("assetType") != batch.asset_type.value:
        return f"assetType {batch.asset_type.value!r}, verified {payload.get('assetType')!r}"
    verified = payload.get("attributes") or {}
    if batch.asset_type.is_metal:
        ours, theirs = batch.attributes.get("purity"), verified.get("purity")
        if theirs is None or to_decimal(ours) != to_decimal(theirs):
            return f"purity {ours}, verified {theirs}"
    elif "documentHash" in batch.attributes:
        ours, theirs = batch.attributes["documentHash"], verified.get("documentHash")
        if str(ours).lower() != str(theirs).lower():
            return f"documentHash {ours}, verified {theirs}"
    return None


# ════════════════════════════════════════════════════════════════════════════
# SERVICE
# ════════════════════════════════════════════════════════════════════════════


class LedgerTokenizationService:
    """
    Mints and revokes asset tokens.

    Example:
        service = LedgerTokenizationService(ledger, audit, InMemoryContentStore())
        record = service.mint("deal-7", batch, actor="escrow-module")
        service.revoke(record.token_id, "assay recalled", actor="compliance-officer")
    """

    def __init__(
        self,
        ledger: LedgerClient,
        audit: AuditTrailStore,
        content_store: ContentStore,
        contract_target: str = "asset-token",
        require_verification: bool = True,
        image_base_url: str = "",
    ):
        self.ledger = ledger
        self.audit = audit
        self.content_store = content_store
        self.contract_target = contract_target
        self.require_verification = require_verification
        self.image_base_url = image_base_url
        self._mint_locks = KeyedLock()
        self._revoke_locks = KeyedLock()

    @classmethod
    def from_config(
        cls,
        manager,
        ledger: LedgerClient,
        audit: AuditTrailStore,
        content_store: Optional[ContentStore] = None,
    ) -> "LedgerTokenizationService":
        return cls(
            ledger,
            audit,
            content_store or InMemoryContentStore(),
            contract_target=manager.get("tokenization.contract_target"),
            require_verification=manager.get("tokenization.require_verification"),
        )

    def _ledger_call(self, method: str, args: Dict[str, Any]) -> Receipt:
        try:
            receipt = self.ledger.call(self.contract_target, method, args)
        except Exception as e:
            logger.error("Ledger call failed", error_code=LedgerCallFailed.code, method=method, error=str(e))
            raise LedgerCallFailed(method, e) from e
        if not receipt.is_confirmed:
            logger.error(
                "Ledger call not confirmed",
                error_code=LedgerCallFailed.code,
                method=method,
                tx_hash=receipt.tx_hash,
                status=receipt.status.value,
            )
            raise LedgerCallFailed(method, message=f"transaction {receipt.tx_hash} is {receipt.status.value}")
        return receipt

    # ─────────────────────────────────────────────────────────────────────
    # mint
    # ─────────────────────────────────────────────────────────────────────

    def _check_mint_allowed(self, batch: AssetBatch) -> None:
        asset_id = batch.asset_id
        if not self.require_verification:
            if not can_transition(self.audit.asset_state(asset_id), AssetEvent.MINT, gated=False):
                raise AssetNotVerified(asset_id, f"Asset '{asset_id}' cannot be minted from its current state")
            return
        latest = self.audit.latest_verification(asset_id)
        if latest is None:
            raise AssetNotVerified(asset_id)
        if not latest.verified:
            raise AssetNotVerified(
                asset_id,
                f"Latest verification of '{asset_id}' failed: {latest.reason_code}",
            )
        mismatch = _verified_mismatch(batch, latest.raw_response or {})
        if mismatch:
            raise AssetNotVerified(asset_id, f"Asset '{asset_id}' does not match its verified payload: {mismatch}")
        state = self.audit.asset_state(asset_id)
        if not can_transition(state, AssetEvent.MINT):
            raise AssetNotVerified(asset_id, f"Asset '{asset_id}' is {state.value}, not verified")

    @timed_operation(logger, "mint")
    def mint(
        self,
        deal_id: str,
        asset_data: Union[AssetBatch, Dict[str, Any]],
        *,
        actor: str = "tokenization-service",
    ) -> TokenRecord:
        """
        Mint a token for ``asset_data`` under ``deal_id``.

        Raises:
            ValidationErrors: empty ``deal_id`` or ``actor``.
            SchemaValidationError: ``asset_data`` is malformed.
            ConcurrentMintConflict: another mint for the asset is in flight.
            AlreadyTokenized: the asset already has a non-revoked token.
            AssetNotVerified: verification gating is on and did not pass,
                or ``asset_data`` differs from the verified payload.
            LedgerCallFailed: the ledger mint failed or was not confirmed.
            AuditStoreUnavailable: the mint could not be recorded.
        """
        deal_id = Validators.validate_identifier(deal_id, "deal_id").raise_if_invalid()
        actor = Validators.validate_identifier(actor, "actor").raise_if_invalid()
        raw = asset_data.to_dict() if isinstance(asset_data, AssetBatch) else asset_data
        batch = AssetBatch.from_dict(validate_asset_batch(raw))
        asset_id = batch.asset_id

        with self._mint_locks.hold(asset_id, blocking=False) as acquired:
            if not acquired:
                logger.warning("Concurrent mint rejected", asset_id=asset_id, deal_id=deal_id)
                raise ConcurrentMintConflict(asset_id)

            claimed = self.audit.claim_asset(asset_id, {
                "assetId": asset_id,
                "dealId": deal_id,
                "status": "minting",
                "claimedAt": now_rfc3339(),
            })
            if not claimed:
                claim = self.audit.get_claim(asset_id) or {}
                if claim.get("status") == "active":
                    raise AlreadyTokenized(asset_id, claim.get("tokenId"))
                raise ConcurrentMintConflict(asset_id)

            token_id: Optional[str] = None
            completed = False
            try:
                self._check_mint_allowed(batch)

                provenance = provenance_hash(batch)
                metadata = build_metadata(batch, deal_id, provenance, self.image_base_url)
                metadata_ref = self.content_store.put_json(metadata, "metadata")

                receipt = self._ledger_call("mint", {
                    "owner": batch.owner,
                    "assetId": asset_id,
                    "metadataRef": metadata_ref,
                })
                event = receipt.find_event(TOKEN_MINTED)
                if event is None or event.args.get("tokenId") in (None, ""):
                    raise LedgerCallFailed("mint", message=f"receipt {receipt.tx_hash} has no {TOKEN_MINTED} event")
                token_id = str(event.args["tokenId"])

                record = TokenRecord(
                    token_id=token_id,
                    asset_id=asset_id,
                    deal_id=deal_id,
                    metadata_ref=metadata_ref,
                    provenance_hash=provenance,
                    minted_at=now_rfc3339(),
                    owner=batch.owner,
                    tx_hash=receipt.tx_hash,
                )
                self.audit.put_token(record)
                self.audit.update_claim(asset_id, {"status": "active", "tokenId": token_id})
                self._commit_mint(record, batch, receipt, actor)
                completed = True
            finally:
                if not completed:
                    if token_id is not None:
                        self.audit.delete_token(token_id)
                        logger.critical(
                            "Ledger token minted but not recorded; local state rolled back",
                            error_code=AuditStoreUnavailable.code,
                            asset_id=asset_id,
                            token_id=token_id,
                        )
                    self.audit.release_claim(asset_id)

        logger.info(
            "Token minted",
            token_id=token_id,
            asset_id=asset_id,
            deal_id=deal_id,
            provenance_hash=record.provenance_hash,
            tx_hash=record.tx_hash,
        )
        return record

    def _commit_mint(self, record: TokenRecord, batch: AssetBatch, receipt: Receipt, actor: str) -> None:
        """
        Move the asset to TOKENIZED and write the "mint" entry.

        Runs under the asset's lifecycle lock. A verification recorded while
        the ledger call was in flight may have moved the state; the token
        wins, and the previous state is put back if the entry cannot be
        written.
        """
        asset_id = record.asset_id
        with self.audit.hold_asset(asset_id):
            previous = self.audit.asset_state(asset_id)
            if not can_transition(previous, AssetEvent.MINT, gated=self.require_verification):
                logger.warning(
                    "Asset state changed during mint",
                    asset_id=asset_id,
                    token_id=record.token_id,
                    state=previous.value,
                )
            self.audit.set_asset_state(asset_id, AssetState.TOKENIZED)
            try:
                self.audit.append(AuditEntry(
                    kind=AuditKind.MINT,
                    subject_id=record.token_id,
                    payload={
                        "token": record.to_dict(),
                        "assetType": batch.asset_type.value,
                        "blockNumber": receipt.block_number,
                    },
                    actor=actor,
                ))
            except AuditStoreUnavailable:
                self.audit.set_asset_state(asset_id, previous)
                raise

    # ─────────────────────────────────────────────────────────────────────
    # revoke
    # ─────────────────────────────────────────────────────────────────────

    @timed_operation(logger, "revoke")
    def revoke(self, token_id: str, reason: str, *, actor: str) -> TokenRecord:
        """
        Revoke a token. The first recorded reason is final.

        When an earlier revoke reached the ledger but its audit entry could
        not be written, calling revoke again writes the missing entry with
        the original reason and returns the record.

        Raises:
            ValidationErrors: empty ``token_id``, ``reason`` or ``actor``.
            TokenNotFound: no token record for ``token_id``.
            AlreadyRevoked: the token was revoked before.
            LedgerCallFailed: the ledger revoke failed or was not confirmed.
            AuditStoreUnavailable: the revoke could not be recorded.
        """
        token_id = Validators.validate_identifier(token_id, "token_id").raise_if_invalid()
        reason = Validators.validate_reason(reason).raise_if_invalid()
        actor = Validators.validate_identifier(actor, "actor").raise_if_invalid()

        with self._revoke_locks.hold(token_id):
            record = self.audit.get_token(token_id)
            if record is None:
                raise TokenNotFound(token_id)
            if record.revoked:
                if self.audit.get(token_id, AuditKind.REVOKE) is not None:
                    raise AlreadyRevoked(token_id, record.revocation_reason)
                logger.warning("Recording missing revoke entry", token_id=token_id, actor=actor)
                self._finish_revoke(record, record.revoked_by or actor, block_number=None)
                return record

            receipt = self._ledger_call("revoke", {"tokenId": token_id, "reason": reason})

            applied, current = self.audit.mark_token_revoked(token_id, {
                "revoked": True,
                "revocationReason": reason,
                "revokedAt": now_rfc3339(),
                "revokedBy": actor,
                "revokeTxHash": receipt.tx_hash,
            })
            if not applied:
                raise AlreadyRevoked(token_id, current.revocation_reason if current else None)

            self._finish_revoke(current, actor, block_number=receipt.block_number)

        logger.info("Token revoked", token_id=token_id, asset_id=record.asset_id, actor=actor, reason=reason)
        return current

    def _finish_revoke(self, record: TokenRecord, actor: str, block_number: Optional[int]) -> None:
        try:
            self.audit.append(AuditEntry(
                kind=AuditKind.REVOKE,
                subject_id=record.token_id,
                payload={
                    "token": record.to_dict(),
                    "reason": record.revocation_reason,
                    "blockNumber": block_number,
                },
                actor=actor,
            ))
        except AuditStoreUnavailable:
            logger.critical(
                "Token revoked on the ledger but not recorded; retry revoke to record it",
                error_code=AuditStoreUnavailable.code,
                token_id=record.token_id,
                asset_id=record.asset_id,
            )
            raise

        self.audit.release_claim(record.asset_id)
        try:
            self.audit.transition_asset(record.asset_id, AssetEvent.REVOKE)
        except InvalidTransition as e:
            logger.warning("Asset was not tokenized at revoke; marking revoked", asset_id=record.asset_id, error=str(e))
            self.audit.set_asset_state(record.asset_id, AssetState.REVOKED)

    # ─────────────────────────────────────────────────────────────────────
    # lookups
    # ─────────────────────────────────────────────────────────────────────

    def get(self, token_id: str) -> Optional[TokenRecord]:
        return self.audit.get_token(token_id)

    def token_for_asset(self, asset_id: str) -> Optional[TokenRecord]:
        return self.audit.token_for_asset(asset_id)

    def token_for_deal(self, deal_id: str) -> Optional[TokenRecord]:
        return self.audit.token_for_deal(deal_id)

    def tokens_for_deal(self, deal_id: str) -> List[TokenRecord]:
        return self.audit.tokens_for_deal(deal_id)

    def metadata(self, token_id: str) -> Optional[Dict[str, Any]]:
        record = self.audit.get_token(token_id)
        if record is None:
            return None
        return self.content_store.get_json(record.metadata_ref)
