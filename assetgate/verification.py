"""
assetgate Asset Verification

Turns an oracle attestation into a VerificationResult.

Pipeline:

    verify(asset_id)
      │
      ├─ fetch oracle payload ───────────── fails ──▶ newest cached payload
      │                                                  │ none
      │                                                  ▼
      │                                          oracle-unavailable
      ├─ schema check ───────────────────── fails ──▶ schema-invalid
      ├─ metal: purity >= threshold ─────── fails ──▶ threshold-not-met
      ├─ certificate retrievable, digest ok  fails ──▶ certificate-invalid
      ├─ property: deed hash + signer ───── fails ──▶ signature-invalid
      ▼
    append audit entry ─▶ update asset lifecycle ─▶ return result

Checks short-circuit: the reason recorded is the first failing condition.
Oracle, schema, threshold, certificate and signature failures are returned
as results, never raised. Only caller input errors, cancellation and audit
store failure raise.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, Mapping, Optional, Union

from assetgate.audit import AuditTrailStore
from assetgate.certificates import CertificateFetcher, HttpCertificateFetcher, check_certificate
from assetgate.core import decimal_str, now_rfc3339, to_decimal
from assetgate.errors import (
    OracleUnavailable,
    SchemaValidationError,
    SignatureInvalid,
    ThresholdNotMet,
)
from assetgate.hardening import Validators
from assetgate.lifecycle import AssetEvent
from assetgate.models import AssetType, AuditEntry, AuditKind, ReasonCode, VerificationResult
from assetgate.observability import Layer, get_logger, timed_operation
from assetgate.oracle import ExternalDataClient
from assetgate.resilience import CancellationToken
from assetgate.schema import validate_oracle_payload
from assetgate.signatures import check_signed_document

logger = get_logger("asset-verification", Layer.VERIFICATION)

DEFAULT_THRESHOLDS: Dict[AssetType, Decimal] = {
    AssetType.GOLD: Decimal("99.9"),
    AssetType.SILVER: Decimal("99.0"),
    AssetType.PLATINUM: Decimal("99.95"),
    AssetType.PALLADIUM: Decimal("99.95"),
    AssetType.RHODIUM: Decimal("99.9"),
}


def parse_threshold_table(table: Mapping[Any, Any]) -> Dict[AssetType, Decimal]:
    """Normalize a ``{asset type: percent}`` mapping."""
    parsed: Dict[AssetType, Decimal] = {}
    for key, value in table.items():
        asset_type = AssetType.parse(key)
        if not asset_type.is_metal:
            raise ValueError(f"Thresholds apply to metals only, got {asset_type.value}")
        parsed[asset_type] = to_decimal(value)
    return parsed


class _Failed(Exception):
    """Internal short-circuit carrying the failing reason."""

    def __init__(self, code: ReasonCode, reason: str):
        self.code = code
        self.reason = reason
        super().__init__(reason)


class AssetVerificationService:
    """
    Verifies assets against oracle attestations.

    Example:
        service = AssetVerificationService(client, audit, fetcher)
        result = service.verify("GOLD-001")
        if not result.verified:
            print(result.reason_code, result.reason)
    """

    def __init__(
        self,
        client: ExternalDataClient,
        audit: AuditTrailStore,
        certificates: CertificateFetcher,
        thresholds: Optional[Mapping[Union[str, AssetType], Any]] = None,
        trusted_signers: Optional[Mapping[str, str]] = None,
        assay_job_id: str = "metal-assay",
        deed_job_id: str = "property-deed",
    ):
        self.client = client
        self.audit = audit
        self.certificates = certificates
        self.thresholds = parse_threshold_table(thresholds) if thresholds is not None else dict(DEFAULT_THRESHOLDS)
        self.trusted_signers = dict(trusted_signers or {})
        self.assay_job_id = assay_job_id
        self.deed_job_id = deed_job_id

    @classmethod
    def from_config(
        cls,
        manager,
        client: ExternalDataClient,
        audit: AuditTrailStore,
        certificates: Optional[CertificateFetcher] = None,
    ) -> "AssetVerificationService":
        return cls(
            client,
            audit,
            certificates or HttpCertificateFetcher(manager.get("verification.certificate_timeout_seconds")),
            thresholds=manager.get("verification.threshold_table"),
            trusted_signers=manager.get("verification.trusted_signers"),
            assay_job_id=manager.get("oracle.assay_job_id"),
            deed_job_id=manager.get("oracle.deed_job_id"),
        )

    def threshold_for(self, asset_type: AssetType) -> Optional[Decimal]:
        return self.thresholds.get(asset_type)

    def _job_for(self, asset_type: Optional[AssetType]) -> str:
        if asset_type is not None and asset_type.is_property:
            return self.deed_job_id
        return self.assay_job_id

    # ─────────────────────────────────────────────────────────────────────
    # verify
    # ─────────────────────────────────────────────────────────────────────

    @timed_operation(logger, "verify")
    def verify(
        self,
        asset_id: str,
        *,
        asset_type: Union[str, AssetType, None] = None,
        actor: str = "asset-verification",
        cancel_token: Optional[CancellationToken] = None,
    ) -> VerificationResult:
        """
        Verify ``asset_id`` and record the outcome.

        Args:
            asset_id: Asset to verify.
            asset_type: Expected asset type; selects the oracle job and must
                match the payload when given.
            actor: Identity recorded on the audit entry.
            cancel_token: Cancels between oracle attempts; nothing is recorded.

        Raises:
            ValidationErrors: empty or malformed ``asset_id`` / ``actor``.
            OperationCancelled: cancelled before a result was produced.
            AuditStoreUnavailable: the outcome could not be recorded.
        """
        asset_id = Validators.validate_asset_id(asset_id).raise_if_invalid()
        actor = Validators.validate_identifier(actor, "actor").raise_if_invalid()
        expected_type = AssetType.parse(asset_type) if asset_type is not None else None
        attempted_at = now_rfc3339()

        fallback_used = False
        try:
            response = self.client.fetch(
                self._job_for(expected_type),
                {"assetId": asset_id, **({"assetType": expected_type.value} if expected_type else {})},
                cancel_token=cancel_token,
            )
            raw: Optional[Dict[str, Any]] = response.data
        except OracleUnavailable as e:
            raw = self.audit.latest_cached_response(asset_id)
            if raw is None:
                logger.warning("Oracle unavailable and no cached payload", asset_id=asset_id, error=str(e))
                result = VerificationResult(
                    asset_id=asset_id,
                    asset_type=expected_type.value if expected_type else None,
                    verified=False,
                    meets_threshold=False,
                    attempted_at=attempted_at,
                    reason=str(e),
                    reason_code=ReasonCode.ORACLE_UNAVAILABLE.value,
                )
                return self._record(result, actor)
            fallback_used = True
            logger.warning("Oracle unavailable, using cached payload", asset_id=asset_id, error=str(e))

        if cancel_token is not None:
            cancel_token.raise_if_cancelled(f"verify {asset_id}")

        result = self._evaluate(asset_id, raw, expected_type, attempted_at, fallback_used)
        return self._record(result, actor)

    def _evaluate(
        self,
        asset_id: str,
        raw: Dict[str, Any],
        expected_type: Optional[AssetType],
        attempted_at: str,
        fallback_used: bool,
    ) -> VerificationResult:
        base: Dict[str, Any] = dict(
            asset_id=asset_id,
            attempted_at=attempted_at,
            raw_response=raw,
            fallback_used=fallback_used,
            asset_type=raw.get("assetType") if isinstance(raw, dict) else None,
        )
        threshold: Optional[Decimal] = None
        meets = False
        try:
            try:
                validate_oracle_payload(raw, asset_id)
            except SchemaValidationError as e:
                raise _Failed(ReasonCode.SCHEMA_INVALID, str(e)) from e
            asset_type = AssetType.parse(raw["assetType"])
            if expected_type is not None and asset_type is not expected_type:
                raise _Failed(
                    ReasonCode.SCHEMA_INVALID,
                    f"oracle payload failed schema validation: assetType is {asset_type.value}, expected {expected_type.value}",
                )

            attributes = raw["attributes"]
            if asset_type.is_metal:
                threshold = self.threshold_for(asset_type)
                if threshold is None:
                    raise _Failed(ReasonCode.THRESHOLD_NOT_MET, f"no purity threshold configured for {asset_type.value}")
                measured = to_decimal(attributes["purity"])
                if measured < threshold:
                    err = ThresholdNotMet(decimal_str(measured), decimal_str(threshold))
                    raise _Failed(ReasonCode.THRESHOLD_NOT_MET, str(err))
            meets = True

            cert = check_certificate(self.certificates, raw.get("certificateRef"))
            base["certificate_digest"] = cert.digest
            if not cert.valid:
                raise _Failed(ReasonCode.CERTIFICATE_INVALID, cert.reason or "certificate invalid")

            if asset_type.is_property:
                try:
                    check_signed_document(cert.content, attributes, raw.get("issuer"), self.trusted_signers)
                except SignatureInvalid as e:
                    raise _Failed(ReasonCode.SIGNATURE_INVALID, str(e)) from e

        except _Failed as f:
            return VerificationResult(
                verified=False,
                meets_threshold=meets,
                threshold_used=decimal_str(threshold) if threshold is not None else None,
                reason=f.reason,
                reason_code=f.code.value,
                **base,
            )

        return VerificationResult(
            verified=True,
            meets_threshold=True,
            threshold_used=decimal_str(threshold) if threshold is not None else None,
            **base,
        )

    def _record(self, result: VerificationResult, actor: str) -> VerificationResult:
        self.audit.append(AuditEntry(
            kind=AuditKind.VERIFICATION,
            subject_id=result.asset_id,
            payload=result.to_dict(),
            actor=actor,
        ))
        event = AssetEvent.VERIFY_PASS if result.verified else AssetEvent.VERIFY_FAIL
        state = self.audit.transition_asset(result.asset_id, event)

        if result.verified:
            logger.info(
                "Asset verified",
                asset_id=result.asset_id,
                asset_type=result.asset_type,
                threshold=result.threshold_used,
                fallback_used=result.fallback_used,
                state=state.value,
            )
        else:
            logger.info(
                "Asset verification failed",
                error_code=result.reason_code,
                asset_id=result.asset_id,
                reason=result.reason,
                fallback_used=result.fallback_used,
                state=state.value,
            )
        return result

    def latest(self, asset_id: str) -> Optional[VerificationResult]:
        """Most recent recorded verification for ``asset_id``."""
        return self.audit.latest_verification(asset_id)


