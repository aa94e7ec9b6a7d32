"""
assetgate domain records.

    AssetBatch ──verify──▶ VerificationResult (many, newest authoritative)
         │
         └────mint──────▶ TokenRecord (at most one non-revoked per asset)

    Every verify / mint / revoke appends one AuditEntry.

Wire dictionaries use camelCase keys (``assetId``, ``certificateRef``), matching
what the oracle network and the deal module exchange; Python attributes are
snake_case.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from assetgate.core import now_rfc3339


class AssetClass(Enum):
    METAL = "metal"
    PROPERTY = "property"


class AssetType(Enum):
    """Declared kind of a real-world asset."""
    GOLD = "gold"
    SILVER = "silver"
    PLATINUM = "platinum"
    PALLADIUM = "palladium"
    RHODIUM = "rhodium"
    RESIDENTIAL = "residential"
    COMMERCIAL = "commercial"
    INDUSTRIAL = "industrial"
    LAND = "land"

    @property
    def asset_class(self) -> AssetClass:
        if self in _PROPERTY_TYPES:
            return AssetClass.PROPERTY
        return AssetClass.METAL

    @property
    def is_metal(self) -> bool:
        return self.asset_class is AssetClass.METAL

    @property
    def is_property(self) -> bool:
        return self.asset_class is AssetClass.PROPERTY

    @classmethod
    def parse(cls, value: Any) -> "AssetType":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValueError(f"Unknown asset type: {value!r}") from None


_PROPERTY_TYPES = frozenset({
    AssetType.RESIDENTIAL,
    AssetType.COMMERCIAL,
    AssetType.INDUSTRIAL,
    AssetType.LAND,
})


class AuditKind(Enum):
    VERIFICATION = "verification"
    MINT = "mint"
    REVOKE = "revoke"


class ReasonCode(Enum):
    """Why a verification failed."""
    ORACLE_UNAVAILABLE = "oracle-unavailable"
    SCHEMA_INVALID = "schema-invalid"
    THRESHOLD_NOT_MET = "threshold-not-met"
    CERTIFICATE_INVALID = "certificate-invalid"
    SIGNATURE_INVALID = "signature-invalid"


@dataclass
class AssetBatch:
    """One unit of a real-world asset as supplied by the deal module."""
    asset_id: str
    asset_type: AssetType
    attributes: Dict[str, Any]
    certificate_ref: str
    owner: str
    verified: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "assetId": self.asset_id,
            "assetType": self.asset_type.value,
            "attributes": dict(self.attributes),
            "certificateRef": self.certificate_ref,
            "owner": self.owner,
            "verified": self.verified,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AssetBatch":
        """Build from a wire dictionary. Validate against the schema first."""
        return cls(
            asset_id=data["assetId"],
            asset_type=AssetType.parse(data["assetType"]),
            attributes=dict(data.get("attributes") or {}),
            certificate_ref=data["certificateRef"],
            owner=data["owner"],
            verified=bool(data.get("verified", False)),
        )


@dataclass(frozen=True)
class OracleResponse:
    """Raw oracle payload for one request. Untrusted until validated."""
    request_id: str
    data: Dict[str, Any]
    received_at: str = field(default_factory=now_rfc3339)

    @property
    def asset_id(self) -> Optional[str]:
        return self.data.get("assetId")

    @property
    def asset_type(self) -> Optional[str]:
        return self.data.get("assetType")

    @property
    def attributes(self) -> Dict[str, Any]:
        attrs = self.data.get("attributes")
        return attrs if isinstance(attrs, dict) else {}

    @property
    def issuer(self) -> Optional[str]:
        return self.data.get("issuer")

    @property
    def certificate_ref(self) -> Optional[str]:
        return self.data.get("certificateRef")

    @property
    def timestamp(self) -> Optional[str]:
        return self.data.get("timestamp")


@dataclass(frozen=True)
class VerificationResult:
    """
    Immutable outcome of one verification attempt.

    ``reason`` and ``reason_code`` are set exactly when ``verified`` is False.
    ``raw_response`` is None only when the oracle failed and no cached
    payload existed.
    """
    asset_id: str
    verified: bool
    meets_threshold: bool
    attempted_at: str
    asset_type: Optional[str] = None
    reason: Optional[str] = None
    reason_code: Optional[str] = None
    threshold_used: Optional[str] = None
    raw_response: Optional[Dict[str, Any]] = None
    fallback_used: bool = False
    certificate_digest: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "assetId": self.asset_id,
            "assetType": self.asset_type,
            "verified": self.verified,
            "reason": self.reason,
            "reasonCode": self.reason_code,
            "thresholdUsed": self.threshold_used,
            "meetsThreshold": self.meets_threshold,
            "rawResponse": self.raw_response,
            "attemptedAt": self.attempted_at,
            "fallbackUsed": self.fallback_used,
            "certificateDigest": self.certificate_digest,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VerificationResult":
        return cls(
            asset_id=data["assetId"],
            asset_type=data.get("assetType"),
            verified=bool(data["verified"]),
            reason=data.get("reason"),
            reason_code=data.get("reasonCode"),
            threshold_used=data.get("thresholdUsed"),
            meets_threshold=bool(data.get("meetsThreshold", False)),
            raw_response=data.get("rawResponse"),
            attempted_at=data["attemptedAt"],
            fallback_used=bool(data.get("fallbackUsed", False)),
            certificate_digest=data.get("certificateDigest"),
        )


@dataclass
class TokenRecord:
    """Ledger-backed token for one minted asset."""
    token_id: str
    asset_id: str
    deal_id: str
    metadata_ref: str
    provenance_hash: str
    minted_at: str
    owner: str = ""
    tx_hash: str = ""
    revoked: bool = False
    revocation_reason: Optional[str] = None
    revoked_at: Optional[str] = None
    revoked_by: Optional[str] = None
    revoke_tx_hash: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tokenId": self.token_id,
            "assetId": self.asset_id,
            "dealId": self.deal_id,
            "metadataRef": self.metadata_ref,
            "provenanceHash": self.provenance_hash,
            "mintedAt": self.minted_at,
            "owner": self.owner,
            "txHash": self.tx_hash,
            "revoked": self.revoked,
            "revocationReason": self.revocation_reason,
            "revokedAt": self.revoked_at,
            "revokedBy": self.revoked_by,
            "revokeTxHash": self.revoke_tx_hash,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TokenRecord":
        return cls(
            token_id=data["tokenId"],
            asset_id=data["assetId"],
            deal_id=data["dealId"],
            metadata_ref=data["metadataRef"],
            provenance_hash=data["provenanceHash"],
            minted_at=data["mintedAt"],
            owner=data.get("owner", ""),
            tx_hash=data.get("txHash", ""),
            revoked=bool(data.get("revoked", False)),
            revocation_reason=data.get("revocationReason"),
            revoked_at=data.get("revokedAt"),
            revoked_by=data.get("revokedBy"),
            revoke_tx_hash=data.get("revokeTxHash"),
        )


@dataclass(frozen=True)
class AuditEntry:
    """
    Append-only audit row.

    ``entry_id``, ``sequence``, ``previous_hash``, ``entry_hash`` and
    ``signature`` are assigned by the audit store on append.
    """
    kind: AuditKind
    subject_id: str
    payload: Dict[str, Any]
    actor: str
    timestamp: str = field(default_factory=now_rfc3339)
    correlation_id: str = ""
    entry_id: str = ""
    sequence: int = 0
    previous_hash: str = ""
    entry_hash: str = ""
    signature: str = ""

    def chain_body(self) -> Dict[str, Any]:
        """Fields covered by the chain hash."""
        return {
            "entryId": self.entry_id,
            "sequence": self.sequence,
            "kind": self.kind.value,
            "subjectId": self.subject_id,
            "payload": self.payload,
            "actor": self.actor,
            "timestamp": self.timestamp,
            "correlationId": self.correlation_id,
            "previousHash": self.previous_hash,
        }

    def to_dict(self) -> Dict[str, Any]:
        d = self.chain_body()
        d["entryHash"] = self.entry_hash
        d["signature"] = self.signature
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditEntry":
        return cls(
            kind=AuditKind(data["kind"]),
            subject_id=data["subjectId"],
            payload=data.get("payload") or {},
            actor=data["actor"],
            timestamp=data["timestamp"],
            correlation_id=data.get("correlationId", ""),
            entry_id=data.get("entryId", ""),
            sequence=int(data.get("sequence", 0)),
            previous_hash=data.get("previousHash", ""),
            entry_hash=data.get("entryHash", ""),
            signature=data.get("signature", ""),
        )
