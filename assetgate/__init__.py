"""
assetgate: verification and tokenization gate for real-world assets

Confirms a physical asset (a precious-metal batch or a real-estate parcel)
against an oracle attestation and only then mints a ledger token for it.
Every decision is appended to a hash-chained audit trail.

Architecture
────────────

    ┌─────────────────────────────────────────────────────────────────────────┐
    │  deal module / operator CLI                                             │
    │                                                                         │
    │  verification.py   oracle payload -> schema, threshold, certificate     │
    │  tokenization.py   verified asset -> ledger token, metadata, revoke     │
    │                                                                         │
    │  oracle.py         ExternalDataClient: retries, event subscriptions     │
    │  ledger.py         LedgerClient contract and in-memory ledger           │
    │  audit.py          append-only audit trail, token and asset records     │
    │  cas.py            content-addressed token metadata                     │
    │                                                                         │
    │  config.py  observability.py  resilience.py  hardening.py  errors.py    │
    └─────────────────────────────────────────────────────────────────────────┘
"""

__version__ = "0.3.0"


# Lazy imports keep ``import assetgate`` cheap for the CLI
def __getattr__(name):
    """Lazy import assetgate modules on first access."""

    if name in ("AssetType", "AssetClass", "AssetBatch", "OracleResponse",
                "VerificationResult", "TokenRecord", "AuditEntry", "AuditKind",
                "ReasonCode"):
        from assetgate import models
        return getattr(models, name)

    if name in ("ExternalDataClient", "OracleEndpoint", "HttpOracleEndpoint",
                "LedgerEventSource", "SubscriptionHandle"):
        from assetgate import oracle
        return getattr(oracle, name)

    if name in ("AssetVerificationService",):
        from assetgate import verification
        return getattr(verification, name)

    if name in ("LedgerTokenizationService", "provenance_hash", "build_metadata"):
        from assetgate import tokenization
        return getattr(tokenization, name)

    if name in ("AuditTrailStore",):
        from assetgate import audit
        return getattr(audit, name)

    if name in ("LedgerClient", "InMemoryLedger", "Receipt", "ReceiptStatus", "LedgerEvent"):
        from assetgate import ledger
        return getattr(ledger, name)

    if name in ("DocumentStore", "InMemoryDocumentStore", "JsonFileDocumentStore"):
        from assetgate import store
        return getattr(store, name)

    if name in ("ContentStore", "InMemoryContentStore", "DirectoryContentStore"):
        from assetgate import cas
        return getattr(cas, name)

    if name in ("ConfigManager", "AssetGateConfig"):
        from assetgate import config
        return getattr(config, name)

    if name in ("CancellationToken", "RetryPolicy"):
        from assetgate import resilience
        return getattr(resilience, name)

    raise AttributeError(f"module 'assetgate' has no attribute '{name}'")


__all__ = [
    "__version__",
    # Models
    "AssetType",
    "AssetClass",
    "AssetBatch",
    "OracleResponse",
    "VerificationResult",
    "TokenRecord",
    "AuditEntry",
    "AuditKind",
    "ReasonCode",
    # Services
    "ExternalDataClient",
    "OracleEndpoint",
    "HttpOracleEndpoint",
    "LedgerEventSource",
    "SubscriptionHandle",
    "AssetVerificationService",
    "LedgerTokenizationService",
    "provenance_hash",
    "build_metadata",
    "AuditTrailStore",
    # Infrastructure
    "LedgerClient",
    "InMemoryLedger",
    "Receipt",
    "ReceiptStatus",
    "LedgerEvent",
    "DocumentStore",
    "InMemoryDocumentStore",
    "JsonFileDocumentStore",
    "ContentStore",
    "InMemoryContentStore",
    "DirectoryContentStore",
    "ConfigManager",
    "AssetGateConfig",
    "CancellationToken",
    "RetryPolicy",
]
