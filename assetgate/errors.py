"""
assetgate error taxonomy.

Every failure the pipeline can surface has its own type so callers can tell
an unreachable oracle from a failed assay from a ledger revert. Each class
carries a stable ``code`` used in logs and audit payloads.

    AssetGateError
    ├── OracleError
    │   ├── OracleRequestError        one failed attempt
    │   └── OracleUnavailable         retries exhausted
    ├── VerificationError
    │   ├── SchemaValidationError
    │   ├── ThresholdNotMet
    │   ├── CertificateInvalid
    │   └── SignatureInvalid
    ├── LedgerError                   raised by ledger clients
    │   └── LedgerCallFailed          raised by services, wraps the cause
    ├── TokenizationError
    │   ├── ConcurrentMintConflict
    │   │   └── AlreadyTokenized
    │   ├── AssetNotVerified
    │   ├── TokenNotFound
    │   └── AlreadyRevoked
    ├── StoreUnavailable
    │   └── AuditStoreUnavailable     fatal, fail-closed
    ├── OperationCancelled
    └── InvalidTransition
"""

from __future__ import annotations

from typing import List, Optional, Sequence


class AssetGateError(Exception):
    """Base class for all assetgate errors."""
    code = "assetgate-error"


# =============================================================================
# ORACLE
# =============================================================================

class OracleError(AssetGateError):
    code = "oracle-error"


class OracleRequestError(OracleError):
    """A single oracle attempt failed (HTTP status, transport, or success:false)."""
    code = "oracle-request-failed"

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class OracleUnavailable(OracleError):
    """All retry attempts against the oracle were exhausted."""
    code = "oracle-unavailable"

    def __init__(self, attempts: int, last_error: Optional[BaseException]):
        self.attempts = attempts
        self.last_error = last_error
        detail = str(last_error) if last_error is not None else "unknown error"
        super().__init__(f"Oracle request failed after {attempts} attempts: {detail}")


# =============================================================================
# VERIFICATION
# =============================================================================

class VerificationError(AssetGateError):
    code = "verification-error"


class SchemaValidationError(VerificationError):
    """Oracle payload or asset batch does not match its declared schema."""
    code = "schema-invalid"

    def __init__(self, errors: Sequence[str], subject: str = "payload"):
        self.errors: List[str] = list(errors)
        self.subject = subject
        joined = "; ".join(self.errors) if self.errors else "invalid"
        super().__init__(f"{subject} failed schema validation: {joined}")


class ThresholdNotMet(VerificationError):
    code = "threshold-not-met"

    def __init__(self, measured, threshold, unit: str = "%"):
        self.measured = measured
        self.threshold = threshold
        super().__init__(f"purity {measured}{unit} below threshold {threshold}{unit}")


class CertificateInvalid(VerificationError):
    code = "certificate-invalid"


class SignatureInvalid(VerificationError):
    code = "signature-invalid"


# =============================================================================
# LEDGER
# =============================================================================

class LedgerError(AssetGateError):
    """Raised by ledger clients on revert, timeout or transport failure."""
    code = "ledger-error"


class LedgerCallFailed(LedgerError):
    """A mint or revoke call did not reach confirmation."""
    code = "ledger-call-failed"

    def __init__(self, method: str, cause: Optional[BaseException] = None, message: str = ""):
        self.method = method
        self.cause = cause
        detail = message or (str(cause) if cause is not None else "not confirmed")
        super().__init__(f"Ledger call '{method}' failed: {detail}")


# =============================================================================
# TOKENIZATION
# =============================================================================

class TokenizationError(AssetGateError):
    code = "tokenization-error"


class ConcurrentMintConflict(TokenizationError):
    """Another mint for the same asset is in flight."""
    code = "concurrent-mint-conflict"

    def __init__(self, asset_id: str, message: str = ""):
        self.asset_id = asset_id
        super().__init__(message or f"Mint already in progress for asset '{asset_id}'")


class AlreadyTokenized(ConcurrentMintConflict):
    """The asset already has a non-revoked token."""
    code = "already-tokenized"

    def __init__(self, asset_id: str, token_id: Optional[str] = None):
        self.token_id = token_id
        suffix = f" (token {token_id})" if token_id else ""
        super().__init__(asset_id, f"Asset '{asset_id}' already has an active token{suffix}")


class AssetNotVerified(TokenizationError):
    code = "asset-not-verified"

    def __init__(self, asset_id: str, reason: str = ""):
        self.asset_id = asset_id
        super().__init__(reason or f"Asset '{asset_id}' has no passing verification")


class TokenNotFound(TokenizationError):
    code = "token-not-found"

    def __init__(self, token_id: str):
        self.token_id = token_id
        super().__init__(f"No token record for '{token_id}'")


class AlreadyRevoked(TokenizationError):
    code = "already-revoked"

    def __init__(self, token_id: str, reason: Optional[str] = None):
        self.token_id = token_id
        self.reason = reason
        super().__init__(f"Token '{token_id}' already revoked: {reason}")


# =============================================================================
# STORAGE / CONTROL
# =============================================================================

class StoreUnavailable(AssetGateError):
    """The backing document store could not serve a request."""
    code = "store-unavailable"


class AuditStoreUnavailable(StoreUnavailable):
    """An audit entry could not be persisted. Operations must not proceed."""
    code = "audit-store-unavailable"


class OperationCancelled(AssetGateError):
    code = "operation-cancelled"

    def __init__(self, operation: str = "operation"):
        self.operation = operation
        super().__init__(f"{operation} cancelled")


class InvalidTransition(AssetGateError):
    code = "invalid-transition"

    def __init__(self, asset_id: str, state: str, event: str):
        self.asset_id = asset_id
        self.state = state
        self.event = event
        super().__init__(f"Asset '{asset_id}': '{event}' not allowed from state '{state}'")
