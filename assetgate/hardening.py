"""
assetgate Validation and Hardening Module

Input validation and concurrency primitives shared by the oracle client,
the verification service and the tokenization service.

Security Model:
    - All inputs are untrusted until validated
    - Digest comparisons are constant-time
    - Per-asset and per-token mutations are serialized
"""

from __future__ import annotations

import hmac
import re
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional

from assetgate.errors import AssetGateError


# =============================================================================
# VALIDATION ERROR TYPES
# =============================================================================

class ValidationError(Exception):
    """A single field failed validation."""

    def __init__(self, field: str, message: str, value: Any = None):
        self.field = field
        self.message = message
        self.value = value
        super().__init__(f"{field}: {message}")


class ValidationErrors(AssetGateError, ValueError):
    """Collection of validation errors."""
    code = "invalid-input"

    def __init__(self, errors: List[ValidationError]):
        self.errors = errors
        messages = "; ".join(f"{e.field}: {e.message}" for e in errors)
        super().__init__(f"Validation failed: {messages}")


# =============================================================================
# VALIDATION RESULT
# =============================================================================

@dataclass
class ValidationResult:
    """Result of a validation operation."""
    is_valid: bool
    errors: List[ValidationError] = field(default_factory=list)
    sanitized_value: Any = None

    def raise_if_invalid(self) -> Any:
        """Raise ValidationErrors if validation failed, else return the sanitized value."""
        if not self.is_valid:
            raise ValidationErrors(self.errors)
        return self.sanitized_value

    @classmethod
    def success(cls, sanitized_value: Any = None) -> "ValidationResult":
        return cls(is_valid=True, sanitized_value=sanitized_value)

    @classmethod
    def failure(cls, errors: List[ValidationError]) -> "ValidationResult":
        return cls(is_valid=False, errors=errors)


# =============================================================================
# INPUT VALIDATORS
# =============================================================================

class Validators:
    """Collection of input validators."""

    # Patterns
    HEX64_PATTERN = re.compile(r"^[a-f0-9]{64}$")
    ASSET_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.:-]{0,127}$")
    DEFAULT_JOB_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,127}$")

    # Limits
    MAX_STRING_LENGTH = 4096
    MAX_REASON_LENGTH = 1024

    @classmethod
    def validate_string(
        cls,
        value: Any,
        field_name: str,
        min_length: int = 1,
        max_length: Optional[int] = None,
        pattern: Optional[re.Pattern] = None,
    ) -> ValidationResult:
        """Validate a string value."""
        max_length = max_length or cls.MAX_STRING_LENGTH
        errors = []

        if not isinstance(value, str):
            errors.append(ValidationError(field_name, f"Expected string, got {type(value).__name__}", value))
            return ValidationResult.failure(errors)

        # Sanitize: strip whitespace and null bytes
        sanitized = value.strip().replace("\x00", "")

        if len(sanitized) < min_length:
            if min_length == 1:
                errors.append(ValidationError(field_name, "must not be empty", value))
            else:
                errors.append(ValidationError(field_name, f"Too short (min {min_length} chars)", value))

        if len(sanitized) > max_length:
            errors.append(ValidationError(field_name, f"Too long (max {max_length} chars)", value))

        if sanitized and pattern is not None and not pattern.match(sanitized):
            errors.append(ValidationError(field_name, "Does not match required pattern", value))

        if errors:
            return ValidationResult.failure(errors)
        return ValidationResult.success(sanitized)

    @classmethod
    def validate_asset_id(cls, value: Any, field_name: str = "asset_id") -> ValidationResult:
        return cls.validate_string(value, field_name, max_length=128, pattern=cls.ASSET_ID_PATTERN)

    @classmethod
    def validate_identifier(cls, value: Any, field_name: str) -> ValidationResult:
        """Validate a free-form non-empty identifier (deal id, token id, actor)."""
        return cls.validate_string(value, field_name, max_length=256)

    @classmethod
    def validate_job_id(cls, value: Any, pattern: Optional[re.Pattern] = None) -> ValidationResult:
        return cls.validate_string(
            value, "request_id",
            max_length=128,
            pattern=pattern or cls.DEFAULT_JOB_ID_PATTERN,
        )

    @classmethod
    def validate_reason(cls, value: Any) -> ValidationResult:
        return cls.validate_string(value, "reason", max_length=cls.MAX_REASON_LENGTH)

    @classmethod
    def validate_digest(cls, value: Any, field_name: str = "digest") -> ValidationResult:
        """Validate a SHA256 digest (64 hex chars)."""
        result = cls.validate_string(value, field_name, min_length=64, max_length=64)
        if not result.is_valid:
            return result

        if not cls.HEX64_PATTERN.match(result.sanitized_value.lower()):
            return ValidationResult.failure([
                ValidationError(field_name, "Must be 64 lowercase hex characters", value)
            ])

        return ValidationResult.success(result.sanitized_value.lower())


def secure_compare_str(a: str, b: str) -> bool:
    """Constant-time string comparison."""
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


# =============================================================================
# KEYED LOCKS
# =============================================================================

class KeyedLock:
    """
    One mutex per key, created on demand and dropped when unused.

    Used to serialize mints per asset id and revokes per token id while
    letting different keys proceed in parallel.

    Example:
        locks = KeyedLock()
        with locks.hold("asset-001", blocking=False) as acquired:
            if not acquired:
                raise ConcurrentMintConflict("asset-001")
            ...
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._refcounts: Dict[str, int] = {}

    def _checkout(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
                self._refcounts[key] = 0
            self._refcounts[key] += 1
            return lock

    def _checkin(self, key: str) -> None:
        with self._guard:
            self._refcounts[key] -= 1
            if self._refcounts[key] == 0:
                del self._refcounts[key]
                del self._locks[key]

    @contextmanager
    def hold(self, key: str, blocking: bool = True, timeout: float = -1) -> Iterator[bool]:
        """Acquire the lock for ``key``; yields whether it was acquired."""
        lock = self._checkout(key)
        acquired = lock.acquire(blocking, timeout) if blocking else lock.acquire(False)
        try:
            yield acquired
        finally:
            if acquired:
                lock.release()
            self._checkin(key)

    def is_held(self, key: str) -> bool:
        with self._guard:
            lock = self._locks.get(key)
            return lock is not None and lock.locked()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
