"""Core primitives for assetgate.

This module provides the foundational utilities used throughout the package:
- Cryptographic hashing (SHA-256)
- Canonical JSON serialization (JCS/RFC8785 subset)
- Decimal normalisation for amounts and percentages
- YAML/JSON loading with consistent encoding
- RFC 3339 timestamps

Design principles:
- Pure functions where possible
- No global mutable state
- Explicit error handling
"""

from __future__ import annotations

import hashlib
import json
import pathlib
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Union

import yaml

PACKAGE_ROOT = pathlib.Path(__file__).resolve().parent
SCHEMAS_DIR = PACKAGE_ROOT / "schemas"


def sha256_bytes(data: bytes) -> str:
    """Compute SHA-256 hash of bytes, returning lowercase hex string."""
    return hashlib.sha256(data).hexdigest()


def sha256_text(text: str) -> str:
    return sha256_bytes(text.encode("utf-8"))


def load_yaml(path: pathlib.Path) -> Any:
    """Load YAML file with UTF-8 encoding."""
    return yaml.safe_load(pathlib.Path(path).read_text(encoding="utf-8"))


def load_json(path: pathlib.Path) -> Any:
    """Load JSON file with UTF-8 encoding."""
    return json.loads(pathlib.Path(path).read_text(encoding="utf-8"))


def to_decimal(value: Union[int, float, str, Decimal]) -> Decimal:
    """Convert a JSON number to Decimal without binary float artefacts.

    Floats go through ``str`` first so that ``99.9`` stays ``Decimal("99.9")``.
    """
    if isinstance(value, bool):
        raise ValueError("boolean is not a number")
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except InvalidOperation as e:
        raise ValueError(f"not a decimal number: {value!r}") from e


def decimal_str(value: Union[int, float, str, Decimal]) -> str:
    """Render a number in its shortest plain (non-exponent) decimal form.

    ``100`` -> ``"100"``, ``99.90`` -> ``"99.9"``, ``1e6`` -> ``"1000000"``.
    """
    d = to_decimal(value)
    if d == d.to_integral_value():
        return str(int(d))
    return format(d.normalize(), "f")


def canonicalize(obj: Any) -> Any:
    """Prepare an object for canonical JSON.

    Decimals and floats become plain decimal strings; tuples become lists.
    """
    if isinstance(obj, bool) or obj is None:
        return obj
    if isinstance(obj, (Decimal, float)):
        return decimal_str(obj)
    if isinstance(obj, dict):
        return {str(k): canonicalize(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [canonicalize(v) for v in obj]
    return obj


def canonical_json_bytes(obj: Any) -> bytes:
    """Serialize object to canonical JSON bytes (JCS/RFC8785 subset).

    Properties:
    - Keys sorted lexicographically
    - No whitespace
    - UTF-8 encoded
    - Floats rejected (use strings/ints/Decimal for amounts)

    This ensures byte-for-byte reproducibility for provenance hashes,
    metadata references and audit chain digests.
    """
    def _reject_floats(o: Any, path: str = "") -> None:
        if isinstance(o, float):
            raise ValueError(f"Float not allowed in canonical JSON at {path}")
        if isinstance(o, dict):
            for k, v in o.items():
                _reject_floats(v, f"{path}.{k}")
        if isinstance(o, list):
            for i, v in enumerate(o):
                _reject_floats(v, f"{path}[{i}]")

    _reject_floats(obj)
    return json.dumps(
        obj,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def now_rfc3339() -> str:
    """Current UTC time as an RFC 3339 string with second precision."""
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def now_precise() -> str:
    """Current UTC time with microseconds, for ordering audit rows."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
