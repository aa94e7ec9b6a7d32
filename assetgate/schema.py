"""JSON Schema validation for oracle payloads and asset batches.

Provides:
- A registry of every bundled schema so ``$ref`` resolves across files
- Cached validators per schema kind
- Error messages prefixed with the JSON path of the failing value
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List

from jsonschema import Draft202012Validator
from referencing import Registry, Resource
from referencing.jsonschema import DRAFT202012

from assetgate.core import SCHEMAS_DIR, load_json
from assetgate.errors import SchemaValidationError

SCHEMA_BASE_URI = "https://schemas.assetgate.dev/"

ORACLE_PAYLOAD = "oracle-payload"
ASSET_BATCH = "asset-batch"
METAL_ATTRIBUTES = "metal-attributes"
PROPERTY_ATTRIBUTES = "property-attributes"

SCHEMA_KINDS = (ORACLE_PAYLOAD, ASSET_BATCH, METAL_ATTRIBUTES, PROPERTY_ATTRIBUTES)


def schema_path(kind: str) -> Path:
    if kind not in SCHEMA_KINDS:
        raise ValueError(f"Unknown schema kind: {kind!r}")
    return SCHEMAS_DIR / f"{kind}.schema.json"


@lru_cache(maxsize=1)
def _schema_registry() -> Registry:
    """Build a registry of all bundled schemas, keyed by ``$id``."""
    resources = []
    for path in sorted(SCHEMAS_DIR.glob("*.schema.json")):
        schema = load_json(path)
        schema_id = schema.get("$id") or f"{SCHEMA_BASE_URI}{path.name}"
        resources.append((schema_id, Resource.from_contents(schema, default_specification=DRAFT202012)))
    return Registry().with_resources(resources)


@lru_cache(maxsize=None)
def schema_validator(kind: str) -> Draft202012Validator:
    """Validator for one schema kind, sharing the bundled registry."""
    schema = load_json(schema_path(kind))
    return Draft202012Validator(schema, registry=_schema_registry())


def validate_against_schema(obj: Any, kind: str) -> List[str]:
    """Validate an object against a schema.

    Returns:
        List of validation error messages (empty if valid)
    """
    validator = schema_validator(kind)
    errors = sorted(validator.iter_errors(obj), key=lambda e: list(e.absolute_path))
    return [f"{error.json_path}: {error.message}" for error in errors]


def validate_oracle_payload(payload: Any, expected_asset_id: str) -> Dict[str, Any]:
    """Validate a live or cached oracle payload for ``expected_asset_id``.

    Raises:
        SchemaValidationError: the payload is malformed or describes a
            different asset.
    """
    if not isinstance(payload, dict):
        raise SchemaValidationError([f"$: expected object, got {type(payload).__name__}"], subject="oracle payload")
    errors = validate_against_schema(payload, ORACLE_PAYLOAD)
    if not errors and payload.get("assetId") != expected_asset_id:
        errors.append(f"$.assetId: payload describes '{payload.get('assetId')}', expected '{expected_asset_id}'")
    if errors:
        raise SchemaValidationError(errors, subject="oracle payload")
    return payload


def validate_asset_batch(data: Any) -> Dict[str, Any]:
    """Validate a mint input against the asset batch schema."""
    if not isinstance(data, dict):
        raise SchemaValidationError([f"$: expected object, got {type(data).__name__}"], subject="asset batch")
    errors = validate_against_schema(data, ASSET_BATCH)
    if errors:
        raise SchemaValidationError(errors, subject="asset batch")
    return data
