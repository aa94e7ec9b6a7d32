"""
assetgate Configuration System

Configuration management with YAML files, environment variables,
validation, and runtime updates.

Configuration Sources (in order of precedence):
    1. Environment variables (ASSETGATE_*)
    2. Runtime overrides / loaded files
    3. Default values

Default file locations searched by ``load_defaults``:
    ./assetgate.yaml, ./config/assetgate.yaml, ~/.assetgate/config.yaml
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar, Union

import yaml

from assetgate.errors import AssetGateError
from assetgate.observability import Layer, get_logger

T = TypeVar("T")

logger = get_logger("config", Layer.CONFIG)

SECRET_MASK = "********"


class ConfigError(AssetGateError):
    """Configuration error."""
    code = "config-error"


class ConfigValidationError(ConfigError):
    """Configuration validation error."""
    code = "config-invalid"


def _is_regex(value: str) -> bool:
    try:
        re.compile(value)
    except (re.error, TypeError):
        return False
    return True


def _is_threshold_table(value: Any) -> bool:
    if not isinstance(value, dict) or not value:
        return False
    try:
        return all(Decimal("0") < Decimal(str(v)) <= Decimal("100") for v in value.values())
    except Exception:
        return False


@dataclass
class ConfigValue(Generic[T]):
    """
    A single configuration value with metadata.

    Supports default values, environment variable binding,
    validation, and change callbacks.
    """
    default: T
    env_var: Optional[str] = None
    description: str = ""
    validator: Optional[Callable[[T], bool]] = None
    secret: bool = False  # Never logged or shown unmasked
    _value: Optional[T] = field(default=None, repr=False)
    _callbacks: List[Callable[[T, T], None]] = field(default_factory=list, repr=False)

    def get(self) -> T:
        """Get the current value."""
        if self.env_var and self.env_var in os.environ:
            return self._coerce(os.environ[self.env_var])

        return self._value if self._value is not None else self.default

    def set(self, value: T) -> None:
        """Set the value with validation."""
        if self.validator and not self.validator(value):
            shown = SECRET_MASK if self.secret else value
            raise ConfigValidationError(f"Invalid value for config: {shown}")

        old_value = self._value
        self._value = value

        for callback in self._callbacks:
            callback(old_value, value)

    def _coerce(self, value: str) -> T:
        """Coerce string value to target type."""
        target_type = type(self.default)

        if target_type == bool:
            return value.lower() in ("true", "1", "yes", "on")  # type: ignore
        elif target_type == int:
            return int(value)  # type: ignore
        elif target_type == float:
            return float(value)  # type: ignore
        elif target_type == Decimal:
            return Decimal(value)  # type: ignore
        elif target_type == list:
            return value.split(",")  # type: ignore
        elif target_type == dict:
            # key=value,key=value
            pairs = [p.split("=", 1) for p in value.split(",") if "=" in p]
            return {k.strip(): v.strip() for k, v in pairs}  # type: ignore
        else:
            return value  # type: ignore

    def on_change(self, callback: Callable[[T, T], None]) -> None:
        """Register a change callback."""
        self._callbacks.append(callback)


@dataclass
class OracleConfig:
    """Configuration for the oracle client."""
    max_retries: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=3,
        env_var="ASSETGATE_ORACLE_MAX_RETRIES",
        description="Maximum attempts per oracle request",
        validator=lambda x: isinstance(x, int) and x >= 1,
    ))
    base_delay_ms: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=1000,
        env_var="ASSETGATE_ORACLE_BASE_DELAY_MS",
        description="Backoff delay before the second attempt, in milliseconds",
        validator=lambda x: x >= 0,
    ))
    max_delay_ms: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=10000,
        env_var="ASSETGATE_ORACLE_MAX_DELAY_MS",
        description="Backoff delay cap, in milliseconds",
        validator=lambda x: x >= 0,
    ))
    jitter_factor: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=0.1,
        env_var="ASSETGATE_ORACLE_JITTER",
        description="Upper bound of the multiplicative jitter (0-1)",
        validator=lambda x: 0 <= x <= 1,
    ))
    request_timeout_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=30.0,
        env_var="ASSETGATE_ORACLE_TIMEOUT",
        description="HTTP timeout per oracle request",
        validator=lambda x: x > 0,
    ))
    job_id_pattern: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default=r"^[A-Za-z0-9][A-Za-z0-9_-]{0,127}$",
        env_var="ASSETGATE_ORACLE_JOB_ID_PATTERN",
        description="Regex every oracle job/request id must match",
        validator=_is_regex,
    ))
    node_url: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="http://localhost:6688",
        env_var="ASSETGATE_ORACLE_NODE_URL",
        description="Base URL of the oracle node",
        validator=lambda x: isinstance(x, str) and x.startswith(("http://", "https://")),
    ))
    access_key: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="",
        env_var="ASSETGATE_ORACLE_ACCESS_KEY",
        description="Bearer token for the oracle node",
        secret=True,
    ))
    assay_job_id: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="metal-assay",
        env_var="ASSETGATE_ORACLE_ASSAY_JOB",
        description="Oracle job id for metal assay lookups",
    ))
    deed_job_id: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="property-deed",
        env_var="ASSETGATE_ORACLE_DEED_JOB",
        description="Oracle job id for property deed lookups",
    ))


@dataclass
class VerificationConfig:
    """Configuration for asset verification."""
    threshold_table: ConfigValue[dict] = field(default_factory=lambda: ConfigValue(
        default={
            "gold": "99.9",
            "silver": "99.0",
            "platinum": "99.95",
            "palladium": "99.95",
            "rhodium": "99.9",
        },
        env_var="ASSETGATE_VERIFICATION_THRESHOLDS",
        description="Minimum purity percentage per metal type",
        validator=_is_threshold_table,
    ))
    certificate_timeout_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=15.0,
        env_var="ASSETGATE_CERTIFICATE_TIMEOUT",
        description="HTTP timeout for certificate retrieval",
        validator=lambda x: x > 0,
    ))
    trusted_signers: ConfigValue[dict] = field(default_factory=lambda: ConfigValue(
        default={},
        env_var="ASSETGATE_TRUSTED_SIGNERS",
        description="Issuer name to did:key of its deed signing key",
        validator=lambda x: isinstance(x, dict),
    ))


@dataclass
class TokenizationConfig:
    """Configuration for ledger tokenization."""
    contract_target: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="asset-token",
        env_var="ASSETGATE_TOKEN_CONTRACT",
        description="Ledger target (contract address or name) for mint/revoke",
        validator=lambda x: isinstance(x, str) and bool(x.strip()),
    ))
    require_verification: ConfigValue[bool] = field(default_factory=lambda: ConfigValue(
        default=True,
        env_var="ASSETGATE_REQUIRE_VERIFICATION",
        description="Refuse to mint unless the latest verification passed",
    ))


@dataclass
class AuditConfig:
    """Configuration for the audit trail."""
    signing_key: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="",
        env_var="ASSETGATE_AUDIT_SIGNING_KEY",
        description="HMAC key for audit entry signatures (empty disables signing)",
        secret=True,
    ))
    store_path: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="",
        env_var="ASSETGATE_AUDIT_STORE",
        description="JSON document store file (empty means in-memory)",
    ))


@dataclass
class ObservabilityConfig:
    """Configuration for Observability."""
    log_level: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="info",
        env_var="ASSETGATE_LOG_LEVEL",
        description="Log level (debug, info, warning, error)",
        validator=lambda x: x in ("debug", "info", "warning", "error", "critical"),
    ))
    log_format: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="json",
        env_var="ASSETGATE_LOG_FORMAT",
        description="Log format (json, text)",
        validator=lambda x: x in ("json", "text"),
    ))


@dataclass
class AssetGateConfig:
    """
    Root configuration for assetgate.

    Aggregates all component configurations and provides
    loading/saving functionality.
    """
    oracle: OracleConfig = field(default_factory=OracleConfig)
    verification: VerificationConfig = field(default_factory=VerificationConfig)
    tokenization: TokenizationConfig = field(default_factory=TokenizationConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    def to_dict(self, reveal_secrets: bool = False) -> Dict[str, Any]:
        """Convert to dictionary. Secret values are masked unless requested."""
        def extract_values(obj: Any) -> Any:
            if isinstance(obj, ConfigValue):
                value = obj.get()
                if obj.secret and value and not reveal_secrets:
                    return SECRET_MASK
                return value
            elif hasattr(obj, "__dataclass_fields__"):
                return {k: extract_values(getattr(obj, k)) for k in obj.__dataclass_fields__}
            return obj

        return extract_values(self)

    def to_yaml(self) -> str:
        """Convert to YAML string."""
        return yaml.safe_dump(self.to_dict(), default_flow_style=False, sort_keys=False)


class ConfigManager:
    """
    Configuration manager with file loading and environment binding.

    One manager per application context; construct it where the services
    are wired and pass it (or values read from it) into their factories.
    """

    DEFAULT_PATHS = (
        Path("assetgate.yaml"),
        Path("config") / "assetgate.yaml",
        Path.home() / ".assetgate" / "config.yaml",
    )

    def __init__(self, config: Optional[AssetGateConfig] = None):
        self._config = config or AssetGateConfig()
        self._config_paths: List[Path] = []
        self._watchers: List[Callable[[AssetGateConfig], None]] = []

    @property
    def config(self) -> AssetGateConfig:
        """Get the current configuration."""
        return self._config

    @property
    def loaded_paths(self) -> List[Path]:
        return list(self._config_paths)

    def load_from_file(self, path: Union[str, Path]) -> None:
        """Load configuration from a YAML file."""
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {path}")

        with open(path, encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ConfigError(f"Malformed configuration file {path}: {e}") from e

        if data:
            if not isinstance(data, dict):
                raise ConfigError(f"Configuration file {path} must contain a mapping")
            self._apply_dict(data)
        if path not in self._config_paths:
            self._config_paths.append(path)
        logger.info("Loaded configuration file", path=str(path))

    def load_defaults(self) -> None:
        """Load default configuration files if they exist."""
        for path in self.DEFAULT_PATHS:
            if path.exists():
                try:
                    self.load_from_file(path)
                except ConfigError as e:
                    logger.warning("Skipping unreadable default configuration", path=str(path), error=str(e))

    def _apply_dict(self, data: Dict[str, Any]) -> None:
        """Apply dictionary values to configuration."""
        def apply_to_config(config_obj: Any, values: Dict[str, Any], prefix: str) -> None:
            for key, value in values.items():
                path = f"{prefix}{key}"
                if not hasattr(config_obj, key) or key.startswith("_"):
                    logger.warning("Ignoring unknown configuration key", key=path)
                    continue
                attr = getattr(config_obj, key)
                if isinstance(attr, ConfigValue):
                    attr.set(value)
                elif hasattr(attr, "__dataclass_fields__") and isinstance(value, dict):
                    apply_to_config(attr, value, f"{path}.")

        apply_to_config(self._config, data, "")

    def _resolve(self, path: str) -> Any:
        obj: Any = self._config
        for part in path.split("."):
            if part.startswith("_") or not hasattr(obj, part):
                raise ConfigError(f"Invalid config path: {path}")
            obj = getattr(obj, part)
        return obj

    def set(self, path: str, value: Any) -> None:
        """
        Set a configuration value by path.

        Example: manager.set("oracle.max_retries", 5)
        """
        attr = self._resolve(path)
        if isinstance(attr, ConfigValue):
            attr.set(value)
        else:
            raise ConfigError(f"Invalid config path: {path}")

    def get(self, path: str) -> Any:
        """
        Get a configuration value by path.

        Example: manager.get("verification.threshold_table")
        """
        obj = self._resolve(path)
        if isinstance(obj, ConfigValue):
            return obj.get()
        return obj

    def is_secret(self, path: str) -> bool:
        obj = self._resolve(path)
        return isinstance(obj, ConfigValue) and obj.secret

    def watch(self, callback: Callable[[AssetGateConfig], None]) -> None:
        """Register a callback for configuration changes."""
        self._watchers.append(callback)

    def reload(self) -> None:
        """Reload configuration from all loaded files."""
        for path in self._config_paths:
            if path.exists():
                self.load_from_file(path)

        for watcher in self._watchers:
            watcher(self._config)

    def validate(self) -> List[str]:
        """
        Validate all configuration values.

        Returns list of validation errors.
        """
        errors: List[str] = []

        def validate_config(obj: Any, path: str = "") -> None:
            if isinstance(obj, ConfigValue):
                try:
                    value = obj.get()
                    if obj.validator and not obj.validator(value):
                        shown = SECRET_MASK if obj.secret else value
                        errors.append(f"{path}: validation failed for value {shown}")
                except Exception as e:
                    errors.append(f"{path}: {e}")
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    field_path = f"{path}.{field_name}" if path else field_name
                    validate_config(getattr(obj, field_name), field_path)

        validate_config(self._config)
        if self.get("oracle.base_delay_ms") > self.get("oracle.max_delay_ms"):
            errors.append("oracle.base_delay_ms: must not exceed oracle.max_delay_ms")
        return errors

    def export_schema(self) -> Dict[str, Any]:
        """Export configuration schema for documentation."""
        schema: Dict[str, Any] = {"properties": {}}

        def extract_schema(obj: Any, properties: Dict[str, Any]) -> None:
            if isinstance(obj, ConfigValue):
                properties["type"] = type(obj.default).__name__
                properties["default"] = SECRET_MASK if obj.secret and obj.default else obj.default
                properties["description"] = obj.description
                if obj.env_var:
                    properties["env_var"] = obj.env_var
                if obj.secret:
                    properties["secret"] = True
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    properties[field_name] = {}
                    extract_schema(getattr(obj, field_name), properties[field_name])

        extract_schema(self._config, schema["properties"])
        return schema
