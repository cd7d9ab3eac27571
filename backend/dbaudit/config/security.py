"""
Security policy configuration.

The policy is a YAML (or JSON) mapping validated against
SECURITY_CONFIG_SCHEMA. Loading never blocks startup: a missing file yields
the documented defaults, and any invalid field is dropped with a warning so
its default applies instead.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import jsonschema
import structlog
import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from dbaudit.core.errors import ConfigError, ErrorCode
from dbaudit.schemas.audit import EventKind, Severity

_log = structlog.get_logger(__name__)

DEFAULT_SEVERITIES: dict[str, Severity] = {
    EventKind.MULTIPLE_FAILED_LOGINS: Severity.HIGH,
    EventKind.SENSITIVE_RESOURCE_ACCESS: Severity.HIGH,
    EventKind.UNUSUAL_TIME_ACCESS: Severity.LOW,
    EventKind.HIGH_FREQUENCY_OPERATIONS: Severity.MEDIUM,
    EventKind.HIGH_FREQUENCY_ACTOR: Severity.MEDIUM,
    EventKind.HIGH_FREQUENCY_ADDRESS: Severity.MEDIUM,
    EventKind.RESTRICTED_OPERATION: Severity.HIGH,
    EventKind.UNKNOWN_PRIVILEGE: Severity.MEDIUM,
    EventKind.WEAK_PASSWORD: Severity.LOW,
}

_NAME_LIST = {"type": "array", "items": {"type": "string", "minLength": 1}}
_POSITIVE_INT = {"type": "integer", "minimum": 1}

SECURITY_CONFIG_SCHEMA: dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "title": "dbaudit security policy",
    "type": "object",
    "properties": {
        "sensitive_resources": _NAME_LIST,
        "max_failed_attempts": _POSITIVE_INT,
        "failed_attempt_window_seconds": _POSITIVE_INT,
        "audit_retention_days": _POSITIVE_INT,
        "allowed_operations": _NAME_LIST,
        "restricted_operations": _NAME_LIST,
        "privileged_users": _NAME_LIST,
        "high_frequency_window_seconds": _POSITIVE_INT,
        "high_frequency_threshold": _POSITIVE_INT,
        "scan_window_hours": _POSITIVE_INT,
        "scan_user_threshold": _POSITIVE_INT,
        "scan_address_threshold": _POSITIVE_INT,
        "business_hours_start": {"type": "integer", "minimum": 0, "maximum": 23},
        "business_hours_end": {"type": "integer", "minimum": 1, "maximum": 24},
        "timezone": {"type": ["string", "null"]},
        "severities": {
            "type": "object",
            "additionalProperties": {"enum": [s.value for s in Severity]},
        },
        "alert_on_suspicious_activity": {"type": "boolean"},
    },
}

_validator = jsonschema.Draft7Validator(SECURITY_CONFIG_SCHEMA)


def _upper_set(values: Any) -> frozenset[str]:
    return frozenset(str(v).strip().upper() for v in values)


class SecurityConfig(BaseModel):
    """Read-only security policy. Loaded once; reloaded only on request."""

    model_config = ConfigDict(frozen=True)

    sensitive_resources: frozenset[str] = frozenset({"USERS", "PASSWORDS", "CREDENTIALS", "TOKENS"})
    max_failed_attempts: int = Field(default=5, ge=1)
    failed_attempt_window_seconds: int = Field(default=300, ge=1)
    audit_retention_days: int = Field(default=90, ge=1)
    allowed_operations: frozenset[str] = frozenset({"SELECT", "INSERT", "UPDATE", "DELETE"})
    restricted_operations: frozenset[str] = frozenset({"DROP", "ALTER", "CREATE", "GRANT", "REVOKE"})
    privileged_users: frozenset[str] = frozenset()
    high_frequency_window_seconds: int = Field(default=600, ge=1)
    high_frequency_threshold: int = Field(default=50, ge=1)
    scan_window_hours: int = Field(default=24, ge=1)
    scan_user_threshold: int = Field(default=100, ge=1)
    scan_address_threshold: int = Field(default=200, ge=1)
    business_hours_start: int = Field(default=6, ge=0, le=23)
    business_hours_end: int = Field(default=22, ge=1, le=24)
    timezone: str | None = None
    severities: dict[str, Severity] = Field(default_factory=dict)
    alert_on_suspicious_activity: bool = True

    @field_validator(
        "sensitive_resources", "allowed_operations", "restricted_operations", mode="before"
    )
    @classmethod
    def _normalise_names(cls, v: Any) -> frozenset[str]:
        return _upper_set(v)

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, v: str | None) -> str | None:
        if v is not None:
            try:
                ZoneInfo(v)
            except (ZoneInfoNotFoundError, ValueError) as err:
                raise ValueError(f"unknown timezone {v!r}") from err
        return v

    @model_validator(mode="after")
    def _business_hours_ordered(self) -> SecurityConfig:
        if self.business_hours_start >= self.business_hours_end:
            raise ValueError("business_hours_start must be before business_hours_end")
        return self

    def severity_for(self, kind: str) -> Severity:
        """Configured severity for an event kind; unknown kinds are LOW."""
        if kind in self.severities:
            return self.severities[kind]
        return DEFAULT_SEVERITIES.get(kind, Severity.LOW)

    @property
    def tz(self) -> ZoneInfo | None:
        return ZoneInfo(self.timezone) if self.timezone else None


def _read_policy_file(path: Path) -> dict[str, Any]:
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as err:
        raise ConfigError(
            f"Security config {path.name} is unreadable: {err}",
            code=ErrorCode.CONFIG_UNREADABLE,
            detail={"file": str(path)},
        ) from err
    except yaml.YAMLError as err:
        raise ConfigError(
            f"Invalid YAML in security config {path.name}: {err}",
            detail={"file": str(path)},
        ) from err

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(
            f"Security config {path.name} must be a mapping",
            detail={"file": str(path)},
        )
    return data


def load_security_config(path: Path | None, strict: bool = False) -> SecurityConfig:
    """
    Load the security policy from ``path``.

    Unknown keys and fields failing validation are dropped and logged; their
    defaults apply. With ``strict=True`` any problem raises instead.

    Raises:
        ConfigError: Only when ``strict`` is set.
    """
    if path is None or not path.exists():
        _log.info("security_config_defaults", path=str(path) if path else None)
        return SecurityConfig()

    try:
        data = _read_policy_file(path)
    except ConfigError as err:
        if strict:
            raise
        _log.warning("security_config_fallback", error_code=err.code.value, message=err.message)
        return SecurityConfig()

    known = set(SECURITY_CONFIG_SCHEMA["properties"])
    problems: dict[str, str] = {
        key: "unknown field" for key in data if key not in known
    }
    cleaned = {k: v for k, v in data.items() if k in known}

    for error in _validator.iter_errors(cleaned):
        field = str(error.path[0]) if error.path else "root"
        problems.setdefault(field, error.message)

    cleaned = {k: v for k, v in cleaned.items() if k not in problems}

    try:
        config = SecurityConfig.model_validate(cleaned)
    except PydanticValidationError as err:
        for e in err.errors():
            problems.setdefault(".".join(str(p) for p in e["loc"]) or "root", e["msg"])
        config = None

    if problems:
        error = ConfigError(
            f"Security config {path.name} has invalid fields",
            detail={"file": str(path), "fields": problems},
        )
        if strict:
            raise error
        _log.warning(
            "security_config_invalid_fields",
            error_code=error.code.value,
            fields=problems,
            file=str(path),
        )

    if config is None:
        # Cross-field checks failed; only the defaults are known to be consistent
        return SecurityConfig()

    _log.info(
        "security_config_loaded",
        file=str(path),
        sensitive_resources=sorted(config.sensitive_resources),
        max_failed_attempts=config.max_failed_attempts,
    )
    return config
