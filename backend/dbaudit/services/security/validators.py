"""
Input validation for callers about to run an administrative operation.

Each check either returns quietly, emits a SecurityEvent to the injected
sink and returns, or emits and raises. Identities are supplied by the caller;
nothing here authenticates anyone.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable
from datetime import datetime

import structlog

from dbaudit.config.security import SecurityConfig
from dbaudit.core.errors import RestrictedOperationError, ValidationError
from dbaudit.schemas.audit import EventKind, SecurityEvent, utcnow
from dbaudit.services.security.rules import normalise_resource, query_tokens

_log = structlog.get_logger(__name__)

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_SPECIAL_CHARS = set('!@#$%^&*(),.?":{}|<>')

USERNAME_MIN_LENGTH = 3
USERNAME_MAX_LENGTH = 31
PASSWORD_MIN_LENGTH = 8

EventSink = Callable[[SecurityEvent], None]


class SecurityValidator:
    """
    Pre-check validators for identifiers, credentials, predicates and grants.

    Usage:
        validator = SecurityValidator(config, on_event=service.emit_event)
        validator.validate_identifier("orders", user="alice")
        validator.validate_privileges(["SELECT", "UPDATE"], user="alice")
    """

    def __init__(
        self,
        config: SecurityConfig,
        on_event: EventSink | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._config = config
        self._on_event = on_event
        self._clock = clock

    def update_config(self, config: SecurityConfig) -> None:
        self._config = config

    def _emit(self, kind: str, message: str, user: str | None, **evidence: object) -> SecurityEvent:
        event = SecurityEvent(
            timestamp=self._clock(),
            kind=kind,
            severity=self._config.severity_for(kind),
            message=message,
            subject_user=user,
            evidence={"mode": "validation", **evidence},
        )
        _log.warning("validation_security_event", kind=kind, user=user)
        if self._on_event is not None:
            self._on_event(event)
        return event

    # ── Identifiers ─────────────────────────────────────────────────────── #

    def validate_identifier(self, name: str, user: str | None = None) -> str:
        """
        Check a table or object name and return it unchanged.

        Sensitive names are allowed through but reported.

        Raises:
            ValidationError: If the name is empty or has characters outside
                ``[A-Za-z0-9_]`` (or starts with a digit).
        """
        if not isinstance(name, str) or not name:
            raise ValidationError("Identifier must be a non-empty string")

        if normalise_resource(name) in self._config.sensitive_resources:
            self._emit(
                EventKind.SENSITIVE_RESOURCE_ACCESS,
                f"Sensitive resource referenced: {name}",
                user,
                resource=name,
            )

        if not _IDENTIFIER_RE.match(name):
            raise ValidationError(
                "Identifier contains invalid characters",
                detail={"identifier": name},
            )
        return name

    def validate_username(self, username: str) -> str:
        if not isinstance(username, str) or not username:
            raise ValidationError("Username must be a non-empty string")
        if not USERNAME_MIN_LENGTH <= len(username) <= USERNAME_MAX_LENGTH:
            raise ValidationError(
                f"Username must be between {USERNAME_MIN_LENGTH} and "
                f"{USERNAME_MAX_LENGTH} characters",
                detail={"length": len(username)},
            )
        if not _IDENTIFIER_RE.match(username):
            raise ValidationError("Username contains invalid characters")
        return username

    # ── Credentials ─────────────────────────────────────────────────────── #

    def validate_password(self, password: str, user: str | None = None) -> bool:
        """
        Enforce the minimum length and grade complexity.

        Returns True when the password has upper and lower case letters, a
        digit and a special character. A weaker password is still accepted
        but emits WEAK_PASSWORD. The password itself is never logged.

        Raises:
            ValidationError: If the password is shorter than the minimum.
        """
        if not isinstance(password, str) or not password:
            raise ValidationError("Password must be a non-empty string")
        if len(password) < PASSWORD_MIN_LENGTH:
            raise ValidationError(
                f"Password must be at least {PASSWORD_MIN_LENGTH} characters"
            )

        missing = [
            label
            for label, present in (
                ("uppercase", any(c.isupper() for c in password)),
                ("lowercase", any(c.islower() for c in password)),
                ("digit", any(c.isdigit() for c in password)),
                ("special", any(c in _SPECIAL_CHARS for c in password)),
            )
            if not present
        ]
        if missing:
            self._emit(
                EventKind.WEAK_PASSWORD,
                "Password does not meet complexity requirements",
                user,
                missing=missing,
            )
            return False
        return True

    # ── Statements ──────────────────────────────────────────────────────── #

    def validate_where_clause(self, clause: str, user: str | None = None) -> str:
        """
        Reject a WHERE predicate that carries a restricted keyword.

        Raises:
            ValidationError: If the clause is empty.
            RestrictedOperationError: If a restricted keyword appears as a
                token outside string literals.
        """
        if not isinstance(clause, str) or not clause.strip():
            raise ValidationError("WHERE clause must be a non-empty string")

        matched = sorted(query_tokens(clause) & self._config.restricted_operations)
        if matched:
            event = self._emit(
                EventKind.RESTRICTED_OPERATION,
                f"WHERE clause contains restricted keyword(s): {', '.join(matched)}",
                user,
                keywords=matched,
            )
            raise RestrictedOperationError(
                f"WHERE clause contains restricted keyword: {matched[0]}",
                event=event,
            )
        return clause

    def validate_privileges(self, privileges: Iterable[str], user: str | None = None) -> list[str]:
        """
        Check a list of privileges to grant and return them upper-cased.

        Raises:
            ValidationError: If the list is empty or a privilege is unknown.
            RestrictedOperationError: If a privilege is restricted.
        """
        requested = list(privileges) if privileges is not None else []
        if not requested:
            raise ValidationError("Privilege list must not be empty")

        normalised: list[str] = []
        for privilege in requested:
            upper = str(privilege).strip().upper()
            if upper in self._config.restricted_operations:
                event = self._emit(
                    EventKind.RESTRICTED_OPERATION,
                    f"Restricted privilege requested: {upper}",
                    user,
                    privilege=upper,
                )
                raise RestrictedOperationError(f"Restricted privilege: {upper}", event=event)
            if upper not in self._config.allowed_operations:
                self._emit(
                    EventKind.UNKNOWN_PRIVILEGE,
                    f"Unknown privilege requested: {privilege}",
                    user,
                    privilege=str(privilege),
                )
                raise ValidationError(
                    f"Unknown privilege: {privilege}",
                    detail={"privilege": str(privilege)},
                )
            normalised.append(upper)
        return normalised
