"""
Error code system.

DbSageError is the base exception for all structured errors. Each subclass
carries a fixed registry code so log lines and run records can be grouped by
failure class without parsing messages.

Usage:
    from dbsage.core.errors import ConnectivityError
    raise ConnectivityError(detail="connection refused to db.example.com:5432")
"""

from __future__ import annotations

import re

CODE_PATTERN = re.compile(r"^DBS-[A-Z]{2,6}-\d{3}$")


class DbSageError(Exception):
    """Structured application error.

    Args:
        code: Registry error code, e.g. "DBS-NET-001".
        detail: Internal-only detail message (never shown to tenants).
        context: Arbitrary key-value context for structured logging.
    """

    code: str = "DBS-SYS-001"

    def __init__(
        self,
        detail: str | None = None,
        context: dict | None = None,
        code: str | None = None,
    ) -> None:
        code = code or type(self).code
        if not CODE_PATTERN.match(code):
            raise ValueError(f"Invalid error code format: {code!r}")
        self.code = code
        self.detail = detail
        self.context = context or {}
        super().__init__(f"{code}: {detail}" if detail else code)


class ConfigurationError(DbSageError):
    """Missing or malformed key material or required settings. Never retried."""

    code = "DBS-CFG-001"


class ConnectivityError(DbSageError):
    """Target database unreachable, directly or through the tunnel."""

    code = "DBS-NET-001"


class IntegrityError(DbSageError):
    """Stored credential failed authentication (tampered or wrong key)."""

    code = "DBS-SEC-001"


class PartialCapabilityError(DbSageError):
    """Monitoring extension or instrumentation schema is not available.

    Connectors catch this themselves and degrade to empty telemetry.
    """

    code = "DBS-DB-002"


class ConnectionNotFoundError(DbSageError):
    code = "DBS-DB-003"


class GenerationError(DbSageError):
    """Suggestion generator unavailable, timed out, or returned invalid content."""

    code = "DBS-LLM-001"


class NotActiveError(DbSageError):
    """Sync precondition failed: the connection is not ACTIVE."""

    code = "DBS-SYNC-001"


__all__ = [
    "CODE_PATTERN",
    "DbSageError",
    "ConfigurationError",
    "ConnectivityError",
    "IntegrityError",
    "PartialCapabilityError",
    "ConnectionNotFoundError",
    "GenerationError",
    "NotActiveError",
]
