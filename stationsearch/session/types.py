"""Types shared by the session layer.

ServiceDescriptor is the immutable per-integration configuration handed to
the session manager. SessionResult and RequestOutcome are the typed results
passed back up through the layers.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class AuthKind(str, Enum):
    """Which auth strategy an integration uses."""

    REFRESH_CAPABLE = "refresh_capable"
    REAUTH_ONLY = "reauth_only"
    NONE = "none"


class SessionState(str, Enum):
    """In-memory belief about whether the current credential is usable."""

    UNKNOWN = "unknown"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"


class SessionError(str, Enum):
    """Why ensure_valid_session() could not produce a usable credential."""

    CONFIGURATION = "configuration"
    AUTH_FAILED = "auth_failed"


class FailureKind(str, Enum):
    """Classification of a failed request."""

    NETWORK = "network"
    AUTH_EXPIRED = "auth_expired"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    SERVER_ERROR = "server_error"
    # 2xx response whose body did not match what the caller expected
    INVALID_RESPONSE = "invalid_response"


@dataclass(frozen=True)
class ServiceDescriptor:
    """Immutable configuration for one integration.

    Equality matters: the session manager compares the descriptor it was last
    given with the current one and invalidates itself when they differ.
    """

    name: str
    base_url: str | None
    enabled: bool
    auth_kind: AuthKind
    username: str | None = None
    password: str | None = field(default=None, repr=False)
    freshness_threshold: float = 30.0
    validate_path: str = "/"
    refresh_path: str | None = None
    auth_path: str | None = None

    @property
    def url(self) -> str:
        """Base URL without a trailing slash."""
        return (self.base_url or "").rstrip("/")

    @property
    def has_credentials(self) -> bool:
        return bool(self.username and self.password)

    def configuration_problem(self) -> str | None:
        """Describe why this integration cannot be used, or None if it can."""
        if not self.enabled:
            return f"{self.name} integration is disabled"
        if not self.base_url:
            return f"{self.name} URL is not configured"
        if self.auth_kind != AuthKind.NONE and not self.has_credentials:
            return f"Missing {self.name} credentials"
        return None


@dataclass(frozen=True)
class SessionResult:
    """Outcome of SessionManager.ensure_valid_session()."""

    ok: bool
    error: SessionError | None = None
    message: str | None = None
    # Which cascade step produced the result ("cached", "validate", ...)
    step: str | None = None

    @classmethod
    def success(cls, step: str) -> "SessionResult":
        return cls(ok=True, step=step)

    @classmethod
    def failure(cls, error: SessionError, message: str) -> "SessionResult":
        return cls(ok=False, error=error, message=message)


@dataclass(frozen=True)
class RequestOutcome:
    """Result of one RequestExecutor call.

    On success ``body`` is the raw response text, returned verbatim. Callers
    parse and validate it themselves.
    """

    success: bool
    status_code: int | None = None
    body: str = ""
    kind: FailureKind | None = None
    error: str | None = None

    @classmethod
    def ok(cls, status_code: int, body: str) -> "RequestOutcome":
        return cls(success=True, status_code=status_code, body=body)

    @classmethod
    def failure(
        cls,
        kind: FailureKind,
        error: str,
        status_code: int | None = None,
        body: str = "",
    ) -> "RequestOutcome":
        return cls(
            success=False,
            status_code=status_code,
            body=body,
            kind=kind,
            error=error,
        )

    def json(self) -> Any:
        """Decode the body as JSON, returning None when it is empty or invalid."""
        if not self.body:
            return None
        try:
            return json.loads(self.body)
        except ValueError:
            return None
