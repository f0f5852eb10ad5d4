"""Authenticated session layer.

Keeps a credential valid across an unbounded sequence of API calls:

- CredentialStore: atomic JSON persistence of access/refresh tokens
- FreshnessGate: "should we re-validate now" with mark-before-check
- AuthStrategy: validate / refresh / reauthenticate per integration
- SessionManager: the validate -> refresh -> reauthenticate cascade
- RequestExecutor: one HTTP call through the session, classified

Usage:
    from stationsearch.session import (
        CredentialStore,
        RefreshCapableStrategy,
        RequestExecutor,
        SessionManager,
    )

    session = SessionManager(descriptor, RefreshCapableStrategy(), CredentialStore("cache"))
    with RequestExecutor(session) as api:
        outcome = api.get("/api/core/version/")
"""

from stationsearch.session.credentials import (
    CredentialRecord,
    CredentialStore,
    token_expires_at,
)
from stationsearch.session.executor import RequestExecutor, classify_response
from stationsearch.session.freshness import FreshnessGate
from stationsearch.session.manager import AuthStatus, SessionManager
from stationsearch.session.strategies import (
    AuthStrategy,
    NoAuthStrategy,
    ReauthOnlyStrategy,
    RefreshCapableStrategy,
    strategy_for,
)
from stationsearch.session.types import (
    AuthKind,
    FailureKind,
    RequestOutcome,
    ServiceDescriptor,
    SessionError,
    SessionResult,
    SessionState,
)

__all__ = [
    # Store
    "CredentialRecord",
    "CredentialStore",
    "token_expires_at",
    # Gate
    "FreshnessGate",
    # Strategies
    "AuthStrategy",
    "NoAuthStrategy",
    "ReauthOnlyStrategy",
    "RefreshCapableStrategy",
    "strategy_for",
    # Manager / executor
    "AuthStatus",
    "RequestExecutor",
    "SessionManager",
    "classify_response",
    # Types
    "AuthKind",
    "FailureKind",
    "RequestOutcome",
    "ServiceDescriptor",
    "SessionError",
    "SessionResult",
    "SessionState",
]
