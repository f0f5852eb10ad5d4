"""Session manager: keeps one service's credential valid.

Every API call goes through ensure_valid_session(), which runs the cascade:

    1. Recently confirmed (freshness gate) -> success, no I/O
    2. Mark checked now (before any network call)
    3. Disabled / not configured -> fail fast
    4. validate()        -> success
    5. refresh()         -> persist, success
    6. reauthenticate()  -> persist, success
    7. FAILED (nothing persisted)

Only one cascade runs at a time per manager. Concurrent callers block on the
manager lock and then take the fast path on the winner's result.
"""

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

import httpx

from stationsearch.exceptions import PersistenceError
from stationsearch.session.credentials import (
    CredentialRecord,
    CredentialStore,
    token_expires_at,
)
from stationsearch.session.freshness import FreshnessGate
from stationsearch.session.strategies import AuthStrategy
from stationsearch.session.types import (
    ServiceDescriptor,
    SessionError,
    SessionResult,
    SessionState,
)

logger = logging.getLogger(__name__)

DescriptorSource = ServiceDescriptor | Callable[[], ServiceDescriptor]


@dataclass(frozen=True)
class AuthStatus:
    """Snapshot of a session for status displays."""

    service: str
    status: str  # disabled, authenticated, expired, failed, unknown
    message: str | None = None
    expires_at: datetime | None = None
    last_validated_at: datetime | None = None


class SessionManager:
    """Owns the auth state machine for one service."""

    def __init__(
        self,
        descriptor_source: DescriptorSource,
        strategy: AuthStrategy,
        store: CredentialStore,
        http: httpx.Client | None = None,
        gate: FreshnessGate | None = None,
    ):
        self._descriptor_source = descriptor_source
        self._descriptor = self._resolve_descriptor()
        self._strategy = strategy
        self._store = store
        self._http = http
        self._owns_http = http is None
        self._gate = gate or FreshnessGate(self._descriptor.freshness_threshold)

        self._state = SessionState.UNKNOWN
        self._record: CredentialRecord | None = None
        self._record_loaded = False
        self._last_validated_at: datetime | None = None
        self._lock = threading.RLock()

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def service(self) -> str:
        return self._descriptor.name

    @property
    def descriptor(self) -> ServiceDescriptor:
        with self._lock:
            return self._sync_descriptor()

    @property
    def strategy(self) -> AuthStrategy:
        return self._strategy

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def gate(self) -> FreshnessGate:
        return self._gate

    @property
    def last_validated_at(self) -> datetime | None:
        return self._last_validated_at

    @property
    def credential(self) -> CredentialRecord | None:
        """Current in-memory record (read-only copy)."""
        return self._record

    @property
    def http(self) -> httpx.Client:
        """HTTP client used for cascade calls."""
        if self._http is None:
            self._http = httpx.Client()
        return self._http

    # -------------------------------------------------------------------------
    # Cascade
    # -------------------------------------------------------------------------

    def ensure_valid_session(self) -> SessionResult:
        """Guarantee a usable credential before an API call."""
        with self._lock:
            descriptor = self._sync_descriptor()

            claimed = self._gate.claim()
            if not claimed:
                if self._state == SessionState.AUTHENTICATED:
                    return SessionResult.success("cached")
                # Gate is fresh but the last attempt did not succeed
                self._gate.mark_checked_now()

            problem = descriptor.configuration_problem()
            if problem:
                logger.error("[SESSION] %s", problem)
                self._gate.force_stale()
                return SessionResult.failure(SessionError.CONFIGURATION, problem)

            record = self._current_record()
            http = self.http

            if self._strategy.validate(http, descriptor, record):
                self._mark_authenticated()
                logger.debug("[SESSION] %s: current credential validated", descriptor.name)
                return SessionResult.success("validate")

            logger.info("[SESSION] %s: validation failed, attempting token refresh", descriptor.name)
            refreshed = self._strategy.refresh(http, descriptor, record)
            if refreshed is not None and not refreshed.is_empty:
                self._adopt(refreshed)
                logger.info("[SESSION] %s: access token refreshed", descriptor.name)
                return SessionResult.success("refresh")

            logger.info("[SESSION] %s: attempting full authentication", descriptor.name)
            fresh = self._strategy.reauthenticate(http, descriptor)
            if fresh is not None and not fresh.is_empty:
                self._adopt(fresh)
                logger.info("[SESSION] %s: authentication successful", descriptor.name)
                return SessionResult.success("reauthenticate")

            self._state = SessionState.FAILED
            self._gate.force_stale()
            message = f"All authentication methods failed for {descriptor.name}"
            logger.error("[SESSION] %s", message)
            return SessionResult.failure(SessionError.AUTH_FAILED, message)

    def _mark_authenticated(self) -> None:
        self._state = SessionState.AUTHENTICATED
        self._last_validated_at = datetime.now(UTC)

    def _adopt(self, record: CredentialRecord) -> None:
        """Take a newly obtained record into memory and persist it."""
        self._record = record
        self._record_loaded = True
        self._mark_authenticated()
        try:
            self._store.save(self.service, record)
        except PersistenceError as e:
            # Still usable for this run
            logger.warning("[SESSION] %s: credential not durable: %s", self.service, e)

    def _current_record(self) -> CredentialRecord | None:
        if not self._record_loaded:
            self._record = self._store.load(self.service)
            self._record_loaded = True
        return self._record

    # -------------------------------------------------------------------------
    # Configuration changes and invalidation
    # -------------------------------------------------------------------------

    def _resolve_descriptor(self) -> ServiceDescriptor:
        source = self._descriptor_source
        return source() if callable(source) else source

    def _sync_descriptor(self) -> ServiceDescriptor:
        """Pick up external configuration changes."""
        current = self._resolve_descriptor()
        if current != self._descriptor:
            previous = self._descriptor
            self._descriptor = current
            self._gate.threshold_seconds = current.freshness_threshold
            # Stored tokens belong to one server and account
            self.invalidate(
                "Configuration changed",
                clear_credentials=_account_changed(previous, current),
            )
        return self._descriptor

    def invalidate(self, reason: str, clear_credentials: bool = False) -> None:
        """Force the next call to start the cascade from scratch.

        Args:
            reason: Logged explanation
            clear_credentials: Also remove the stored record
        """
        with self._lock:
            logger.info("[SESSION] %s: invalidating auth state: %s", self.service, reason)
            self._state = SessionState.UNKNOWN
            self._gate.force_stale()
            self._record = None
            self._record_loaded = False
            self._last_validated_at = None

            if clear_credentials:
                try:
                    self._store.clear(self.service)
                except PersistenceError as e:
                    logger.warning("[SESSION] %s", e)

    def mark_stale(self) -> None:
        """Server rejected the credential; re-check on the next call."""
        self._gate.force_stale()

    def reset(self) -> None:
        """Drop all auth state and stored credentials."""
        self.invalidate("Reset requested", clear_credentials=True)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def current_headers(self) -> dict[str, str]:
        return self._strategy.auth_headers(self._record)

    def status(self) -> AuthStatus:
        """Describe the session without touching the network."""
        descriptor = self.descriptor
        problem = descriptor.configuration_problem()
        if problem:
            return AuthStatus(service=descriptor.name, status="disabled", message=problem)

        expires_at = token_expires_at(self._record.access_token) if self._record else None

        if self._state == SessionState.AUTHENTICATED:
            status = "expired" if self._gate.needs_check() else "authenticated"
        elif self._state == SessionState.FAILED:
            status = "failed"
        else:
            status = "unknown"

        return AuthStatus(
            service=descriptor.name,
            status=status,
            expires_at=expires_at,
            last_validated_at=self._last_validated_at,
        )

    def close(self) -> None:
        if self._http is not None and self._owns_http:
            self._http.close()
            self._http = None


def _account_changed(old: ServiceDescriptor, new: ServiceDescriptor) -> bool:
    return (old.url, old.username, old.password) != (new.url, new.username, new.password)
