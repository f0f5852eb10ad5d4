"""Authentication strategies.

Each integration differs only in which recovery steps it supports:

- RefreshCapableStrategy: validate, refresh (refresh token -> new access
  token) and full re-authentication with username/password. Dispatcharr.
- ReauthOnlyStrategy: validate and full re-authentication. Emby.
- NoAuthStrategy: nothing to validate and no credential attached.
  Channels DVR.

The SessionManager drives the cascade; strategies only perform the single
step they are asked for and report success or failure. Network errors are
caught here and reported as a failed step.
"""

import logging
import socket
import time
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Any

import httpx
from pydantic import BaseModel, Field, ValidationError

from stationsearch.session.credentials import CredentialRecord
from stationsearch.session.retry import STEP_BACKOFF
from stationsearch.session.types import AuthKind, ServiceDescriptor

logger = logging.getLogger(__name__)

CLIENT_NAME = "StationSearch"
CLIENT_VERSION = "1.0"


class TokenPairResponse(BaseModel):
    """Dispatcharr /api/accounts/token/ response."""

    access: str = Field(min_length=1)
    refresh: str | None = None


class AccessTokenResponse(BaseModel):
    """Dispatcharr /api/accounts/token/refresh/ response."""

    access: str = Field(min_length=1)
    refresh: str | None = None


class EmbyUser(BaseModel):
    Id: str = Field(min_length=1)
    Name: str | None = None


class EmbyAuthResponse(BaseModel):
    """Emby /Users/AuthenticateByName response (fields we use)."""

    AccessToken: str = Field(min_length=1)
    User: EmbyUser


def _error_detail(response: httpx.Response) -> str:
    """Pull a human-readable error out of an auth response."""
    try:
        data = response.json()
    except ValueError:
        return f"HTTP {response.status_code}"
    if isinstance(data, dict):
        for key in ("detail", "error", "message"):
            if data.get(key):
                return str(data[key])
    return f"HTTP {response.status_code}"


class AuthStrategy(ABC):
    """How one service validates, refreshes and re-authenticates."""

    kind: AuthKind
    requires_credentials = True

    def __init__(
        self,
        connect_timeout: float = 10.0,
        timeout: float = 20.0,
        validate_timeout: float = 15.0,
        step_retries: int = 1,
    ):
        self._connect_timeout = connect_timeout
        self._timeout = timeout
        self._validate_timeout = validate_timeout
        self._step_retries = step_retries

    def _send(
        self,
        http: httpx.Client,
        method: str,
        url: str,
        *,
        step: str,
        service: str,
        timeout: float | None = None,
        **kwargs: Any,
    ) -> httpx.Response | None:
        """Send one request for a cascade step.

        Transport errors are retried within this step only. Returns None if
        the step could not reach the server.
        """
        request_timeout = httpx.Timeout(timeout or self._timeout, connect=self._connect_timeout)

        for attempt in range(self._step_retries + 1):
            try:
                return http.request(method, url, timeout=request_timeout, **kwargs)
            except (httpx.ConnectError, httpx.TimeoutException) as e:
                if attempt < self._step_retries:
                    delay = STEP_BACKOFF.delay(attempt)
                    logger.warning(
                        "[SESSION] %s %s: %s, retry %d/%d after %.1fs",
                        service,
                        step,
                        type(e).__name__,
                        attempt + 1,
                        self._step_retries,
                        delay,
                    )
                    time.sleep(delay)
                    continue
                logger.warning("[SESSION] %s %s failed: network error (%s)", service, step, e)
            except httpx.HTTPError as e:
                logger.warning("[SESSION] %s %s failed: %s", service, step, e)
                return None
        return None

    @abstractmethod
    def auth_headers(self, record: CredentialRecord | None) -> dict[str, str]:
        """Headers that carry the credential on an API request."""

    @abstractmethod
    def validate(
        self,
        http: httpx.Client,
        descriptor: ServiceDescriptor,
        record: CredentialRecord | None,
    ) -> bool:
        """Cheap check that the current credential is accepted."""

    def refresh(
        self,
        http: httpx.Client,
        descriptor: ServiceDescriptor,
        record: CredentialRecord | None,
    ) -> CredentialRecord | None:
        """Exchange a refresh token for a new access token. No-op by default."""
        return None

    @abstractmethod
    def reauthenticate(
        self,
        http: httpx.Client,
        descriptor: ServiceDescriptor,
    ) -> CredentialRecord | None:
        """Full username/password authentication."""


class RefreshCapableStrategy(AuthStrategy):
    """JWT access/refresh pair (Dispatcharr)."""

    kind = AuthKind.REFRESH_CAPABLE

    def auth_headers(self, record: CredentialRecord | None) -> dict[str, str]:
        if record is None or record.is_empty:
            return {}
        return {"Authorization": f"Bearer {record.access_token}"}

    def validate(self, http, descriptor, record) -> bool:
        if record is None or record.is_empty:
            return False

        response = self._send(
            http,
            "GET",
            f"{descriptor.url}{descriptor.validate_path}",
            step="validate",
            service=descriptor.name,
            timeout=self._validate_timeout,
            headers={**self.auth_headers(record), "Content-Type": "application/json"},
        )
        if response is None or response.status_code != 200:
            return False

        try:
            data = response.json()
        except ValueError:
            return False

        # Dispatcharr answers some auth failures with 200 and an error body
        if isinstance(data, dict) and (data.get("detail") or data.get("error")):
            return False
        return True

    def refresh(self, http, descriptor, record) -> CredentialRecord | None:
        if record is None or not record.refresh_token or not descriptor.refresh_path:
            logger.info("[SESSION] %s: no refresh token available", descriptor.name)
            return None

        logger.info("[SESSION] %s: refreshing access token", descriptor.name)
        response = self._send(
            http,
            "POST",
            f"{descriptor.url}{descriptor.refresh_path}",
            step="refresh",
            service=descriptor.name,
            json={"refresh": record.refresh_token},
        )
        if response is None:
            return None
        if response.status_code != 200:
            logger.warning(
                "[SESSION] %s: refresh token rejected: %s",
                descriptor.name,
                _error_detail(response),
            )
            return None

        try:
            parsed = AccessTokenResponse.model_validate(response.json())
        except (ValueError, ValidationError):
            logger.warning("[SESSION] %s: invalid refresh response", descriptor.name)
            return None

        refreshed = record.with_access(parsed.access)
        if parsed.refresh:
            # Server rotated the refresh token too
            refreshed = replace(refreshed, refresh_token=parsed.refresh)
        return refreshed

    def reauthenticate(self, http, descriptor) -> CredentialRecord | None:
        if not descriptor.auth_path or not descriptor.has_credentials:
            return None

        logger.info("[SESSION] %s: authenticating as %s", descriptor.name, descriptor.username)
        response = self._send(
            http,
            "POST",
            f"{descriptor.url}{descriptor.auth_path}",
            step="authenticate",
            service=descriptor.name,
            json={"username": descriptor.username, "password": descriptor.password},
        )
        if response is None:
            return None
        if response.status_code != 200:
            logger.error(
                "[SESSION] %s: authentication failed: %s",
                descriptor.name,
                _error_detail(response),
            )
            return None

        try:
            parsed = TokenPairResponse.model_validate(response.json())
        except (ValueError, ValidationError):
            logger.error("[SESSION] %s: invalid response from auth endpoint", descriptor.name)
            return None

        return CredentialRecord(access_token=parsed.access, refresh_token=parsed.refresh)


class ReauthOnlyStrategy(AuthStrategy):
    """Access token only, renewed by logging in again (Emby)."""

    kind = AuthKind.REAUTH_ONLY

    def __init__(self, *args: Any, device_id: str | None = None, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self._device_id = device_id or f"gss-{socket.gethostname()}"

    def auth_headers(self, record: CredentialRecord | None) -> dict[str, str]:
        if record is None or record.is_empty:
            return {}
        return {"X-Emby-Token": record.access_token}

    def _authorization_header(self) -> str:
        return (
            f'MediaBrowser Client="{CLIENT_NAME}", Device="Script", '
            f'DeviceId="{self._device_id}", Version="{CLIENT_VERSION}"'
        )

    def validate(self, http, descriptor, record) -> bool:
        if record is None or record.is_empty:
            return False

        response = self._send(
            http,
            "GET",
            f"{descriptor.url}{descriptor.validate_path}",
            step="validate",
            service=descriptor.name,
            timeout=self._validate_timeout,
            headers=self.auth_headers(record),
        )
        if response is None or response.status_code != 200:
            return False
        try:
            response.json()
        except ValueError:
            return False
        return True

    def reauthenticate(self, http, descriptor) -> CredentialRecord | None:
        if not descriptor.auth_path or not descriptor.has_credentials:
            return None

        logger.info("[SESSION] %s: authenticating as %s", descriptor.name, descriptor.username)
        response = self._send(
            http,
            "POST",
            f"{descriptor.url}{descriptor.auth_path}",
            step="authenticate",
            service=descriptor.name,
            headers={"X-Emby-Authorization": self._authorization_header()},
            json={"Username": descriptor.username, "Pw": descriptor.password},
        )
        if response is None:
            return None
        if response.status_code != 200:
            logger.error(
                "[SESSION] %s: authentication failed: HTTP %d",
                descriptor.name,
                response.status_code,
            )
            return None

        try:
            parsed = EmbyAuthResponse.model_validate(response.json())
        except (ValueError, ValidationError):
            logger.error(
                "[SESSION] %s: invalid authentication response - missing token or user ID",
                descriptor.name,
            )
            return None

        logger.debug("[SESSION] %s: authenticated user id %s", descriptor.name, parsed.User.Id)
        return CredentialRecord(access_token=parsed.AccessToken, user_id=parsed.User.Id)


class NoAuthStrategy(AuthStrategy):
    """Service without authentication (Channels DVR)."""

    kind = AuthKind.NONE
    requires_credentials = False

    def auth_headers(self, record: CredentialRecord | None) -> dict[str, str]:
        return {}

    def validate(self, http, descriptor, record) -> bool:
        return True

    def reauthenticate(self, http, descriptor) -> CredentialRecord | None:
        return None


def strategy_for(kind: AuthKind, **kwargs: Any) -> AuthStrategy:
    """Build the strategy for an auth kind."""
    if kind == AuthKind.REFRESH_CAPABLE:
        return RefreshCapableStrategy(**kwargs)
    if kind == AuthKind.REAUTH_ONLY:
        return ReauthOnlyStrategy(**kwargs)
    return NoAuthStrategy(**kwargs)
