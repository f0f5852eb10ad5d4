"""Integration factory.

Builds one SessionManager + RequestExecutor per service from the settings
provider, lazily, and keeps them for the life of the process. Descriptors are
read through the provider on every call, so edits to the settings file
invalidate the affected session on its next use.

Usage:
    factory = IntegrationFactory(SettingsProvider())
    result = factory.test_connection("dispatcharr")
    channels = factory.dispatcharr()
"""

import logging
import threading
from dataclasses import dataclass

import httpx

from stationsearch.integrations.channels_dvr import ChannelsDvrSearch
from stationsearch.integrations.dispatcharr import DispatcharrChannels
from stationsearch.integrations.emby import EmbyLiveTv
from stationsearch.session.credentials import CredentialStore
from stationsearch.session.executor import RequestExecutor
from stationsearch.session.manager import AuthStatus, SessionManager
from stationsearch.session.strategies import strategy_for
from stationsearch.settings import (
    CHANNELS_DVR,
    DISPATCHARR,
    EMBY,
    SERVICES,
    SettingsProvider,
)

logger = logging.getLogger(__name__)


@dataclass
class ConnectionTestResult:
    """Result of a connection test."""

    service: str
    success: bool
    url: str | None = None
    version: str | None = None
    server_name: str | None = None
    error: str | None = None


class IntegrationFactory:
    """Owns the per-service sessions and executors."""

    def __init__(
        self,
        settings: SettingsProvider,
        store: CredentialStore | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        """Initialize the factory.

        Args:
            settings: Settings provider
            store: Credential store (defaults to the configured cache dir)
            transport: Optional httpx transport (tests use MockTransport)
        """
        self._settings = settings
        self._store = store or CredentialStore(settings.settings.paths.cache_dir)
        self._transport = transport
        self._executors: dict[str, RequestExecutor] = {}
        self._clients: dict[str, httpx.Client] = {}
        self._lock = threading.Lock()

    @property
    def store(self) -> CredentialStore:
        return self._store

    def executor(self, service: str) -> RequestExecutor:
        """Get or build the executor for a service."""
        if service not in SERVICES:
            raise ValueError(f"Unknown service: {service}")

        with self._lock:
            executor = self._executors.get(service)
            if executor is None:
                executor = self._build(service)
                self._executors[service] = executor
            return executor

    def _build(self, service: str) -> RequestExecutor:
        api = self._settings.settings.api
        descriptor = self._settings.descriptor(service)
        http = httpx.Client(
            transport=self._transport,
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
        )
        self._clients[service] = http
        strategy = strategy_for(
            descriptor.auth_kind,
            connect_timeout=api.connect_timeout,
            timeout=api.timeout,
        )
        session = SessionManager(
            lambda: self._settings.descriptor(service),
            strategy,
            self._store,
            http=http,
        )
        logger.debug("Built %s session (%s)", service, descriptor.auth_kind.value)
        return RequestExecutor(
            session,
            connect_timeout=api.connect_timeout,
            timeout=api.timeout,
            max_retries=api.max_retries,
            http=http,
        )

    def session(self, service: str) -> SessionManager:
        return self.executor(service).session

    def dispatcharr(self) -> DispatcharrChannels:
        return DispatcharrChannels(self.executor(DISPATCHARR))

    def emby(self) -> EmbyLiveTv:
        return EmbyLiveTv(self.executor(EMBY))

    def channels_dvr(self) -> ChannelsDvrSearch:
        return ChannelsDvrSearch(self.executor(CHANNELS_DVR))

    def status(self, service: str) -> AuthStatus:
        return self.session(service).status()

    def test_connection(self, service: str) -> ConnectionTestResult:
        """Authenticate and make one real API call."""
        session = self.session(service)
        descriptor = session.descriptor

        problem = descriptor.configuration_problem()
        if problem:
            return ConnectionTestResult(service=service, success=False, error=problem)

        auth = session.ensure_valid_session()
        if not auth.ok:
            return ConnectionTestResult(
                service=service,
                success=False,
                url=descriptor.url,
                error="Authentication failed - check server URL, username, and password",
            )

        if service == DISPATCHARR:
            info = self.dispatcharr().get_version()
            if info is None:
                return ConnectionTestResult(
                    service=service, success=False, url=descriptor.url, error="Version request failed"
                )
            return ConnectionTestResult(
                service=service,
                success=True,
                url=descriptor.url,
                version=str(info.get("version", "Unknown")),
            )

        if service == EMBY:
            info = self.emby().get_server_info()
            if info is None:
                return ConnectionTestResult(
                    service=service, success=False, url=descriptor.url, error="Server info request failed"
                )
            return ConnectionTestResult(
                service=service,
                success=True,
                url=descriptor.url,
                version=info.get("Version"),
                server_name=info.get("ServerName"),
            )

        status = self.channels_dvr().get_status()
        if status is None:
            return ConnectionTestResult(
                service=service,
                success=False,
                url=descriptor.url,
                error=f"Channels DVR connection failed to {descriptor.url}",
            )
        return ConnectionTestResult(
            service=service,
            success=True,
            url=descriptor.url,
            version=status.get("version"),
        )

    def close(self) -> None:
        with self._lock:
            # Sessions built here borrow the client, so close it directly
            for client in self._clients.values():
                client.close()
            self._clients.clear()
            self._executors.clear()

    def __enter__(self) -> "IntegrationFactory":
        return self

    def __exit__(self, *args) -> None:
        self.close()
