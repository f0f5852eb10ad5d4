"""Pytest configuration and fake HTTP services.

The fakes implement just enough of Dispatcharr, Emby and Channels DVR to drive
the session cascade and the batch drain through ``httpx.MockTransport``.
"""

import json
import re
import sys
from collections import Counter
from pathlib import Path

import httpx
import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from stationsearch.session.credentials import CredentialStore  # noqa: E402
from stationsearch.session.types import AuthKind, ServiceDescriptor  # noqa: E402

DISPATCHARR_URL = "http://dispatcharr.test"
EMBY_URL = "http://emby.test"
CDVR_URL = "http://cdvr.test"


class FakeClock:
    """Monotonic clock the tests move by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _body(request: httpx.Request) -> dict:
    if not request.content:
        return {}
    return json.loads(request.content)


class FakeDispatcharr:
    """Dispatcharr token endpoints plus the channel resource."""

    def __init__(self, username: str = "admin", password: str = "secret"):
        self.username = username
        self.password = password
        self.valid_access: set[str] = set()
        self.valid_refresh: set[str] = set()
        self.channels: dict[int, dict] = {}
        self.fail_channel_ids: set[int] = set()
        self.groups: list[dict] = []
        self.logos: dict[int, dict] = {}
        self.on_patch = None
        self.down = False
        self.rotate_refresh = False
        self.hits: Counter = Counter()
        self.requests: list[httpx.Request] = []
        self._issued = 0

    def issue_pair(self) -> tuple[str, str]:
        self._issued += 1
        access, refresh = f"access-{self._issued}", f"refresh-{self._issued}"
        self.valid_access.add(access)
        self.valid_refresh.add(refresh)
        return access, refresh

    def expire_access(self) -> None:
        self.valid_access.clear()

    def revoke_refresh(self) -> None:
        self.valid_refresh.clear()

    def cascade_calls(self) -> int:
        return (
            self.hits["/api/core/version/"]
            + self.hits["/api/accounts/token/refresh/"]
            + self.hits["/api/accounts/token/"]
        )

    def _authorized(self, request: httpx.Request) -> bool:
        header = request.headers.get("Authorization", "")
        return header.startswith("Bearer ") and header[7:] in self.valid_access

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        self.hits[path] += 1

        if self.down:
            raise httpx.ConnectError("Connection refused", request=request)

        if path == "/api/accounts/token/" and request.method == "POST":
            body = _body(request)
            if body.get("username") == self.username and body.get("password") == self.password:
                access, refresh = self.issue_pair()
                return httpx.Response(200, json={"access": access, "refresh": refresh})
            return httpx.Response(
                401, json={"detail": "No active account found with the given credentials"}
            )

        if path == "/api/accounts/token/refresh/" and request.method == "POST":
            refresh = _body(request).get("refresh")
            if refresh not in self.valid_refresh:
                return httpx.Response(401, json={"detail": "Token is invalid or expired"})
            self._issued += 1
            access = f"access-{self._issued}"
            self.valid_access.add(access)
            payload = {"access": access}
            if self.rotate_refresh:
                payload["refresh"] = f"refresh-{self._issued}"
                self.valid_refresh.add(payload["refresh"])
            return httpx.Response(200, json=payload)

        if not self._authorized(request):
            return httpx.Response(401, json={"detail": "Given token not valid for any token type"})

        if path == "/api/core/version/":
            return httpx.Response(200, json={"version": "0.9.1", "timestamp": None})

        if path == "/api/channels/channels/" and request.method == "GET":
            return httpx.Response(200, json=list(self.channels.values()))

        if path.startswith("/api/channels/channels/"):
            channel_id = int(path.rstrip("/").rsplit("/", 1)[-1])
            if channel_id in self.fail_channel_ids:
                return httpx.Response(500, text="Internal Server Error")
            if channel_id not in self.channels:
                return httpx.Response(404, json={"detail": "Not found."})
            if request.method == "PATCH":
                self.channels[channel_id].update(_body(request))
                if self.on_patch is not None:
                    self.on_patch(channel_id)
            return httpx.Response(200, json=self.channels[channel_id])

        if path == "/api/channels/groups/":
            page = {"count": len(self.groups), "next": None, "results": self.groups}
            return httpx.Response(200, json=page)

        if path == "/api/channels/logos/" and request.method == "GET":
            return httpx.Response(200, json=list(self.logos.values()))

        if path == "/api/channels/logos/" and request.method == "POST":
            logo_id = max(self.logos, default=0) + 1
            self.logos[logo_id] = {"id": logo_id, **_body(request)}
            return httpx.Response(201, json=self.logos[logo_id])

        if path.startswith("/api/channels/logos/") and request.method == "DELETE":
            logo_id = int(path.rstrip("/").rsplit("/", 1)[-1])
            if self.logos.pop(logo_id, None) is None:
                return httpx.Response(404, json={"detail": "Not found."})
            return httpx.Response(204)

        return httpx.Response(404, json={"detail": "Not found."})


class FakeEmby:
    """Emby auth, system info and Live TV endpoints."""

    def __init__(self, username: str = "admin", password: str = "secret"):
        self.username = username
        self.password = password
        self.valid_tokens: set[str] = set()
        self.providers: set[str] = set()
        self.channels: list[dict] = []
        self.images: dict[str, set[str]] = {}
        self.fail_item_ids: set[str] = set()
        self.hits: Counter = Counter()
        self.requests: list[httpx.Request] = []
        self._issued = 0

    def expire_tokens(self) -> None:
        self.valid_tokens.clear()

    def _channel(self, channel_id: str) -> dict | None:
        return next((c for c in self.channels if c.get("Id") == channel_id), None)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        self.hits[path] += 1

        if path == "/emby/Users/AuthenticateByName":
            body = _body(request)
            if body.get("Username") == self.username and body.get("Pw") == self.password:
                self._issued += 1
                token = f"emby-token-{self._issued}"
                self.valid_tokens.add(token)
                return httpx.Response(
                    200,
                    json={"AccessToken": token, "User": {"Id": "user-1", "Name": self.username}},
                )
            return httpx.Response(401, text="Invalid username or password entered.")

        if request.headers.get("X-Emby-Token") not in self.valid_tokens:
            return httpx.Response(401, text="Access token is invalid or expired.")

        if path == "/emby/System/Info":
            return httpx.Response(200, json={"ServerName": "Living Room", "Version": "4.8.10.0"})

        if path == "/emby/LiveTv/Manage/Channels":
            return httpx.Response(200, json={"Items": self.channels})

        if path == "/emby/LiveTv/Channels":
            listing = {"Items": self.channels, "TotalRecordCount": len(self.channels)}
            return httpx.Response(200, json=listing)

        image = re.fullmatch(r"/emby/Items/([^/]+)/Images/([^/]+)", path)
        if image and request.method == "DELETE":
            channel_id, image_type = image.groups()
            if channel_id in self.fail_item_ids:
                return httpx.Response(500, text="Internal Server Error")
            if image_type not in self.images.get(channel_id, set()):
                return httpx.Response(404)
            self.images[channel_id].discard(image_type)
            return httpx.Response(204)

        user_item = re.fullmatch(r"/emby/Users/([^/]+)/Items/([^/]+)", path)
        if user_item and request.method == "GET":
            user_id, channel_id = user_item.groups()
            channel = self._channel(channel_id)
            if user_id != "user-1" or channel is None:
                return httpx.Response(404)
            return httpx.Response(200, json={**channel, "Number": channel.get("ChannelNumber")})

        item = re.fullmatch(r"/emby/Items/([^/]+)", path)
        if item and request.method == "POST":
            channel = self._channel(item.group(1))
            if channel is None or item.group(1) in self.fail_item_ids:
                return httpx.Response(500, text="Internal Server Error")
            channel["ChannelNumber"] = _body(request).get("ChannelNumber")
            return httpx.Response(204)

        if path == "/emby/LiveTv/ListingProviders" and request.method == "POST":
            listings_id = _body(request).get("ListingsId")
            if listings_id in self.providers:
                return httpx.Response(409, text="Provider already exists")
            self.providers.add(listings_id)
            return httpx.Response(200, json={"Id": f"provider-{listings_id}"})

        return httpx.Response(404)


class FakeChannelsDvr:
    """Unauthenticated station search."""

    def __init__(self):
        self.stations: list[dict] = []
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/status":
            return httpx.Response(200, json={"version": "2024.11.07"})
        if request.url.path.startswith("/tms/stations/"):
            return httpx.Response(200, json=self.stations)
        return httpx.Response(404)


class FakeServices:
    """Routes requests to the right fake by host."""

    def __init__(self):
        self.dispatcharr = FakeDispatcharr()
        self.emby = FakeEmby()
        self.channels_dvr = FakeChannelsDvr()

    def handler(self, request: httpx.Request) -> httpx.Response:
        host = request.url.host
        if host == "dispatcharr.test":
            return self.dispatcharr.handler(request)
        if host == "emby.test":
            return self.emby.handler(request)
        if host == "cdvr.test":
            return self.channels_dvr.handler(request)
        raise httpx.ConnectError(f"Unknown host {host}", request=request)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


def dispatcharr_descriptor(**overrides) -> ServiceDescriptor:
    values = {
        "name": "dispatcharr",
        "base_url": DISPATCHARR_URL,
        "enabled": True,
        "auth_kind": AuthKind.REFRESH_CAPABLE,
        "username": "admin",
        "password": "secret",
        "freshness_threshold": 30.0,
        "validate_path": "/api/core/version/",
        "refresh_path": "/api/accounts/token/refresh/",
        "auth_path": "/api/accounts/token/",
    }
    values.update(overrides)
    return ServiceDescriptor(**values)


def emby_descriptor(**overrides) -> ServiceDescriptor:
    values = {
        "name": "emby",
        "base_url": EMBY_URL,
        "enabled": True,
        "auth_kind": AuthKind.REAUTH_ONLY,
        "username": "admin",
        "password": "secret",
        "freshness_threshold": 30.0,
        "validate_path": "/emby/System/Info",
        "auth_path": "/emby/Users/AuthenticateByName",
    }
    values.update(overrides)
    return ServiceDescriptor(**values)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(tmp_path) -> CredentialStore:
    return CredentialStore(tmp_path / "cache")


@pytest.fixture
def services() -> FakeServices:
    return FakeServices()


@pytest.fixture
def http(services):
    client = httpx.Client(transport=services.transport())
    yield client
    client.close()
