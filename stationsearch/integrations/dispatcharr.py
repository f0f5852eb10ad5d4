"""Dispatcharr channel, group and logo operations.

All calls go through a RequestExecutor bound to the Dispatcharr session, so
authentication (validate -> refresh -> re-login) is handled before each
request.
"""

import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlparse

from stationsearch.batch.queue import PendingUpdate
from stationsearch.session.executor import RequestExecutor
from stationsearch.session.types import FailureKind, RequestOutcome

logger = logging.getLogger(__name__)

CHANNELS_ENDPOINT = "/api/channels/channels/"
GROUPS_ENDPOINT = "/api/channels/groups/"
LOGOS_ENDPOINT = "/api/channels/logos/"
VERSION_ENDPOINT = "/api/core/version/"
STATION_ID_FIELD = "tvc_guide_stationid"


@dataclass
class DispatcharrChannel:
    """The channel fields station matching cares about."""

    id: int
    name: str
    channel_number: float | None = None
    station_id: str | None = None
    tvg_id: str | None = None

    @classmethod
    def from_api(cls, data: dict) -> "DispatcharrChannel":
        return cls(
            id=data["id"],
            name=data.get("name") or "",
            channel_number=data.get("channel_number"),
            station_id=data.get(STATION_ID_FIELD) or None,
            tvg_id=data.get("tvg_id") or None,
        )


class DispatcharrChannels:
    """Channel, group and logo operations.

    Usage:
        channels = DispatcharrChannels(executor)
        outcome = channels.update_station_id(12, "10021")
    """

    def __init__(self, executor: RequestExecutor):
        self._api = executor
        # Logo source URL -> Dispatcharr logo id
        self._logo_ids: dict[str, int] = {}

    def get_version(self) -> dict | None:
        """Server version info, or None on failure."""
        outcome = self._api.get(VERSION_ENDPOINT)
        data = outcome.json() if outcome.success else None
        if not isinstance(data, dict):
            logger.error("[DISPATCHARR] Failed to get version information")
            return None
        return data

    def _get_all(self, endpoint: str, what: str, params: dict | None = None) -> list[dict] | None:
        """GET a collection, following pagination when the server uses it.

        Returns:
            All items, or None if a page could not be fetched
        """
        items: list[dict] = []
        next_page: str | None = endpoint

        while next_page:
            outcome = self._api.get(next_page, params=params)
            if not outcome.success:
                logger.error("[DISPATCHARR] Failed to fetch %s: %s", what, outcome.error)
                return None

            data = outcome.json()
            if isinstance(data, list):
                items.extend(data)
                next_page = None
            elif isinstance(data, dict) and "results" in data:
                items.extend(data["results"])
                next_page = _relative_next(data.get("next"))
                # The next URL already carries the query string
                params = None
            else:
                logger.error("[DISPATCHARR] Unexpected %s response", what)
                return None

        logger.info("[DISPATCHARR] Retrieved %d %s", len(items), what)
        return items

    def list_channels(self, search: str | None = None) -> list[DispatcharrChannel] | None:
        """Fetch all channels, or None on failure."""
        params = {"search": search} if search else None
        items = self._get_all(CHANNELS_ENDPOINT, "channels", params)
        if items is None:
            return None
        return [DispatcharrChannel.from_api(item) for item in items if "id" in item]

    def get_channel(self, channel_id: int | str) -> DispatcharrChannel | None:
        outcome = self._api.get(f"{CHANNELS_ENDPOINT}{channel_id}/")
        data = outcome.json() if outcome.success else None
        if not isinstance(data, dict) or str(data.get("id")) != str(channel_id):
            logger.error("[DISPATCHARR] Failed to fetch channel %s", channel_id)
            return None
        return DispatcharrChannel.from_api(data)

    def update_channel(self, channel_id: int | str, data: dict[str, Any]) -> RequestOutcome:
        """PATCH a channel and verify the server echoed the same id."""
        outcome = self._api.patch(f"{CHANNELS_ENDPOINT}{channel_id}/", data)
        if not outcome.success:
            return outcome

        body = outcome.json()
        if not isinstance(body, dict) or str(body.get("id")) != str(channel_id):
            logger.error("[DISPATCHARR] Channel update verification failed for %s", channel_id)
            return RequestOutcome.failure(
                FailureKind.INVALID_RESPONSE,
                f"Channel update verification failed for channel {channel_id}",
                status_code=outcome.status_code,
                body=outcome.body,
            )
        logger.info("[DISPATCHARR] Updated channel %s", channel_id)
        return outcome

    def update_station_id(self, channel_id: int | str, station_id: str) -> RequestOutcome:
        """Set the guide station ID on a channel."""
        outcome = self._api.patch(
            f"{CHANNELS_ENDPOINT}{channel_id}/",
            {STATION_ID_FIELD: station_id},
        )
        if not outcome.success:
            return outcome

        body = outcome.json()
        if not isinstance(body, dict) or str(body.get(STATION_ID_FIELD)) != str(station_id):
            logger.error("[DISPATCHARR] Station ID update verification failed for %s", channel_id)
            return RequestOutcome.failure(
                FailureKind.INVALID_RESPONSE,
                "Station ID update verification failed",
                status_code=outcome.status_code,
                body=outcome.body,
            )
        logger.info("[DISPATCHARR] Channel %s station ID set to %s", channel_id, station_id)
        return outcome

    def apply_pending_update(self, record: PendingUpdate) -> RequestOutcome:
        """Batch hook: apply one queued change."""
        if record.field == STATION_ID_FIELD:
            return self.update_station_id(record.target_id, record.value)
        return self.update_channel(record.target_id, {record.field: record.value})

    # -------------------------------------------------------------------------
    # Groups
    # -------------------------------------------------------------------------

    def get_groups(self) -> list[dict] | None:
        """All channel groups, or None on failure."""
        return self._get_all(GROUPS_ENDPOINT, "channel groups")

    # -------------------------------------------------------------------------
    # Logos
    # -------------------------------------------------------------------------

    def list_logos(self) -> list[dict] | None:
        return self._get_all(LOGOS_ENDPOINT, "logos")

    def find_logo(self, logo_url: str) -> int | None:
        """ID of an existing logo registered with this source URL."""
        if not logo_url:
            return None
        if logo_url in self._logo_ids:
            return self._logo_ids[logo_url]

        for logo in self.list_logos() or []:
            if logo.get("url") == logo_url and logo.get("id") is not None:
                logger.info("[DISPATCHARR] Found existing logo %s for %s", logo["id"], logo_url)
                self._logo_ids[logo_url] = logo["id"]
                return logo["id"]
        return None

    def upload_logo(self, name: str, logo_url: str) -> RequestOutcome:
        """Register a logo by URL. The response must carry the new id."""
        if not name or not logo_url:
            raise ValueError("Logo name and URL are required")

        outcome = self._api.post(LOGOS_ENDPOINT, {"name": name, "url": logo_url})
        if not outcome.success:
            return outcome

        body = outcome.json()
        if not isinstance(body, dict) or body.get("id") is None:
            logger.error("[DISPATCHARR] Logo upload verification failed - no ID returned")
            return RequestOutcome.failure(
                FailureKind.INVALID_RESPONSE,
                f"Logo upload for {name} returned no ID",
                status_code=outcome.status_code,
                body=outcome.body,
            )

        logger.info("[DISPATCHARR] Uploaded logo for %s (ID: %s)", name, body["id"])
        self._logo_ids[logo_url] = body["id"]
        return outcome

    def ensure_logo(self, name: str, logo_url: str) -> int | None:
        """Reuse the logo with this URL, uploading it first if needed."""
        existing = self.find_logo(logo_url)
        if existing is not None:
            return existing

        outcome = self.upload_logo(name, logo_url)
        return outcome.json()["id"] if outcome.success else None

    def delete_logo(self, logo_id: int | str) -> RequestOutcome:
        outcome = self._api.delete(f"{LOGOS_ENDPOINT}{logo_id}/")
        if outcome.success:
            logger.info("[DISPATCHARR] Deleted logo %s", logo_id)
            self._logo_ids = {
                url: cached for url, cached in self._logo_ids.items() if str(cached) != str(logo_id)
            }
        return outcome


def find_missing_station_ids(channels: list[DispatcharrChannel]) -> list[DispatcharrChannel]:
    """Channels with no guide station ID, sorted by channel number."""
    missing = [c for c in channels if not c.station_id]
    return sorted(
        missing,
        key=lambda c: (c.channel_number is None, c.channel_number or 0, c.name.lower()),
    )


def _relative_next(next_url: str | None) -> str | None:
    """Turn an absolute pagination URL into a path+query."""
    if not next_url:
        return None
    if next_url.startswith("http"):
        parsed = urlparse(next_url)
        return f"{parsed.path}?{parsed.query}" if parsed.query else parsed.path
    return next_url
