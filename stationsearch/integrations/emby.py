"""Emby Live TV operations.

Emby has no refresh token; an expired access token is replaced by logging in
again (ReauthOnlyStrategy). Every call goes through the RequestExecutor.

The channel sweeps (logo deletion, channel number clearing) touch every
Live TV channel one request at a time and report per-channel counts.
"""

import logging
import re
from dataclasses import dataclass

from stationsearch.batch.queue import PendingUpdate
from stationsearch.session.executor import RequestExecutor
from stationsearch.session.types import FailureKind, RequestOutcome

logger = logging.getLogger(__name__)

SYSTEM_INFO_ENDPOINT = "/emby/System/Info"
CHANNELS_ENDPOINT = "/emby/LiveTv/Manage/Channels"
LIVE_TV_CHANNELS_ENDPOINT = "/emby/LiveTv/Channels"
LISTING_PROVIDERS_ENDPOINT = "/emby/LiveTv/ListingProviders"
LISTING_PROVIDER_FIELD = "listing_provider"
DEFAULT_PROVIDER_TYPE = "embygn"
LOGO_IMAGE_TYPES = ("Primary", "LogoLight", "LogoLightColor")

# Station IDs embedded at the end of a ManagementId: "..._10021"
_STATION_ID_RE = re.compile(r"^\d{4,10}$")


@dataclass
class EmbyChannel:
    id: str
    name: str
    number: str | None = None
    management_id: str | None = None
    listings_id: str | None = None

    @classmethod
    def from_api(cls, data: dict) -> "EmbyChannel":
        listings_id = data.get("ListingsId")
        if listings_id in ("", "null"):
            listings_id = None
        return cls(
            id=str(data.get("Id") or ""),
            name=data.get("Name") or "Unknown",
            number=data.get("ChannelNumber"),
            management_id=data.get("ManagementId"),
            listings_id=listings_id,
        )

    @property
    def extracted_station_id(self) -> str | None:
        """Station ID after the last underscore of the ManagementId."""
        if not self.management_id:
            return None
        candidate = self.management_id.rsplit("_", 1)[-1]
        return candidate if _STATION_ID_RE.match(candidate) else None


@dataclass
class ChannelSweepResult:
    """Counts for an operation applied to every Live TV channel."""

    total: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0

    def summary(self) -> str:
        return (
            f"updated: {self.updated}, skipped: {self.skipped}, "
            f"failed: {self.failed}, total: {self.total}"
        )


class EmbyLiveTv:
    """Live TV channel and listing-provider operations."""

    def __init__(self, executor: RequestExecutor):
        self._api = executor

    def get_server_info(self) -> dict | None:
        outcome = self._api.get(SYSTEM_INFO_ENDPOINT)
        data = outcome.json() if outcome.success else None
        if not isinstance(data, dict):
            logger.error("[EMBY] Failed to get server information")
            return None
        return data

    def list_channels(self) -> list[EmbyChannel] | None:
        """All Live TV channels (Emby returns either an array or {"Items": [...]})."""
        outcome = self._api.get(
            CHANNELS_ENDPOINT,
            params={"Fields": "ManagementId,ListingsId,Name,ChannelNumber,Id"},
        )
        if not outcome.success:
            logger.error("[EMBY] Failed to get channel data: %s", outcome.error)
            return None

        data = outcome.json()
        if isinstance(data, dict) and isinstance(data.get("Items"), list):
            data = data["Items"]
        if not isinstance(data, list):
            logger.error("[EMBY] Unexpected channel response structure")
            return None

        logger.info("[EMBY] Retrieved %d Live TV channels", len(data))
        return [EmbyChannel.from_api(item) for item in data if isinstance(item, dict)]

    def add_listing_provider(
        self,
        listings_id: str,
        country: str,
        lineup_name: str | None = None,
        provider_type: str = DEFAULT_PROVIDER_TYPE,
    ) -> RequestOutcome:
        """Register a guide lineup with Emby.

        A 409 (provider already exists) counts as success.
        """
        payload = {
            "ListingsId": listings_id,
            "Type": provider_type,
            "Country": country,
            "Name": lineup_name or listings_id,
        }
        logger.debug("[EMBY] Adding listing provider %s (%s)", listings_id, country)
        outcome = self._api.post(LISTING_PROVIDERS_ENDPOINT, payload)

        if outcome.status_code == 409:
            logger.debug("[EMBY] Listing provider already exists: %s", listings_id)
            return RequestOutcome.ok(409, outcome.body)
        return outcome

    def apply_pending_update(self, record: PendingUpdate) -> RequestOutcome:
        """Batch hook: target_id is the lineup id, value the country code."""
        return self.add_listing_provider(
            listings_id=record.target_id,
            country=record.value,
            lineup_name=record.target_label or None,
        )

    # -------------------------------------------------------------------------
    # Per-channel sweeps
    # -------------------------------------------------------------------------

    @property
    def user_id(self) -> str | None:
        """Emby user the current session authenticated as."""
        record = self._api.session.credential
        return record.user_id if record else None

    def delete_channel_logos(self, channel_id: str) -> bool:
        """Delete every logo image type on one channel.

        A 404 only means the channel had no image of that type.
        """
        complete = True
        for image_type in LOGO_IMAGE_TYPES:
            outcome = self._api.delete(f"/emby/Items/{channel_id}/Images/{image_type}")
            if not outcome.success and outcome.kind != FailureKind.NOT_FOUND:
                complete = False
        return complete

    def delete_all_logos(self) -> ChannelSweepResult | None:
        """Delete logos from every Live TV channel so Emby downloads them again.

        Returns:
            Counts per channel, or None if the channel list could not be read
        """
        outcome = self._api.get(LIVE_TV_CHANNELS_ENDPOINT)
        data = outcome.json() if outcome.success else None
        if isinstance(data, dict):
            data = data.get("Items")
        if not isinstance(data, list):
            logger.error("[EMBY] Failed to retrieve channels for logo deletion")
            return None

        result = ChannelSweepResult(total=len(data))
        for item in data:
            channel = EmbyChannel.from_api(item) if isinstance(item, dict) else None
            if channel is None or not channel.id:
                result.skipped += 1
                continue
            if self.delete_channel_logos(channel.id):
                result.updated += 1
            else:
                result.failed += 1
                logger.warning("[EMBY] Logo deletion incomplete for %s", channel.name)

        logger.info("[EMBY] Logo deletion complete: %s", result.summary())
        return result

    def clear_channel_number(self, channel_id: str, user_id: str) -> RequestOutcome:
        """Blank the channel number on one channel.

        Emby replaces the whole item on update, so the full item is read first.
        """
        outcome = self._api.get(f"/emby/Users/{user_id}/Items/{channel_id}")
        if not outcome.success:
            return outcome

        item = outcome.json()
        if not isinstance(item, dict) or not item.get("Id"):
            return RequestOutcome.failure(
                FailureKind.INVALID_RESPONSE,
                f"No item data for channel {channel_id}",
                status_code=outcome.status_code,
                body=outcome.body,
            )

        item.update({"Number": "", "ChannelNumber": ""})
        return self._api.post(f"/emby/Items/{channel_id}", item)

    def clear_all_channel_numbers(self) -> ChannelSweepResult | None:
        """Blank the channel number on every Live TV channel that has one.

        Returns:
            Counts per channel, or None if channels or the user id are unavailable
        """
        channels = self.list_channels()
        if channels is None:
            return None

        user_id = self.user_id
        if not user_id:
            logger.error("[EMBY] User ID not found - re-authenticate to clear channel numbers")
            return None

        result = ChannelSweepResult(total=len(channels))
        for channel in channels:
            if not channel.number:
                result.skipped += 1
                continue
            outcome = self.clear_channel_number(channel.id, user_id)
            if outcome.success:
                result.updated += 1
            else:
                result.failed += 1
                logger.warning(
                    "[EMBY] Failed to clear channel number on %s: %s", channel.name, outcome.error
                )

        logger.info("[EMBY] Channel number clearing complete: %s", result.summary())
        return result


def find_channels_missing_listings(channels: list[EmbyChannel]) -> list[EmbyChannel]:
    """Channels without a ListingsId whose ManagementId carries a station ID."""
    missing = [c for c in channels if not c.listings_id]
    extracted = [c for c in missing if c.extracted_station_id]
    logger.info(
        "[EMBY] Station ID extraction: %d of %d channels missing ListingsId",
        len(extracted),
        len(missing),
    )
    return extracted
