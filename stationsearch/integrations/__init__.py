"""External service integrations (Dispatcharr, Emby, Channels DVR)."""

from stationsearch.integrations.channels_dvr import ChannelsDvrSearch
from stationsearch.integrations.dispatcharr import (
    DispatcharrChannel,
    DispatcharrChannels,
    find_missing_station_ids,
)
from stationsearch.integrations.emby import (
    ChannelSweepResult,
    EmbyChannel,
    EmbyLiveTv,
    find_channels_missing_listings,
)
from stationsearch.integrations.factory import ConnectionTestResult, IntegrationFactory

__all__ = [
    "ChannelSweepResult",
    "ChannelsDvrSearch",
    "ConnectionTestResult",
    "DispatcharrChannel",
    "DispatcharrChannels",
    "EmbyChannel",
    "EmbyLiveTv",
    "IntegrationFactory",
    "find_channels_missing_listings",
    "find_missing_station_ids",
]
