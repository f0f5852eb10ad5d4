"""Channels DVR direct station search.

Channels DVR exposes its guide station lookup without authentication, so it
runs through a session with NoAuthStrategy: the cascade is a no-op and no
credential is attached.
"""

import logging
from urllib.parse import quote

from stationsearch.session.executor import RequestExecutor
from stationsearch.session.types import FailureKind

logger = logging.getLogger(__name__)


class ChannelsDvrSearch:
    def __init__(self, executor: RequestExecutor):
        self._api = executor

    def search_stations(self, term: str) -> list[dict] | None:
        """Search guide stations by name or call sign.

        Returns:
            Station dicts, or None on failure
        """
        term = term.strip()
        if not term:
            logger.error("[CDVR] Search term is required")
            return None

        outcome = self._api.get(f"/tms/stations/{quote(term, safe='')}")
        if not outcome.success:
            if outcome.kind == FailureKind.NOT_FOUND:
                logger.error("[CDVR] API endpoint not found. Server may be outdated")
            else:
                logger.error("[CDVR] Station search failed: %s", outcome.error)
            return None

        data = outcome.json()
        if not isinstance(data, list):
            logger.error("[CDVR] Invalid JSON response from server")
            return None

        logger.info("[CDVR] Found %d stations for %r", len(data), term)
        return data

    def get_status(self) -> dict | None:
        outcome = self._api.get("/status")
        data = outcome.json() if outcome.success else None
        return data if isinstance(data, dict) else None
