"""Application settings.

Settings live in an env-style file (``data/globalstationsearch.env`` by
default, ``STATIONSEARCH_CONFIG`` overrides the location):

    DISPATCHARR_ENABLED="true"
    DISPATCHARR_URL="http://localhost:9191"
    DISPATCHARR_USERNAME="admin"
    DISPATCHARR_PASSWORD="secret"

Process environment variables take precedence over the file. Settings are
organized into logical groups for easier management.
"""

import logging
import os
import re
import threading
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import dotenv_values, set_key

from stationsearch.exceptions import ConfigurationError
from stationsearch.session.types import AuthKind, ServiceDescriptor

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("data/globalstationsearch.env")

URL_KEYS = {"DISPATCHARR_URL", "EMBY_URL", "CHANNELS_URL"}
SECRET_KEYS = {"DISPATCHARR_PASSWORD", "EMBY_PASSWORD"}

# Service names used for descriptors, token files and log prefixes
DISPATCHARR = "dispatcharr"
EMBY = "emby"
CHANNELS_DVR = "channels_dvr"
SERVICES = (DISPATCHARR, EMBY, CHANNELS_DVR)


@dataclass
class DispatcharrSettings:
    """Dispatcharr integration settings."""

    enabled: bool = False
    url: str | None = None
    username: str | None = None
    password: str | None = field(default=None, repr=False)
    freshness_threshold: int = 30


@dataclass
class EmbySettings:
    """Emby integration settings."""

    enabled: bool = False
    url: str | None = None
    username: str | None = None
    password: str | None = field(default=None, repr=False)
    freshness_threshold: int = 30


@dataclass
class ChannelsDvrSettings:
    """Channels DVR server (direct API search)."""

    url: str | None = None

    @property
    def enabled(self) -> bool:
        return bool(self.url)


@dataclass
class APISettings:
    """HTTP behavior settings."""

    connect_timeout: float = 10.0
    timeout: float = 30.0
    max_retries: int = 2


@dataclass
class PathSettings:
    """Where data files live."""

    data_dir: Path = Path("data")
    cache_dir: Path = Path("data/cache")
    dispatcharr_matches: Path = Path("data/cache/dispatcharr_matches.tsv")
    emby_pending: Path = Path("data/cache/emby_pending_listings.tsv")
    log_file: Path = Path("data/logs/stationsearch.log")


@dataclass
class AllSettings:
    """Complete application settings."""

    dispatcharr: DispatcharrSettings = field(default_factory=DispatcharrSettings)
    emby: EmbySettings = field(default_factory=EmbySettings)
    channels_dvr: ChannelsDvrSettings = field(default_factory=ChannelsDvrSettings)
    api: APISettings = field(default_factory=APISettings)
    paths: PathSettings = field(default_factory=PathSettings)


# =============================================================================
# PARSING
# =============================================================================


def _bool(value: str | None, default: bool = False) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _int(value: str | None, default: int) -> int:
    try:
        return int(value) if value not in (None, "") else default
    except ValueError:
        logger.warning("Invalid integer setting %r, using %d", value, default)
        return default


def _float(value: str | None, default: float) -> float:
    try:
        return float(value) if value not in (None, "") else default
    except ValueError:
        logger.warning("Invalid number setting %r, using %s", value, default)
        return default


def _str(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


_KNOWN_KEYS = [
    "DISPATCHARR_ENABLED",
    "DISPATCHARR_URL",
    "DISPATCHARR_USERNAME",
    "DISPATCHARR_PASSWORD",
    "DISPATCHARR_TOKEN_FRESHNESS_THRESHOLD",
    "EMBY_ENABLED",
    "EMBY_URL",
    "EMBY_USERNAME",
    "EMBY_PASSWORD",
    "EMBY_TOKEN_CHECK_INTERVAL",
    "CHANNELS_URL",
    "API_TIMEOUT",
    "API_MAX_TIME",
    "API_MAX_RETRIES",
    "DATA_DIR",
    "CACHE_DIR",
    "DISPATCHARR_MATCHES",
    "EMBY_PENDING_LISTINGS",
    "LOG_FILE",
]


def config_path(path: Path | str | None = None) -> Path:
    """Resolve the settings file location."""
    if path:
        return Path(path)
    env_path = os.environ.get("STATIONSEARCH_CONFIG")
    return Path(env_path) if env_path else DEFAULT_CONFIG_PATH


def read_values(path: Path | str | None = None) -> dict[str, str | None]:
    """Raw key/value pairs from the settings file overlaid with the environment."""
    resolved = config_path(path)
    values: dict[str, str | None] = {}
    if resolved.exists():
        values.update(dotenv_values(resolved))
    for key in list(values) + _KNOWN_KEYS:
        if key in os.environ:
            values[key] = os.environ[key]
    return values


def parse_settings(values: dict[str, str | None]) -> AllSettings:
    """Build AllSettings from raw key/value pairs."""
    data_dir = Path(values.get("DATA_DIR") or "data")
    cache_dir = Path(values.get("CACHE_DIR") or data_dir / "cache")

    return AllSettings(
        dispatcharr=DispatcharrSettings(
            enabled=_bool(values.get("DISPATCHARR_ENABLED")),
            url=_str(values.get("DISPATCHARR_URL")),
            username=_str(values.get("DISPATCHARR_USERNAME")),
            password=values.get("DISPATCHARR_PASSWORD") or None,
            freshness_threshold=_int(values.get("DISPATCHARR_TOKEN_FRESHNESS_THRESHOLD"), 30),
        ),
        emby=EmbySettings(
            enabled=_bool(values.get("EMBY_ENABLED")),
            url=_str(values.get("EMBY_URL")),
            username=_str(values.get("EMBY_USERNAME")),
            password=values.get("EMBY_PASSWORD") or None,
            freshness_threshold=_int(values.get("EMBY_TOKEN_CHECK_INTERVAL"), 30),
        ),
        channels_dvr=ChannelsDvrSettings(url=_str(values.get("CHANNELS_URL"))),
        api=APISettings(
            connect_timeout=_float(values.get("API_TIMEOUT"), 10.0),
            timeout=_float(values.get("API_MAX_TIME"), 30.0),
            max_retries=_int(values.get("API_MAX_RETRIES"), 2),
        ),
        paths=PathSettings(
            data_dir=data_dir,
            cache_dir=cache_dir,
            dispatcharr_matches=Path(
                values.get("DISPATCHARR_MATCHES") or cache_dir / "dispatcharr_matches.tsv"
            ),
            emby_pending=Path(
                values.get("EMBY_PENDING_LISTINGS") or cache_dir / "emby_pending_listings.tsv"
            ),
            log_file=Path(values.get("LOG_FILE") or data_dir / "logs" / "stationsearch.log"),
        ),
    )


def load_settings(path: Path | str | None = None) -> AllSettings:
    """Load all settings from the settings file and environment."""
    return parse_settings(read_values(path))


# =============================================================================
# UPDATE OPERATIONS
# =============================================================================


def save_setting(key: str, value: str, path: Path | str | None = None) -> None:
    """Persist a single setting.

    Raises:
        ConfigurationError: Invalid key or value
    """
    if not key or not re.fullmatch(r"[A-Z][A-Z0-9_]*", key):
        raise ConfigurationError(f"Invalid setting name: {key!r}")

    if key in URL_KEYS and value and not re.match(r"^https?://", value):
        raise ConfigurationError(f"Invalid URL format: {value}")

    if key.endswith("_ENABLED") and value not in ("true", "false"):
        raise ConfigurationError(f"{key} must be 'true' or 'false'")

    resolved = config_path(path)
    resolved.parent.mkdir(parents=True, exist_ok=True)
    resolved.touch(exist_ok=True)
    set_key(str(resolved), key, value, quote_mode="always")

    shown = "***" if key in SECRET_KEYS else value
    logger.info("Saved setting %s=%s", key, shown)


# =============================================================================
# SETTINGS PROVIDER
# =============================================================================


class SettingsProvider:
    """Read-only view of the settings file that notices external edits.

    Each call re-checks the file's mtime and reloads when it changed, so a
    session manager holding a descriptor callable sees configuration changes
    on its next use.
    """

    def __init__(self, path: Path | str | None = None):
        self._path = config_path(path)
        self._lock = threading.Lock()
        self._mtime: int | None = None
        self._settings = AllSettings()
        self._loaded = False

    @property
    def path(self) -> Path:
        return self._path

    def _file_mtime(self) -> int | None:
        try:
            return self._path.stat().st_mtime_ns
        except FileNotFoundError:
            return None

    @property
    def settings(self) -> AllSettings:
        with self._lock:
            mtime = self._file_mtime()
            if not self._loaded or mtime != self._mtime:
                if self._loaded:
                    logger.info("Settings file changed, reloading %s", self._path)
                self._settings = load_settings(self._path)
                self._mtime = mtime
                self._loaded = True
            return self._settings

    def save(self, key: str, value: str) -> None:
        save_setting(key, value, self._path)

    def descriptor(self, service: str) -> ServiceDescriptor:
        """Build the ServiceDescriptor for one integration."""
        settings = self.settings

        if service == DISPATCHARR:
            d = settings.dispatcharr
            return ServiceDescriptor(
                name=DISPATCHARR,
                base_url=d.url,
                enabled=d.enabled,
                auth_kind=AuthKind.REFRESH_CAPABLE,
                username=d.username,
                password=d.password,
                freshness_threshold=d.freshness_threshold,
                validate_path="/api/core/version/",
                refresh_path="/api/accounts/token/refresh/",
                auth_path="/api/accounts/token/",
            )

        if service == EMBY:
            e = settings.emby
            return ServiceDescriptor(
                name=EMBY,
                base_url=e.url,
                enabled=e.enabled,
                auth_kind=AuthKind.REAUTH_ONLY,
                username=e.username,
                password=e.password,
                freshness_threshold=e.freshness_threshold,
                validate_path="/emby/System/Info",
                auth_path="/emby/Users/AuthenticateByName",
            )

        if service == CHANNELS_DVR:
            c = settings.channels_dvr
            return ServiceDescriptor(
                name=CHANNELS_DVR,
                base_url=c.url,
                enabled=c.enabled,
                auth_kind=AuthKind.NONE,
                validate_path="/status",
            )

        raise ConfigurationError(f"Unknown service: {service}")
