"""Persistent credential storage.

One JSON document per service under the cache directory:

    {"access": "...", "refresh": "...", "obtained_at": "2025-06-07T12:00:00+00:00"}

Emby records carry "user_id" instead of "refresh".

Writes go to a temp file in the same directory and are moved into place
with os.replace, so a reader never sees a half-written document.
"""

import base64
import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from pathlib import Path

from stationsearch.exceptions import CredentialStoreCorruptError, PersistenceError

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class CredentialRecord:
    """An access/refresh token pair for one service."""

    access_token: str | None
    refresh_token: str | None = None
    obtained_at: datetime = field(default_factory=_utcnow)
    # Emby user the token was issued to
    user_id: str | None = None

    @property
    def is_empty(self) -> bool:
        """A record without an access token is the same as no credential."""
        return not self.access_token

    def with_access(self, access_token: str) -> "CredentialRecord":
        """Copy with only the access half replaced."""
        return replace(self, access_token=access_token, obtained_at=_utcnow())

    def to_dict(self) -> dict:
        data: dict = {"access": self.access_token}
        if self.refresh_token:
            data["refresh"] = self.refresh_token
        data["obtained_at"] = self.obtained_at.isoformat()
        if self.user_id:
            data["user_id"] = self.user_id
        return data


def token_expires_at(token: str | None) -> datetime | None:
    """Read the ``exp`` claim from a JWT access token.

    Returns None for tokens that are not JWTs (Emby keys, for example) or
    whose payload cannot be decoded.
    """
    if not token or token.count(".") != 2:
        return None

    payload = token.split(".")[1]
    payload += "=" * (-len(payload) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(payload))
        exp = claims.get("exp")
        if exp is None:
            return None
        return datetime.fromtimestamp(int(exp), tz=UTC)
    except (ValueError, TypeError, AttributeError, OverflowError, OSError):
        return None


class CredentialStore:
    """File-backed store of CredentialRecords keyed by service name."""

    def __init__(self, directory: Path | str):
        self._directory = Path(directory)
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @property
    def directory(self) -> Path:
        return self._directory

    def path_for(self, service: str) -> Path:
        return self._directory / f"{service}_tokens.json"

    def _lock_for(self, service: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(service)
            if lock is None:
                lock = threading.Lock()
                self._locks[service] = lock
            return lock

    def load(self, service: str) -> CredentialRecord | None:
        """Load the stored record for a service.

        Returns:
            The record, or None if nothing usable is stored

        Raises:
            CredentialStoreCorruptError: The file exists but is not valid JSON
        """
        path = self.path_for(service)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning("[SESSION] Could not read credentials for %s: %s", service, e)
            return None

        try:
            data = json.loads(raw)
        except ValueError as e:
            raise CredentialStoreCorruptError(f"Credential file {path} is not valid JSON") from e

        if not isinstance(data, dict):
            raise CredentialStoreCorruptError(f"Credential file {path} is not a JSON object")

        access = data.get("access")
        if not access:
            return None

        obtained_at = _parse_timestamp(data.get("obtained_at"))
        if obtained_at is None:
            # Documents written by older versions carry no timestamp
            obtained_at = datetime.fromtimestamp(path.stat().st_mtime, tz=UTC)

        return CredentialRecord(
            access_token=access,
            refresh_token=data.get("refresh") or None,
            obtained_at=obtained_at,
            user_id=data.get("user_id") or None,
        )

    def save(self, service: str, record: CredentialRecord) -> None:
        """Atomically persist a record.

        Raises:
            PersistenceError: The record could not be written
        """
        path = self.path_for(service)
        with self._lock_for(service):
            tmp_name = None
            try:
                self._directory.mkdir(parents=True, exist_ok=True)
                fd, tmp_name = tempfile.mkstemp(
                    dir=self._directory, prefix=f".{service}_tokens.", suffix=".tmp"
                )
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    json.dump(record.to_dict(), fh)
                    fh.flush()
                    os.fsync(fh.fileno())
                os.chmod(tmp_name, 0o600)
                os.replace(tmp_name, path)
                tmp_name = None
            except OSError as e:
                raise PersistenceError(f"Could not save credentials for {service}: {e}") from e
            finally:
                if tmp_name is not None:
                    try:
                        os.unlink(tmp_name)
                    except OSError:
                        pass

        logger.debug("[SESSION] Saved credentials for %s", service)

    def clear(self, service: str) -> None:
        """Remove the stored record for a service, if any."""
        with self._lock_for(service):
            try:
                self.path_for(service).unlink()
                logger.info("[SESSION] Removed cached credentials for %s", service)
            except FileNotFoundError:
                pass
            except OSError as e:
                raise PersistenceError(f"Could not remove credentials for {service}: {e}") from e


def _parse_timestamp(value: object) -> datetime | None:
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed
