"""Pending update queue.

A flat file with one tab-separated row per queued change:

    target_id  target_label  value  value_label  confidence  [field]

The first five columns are the format written by the station-ID matching
workflow; the optional sixth names the target field.
"""

import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path

from stationsearch.exceptions import QueueFormatError

logger = logging.getLogger(__name__)

DEFAULT_FIELD = "tvc_guide_stationid"


def _clean(value: str) -> str:
    return value.replace("\t", " ").replace("\r", " ").replace("\n", " ")


@dataclass(frozen=True)
class PendingUpdate:
    """One queued change to a remote entity."""

    target_id: str
    target_label: str
    value: str
    value_label: str = ""
    confidence: str | None = None
    field: str = DEFAULT_FIELD

    def to_row(self) -> str:
        columns = [
            self.target_id,
            self.target_label,
            self.value,
            self.value_label,
            self.confidence or "",
        ]
        if self.field != DEFAULT_FIELD:
            columns.append(self.field)
        return "\t".join(_clean(str(c)) for c in columns)

    @classmethod
    def from_row(cls, row: str, line_number: int = 0) -> "PendingUpdate":
        columns = row.rstrip("\r\n").split("\t")
        if len(columns) < 3 or not columns[0].strip() or not columns[2].strip():
            raise QueueFormatError(f"Line {line_number}: expected target id and value, got {row!r}")

        columns += [""] * (6 - len(columns))
        return cls(
            target_id=columns[0].strip(),
            target_label=columns[1],
            value=columns[2].strip(),
            value_label=columns[3],
            confidence=columns[4] or None,
            field=columns[5].strip() or DEFAULT_FIELD,
        )


class PendingUpdateQueue:
    """File-backed, ordered list of PendingUpdate records."""

    def __init__(self, path: Path | str):
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> list[PendingUpdate]:
        """Read all records in queue order. Missing file is an empty queue."""
        try:
            text = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []

        records = []
        # Rows end in "\n" only; labels may hold other Unicode line breaks
        for line_number, row in enumerate(text.split("\n"), start=1):
            if not row.strip():
                continue
            records.append(PendingUpdate.from_row(row, line_number))
        return records

    def count(self) -> int:
        return len(self.load())

    def is_empty(self) -> bool:
        return self.count() == 0

    def append(self, record: PendingUpdate) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._path.open("a", encoding="utf-8") as fh:
            fh.write(record.to_row() + "\n")

    def replace(self, records: list[PendingUpdate]) -> None:
        """Atomically rewrite the queue with the given records."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self._path.parent, prefix=f".{self._path.name}.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                for record in records:
                    fh.write(record.to_row() + "\n")
            os.replace(tmp_name, self._path)
        except OSError:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise

    def clear(self) -> None:
        """Empty the queue."""
        self.replace([])
        logger.debug("[BATCH] Cleared queue %s", self._path)
