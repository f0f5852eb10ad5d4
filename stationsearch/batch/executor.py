"""Batch update executor.

Drains the pending update queue through one API call per record:

    LOADED -> PREVIEWED -> CONFIRMED -> DRAINING -> CLEARED

A failed record is counted and reported but does not stop the drain; each
record is an independent remote change. After a completed drain the queue is
cleared regardless of failures and a summary is always emitted.
"""

import logging
import threading
from collections.abc import Callable
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from enum import Enum

from stationsearch.batch.queue import PendingUpdate, PendingUpdateQueue
from stationsearch.batch.sink import Sink
from stationsearch.session.types import RequestOutcome

logger = logging.getLogger(__name__)

DEFAULT_PREVIEW_LIMIT = 10


class BatchStage(str, Enum):
    LOADED = "loaded"
    PREVIEWED = "previewed"
    CONFIRMED = "confirmed"
    DRAINING = "draining"
    CLEARED = "cleared"
    # Terminal states for runs that never drained
    EMPTY = "empty"
    DECLINED = "declined"


@dataclass
class BatchResult:
    """Outcome of one executor run."""

    stage: BatchStage
    applied: int = 0
    failed: int = 0
    total: int = 0
    failed_records: list[PendingUpdate] = field(default_factory=list)
    cancelled: bool = False

    @property
    def processed(self) -> int:
        return self.applied + self.failed

    def summary(self) -> str:
        return f"applied: {self.applied}, failed: {self.failed}, total: {self.total}"


class BatchUpdateExecutor:
    """Preview, confirm and apply a queue of pending updates.

    Usage:
        executor = BatchUpdateExecutor(
            queue=PendingUpdateQueue("data/dispatcharr_matches.tsv"),
            apply_update=channels.apply_pending_update,
            sink=ConsoleSink(),
            confirm=lambda prompt: Confirm.ask(prompt),
            target_description="Dispatcharr at http://localhost:9191",
        )
        result = executor.run()
    """

    def __init__(
        self,
        queue: PendingUpdateQueue,
        apply_update: Callable[[PendingUpdate], RequestOutcome],
        sink: Sink,
        confirm: Callable[[str], bool],
        preview_limit: int = DEFAULT_PREVIEW_LIMIT,
        target_description: str | None = None,
        requeue_failed: bool = False,
    ):
        """Initialize the executor.

        Args:
            queue: Source of pending records
            apply_update: Performs the remote change for one record
            sink: Where progress and summary lines go
            confirm: Asks the user a yes/no question
            preview_limit: Rows shown before confirmation (default: 10)
            target_description: Shown in the confirmation block
            requeue_failed: Keep failed records queued instead of clearing
        """
        self._queue = queue
        self._apply_update = apply_update
        self._sink = sink
        self._confirm = confirm
        self._preview_limit = preview_limit
        self._target = target_description
        self._requeue_failed = requeue_failed
        self.stage: BatchStage | None = None

    def run(
        self,
        cancel: threading.Event | None = None,
        drain_scope: Callable[[], AbstractContextManager[threading.Event]] | None = None,
    ) -> BatchResult:
        """Run the whole flow.

        Args:
            cancel: When set, no further records are started. The record in
                flight finishes and the unprocessed remainder stays queued.
            drain_scope: Entered only around the drain, after confirmation;
                yields the cancel event to use (a Ctrl-C handler, say).
                Takes precedence over ``cancel``.
        """
        records = self._queue.load()
        self.stage = BatchStage.LOADED
        total = len(records)

        if total == 0:
            self._sink.warning("No pending updates found")
            self._sink.info("Run the matching workflow first to queue updates")
            logger.info("[BATCH] No pending updates in %s", self._queue.path)
            self.stage = BatchStage.EMPTY
            return BatchResult(stage=BatchStage.EMPTY)

        logger.info("[BATCH] Found %d pending updates", total)
        self._preview(records)
        self.stage = BatchStage.PREVIEWED

        prompt = f"Apply all {total} pending updates"
        if self._target:
            prompt += f" to {self._target}"
        if not self._confirm(prompt + "?"):
            self._sink.warning("Batch update cancelled")
            self._sink.info("Updates remain queued - you can apply them later")
            logger.info("[BATCH] Batch update declined by user")
            self.stage = BatchStage.DECLINED
            return BatchResult(stage=BatchStage.DECLINED, total=total)

        self.stage = BatchStage.CONFIRMED
        if drain_scope is None:
            return self._drain(records, cancel)
        with drain_scope() as scoped_cancel:
            return self._drain(records, scoped_cancel)

    def _preview(self, records: list[PendingUpdate]) -> None:
        total = len(records)
        self._sink.info(f"Found {total} pending updates")
        self._sink.info(f"{'ID':<8} {'Target':<25} {'Value':<12} {'Value Name':<20} Confidence")
        self._sink.info("-" * 80)

        for record in records[: self._preview_limit]:
            self._sink.info(
                f"{record.target_id:<8} {record.target_label[:25]:<25} "
                f"{record.value:<12} {record.value_label[:20]:<20} {record.confidence or ''}".rstrip()
            )

        if total > self._preview_limit:
            self._sink.info(f"... and {total - self._preview_limit} more")

    def _drain(
        self,
        records: list[PendingUpdate],
        cancel: threading.Event | None,
    ) -> BatchResult:
        self.stage = BatchStage.DRAINING
        total = len(records)
        result = BatchResult(stage=BatchStage.DRAINING, total=total)
        done = 0

        try:
            for index, record in enumerate(records, start=1):
                if cancel is not None and cancel.is_set():
                    result.cancelled = True
                    break

                percent = index * 100 // total
                self._sink.info(
                    f"[{percent:3d}%] ({index}/{total}) updating: {record.target_label} → {record.value}"
                )

                outcome = self._apply_update(record)
                done = index
                if outcome.success:
                    result.applied += 1
                    self._sink.success(f"updated: {record.target_label} → {record.value}")
                else:
                    result.failed += 1
                    result.failed_records.append(record)
                    self._sink.error(
                        f"failed: {record.target_label} (id: {record.target_id}) - {outcome.error}"
                    )
                    logger.warning(
                        "[BATCH] Update failed for %s (%s): %s",
                        record.target_id,
                        outcome.kind.value if outcome.kind else "unknown",
                        outcome.error,
                    )
        finally:
            # Records without an outcome stay queued
            self._finish(result, records[done:])
        return result

    def _finish(self, result: BatchResult, remaining: list[PendingUpdate]) -> None:
        keep = list(result.failed_records) if self._requeue_failed else []
        keep.extend(remaining)

        if keep:
            self._queue.replace(keep)
        else:
            self._queue.clear()
        result.stage = BatchStage.CLEARED
        self.stage = BatchStage.CLEARED

        if remaining:
            self._sink.warning(
                f"Interrupted - {len(remaining)} unprocessed updates left in the queue"
            )
        if self._requeue_failed and result.failed:
            self._sink.info(f"{result.failed} failed updates kept in the queue for retry")

        summary = result.summary()
        if result.failed:
            self._sink.warning(summary)
        else:
            self._sink.success(summary)
        logger.info("[BATCH] Batch update completed: %s", summary)
