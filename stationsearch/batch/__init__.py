"""Batch application of queued updates."""

from stationsearch.batch.executor import BatchResult, BatchStage, BatchUpdateExecutor
from stationsearch.batch.queue import PendingUpdate, PendingUpdateQueue
from stationsearch.batch.sink import ConsoleSink, ListSink, LoggingSink, Sink

__all__ = [
    "BatchResult",
    "BatchStage",
    "BatchUpdateExecutor",
    "ConsoleSink",
    "ListSink",
    "LoggingSink",
    "PendingUpdate",
    "PendingUpdateQueue",
    "Sink",
]
