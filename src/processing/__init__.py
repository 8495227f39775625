"""Queue consumption: event parsing, per-item processing, the worker pool and ingestion."""

from processing.events import MalformedEventError, TriggerEvent, parse_event
from processing.ingest import ingest_event
from processing.processor import EventProcessor, ProcessOutcome
from processing.worker import WorkerPool

__all__ = [
    "EventProcessor",
    "MalformedEventError",
    "ProcessOutcome",
    "TriggerEvent",
    "WorkerPool",
    "ingest_event",
    "parse_event",
]
