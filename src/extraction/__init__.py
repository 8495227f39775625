"""Natural-language extraction of calendar events, tasks and bills from message text."""

from extraction.service import ExtractionService, extract, partition_by_confidence
from extraction.types import ExtractedEntity, HintType

__all__ = [
    "ExtractedEntity",
    "ExtractionService",
    "HintType",
    "extract",
    "partition_by_confidence",
]
