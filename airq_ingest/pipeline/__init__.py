"""Pipeline de ingesta compartido e idempotencia."""

from .dedup import DedupGuard, dedup_key_for
from .ingestion import IngestionPipeline, IngestOutcome

__all__ = ["DedupGuard", "IngestOutcome", "IngestionPipeline", "dedup_key_for"]
