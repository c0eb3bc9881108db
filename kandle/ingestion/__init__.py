"""Tick ingestion pipeline."""

from kandle.ingestion.pipeline import IngestResult, TickIngestionPipeline

__all__ = ["IngestResult", "TickIngestionPipeline"]
