"""Watermark-driven incremental ingestion of numbered items into PDF artifacts."""

from .sequencer import IngestionSequencer, RunSummary
from .watermark import Watermark, WatermarkStore

__all__ = ["IngestionSequencer", "RunSummary", "Watermark", "WatermarkStore"]
