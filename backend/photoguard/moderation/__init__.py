"""Moderation package integration helpers exposed to the application."""

from photoguard.moderation.api import router
from photoguard.moderation.pipeline import ContentScanningPipeline, build_pipeline

__all__ = ["router", "ContentScanningPipeline", "build_pipeline"]
