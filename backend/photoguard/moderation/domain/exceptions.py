"""Exceptions raised by the moderation pipeline."""

from __future__ import annotations


class ModerationError(Exception):
    """Base class for moderation pipeline errors."""

    detail: str = "moderation_error"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.detail)
        if detail:
            self.detail = detail


class InvalidModerationConfig(ModerationError, ValueError):
    """Raised when a moderation config or override is malformed."""

    detail = "invalid_moderation_config"


class PhotoNotFoundError(ModerationError):
    """Raised when the photo targeted by a scan no longer exists."""

    detail = "photo_not_found"

    def __init__(self, photo_id: str) -> None:
        super().__init__(f"Photo {photo_id} not found")
        self.photo_id = photo_id


class ClassifierError(ModerationError):
    """Raised by label classifier adapters when the provider call fails."""

    detail = "classifier_error"


class QueueError(ModerationError):
    """Raised when a queue backend is asked for an impossible transition."""

    detail = "queue_error"


class PipelineNotRunning(ModerationError):
    """Raised when an operation requires a started pipeline."""

    detail = "pipeline_not_running"
