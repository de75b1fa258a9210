"""Interfaces for the label classifiers used by the moderation service."""

from __future__ import annotations

from typing import Protocol, Sequence

from photoguard.moderation.domain.policy import Label


class LabelClassifier(Protocol):
    """Label detection interface for dependency injection.

    ``min_confidence_percent`` is on the provider's 0-100 scale; returned
    label confidences are fractions in ``[0, 1]``. Failures raise
    :class:`~photoguard.moderation.domain.exceptions.ClassifierError`.
    """

    @property
    def available(self) -> bool:
        ...

    async def detect_labels(self, image_ref: str, min_confidence_percent: float) -> Sequence[Label]:
        ...


class UnavailableClassifier(LabelClassifier):
    """Stand-in used when no provider credentials are configured."""

    @property
    def available(self) -> bool:
        return False

    async def detect_labels(self, image_ref: str, min_confidence_percent: float) -> Sequence[Label]:  # noqa: ARG002 - interface parity
        return []
