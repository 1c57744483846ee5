"""Exceptions raised at the few seams where the pipeline can fail loudly."""

from __future__ import annotations


class HeartLensError(Exception):
    """Base class for all HeartLens errors."""


class InferenceUnavailable(HeartLensError):
    """The quality model is missing, unreadable or failed to run."""


class FrameSourceError(HeartLensError):
    """The frame source could not be opened."""
