from __future__ import annotations

from typing import Optional


class AstroVisionError(Exception):
    """Base exception for AstroVision errors."""


class PipelineError(AstroVisionError):
    """Hard failure: aborts the discovery pipeline and reaches the caller as-is."""

    stage = "pipeline"

    def __init__(self, message: str, *, stage: Optional[str] = None):
        super().__init__(message)
        if stage is not None:
            self.stage = stage


class SolverError(PipelineError):
    """Raised when the plate-solving service cannot be queried."""

    stage = "solve"


class AuthError(SolverError):
    """Raised when the solver rejects the API key."""

    stage = "login"


class UploadError(SolverError):
    """Raised when the image upload is rejected or fails in transport."""

    stage = "upload"


class SolveTimeoutError(SolverError):
    """Raised when polling exhausts its attempts without a calibration."""

    stage = "poll"


class SolverStateError(SolverError):
    """Raised for an operation that is illegal in the client's current state."""


class ReferenceFetchError(PipelineError):
    """Raised when the historical reference image cannot be retrieved."""

    stage = "reference"


class ComparisonError(AstroVisionError):
    """Soft failure inside normalization/scoring; the pipeline maps it to a zero score."""


class DecodeError(ComparisonError, ValueError):
    """Raised when input bytes are not a supported image."""


class DimensionMismatchError(ComparisonError, ValueError):
    """Raised when two images handed to the scorer differ in size."""


class ImageFetchError(ComparisonError):
    """Raised when an image URL handed to the normalizer cannot be fetched."""
