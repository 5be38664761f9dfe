"""
Exception hierarchy for the thumbnail pipeline.

Client-level errors describe what the generation service returned.
Stage-level errors wrap them with the stage that failed and the category
chosen by the failure classifier. Contract errors signal a caller bug.
"""

from typing import Any, Optional


class ThumbcraftError(Exception):
    """Base class for every error raised by this package."""
    pass


class EncodingError(ThumbcraftError):
    """The uploaded file could not be read or decoded as an accepted image."""
    pass


# --- Generation client errors ---

class GenerationError(ThumbcraftError):
    """Base class for failed or degenerate responses from the generation service."""

    def __init__(self, message: str, finish_reason: Optional[str] = None, response_text: Optional[str] = None):
        super().__init__(message)
        self.finish_reason = finish_reason
        self.response_text = response_text


class StructuredOutputError(GenerationError):
    """Structured output could not be parsed or is missing required fields."""
    pass


class NoImageProducedError(GenerationError):
    """The service completed normally but returned no image part."""
    pass


class SafetyBlockedError(GenerationError):
    """The service declined to generate on content-policy grounds."""
    pass


class UpstreamOtherError(GenerationError):
    """No image and an ambiguous or missing finish reason."""
    pass


# --- Stage errors ---

class StageError(ThumbcraftError):
    """A pipeline stage failed. Carries the classified category and the raw cause."""

    stage_name = "stage"

    def __init__(self, message: str, category: Any = None, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.category = category
        self.cause = cause


class StrategyGenerationError(StageError):
    stage_name = "strategy"


class SketchRenderError(StageError):
    stage_name = "sketch"


class RefineRenderError(StageError):
    stage_name = "refine"


class CritiqueRenderError(StageError):
    """Raised inside the critique stage; the controller never lets it escape."""
    stage_name = "critique"


# --- Caller contract errors ---

class IllegalStateTransitionError(ThumbcraftError):
    """The requested operation is not legal in the current pipeline stage."""

    def __init__(self, operation: str, stage: Any):
        stage_name = getattr(stage, "value", stage)
        super().__init__(f"Operation '{operation}' is not allowed while pipeline is in stage '{stage_name}'")
        self.operation = operation
        self.stage = stage


class PipelineBusyError(ThumbcraftError):
    """Another generation call is still in flight on this pipeline."""

    def __init__(self, operation: str, in_flight: Optional[str] = None):
        detail = f" (in flight: {in_flight})" if in_flight else ""
        super().__init__(f"Cannot start '{operation}' while another operation is running{detail}")
        self.operation = operation
        self.in_flight = in_flight
