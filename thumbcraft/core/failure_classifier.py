"""
Failure classifier: the single place raw upstream errors become an ErrorCategory.

Pure functions. Used by the pipeline controller to tag Failed states and by
the presentation layer to pick user-facing copy.
"""

from typing import Optional

from ..models import ErrorCategory
from .constants import NO_IMAGE_FINISH_REASONS, SAFETY_FINISH_REASONS
from .errors import (
    EncodingError,
    IllegalStateTransitionError,
    NoImageProducedError,
    PipelineBusyError,
    SafetyBlockedError,
    StageError,
    StructuredOutputError,
    UpstreamOtherError,
)
from .json_parser import JSONExtractionError

USER_MESSAGES = {
    ErrorCategory.SAFETY_BLOCKED: (
        "The image service declined this request on content-policy grounds. "
        "Try a different photo or change the wording of your title."
    ),
    ErrorCategory.NO_IMAGE_PRODUCED: (
        "The image service did not return an image. Try a simpler title or a different photo."
    ),
    ErrorCategory.AMBIGUOUS_UPSTREAM_FAILURE: (
        "The image engine failed. Try a simpler title or a different photo."
    ),
    ErrorCategory.STRUCTURED_OUTPUT_MALFORMED: (
        "Could not generate a thumbnail strategy. Please try again."
    ),
    ErrorCategory.ENCODING_FAILED: (
        "Could not process file. Please try another image (PNG, JPG or WEBP up to 10MB)."
    ),
    ErrorCategory.CALLER_CONTRACT_VIOLATION: (
        "Something went wrong. Please start over."
    ),
}

_SAFETY_KEYWORDS = ("safety", "blocked", "prohibited")


def _normalize_reason(finish_reason: Optional[str]) -> Optional[str]:
    if not finish_reason:
        return None
    return str(finish_reason).split(".")[-1].strip().upper() or None


def classify_failure(error: BaseException, finish_reason: Optional[str] = None) -> ErrorCategory:
    """
    Map a failure (plus any service-reported finish reason) to an ErrorCategory.

    Stage errors are unwrapped to their cause first. Typed client errors map
    directly. SDK or unknown errors fall back to the finish reason, then to
    message keywords, then to AmbiguousUpstreamFailure.
    """
    while isinstance(error, StageError) and error.cause is not None:
        error = error.cause

    if isinstance(error, EncodingError):
        return ErrorCategory.ENCODING_FAILED
    if isinstance(error, (IllegalStateTransitionError, PipelineBusyError)):
        return ErrorCategory.CALLER_CONTRACT_VIOLATION
    if isinstance(error, SafetyBlockedError):
        return ErrorCategory.SAFETY_BLOCKED
    if isinstance(error, NoImageProducedError):
        return ErrorCategory.NO_IMAGE_PRODUCED
    if isinstance(error, (StructuredOutputError, JSONExtractionError)):
        return ErrorCategory.STRUCTURED_OUTPUT_MALFORMED
    if isinstance(error, UpstreamOtherError):
        return ErrorCategory.AMBIGUOUS_UPSTREAM_FAILURE

    reason = _normalize_reason(finish_reason or getattr(error, "finish_reason", None))
    if reason in SAFETY_FINISH_REASONS:
        return ErrorCategory.SAFETY_BLOCKED
    if reason in NO_IMAGE_FINISH_REASONS:
        return ErrorCategory.NO_IMAGE_PRODUCED

    message = str(error).lower()
    if any(keyword in message for keyword in _SAFETY_KEYWORDS):
        return ErrorCategory.SAFETY_BLOCKED
    return ErrorCategory.AMBIGUOUS_UPSTREAM_FAILURE


def user_message_for(category: ErrorCategory) -> str:
    """User-facing copy for a category; never exposes internals."""
    return USER_MESSAGES.get(category, USER_MESSAGES[ErrorCategory.AMBIGUOUS_UPSTREAM_FAILURE])
