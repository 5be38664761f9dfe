"""
Aspect ratio helpers shared by the image stages.
Normalizes user input to the closed set the image model accepts.
"""
import logging
from typing import Union

from ..models import AspectRatio

logger = logging.getLogger(__name__)

_ORIENTATION = {
    AspectRatio.LANDSCAPE: "horizontal",
    AspectRatio.PORTRAIT: "vertical",
    AspectRatio.STANDARD: "horizontal",
    AspectRatio.SQUARE: "square",
}


def resolve_aspect_ratio(value: Union[str, AspectRatio, None]) -> AspectRatio:
    """
    Map a user-supplied aspect string to a supported AspectRatio.

    Accepts "16:9", " 16 : 9 " and the enum itself. Anything else raises ValueError.
    """
    if isinstance(value, AspectRatio):
        return value
    if value is None:
        raise ValueError("Aspect ratio is required")
    normalized = "".join(str(value).split())
    try:
        return AspectRatio(normalized)
    except ValueError:
        supported = ", ".join(a.value for a in AspectRatio)
        raise ValueError(f"Unsupported aspect ratio '{value}'. Supported: {supported}")


def aspect_ratio_directive(aspect_ratio: AspectRatio) -> str:
    """Sentence appended to image prompts so the model also sees the ratio in text."""
    orientation = _ORIENTATION[aspect_ratio]
    return f"Aspect Ratio: {aspect_ratio.value} ({orientation})."
