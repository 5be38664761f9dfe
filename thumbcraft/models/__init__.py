"""
Pydantic models for the Thumbnail Generation Pipeline.
"""

import base64
import binascii
import datetime
from enum import Enum
from typing import Annotated, Any, ClassVar, List, Literal, Optional, Tuple, Type, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..core.constants import (
    COLOR_PALETTE_PRESETS,
    MAX_ARTICLE_CHARS,
    STYLE_PROMPT_MAP,
)


# --- Option enumerations ---

class AspectRatio(str, Enum):
    """Output aspect ratios supported by the image model."""
    LANDSCAPE = "16:9"
    PORTRAIT = "9:16"
    STANDARD = "4:3"
    SQUARE = "1:1"


class GenerationStyle(str, Enum):
    """Visual style applied during the refine stage."""
    PROFESSIONAL = "Professional"
    CASUAL = "Casual"
    CINEMATIC = "Cinematic"
    RENDER_3D = "3D Render"
    COMIC_BOOK = "Comic Book"
    RETRO = "Retro"
    HYPER_REALISTIC = "Hyper-Realistic"

    @property
    def prompt_fragment(self) -> str:
        return STYLE_PROMPT_MAP.get(self.value, STYLE_PROMPT_MAP["Professional"])


class FontStyle(str, Enum):
    """Display fonts for the overlay text."""
    IMPACT = "Impact"
    BEBAS_NEUE = "Bebas Neue"
    ANTON = "Anton"
    MONTSERRAT_BLACK = "Montserrat Black"
    BANGERS = "Bangers"


class ColorPalette(BaseModel):
    """A named palette; passed through unchanged into the refine prompt."""
    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    colors: List[str] = Field(..., min_length=1)

    @classmethod
    def preset(cls, name: str) -> "ColorPalette":
        if name not in COLOR_PALETTE_PRESETS:
            raise ValueError(f"Unknown palette preset: {name}")
        return cls(name=name, colors=list(COLOR_PALETTE_PRESETS[name]))


# --- Images and request parts ---

class EncodedImage(BaseModel):
    """Transport-ready image: base64 text plus media type. Never mutated."""
    model_config = ConfigDict(frozen=True)

    data: str = Field(..., min_length=1, description="Base64-encoded image bytes.")
    media_type: str = Field(..., min_length=1, description="e.g. 'image/png'")

    @classmethod
    def from_bytes(cls, raw: bytes, media_type: str) -> "EncodedImage":
        return cls(data=base64.b64encode(raw).decode("utf-8"), media_type=media_type)

    @classmethod
    def from_data_url(cls, url: str) -> "EncodedImage":
        """Parse a `data:<type>;base64,<payload>` URL."""
        if not url.startswith("data:") or ";base64," not in url:
            raise ValueError("Not a base64 data URL")
        header, payload = url.split(",", 1)
        media_type = header[len("data:"):].split(";", 1)[0]
        return cls(data=payload, media_type=media_type)

    def to_bytes(self) -> bytes:
        try:
            return base64.b64decode(self.data, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"Image payload is not valid base64: {e}")

    def to_data_url(self) -> str:
        return f"data:{self.media_type};base64,{self.data}"


class TextPart(BaseModel):
    kind: Literal["text"] = "text"
    text: str


class ImagePart(BaseModel):
    kind: Literal["image"] = "image"
    image: EncodedImage


RequestPart = Annotated[Union[TextPart, ImagePart], Field(discriminator="kind")]


class StructuredResponseConfig(BaseModel):
    """Ask the service for JSON conforming to a pydantic schema."""
    kind: Literal["json"] = "json"
    response_schema: Type[BaseModel]


class ImageResponseConfig(BaseModel):
    """Ask the service for an image at a given aspect ratio."""
    kind: Literal["image"] = "image"
    aspect_ratio: AspectRatio = AspectRatio.LANDSCAPE


class GenerationRequest(BaseModel):
    """A single generate-content call. Exactly one response configuration."""
    model: str = Field(..., min_length=1)
    parts: List[RequestPart] = Field(..., min_length=1)
    response_config: Annotated[
        Union[StructuredResponseConfig, ImageResponseConfig],
        Field(discriminator="kind"),
    ]

    @property
    def wants_image(self) -> bool:
        return isinstance(self.response_config, ImageResponseConfig)


# --- Content and metadata ---

class ContentContext(BaseModel):
    """What the thumbnail is about: a title (+ optional subtitle) or an article."""
    title: str = ""
    subtitle: str = ""
    article: str = ""

    @model_validator(mode="after")
    def _require_one_source(self) -> "ContentContext":
        if not self.title.strip() and not self.article.strip():
            raise ValueError("Provide a title or article content")
        return self

    @property
    def uses_article(self) -> bool:
        """Article content takes precedence over the title path when both are present."""
        return bool(self.article.strip())

    def to_prompt_block(self, max_article_chars: int = MAX_ARTICLE_CHARS) -> str:
        """Render the context for the ideation prompt. User text goes in verbatim."""
        if self.uses_article:
            article = self.article
            if len(article) > max_article_chars:
                article = article[:max_article_chars] + "..."
            return f'Content: """{article}"""'
        return f'Title: "{self.title}", Subtitle: "{self.subtitle}"'


class ThumbnailMetadata(BaseModel):
    """Content plan produced by the strategy stage and editable by the user."""
    model_config = ConfigDict(validate_assignment=True)

    visual_description: str = Field(..., description="The subject's pose and expression.")
    clickbait_text: str = Field(..., min_length=1, description="Impactful headline text (2-3 words).")
    props: List[str] = Field(..., description="2-3 supporting objects.")
    background_context: str = Field(..., description="Description of the setting and lighting.")
    visual_hooks: List[str] = Field(..., description="3 specific elements that make the image remarkable.")

    TEXT_FIELDS: ClassVar[Tuple[str, ...]] = ("visual_description", "clickbait_text", "background_context")
    LIST_FIELDS: ClassVar[Tuple[str, ...]] = ("props", "visual_hooks")

    def set_field(self, field_name: str, value: Any) -> None:
        """Replace one field in place. List fields take a list, text fields a string."""
        if field_name not in self.TEXT_FIELDS + self.LIST_FIELDS:
            raise ValueError(f"Unknown metadata field: {field_name}")
        setattr(self, field_name, value)

    def add_item(self, field_name: str, value: str) -> None:
        if field_name not in self.LIST_FIELDS:
            raise ValueError(f"Field '{field_name}' is not a list field")
        setattr(self, field_name, [*getattr(self, field_name), value])

    def remove_item(self, field_name: str, index: int) -> None:
        if field_name not in self.LIST_FIELDS:
            raise ValueError(f"Field '{field_name}' is not a list field")
        items = list(getattr(self, field_name))
        if not -len(items) <= index < len(items):
            raise IndexError(f"No item {index} in '{field_name}' (has {len(items)})")
        del items[index]
        setattr(self, field_name, items)


# --- Pipeline state markers ---

class PipelineStage(str, Enum):
    IDLE = "Idle"
    STRATEGIZING = "Strategizing"
    SKETCH_DRAFTING = "SketchDrafting"
    SKETCH_READY = "SketchReady"
    REFINING = "Refining"
    CRITIQUING = "Critiquing"
    FINALIZED = "Finalized"
    FAILED = "Failed"


class ErrorCategory(str, Enum):
    """User-facing failure categories chosen by the failure classifier."""
    SAFETY_BLOCKED = "SafetyBlocked"
    NO_IMAGE_PRODUCED = "NoImageProduced"
    AMBIGUOUS_UPSTREAM_FAILURE = "AmbiguousUpstreamFailure"
    STRUCTURED_OUTPUT_MALFORMED = "StructuredOutputMalformed"
    ENCODING_FAILED = "EncodingFailed"
    CALLER_CONTRACT_VIOLATION = "CallerContractViolation"


class PipelineOutcome(BaseModel):
    """Terminal result handed back to the front-end after each operation."""
    stage: PipelineStage
    metadata: Optional[ThumbnailMetadata] = None
    sketch: Optional[EncodedImage] = None
    image: Optional[EncodedImage] = None
    error_category: Optional[ErrorCategory] = None
    error_message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.stage != PipelineStage.FAILED


class ProgressEvent(BaseModel):
    """Emitted once at the start of each stage. Observational only."""
    stage: str
    message: str
    timestamp: datetime.datetime = Field(default_factory=datetime.datetime.now)
