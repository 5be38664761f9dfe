"""
Generation Client

Thin typed wrapper around the Gemini `generate_content` call. Issues exactly
one request per method call and turns the response into either a validated
pydantic record (structured output) or an EncodedImage (image output).

Degenerate responses raise typed errors from `core.errors`; transport and
SDK exceptions propagate unchanged so the failure classifier can map them.
No retries happen here.
"""

import asyncio
import base64
import logging
from typing import Any, Dict, List, Optional, Sequence, Type, TypeVar, Union

from google.genai import types
from pydantic import BaseModel

from ..models import (
    AspectRatio,
    EncodedImage,
    GenerationRequest,
    ImagePart,
    ImageResponseConfig,
    StructuredResponseConfig,
    TextPart,
)
from .client_config import ClientConfig
from .constants import NO_IMAGE_FINISH_REASONS, SAFETY_FINISH_REASONS
from .errors import (
    NoImageProducedError,
    SafetyBlockedError,
    StructuredOutputError,
    UpstreamOtherError,
)
from .json_parser import JSONExtractionError, RobustJSONParser

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)
PartLike = Union[TextPart, ImagePart, str, EncodedImage]


def finish_reason_name(candidate: Any) -> Optional[str]:
    """Normalize a candidate's finish reason (enum, 'FinishReason.X' or plain string) to 'X'."""
    reason = getattr(candidate, "finish_reason", None)
    if reason is None:
        return None
    name = getattr(reason, "name", None) or str(reason)
    return name.split(".")[-1].strip().upper() or None


def _block_reason_name(response: Any) -> Optional[str]:
    feedback = getattr(response, "prompt_feedback", None)
    reason = getattr(feedback, "block_reason", None) if feedback is not None else None
    if reason is None:
        return None
    name = getattr(reason, "name", None) or str(reason)
    return name.split(".")[-1].strip().upper() or None


def _coerce_part(part: PartLike) -> Union[TextPart, ImagePart]:
    if isinstance(part, (TextPart, ImagePart)):
        return part
    if isinstance(part, EncodedImage):
        return ImagePart(image=part)
    if isinstance(part, str):
        return TextPart(text=part)
    raise TypeError(f"Unsupported request part: {type(part).__name__}")


class GenerationClient:
    """Issues single generate-content calls against an explicitly supplied genai client."""

    def __init__(
        self,
        genai_client: Any,
        strategy_model_id: str,
        image_model_id: str,
        json_parser: Optional[RobustJSONParser] = None,
    ):
        if genai_client is None:
            raise ValueError("A genai client is required")
        self._client = genai_client
        self.strategy_model_id = strategy_model_id
        self.image_model_id = image_model_id
        self._json_parser = json_parser or RobustJSONParser()
        self.last_usage: Optional[Dict[str, Any]] = None

    @classmethod
    def from_config(cls, config: ClientConfig, genai_client: Any = None) -> "GenerationClient":
        return cls(
            genai_client or config.create_genai_client(),
            strategy_model_id=config.strategy_model_id,
            image_model_id=config.image_model_id,
        )

    # --- Request construction ---

    def build_structured_request(self, prompt: str, schema: Type[BaseModel]) -> GenerationRequest:
        return GenerationRequest(
            model=self.strategy_model_id,
            parts=[TextPart(text=prompt)],
            response_config=StructuredResponseConfig(response_schema=schema),
        )

    def build_image_request(self, parts: Sequence[PartLike], aspect_ratio: AspectRatio) -> GenerationRequest:
        return GenerationRequest(
            model=self.image_model_id,
            parts=[_coerce_part(p) for p in parts],
            response_config=ImageResponseConfig(aspect_ratio=aspect_ratio),
        )

    def _to_contents(self, request: GenerationRequest) -> List[Any]:
        sdk_parts = []
        for part in request.parts:
            if isinstance(part, ImagePart):
                sdk_parts.append(
                    types.Part.from_bytes(data=part.image.to_bytes(), mime_type=part.image.media_type)
                )
            else:
                sdk_parts.append(types.Part.from_text(text=part.text))
        return [types.Content(role="user", parts=sdk_parts)]

    def _to_config(self, request: GenerationRequest) -> Any:
        response_config = request.response_config
        if isinstance(response_config, StructuredResponseConfig):
            return types.GenerateContentConfig(
                response_mime_type="application/json",
                response_schema=response_config.response_schema,
            )
        return types.GenerateContentConfig(
            response_modalities=["IMAGE", "TEXT"],
            image_config=types.ImageConfig(aspect_ratio=response_config.aspect_ratio.value),
        )

    async def _send(self, request: GenerationRequest) -> Any:
        logger.info(f"--- Calling Gemini generate_content ({request.model}, {len(request.parts)} parts) ---")
        response = await asyncio.to_thread(
            self._client.models.generate_content,
            model=request.model,
            contents=self._to_contents(request),
            config=self._to_config(request),
        )
        self.last_usage = self._extract_usage(response, request.model)
        return response

    def _extract_usage(self, response: Any, model_id: str) -> Optional[Dict[str, Any]]:
        usage = getattr(response, "usage_metadata", None)
        if usage is None:
            return None
        return {
            "model": model_id,
            "prompt_tokens": getattr(usage, "prompt_token_count", None),
            "completion_tokens": getattr(usage, "candidates_token_count", None),
            "total_tokens": getattr(usage, "total_token_count", None),
        }

    # --- Public operations ---

    async def generate_structured(self, prompt: str, schema: Type[ModelT]) -> ModelT:
        """
        Request JSON conforming to `schema`, strip code fences, parse and validate.

        Raises:
            SafetyBlockedError: the prompt or response was blocked.
            StructuredOutputError: missing, unparseable or schema-incomplete output.
        """
        request = self.build_structured_request(prompt, schema)
        response = await self._send(request)

        candidates = getattr(response, "candidates", None) or []
        finish_reason = finish_reason_name(candidates[0]) if candidates else None
        block_reason = _block_reason_name(response)
        raw_text = getattr(response, "text", None) or ""

        if not raw_text.strip():
            if block_reason or finish_reason in SAFETY_FINISH_REASONS:
                raise SafetyBlockedError(
                    f"Structured request blocked (finish={finish_reason}, block={block_reason})",
                    finish_reason=finish_reason or block_reason,
                )
            raise StructuredOutputError("Empty structured response", finish_reason=finish_reason)

        try:
            return self._json_parser.parse_into(raw_text, schema)
        except JSONExtractionError as e:
            logger.error(f"Structured output parsing failed: {e}")
            raise StructuredOutputError(str(e), finish_reason=finish_reason, response_text=raw_text[:500])

    async def generate_image(self, parts: Sequence[PartLike], aspect_ratio: AspectRatio) -> EncodedImage:
        """
        Request an image and return the first inline image of the first candidate.

        Raises:
            SafetyBlockedError: safety finish reason or prompt block.
            NoImageProducedError: normal completion without an image (e.g. a text refusal).
            UpstreamOtherError: no image and an unspecified/other finish reason.
        """
        request = self.build_image_request(parts, aspect_ratio)
        response = await self._send(request)
        return self.extract_image(response)

    def extract_image(self, response: Any) -> EncodedImage:
        """Scan the first candidate's parts in order for inline image data."""
        candidates = getattr(response, "candidates", None) or []
        if not candidates:
            block_reason = _block_reason_name(response)
            if block_reason:
                raise SafetyBlockedError(f"Prompt blocked: {block_reason}", finish_reason=block_reason)
            raise UpstreamOtherError("Empty service response (no candidates)")

        candidate = candidates[0]
        finish_reason = finish_reason_name(candidate)
        content = getattr(candidate, "content", None)
        text_part = ""

        for part in (getattr(content, "parts", None) or []):
            inline = getattr(part, "inline_data", None)
            if inline is not None and getattr(inline, "data", None):
                data = inline.data
                if isinstance(data, bytes):
                    data = base64.b64encode(data).decode("utf-8")
                elif not isinstance(data, str):
                    raise UpstreamOtherError(f"Unexpected image data type: {type(data).__name__}")
                media_type = getattr(inline, "mime_type", None) or "image/png"
                return EncodedImage(data=data, media_type=media_type)
            if not text_part and getattr(part, "text", None):
                text_part = str(part.text).strip()

        text_preview = text_part.replace("\n", " ")[:180] if text_part else None
        if finish_reason in SAFETY_FINISH_REASONS:
            raise SafetyBlockedError(
                f"Image generation blocked by safety filters (finish={finish_reason})",
                finish_reason=finish_reason, response_text=text_preview,
            )
        if finish_reason in NO_IMAGE_FINISH_REASONS:
            raise NoImageProducedError(
                "Service completed without producing an image",
                finish_reason=finish_reason, response_text=text_preview,
            )
        raise UpstreamOtherError(
            f"No image in response (finish={finish_reason or 'unspecified'})",
            finish_reason=finish_reason, response_text=text_preview,
        )
