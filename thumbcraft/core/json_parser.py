"""
JSON Parsing Utilities for Structured Service Responses
======================================================

The strategy stage asks the generation service for JSON, but the service
sometimes wraps the payload in markdown code fences or adds a sentence
around it. This module strips that wrapping, parses the JSON and validates
it against a pydantic schema so callers never see a partially-populated
record.

Usage:
    from thumbcraft.core.json_parser import RobustJSONParser

    parser = RobustJSONParser()
    metadata = parser.parse_into(raw_response_text, ThumbnailMetadata)
"""

import json
import logging
import re
from typing import Any, Dict, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class JSONExtractionError(Exception):
    """JSON could not be extracted from the response or failed validation."""
    pass


class TruncatedResponseError(JSONExtractionError):
    """The response was cut off mid-generation, leaving malformed JSON."""
    pass


class RobustJSONParser:
    """
    Extracts and validates JSON from generation service text.

    Handles:
    - Markdown code blocks (```json...``` and ```...```)
    - Explanatory text before/after JSON
    - Detection of truncated responses
    """

    def __init__(self, debug_mode: bool = False):
        self.debug_mode = debug_mode

    def strip_code_fences(self, raw_text: str) -> str:
        """Remove a leading ```json / ``` fence and a trailing ``` fence."""
        text = (raw_text or "").strip()
        text = re.sub(r"^```(?:json)?\s*", "", text, flags=re.IGNORECASE)
        text = re.sub(r"\s*```$", "", text)
        return text.strip()

    def extract_and_parse(self, raw_response: str) -> Dict[str, Any]:
        """
        Extract and parse a JSON object from a raw response.

        Raises:
            JSONExtractionError: if no JSON object can be found
            TruncatedResponseError: if the response appears cut off
        """
        json_str = self.extract_json_string(raw_response)
        if not json_str:
            if self._is_likely_truncated_response(raw_response or ""):
                raise TruncatedResponseError(
                    f"Response appears to be truncated mid-generation. "
                    f"Last 100 characters: ...{(raw_response or '')[-100:]}"
                )
            raise JSONExtractionError(
                f"Could not extract JSON from response. "
                f"Raw content preview: {(raw_response or '')[:200]}..."
            )

        parsed_data = json.loads(json_str)
        if not isinstance(parsed_data, dict):
            raise JSONExtractionError(f"Expected a JSON object, got {type(parsed_data).__name__}")
        return parsed_data

    def parse_into(self, raw_response: str, expected_schema: Type[ModelT]) -> ModelT:
        """Extract, parse and validate against a pydantic model. All required fields must be present and typed."""
        parsed_data = self.extract_and_parse(raw_response)
        try:
            return expected_schema.model_validate(parsed_data)
        except ValidationError as e:
            if self.debug_mode:
                logger.debug(f"Pydantic validation failed for {expected_schema.__name__}: {e}")
            raise JSONExtractionError(f"Schema validation failed: {e}")

    def extract_json_string(self, raw_text: str) -> Optional[str]:
        """
        Extract a JSON string using, in order: fenced blocks, the whole
        text, then brace matching.
        """
        if not isinstance(raw_text, str) or not raw_text.strip():
            return None

        json_str = self._extract_from_markdown_blocks(raw_text)
        if json_str:
            return json_str

        cleaned_text = self.strip_code_fences(raw_text)
        if self._is_valid_json(cleaned_text):
            return cleaned_text

        json_str = self._extract_by_brace_matching(cleaned_text)
        if json_str:
            return json_str

        if self.debug_mode:
            logger.debug(f"All extraction strategies failed for text: {raw_text[:300]}...")
        return None

    def _extract_from_markdown_blocks(self, text: str) -> Optional[str]:
        match = re.search(r"```json\s*([\s\S]+?)\s*```", text, re.IGNORECASE)
        if match:
            json_str = match.group(1).strip()
            if self._is_valid_json(json_str):
                return json_str

        match = re.search(r"```\s*([\s\S]+?)\s*```", text)
        if match:
            potential_json = match.group(1).strip()
            if potential_json.startswith("{") and self._is_valid_json(potential_json):
                return potential_json
        return None

    def _extract_by_brace_matching(self, text: str) -> Optional[str]:
        first_brace = text.find("{")
        last_brace = text.rfind("}")
        if first_brace != -1 and last_brace != -1 and first_brace < last_brace:
            potential_obj = text[first_brace:last_brace + 1]
            if self._is_valid_json(potential_obj):
                return potential_obj
        return None

    def _is_valid_json(self, text: str) -> bool:
        try:
            json.loads(text)
            return True
        except json.JSONDecodeError:
            return False

    def _is_likely_truncated_response(self, raw_text: str) -> bool:
        text = raw_text.strip()
        if not text:
            return False
        # Ends inside a string value, mid key-value pair, or after an opener
        if re.search(r':\s*"[^"]*$', text):
            return True
        if re.search(r'[,{]\s*"[^"]*"?\s*:?\s*$', text):
            return True
        if re.search(r"[,\[\{]\s*$", text):
            return True
        return False


def parse_structured_response(raw_response: str, expected_schema: Type[ModelT], debug: bool = False) -> ModelT:
    """Convenience wrapper around RobustJSONParser.parse_into."""
    return RobustJSONParser(debug_mode=debug).parse_into(raw_response, expected_schema)
