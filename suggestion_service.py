"""
Client for the vision-model service that suggests a halftone shape and grid
size for an image. The transform itself never depends on it; callers apply a
suggestion through ProcessingSettings.with_suggestion().
"""

import base64
import io
import json
import logging
import os
from dataclasses import dataclass
from typing import Optional

import requests
from PIL import Image

from halftone_lib import HalftoneShape

logger = logging.getLogger(__name__)

__all__ = [
    'SuggestionError',
    'SuggestionResult',
    'FALLBACK_SUGGESTION',
    'BaseSuggestionClient',
    'GeminiSuggestionClient',
    'encode_image_base64',
    'strip_data_url',
    'parse_suggestion',
]

GEMINI_ENDPOINT = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
DEFAULT_MODEL = "gemini-2.5-flash"
MIN_SUGGESTED_GRID = 4
MAX_SUGGESTED_GRID = 15

ANALYSIS_PROMPT = (
    "Analyze this image for DTF (Direct to Film) t-shirt printing. "
    "Suggest the best halftone pattern style (circle, square, line, diamond) and grid size "
    "(in pixels, between 4 and 15) to make it look artistic and printable. "
    "Consider the level of detail. Vintage/distressed styles usually benefit from lines or diamonds. "
    "High detail needs smaller grid sizes. "
    "Provide the reasoning in {language}."
)

RESPONSE_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "suggestedShape": {
            "type": "STRING",
            "enum": [s.value for s in HalftoneShape]
        },
        "suggestedGridSize": {
            "type": "NUMBER",
            "description": "A number between 4 and 15"
        },
        "reasoning": {
            "type": "STRING"
        }
    },
    "required": ["suggestedShape", "suggestedGridSize", "reasoning"]
}


class SuggestionError(Exception):
    """Raised when a suggestion cannot be requested or understood."""
    pass


@dataclass(frozen=True)
class SuggestionResult:
    suggested_shape: HalftoneShape
    suggested_grid_size: int
    reasoning: str


FALLBACK_SUGGESTION = SuggestionResult(
    suggested_shape=HalftoneShape.CIRCLE,
    suggested_grid_size=6,
    reasoning="Analysis failed, reverting to defaults."
)


def strip_data_url(data: str) -> str:
    """Drop a 'data:image/png;base64,' style prefix if present."""
    if data.startswith("data:") and "," in data:
        return data.split(",", 1)[1]
    return data


def encode_image_base64(image: Image.Image) -> str:
    """Encode an image as base64 PNG without a data-URL prefix."""
    buf = io.BytesIO()
    image.save(buf, format='PNG')
    return base64.b64encode(buf.getvalue()).decode('ascii')


def parse_suggestion(payload: dict) -> SuggestionResult:
    """
    Turn the model's JSON answer into a SuggestionResult.
    The grid size is rounded and clamped to 4..15.

    Raises:
        SuggestionError: on missing keys, unknown shape or non-numeric grid size
    """
    try:
        shape = HalftoneShape.parse(payload["suggestedShape"])
        grid = int(round(float(payload["suggestedGridSize"])))
        reasoning = str(payload["reasoning"])
    except (KeyError, TypeError, ValueError) as e:
        raise SuggestionError(f"Malformed suggestion payload: {e}") from e

    grid = min(max(grid, MIN_SUGGESTED_GRID), MAX_SUGGESTED_GRID)
    return SuggestionResult(suggested_shape=shape, suggested_grid_size=grid, reasoning=reasoning)


class BaseSuggestionClient:
    """
    Base class for suggestion clients.
    Each client must implement .suggest(image) returning a SuggestionResult.
    """
    def suggest(self, image: Image.Image) -> SuggestionResult:
        raise NotImplementedError


class GeminiSuggestionClient(BaseSuggestionClient):
    """
    Asks a Gemini vision model for a shape and grid size.
    Transport or parsing failures fall back to FALLBACK_SUGGESTION.
    """
    def __init__(self,
                 api_key: Optional[str] = None,
                 model: str = DEFAULT_MODEL,
                 timeout: float = 30.0,
                 language: str = "Portuguese (pt-BR)",
                 session: Optional[requests.Session] = None):
        self.api_key = api_key or os.environ.get("GEMINI_API_KEY") or os.environ.get("API_KEY")
        self.model = model
        self.timeout = timeout
        self.language = language
        self.session = session or requests.Session()

    def _build_request(self, image_b64: str) -> dict:
        return {
            "contents": [{
                "parts": [
                    {"inline_data": {"mime_type": "image/png", "data": strip_data_url(image_b64)}},
                    {"text": ANALYSIS_PROMPT.format(language=self.language)}
                ]
            }],
            "generationConfig": {
                "responseMimeType": "application/json",
                "responseSchema": RESPONSE_SCHEMA
            }
        }

    @staticmethod
    def _extract_text(data: dict) -> str:
        try:
            parts = data["candidates"][0]["content"]["parts"]
        except (KeyError, IndexError, TypeError) as e:
            raise SuggestionError("No response from model") from e
        if not isinstance(parts, list):
            raise SuggestionError("No response from model")
        text = "".join(p["text"] for p in parts
                       if isinstance(p, dict) and isinstance(p.get("text"), str))
        if not text:
            raise SuggestionError("No response from model")
        return text

    def suggest(self, image: Image.Image) -> SuggestionResult:
        if not self.api_key:
            raise SuggestionError("API key not found (set GEMINI_API_KEY)")

        url = GEMINI_ENDPOINT.format(model=self.model)
        body = self._build_request(encode_image_base64(image))

        try:
            response = self.session.post(
                url,
                json=body,
                headers={"x-goog-api-key": self.api_key},
                timeout=self.timeout
            )
            response.raise_for_status()
            text = self._extract_text(response.json())
            result = parse_suggestion(json.loads(text))
        except (requests.RequestException, ValueError, SuggestionError) as e:
            logger.error(f"Suggestion request failed: {e}")
            return FALLBACK_SUGGESTION

        logger.info(f"Suggested {result.suggested_shape.value} at grid {result.suggested_grid_size}")
        return result
