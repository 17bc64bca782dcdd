"""
Direct HTTP client for the Gemini image generation API.

Turns a user's photo or sketch of a hole layout into the app's house style
(dark, high-contrast, minimalist) via the `generateContent` REST endpoint,
called with `requests`.

Transient failures (timeouts, 429/500/503, provider INTERNAL errors) are
retried with exponential backoff. Everything else fails fast with
`GenerationError`. A well-formed response without an image is not an error:
callers get `None`.
"""

import base64
import binascii
import logging
import os
import re
import time
from typing import Any, Dict, Iterable, Optional

import requests

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gemini-2.5-flash-image-preview"
DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

# Retry configuration
MAX_ATTEMPTS = 3
INITIAL_BACKOFF = 0.5  # seconds
BACKOFF_MULTIPLIER = 2
TRANSIENT_STATUS_CODES = {429, 500, 503}

CONNECT_TIMEOUT = 10
READ_TIMEOUT = 120

GENERATION_CONFIG = {
    "temperature": 0.4,
    "topP": 0.8,
    "topK": 40,
    "maxOutputTokens": 8192,
    "responseModalities": ["TEXT", "IMAGE"],
}

STYLE_PROMPT = (
    "Redraw this golf hole layout as a clean top-down course diagram. "
    "Use a dark, high-contrast, minimalist style: near-black background, "
    "flat saturated greens for fairway and green, pale sand for bunkers, "
    "deep blue for water, thin white outlines, no text, no labels, no people. "
    "Preserve the exact shape and position of the tee, fairway, hazards and green."
)

DATA_URL_PATTERN = re.compile(r"data:image/[A-Za-z0-9.+-]+;base64,([A-Za-z0-9+/=\s]+)")
# Long unbroken runs of the base64 alphabet; shorter runs are almost always prose.
BARE_BASE64_PATTERN = re.compile(r"[A-Za-z0-9+/]{200,}={0,2}")


class GenerationError(RuntimeError):
    """Raised when the generation API call fails definitively."""


class TransientGenerationError(GenerationError):
    """A failure worth retrying (timeout, throttling, provider hiccup)."""


def build_prompt(seed: Optional[int] = None) -> str:
    """Compose the style instruction, appending the course seed when present."""
    if seed is None:
        return STYLE_PROMPT
    return (
        f"{STYLE_PROMPT} Style seed: {seed}. "
        "Keep colours, line weights and texture consistent with other holes using this seed."
    )


def build_request_body(image_bytes: bytes, mime_type: str, seed: Optional[int] = None) -> Dict[str, Any]:
    return {
        "contents": [
            {
                "role": "user",
                "parts": [
                    {"text": build_prompt(seed)},
                    {
                        "inline_data": {
                            "mime_type": mime_type,
                            "data": base64.b64encode(image_bytes).decode("ascii"),
                        }
                    },
                ],
            }
        ],
        "generationConfig": dict(GENERATION_CONFIG),
    }


def _iter_parts(payload: Dict[str, Any]) -> Iterable[Dict[str, Any]]:
    for candidate in payload.get("candidates") or []:
        content = candidate.get("content") or {}
        for part in content.get("parts") or []:
            if isinstance(part, dict):
                yield part


def _decode(data: str) -> Optional[bytes]:
    try:
        return base64.b64decode(re.sub(r"\s+", "", data), validate=True)
    except (binascii.Error, ValueError):
        return None


def extract_image(payload: Dict[str, Any]) -> Optional[bytes]:
    """
    Pull image bytes out of a generateContent response.

    Order: inline image part, data URL in text, bare base64 in text.
    Returns None when nothing usable is present.
    """
    texts = []
    for part in _iter_parts(payload):
        inline = part.get("inline_data") or part.get("inlineData")
        if inline and inline.get("data"):
            decoded = _decode(inline["data"])
            if decoded:
                return decoded
        if isinstance(part.get("text"), str):
            texts.append(part["text"])

    text = "\n".join(texts)
    if not text:
        return None

    match = DATA_URL_PATTERN.search(text)
    if match:
        decoded = _decode(match.group(1))
        if decoded:
            return decoded

    for match in BARE_BASE64_PATTERN.finditer(text):
        decoded = _decode(match.group(0))
        if decoded:
            return decoded
    return None


class GeminiImageClient:
    """
    Direct HTTP client for Gemini image generation.

    The API key travels as the `key` query parameter.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize the client.

        Args:
            api_key: Gemini API key. Falls back to the GEMINI_API_KEY env var.
            model: Model name. Falls back to GEMINI_IMAGE_MODEL, then the default.
            base_url: API root. Falls back to GEMINI_API_BASE_URL.
            session: Optional requests session (connection reuse, testing).
        """
        self.api_key = api_key or os.environ.get("GEMINI_API_KEY")
        self.model = model or os.environ.get("GEMINI_IMAGE_MODEL", DEFAULT_MODEL)
        self.base_url = (base_url or os.environ.get("GEMINI_API_BASE_URL", DEFAULT_BASE_URL)).rstrip("/")
        self.session = session or requests.Session()

        if not self.api_key:
            logger.warning("GEMINI_API_KEY not set. Hole image stylization will fail until it is configured.")
        else:
            logger.info(f"Gemini image client initialized (model: {self.model})")

    def is_available(self) -> bool:
        """Check if the client is configured with an API key."""
        return bool(self.api_key)

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/models/{self.model}:generateContent"

    def stylize_image(
        self,
        image_bytes: bytes,
        mime_type: str = "image/png",
        seed: Optional[int] = None,
    ) -> Optional[bytes]:
        """
        Stylize a hole layout image.

        Args:
            image_bytes: Raw input image
            mime_type: Content type of the input
            seed: Course style seed, folded into the prompt

        Returns:
            PNG (or whatever the model emits) bytes, or None if the model
            answered without an image.

        Raises:
            GenerationError: missing API key, non-transient HTTP error,
                malformed response, or retries exhausted.
        """
        if not self.is_available():
            raise GenerationError("GEMINI_API_KEY is not configured.")

        body = build_request_body(image_bytes, mime_type, seed)

        last_error: Optional[GenerationError] = None
        for attempt in range(MAX_ATTEMPTS):
            try:
                payload = self._attempt(body, attempt)
            except TransientGenerationError as exc:
                last_error = exc
                if attempt < MAX_ATTEMPTS - 1:
                    delay = INITIAL_BACKOFF * (BACKOFF_MULTIPLIER ** attempt)
                    logger.warning(
                        f"⏳ Gemini transient error ({exc}) - retrying in {delay}s "
                        f"(attempt {attempt + 1}/{MAX_ATTEMPTS})"
                    )
                    time.sleep(delay)
                    continue
                break

            image = extract_image(payload)
            if image is None:
                logger.warning("Gemini response contained no image data")
            else:
                logger.info(f"✅ Gemini stylization succeeded ({len(image)} bytes)")
            return image

        logger.error(f"❌ Gemini failed after {MAX_ATTEMPTS} attempts: {last_error}")
        raise GenerationError(f"Image generation failed after {MAX_ATTEMPTS} attempts: {last_error}") from last_error

    def _attempt(self, body: Dict[str, Any], attempt: int) -> Dict[str, Any]:
        """Single request (used by retry logic). Returns the parsed JSON body."""
        attempt_suffix = f" (attempt {attempt + 1})" if attempt > 0 else ""
        logger.info(f"🚀 Calling Gemini generateContent{attempt_suffix} - model: {self.model}")

        try:
            response = self.session.post(
                self.endpoint,
                params={"key": self.api_key},
                json=body,
                timeout=(CONNECT_TIMEOUT, READ_TIMEOUT),
            )
        except requests.exceptions.Timeout as exc:
            raise TransientGenerationError(f"request timed out: {exc}") from exc
        except requests.exceptions.RequestException as exc:
            raise GenerationError(f"request failed: {exc}") from exc

        if response.status_code in TRANSIENT_STATUS_CODES:
            raise TransientGenerationError(f"HTTP {response.status_code}: {response.text[:200]}")
        if response.status_code >= 400:
            if self._provider_status(response) == "INTERNAL":
                raise TransientGenerationError(f"HTTP {response.status_code}: provider internal error")
            raise GenerationError(f"HTTP {response.status_code}: {response.text[:500]}")

        try:
            payload = response.json()
        except ValueError as exc:
            raise GenerationError(f"Malformed JSON from Gemini: {exc}") from exc
        if not isinstance(payload, dict):
            raise GenerationError("Malformed JSON from Gemini: expected an object")

        error = payload.get("error")
        if isinstance(error, dict):
            message = error.get("message", "unknown error")
            if error.get("status") == "INTERNAL":
                raise TransientGenerationError(f"provider internal error: {message}")
            raise GenerationError(f"Gemini error: {message}")
        return payload

    @staticmethod
    def _provider_status(response: requests.Response) -> Optional[str]:
        try:
            error = response.json().get("error")
        except (ValueError, AttributeError):
            return None
        return error.get("status") if isinstance(error, dict) else None


# Global client instance
_gemini_client: Optional[GeminiImageClient] = None


def get_gemini_client() -> GeminiImageClient:
    """Get or create the global Gemini client instance."""
    global _gemini_client
    if _gemini_client is None:
        _gemini_client = GeminiImageClient()
    return _gemini_client


def stylize_course_image(
    image_bytes: bytes,
    seed: Optional[int] = None,
    input_mime_type: str = "image/png",
) -> Optional[bytes]:
    """
    Convenience function to stylize a hole image with the global client.

    Args:
        image_bytes: Raw input image
        seed: Course style seed
        input_mime_type: Content type of the input

    Returns:
        Stylized image bytes or None if no image was produced
    """
    client = get_gemini_client()
    return client.stylize_image(image_bytes, mime_type=input_mime_type, seed=seed)
