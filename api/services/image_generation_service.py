"""
Gemini image generation for backyard pool redesigns.

Request side: validates the uploaded data-URL image, adapts the client's
conversation history into Gemini `Content` turns and appends the new user
turn. Response side: picks the first generated image and the first text part,
and pulls the structured design notes out of that text.
"""
import asyncio
import base64
import binascii
import json
import logging
import re
import threading
import time
from dataclasses import dataclass, field
from typing import List, Optional

from google import genai
from google.genai import types
from pydantic import ValidationError

from core.config import Settings
from core.errors import ConfigurationError, InvalidRequestError, UpstreamServiceError
from schemas.image import DesignDetails, HistoryItem, ImageGenerationRequest

logger = logging.getLogger(__name__)

DEFAULT_OUTPUT_MIME_TYPE = "image/png"
BASE64_PATTERN = re.compile(r"^[A-Za-z0-9+/=]+$")
WHITESPACE_PATTERN = re.compile(r"\s")
JSON_OBJECT_PATTERN = re.compile(r"\{[\s\S]*\}")

DESIGN_DETAILS_INSTRUCTION = """

please return an image and provide helpful information in this JSON format:
{
  "designDescription": "Brief description of the pool design and key features",
  "materialSuggestions": "Recommended materials for construction",
  "costEstimate": "Estimated cost breakdown and budget considerations(just in one line but in detail)",
  "constructionTips": "Important construction notes and installation tips"
}"""


@dataclass
class InlineImage:
    """A decoded data-URL image ready to be sent as inline data"""

    mime_type: str
    payload: str  # base64 text as received
    data: bytes

    def to_part(self) -> types.Part:
        return types.Part(inline_data=types.Blob(mime_type=self.mime_type, data=self.data))


@dataclass
class ImageGenerationResult:
    """Flattened model output returned to the frontend"""

    image: Optional[str]
    description: Optional[str] = None
    design_details: DesignDetails = field(default_factory=DesignDetails)


def infer_mime_type(data_url: str) -> str:
    """Only PNG and JPEG are distinguished; everything else is sent as JPEG."""
    return "image/png" if "image/png" in data_url else "image/jpeg"


def parse_image_data_url(value) -> InlineImage:
    """Validate an untrusted `data:<mime>;base64,<payload>` string.

    Raises InvalidRequestError describing the first problem found.
    """
    if not isinstance(value, str) or not value.startswith("data:"):
        raise InvalidRequestError("Invalid image data URL format")

    if "," not in value:
        raise InvalidRequestError("Malformed image data URL")

    payload = value.split(",", 1)[1]
    cleaned = WHITESPACE_PATTERN.sub("", payload)
    if not cleaned or not BASE64_PATTERN.match(cleaned):
        raise InvalidRequestError("Image data is empty or not valid base64")

    try:
        data = base64.b64decode(cleaned)
    except binascii.Error as e:
        raise InvalidRequestError("Image data is empty or not valid base64", details=str(e))

    return InlineImage(mime_type=infer_mime_type(value), payload=payload, data=data)


def _history_image_part(image: str) -> Optional[types.Part]:
    if "," not in image:
        return None
    payload = WHITESPACE_PATTERN.sub("", image.split(",", 1)[1])
    if not payload:
        return None
    try:
        data = base64.b64decode(payload)
    except binascii.Error:
        logger.warning("Dropping history image with undecodable base64 payload")
        return None
    return types.Part(inline_data=types.Blob(mime_type=infer_mime_type(image), data=data))


def build_history_contents(history: Optional[List[HistoryItem]]) -> List[types.Content]:
    """Convert client history into Gemini turns.

    Non-blank text becomes a text part; images are only kept on user turns.
    Parts with neither are dropped, then turns left without parts are dropped.
    Order is preserved.
    """
    contents = []
    for item in history or []:
        parts = []
        for part in item.parts:
            if part.text and part.text.strip():
                parts.append(types.Part.from_text(text=part.text))
            elif part.image and item.role == "user":
                image_part = _history_image_part(part.image)
                if image_part is not None:
                    parts.append(image_part)

        if parts:
            contents.append(types.Content(role=item.role, parts=parts))
    return contents


def build_user_turn(prompt: str, image: Optional[InlineImage] = None) -> types.Content:
    """The new user message: prompt plus design-details instruction, then the photo"""
    parts = [types.Part.from_text(text=f"{prompt}{DESIGN_DETAILS_INSTRUCTION}")]
    if image is not None:
        parts.append(image.to_part())
    return types.Content(role="user", parts=parts)


def extract_design_details(text: str) -> Optional[DesignDetails]:
    """Best-effort parse of the JSON object embedded in a free-text reply."""
    json_match = JSON_OBJECT_PATTERN.search(text)
    if not json_match:
        return None

    try:
        parsed = json.loads(json_match.group(0))
    except json.JSONDecodeError:
        logger.info("Failed to parse JSON from text response, using raw text")
        return None

    if not isinstance(parsed, dict):
        logger.info("JSON in text response is not an object, using raw text")
        return None

    try:
        return DesignDetails.model_validate(parsed)
    except ValidationError as e:
        logger.info(f"Design details did not validate, using raw text: {e}")
        return None


def _response_parts(response) -> list:
    candidates = getattr(response, "candidates", None) if response is not None else None
    if not candidates:
        return []
    content = candidates[0].content
    if content is None or not content.parts:
        return []
    return list(content.parts)


def parse_model_response(response, input_image: Optional[str]) -> ImageGenerationResult:
    """Flatten a Gemini response into image / description / design details.

    Only the first inline image and the first text part are used. When the
    model returns no image, the caller's input image is echoed back.
    """
    parts = _response_parts(response)
    if not parts:
        raise UpstreamServiceError("No response from Gemini API")

    logger.info(f"Number of parts in response: {len(parts)}")

    image_data = None
    mime_type = DEFAULT_OUTPUT_MIME_TYPE
    text_response = None
    design_details = None

    for part in parts:
        inline_data = getattr(part, "inline_data", None)
        if inline_data is not None and inline_data.data:
            if image_data is None:
                raw = inline_data.data
                image_data = raw if isinstance(raw, str) else base64.b64encode(raw).decode("utf-8")
                mime_type = inline_data.mime_type or DEFAULT_OUTPUT_MIME_TYPE
                logger.info(f"Image data received, length: {len(image_data)}, MIME type: {mime_type}")
        elif getattr(part, "text", None):
            if text_response is None:
                text_response = part.text
                logger.info(f"Text response received: {text_response[:50]}...")
                design_details = extract_design_details(text_response)

    if image_data is None:
        logger.warning("No image data in Gemini response, returning the input image")
        image = input_image
    else:
        image = f"data:{mime_type};base64,{image_data}"

    return ImageGenerationResult(
        image=image,
        description=text_response or None,
        design_details=design_details or DesignDetails(),
    )


class GeminiImageService:
    """Pool redesign generation through the Google GenAI SDK"""

    def __init__(
        self,
        api_key: str,
        model: str = "gemini-2.5-flash-image",
        temperature: float = 1.2,
        top_p: float = 0.95,
        top_k: int = 50,
        client: Optional[genai.Client] = None,
    ):
        self.api_key = api_key
        self.model = model
        self.temperature = temperature
        self.top_p = top_p
        self.top_k = top_k
        self._client = client
        self._client_lock = threading.Lock()

        if not self.api_key and client is None:
            logger.warning("Gemini API key not configured - image generation will not be available")

    @classmethod
    def from_settings(cls, config: Settings) -> "GeminiImageService":
        return cls(
            api_key=config.gemini_api_key,
            model=config.gemini_image_model,
            temperature=config.gemini_temperature,
            top_p=config.gemini_top_p,
            top_k=config.gemini_top_k,
        )

    @property
    def configured(self) -> bool:
        return bool(self.api_key) or self._client is not None

    @property
    def client(self) -> genai.Client:
        """The GenAI client, built on first use and shared afterwards."""
        if self._client is None:
            with self._client_lock:
                if self._client is None:
                    if not self.api_key:
                        raise ConfigurationError("GEMINI_API_KEY is not configured")
                    self._client = genai.Client(api_key=self.api_key)
                    logger.info(f"Google GenAI client initialized for {self.model}")
        return self._client

    def _generation_config(self) -> types.GenerateContentConfig:
        return types.GenerateContentConfig(
            # Edited image plus the design notes text
            response_modalities=["IMAGE", "TEXT"],
            temperature=self.temperature,
            top_p=self.top_p,
            top_k=self.top_k,
        )

    def build_contents(self, request: ImageGenerationRequest) -> List[types.Content]:
        """Validate the request and assemble the full turn sequence."""
        if not request.prompt:
            raise InvalidRequestError("Prompt is required")

        image = None
        if request.image:
            image = parse_image_data_url(request.image)
            logger.info(f"Processing image edit request ({len(image.payload)} base64 chars, {image.mime_type})")

        contents = build_history_contents(request.history)
        contents.append(build_user_turn(request.prompt, image))
        return contents

    async def generate(self, request: ImageGenerationRequest) -> ImageGenerationResult:
        if not self.configured:
            raise ConfigurationError("GEMINI_API_KEY is not configured")

        contents = self.build_contents(request)
        client = self.client
        config = self._generation_config()

        def _run_generate():
            return client.models.generate_content(model=self.model, contents=contents, config=config)

        start_time = time.time()
        logger.info(f"Calling Gemini API with model: {self.model} ({len(contents)} turns)")
        try:
            response = await asyncio.to_thread(_run_generate)
        except Exception as e:
            message = str(e) or type(e).__name__
            if "403" in message or "permission" in message.lower():
                logger.error("Permission denied by Gemini API. Check API key and service enablement.")
            logger.error(f"Gemini API error: {message}", exc_info=True)
            raise UpstreamServiceError("Gemini API error", details=message)

        logger.info(f"Gemini API call successful in {time.time() - start_time:.2f}s")
        # Echo only a string input image; anything else never passed validation
        return parse_model_response(response, request.image if isinstance(request.image, str) else None)
