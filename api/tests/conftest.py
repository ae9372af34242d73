"""
Pytest configuration and fixtures for Pool Designer API tests.
"""
import base64
import io
import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from google.genai import types
from PIL import Image

sys.path.insert(0, str(Path(__file__).parent.parent))

from core.config import Settings  # noqa: E402


@pytest.fixture
def test_settings():
    """Settings isolated from any local .env file."""
    return Settings(
        _env_file=None,
        gemini_api_key="test-gemini-key",
        klaviyo_api_key="pk_test_default",
        klaviyo_list_id="LIST_DEFAULT",
        log_format="console",
        log_level="WARNING",
    )


def _encode_image(fmt: str, color: str) -> str:
    img = Image.new("RGB", (64, 48), color=color)
    buffer = io.BytesIO()
    img.save(buffer, format=fmt)
    return base64.b64encode(buffer.getvalue()).decode()


@pytest.fixture
def jpeg_data_url():
    """A small backyard stand-in as a JPEG data URL."""
    return f"data:image/jpeg;base64,{_encode_image('JPEG', 'green')}"


@pytest.fixture
def png_data_url():
    return f"data:image/png;base64,{_encode_image('PNG', 'blue')}"


@pytest.fixture
def generated_png_bytes():
    img = Image.new("RGB", (64, 48), color="turquoise")
    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    return buffer.getvalue()


def make_response(*parts: types.Part) -> types.GenerateContentResponse:
    """Build a real SDK response object with one candidate holding `parts`."""
    return types.GenerateContentResponse(
        candidates=[types.Candidate(content=types.Content(role="model", parts=list(parts)))]
    )


def image_part(data: bytes, mime_type: str = "image/png") -> types.Part:
    return types.Part(inline_data=types.Blob(mime_type=mime_type, data=data))


def text_part(text: str) -> types.Part:
    return types.Part.from_text(text=text)


DESIGN_JSON_TEXT = (
    "Here is your new backyard!\n"
    '{"designDescription": "x", "materialSuggestions": "Travertine coping", '
    '"costEstimate": "$45k-$60k", "constructionTips": "Check drainage first"}\n'
    "Enjoy."
)


@pytest.fixture
def mock_genai_client():
    """Mock Google GenAI client for testing without API calls"""
    client = MagicMock()
    client.models = MagicMock()
    client.models.generate_content = MagicMock(return_value=make_response())
    return client
