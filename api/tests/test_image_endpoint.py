"""
Tests for POST /api/image, from HTTP request to the Gemini boundary.

The router is mounted on a bare FastAPI app whose state carries a
GeminiImageService wrapping a mocked GenAI client and an in-memory rate
limiter with a frozen clock, so no network or Redis is involved.
"""
import pytest
from conftest import DESIGN_JSON_TEXT, image_part, make_response, text_part
from fastapi import FastAPI
from fastapi.testclient import TestClient
from routers.image import router

from core.errors import register_error_handlers
from services.image_generation_service import GeminiImageService
from services.rate_limiter import InMemorySlidingWindowStore, SlidingWindowRateLimiter

NOW_MS = 1_700_000_000_000


def build_app(image_service: GeminiImageService, limit: int = 10) -> FastAPI:
    app = FastAPI()
    register_error_handlers(app)
    app.include_router(router, prefix="/api")
    app.state.image_service = image_service
    app.state.rate_limiter = SlidingWindowRateLimiter(
        InMemorySlidingWindowStore(), limit=limit, window_ms=60_000, clock=lambda: NOW_MS
    )
    return app


@pytest.fixture
def image_service(mock_genai_client):
    return GeminiImageService(api_key="test-key", client=mock_genai_client)


@pytest.fixture
def client(image_service):
    return TestClient(build_app(image_service))


class TestSuccess:
    def test_generated_image_returned(self, client, mock_genai_client, jpeg_data_url, generated_png_bytes):
        mock_genai_client.models.generate_content.return_value = make_response(image_part(generated_png_bytes))

        response = client.post("/api/image", json={"prompt": "Add a lap pool", "image": jpeg_data_url})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["image"].startswith("data:image/png;base64,")
        assert body["description"] is None
        assert body["designDetails"] == {
            "designDescription": "",
            "materialSuggestions": "",
            "costEstimate": "",
            "constructionTips": "",
        }

    def test_rate_limit_headers_on_success(self, client, mock_genai_client, generated_png_bytes):
        mock_genai_client.models.generate_content.return_value = make_response(image_part(generated_png_bytes))

        response = client.post("/api/image", json={"prompt": "pool"}, headers={"X-Forwarded-For": "203.0.113.7"})

        assert response.headers["X-RateLimit-Limit"] == "10"
        assert response.headers["X-RateLimit-Remaining"] == "9"
        assert response.headers["X-RateLimit-Reset"] == str((NOW_MS + 60_000) // 1000)

    def test_text_only_response_echoes_input(self, client, mock_genai_client, jpeg_data_url):
        mock_genai_client.models.generate_content.return_value = make_response(text_part(DESIGN_JSON_TEXT))

        response = client.post("/api/image", json={"prompt": "Add a pool", "image": jpeg_data_url})

        assert response.status_code == 200
        body = response.json()
        assert body["image"] == jpeg_data_url
        assert body["description"] == DESIGN_JSON_TEXT
        assert body["designDetails"]["designDescription"] == "x"
        assert body["designDetails"]["materialSuggestions"] == "Travertine coping"

    def test_history_forwarded(self, client, mock_genai_client, png_data_url, generated_png_bytes):
        mock_genai_client.models.generate_content.return_value = make_response(image_part(generated_png_bytes))
        history = [
            {"role": "user", "parts": [{"text": "Add a pool"}, {"image": png_data_url}]},
            {"role": "model", "parts": [{"text": ""}, {"image": png_data_url}]},
        ]

        response = client.post("/api/image", json={"prompt": "Now add a spa", "history": history})

        assert response.status_code == 200
        contents = mock_genai_client.models.generate_content.call_args.kwargs["contents"]
        assert [c.role for c in contents] == ["user", "user"]


class TestValidation:
    def test_invalid_json(self, client, mock_genai_client):
        response = client.post("/api/image", content=b"{not json", headers={"Content-Type": "application/json"})

        assert response.status_code == 400
        assert response.json() == {"success": False, "error": "Invalid JSON in request body"}
        mock_genai_client.models.generate_content.assert_not_called()

    def test_missing_prompt(self, client, mock_genai_client):
        response = client.post("/api/image", json={"image": "data:image/png;base64,AAAA"})

        assert response.status_code == 400
        assert response.json()["error"] == "Prompt is required"
        mock_genai_client.models.generate_content.assert_not_called()

    def test_image_without_comma(self, client, mock_genai_client):
        response = client.post("/api/image", json={"prompt": "pool", "image": "data:image/png;base64AAAA"})

        assert response.status_code == 400
        assert response.json()["success"] is False
        mock_genai_client.models.generate_content.assert_not_called()

    def test_image_with_invalid_base64(self, client, mock_genai_client):
        response = client.post("/api/image", json={"prompt": "pool", "image": "data:image/png;base64,AB*CD"})

        assert response.status_code == 400
        assert response.json()["error"] == "Image data is empty or not valid base64"
        mock_genai_client.models.generate_content.assert_not_called()

    def test_bad_history_shape(self, client):
        response = client.post("/api/image", json={"prompt": "pool", "history": [{"role": "system", "parts": []}]})

        assert response.status_code == 400
        assert response.json()["error"] == "Invalid request body"


class TestFailures:
    def test_not_configured(self):
        client = TestClient(build_app(GeminiImageService(api_key="")))

        response = client.post("/api/image", json={"prompt": "pool"})

        assert response.status_code == 500
        assert response.json() == {"success": False, "error": "GEMINI_API_KEY is not configured"}

    def test_zero_parts(self, client, mock_genai_client):
        mock_genai_client.models.generate_content.return_value = make_response()

        response = client.post("/api/image", json={"prompt": "pool"})

        assert response.status_code == 500
        assert response.json()["error"] == "No response from Gemini API"

    def test_upstream_error_details(self, client, mock_genai_client):
        mock_genai_client.models.generate_content.side_effect = RuntimeError("quota exhausted")

        response = client.post("/api/image", json={"prompt": "pool"})

        assert response.status_code == 500
        assert response.json() == {"success": False, "error": "Gemini API error", "details": "quota exhausted"}


class TestRateLimiting:
    def test_eleventh_request_rejected(self, client, mock_genai_client, generated_png_bytes):
        mock_genai_client.models.generate_content.return_value = make_response(image_part(generated_png_bytes))
        headers = {"X-Forwarded-For": "203.0.113.7"}

        for _ in range(10):
            assert client.post("/api/image", json={"prompt": "pool"}, headers=headers).status_code == 200

        response = client.post("/api/image", json={"prompt": "pool"}, headers=headers)

        assert response.status_code == 429
        assert response.json() == {"success": False, "error": "Too many requests"}
        assert int(response.headers["Retry-After"]) >= 0
        assert response.headers["X-RateLimit-Remaining"] == "0"
        assert mock_genai_client.models.generate_content.call_count == 10

    def test_limit_checked_before_validation(self, image_service):
        client = TestClient(build_app(image_service, limit=1))

        assert client.post("/api/image", content=b"nope").status_code == 400
        assert client.post("/api/image", content=b"nope").status_code == 429

    def test_other_clients_unaffected(self, image_service, mock_genai_client, generated_png_bytes):
        mock_genai_client.models.generate_content.return_value = make_response(image_part(generated_png_bytes))
        client = TestClient(build_app(image_service, limit=1))

        assert client.post("/api/image", json={"prompt": "a"}, headers={"X-Real-IP": "192.0.2.1"}).status_code == 200
        assert client.post("/api/image", json={"prompt": "a"}, headers={"X-Real-IP": "192.0.2.1"}).status_code == 429
        assert client.post("/api/image", json={"prompt": "a"}, headers={"X-Real-IP": "192.0.2.2"}).status_code == 200

    def test_store_failure_uses_error_envelope(self, image_service, mock_genai_client):
        class UnavailableStore:
            async def record(self, key, now_ms, window_ms, limit):
                raise ConnectionError("redis down")

        app = build_app(image_service)
        app.state.rate_limiter = SlidingWindowRateLimiter(UnavailableStore(), clock=lambda: NOW_MS)
        client = TestClient(app)

        response = client.post("/api/image", json={"prompt": "pool"})

        assert response.status_code == 500
        assert response.json() == {"success": False, "error": "Failed to generate image", "details": "redis down"}
        mock_genai_client.models.generate_content.assert_not_called()
