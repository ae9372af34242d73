"""
Image generation API route: backyard photo in, pool redesign out
"""
from fastapi import APIRouter, Depends, Request, Response
from pydantic import ValidationError
from schemas.image import ImageGenerationRequest, ImageGenerationResponse
from services.image_generation_service import GeminiImageService
from services.rate_limiter import (
    RateLimitDecision,
    SlidingWindowRateLimiter,
    get_client_identifier,
    rate_limit_headers,
    rejection_headers,
)

from core.errors import ApiError, ConfigurationError, InvalidRequestError, RateLimitExceeded, UpstreamServiceError
from middleware.logging_middleware import get_logger

logger = get_logger(__name__)
router = APIRouter(tags=["image"])


def get_image_service(request: Request) -> GeminiImageService:
    return request.app.state.image_service


def get_rate_limiter(request: Request) -> SlidingWindowRateLimiter:
    return request.app.state.rate_limiter


async def enforce_rate_limit(
    request: Request,
    response: Response,
    limiter: SlidingWindowRateLimiter = Depends(get_rate_limiter),
) -> RateLimitDecision:
    """Reject over-limit callers with 429; otherwise advertise the limit on the response."""
    identifier = get_client_identifier(request.headers)
    try:
        decision = await limiter.limit(identifier)
    except Exception as e:
        logger.error(f"Rate limit check failed: {e}", exc_info=True)
        raise UpstreamServiceError("Failed to generate image", details=str(e))

    if not decision.success:
        raise RateLimitExceeded(rejection_headers(decision, limiter.now_ms()))

    response.headers.update(rate_limit_headers(decision))
    return decision


async def read_image_request(request: Request) -> ImageGenerationRequest:
    try:
        body = await request.json()
    except ValueError as e:
        logger.error(f"Failed to parse JSON body: {e}")
        raise InvalidRequestError("Invalid JSON in request body")

    if not isinstance(body, dict):
        raise InvalidRequestError("Invalid JSON in request body")

    try:
        return ImageGenerationRequest.model_validate(body)
    except ValidationError as e:
        raise InvalidRequestError("Invalid request body", details=str(e))


@router.post("/image", response_model=ImageGenerationResponse, dependencies=[Depends(enforce_rate_limit)])
async def generate_image(
    request: Request,
    image_service: GeminiImageService = Depends(get_image_service),
):
    """
    Generate a pool redesign for an uploaded backyard photo.

    Body: `{prompt, image?: data URL, history?: [{role, parts: [{text?, image?}]}]}`.
    When the model returns no image, the uploaded image is echoed back.
    """
    if not image_service.configured:
        logger.error("GEMINI_API_KEY is not configured")
        raise ConfigurationError("GEMINI_API_KEY is not configured")

    payload = await read_image_request(request)

    try:
        result = await image_service.generate(payload)
    except ApiError:
        raise
    except Exception as e:
        logger.error(f"Error generating image: {e}", exc_info=True)
        raise UpstreamServiceError("Failed to generate image", details=str(e))

    return ImageGenerationResponse(
        image=result.image,
        description=result.description,
        design_details=result.design_details,
    )
