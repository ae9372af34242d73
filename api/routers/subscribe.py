"""
Newsletter subscription API route (Klaviyo)
"""
from typing import Mapping, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import ValidationError
from schemas.subscribe import LocationInfo, SubscribeRequest, SubscribeResponse
from services.klaviyo_service import KlaviyoService

from core.errors import ApiError, ConfigurationError, InvalidRequestError, UpstreamServiceError
from middleware.logging_middleware import get_logger

logger = get_logger(__name__)
router = APIRouter(tags=["subscribe"])

INVALID_BODY = "Invalid request body. Expected JSON with 'email' string."


def get_klaviyo_service(request: Request) -> KlaviyoService:
    return request.app.state.klaviyo_service


def location_from_request(headers: Mapping[str, str], payload: SubscribeRequest) -> Optional[LocationInfo]:
    """Body fields win over the nested `location` object, which wins over edge geo headers."""
    nested = payload.location or LocationInfo()
    location = LocationInfo(
        city=payload.city or nested.city or headers.get("x-vercel-ip-city"),
        region=payload.region or nested.region or headers.get("x-vercel-ip-country-region"),
        country=payload.country or nested.country or headers.get("x-vercel-ip-country"),
    )
    return None if location.is_empty() else location


@router.post("/subscribe", response_model=SubscribeResponse)
async def subscribe(
    request: Request,
    klaviyo_service: KlaviyoService = Depends(get_klaviyo_service),
):
    """Add an email address to the (region-specific) Klaviyo list."""
    if not klaviyo_service.configured:
        raise ConfigurationError(
            "Klaviyo API configuration missing (KLAVIYO_PRIVATE_API_KEY and/or KLAVIYO_LIST_ID)."
        )

    try:
        body = await request.json()
    except ValueError:
        raise InvalidRequestError(INVALID_BODY)

    if not isinstance(body, dict) or not isinstance(body.get("email"), str):
        raise InvalidRequestError(INVALID_BODY)

    try:
        payload = SubscribeRequest.model_validate(body)
    except ValidationError as e:
        raise InvalidRequestError(INVALID_BODY, details=str(e))

    location = location_from_request(request.headers, payload)

    try:
        await klaviyo_service.subscribe(payload.email, region=payload.region, location=location)
    except ApiError:
        raise
    except Exception as e:
        logger.error(f"Error processing subscription: {e}", exc_info=True)
        raise UpstreamServiceError("Failed to process subscription", details=str(e))

    return SubscribeResponse()
