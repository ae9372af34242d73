"""
Pydantic schemas for the newsletter subscription endpoint
"""
from typing import Optional

from pydantic import BaseModel, ConfigDict, field_validator


class LocationInfo(BaseModel):
    """Approximate visitor location attached to the Klaviyo profile"""

    city: Optional[str] = None
    region: Optional[str] = None
    country: Optional[str] = None

    def is_empty(self) -> bool:
        return not (self.city or self.region or self.country)

    def to_klaviyo(self) -> dict:
        return {key: value for key, value in self.model_dump().items() if value}


class SubscribeRequest(BaseModel):
    """Body of POST /api/subscribe"""

    model_config = ConfigDict(extra="ignore")

    email: str
    # Doubles as the credential routing code and the profile location region
    region: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None
    location: Optional[LocationInfo] = None

    @field_validator("region", "city", "country", mode="before")
    @classmethod
    def stringify(cls, value):
        if value is None or isinstance(value, str):
            return value
        return str(value)


class SubscribeResponse(BaseModel):
    success: bool = True
