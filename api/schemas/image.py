"""
Pydantic schemas for the image generation endpoint
"""
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class HistoryPart(BaseModel):
    """One fragment of a conversation turn: text or a data-URL image"""

    text: Optional[str] = None
    image: Optional[str] = None


class HistoryItem(BaseModel):
    """One chronological turn of the conversation"""

    role: Literal["user", "model"]
    parts: List[HistoryPart] = Field(default_factory=list)


class ImageGenerationRequest(BaseModel):
    """Body of POST /api/image"""

    prompt: Optional[str] = None
    image: Optional[Any] = None  # Validated as a data URL by the service
    history: Optional[List[HistoryItem]] = None


class DesignDetails(BaseModel):
    """Structured design notes the model embeds as JSON in its text reply"""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    design_description: str = Field(default="", alias="designDescription")
    material_suggestions: str = Field(default="", alias="materialSuggestions")
    cost_estimate: str = Field(default="", alias="costEstimate")
    construction_tips: str = Field(default="", alias="constructionTips")

    @field_validator("*", mode="before")
    @classmethod
    def coerce_to_text(cls, value):
        # Models occasionally answer with numbers, lists or null
        if value is None:
            return ""
        if isinstance(value, str):
            return value
        return str(value)


class ImageGenerationResponse(BaseModel):
    """Successful response of POST /api/image"""

    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    image: Optional[str] = None
    description: Optional[str] = None
    design_details: DesignDetails = Field(default_factory=DesignDetails, alias="designDetails")
