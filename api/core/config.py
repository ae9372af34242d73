"""
Configuration settings for the FastAPI application
"""
from typing import List

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings"""

    # Application
    app_name: str = "Pool Designer API"
    version: str = "1.0.0"
    environment: str = "development"
    debug: bool = True

    # CORS
    cors_origins: List[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

    # Google AI Studio (Gemini image generation)
    gemini_api_key: str = Field(
        default="",
        validation_alias=AliasChoices("google_ai_studio_token", "gemini_api_key"),
    )
    gemini_image_model: str = "gemini-2.5-flash-image"
    gemini_temperature: float = 1.2
    gemini_top_p: float = 0.95
    gemini_top_k: int = 50

    # Rate limiting (sliding window per client IP)
    rate_limit_max: int = 10
    rate_limit_window: str = "1 m"
    rate_limit_prefix: str = "img"

    # Redis backs the rate limiter; empty means in-process counting
    redis_url: str = ""

    # Klaviyo
    klaviyo_api_key: str = Field(
        default="",
        validation_alias=AliasChoices("klaviyo_private_api_key", "klaviyo_api_key"),
    )
    klaviyo_list_id: str = ""
    klaviyo_api_revision: str = "2024-10-15"
    klaviyo_base_url: str = "https://a.klaviyo.com/api"
    klaviyo_source: str = "AI Pool Designer"

    klaviyo_api_key_eu: str = ""
    klaviyo_list_id_eu: str = ""
    klaviyo_api_key_de: str = ""
    klaviyo_list_id_de: str = ""
    klaviyo_api_key_fr: str = ""
    klaviyo_list_id_fr: str = ""
    klaviyo_api_key_es: str = ""
    klaviyo_list_id_es: str = ""
    klaviyo_api_key_it: str = ""
    klaviyo_list_id_it: str = ""

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"  # Allow extra fields from .env
        populate_by_name = True


# Global settings instance
settings = Settings()
