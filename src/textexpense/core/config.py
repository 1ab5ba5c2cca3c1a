from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    environment: str = "dev"

    google_vision_enabled: bool = False
    google_vision_api_key: str | None = None
    google_vision_project_id: str | None = None
    google_vision_base_url: str = "https://vision.googleapis.com/v1"
    ocr_timeout_seconds: float = 20.0

    tesseract_lang: str = "eng"
    tesseract_cmd: str | None = None

    receipt_ai_enabled: bool = False
    openai_api_key: str | None = None
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-4o-mini"
    receipt_ai_max_tokens: int = 1000
    receipt_ai_temperature: float = 0.1
    receipt_ai_timeout_seconds: float = 45.0
    receipt_ai_max_chars: int = 12000

    # Last resort when neither the receipt nor the caller names a currency.
    default_currency: str = "INR"

    pdf_raster_dpi: int = 300
    raster_temp_dir: Path | None = None

    max_upload_mb: int = 10


settings = Settings()
