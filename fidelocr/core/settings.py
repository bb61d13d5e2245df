"""
Service settings loaded from the environment using Pydantic.

Values are read once and cached; use ``get_provider_settings()``,
``get_local_engine_settings()`` or ``get_app_settings()`` instead of
scattered os.getenv() calls. Per-request processing options live in
``ProcessingSettings`` (models.dto), not here.
"""

from functools import lru_cache
from typing import Optional

from pydantic import SecretStr
from pydantic_settings import BaseSettings


class ProviderSettings(BaseSettings):
    """Cloud vision provider credentials and endpoints."""

    GEMINI_API_KEY: Optional[SecretStr] = None
    OPENROUTER_API_KEY: Optional[SecretStr] = None
    OPENROUTER_BASE_URL: str = "https://openrouter.ai/api/v1"
    OPENROUTER_REFERER: str = "https://fidel-ocr.local"
    OPENROUTER_TITLE: str = "Fidel OCR"
    VISION_REQUEST_TIMEOUT_SECONDS: float = 60.0

    model_config = {"case_sensitive": True, "env_file": ".env", "extra": "ignore"}


class LocalEngineSettings(BaseSettings):
    """Tesseract binary and language data locations."""

    TESSERACT_CMD: Optional[str] = None
    TESSDATA_DIR: Optional[str] = None

    model_config = {"case_sensitive": True, "env_file": ".env", "extra": "ignore"}


class AppSettings(BaseSettings):
    """General application settings."""

    APP_NAME: str = "fidel-ocr"
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True
    MAX_FILE_SIZE_MB: int = 25

    model_config = {"case_sensitive": True, "env_file": ".env", "extra": "ignore"}


@lru_cache(maxsize=1)
def get_provider_settings() -> ProviderSettings:
    return ProviderSettings()


@lru_cache(maxsize=1)
def get_local_engine_settings() -> LocalEngineSettings:
    return LocalEngineSettings()


@lru_cache(maxsize=1)
def get_app_settings() -> AppSettings:
    return AppSettings()
