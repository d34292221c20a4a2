from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Built once at startup and handed to every component constructor.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database
    DATABASE_URL: str = "sqlite:///./concierge.db"

    # Logging
    LOG_LEVEL: str = "INFO"
    SERVICE_NAME: str = "WhatsApp Concierge Webhook"

    # Phone numbers
    COUNTRY_CODE: str = "213"
    # Messages coming from this number are our own echoes
    ASSISTANT_PHONE: Optional[str] = None

    # Persona
    ASSISTANT_NAME: str = "Sarah"
    SALON_NAME: str = "ZenStyle"
    GREETING_PHRASE: str = "السلام عليكم لالة"
    FALLBACK_REPLY: str = "دقيقة برك لالة نثبت ونرجعلك."

    # Reply generator (OpenAI-compatible chat completions)
    LLM_API_KEY: Optional[str] = None
    LLM_BASE_URL: str = "https://openrouter.ai/api/v1"
    LLM_MODEL: str = "openai/gpt-4o-mini"
    LLM_TEMPERATURE: float = 0.6
    LLM_MAX_TOKENS: int = 150
    LLM_TIMEOUT_SECONDS: float = 60.0

    # Outbound transport (Whapi gateway)
    WHAPI_TOKEN: Optional[str] = None
    WHAPI_URL: str = "https://gate.whapi.cloud/messages/text"
    WHAPI_TIMEOUT_SECONDS: float = 30.0

    # When False, one failing item aborts the whole delivery with a 500
    ISOLATE_ITEM_FAILURES: bool = True

    CORS_ALLOW_ORIGINS: str = "*"

    @property
    def cors_origins(self) -> list[str]:
        origins = [origin.strip() for origin in self.CORS_ALLOW_ORIGINS.split(",") if origin.strip()]
        return origins or ["*"]


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()
