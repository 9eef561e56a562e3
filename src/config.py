"""Configuration management using Pydantic settings."""
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application Settings
    environment: str = "development"
    port: int = 8000
    host: str = "0.0.0.0"
    log_level: str = "INFO"
    log_to_file: bool = True

    # Twilio WhatsApp
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_whatsapp_number: str = ""
    verify_webhook_signature: bool = True

    # OpenAI (fallback classifier, Whisper, OCR)
    openai_api_key: str = ""
    fallback_model: str = "gpt-4o-mini"
    fallback_temperature: float = 0.0
    fallback_timeout_seconds: float = 3.0
    enable_llm_fallback: bool = True
    whisper_model: str = "whisper-1"
    ocr_model: str = "gpt-4o-mini"
    media_timeout_seconds: float = 20.0

    # Supabase
    supabase_url: str = ""
    supabase_service_role_key: str = ""

    # LangSmith tracing
    langchain_api_key: str = ""
    langchain_tracing_v2: bool = False
    langchain_project: str = "ledgerline"

    # State backend: "supabase" or "memory"
    state_backend: str = "supabase"

    # Per-user lock
    lock_ttl_seconds: int = 15
    lock_wait_seconds: float = 2.0
    lock_retry_interval_seconds: float = 0.25
    lock_busy_policy: str = "reply"  # Options: reply, fail_open

    # Idempotency & pending actions
    idempotency_ttl_hours: int = 24
    idempotency_claim_ttl_seconds: int = 120  # In-progress claims; extended to the full window on completion
    pending_ttl_minutes: int = 30
    enable_auto_advance: bool = True

    # Pipeline
    safety_timeout_seconds: float = 8.0
    cleanup_interval_seconds: int = 300
    fuzzy_match_floor: float = 0.80
    default_timezone: str = "America/Toronto"

    # Rate Limiting
    rate_limit_per_minute: int = 30

    # Monitoring (Optional)
    sentry_dsn: str = ""
    enable_sentry: bool = False

    # Development
    debug: bool = False
    hot_reload: bool = True

    @property
    def llm_fallback_enabled(self) -> bool:
        """Fallback classifier runs only when enabled and a key is present."""
        return self.enable_llm_fallback and bool(self.openai_api_key)

    @property
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.environment.lower() == "development"


# Global settings instance
settings = Settings()
