"""Application configuration using Pydantic Settings."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Application
    app_name: str = "Bizmate"
    debug: bool = False
    public_base_url: str = "http://localhost:8000"

    # Database
    database_url: str = "sqlite+aiosqlite:///./bizmate.db"

    # Redis
    redis_url: str = "redis://localhost:6379/0"
    event_dedupe_ttl_seconds: int = 86400  # 24 hours

    # Xero OAuth
    xero_client_id: str = ""
    xero_client_secret: str = ""
    xero_redirect_uri: str = "http://localhost:8000/callback"
    xero_scopes: str = (
        "openid profile email accounting.transactions accounting.contacts "
        "accounting.reports.read accounting.settings.read offline_access"
    )
    xero_auth_url: str = "https://login.xero.com/identity/connect/authorize"
    xero_token_url: str = "https://identity.xero.com/connect/token"
    xero_connections_url: str = "https://api.xero.com/connections"
    xero_api_base: str = "https://api.xero.com/api.xro/2.0"
    xero_token_refresh_margin_seconds: int = 300  # 5 minutes
    xero_auth_state_ttl_seconds: int = 600  # 10 minutes
    xero_request_timeout: float = 30.0

    # LLM Configuration (any OpenAI-compatible chat completions API)
    llm_api_key: str = ""
    llm_base_url: str = "https://api.moonshot.cn/v1"
    llm_model: str = "kimi-k2.5"
    llm_temperature: float = 0.3
    llm_timeout: float = 60.0
    max_tool_iterations: int = 8
    conversation_history_limit: int = 20

    # Pending invoice confirmation
    pending_invoice_ttl_minutes: int = 30

    # Feishu transport
    feishu_app_id: str = ""
    feishu_app_secret: str = ""
    feishu_encrypt_key: str = ""
    feishu_verification_token: str = ""
    feishu_base_url: str = "https://open.feishu.cn/open-apis"
    feishu_message_max_length: int = 7000
    feishu_send_max_attempts: int = 4
    feishu_send_backoff_seconds: float = 2.0
    event_processing_timeout: float | None = None

    # OCR providers
    baidu_ocr_api_key: str = ""
    baidu_ocr_secret_key: str = ""
    google_vision_api_key: str = ""
    ocr_timeout: float = 15.0

    # Encryption - empty string means not configured
    # For testing, set ENCRYPTION_KEY environment variable
    encryption_key: str = ""


# Create settings instance
settings = Settings()
