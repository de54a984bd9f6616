from decimal import Decimal

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator


class Settings(BaseSettings):
    app_name: str = "Payout Processing Core"
    debug: bool = False
    log_level: str = "INFO"

    database_url: str

    secret_key: str
    access_token_algorithm: str = "HS256"

    webhook_secret: str
    webhook_timeout_seconds: int = 300

    supported_currencies: list[str] = ["EUR", "USD", "GBP"]
    default_currency: str = "EUR"
    min_payout_amount: Decimal = Decimal("10.00")
    max_payout_methods_per_user: int = 10

    rail_mode: str = "mock"
    rail_base_urls: dict[str, str] = {
        "bank": "http://localhost:8100/bank",
        "card": "http://localhost:8100/card",
        "wallet": "http://localhost:8100/wallet",
        "crypto": "http://localhost:8100/crypto",
        "cash_pickup": "http://localhost:8100/cash-pickup",
    }
    rail_api_key: str = ""
    rail_submit_timeout_seconds: float = 10.0
    rail_status_timeout_seconds: float = 10.0
    mock_rail_auto_settle: bool = False

    ambiguity_timeout_seconds: int = 300
    max_ambiguous_seconds: int = 86400
    pending_dispatch_grace_seconds: int = 120

    reconciliation_enabled: bool = True
    reconciliation_interval_seconds: int = 60
    reconciliation_batch_size: int = 100

    notification_webhook_url: str | None = None
    notification_timeout_seconds: float = 5.0

    cors_allow_origins: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    @field_validator("secret_key")
    @classmethod
    def validate_secret_key(cls, v: str) -> str:
        if not v:
            raise ValueError("SECRET_KEY is required")
        return v

    @field_validator("webhook_secret")
    @classmethod
    def validate_webhook_secret(cls, v: str) -> str:
        if not v:
            raise ValueError("WEBHOOK_SECRET is required")
        return v

    @field_validator("supported_currencies")
    @classmethod
    def normalize_currencies(cls, v: list[str]) -> list[str]:
        return [code.upper() for code in v]

    @field_validator("rail_mode")
    @classmethod
    def validate_rail_mode(cls, v: str) -> str:
        if v not in ("mock", "http"):
            raise ValueError("rail_mode must be 'mock' or 'http'")
        return v

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


    @field_validator("database_url")
    @classmethod
    def validate_db_url(cls, v: str) -> str:
        if not v:
            raise ValueError("DATABASE_URL is required")
        valid_prefixes = [
            "postgresql+asyncpg://",
            "postgresql://",
            "sqlite+aiosqlite://",
            "sqlite://"
        ]
        if not any(v.startswith(prefix) for prefix in valid_prefixes):
            raise ValueError("database_url must start with postgresql://, postgresql+asyncpg://, sqlite://, or sqlite+aiosqlite://")
        return v

settings = Settings()
