from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    APP_NAME: str = "paybill"
    version: str = "0.1.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    APP_DATABASE_DSN: str = "sqlite:////tmp/paybill.db"
    REDIS_URL: str = "redis://localhost:6379"

    # Identity tokens
    JWT_SECRET: str = "change-me-to-a-long-random-secret-value"
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRES_MINUTES: int = 60 * 24

    # M-Pesa Daraja settings
    MPESA_ENV: str = "sandbox"  # "sandbox" or "production"
    MPESA_CONSUMER_KEY: str = ""
    MPESA_CONSUMER_SECRET: str = ""
    MPESA_SHORTCODE: str = "174379"
    MPESA_PASSKEY: str = ""
    MPESA_CALLBACK_URL: str = "https://example.com/api/payments/callback"
    MPESA_TIMEOUT_SECONDS: float = 30.0
    MPESA_TOKEN_SAFETY_MARGIN_SECONDS: int = 600
    MPESA_COUNTRY_CODE: str = "254"

    # Pending attempts older than this are polled by the worker sweep
    STALE_PENDING_MINUTES: int = 5

    # CORS
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    @property
    def mpesa_base_url(self) -> str:
        if self.MPESA_ENV == "production":
            return "https://api.safaricom.co.ke"
        return "https://sandbox.safaricom.co.ke"


settings = Settings()
