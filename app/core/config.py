from decimal import Decimal
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional
from pydantic import field_validator

class Settings(BaseSettings):
    # Database settings
    POSTGRES_USER: str = 'billing_user'
    POSTGRES_PASSWORD: str = 'billing_pass'
    POSTGRES_DB: str = 'billing_db'
    POSTGRES_HOST: str = 'postgres'
    POSTGRES_PORT: int = 5432
    # Overrides the POSTGRES_* settings when provided (e.g. sqlite for tests)
    DATABASE_URL: Optional[str] = None

    # Redis settings
    REDIS_HOST: str = 'redis'
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: Optional[str] = None

    # JWT settings
    APP_SECRET_STRING: str = 'your-super-secret-key-here-change-in-production-2024'
    ALGORITHM: str = 'HS256'
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60

    # Pagination
    DEFAULT_PAGE_SIZE: int = 20
    MAX_PAGE_SIZE: int = 100

    # Email settings
    EMAIL_SMTP_SERVER: str = 'smtp.gmail.com'
    EMAIL_SMTP_PORT: int = 587
    EMAIL_USE_TLS: bool = True
    EMAIL_USERNAME: str = ''
    EMAIL_PASSWORD: str = ''
    EMAIL_FROM: str = ''
    EMAIL_FROM_NAME: str = 'Facturación'
    FRONTEND_URL: str = 'http://localhost:3000'

    # Invoice numbering and payment ledger
    INVOICE_NUMBER_FORMAT: str = 'numeric'  # numeric | yearly
    INVOICE_NUMBER_MAX_ATTEMPTS: int = 5
    INVOICE_NUMBER_RETRY_BACKOFF: float = 0.0  # seconds between attempts
    PAYMENT_TOLERANCE: Decimal = Decimal('0.005')

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = True

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+psycopg2://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @property
    def redis_url(self) -> str:
        if self.REDIS_PASSWORD:
            return f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    @property
    def email_configured(self) -> bool:
        return bool(self.EMAIL_FROM and self.EMAIL_USERNAME)

    model_config = SettingsConfigDict(
        extra="allow",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True
    )

    @field_validator("DEBUG", mode="before")
    @classmethod
    def parse_debug(cls, v):
        if isinstance(v, str):
            return v.lower().strip('"').strip("'") in ("true", "1", "yes", "on")
        return bool(v)

    @field_validator("EMAIL_USE_TLS", mode="before")
    @classmethod
    def parse_email_tls(cls, v):
        if isinstance(v, str):
            return v.lower().strip('"').strip("'") in ("true", "1", "yes", "on")
        return bool(v)

    @field_validator("INVOICE_NUMBER_FORMAT", mode="before")
    @classmethod
    def parse_number_format(cls, v):
        value = str(v).lower().strip('"').strip("'")
        # "year" es el nombre heredado del formato anual
        if value == "year":
            value = "yearly"
        if value not in ("numeric", "yearly"):
            raise ValueError("INVOICE_NUMBER_FORMAT debe ser 'numeric' o 'yearly'")
        return value

    @field_validator("INVOICE_NUMBER_MAX_ATTEMPTS")
    @classmethod
    def parse_max_attempts(cls, v):
        if v < 1:
            raise ValueError("INVOICE_NUMBER_MAX_ATTEMPTS debe ser al menos 1")
        return v

settings = Settings()
