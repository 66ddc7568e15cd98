from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional, List
from pydantic import field_validator

class Settings(BaseSettings):
    # Database settings
    POSTGRES_USER: str = 'ebilling_user'
    POSTGRES_PASSWORD: str = 'ebilling_pass'
    POSTGRES_DB: str = 'ebilling_db'
    POSTGRES_HOST: str = 'postgres'
    POSTGRES_PORT: int = 5432
    DATABASE_URL: Optional[str] = None

    # Redis settings
    REDIS_HOST: str = 'redis'
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: Optional[str] = None

    # JWT settings (operadores internos)
    APP_SECRET_STRING: str = 'your-super-secret-key-here-change-in-production-2024'
    ALGORITHM: str = 'HS256'
    INTERNAL_TOKEN_EXPIRE_MINUTES: int = 8 * 60

    # MATIAS (proveedor de facturación electrónica DIAN)
    MATIAS_ENCRYPTION_KEY: Optional[str] = None
    MATIAS_AUTH_URL: str = 'https://api-v2.matias-api.com'
    MATIAS_API_URL: str = 'https://api-v2.matias-api.com/api/ubl2.1'
    MATIAS_REQUEST_TIMEOUT_SECONDS: float = 30.0
    MATIAS_CONNECTION_TEST_TIMEOUT_SECONDS: float = 15.0
    MATIAS_TOKEN_DEFAULT_TTL_SECONDS: int = 31536000  # 1 año
    MATIAS_MAX_RETRIES: int = 3
    MATIAS_DIAN_QR_URL: str = 'https://catalogo-vpfe.dian.gov.co/User/SearchDocument?DocumentKey='

    # Cola de documentos
    DOCUMENT_BATCH_SIZE: int = 10
    RETRY_BATCH_SIZE: int = 5
    DOCUMENT_PROCESS_INTERVAL_SECONDS: int = 60
    DOCUMENT_RECONCILE_INTERVAL_SECONDS: int = 300

    # Alertas de consumo
    EBILLING_ALERT_EMAILS: str = ''

    # Email settings
    EMAIL_SMTP_SERVER: str = 'smtp.gmail.com'
    EMAIL_SMTP_PORT: int = 587
    EMAIL_USE_TLS: bool = True
    EMAIL_USERNAME: str = ''
    EMAIL_PASSWORD: str = ''
    EMAIL_FROM: str = ''
    EMAIL_FROM_NAME: str = 'E-Billing Ops'

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = True

    @property
    def async_database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @property
    def redis_url(self) -> str:
        if self.REDIS_PASSWORD:
            return f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    @property
    def alert_recipients(self) -> List[str]:
        return [e.strip() for e in self.EBILLING_ALERT_EMAILS.split(",") if e.strip()]

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

settings = Settings()
