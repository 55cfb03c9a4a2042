"""Application configuration loaded from environment variables."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Typed settings exposed via dependency injection throughout the app."""

    # Read .env with BOM tolerance; case-sensitive keys
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8-sig",
        case_sensitive=True,
    )

    APP_NAME: str = "CDN Purge API"
    ENV: str = "dev"  # dev | staging | prod
    DEBUG: bool = False

    # CORS
    CORS_ALLOWED_ORIGINS: list[str] = Field(default_factory=list)

    # DB
    DB_HOST: str = "127.0.0.1"
    DB_PORT: int = 3306
    DB_USER: str = "appadmin"
    DB_PASSWORD: str = ""  # set via env/.env
    DB_NAME: str = "cdn_purge"
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 3600
    DB_ISOLATION_LEVEL: str = "READ COMMITTED"
    # Full SQLAlchemy URL; overrides the DB_* parts above when set.
    SQLALCHEMY_DATABASE_URI: str | None = None
    DB_AUTO_CREATE: bool = True

    # Active CDN provider and its settings blob as stored by the CMS.
    # CDN_PROVIDER is one of CloudFront | Cloudflare | AzureFrontDoor | Sucuri | None.
    CDN_PROVIDER: str = "None"
    CDN_CONFIG_JSON: str | None = None

    # Batches of one request submitted in parallel.
    CDN_MAX_CONCURRENCY: int = 4
    # Provider calls run in worker threads; this bounds them per process.
    CDN_MAX_PROVIDER_THREADS: int = 8
    CDN_HTTP_TIMEOUT_SEC: float = 30.0
    CDN_RETRY_ATTEMPTS: int = 4
    CDN_RETRY_BASE_DELAY: float = 0.5
    CDN_RETRY_MAX_DELAY: float = 30.0
    CDN_RETRY_JITTER: float = 0.25
    CALLER_REFERENCE_PREFIX: str = "cdn-purge"

    # Paths per provider request. Only the CloudFront ceiling is fixed by the
    # provider's API; the others follow each provider's current documentation.
    CLOUDFRONT_MAX_PATHS: int = 3000
    CLOUDFLARE_MAX_PATHS: int = 30
    AZURE_FRONT_DOOR_MAX_PATHS: int = 100
    SUCURI_MAX_PATHS: int = 20
    NONE_MAX_PATHS: int = 3000

    # Upper bound for callers that wait on a submission.
    SUBMIT_MAX_WAIT_SEC: float = 60.0
    SHUTDOWN_GRACE_SEC: float = 10.0
    # Rate limit for the submit endpoints. See cdn_purge.core.rate_limit.limiter.
    SUBMIT_RATE: str = "120/minute"
    # Largest accepted request body; 3000+ paths fit comfortably.
    MAX_REQUEST_BYTES: int = 2 * 1024 * 1024  # 2 MB

    @property
    def DATABASE_URL(self) -> str:
        if self.SQLALCHEMY_DATABASE_URI:
            return self.SQLALCHEMY_DATABASE_URI
        return (
            f"mysql+aiomysql://{self.DB_USER}:{self.DB_PASSWORD}"
            f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}?charset=utf8mb4"
        )


settings = Settings()
