from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # PostgreSQL
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_user: str = "imagegen"
    postgres_password: str = "changeme"
    postgres_db: str = "imagegen"

    @property
    def postgres_url(self) -> str:
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # "postgres" in deployments, "memory" for local demos and tests
    persistence_backend: str = "postgres"

    # Redis (Celery broker/backend)
    redis_url: str = "redis://localhost:6379/0"

    # Auth
    jwt_secret_key: str = "change-this-to-a-random-string"
    jwt_access_token_expire_minutes: int = 30
    jwt_algorithm: str = "HS256"

    # Encryption for provider credentials
    fernet_key: str = ""

    # Object storage holding reference images
    storage_url: str = "http://localhost:54321"
    storage_public_url: str = ""  # defaults to storage_url
    storage_bucket: str = "reference-images"
    storage_service_key: str = ""

    # Generation
    generation_timeout_seconds: float = 90.0
    batch_request_delay_seconds: float = 2.0
    batch_estimate_hours: float = 2.0
    batch_backend: str = "inprocess"  # inprocess | celery
    batch_max_concurrent_jobs: int = 4

    # Generation policy
    maintenance_mode: bool = False
    maintenance_message: str = "Image generation is temporarily unavailable for maintenance."
    allow_fast_mode: bool = True
    allow_relaxed_mode: bool = True

    # Rate limiting (slowapi)
    rate_limit_enabled: bool = True
    generate_rate_limit: str = "20/minute"

    # App
    app_env: str = "development"
    app_debug: bool = True
    app_host: str = "0.0.0.0"
    app_port: int = 8000

    # CORS
    allowed_origins: str = "*"  # comma-separated

    # Logging
    log_level: str = "INFO"
    log_json: bool = False  # set True in production for structured JSON logs

    # Sentry
    sentry_dsn: str = ""  # leave empty to disable


settings = Settings()


def validate_settings_for_production() -> None:
    """Validate critical settings. Called on startup in non-test environments."""
    errors: list[str] = []

    if settings.jwt_secret_key in ("change-this-to-a-random-string", ""):
        errors.append("JWT_SECRET_KEY must be set to a secure random value")
    elif len(settings.jwt_secret_key) < 32:
        errors.append("JWT_SECRET_KEY must be at least 32 characters")

    if settings.persistence_backend == "postgres" and not settings.fernet_key:
        errors.append(
            'FERNET_KEY must be set (generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())")'
        )

    if settings.batch_backend not in ("inprocess", "celery"):
        errors.append("BATCH_BACKEND must be 'inprocess' or 'celery'")

    if settings.persistence_backend not in ("postgres", "memory"):
        errors.append("PERSISTENCE_BACKEND must be 'postgres' or 'memory'")

    if settings.app_env == "production":
        if settings.allowed_origins == "*":
            errors.append("ALLOWED_ORIGINS must not be '*' in production")
        if settings.app_debug:
            errors.append("APP_DEBUG must be false in production")
        if settings.persistence_backend == "memory":
            errors.append("PERSISTENCE_BACKEND=memory is not allowed in production")

    if errors:
        raise SystemExit("Configuration errors:\n  - " + "\n  - ".join(errors))
