from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "ExamEngine Attempts"
    env: str = "dev"
    cors_origins: str = "http://localhost:3000"
    log_level: str = "INFO"

    storage_backend: str = "inmemory"  # inmemory|mongo
    mongodb_uri: str = "mongodb://localhost:27017"
    mongodb_db: str = "examengine"

    # queue: asyncio worker pool fed by Submit; background: FastAPI BackgroundTasks
    scoring_dispatch: str = "queue"
    max_worker_concurrency: int = 4
    replay_unscored_on_startup: bool = True

    max_batch_answers: int = 200
    violation_termination_threshold: int = 3
    leaderboard_default_limit: int = 25

    jwt_secret_key: str = "examengine-secret-key-change-in-production"
    jwt_algorithm: str = "HS256"
    jwt_expire_minutes: int = 1440

    # Observability (OpenTelemetry)
    observability_enabled: bool = True
    otel_service_name: str = "examengine-attempts"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_console: bool = False
    otel_sample_rate: float = 0.1


settings = Settings()
