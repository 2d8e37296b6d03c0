from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_ignore_empty=True)

    DATABASE_URL: str = "sqlite:///./data/splitscan.db"

    JWT_SECRET: str = "change-me"
    jwt_alg: str = "HS256"
    access_token_expire_minutes: int = 1440

    # empty key = OCR disabled, jobs fail with "not configured"
    OPENAI_API_KEY: str = ""
    OPENAI_OCR_MODEL: str = "gpt-4o-mini"
    OCR_MAX_ATTEMPTS: int = 3
    OCR_RETRY_BASE_DELAY_SECONDS: float = 1.0
    OCR_TIMEOUT_SECONDS: float = 60.0

    UPLOAD_DIR: str = "data/uploads"
    OCR_ARTIFACT_DIR: str = "data/ocr"
    MAX_UPLOAD_BYTES: int = 10 * 1024 * 1024
    MAX_IMAGE_WIDTH: int = 2000
    JPEG_QUALITY: int = 85

    # empty url = push notifications disabled, clients fall back to polling
    REDIS_URL: str = ""

    WORKER_ID: str = "worker-1"
    WORKER_POLL_SECONDS: float = 2.0
    WORKER_CONCURRENCY: int = 2
    # retries after the first run, one delay per retry
    TASK_MAX_RETRIES: int = 3
    TASK_RETRY_DELAYS_SECONDS: list[int] = [30, 60, 120]
    # must outlast a job whose OCR call uses every inner attempt
    TASK_LOCK_TIMEOUT_SECONDS: int = 600

    OCR_ARTIFACT_RETENTION_DAYS: int = 30
    CLEANUP_HOUR_UTC: int = 2

    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    CORS_ORIGINS: list[str] = ["http://localhost:5173"]


settings = Settings()
