from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    # Security
    KNOT_SECRET_KEY: str = "dev-secret-change-me"

    # Database
    KNOT_DB_URL: str = "sqlite:///./knotscore.db"

    # Seed
    KNOT_DEFAULT_EVENT_SLUG: str = "draci-smycka"
    KNOT_SEED_ON_STARTUP: bool = True

    # Attempts
    MAX_ATTEMPT_CENTISECONDS: int = 20 * 60 * 100
    TOKEN_LENGTH: int = 8

    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = True

settings = Settings()
