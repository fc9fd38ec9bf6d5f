from pydantic_settings import BaseSettings
from pathlib import Path


class Settings(BaseSettings):
    ENVIRONMENT: str = "development"  # development | test | staging | production
    APP_NAME: str = "Health Event Logger"
    DATABASE_URL: str = "sqlite:///data/health_events.db"
    DATA_DIR: Path = Path("data")
    UPLOAD_DIR: Path = Path("data/uploads")
    MAX_IMAGE_SIZE_MB: int = 4
    CORS_ORIGINS: list[str] = [
        "http://localhost:8081",
        "http://localhost:19006",
    ]
    DEFAULT_AI_PROVIDER: str = "anthropic"  # anthropic | google
    AI_API_KEY: str | None = None  # used when a request carries no key of its own
    CLASSIFIER_MODEL: str | None = None
    VISION_MODEL: str | None = None
    CLASSIFIER_TIMEOUT_SECONDS: int = 30
    VISION_TIMEOUT_SECONDS: int = 45
    PRODUCT_SEARCH_TIMEOUT_SECONDS: int = 8
    PRODUCT_SEARCH_CIRCUIT_FAIL_THRESHOLD: int = 3
    PRODUCT_SEARCH_CIRCUIT_OPEN_SECONDS: int = 60
    OPENFOODFACTS_SEARCH_URL: str = "https://world.openfoodfacts.org/cgi/search.pl"
    USDA_SEARCH_URL: str = "https://api.nal.usda.gov/fdc/v1/foods/search"
    USDA_API_KEY: str | None = None
    USER_HISTORY_LIMIT: int = 50
    APP_LOG_PERSIST: bool = False

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def is_production_like(self) -> bool:
        return (self.ENVIRONMENT or "").strip().lower() in {"production", "prod", "staging"}

    def validate_runtime_configuration(self) -> None:
        if not self.is_production_like:
            return

        errors: list[str] = []
        if self.DATABASE_URL == "sqlite:///data/health_events.db":
            errors.append("DATABASE_URL must point at a managed database")
        if self.DEFAULT_AI_PROVIDER not in {"anthropic", "google"}:
            errors.append(f"DEFAULT_AI_PROVIDER `{self.DEFAULT_AI_PROVIDER}` is not supported")
        if errors:
            joined = "; ".join(errors)
            raise RuntimeError(f"Invalid production configuration: {joined}")


settings = Settings()
settings.DATA_DIR.mkdir(parents=True, exist_ok=True)
settings.UPLOAD_DIR.mkdir(parents=True, exist_ok=True)
