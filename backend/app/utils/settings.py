from functools import lru_cache

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    app_env: str = Field(default="dev", alias="APP_ENV")
    database_url: str = Field(default="sqlite:///./app.db", alias="DATABASE_URL")
    redis_url: str = Field(default="redis://redis:6379/0", alias="REDIS_URL")
    allowed_origins: str = Field(default="http://localhost:5173", alias="ALLOWED_ORIGINS")
    scheduler_token: str | None = Field(default=None, alias="SCHEDULER_TOKEN")

    tomtom_api_key: str | None = Field(default=None, alias="TOMTOM_API_KEY")
    tomtom_base_url: str = Field(default="https://api.tomtom.com", alias="TOMTOM_BASE_URL")
    traffic_timeout_seconds: float = Field(default=10.0, gt=0, alias="TRAFFIC_TIMEOUT_SECONDS")
    traffic_sample_points: int = Field(default=10, ge=1, alias="TRAFFIC_SAMPLE_POINTS")
    traffic_max_incidents: int = Field(default=10, ge=0, alias="TRAFFIC_MAX_INCIDENTS")

    open_meteo_url: str = Field(default="https://api.open-meteo.com/v1/forecast", alias="OPEN_METEO_URL")
    weather_timeout_seconds: float = Field(default=10.0, gt=0, alias="WEATHER_TIMEOUT_SECONDS")
    weather_cache_ttl_seconds: int = Field(default=300, ge=0, alias="WEATHER_CACHE_TTL_SECONDS")
    provider_max_attempts: int = Field(default=2, ge=1, alias="PROVIDER_MAX_ATTEMPTS")

    feature_ai_planner: bool = Field(default=False, alias="FEATURE_AI_PLANNER")
    ai_planner_url: str = Field(
        default="https://api.euron.one/api/v1/euri/chat/completions",
        alias="AI_PLANNER_URL",
    )
    ai_planner_model: str = Field(default="gpt-4.1-nano", alias="AI_PLANNER_MODEL")
    ai_planner_api_key: str | None = Field(default=None, alias="AI_PLANNER_API_KEY")
    ai_planner_timeout_seconds: float = Field(default=60.0, gt=0, alias="AI_PLANNER_TIMEOUT_SECONDS")

    feature_route_monitor: bool = Field(default=True, alias="FEATURE_ROUTE_MONITOR")
    monitor_interval_seconds: int = Field(default=300, ge=10, alias="MONITOR_INTERVAL_SECONDS")
    monitor_max_concurrency: int = Field(default=8, ge=1, alias="MONITOR_MAX_CONCURRENCY")
    monitor_auto_reoptimize: bool = Field(default=False, alias="MONITOR_AUTO_REOPTIMIZE")
    snapshot_retention_hours: int = Field(default=24, ge=1, alias="SNAPSHOT_RETENTION_HOURS")

    @field_validator(
        "scheduler_token",
        "tomtom_api_key",
        "ai_planner_api_key",
        mode="before",
    )
    @classmethod
    def _normalize_optional_secret(cls, value: object) -> str | None:
        if value is None:
            return None
        cleaned = str(value).strip()
        return cleaned or None

    @field_validator(
        "database_url",
        "tomtom_base_url",
        "open_meteo_url",
        "ai_planner_url",
        "ai_planner_model",
        mode="before",
    )
    @classmethod
    def _normalize_required_strings(cls, value: object) -> str:
        return str(value or "").strip()

    @property
    def cors_origins(self) -> list[str]:
        return [item.strip() for item in self.allowed_origins.split(",") if item.strip()]

    @property
    def ai_planner_enabled(self) -> bool:
        return bool(self.feature_ai_planner and self.ai_planner_api_key and self.ai_planner_url)

    @property
    def is_production_mode(self) -> bool:
        return str(self.app_env or "").strip().lower() in {"prod", "production"}

    @model_validator(mode="after")
    def _validate_required_production_settings(self) -> "Settings":
        if not self.is_production_mode:
            return self

        missing: list[str] = []
        if not self.database_url:
            missing.append("DATABASE_URL")
        elif self.database_url.startswith("sqlite"):
            raise ValueError("DATABASE_URL must not use sqlite in production.")

        if not self.scheduler_token:
            missing.append("SCHEDULER_TOKEN")
        if self.feature_route_monitor and not self.tomtom_api_key:
            missing.append("TOMTOM_API_KEY")

        if missing:
            joined = ", ".join(sorted(set(missing)))
            raise ValueError(f"Missing required production settings: {joined}")

        if self.feature_ai_planner and not self.ai_planner_api_key:
            raise ValueError("AI_PLANNER_API_KEY is required when FEATURE_AI_PLANNER=true.")

        return self


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
