from datetime import timedelta
from functools import lru_cache
from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Core settings
    environment: str = Field("development", alias="ENVIRONMENT")
    app_env: str = Field("dev", alias="APP_ENV")
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    database_url: str = Field("sqlite:///./visit_tracker.db", alias="DATABASE_URL")
    migrate_on_start: bool = Field(False, alias="MIGRATE_ON_START")
    session_secret_key: str = Field("change-me", alias="SESSION_SECRET_KEY")

    # Tracking behaviour
    enabled: bool = Field(True, alias="TRACKING_ENABLED")  # global kill-switch
    new_visit_reasons: str = Field(
        "visit_stale,attribution_changed,referer_changed,user_agent_changed",
        alias="NEW_VISIT_REASONS",
    )  # comma list, evaluated as OR
    visit_timeout_minutes: int = Field(30, alias="VISIT_TIMEOUT_MINUTES")
    blank_user_agent_string: str = Field("(blank)", alias="BLANK_USER_AGENT_STRING")

    # Cookie transport (passed through, not used by the engine itself)
    cookie_name: str = Field("visitor", alias="COOKIE_NAME")
    secure_cookie: bool = Field(False, alias="SECURE_COOKIE")

    # Interning
    intern_max_attempts: int = Field(3, alias="INTERN_MAX_ATTEMPTS")
    cookie_cache_size: int = Field(100, alias="COOKIE_CACHE_SIZE")
    user_agent_cache_size: int = Field(100, alias="USER_AGENT_CACHE_SIZE")
    attribution_cache_size: int = Field(50, alias="ATTRIBUTION_CACHE_SIZE")
    referer_cache_size: int = Field(50, alias="REFERER_CACHE_SIZE")
    domain_cache_size: int = Field(50, alias="DOMAIN_CACHE_SIZE")
    path_cache_size: int = Field(50, alias="PATH_CACHE_SIZE")
    query_string_cache_size: int = Field(50, alias="QUERY_STRING_CACHE_SIZE")
    owner_cache_size: int = Field(50, alias="OWNER_CACHE_SIZE")

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "allow"  # Allow extra environment variables

    @property
    def visit_timeout(self) -> timedelta:
        return timedelta(minutes=self.visit_timeout_minutes)


@lru_cache
def get_settings() -> Settings:
    return Settings()


def reset_settings():
    """Clear cached settings (useful in tests when env vars change)."""
    get_settings.cache_clear()


def parse_new_visit_reasons(raw: str | None) -> list[str]:
    if not raw:
        return []
    reasons: list[str] = []
    for r in raw.split(","):
        r = r.strip()
        if r and r not in reasons:
            reasons.append(r)
    return reasons
