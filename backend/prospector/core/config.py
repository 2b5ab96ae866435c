from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # core
    ENV: str = "dev"
    API_PREFIX: str = "/api"

    # database & redis
    # Plain strings so sqlite:// (tests) and redis:// URLs are always accepted
    DATABASE_URL: str
    REDIS_URL: str = "redis://localhost:6379/0"

    # language-model gateway (OpenAI-compatible, must support tool calling)
    OPENROUTER_API_KEY: str | None = None
    OPENAI_API_KEY: str | None = None
    LLM_BASE_URL: str | None = None
    LLM_MODEL: str = "google/gemini-2.5-flash"
    SYNTHESIS_MODEL: str | None = None  # falls back to LLM_MODEL
    # Hard cap on concurrent LLM calls per process
    LLM_MAX_CONCURRENCY: int = 4
    LLM_TIMEOUT_SECONDS: float = 90.0

    # search-augmented model used by the research agents
    PERPLEXITY_API_KEY: str | None = None
    SEARCH_BASE_URL: str = "https://api.perplexity.ai"
    SEARCH_MODEL: str = "sonar-pro"
    SEARCH_RECENCY_FILTER: str = "year"
    AGENT_TIMEOUT_SECONDS: float = 120.0

    # geocoding
    MAPBOX_ACCESS_TOKEN: str | None = None
    MAPBOX_BASE_URL: str = "https://api.mapbox.com/geocoding/v5/mapbox.places"
    GEOCODE_BATCH_SIZE: int = 3
    GEOCODER_TIMEOUT_SECONDS: float = 10.0
    GEOCODE_CACHE_TTL_SECONDS: int = 60 * 60 * 24 * 30

    # discovery
    DISCOVERY_DEFAULT_LIMIT: int = 8
    DISCOVERY_MAX_LIMIT: int = 25
    SESSION_DEDUPE_HOURS: int = 24
    # Jobs stuck in "running" longer than this are re-queued by the session reader
    JOB_TIMEOUT_SECONDS: int = 120

    # auth / security
    API_AUTH_KEY: str | None = None
    JWT_SECRET: str | None = None
    JWT_ALGORITHM: str = "HS256"
    JWT_AUDIENCE: str | None = None
    FRONTEND_ORIGIN: str | None = None
    # Explicit debug-only switch for wide-open CORS in non-prod envs
    CORS_ALLOW_ALL_ORIGINS: bool = False

    class Config:
        env_file = ".env"
        case_sensitive = True


@lru_cache
def get_settings() -> Settings:
    return Settings()
