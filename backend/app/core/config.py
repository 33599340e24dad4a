from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # core
    ENV: str = "dev"

    # database & redis
    # Plain strings so sqlite:// and redis:// URLs are always accepted
    DATABASE_URL: str = "sqlite:///./research.db"
    REDIS_URL: str = "redis://localhost:6379/0"

    # external APIs
    OPENROUTER_API_KEY: str | None = None
    OPENAI_API_KEY: str | None = None
    FRONTEND_ORIGIN: str | None = None

    # llm
    LLM_MODEL: str = "openai/gpt-5.1"
    # Hard cap on concurrent LLM calls per process
    LLM_MAX_CONCURRENCY: int = 4
    LLM_MAX_TOKENS: int = 8000
    LLM_TEMPERATURE: float = 0.2
    LLM_TIMEOUT_SECONDS: float = 180.0

    # retry / circuit breaker around the LLM provider
    LLM_MAX_RETRIES: int = 3
    LLM_RETRY_BASE_DELAY_MS: int = 2000
    LLM_RETRY_MAX_DELAY_MS: int = 30000
    LLM_CIRCUIT_FAILURE_THRESHOLD: int = 3
    LLM_CIRCUIT_COOLDOWN_MS: int = 5 * 60 * 1000

    class Config:
        env_file = ".env"
        case_sensitive = True


@lru_cache
def get_settings() -> Settings:
    return Settings()
