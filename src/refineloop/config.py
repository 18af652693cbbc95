"""Configuration management using Pydantic Settings."""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_MODEL = "claude-sonnet-4-20250514"


class LLMSettings(BaseSettings):
    """Completion provider configuration."""

    default_provider: Literal["anthropic", "openai"] = Field(
        "anthropic", alias="DEFAULT_LLM_PROVIDER"
    )
    anthropic_api_key: str = Field("", alias="ANTHROPIC_API_KEY")
    openai_api_key: str = Field("", alias="OPENAI_API_KEY")
    openai_base_url: str | None = Field(None, alias="OPENAI_BASE_URL")
    timeout_ms: int = Field(60000, alias="LLM_TIMEOUT_MS", ge=1000)
    generator_model: str = Field(DEFAULT_MODEL, alias="GENERATOR_MODEL")
    evaluator_model: str = Field(DEFAULT_MODEL, alias="EVALUATOR_MODEL")
    generator_max_tokens: int = 4096
    evaluator_max_tokens: int = 2048
    generator_temperature: float = 0.7
    evaluator_temperature: float = 0.3


class RetrySettings(BaseSettings):
    """Backoff configuration for remote calls."""

    max_attempts: int = Field(3, alias="RETRY_MAX_ATTEMPTS", ge=1)
    initial_delay_ms: int = Field(1000, alias="RETRY_INITIAL_DELAY_MS", ge=0)
    max_delay_ms: int = Field(10000, alias="RETRY_MAX_DELAY_MS", ge=0)
    backoff_multiplier: float = Field(2.0, alias="RETRY_BACKOFF_MULTIPLIER", ge=1.0)
    jitter: bool = Field(True, alias="RETRY_JITTER")


class LimitsSettings(BaseSettings):
    """Submission limits."""

    max_iterations_limit: int = Field(50, alias="MAX_ITERATIONS_LIMIT", ge=1)
    default_max_iterations: int = Field(10, alias="DEFAULT_MAX_ITERATIONS", ge=1)
    default_score_threshold: float = Field(
        0.85, alias="DEFAULT_SCORE_THRESHOLD", ge=0.0, le=1.0
    )
    max_input_size_bytes: int = Field(10240, alias="MAX_INPUT_SIZE_BYTES", ge=1)
    max_criterion_length: int = Field(1024, alias="MAX_CRITERION_LENGTH", ge=1)
    max_criteria_count: int = Field(20, alias="MAX_CRITERIA_COUNT", ge=1)
    max_cost_per_execution_usd: float = Field(
        1.0, alias="MAX_COST_PER_EXECUTION_USD", ge=0.0
    )
    redact_prompt_injection: bool = Field(True, alias="REDACT_PROMPT_INJECTION")


class StopSettings(BaseSettings):
    """Stop-condition tuning."""

    stagnation_enabled: bool = Field(True, alias="STOP_STAGNATION_ENABLED")
    stagnation_window: int = Field(3, alias="STOP_STAGNATION_WINDOW", ge=1)
    stagnation_improvement: float = Field(0.01, alias="STOP_STAGNATION_IMPROVEMENT", ge=0.0)
    early_termination_enabled: bool = Field(True, alias="STOP_EARLY_TERMINATION_ENABLED")
    early_termination_min_iterations: int = Field(
        2, alias="STOP_EARLY_TERMINATION_MIN_ITERATIONS", ge=1
    )
    early_termination_floor: float = Field(0.1, alias="STOP_EARLY_TERMINATION_FLOOR", ge=0.0)


class RedisSettings(BaseSettings):
    """Fast-tier state store configuration."""

    url: str = Field("", alias="REDIS_URL")
    state_ttl_seconds: int = Field(86400, alias="STATE_TTL_SECONDS", ge=1)
    max_reconnect_attempts: int = Field(10, alias="REDIS_MAX_RECONNECT_ATTEMPTS", ge=0)
    key_prefix: str = "execution:state:"


class DatabaseSettings(BaseSettings):
    """PostgreSQL database configuration."""

    url: str = Field("", alias="DATABASE_URL")
    pool_size: int = 5
    max_overflow: int = 10
    echo: bool = False


class RabbitMQSettings(BaseSettings):
    """RabbitMQ configuration."""

    url: str = Field("", alias="RABBITMQ_URL")
    queue_name: str = Field("refineloop.executions", alias="RABBITMQ_QUEUE")
    exchange_name: str = "refineloop.events"


class WorkerSettings(BaseSettings):
    """Worker pool and admission control."""

    concurrency: int = Field(2, alias="WORKER_CONCURRENCY", ge=1)
    rate_limit_requests: int = Field(10, alias="RATE_LIMIT_REQUESTS_PER_MINUTE", ge=1)
    rate_limit_window_seconds: float = Field(60.0, alias="RATE_LIMIT_WINDOW_SECONDS", gt=0)


class LoggingSettings(BaseSettings):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field("INFO", alias="LOG_LEVEL")
    format: Literal["json", "console"] = Field("console", alias="LOG_FORMAT")


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Sub-settings
    llm: LLMSettings = Field(default_factory=LLMSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    limits: LimitsSettings = Field(default_factory=LimitsSettings)
    stop: StopSettings = Field(default_factory=StopSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    rabbitmq: RabbitMQSettings = Field(default_factory=RabbitMQSettings)
    worker: WorkerSettings = Field(default_factory=WorkerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
