from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration, read from the environment or a local .env file."""

    environment: str = "development"
    log_level: str | None = None

    database_url: str = "sqlite:///./fulfillment.db"

    rabbitmq_host: str = "rabbitmq"
    rabbitmq_user: str = "guest"
    rabbitmq_password: str = "guest"

    # "local" runs tasks on an in-process worker pool, "rabbitmq" goes through the broker.
    task_backend: str = "local"
    worker_concurrency: int = 4

    task_max_tries: int = 3
    task_backoff_seconds: float = 5.0
    task_unique_for_seconds: float = 300.0

    # "memory" for a single process, "database" when several workers share the queue.
    lock_backend: str = "memory"

    transaction_attempts: int = 3
    transaction_retry_delay: float = 5.0

    payment_provider: str = "fakepay"
    payment_delay_seconds: float = 2.0
    payment_success_rate: float = 0.9
    payment_force_outcome: str = ""

    model_config = SettingsConfigDict(env_file=".env", env_prefix="", case_sensitive=False)


@lru_cache
def get_settings() -> Settings:
    return Settings()
