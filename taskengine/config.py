"""taskengine configuration: settings for the step loop, forks, tools and the access governor."""

from typing import Literal

from pydantic_settings import BaseSettings

ForkStopPolicy = Literal["detach", "propagate"]


class Settings(BaseSettings):
    """Engine settings loaded from environment variables (TASKENGINE_ prefix)."""

    # Model
    anthropic_api_key: str = ""
    default_model: str = "claude-sonnet-4-6"
    default_max_tokens: int = 4096
    default_temperature: float = 0.0
    model_max_retries: int = 3

    # Storage
    database_url: str = "sqlite:///data/taskengine.db"

    # Shared cache (empty = governor always allows)
    redis_url: str = ""

    # Step scheduler
    max_steps: int = 100
    task_timeout_seconds: float = 3600.0
    parse_retry_budget: int = 1  # Failed parses tolerated before the session fails
    autonomous: bool = True
    history_result_chars: int = 500
    max_knowledge_results: int = 5

    # Sub-agent forks
    max_fork_depth: int = 3
    fork_timeout_seconds: float = 300.0
    fork_max_steps: int = 20
    fork_max_retries: int = 3
    fork_poll_interval_seconds: float = 2.0
    fork_max_wait_seconds: float = 600.0
    fork_summary_max_chars: int = 500
    fork_worker_limit: int = 4
    fork_stop_policy: ForkStopPolicy = "detach"
    fork_runtime_factory: str = ""  # "package.module:callable", used by Celery workers

    # Tools
    tool_default_timeout_seconds: float = 30.0
    parallel_tool_max_retries: int = 3
    parallel_tool_retries: int = 0

    # Access governor
    rate_limit_window_seconds: float = 60.0
    rate_limit_max_requests: int = 60
    token_window_seconds: float = 60.0
    max_tokens_per_window: int = 0  # 0 = unlimited
    max_concurrent_executions: int = 3
    concurrency_ttl_seconds: int = 3600
    lock_max_attempts: int = 10
    lock_retry_delay_seconds: float = 0.1

    # Celery (empty broker = in-process worker pool)
    celery_broker_url: str = ""
    celery_result_backend: str = ""
    celery_worker_concurrency: int = 4
    celery_task_time_limit: int = 3600  # seconds

    model_config = {"env_prefix": "TASKENGINE_", "env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
