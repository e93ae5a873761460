"""Apex configuration — settings, sandbox limits, fixer budgets."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API
    apex_api_key: str = ""  # Empty = auth disabled (dev mode)
    cors_origins: str = "http://localhost:3000"

    # Database
    database_url: str = "sqlite:///data/apex.db"

    # Celery / Redis
    celery_broker_url: str = ""  # Empty = Celery disabled (uses asyncio fallback)
    celery_result_backend: str = ""
    celery_worker_concurrency: int = 4
    celery_task_time_limit: int = 1800  # seconds
    credential_ref_ttl_seconds: int = 900  # Clone tokens handed to workers expire unread after this

    # Sandbox (Docker)
    sandbox_image: str = "apex-scanner:latest"
    sandbox_memory_limit: str = "2g"
    sandbox_cpu_limit: str = "2.0"
    sandbox_cache_volume: str = "apex-npm-cache"  # Shared across sandboxes, mounted at /root/.npm
    sandbox_keepalive_seconds: int = 3600
    sandbox_exec_timeout_seconds: int = 120
    sandbox_scan_timeout_seconds: int = 300
    sandbox_forward_env: str = "ANTHROPIC_API_KEY,OPENAI_API_KEY,OPENCODE_API_KEY"

    # Repository cloning
    clone_timeout_seconds: int = 120
    clone_host: str = "https://github.com/"
    github_token: str = ""  # Fallback when a request carries no token

    # In-sandbox probe (App Bootstrapper + Accessibility Scanner)
    axe_script_path: str = "/opt/axe/axe.min.js"
    probe_server_wait_seconds: float = 35.0
    probe_poll_interval_seconds: float = 1.2
    probe_npm_install_timeout_seconds: float = 90.0
    probe_navigation_timeout_ms: int = 15000
    html_snippet_max_chars: int = 2000

    # AI fixer
    agent_model: str = "anthropic/claude-sonnet-4-20250514"
    agent_thinking_variant: str = ""
    fixer_batch_timeout_seconds: int = 90
    fixer_total_timeout_seconds: int = 240
    fixer_min_batch_timeout_seconds: int = 15
    fixer_batch_size: int = 1
    fixer_contrast_batch_size: int = 25
    fixer_max_batches: int = 50
    fixer_contrast_thinking: bool = True
    fixer_all_thinking: bool = False
    fixer_workers: int = 1  # Clamped to 1..6
    fixer_empty_batch_limit: int = 3
    fixer_instant_failure_seconds: float = 5.0
    fixer_self_verify: bool = False
    fixer_extraction_retry: bool = True

    # Escrow gate
    escrow_enabled: bool = False
    escrow_gate_factory: str = ""  # "package.module:callable" returning an EscrowGate

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()

MAX_FIXER_WORKERS = 6


def forwarded_env_names() -> list[str]:
    """Names of host env vars forwarded into every sandbox."""
    return [n.strip() for n in settings.sandbox_forward_env.split(",") if n.strip()]

