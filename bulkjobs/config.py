"""Application configuration via environment variables."""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    # Supabase
    supabase_url: str = ""
    supabase_service_role_key: str = ""
    supabase_anon_key: str = ""

    # Job store
    job_store_mode: str = "supabase"  # "supabase" or "memory"

    # Credentials
    encryption_salt: str = ""
    worker_secret: Optional[str] = None

    # Scheduler
    worker_poll_interval_seconds: float = 10.0  # 0 disables the in-process loop
    parallel_jobs: int = 5
    batch_size: int = 12
    stale_after_seconds: int = 300
    max_stale_retries: int = 3

    # Batch parsing
    strict_positional_fallback: bool = True

    # Model calls
    model_timeout_seconds: float = 120.0
    max_output_tokens: int = 2000

    # Response cache
    cache_sweep_interval_seconds: float = 3600.0

    # Status stream
    stream_debounce_ms: int = 500
    stream_heartbeat_seconds: float = 30.0

    log_level: str = "INFO"
    port: int = 8001

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "protected_namespaces": ()}


settings = Settings()
