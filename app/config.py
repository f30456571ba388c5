"""Application configuration via environment variables."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Supabase
    supabase_url: str = ""
    supabase_service_role_key: str = ""
    supabase_anon_key: str = ""

    # Job record store
    job_store_backend: str = "memory"  # "memory" or "supabase"
    jobs_table: str = "generation_jobs"

    # Job processing
    max_concurrent_jobs: int = 2
    runner_batch_size: int = 10
    runner_batch_pause_seconds: float = 0.1

    # Polling
    poll_interval_ms: int = 3000
    poll_stale_multiplier: int = 5
    poll_stale_floor_ms: int = 15000

    # Client session
    active_job_file: str = ".seo_active_job.json"

    # Server
    compute_port: int = 8001
    log_level: str = "info"
    json_logs: bool = False

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
