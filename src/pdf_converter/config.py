from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_env: str = "dev"
    app_version: str = "0.1.0"
    log_level: str = "INFO"
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    database_path: str = "data/converter.db"
    upload_dir: str = "uploads"
    output_dir: str = "outputs"

    gateway_base_url: str = "http://localhost:8910"
    gateway_api_key: str = ""
    gateway_timeout_sec: int = 60

    free_pages_default: int = 10
    pro_monthly_pages: int = 1000
    cost_per_page_cents: int = Field(default=12, gt=0)
    billing_period_days: int = 30
    ledger_cas_attempts: int = 5

    max_files_per_job: int = 100
    max_file_mb: int = 50
    estimate_bytes_per_page: int = 50 * 1024
    default_priority: int = 5
    min_priority: int = 1
    max_priority: int = 10

    worker_pool_size: int = 4
    max_file_attempts: int = 2
    retry_backoff_sec: float = 1.0

    retention_hours: int = 24
    admin_api_token: str = ""


settings = Settings()
