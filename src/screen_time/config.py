import logging

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_env: str = "dev"
    app_version: str = "0.1.0"
    database_path: str = "data/screen_time.db"
    log_level: str = "INFO"

    visibility_timeout_sec: int = 60
    lease_ttl_sec: int = 30
    lease_wait_sec: float = 20.0
    poll_interval_sec: float = 0.5
    max_attempts: int = 5
    retry_backoff_sec: float = 5.0

    provider_timeout_sec: float = 10.0
    provider_task: str = "google"
    provider_gig: str = "google"
    provider_manual: str = "local"

    remote_allowance_base_url: str = "http://localhost:9100/v1"
    remote_allowance_api_key: str = ""
    remote_http_timeout_sec: float = 8.0

    mock_latency_ms: int = 400
    mock_fail_rate: float = 0.1

    reward_mode: str = "screenTime"
    admin_api_token: str = ""
    run_worker_inline: bool = False


settings = Settings()


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
