from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_env: str = "dev"
    app_version: str = "0.3.0"
    database_path: str = "data/genqueue.db"
    database_timeout_sec: float = 30.0
    log_level: str = "INFO"

    worker_pool_size: int = 5
    worker_poll_interval_sec: float = 2.0
    worker_idle_poll_interval_sec: float = 5.0
    worker_error_retry_sec: float = 5.0
    worker_reap_interval_sec: float = 60.0
    worker_shutdown_timeout_sec: float = 30.0

    job_timeout_default_min: int = 10
    job_timeout_video_min: int = 30
    job_timeout_export_min: int = 60
    job_timeout_storyboard_min: int = 20

    max_active_jobs_per_owner: int = 10

    image_credit_cost: int = 8
    video_credit_cost_per_second: int = 6
    sound_effect_credit_cost: int = 1
    music_credit_cost: int = 10

    provider_base_url: str = "https://api.example-provider.com/v1"
    provider_api_key: str = ""
    provider_timeout_sec: int = 120

    storage_base_url: str = "https://storage.example.com/upload"
    storage_public_url: str = "https://cdn.example.com"
    storage_api_key: str = ""
    upload_timeout_sec: int = 120

    poll_hot_sec: float = 5.0
    poll_warm_sec: float = 30.0
    poll_idle_sec: float = 60.0
    poll_recent_window_sec: float = 300.0
    poll_active_limit: int = 50
    poll_recent_limit: int = 15

    admin_api_token: str = ""
    api_base_url: str = "http://localhost:8900"
    execute_inline: bool = False


settings = Settings()
