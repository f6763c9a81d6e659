from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./whatsdesk.db"
    sql_echo: bool = False
    debug: bool = False
    log_level: str = "INFO"

    auth_dir: str = "./auth"
    legacy_auth_dir: str = "./auth_legacy"

    media_dir: str = "./media"
    media_url_prefix: str = "/media"

    business_timezone: str = "America/Sao_Paulo"

    reconnect_initial_delay_seconds: float = 2.0
    reconnect_backoff_factor: float = 1.5
    reconnect_max_delay_seconds: float = 60.0
    reconnect_max_attempts: int = 10
    reconnect_jitter_ratio: float = 0.15
    connect_timeout_seconds: float = 45.0
    heartbeat_interval_seconds: float = 30.0
    heartbeat_max_failures: int = 3
    watchdog_interval_seconds: float = 60.0
    watchdog_stale_seconds: float = 180.0
    max_consecutive_conflicts: int = 3

    inbound_queue_size: int = 500
    max_background_tasks: int = 64
    message_unwrap_depth: int = 5
    auto_reply_allowlist_only: bool = True

    whatsapp_provider: str = ""
    whatsapp_browser: str = "WhatsDesk,Chrome,120.0"

    jobs_enabled: bool = True
    auto_await_interval_seconds: float = 60.0
    reminder_interval_seconds: float = 30.0

    admin_token: str = ""

    alert_bot_token: str = ""
    alert_chat_id: str = ""

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()
