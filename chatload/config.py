"""Run configuration via environment variables."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    app_name: str = "chatload"
    app_version: str = "0.1.0"
    log_level: str = "INFO"

    api_base_url: str = "https://whisp-dev.api.whispchat.com"
    ws_url: str = "wss://whisp-dev.api.whispchat.com/api/wsConnect"
    # x-api-key for sign-in and registration; required by run/provision
    api_key: str = ""

    user_prefix: str = "user"
    password: str = "password123"
    total_users: int = 1250

    send_interval_ms: int = 10_000
    session_time_ms: int = 600_000
    # 0 disables the periodic chat list refresh
    chat_refresh_ms: int = 30_000
    # Client heart-beat advertised in CONNECT; 0 disables outgoing heartbeats
    heartbeat_ms: int = 10_000

    http_timeout_seconds: float = 20.0
    handshake_timeout_seconds: float = 20.0
    http_max_connections: int = 500

    scheduler_tick_ms: int = 1_000
    iteration_pause_ms: int = 1_000
    graceful_stop_seconds: float = 30.0

    # Provisioning
    max_chat_peers: int = 100
    chat_create_pause_ms: int = 1_500
    provision_concurrency: int = 50

    model_config = {"env_prefix": "", "env_file": ".env", "extra": "ignore"}

    def username_for(self, vu: int) -> str:
        return f"{self.user_prefix}{vu}"
