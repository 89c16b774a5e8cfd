from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./drasbot.db"
    debug: bool = False
    log_level: str = "INFO"

    command_prefix: str = "!"
    cancel_token: str = "cancel"
    max_message_length: int = 4096

    context_default_ttl_seconds: int = 300
    context_grace_seconds: int = 120
    context_sweep_enabled: bool = True
    context_sweep_interval_seconds: float = 60.0

    bridge_url: str = "http://localhost:8080"
    bridge_timeout_seconds: float = 10.0

    default_user_level: str = "user"
    allow_new_users: bool = True
    super_admin_identities: list[str] = []
    rate_limits_enabled: bool = True
    fallback_enabled: bool = True

    templates_path: Optional[str] = None
    default_language: str = "es"

    class Config:
        env_file = ".env"
        extra = "ignore"
