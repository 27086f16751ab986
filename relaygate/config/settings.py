"""Runtime settings."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="RELAY_", extra="ignore")

    app_name: str = "RelayGate"
    app_version: str = "0.1.0"
    env: str = "dev"
    log_level: str = "info"
    # DEBUG 下是否打印完整请求正文；False 时只打 method/path/headers + body_size
    log_full_request_body: bool = False
    log_to_file: bool = True
    log_dir: str = "logs"
    log_file_name: str = "relaygate.log"
    log_max_bytes: int = 10 * 1024 * 1024
    log_backup_count: int = 10
    host: str = "127.0.0.1"
    port: int = 8001

    # 空串表示不校验 Authorization: Bearer
    api_key: str = ""

    ollama_base_url: str = "http://localhost:11434"
    openai_base_url: str = "https://api.openai.com/v1"
    openai_api_key: str = ""
    anthropic_base_url: str = "https://api.anthropic.com"
    anthropic_api_key: str = ""
    anthropic_version: str = "2023-06-01"

    # 非空时覆盖别名表里的 default 条目
    default_model_id: str = ""
    model_directory_path: str = "config/models.yaml"
    alias_table_path: str = ""

    upstream_timeout_seconds: float = 60.0
    # <=0 表示不限制首包等待时间
    upstream_first_byte_timeout_seconds: float = 0.0
    upstream_max_connections: int = 100
    upstream_max_keepalive_connections: int = 20

    relay_channel_size: int = Field(default=1, ge=1)
    ws_idle_timeout_seconds: int = 300
    ws_sweep_interval_seconds: int = 30

    max_request_body_bytes: int = 10_000_000
    max_messages_count: int = 200
    default_temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    default_max_tokens: int = Field(default=2000, gt=0)
    default_system_prompt: str = "You are a helpful AI assistant. Provide clear, accurate, and concise responses."
    enable_diff_extraction: bool = True


settings = Settings()
