"""全局配置加载模块：从环境变量构建运行参数并提供缓存访问。"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_BROWSER_SERVER_PATH = Path.home() / "Documents" / "repos" / "skills" / "comet-browser" / "mcp-server" / "server.py"


def _csv_to_list(value: str) -> list[str]:
    """将逗号分隔字符串转换为去空白列表。"""
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    """系统运行配置对象，从环境变量读取并提供类型化访问。"""
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore", populate_by_name=True)

    app_name: str = "Comet Orchestrator"
    api_prefix: str = "/api/v1"
    environment: str = "dev"
    cors_allowed_origins: str = ""
    cors_allowed_methods: str = "GET,POST,OPTIONS"
    cors_allowed_headers: str = "Content-Type,X-Request-Id"
    cors_allow_credentials: bool = False

    cdp_host: str = "127.0.0.1"
    cdp_port: int = 9222
    cdp_request_timeout_seconds: float = 5.0

    browser_server_path: Path = Field(default=DEFAULT_BROWSER_SERVER_PATH, validation_alias="COMET_BROWSER_SERVER_PATH")
    browser_python_path: str = Field(default="python3", validation_alias="COMET_PYTHON_PATH")
    bridge_call_timeout_seconds: float = 30.0
    bridge_max_restarts: int = 3
    bridge_restart_delay_seconds: float = 1.0

    default_task_timeout_ms: int = 60_000
    task_timeout_min_ms: int = 1_000
    task_timeout_max_ms: int = 300_000

    health_cache_ttl_ms: int = 5_000
    health_probe_timeout_ms: int = 3_000

    monitor_url: str = Field(default="http://127.0.0.1:5555/api/state", validation_alias="COMET_MONITOR_URL")
    monitor_timeout_ms: int = 3_000

    # 未配置时先从 CDP 目标列表中发现，再回退到内置扩展 ID。
    extension_id: str | None = Field(default=None, validation_alias="COMET_EXTENSION_ID")
    wake_timeout_ms: int = 5_000
    wake_settle_ms: int = 500

    log_dir: Path = Field(default=Path("./logs"))
    log_level: str = "INFO"
    log_debug_modules: str = ""
    log_debug_task_ids: str = ""
    log_redaction_mode: str = "standard"
    log_payload_preview_chars: int = 512
    log_max_bytes: int = 10 * 1024 * 1024
    log_backup_count: int = 5

    def cors_allowed_origins_list(self) -> list[str]:
        return _csv_to_list(self.cors_allowed_origins)

    def cors_allowed_methods_list(self) -> list[str]:
        return _csv_to_list(self.cors_allowed_methods)

    def cors_allowed_headers_list(self) -> list[str]:
        return _csv_to_list(self.cors_allowed_headers)

    def log_debug_modules_list(self) -> list[str]:
        return _csv_to_list(self.log_debug_modules)

    def log_debug_task_ids_list(self) -> list[str]:
        return _csv_to_list(self.log_debug_task_ids)

    @property
    def cdp_base_url(self) -> str:
        return f"http://{self.cdp_host}:{self.cdp_port}"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """构建并缓存 Settings，相对日志目录统一按当前工作目录解析。"""
    settings = Settings()
    if not settings.log_dir.is_absolute():
        settings.log_dir = (Path.cwd() / settings.log_dir).resolve()
    return settings
