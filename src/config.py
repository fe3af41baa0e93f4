"""配置管理模块"""
from typing import List, Optional, Sequence

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from src.constants import (
    ANTIGRAVITY_SYSTEM_INSTRUCTION,
    CLOUDCODE_ENDPOINT,
    DEFAULT_CLIENT_VERSION,
    DEFAULT_PROJECT_ID,
)


class Settings(BaseSettings):
    """应用配置（环境变量前缀 ODIN_，也可以写在 .env 里）"""

    model_config = SettingsConfigDict(
        env_prefix="ODIN_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        cli_prog_name="odin",
        cli_kebab_case=True,
        cli_implicit_flags=True,
    )

    # Cloud Code 认证
    api_key: str = Field(default="", description="API key (Bearer token) for Antigravity Cloud Code")

    # 服务配置
    host: str = Field(default="127.0.0.1", description="Address to listen on")
    port: int = Field(default=8080, description="Port to listen on")
    debug: bool = Field(default=False, description="Enable debug logging (also records response SSE events in log file)")
    log_file: str = Field(default="logs/requests.ndjson", description="Request log path (NDJSON); empty disables it")

    # Cloud Code API 配置
    cloudcode_endpoint: str = Field(default=CLOUDCODE_ENDPOINT, description="Cloud Code API base URL")
    project_id: str = Field(default=DEFAULT_PROJECT_ID, description="Cloud Code project id")
    client_version: str = Field(default=DEFAULT_CLIENT_VERSION, description="Antigravity client version for User-Agent")
    request_timeout: float = Field(default=300.0, description="Upstream request timeout in seconds")
    system_instruction: str = Field(
        default=ANTIGRAVITY_SYSTEM_INSTRUCTION,
        description="Identity preamble sent before any user system prompt",
    )


def load_cli_settings(argv: Optional[Sequence[str]] = None) -> Settings:
    """
    解析命令行参数（--api-key=... --port=... --debug --log-file=...）

    argv 为 None 时读取 sys.argv；命令行优先于环境变量和 .env
    """
    cli_args: object = True if argv is None else list(argv)
    return Settings(_cli_parse_args=cli_args)


def settings_summary(config: Settings) -> List[str]:
    return [
        f"Debug mode: {'ON' if config.debug else 'OFF'}",
        f"Log file: {config.log_file or 'disabled'}",
        f"Cloud Code endpoint: {config.cloudcode_endpoint}",
    ]


# 全局配置实例
settings = Settings()
