"""配置管理模块。

支持从 .env、config.yaml 以及环境变量加载配置。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("CHAT_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
        Path(__file__).resolve().parents[1] / "config.yaml",
    ])

    seen: set[Path] = set()
    for path in candidates:
        if not path or path in seen:
            continue
        seen.add(path)
        try:
            if path.exists():
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
                if isinstance(data, dict):
                    return data
                warnings.warn(f"Config file {path} is not a mapping, ignored")
        except (OSError, yaml.YAMLError) as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
    return {}


class ChatSettings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- 对话端点 ----
    chat_url: str = Field(
        default="http://localhost:54321/functions/v1/chat",
        description="流式对话端点（代理转发到模型厂商）",
    )
    chat_api_key: Optional[str] = Field(default=None, description="端点 Bearer 令牌")
    http_timeout: float = Field(default=30.0, ge=1.0, description="HTTP 超时时间（秒）")

    # ---- 持久化 ----
    storage_root: str = Field(default=".storage", description="存储根目录")
    state_key: str = Field(default="chat-storage", description="持久化状态使用的键（文件名）")

    # ---- 日志 ----
    log_dir: str = Field(default="logs", description="日志目录")
    log_level: str = Field(default="INFO", description="日志级别（DEBUG/INFO/WARNING/ERROR）")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    # ---- 会话与流式解析 ----
    title_max_length: int = Field(default=30, ge=1, description="会话标题截断长度")
    max_pending_frame_bytes: int = Field(
        default=64 * 1024,
        ge=1024,
        description="未完成 JSON 帧允许缓存的最大字节数",
    )
    attachment_text_limit: int = Field(
        default=20000,
        ge=1,
        description="文本附件内联到请求时的最大字符数",
    )
    conversations_page_size: int = Field(default=10, ge=1, description="会话列表每页数量")
    stream_stale_after: float = Field(
        default=120.0,
        ge=0.0,
        description="streaming 消息所在会话超过该秒数无更新即视为中断（启动时恢复为 error）",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("chat_api_key")
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        if v and len(v) < 10:
            raise ValueError("API key seems too short")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return level

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            cls._config_source,
            file_secret_settings,
        )


settings = ChatSettings()

# 类型别名，让外部代码可以使用 Settings 类型
Settings = ChatSettings
