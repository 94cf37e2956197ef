"""配置管理模块。

支持从 .env、config.yaml 以及环境变量加载配置。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

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
    """聊天客户端配置（使用 Pydantic）。"""

    # ---- Provider ----
    provider: str = Field(default="together", description="Provider 名称，由 registry 解析默认端点")
    chat_endpoint: Optional[str] = Field(
        default=None,
        description="覆盖 registry 中的 chat/completions 地址（例如本地代理）",
    )
    api_key: Optional[str] = Field(default=None, description="Provider API 密钥")
    model: str = Field(default="chat", description="逻辑模型名，由 registry 映射为具体厂商模型")
    max_tokens: int = Field(default=500, ge=1)
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    top_p: float = Field(default=0.7, gt=0.0, le=1.0)
    frequency_penalty: float = Field(default=0.0)
    presence_penalty: float = Field(default=0.0)
    ping_url: Optional[str] = Field(default=None, description="健康检查地址，为空时对端点发 HEAD")

    # ---- 会话 ----
    max_messages: int = Field(default=50, ge=1, description="会话中保留的最大消息数")
    turn_timeout: Optional[float] = Field(
        default=None,
        gt=0,
        description="单轮对话看门狗超时（秒），为空时按重试预算推导",
    )
    max_attachment_bytes: int = Field(default=5 * 1024 * 1024, ge=1)
    allowed_attachment_types: List[str] = Field(
        default_factory=lambda: ["image/jpeg", "image/png", "image/gif", "image/webp"],
    )

    # ---- 限流 ----
    rate_limit_per_window: int = Field(default=10, ge=1, description="窗口内允许的请求数")
    rate_limit_window_seconds: float = Field(default=60.0, gt=0)

    # ---- 重试 ----
    max_retries: int = Field(default=3, ge=0, le=10)
    retry_initial_delay: float = Field(default=1.0, ge=0.0, description="首次重试等待（秒）")
    retry_max_delay: float = Field(default=10.0, ge=0.0)
    retry_backoff_factor: float = Field(default=2.0, ge=1.0)
    http_timeout: float = Field(default=30.0, ge=1.0, description="HTTP 超时时间（秒）")

    # ---- 观测 ----
    slow_response_threshold_ms: float = Field(default=5000.0, gt=0)
    error_rate_threshold: float = Field(default=0.25, ge=0.0, le=1.0)

    # ---- 存储 / 日志 ----
    storage_root: str = Field(default=".storage", description="存储根目录")
    log_dir: Optional[str] = Field(default=None, description="JSON 日志目录，为空时只输出到控制台")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    log_buffer_size: int = Field(default=1000, ge=1, description="内存日志环形缓冲容量")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    model_config = SettingsConfigDict(
        env_prefix="CHAT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("api_key")
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        if v and len(v) < 10:
            raise ValueError("API key seems too short")
        return v

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v

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
