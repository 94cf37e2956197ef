"""LLM Provider 集成层。

该包下的模块负责：
- 定义 completion 客户端抽象接口 (base)。
- 维护 Provider 与模型配置 (registry)。
- 提供带重试、校验与指标的默认实现 (resilient_client)。
"""

import asyncio
from typing import Any, Awaitable, Callable, Optional

import httpx

from chat_core.config.settings import Settings, settings
from chat_core.infrastructure.logging.logger import EventLogger
from chat_core.providers.base import CompletionClient
from chat_core.providers.registry import get_provider_config
from chat_core.providers.resilient_client import ResilientClient, RetryPolicy


def retry_policy_from(cfg: Settings) -> RetryPolicy:
    return RetryPolicy(
        max_retries=cfg.max_retries,
        initial_delay=cfg.retry_initial_delay,
        max_delay=cfg.retry_max_delay,
        backoff_factor=cfg.retry_backoff_factor,
    )


def create_client(
    cfg: Optional[Settings] = None,
    logger: Optional[EventLogger] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
) -> ResilientClient:
    """根据配置创建 ResilientClient；chat_endpoint 优先于 registry 中的默认地址。"""

    cfg = cfg or settings
    endpoint = cfg.chat_endpoint or get_provider_config(cfg.provider).chat_endpoint
    return ResilientClient(
        endpoint,
        api_key=cfg.api_key,
        retry_policy=retry_policy_from(cfg),
        logger=logger,
        http_timeout=cfg.http_timeout,
        http_client=http_client,
        sleep=sleep or asyncio.sleep,
        slow_response_threshold_ms=cfg.slow_response_threshold_ms,
        error_rate_threshold=cfg.error_rate_threshold,
        ping_url=cfg.ping_url,
    )


__all__ = ["CompletionClient", "ResilientClient", "RetryPolicy", "create_client", "retry_policy_from"]
