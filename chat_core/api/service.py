"""对外 API 服务模块。

组合根：根据配置显式构造日志、限流器、客户端、存储与编排器，
不使用模块级单例，同一进程内可以并存多个独立会话。
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from chat_core.agents.chat_orchestrator import ChatOrchestrator, OrchestratorConfig
from chat_core.config.settings import Settings, settings
from chat_core.domain.conversation import ConversationState, KeyValueStore
from chat_core.domain.models import Attachment
from chat_core.infrastructure.logging.logger import EventLogger, setup_logger
from chat_core.infrastructure.ratelimit.rate_limiter import RateLimitConfig, RateLimiter
from chat_core.infrastructure.storage.chat_storage import ChatStorage
from chat_core.infrastructure.storage.json_store import JsonFileKeyValueStore
from chat_core.providers import create_client
from chat_core.providers.resilient_client import ResilientClient


@dataclass
class ChatSession:
    logger: EventLogger
    rate_limiter: RateLimiter
    client: ResilientClient
    storage: ChatStorage
    orchestrator: ChatOrchestrator
    http_client: Optional[httpx.AsyncClient] = None
    owns_http_client: bool = False

    @property
    def state(self) -> ConversationState:
        return self.orchestrator.state

    async def send_message(self, text: str, attachment: Optional[Attachment] = None) -> ConversationState:
        return await self.orchestrator.send_message(text, attachment)

    def clear_messages(self) -> None:
        self.orchestrator.clear_messages()

    async def ping(self) -> bool:
        return await self.client.ping()

    def metrics(self) -> Dict[str, Any]:
        """API 指标、日志错误率与限流状态的汇总。"""
        return {
            "api": self.client.get_metrics().to_dict(),
            "log_error_rate": round(self.logger.get_error_rate(), 4),
            "rate_limit": self.rate_limiter.status(),
        }

    async def aclose(self) -> None:
        if self.owns_http_client and self.http_client is not None:
            await self.http_client.aclose()


def create_session(
    cfg: Optional[Settings] = None,
    *,
    store: Optional[KeyValueStore] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
) -> ChatSession:
    """根据配置构造一个完整的聊天会话。

    Args:
        cfg: 配置（默认使用全局 settings）
        store: 键值存储（默认写入 storage_root 下的 JSON 文件）
        http_client: 共享的 AsyncClient；为空时创建并由会话负责关闭
        clock: 限流器使用的单调时钟
        sleep: 重试等待函数（测试中可替换）
    """
    cfg = cfg or settings
    sink = setup_logger(log_dir=cfg.log_dir, level=cfg.log_level, redact_content=cfg.log_redact_content)
    logger = EventLogger(sink=sink, capacity=cfg.log_buffer_size)

    owns_http_client = http_client is None
    if http_client is None:
        limits = httpx.Limits(max_keepalive_connections=10, max_connections=20)
        http_client = httpx.AsyncClient(timeout=cfg.http_timeout, limits=limits, trust_env=False)

    limiter = RateLimiter(
        RateLimitConfig(max_requests=cfg.rate_limit_per_window, window_seconds=cfg.rate_limit_window_seconds),
        logger=logger,
        clock=clock,
    )
    client = create_client(cfg, logger=logger, http_client=http_client, sleep=sleep or asyncio.sleep)
    storage = ChatStorage(store or JsonFileKeyValueStore(cfg.storage_root), logger=logger, max_messages=cfg.max_messages)
    orchestrator = ChatOrchestrator(
        client=client,
        rate_limiter=limiter,
        storage=storage,
        logger=logger,
        config=OrchestratorConfig.from_settings(cfg),
    )
    logger.info(
        "Chat session created",
        {"provider": cfg.provider, "model": cfg.model, "restored_messages": len(orchestrator.state.messages)},
    )
    return ChatSession(
        logger=logger,
        rate_limiter=limiter,
        client=client,
        storage=storage,
        orchestrator=orchestrator,
        http_client=http_client,
        owns_http_client=owns_http_client,
    )
