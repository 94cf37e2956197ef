"""聊天编排核心模块。

持有唯一的 ConversationState，驱动单轮对话：
准入检查 -> 调用 completion 客户端 -> 更新状态 -> 同步写入持久化。

每轮状态机：IDLE -> ADMITTING -> IN_FLIGHT -> {RESOLVED, FAILED}。
用户自己的消息在 ADMITTING 时立即追加，任何失败路径都不会回滚。
"""

import asyncio
import math
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple
from uuid import uuid4

from chat_core.config.settings import Settings
from chat_core.domain.conversation import ConversationState, TurnPhase
from chat_core.domain.exceptions import (
    AdmissionDeniedError,
    ApiError,
    BusinessError,
    ContractViolationError,
    NetworkError,
    RateLimitError,
    TurnInProgressError,
    TurnTimeoutError,
    ValidationError,
)
from chat_core.domain.models import Attachment, ChatMessage, ChatRequest, ChatResult, RequestMessage
from chat_core.infrastructure.logging.logger import EventLogger
from chat_core.infrastructure.ratelimit.rate_limiter import RateLimiter
from chat_core.infrastructure.storage.chat_storage import ChatStorage
from chat_core.prompts import load_system_prompt
from chat_core.providers import retry_policy_from
from chat_core.providers.base import CompletionClient
from chat_core.providers.registry import resolve_model
from chat_core.providers.resilient_client import RetryPolicy

GENERIC_ERROR = "An unexpected error occurred"
CANCELLED_ERROR = "The request was cancelled."

# 看门狗在客户端最坏重试耗时之外再留出的余量（秒）
TURN_TIMEOUT_MARGIN = 5.0


@dataclass
class OrchestratorConfig:
    model: str = "meta-llama/Llama-3.3-70B-Instruct-Turbo-Free"
    max_tokens: int = 500
    temperature: float = 0.7
    top_p: float = 0.7
    frequency_penalty: float = 0.0
    presence_penalty: float = 0.0
    max_messages: int = 50  # 会话历史上限，超出时丢弃最旧的消息
    # 单轮看门狗，None 表示不限时；默认值覆盖默认重试策略的最坏耗时
    turn_timeout: Optional[float] = RetryPolicy().worst_case_seconds(30.0) + TURN_TIMEOUT_MARGIN
    max_attachment_bytes: int = 5 * 1024 * 1024
    allowed_attachment_types: Tuple[str, ...] = ("image/jpeg", "image/png", "image/gif", "image/webp")

    @classmethod
    def from_settings(cls, cfg: Settings) -> "OrchestratorConfig":
        """从配置构造；看门狗必须长于客户端自身的重试预算。"""

        budget = retry_policy_from(cfg).worst_case_seconds(cfg.http_timeout)
        turn_timeout = cfg.turn_timeout
        if turn_timeout is None:
            turn_timeout = budget + TURN_TIMEOUT_MARGIN
        elif turn_timeout <= budget:
            raise ValidationError(
                code="TURN_TIMEOUT_TOO_SHORT",
                message=f"turn_timeout ({turn_timeout:g}s) must exceed the retry budget ({budget:g}s)",
                budget=budget,
            )
        return cls(
            model=resolve_model(cfg.provider, cfg.model),
            max_tokens=cfg.max_tokens,
            temperature=cfg.temperature,
            top_p=cfg.top_p,
            frequency_penalty=cfg.frequency_penalty,
            presence_penalty=cfg.presence_penalty,
            max_messages=cfg.max_messages,
            turn_timeout=turn_timeout,
            max_attachment_bytes=cfg.max_attachment_bytes,
            allowed_attachment_types=tuple(cfg.allowed_attachment_types),
        )


class ChatOrchestrator:
    def __init__(
        self,
        client: CompletionClient,
        rate_limiter: RateLimiter,
        storage: ChatStorage,
        logger: Optional[EventLogger] = None,
        config: Optional[OrchestratorConfig] = None,
    ):
        self._client = client
        self._limiter = rate_limiter
        self._storage = storage
        self._logger = logger or EventLogger()
        self._config = config or OrchestratorConfig()
        self._state = ConversationState(messages=storage.get_messages()[-self._config.max_messages:])

    @property
    def state(self) -> ConversationState:
        return self._state.snapshot()

    async def send_message(self, text: str, attachment: Optional[Attachment] = None) -> ConversationState:
        """执行一轮对话并返回结束时的状态快照。

        Args:
            text: 用户输入
            attachment: 可选附件（图片），发送前转换为 data URI

        Raises:
            TurnInProgressError: 上一轮仍在进行中；此时状态不做任何修改。
        """
        text = text or ""
        if not text.strip() and attachment is None:
            return self.state
        if self._state.is_loading:
            raise TurnInProgressError()

        log_ctx: Dict[str, Any] = {"turn_id": f"turn-{uuid4().hex}"}

        # IDLE -> ADMITTING：乐观追加用户消息
        self._state.phase = TurnPhase.ADMITTING
        self._state.error = None
        self._append(ChatMessage(role="user", content=text))
        self._log("debug", "User message appended", log_ctx, has_attachment=attachment is not None)

        if attachment is not None:
            try:
                self._check_attachment(attachment)
            except ValidationError as exc:
                self._fail(exc, log_ctx)
                return self.state

        if not self._limiter.check_admission():
            denied = AdmissionDeniedError(
                wait_seconds=self._limiter.time_until_next_slot(),
                remaining=self._limiter.remaining_capacity(),
            )
            self._fail(denied, log_ctx)
            return self.state

        # ADMITTING -> IN_FLIGHT
        self._state.is_loading = True
        self._state.phase = TurnPhase.IN_FLIGHT
        self._limiter.record_admission()
        try:
            image = await asyncio.to_thread(attachment.to_data_uri) if attachment else None
            result = await self._call(self._build_request(image))
        except BusinessError as exc:
            if isinstance(exc, RateLimitError):
                self._limiter.on_provider_rate_limit_signal()
            self._fail(exc, log_ctx)
            return self.state
        except Exception:
            self._state.is_loading = False
            self._state.error = GENERIC_ERROR
            self._state.phase = TurnPhase.FAILED
            self._logger.error("Unexpected chat turn failure", log_ctx, exc_info=True)
            raise
        except asyncio.CancelledError:
            self._state.is_loading = False
            self._state.error = CANCELLED_ERROR
            self._state.phase = TurnPhase.FAILED
            self._log("warn", "Chat turn cancelled", log_ctx)
            raise

        # IN_FLIGHT -> RESOLVED
        self._resolve(result, log_ctx)
        return self.state

    def clear_messages(self) -> None:
        self._state.messages = []
        self._state.error = None
        if not self._state.is_loading:
            self._state.phase = TurnPhase.IDLE
        self._storage.clear_messages()
        self._logger.info("Conversation cleared")

    def describe_error(self, exc: BaseException) -> str:
        """把技术错误翻译为面向用户的提示，全项目只在这里生成用户文案。"""

        if isinstance(exc, AdmissionDeniedError):
            return (
                f"Rate limit reached ({exc.remaining} of {self._limiter.config.max_requests} requests remaining). "
                f"Please wait {math.ceil(exc.wait_seconds)} seconds before sending another message."
            )
        if isinstance(exc, RateLimitError):
            wait = self._limiter.time_until_next_slot()
            if wait > 0:
                return (
                    "The chat service is receiving too many requests. "
                    f"Please wait {math.ceil(wait)} seconds before sending another message."
                )
            return "The chat service is receiving too many requests. Please try again in a moment."
        if isinstance(exc, TurnTimeoutError):
            return "The response took too long. Please try again."
        if isinstance(exc, NetworkError):
            return "Unable to reach the chat service. Check your connection and try again."
        if isinstance(exc, ContractViolationError):
            return "Received an unexpected response from the chat service."
        if isinstance(exc, ApiError):
            if exc.http_status >= 500:
                return "The chat service is temporarily unavailable. Please try again later."
            return f"The chat service rejected the request: {exc.message}"
        if isinstance(exc, BusinessError):
            return exc.message
        return GENERIC_ERROR

    # ---- 辅助方法 ----

    async def _call(self, request: ChatRequest) -> ChatResult:
        timeout = self._config.turn_timeout
        if not timeout:
            return await self._client.send(request)
        try:
            return await asyncio.wait_for(self._client.send(request), timeout)
        except asyncio.TimeoutError:
            raise TurnTimeoutError(timeout)

    def _build_request(self, image: Optional[str]) -> ChatRequest:
        prefs = self._storage.get_preferences()
        messages = [RequestMessage(role="system", content=load_system_prompt(prefs.prompt_style))]
        messages.extend(RequestMessage(role=m.role, content=m.content) for m in self._state.messages)
        cfg = self._config
        return ChatRequest(
            messages=messages,
            model=cfg.model,
            image=image,
            max_tokens=cfg.max_tokens,
            temperature=cfg.temperature,
            top_p=cfg.top_p,
            frequency_penalty=cfg.frequency_penalty,
            presence_penalty=cfg.presence_penalty,
        )

    def _check_attachment(self, attachment: Attachment) -> None:
        cfg = self._config
        if attachment.mime_type not in cfg.allowed_attachment_types:
            raise ValidationError(
                code="ATTACHMENT_TYPE",
                message=f"Unsupported attachment type: {attachment.mime_type}",
            )
        if attachment.size > cfg.max_attachment_bytes:
            limit_mb = cfg.max_attachment_bytes / (1024 * 1024)
            raise ValidationError(
                code="ATTACHMENT_TOO_LARGE",
                message=f"Attachment is too large (maximum {limit_mb:g} MB).",
            )

    def _resolve(self, result: ChatResult, log_ctx: Dict[str, Any]) -> None:
        self._state.is_loading = False
        self._state.error = None
        self._state.phase = TurnPhase.RESOLVED
        self._append(ChatMessage(role="assistant", content=result.content, sources=result.sources))
        self._log(
            "info",
            "Chat turn resolved",
            log_ctx,
            correlation_id=result.correlation_id,
            attempts=result.attempts,
            elapsed_ms=round(result.elapsed_ms, 1),
        )

    def _fail(self, exc: BusinessError, log_ctx: Dict[str, Any]) -> None:
        self._state.is_loading = False
        self._state.error = self.describe_error(exc)
        self._state.phase = TurnPhase.FAILED
        self._log(
            "warn",
            "Chat turn failed",
            log_ctx,
            code=exc.code,
            error=exc.message,
            correlation_id=exc.extra.get("correlation_id"),
        )

    def _append(self, message: ChatMessage) -> None:
        self._state.messages = (self._state.messages + [message])[-self._config.max_messages:]
        self._storage.save_messages(self._state.messages)

    def _log(self, level: str, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        getattr(self._logger, level)(message, payload)
