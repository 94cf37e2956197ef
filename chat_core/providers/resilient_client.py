"""带重试的 completion 客户端。

本模块负责：

1. 把统一的 ChatRequest 转换为 chat/completions 请求体。
2. 在固定的重试预算内发送请求，按指数退避等待。
3. 对失败分类：网络错误、5xx、429 可重试；其余 4xx 与响应结构不合法为致命错误。
4. 校验响应结构并解析为 ChatResult。
5. 累计 ApiMetrics，并在平均耗时或错误率越过阈值时输出告警日志。

同一逻辑请求的所有尝试共享一个 correlation id（请求头 X-Request-ID）。
"""

import asyncio
from dataclasses import dataclass, replace
from time import perf_counter
from typing import Any, Awaitable, Callable, Dict, List, Optional
from uuid import uuid4

import httpx

from chat_core.domain.exceptions import (
    ApiError,
    BusinessError,
    ContractViolationError,
    NetworkError,
    RateLimitError,
)
from chat_core.domain.models import ApiMetrics, ChatChoice, ChatRequest, ChatResult, ChatUsage, Source
from chat_core.infrastructure.logging.logger import EventLogger


@dataclass
class RetryPolicy:
    max_retries: int = 3
    initial_delay: float = 1.0  # 秒
    max_delay: float = 10.0
    backoff_factor: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """第 attempt 次尝试（attempt >= 1）之前的等待秒数。"""
        return min(self.initial_delay * self.backoff_factor ** (attempt - 1), self.max_delay)

    def worst_case_seconds(self, http_timeout: float) -> float:
        """所有尝试都耗尽 HTTP 超时时，一次逻辑请求的最长耗时。"""
        waits = sum(self.delay_for(i) for i in range(1, self.max_retries + 1))
        return (self.max_retries + 1) * http_timeout + waits


def new_correlation_id() -> str:
    return f"req-{uuid4().hex}"


class ResilientClient:
    """completion 端点客户端实现。

    - send: 对外统一调用入口，返回 ChatResult 或抛出分类后的 BusinessError。
    - get_metrics / reset_metrics: 指标快照与清零。
    - ping: 连通性检查，不抛异常。
    """

    def __init__(
        self,
        endpoint: str,
        *,
        api_key: Optional[str] = None,
        retry_policy: Optional[RetryPolicy] = None,
        logger: Optional[EventLogger] = None,
        http_timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        slow_response_threshold_ms: float = 5000.0,
        error_rate_threshold: float = 0.25,
        ping_url: Optional[str] = None,
    ):
        self._endpoint = endpoint
        self._api_key = api_key
        self._retry = retry_policy or RetryPolicy()
        self._logger = logger or EventLogger()
        self._http_timeout = http_timeout
        self._http_client = http_client
        self._sleep = sleep
        self._slow_ms = slow_response_threshold_ms
        self._error_rate_threshold = error_rate_threshold
        self._ping_url = ping_url
        self._metrics = ApiMetrics()

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry

    async def send(self, request: ChatRequest) -> ChatResult:
        """执行一次逻辑请求。

        步骤：
        1. 第 i 次尝试（i > 0）前等待 min(initial_delay * factor^(i-1), max_delay)。
        2. 发送请求，网络层失败归为可重试。
        3. 非 2xx：5xx/429 可重试，其余致命。
        4. 2xx：校验响应结构，不合法为致命。
        致命错误或最后一次尝试仍失败时记录指标并立即抛出。
        """

        correlation_id = new_correlation_id()
        payload = self._build_payload(request)
        max_retries = self._retry.max_retries
        start = perf_counter()

        for attempt in range(max_retries + 1):
            if attempt > 0:
                delay = self._retry.delay_for(attempt)
                self._logger.info(
                    "Retrying request",
                    {"attempt": attempt + 1, "delay_seconds": round(delay, 3)},
                    correlation_id,
                )
                await self._sleep(delay)

            self._logger.debug(
                "Issuing request",
                {"attempt": attempt + 1, "endpoint": self._endpoint, "model": request.model},
                correlation_id,
            )
            try:
                result = await self._attempt(payload, correlation_id)
            except BusinessError as exc:
                if exc.retryable and attempt < max_retries:
                    self._logger.warn(
                        "Request attempt failed, will retry",
                        {"attempt": attempt + 1, "code": exc.code, "status": exc.http_status, "error": exc.message},
                        correlation_id,
                    )
                    continue
                exc.extra["correlation_id"] = correlation_id
                exc.extra["attempts"] = attempt + 1
                self._record(retries=attempt, failed=True)
                self._logger.error(
                    "Request failed",
                    {
                        "attempts": attempt + 1,
                        "code": exc.code,
                        "status": exc.http_status,
                        "retryable": exc.retryable,
                        "error": exc.message,
                    },
                    correlation_id,
                )
                raise

            elapsed_ms = (perf_counter() - start) * 1000
            self._record(retries=attempt, failed=False, elapsed_ms=elapsed_ms)
            result.correlation_id = correlation_id
            result.attempts = attempt + 1
            result.elapsed_ms = elapsed_ms
            self._logger.info(
                "Request succeeded",
                {"attempts": attempt + 1, "elapsed_ms": round(elapsed_ms, 1)},
                correlation_id,
            )
            return result

        raise RuntimeError("send finished without a result")

    def get_metrics(self) -> ApiMetrics:
        return replace(self._metrics)

    def reset_metrics(self) -> None:
        self._metrics = ApiMetrics()

    async def ping(self) -> bool:
        """对 ping_url 发 GET（未配置时对端点发 HEAD），服务端未报 5xx 即视为可达。"""

        method, url = ("GET", self._ping_url) if self._ping_url else ("HEAD", self._endpoint)
        try:
            if self._http_client is not None:
                resp = await self._http_client.request(method, url, timeout=self._http_timeout)
            else:
                async with httpx.AsyncClient(timeout=self._http_timeout, trust_env=False) as client:
                    resp = await client.request(method, url)
        except httpx.RequestError as e:
            self._logger.warn("Ping failed", {"url": url, "error": str(e)})
            return False
        return resp.status_code < 500

    # ---- 单次尝试 ----

    async def _attempt(self, payload: Dict[str, Any], correlation_id: str) -> ChatResult:
        try:
            resp = await self._post(payload, correlation_id)
        except httpx.RequestError as e:
            # 网络错误：DNS 失败、连接超时、连接被重置等
            raise NetworkError(code="NETWORK_ERROR", message=str(e) or e.__class__.__name__, http_status=0)
        if not resp.is_success:
            raise self._http_error(resp)
        return self._parse_response(resp, correlation_id)

    async def _post(self, payload: Dict[str, Any], correlation_id: str) -> httpx.Response:
        headers = {
            "Content-Type": "application/json",
            "X-Request-ID": correlation_id,
        }
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        if self._http_client is not None:
            return await self._http_client.post(
                self._endpoint, json=payload, headers=headers, timeout=self._http_timeout
            )
        async with httpx.AsyncClient(timeout=self._http_timeout, trust_env=False) as client:
            return await client.post(self._endpoint, json=payload, headers=headers)

    # ---- 辅助方法 ----

    def _build_payload(self, req: ChatRequest) -> Dict[str, Any]:
        msgs = [m.to_payload() for m in req.messages]
        if req.image:
            # 图片挂到最后一条 user 消息上，使用多模态 content 片段
            for i in range(len(msgs) - 1, -1, -1):
                if msgs[i]["role"] == "user" and isinstance(msgs[i]["content"], str):
                    msgs[i] = {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": msgs[i]["content"]},
                            {"type": "image_url", "image_url": {"url": req.image}},
                        ],
                    }
                    break
        return {
            "model": req.model,
            "messages": msgs,
            "image": req.image,
            "max_tokens": req.max_tokens,
            "temperature": req.temperature,
            "top_p": req.top_p,
            "frequency_penalty": req.frequency_penalty,
            "presence_penalty": req.presence_penalty,
        }

    @staticmethod
    def _http_error(resp: httpx.Response) -> ApiError:
        message = f"API error: {resp.reason_phrase or resp.status_code}"
        try:
            body = resp.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            err = body.get("error")
            if isinstance(err, str) and err:
                message = err
            elif isinstance(err, dict) and isinstance(err.get("message"), str) and err["message"]:
                message = err["message"]
        if resp.status_code == 429:
            return RateLimitError(message=message, retry_after=resp.headers.get("retry-after"))
        return ApiError(code="API_ERROR", message=message, http_status=resp.status_code)

    def _parse_response(self, resp: httpx.Response, correlation_id: str) -> ChatResult:
        """校验响应结构并解析为 ChatResult；任何偏差都视为契约违背。"""

        try:
            data = resp.json()
        except ValueError:
            raise self._contract_violation(resp, "response body is not valid JSON", correlation_id)

        choices_raw = data.get("choices") if isinstance(data, dict) else None
        if not isinstance(choices_raw, list) or not choices_raw:
            raise self._contract_violation(resp, "missing or empty choices", correlation_id)

        choices: List[ChatChoice] = []
        for i, ch in enumerate(choices_raw):
            msg = ch.get("message") if isinstance(ch, dict) else None
            if not isinstance(msg, dict):
                raise self._contract_violation(resp, f"choices[{i}].message is missing", correlation_id)
            content = msg.get("content")
            role = msg.get("role")
            if not isinstance(content, str):
                raise self._contract_violation(resp, f"choices[{i}].message.content is not a string", correlation_id)
            if not isinstance(role, str):
                raise self._contract_violation(resp, f"choices[{i}].message.role is not a string", correlation_id)
            choices.append(ChatChoice(index=i, content=content, role=role, finish_reason=ch.get("finish_reason")))

        usage = None
        usage_raw = data.get("usage")
        if isinstance(usage_raw, dict):
            usage = ChatUsage(
                prompt_tokens=usage_raw.get("prompt_tokens", 0),
                completion_tokens=usage_raw.get("completion_tokens", 0),
                total_tokens=usage_raw.get("total_tokens", 0),
            )
        return ChatResult(choices=choices, usage=usage, sources=self._parse_sources(data.get("sources")), raw=data)

    @staticmethod
    def _parse_sources(raw: Any) -> Optional[tuple]:
        if not isinstance(raw, list):
            return None
        return tuple(
            Source(title=str(s.get("title") or s.get("url") or ""), url=s.get("url"))
            for s in raw
            if isinstance(s, dict)
        )

    def _contract_violation(self, resp: httpx.Response, reason: str, correlation_id: str) -> ContractViolationError:
        self._logger.error(
            "Response failed contract validation",
            {
                "reason": reason,
                "status": resp.status_code,
                "headers": dict(resp.headers),
                "body": resp.text,
            },
            correlation_id,
        )
        return ContractViolationError(
            code="CONTRACT_VIOLATION",
            message=f"Malformed completion response: {reason}",
            http_status=502,
            status=resp.status_code,
        )

    def _record(self, retries: int, failed: bool, elapsed_ms: float = 0.0) -> None:
        m = self._metrics
        m.request_count += 1
        m.retry_count += retries
        if failed:
            m.error_count += 1
        else:
            m.total_response_time_ms += elapsed_ms
        self._check_thresholds()

    def _check_thresholds(self) -> None:
        m = self._metrics
        if m.average_response_time_ms > self._slow_ms:
            self._logger.warn(
                "Average response time above threshold",
                {"average_ms": round(m.average_response_time_ms, 1), "threshold_ms": self._slow_ms},
            )
        if m.error_rate > self._error_rate_threshold:
            self._logger.warn(
                "API error rate above threshold",
                {"error_rate": round(m.error_rate, 3), "threshold": self._error_rate_threshold},
            )
