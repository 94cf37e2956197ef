"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在编排层统一捕获并转换为用户提示。

`retryable` 标记错误能否在 ResilientClient 的重试预算内自动重试；
只有编排层（ChatOrchestrator）负责把异常翻译成面向用户的文本。
"""

from typing import Optional


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 技术性错误信息（不直接展示给用户）。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 correlation_id、attempts 等）。
    """

    retryable: bool = False

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class NetworkError(BusinessError):
    """网络层错误，例如连接失败、超时、连接被重置等。"""

    retryable = True


class ApiError(BusinessError):
    """第三方 API 返回非 2xx 时抛出；5xx 可重试，其余 4xx 为致命错误。"""

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return self.http_status >= 500 or self.http_status == 429


class RateLimitError(ApiError):
    """Provider 返回 429，客户端内重试，耗尽后由编排层加大本地退避。"""

    def __init__(self, code: str = "RATE_LIMIT", message: str = "Provider rate limit", http_status: int = 429, **extra):
        super().__init__(code=code, message=message, http_status=http_status, **extra)


class ContractViolationError(BusinessError):
    """HTTP 成功但响应体不符合约定结构（provider 端 schema 漂移），不重试。"""


class ValidationError(BusinessError):
    """参数或配置校验失败。"""


class AdmissionDeniedError(BusinessError):
    """本地限流器预测额度耗尽，请求未发出。"""

    def __init__(self, wait_seconds: float, remaining: int, message: Optional[str] = None):
        super().__init__(
            code="ADMISSION_DENIED",
            message=message or f"Local rate limit reached, next slot in {wait_seconds:.1f}s",
            http_status=429,
            wait_seconds=wait_seconds,
            remaining=remaining,
        )
        self.wait_seconds = wait_seconds
        self.remaining = remaining


class TurnInProgressError(BusinessError):
    """上一轮对话尚未结束时再次发送。"""

    def __init__(self, message: str = "A chat turn is already in flight"):
        super().__init__(code="TURN_IN_PROGRESS", message=message, http_status=409)


class TurnTimeoutError(BusinessError):
    """单轮对话超过看门狗时限仍未返回。"""

    def __init__(self, timeout: float):
        super().__init__(
            code="TURN_TIMEOUT",
            message=f"Chat turn did not resolve within {timeout:.0f}s",
            http_status=504,
            timeout=timeout,
        )
        self.timeout = timeout
