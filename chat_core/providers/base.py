"""Completion 客户端抽象接口。

编排层不直接依赖 HTTP 细节，而是依赖此协议：

- ResilientClient 是默认实现，负责重试、退避、响应结构校验与指标。
- 测试中可以注入任意实现了 send/get_metrics 的替身。
"""

from typing import Protocol

from chat_core.domain.models import ApiMetrics, ChatRequest, ChatResult


class CompletionClient(Protocol):
    """LLM completion 客户端协议。

    实现者需要提供：
    - send(req): 执行一次逻辑请求，成功返回 ChatResult，失败抛出分类后的 BusinessError。
    - get_metrics(): 返回累计指标的快照。
    """

    async def send(self, request: ChatRequest) -> ChatResult:
        ...

    def get_metrics(self) -> ApiMetrics:
        ...
