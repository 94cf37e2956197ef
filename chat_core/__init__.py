"""Chat Core 顶层包。

该包提供聊天客户端的韧性与编排层：
本地限流准入、带重试与响应校验的 completion 客户端、
结构化日志与指标、以及与持久化存储保持一致的会话状态机。
"""

from chat_core.api.service import ChatSession, create_session

__all__ = ["ChatSession", "create_session"]
