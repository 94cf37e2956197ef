"""统一的对话与结果数据模型。

本模块定义了聊天客户端在编排层、Provider 适配层与存储之间共享的标准数据结构：

- ChatMessage: 会话历史中的一条消息（user/assistant），创建后不可变。
- RequestMessage / ChatRequest: 发给 completion 端点的完整请求。
- ChatResult: 校验通过后的统一响应结果。
- ApiMetrics: ResilientClient 累计的调用指标。
"""

import base64
import mimetypes
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Tuple, Union


# 会话历史中只保存 user / assistant；system 仅出现在发出的请求里
Role = Literal["user", "assistant"]
RequestRole = Literal["user", "assistant", "system"]

ROLES = ("user", "assistant")


@dataclass(frozen=True)
class Source:
    """助手回答引用的来源。"""

    title: str
    url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"title": self.title, "url": self.url}


@dataclass(frozen=True)
class ChatMessage:
    """一条会话消息。

    - role: 消息角色，user 或 assistant。
    - content: 纯文本内容。
    - sources: 可选的来源列表（仅 assistant 消息会携带）。
    """

    role: Role
    content: str
    sources: Optional[Tuple[Source, ...]] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.sources is not None:
            payload["sources"] = [s.to_dict() for s in self.sources]
        return payload

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatMessage":
        """从持久化的 JSON 对象还原；结构不合法时抛出 ValueError。"""

        role = data.get("role")
        content = data.get("content")
        if role not in ROLES:
            raise ValueError(f"invalid role: {role!r}")
        if not isinstance(content, str):
            raise ValueError("message content must be a string")
        raw_sources = data.get("sources")
        sources = None
        if raw_sources is not None:
            sources = tuple(
                Source(title=str(s.get("title") or ""), url=s.get("url")) for s in raw_sources
            )
        return cls(role=role, content=content, sources=sources)


@dataclass(frozen=True)
class Attachment:
    """用户随消息附带的文件（通常是图片）。"""

    data: bytes
    mime_type: str
    filename: Optional[str] = None

    @classmethod
    def from_path(cls, path: Union[str, Path]) -> "Attachment":
        p = Path(path)
        mime_type, _ = mimetypes.guess_type(p.name)
        return cls(data=p.read_bytes(), mime_type=mime_type or "application/octet-stream", filename=p.name)

    @property
    def size(self) -> int:
        return len(self.data)

    def to_data_uri(self) -> str:
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.mime_type};base64,{encoded}"


@dataclass
class RequestMessage:
    """请求中的一条消息；content 为字符串或多模态片段列表。"""

    role: RequestRole
    content: Union[str, List[Dict[str, Any]]]

    def to_payload(self) -> Dict[str, Any]:
        return {"role": self.role, "content": self.content}


@dataclass
class ChatRequest:
    """一次完整的 completion 请求。

    编排层把裁剪后的历史与系统提示词组装成 ChatRequest，
    再交给 ResilientClient 转成 HTTP 请求体。
    """

    messages: List[RequestMessage]
    model: str
    image: Optional[str] = None  # data URI
    max_tokens: int = 500
    temperature: float = 0.7
    top_p: float = 0.7
    frequency_penalty: float = 0.0
    presence_penalty: float = 0.0


@dataclass
class ChatUsage:
    """Provider 返回的 token 统计信息。"""

    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


@dataclass
class ChatChoice:
    """单个候选回答（目前通常只用 index=0 的一条）。"""

    index: int
    content: str
    role: str
    finish_reason: Optional[str] = None


@dataclass
class ChatResult:
    """一次 completion 调用校验通过后的结果。

    - choices: 一个或多个候选回答，至少一条。
    - usage: 可选的 token 使用统计。
    - sources: 响应中附带的来源（若 provider 提供）。
    - raw: 原始响应 JSON，用于调试。
    - correlation_id / attempts / elapsed_ms: 本次逻辑请求的追踪信息。
    """

    choices: List[ChatChoice]
    usage: Optional[ChatUsage] = None
    sources: Optional[Tuple[Source, ...]] = None
    raw: Optional[dict] = None
    correlation_id: str = ""
    attempts: int = 1
    elapsed_ms: float = 0.0

    @property
    def content(self) -> str:
        return self.choices[0].content


@dataclass
class ApiMetrics:
    """ResilientClient 的累计指标，只能通过 reset_metrics 清零。"""

    request_count: int = 0
    error_count: int = 0
    retry_count: int = 0
    total_response_time_ms: float = 0.0

    @property
    def success_count(self) -> int:
        return self.request_count - self.error_count

    @property
    def average_response_time_ms(self) -> float:
        if self.success_count <= 0:
            return 0.0
        return self.total_response_time_ms / self.success_count

    @property
    def error_rate(self) -> float:
        if self.request_count == 0:
            return 0.0
        return self.error_count / self.request_count

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_count": self.request_count,
            "error_count": self.error_count,
            "retry_count": self.retry_count,
            "total_response_time_ms": round(self.total_response_time_ms, 2),
            "average_response_time_ms": round(self.average_response_time_ms, 2),
            "error_rate": round(self.error_rate, 4),
        }


@dataclass
class Preferences:
    """显示与提示词偏好（由 UI 维护，持久化为一个整体）。"""

    reduced_motion: bool = False
    high_contrast: bool = False
    font_size: Literal["normal", "large", "larger"] = "normal"
    prompt_style: Literal["balanced", "creative", "precise", "helpful"] = "balanced"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reduced_motion": self.reduced_motion,
            "high_contrast": self.high_contrast,
            "font_size": self.font_size,
            "prompt_style": self.prompt_style,
        }


ThemePreference = Literal["light", "dark", "system"]
THEMES = ("light", "dark", "system")
