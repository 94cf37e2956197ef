from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Protocol

from .models import ChatMessage


class TurnPhase(str, Enum):
    IDLE = "idle"
    ADMITTING = "admitting"
    IN_FLIGHT = "in_flight"
    RESOLVED = "resolved"
    FAILED = "failed"


@dataclass
class ConversationState:
    messages: List[ChatMessage] = field(default_factory=list)
    is_loading: bool = False
    error: Optional[str] = None
    phase: TurnPhase = TurnPhase.IDLE

    def snapshot(self) -> "ConversationState":
        # ChatMessage 不可变，浅拷贝列表即可
        return ConversationState(
            messages=list(self.messages),
            is_loading=self.is_loading,
            error=self.error,
            phase=self.phase,
        )


class KeyValueStore(Protocol):
    """持久化键值存储协议，值为完整的 JSON 文本。"""

    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def delete(self, key: str) -> None:
        ...
