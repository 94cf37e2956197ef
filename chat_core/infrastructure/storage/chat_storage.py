"""会话历史与偏好的持久化。

所有值都以完整 JSON 文本整体写入（不做增量）；读取失败或内容损坏时
回落到空值/默认值，不向上抛出。写入失败只记录日志，不打断对话。
"""

import json
from typing import Any, List, Optional

from chat_core.domain.conversation import KeyValueStore
from chat_core.domain.exceptions import BusinessError
from chat_core.domain.models import THEMES, ChatMessage, Preferences, ThemePreference
from chat_core.infrastructure.logging.logger import EventLogger

MESSAGES_KEY = "chat_messages"
THEME_KEY = "theme_preference"
PREFERENCES_KEY = "accessibility_settings"

DEFAULT_THEME: ThemePreference = "system"


class ChatStorage:
    def __init__(self, store: KeyValueStore, logger: Optional[EventLogger] = None, max_messages: int = 50):
        self._store = store
        self._logger = logger or EventLogger()
        self.max_messages = max_messages

    # ---- 消息 ----

    def get_messages(self) -> List[ChatMessage]:
        data = self._read_json(MESSAGES_KEY)
        if data is None:
            return []
        if not isinstance(data, list):
            self._logger.warn("Stored messages are not a list, ignored", {"key": MESSAGES_KEY})
            return []
        try:
            return [ChatMessage.from_dict(item) for item in data]
        except (ValueError, TypeError, AttributeError) as e:
            self._logger.warn("Stored messages are malformed, ignored", {"key": MESSAGES_KEY, "error": str(e)})
            return []

    def save_messages(self, messages: List[ChatMessage]) -> None:
        trimmed = messages[-self.max_messages:]
        self._write_json(MESSAGES_KEY, [m.to_dict() for m in trimmed])

    def clear_messages(self) -> None:
        try:
            self._store.delete(MESSAGES_KEY)
        except BusinessError as e:
            self._logger.error("Error clearing messages from storage", {"code": e.code, "error": e.message})

    # ---- 主题 ----

    def get_theme(self) -> ThemePreference:
        data = self._read_json(THEME_KEY)
        if data in THEMES:
            return data
        return DEFAULT_THEME

    def save_theme(self, theme: ThemePreference) -> None:
        self._write_json(THEME_KEY, theme)

    # ---- 偏好 ----

    def get_preferences(self) -> Preferences:
        data = self._read_json(PREFERENCES_KEY)
        if not isinstance(data, dict):
            return Preferences()
        defaults = Preferences()
        try:
            return Preferences(
                reduced_motion=bool(data.get("reduced_motion", defaults.reduced_motion)),
                high_contrast=bool(data.get("high_contrast", defaults.high_contrast)),
                font_size=_pick(data.get("font_size"), ("normal", "large", "larger"), defaults.font_size),
                prompt_style=_pick(
                    data.get("prompt_style"),
                    ("balanced", "creative", "precise", "helpful"),
                    defaults.prompt_style,
                ),
            )
        except (TypeError, ValueError):
            return defaults

    def save_preferences(self, prefs: Preferences) -> None:
        self._write_json(PREFERENCES_KEY, prefs.to_dict())

    # ---- 辅助方法 ----

    def _read_json(self, key: str) -> Any:
        try:
            raw = self._store.get(key)
        except BusinessError as e:
            self._logger.error("Error reading from storage", {"key": key, "code": e.code, "error": e.message})
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            self._logger.warn("Stored value is not valid JSON, using default", {"key": key, "error": str(e)})
            return None

    def _write_json(self, key: str, value: Any) -> None:
        try:
            self._store.set(key, json.dumps(value, ensure_ascii=False))
        except BusinessError as e:
            self._logger.error("Error saving to storage", {"key": key, "code": e.code, "error": e.message})


def _pick(value: Any, allowed: tuple, default: Any) -> Any:
    return value if value in allowed else default
