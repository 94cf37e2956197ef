import os
import re
from pathlib import Path
from typing import Dict, Optional
from uuid import uuid4

from chat_core.config.settings import settings
from chat_core.domain.exceptions import BusinessError, ValidationError

_KEY_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


class JsonFileKeyValueStore:
    """每个键一个 JSON 文件，整体替换写入。"""

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._kv_root = self._root / "kv"
        self._kv_root.mkdir(parents=True, exist_ok=True)

    def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            return path.read_text(encoding="utf-8")
        except OSError as e:
            raise BusinessError(code="STORE_READ_ERROR", message=str(e))

    def set(self, key: str, value: str) -> None:
        path = self._path(key)
        tmp_path = self._kv_root / f"{key}.{uuid4().hex}.json.tmp"
        try:
            tmp_path.write_text(value, encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as e:
            raise BusinessError(code="STORE_WRITE_ERROR", message=str(e))

    def delete(self, key: str) -> None:
        path = self._path(key)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise BusinessError(code="STORE_DELETE_ERROR", message=str(e))

    def _path(self, key: str) -> Path:
        if not _KEY_RE.match(key):
            raise ValidationError(code="INVALID_STORE_KEY", message=key)
        return self._kv_root / f"{key}.json"


class MemoryKeyValueStore:
    """进程内存储，用于测试与临时会话。"""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)
