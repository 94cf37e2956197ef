"""日志组件。

- setup_logger: 配置 stdlib logging 输出（彩色控制台 + 可选 JSON 行文件）。
- EventLogger: 在转发到 stdlib logger 的同时，把每条事件写入有界环形缓冲，
  供会话内诊断（最近日志、错误率）使用。
"""

import json
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Deque, Dict, List, Literal, Optional, Union

LogLevel = Literal["debug", "info", "warn", "error"]

_LEVELS: Dict[str, int] = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}

_COLORS: Dict[int, str] = {
    logging.DEBUG: "\x1b[36m",  # cyan
    logging.INFO: "\x1b[32m",  # green
    logging.WARNING: "\x1b[33m",  # yellow
    logging.ERROR: "\x1b[31m",  # red
}
_RESET = "\x1b[0m"


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat().replace("+00:00", "Z")


class JsonFormatter(logging.Formatter):
    def __init__(self, redact_content: bool = False):
        super().__init__()
        self._redact = redact_content

    def format(self, record: logging.LogRecord) -> str:
        msg = record.getMessage()
        if self._redact:
            msg = (msg or "")[:64]
        payload = {
            "ts": _iso(record.created),
            "level": record.levelname,
            "name": record.name,
            "msg": msg,
        }
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict):
            payload.update(extra)
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class ConsoleFormatter(logging.Formatter):
    """按级别着色的单行控制台输出。"""

    def format(self, record: logging.LogRecord) -> str:
        color = _COLORS.get(record.levelno, "")
        extra = getattr(record, "extra", None) or {}
        corr = extra.get("correlation_id") if isinstance(extra, dict) else None
        line = f"{_iso(record.created)} {color}{record.levelname}{_RESET}"
        if corr:
            line += f" [{corr}]"
        line += f": {record.getMessage()}"
        data = extra.get("data") if isinstance(extra, dict) else None
        if data is not None:
            line += " " + json.dumps(data, ensure_ascii=False, default=str)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logger(
    name: str = "chat_core",
    log_dir: Optional[Union[str, Path]] = None,
    level: Union[str, int] = logging.INFO,
    redact_content: bool = False,
) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.setLevel(level)
    if not any(isinstance(h.formatter, ConsoleFormatter) for h in logger.handlers):
        ch = logging.StreamHandler()
        ch.setFormatter(ConsoleFormatter())
        logger.addHandler(ch)
    if log_dir and not any(isinstance(h, logging.FileHandler) for h in logger.handlers):
        path = Path(log_dir)
        path.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(path / "chat.log", encoding="utf-8")
        fh.setFormatter(JsonFormatter(redact_content=redact_content))
        logger.addHandler(fh)
    return logger


@dataclass
class LogEntry:
    timestamp: str
    level: LogLevel
    message: str
    data: Optional[Any] = None
    correlation_id: Optional[str] = None


class EventLogger:
    """结构化事件日志 + 有界环形缓冲。

    缓冲满时最旧的记录被静默丢弃；get_error_rate 只反映当前保留窗口，
    不代表整个进程生命周期。
    """

    def __init__(self, sink: Optional[logging.Logger] = None, capacity: int = 1000):
        self._sink = sink or logging.getLogger("chat_core")
        self._entries: Deque[LogEntry] = deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._entries.maxlen or 0

    def debug(self, message: str, data: Any = None, correlation_id: Optional[str] = None) -> None:
        self._add("debug", message, data, correlation_id)

    def info(self, message: str, data: Any = None, correlation_id: Optional[str] = None) -> None:
        self._add("info", message, data, correlation_id)

    def warn(self, message: str, data: Any = None, correlation_id: Optional[str] = None) -> None:
        self._add("warn", message, data, correlation_id)

    warning = warn

    def error(
        self,
        message: str,
        data: Any = None,
        correlation_id: Optional[str] = None,
        exc_info: bool = False,
    ) -> None:
        self._add("error", message, data, correlation_id, exc_info=exc_info)

    def get_logs(self, level: Optional[LogLevel] = None, limit: int = 100) -> List[LogEntry]:
        """最近的日志在前，可按级别过滤。"""

        items = [e for e in reversed(self._entries) if level is None or e.level == level]
        return items[:limit]

    def get_error_rate(self) -> float:
        total = len(self._entries)
        if total == 0:
            return 0.0
        errors = sum(1 for e in self._entries if e.level == "error")
        return errors / total

    def clear_logs(self) -> None:
        self._entries.clear()

    def _add(
        self,
        level: LogLevel,
        message: str,
        data: Any,
        correlation_id: Optional[str],
        exc_info: bool = False,
    ) -> None:
        self._entries.append(
            LogEntry(
                timestamp=_iso(datetime.now(timezone.utc).timestamp()),
                level=level,
                message=message,
                data=data,
                correlation_id=correlation_id,
            )
        )
        payload: Dict[str, Any] = {}
        if data is not None:
            payload["data"] = data
        if correlation_id:
            payload["correlation_id"] = correlation_id
        self._sink.log(_LEVELS[level], message, extra={"extra": payload}, exc_info=exc_info)
