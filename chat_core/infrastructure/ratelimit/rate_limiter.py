"""
本地准入控制。

近似"滑动窗口内最多 K 个请求"，并在持续压力下自适应放宽窗口：

- 本地预测拒绝时窗口倍率按 growth_factor 增长（上限 max_multiplier）；
- provider 返回 429 时按更陡的 provider_growth_factor 增长（上限更高）；
- 每次准入通过时倍率按 decay_factor 回落，最低为 1。

倍率在突发流量下可能来回振荡，相关系数作为调优参数放在 RateLimitConfig。
"""

import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, Optional

from chat_core.infrastructure.logging.logger import EventLogger


@dataclass
class RateLimitConfig:
    max_requests: int = 10
    window_seconds: float = 60.0

    # 本地预测压力
    growth_factor: float = 1.5
    max_multiplier: float = 4.0
    decay_factor: float = 0.9

    # provider 确认的压力（HTTP 429）
    provider_growth_factor: float = 2.0
    provider_max_multiplier: float = 8.0


class RateLimiter:
    """单会话的请求准入门。时间戳与倍率只在同步代码段内读写。"""

    def __init__(
        self,
        config: Optional[RateLimitConfig] = None,
        logger: Optional[EventLogger] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or RateLimitConfig()
        self._logger = logger or EventLogger()
        self._clock = clock
        self._timestamps: Deque[float] = deque()
        self.backoff_multiplier = 1.0

    @property
    def window(self) -> float:
        """当前（可能被放宽的）有效窗口长度，单位秒。"""
        return self.config.window_seconds * self.backoff_multiplier

    def check_admission(self) -> bool:
        """判断是否允许发出新请求；不记录时间戳，记录由 record_admission 完成。"""
        now = self._clock()
        self._evict(now)
        if len(self._timestamps) < self.config.max_requests:
            self.backoff_multiplier = max(1.0, self.backoff_multiplier * self.config.decay_factor)
            return True

        grown = min(self.backoff_multiplier * self.config.growth_factor, self.config.max_multiplier)
        # 本地拒绝不会压低 provider 路径已经抬高的倍率
        self.backoff_multiplier = max(self.backoff_multiplier, grown)
        self._logger.warn(
            "Rate limit admission denied",
            {
                "live": len(self._timestamps),
                "limit": self.config.max_requests,
                "multiplier": round(self.backoff_multiplier, 3),
            },
        )
        return False

    def record_admission(self) -> None:
        now = self._clock()
        self._timestamps.append(now)
        self._evict(now)

    def remaining_capacity(self) -> int:
        self._evict(self._clock())
        return max(0, self.config.max_requests - len(self._timestamps))

    def time_until_next_slot(self) -> float:
        """距离下一个可用名额的秒数；未满时为 0。"""
        now = self._clock()
        self._evict(now)
        k = self.config.max_requests
        if len(self._timestamps) < k:
            return 0.0
        # 第 K 新的时间戳离开窗口后，存活数才会降到 K 以下
        blocking = self._timestamps[-k]
        return max(0.0, blocking + self.window - now)

    def on_provider_rate_limit_signal(self) -> None:
        self.backoff_multiplier = min(
            self.backoff_multiplier * self.config.provider_growth_factor,
            self.config.provider_max_multiplier,
        )
        self._logger.warn(
            "Provider rate limit signalled, widening window",
            {"multiplier": round(self.backoff_multiplier, 3), "window_seconds": round(self.window, 3)},
        )

    def reset(self) -> None:
        self._timestamps.clear()
        self.backoff_multiplier = 1.0

    def status(self) -> Dict[str, Any]:
        """当前限流状态，用于监控展示。"""
        now = self._clock()
        self._evict(now)
        return {
            "live": len(self._timestamps),
            "limit": self.config.max_requests,
            "remaining": max(0, self.config.max_requests - len(self._timestamps)),
            "backoff_multiplier": round(self.backoff_multiplier, 3),
            "window_seconds": round(self.window, 3),
        }

    def _evict(self, now: float) -> None:
        cutoff = now - self.window
        while self._timestamps and self._timestamps[0] <= cutoff:
            self._timestamps.popleft()
