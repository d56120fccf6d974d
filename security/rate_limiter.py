"""
IPアドレス単位のレート制限（インメモリ・固定ウィンドウ）

時刻をウィンドウ幅で区切り（15分なら 00:00, 00:15, ...）、ウィンドウ内の
リクエスト数が上限を超えたIPを拒否する。ウィンドウが切り替わった時点で
前のウィンドウのカウンタは破棄するので、保持するのは現在のウィンドウで
アクセスのあったIPの分だけ。
"""

import logging
import math
import threading
import time
from typing import Callable, Dict, NamedTuple, Optional

from config.stream_security_settings import (
    DEFAULT_RATE_LIMIT_MAX_REQUESTS,
    DEFAULT_RATE_LIMIT_WINDOW_SECONDS,
)

logger = logging.getLogger(__name__)


class RateLimitResult(NamedTuple):
    allowed: bool
    count: int  # 現在のウィンドウでのリクエスト数（今回分を含む）
    retry_after: int  # 次のウィンドウまでの秒数


class RateLimiter:
    """固定ウィンドウ方式のIP単位レート制限"""

    def __init__(self, max_requests: int = DEFAULT_RATE_LIMIT_MAX_REQUESTS,
                 window_seconds: int = DEFAULT_RATE_LIMIT_WINDOW_SECONDS,
                 clock: Callable[[], float] = time.time):
        """
        Args:
            max_requests: ウィンドウ内で許可するリクエスト数
            window_seconds: ウィンドウ幅（秒）
            clock: 現在時刻（epoch秒）を返す関数
        """
        if max_requests <= 0:
            raise ValueError("max_requests must be positive")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")

        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.clock = clock
        self._window_index: Optional[int] = None
        self._counts: Dict[str, int] = {}
        self._lock = threading.Lock()

    def hit(self, client_ip: str) -> RateLimitResult:
        """リクエストを1件数え、許可するか判定する"""
        now = self.clock()
        window_index = int(now // self.window_seconds)
        window_end = (window_index + 1) * self.window_seconds
        retry_after = max(1, math.ceil(window_end - now))

        with self._lock:
            if window_index != self._window_index:
                self._window_index = window_index
                self._counts.clear()
            count = self._counts.get(client_ip, 0) + 1
            self._counts[client_ip] = count

        allowed = count <= self.max_requests
        if count == self.max_requests + 1:
            logger.warning(
                f"Rate limit exceeded: {client_ip} "
                f"({self.max_requests} requests / {self.window_seconds} seconds)"
            )
        return RateLimitResult(allowed, count, retry_after)

    def __len__(self) -> int:
        with self._lock:
            return len(self._counts)
