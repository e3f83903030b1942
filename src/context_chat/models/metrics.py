# context_chat/models/metrics.py
"""Per-model usage metrics."""

from __future__ import annotations

import threading
from collections import deque
from typing import Any

from pydantic import BaseModel, Field, PrivateAttr

from context_chat.base_models import DictCompatModel
from context_chat.config import LATENCY_WINDOW


class MetricsSnapshot(DictCompatModel):
    """Point-in-time read of one model's UsageMetrics."""

    requests: int = 0
    failures: int = 0
    success_rate: float = 0.0
    total_tokens: int = 0
    avg_latency_ms: float = 0.0


class UsageMetrics(BaseModel):
    """
    Counters and recent latencies for one model id.

    Each instance owns its lock, so recording against one model never waits
    on another. Counters only grow until ``reset()``.
    """

    requests: int = Field(default=0)
    failures: int = Field(default=0)
    total_tokens: int = Field(default=0)
    recent_latencies_ms: deque[float] = Field(default_factory=lambda: deque(maxlen=LATENCY_WINDOW))

    _lock: Any = PrivateAttr(default_factory=threading.Lock)

    def record(self, tokens: int, latency_ms: float, success: bool) -> None:
        with self._lock:
            self.requests += 1
            if not success:
                self.failures += 1
            self.total_tokens += max(0, tokens)
            self.recent_latencies_ms.append(float(latency_ms))

    def reset(self) -> None:
        with self._lock:
            self.requests = 0
            self.failures = 0
            self.total_tokens = 0
            self.recent_latencies_ms.clear()

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            latencies = list(self.recent_latencies_ms)
            requests = self.requests
            failures = self.failures
            total_tokens = self.total_tokens

        success_rate = (requests - failures) / requests if requests else 0.0
        avg_latency = sum(latencies) / len(latencies) if latencies else 0.0
        return MetricsSnapshot(
            requests=requests,
            failures=failures,
            success_rate=success_rate,
            total_tokens=total_tokens,
            avg_latency_ms=avg_latency,
        )
