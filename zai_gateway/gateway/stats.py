from __future__ import annotations

import threading
import time
from collections import OrderedDict, deque
from collections.abc import Callable
from dataclasses import asdict, dataclass
from typing import Any, Generic, TypeVar

K = TypeVar("K")


class BoundedCounterMap(Generic[K]):
    def __init__(self, max_keys: int):
        self._max_keys = max(1, int(max_keys))
        self._data: OrderedDict[K, int] = OrderedDict()

    def increment(self, key: K, amount: int = 1) -> int:
        is_new = key not in self._data
        value = self._data.get(key, 0) + int(amount)
        self._data[key] = value
        self._data.move_to_end(key)
        if is_new and len(self._data) > self._max_keys:
            self._data.popitem(last=False)
        return value

    def get(self, key: K, default: int = 0) -> int:
        return self._data.get(key, default)

    def to_dict(self) -> dict[K, int]:
        return dict(self._data)


@dataclass(slots=True)
class RequestRecord:
    model: str
    status: int
    duration_ms: float
    timestamp: float
    stream: bool
    error: str | None = None


class RequestStatsCollector:
    """In-memory request counters, safe to share across threads."""

    def __init__(
        self,
        *,
        recent_requests: int = 100,
        model_max_keys: int = 256,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._lock = threading.Lock()
        self._clock = clock
        self._total = 0
        self._successful = 0
        self._failed = 0
        self._duration_sum_ms = 0.0
        self._last_request_at: float | None = None
        self._requests_by_model: BoundedCounterMap[str] = BoundedCounterMap(
            max_keys=model_max_keys
        )
        self._recent: deque[RequestRecord] = deque(maxlen=max(1, int(recent_requests)))

    def record(
        self,
        *,
        model: str,
        status: int,
        duration_ms: float,
        stream: bool = False,
        error: str | None = None,
    ) -> None:
        now = self._clock()
        record = RequestRecord(
            model=model,
            status=int(status),
            duration_ms=max(0.0, float(duration_ms)),
            timestamp=now,
            stream=stream,
            error=error,
        )
        with self._lock:
            self._total += 1
            if 200 <= record.status < 300:
                self._successful += 1
            else:
                self._failed += 1
            self._duration_sum_ms += record.duration_ms
            self._last_request_at = now
            if model:
                self._requests_by_model.increment(model)
            self._recent.append(record)

    @property
    def total_requests(self) -> int:
        return self._total

    @property
    def average_response_time_ms(self) -> float:
        with self._lock:
            if self._total == 0:
                return 0.0
            return self._duration_sum_ms / self._total

    def recent_requests(self) -> list[RequestRecord]:
        with self._lock:
            return list(self._recent)

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            average = self._duration_sum_ms / self._total if self._total else 0.0
            return {
                "total_requests": self._total,
                "successful_requests": self._successful,
                "failed_requests": self._failed,
                "average_response_time_ms": round(average, 3),
                "last_request_time": self._last_request_at,
                "requests_by_model": self._requests_by_model.to_dict(),
                "recent_requests": [asdict(item) for item in self._recent],
            }
