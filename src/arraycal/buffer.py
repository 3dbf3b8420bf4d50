"""
Thread-safe, time-ordered buffer of incoming detections.

Producers (one callback per camera source) push; the periodic driver drains
everything at or before a cutoff. Entries come out in timestamp order
regardless of arrival order; equal timestamps keep arrival order.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
from dataclasses import dataclass, field

from .types import Detection

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True, order=True)
class BufferedDetection:
    timestamp: float
    sequence: int
    source: str = field(compare=False)
    detection: Detection = field(compare=False)


class DetectionBuffer:
    """
    Min-heap of detections keyed by (timestamp, arrival sequence).

    capacity=0 means unbounded. When bounded and full, the entry with the
    oldest timestamp is evicted to make room; evictions are counted and
    logged.
    """

    def __init__(self, capacity: int = 0):
        if capacity < 0:
            raise ValueError(f"capacity must be >= 0, got {capacity}")
        self.capacity = capacity
        self.lock = threading.Lock()
        self._heap: list[BufferedDetection] = []
        self._sequence = itertools.count()
        self.evicted = 0
        self.rejected = 0

    def push(self, source: str, timestamp: float, detection: Detection) -> None:
        with self.lock:
            entry = BufferedDetection(float(timestamp), next(self._sequence), source, detection)
            if self.capacity and len(self._heap) >= self.capacity:
                dropped = heapq.heappushpop(self._heap, entry)
                self.evicted += 1
                logger.warning(
                    "Detection buffer full (%d), evicted %s @ %.3f",
                    self.capacity,
                    dropped.source,
                    dropped.timestamp,
                    extra={"source": dropped.source},
                )
            else:
                heapq.heappush(self._heap, entry)

    def record_rejection(self) -> int:
        with self.lock:
            self.rejected += 1
            return self.rejected

    def drain_up_to(self, cutoff: float) -> list[BufferedDetection]:
        """
        Remove and return every entry with timestamp <= cutoff, oldest first.
        """
        drained = []
        with self.lock:
            while self._heap and self._heap[0].timestamp <= cutoff:
                drained.append(heapq.heappop(self._heap))
        return drained

    def __len__(self) -> int:
        with self.lock:
            return len(self._heap)

    @property
    def oldest_timestamp(self) -> float | None:
        with self.lock:
            return self._heap[0].timestamp if self._heap else None
