from __future__ import annotations

import psutil


class ResourceMonitor:
    def __init__(self, memory_limit_bytes: int, *, process: psutil.Process | None = None):
        self.memory_limit_bytes = max(1, int(memory_limit_bytes))
        self._process = process or psutil.Process()

    @classmethod
    def from_megabytes(cls, limit_mb: int) -> ResourceMonitor:
        return cls(int(limit_mb) * 1024 * 1024)

    def memory_usage(self) -> int:
        return int(self._process.memory_info().rss)

    def memory_ratio(self) -> float:
        return self.memory_usage() / self.memory_limit_bytes

    def is_above(self, watermark: float) -> bool:
        return self.memory_ratio() > watermark


class StaticResourceMonitor:
    """Fixed reading, for callers that do not want to sample the process."""

    def __init__(self, ratio: float = 0.0, memory_limit_bytes: int = 1):
        self.ratio = ratio
        self.memory_limit_bytes = memory_limit_bytes

    def memory_usage(self) -> int:
        return int(self.ratio * self.memory_limit_bytes)

    def memory_ratio(self) -> float:
        return self.ratio

    def is_above(self, watermark: float) -> bool:
        return self.ratio > watermark
