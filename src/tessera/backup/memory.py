"""
Process memory checkpoints for a backup run.

Each run owns a MemoryMonitor instance. Checkpoints record resident memory,
the highest resident memory seen so far, and a timestamp; compare() reports
the deltas between two checkpoints.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import psutil

logger = logging.getLogger(__name__)

BYTE_UNITS = ["B", "KB", "MB", "GB", "TB", "PB"]


@dataclass(frozen=True)
class MemoryCheckpoint:
    name: str
    memory_usage: int
    peak_memory: int
    timestamp: float


def format_bytes(num_bytes: int) -> str:
    """Human readable size with binary units, e.g. 1536 -> '1.5 KB'."""
    if num_bytes == 0:
        return "0 B"
    sign = "-" if num_bytes < 0 else ""
    value = float(abs(num_bytes))
    power = 0
    while value >= 1024 and power < len(BYTE_UNITS) - 1:
        value /= 1024
        power += 1
    return f"{sign}{round(value, 2):g} {BYTE_UNITS[power]}"


def format_duration(seconds: float) -> str:
    """Compact duration, e.g. 3725 -> '1h 2m'."""
    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds}s"

    minutes, rest = divmod(seconds, 60)
    if minutes < 60:
        return f"{minutes}m {rest}s" if rest else f"{minutes}m"

    hours, minutes = divmod(minutes, 60)
    if hours < 24:
        return f"{hours}h {minutes}m" if minutes else f"{hours}h"

    days, hours = divmod(hours, 24)
    return f"{days}d {hours}h" if hours else f"{days}d"


class MemoryMonitor:
    """
    Named memory checkpoints for one run.

    Args:
        memory_reader: Returns current resident memory in bytes.
        clock: Returns the current time in seconds.
    """

    def __init__(
        self,
        memory_reader: Callable[[], int] | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._read_memory = memory_reader or _resident_memory
        self._clock = clock or time.monotonic
        self._checkpoints: dict[str, MemoryCheckpoint] = {}
        self._peak = 0

    def checkpoint(self, name: str) -> MemoryCheckpoint:
        usage = self._read_memory()
        self._peak = max(self._peak, usage)
        point = MemoryCheckpoint(
            name=name,
            memory_usage=usage,
            peak_memory=self._peak,
            timestamp=self._clock(),
        )
        self._checkpoints[name] = point
        logger.debug(f"Memory checkpoint {name}: {format_bytes(usage)}")
        return point

    def get_checkpoint(self, name: str) -> MemoryCheckpoint | None:
        return self._checkpoints.get(name)

    def compare(self, start: str, end: str) -> dict[str, Any]:
        """
        Deltas between two checkpoints.

        Returns:
            Empty dict when either checkpoint is unknown.
        """
        first = self._checkpoints.get(start)
        second = self._checkpoints.get(end)
        if first is None or second is None:
            return {}

        memory_delta = second.memory_usage - first.memory_usage
        peak_delta = second.peak_memory - first.peak_memory
        time_delta = second.timestamp - first.timestamp
        return {
            "memory_delta": memory_delta,
            "peak_delta": peak_delta,
            "time_delta": time_delta,
            "formatted": {
                "memory_delta": format_bytes(memory_delta),
                "peak_delta": format_bytes(peak_delta),
                "time_delta": f"{round(time_delta * 1000, 2)}ms",
            },
        }


def _resident_memory() -> int:
    return psutil.Process().memory_info().rss
