"""
Voting round arithmetic.

FDC groups attestation requests into fixed-length voting rounds:

    round_id = floor((block_timestamp - round_offset_sec) / round_duration_sec)

The offset (first round start) and duration are protocol constants read
once from the FlareSystemsManager contract and cached for the life of
the process.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass


@dataclass(frozen=True)
class RoundSchedule:
    """Voting round timing constants.

    Attributes:
        offset_sec: Unix timestamp at which round 0 started.
        duration_sec: Length of one voting round in seconds.
    """

    offset_sec: int
    duration_sec: int

    def __post_init__(self) -> None:
        if self.duration_sec <= 0:
            raise ValueError(f"round duration must be positive, got {self.duration_sec}")

    def round_for(self, timestamp: int) -> int:
        return compute_round(timestamp, self)

    def round_start(self, round_id: int) -> int:
        """Unix timestamp at which ``round_id`` begins."""
        return self.offset_sec + round_id * self.duration_sec


def compute_round(timestamp: int, schedule: RoundSchedule) -> int:
    """Voting round containing ``timestamp`` (floor division)."""
    return (timestamp - schedule.offset_sec) // schedule.duration_sec


class CachedRoundSchedule:
    """Loads the schedule once on first use, then serves the cached value.

    Args:
        loader: Coroutine function returning the on-chain RoundSchedule.
    """

    def __init__(self, loader: Callable[[], Awaitable[RoundSchedule]]) -> None:
        self._loader = loader
        self._schedule: RoundSchedule | None = None
        self._lock = asyncio.Lock()

    async def get(self) -> RoundSchedule:
        if self._schedule is None:
            async with self._lock:
                if self._schedule is None:
                    self._schedule = await self._loader()
        return self._schedule
