"""
Tests for voting round arithmetic.

Test plan:
- compute_round: offset + k*duration is round k, one second earlier is k-1
- round_start inverts compute_round at round boundaries
- RoundSchedule rejects a non-positive duration
- CachedRoundSchedule calls its loader once, even under concurrent gets
"""

import asyncio

import pytest

from fassets_bridge.attestation.rounds import CachedRoundSchedule, RoundSchedule, compute_round

OFFSET = 1658430000
DURATION = 90
SCHEDULE = RoundSchedule(offset_sec=OFFSET, duration_sec=DURATION)


class TestComputeRound:
    @pytest.mark.parametrize("k", [1, 2, 17, 12345, 1_000_000])
    def test_round_boundary(self, k: int) -> None:
        assert compute_round(OFFSET + k * DURATION, SCHEDULE) == k

    @pytest.mark.parametrize("k", [1, 2, 17, 12345, 1_000_000])
    def test_one_second_before_boundary(self, k: int) -> None:
        assert compute_round(OFFSET + k * DURATION - 1, SCHEDULE) == k - 1

    def test_mid_round(self) -> None:
        assert compute_round(OFFSET + 12345 * DURATION + 45, SCHEDULE) == 12345

    def test_round_for_method(self) -> None:
        assert SCHEDULE.round_for(OFFSET + 3 * DURATION) == 3

    def test_round_start_inverts(self) -> None:
        assert SCHEDULE.round_start(12345) == OFFSET + 12345 * DURATION
        assert compute_round(SCHEDULE.round_start(12345), SCHEDULE) == 12345

    def test_rejects_zero_duration(self) -> None:
        with pytest.raises(ValueError):
            RoundSchedule(offset_sec=OFFSET, duration_sec=0)


class TestCachedRoundSchedule:
    @pytest.mark.asyncio
    async def test_loader_called_once(self) -> None:
        calls = 0

        async def loader() -> RoundSchedule:
            nonlocal calls
            calls += 1
            return SCHEDULE

        cached = CachedRoundSchedule(loader)
        assert await cached.get() == SCHEDULE
        assert await cached.get() == SCHEDULE
        assert calls == 1

    @pytest.mark.asyncio
    async def test_concurrent_gets_share_one_load(self) -> None:
        calls = 0

        async def loader() -> RoundSchedule:
            nonlocal calls
            calls += 1
            await asyncio.sleep(0)
            return SCHEDULE

        cached = CachedRoundSchedule(loader)
        results = await asyncio.gather(*(cached.get() for _ in range(5)))
        assert all(r == SCHEDULE for r in results)
        assert calls == 1
