from __future__ import annotations

from matchmaker.cache import ScoreCache


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestScoreCache:
    def test_get_set(self):
        cache: ScoreCache[int] = ScoreCache(ttl_seconds=60, clock=FakeClock())
        assert cache.get(1, 2) is None
        cache.set(1, 2, 87)
        assert cache.get(1, 2) == 87
        assert cache.get(2, 1) is None  # keys are ordered (investor, company)

    def test_entry_expires_after_ttl(self):
        clock = FakeClock()
        cache: ScoreCache[int] = ScoreCache(ttl_seconds=60, clock=clock)
        cache.set(1, 2, 87)

        clock.now += 60
        assert cache.get(1, 2) == 87
        clock.now += 1
        assert cache.get(1, 2) is None
        assert len(cache) == 0

    def test_set_overwrites_and_resets_age(self):
        clock = FakeClock()
        cache: ScoreCache[int] = ScoreCache(ttl_seconds=60, clock=clock)
        cache.set(1, 2, 10)
        clock.now += 50
        cache.set(1, 2, 20)
        clock.now += 50
        assert cache.get(1, 2) == 20

    def test_invalidate_drops_both_sides(self):
        cache: ScoreCache[int] = ScoreCache(clock=FakeClock())
        cache.set(1, 2, 10)
        cache.set(1, 3, 20)
        cache.set(4, 2, 30)

        assert cache.invalidate(2) == 2
        assert cache.get(1, 3) == 20
        assert len(cache) == 1
        assert cache.invalidate(99) == 0

    def test_clear(self):
        cache: ScoreCache[int] = ScoreCache(clock=FakeClock())
        cache.set(1, 2, 10)
        cache.clear()
        assert len(cache) == 0
