"""
Tests for CacheController operations and KVCacheStats.
"""

import pytest

from cortex_engine import config
from cortex_engine.cache_controller import CacheController, KVCacheStats
from cortex_engine.errors import ConfigurationError
from cortex_engine.kv_mirror import KVMirror
from cortex_engine.metrics import get_metrics

ANY = config.ANY_SEQUENCE
END = config.UNBOUNDED


@pytest.fixture
def cache(populated_mirror):
    return CacheController(populated_mirror)


def test_stats_counts_tokens_and_cells(cache):
    cache.copy_range(0, 1, 0, 5)
    stats = cache.stats()
    assert stats == KVCacheStats(used_tokens=15, max_tokens=32, used_cells=10, max_cells=32)
    assert stats.usage_percent() == pytest.approx(15 * 100.0 / 32)
    assert get_metrics()["gauges"]["kv_cache_used_cells"] == 10


def test_nearly_full():
    assert KVCacheStats(90, 100, 90, 100).is_nearly_full()
    assert not KVCacheStats(50, 100, 50, 100).is_nearly_full()
    assert KVCacheStats(50, 100, 50, 100).is_nearly_full(threshold=0.5)
    assert KVCacheStats(0, 0, 0, 0).usage_percent() == 0.0


def test_remove_all_then_stats(cache):
    assert cache.remove_range(ANY, END, END)
    assert cache.stats().used_tokens == 0


def test_clear(cache):
    cache.clear()
    assert cache.stats().used_cells == 0
    assert get_metrics()["counters"]["cache_clear_total"] == 1.0


def test_remove_unsupported_returns_false():
    mirror = KVMirror(supports_partial_removal=False)
    mirror.allocate([1, 2, 3, 4], 0)
    cache = CacheController(mirror)
    assert cache.remove_range(0, 1, 3) is False
    assert cache.token_count(0) == 4
    assert cache.context_shift(0) == 0
    assert cache.apply_sliding_window(2) is False


def test_divide_positions(cache):
    with pytest.raises(ConfigurationError):
        cache.divide_positions(0, 0, 10, 1)
    cache.divide_positions(0, 0, 10, 2)
    assert cache.memory.positions(0) == sorted(p // 2 for p in range(10))


def test_shift_round_trip(cache):
    cache.shift_positions(0, END, END, 7)
    cache.shift_positions(0, END, END, -7)
    assert cache.memory.positions(0) == list(range(10))


def test_keep_only(cache):
    cache.copy_range(0, 2, 0, 3)
    cache.memory.allocate([1], seq_id=5)
    cache.keep_only(2)
    assert cache.stats().used_tokens == 3


def test_token_count(cache):
    assert cache.token_count(0) == 10
    assert cache.token_count(3) == 0
    with pytest.raises(ConfigurationError):
        cache.token_count(ANY)


def test_sliding_window(cache):
    assert cache.apply_sliding_window(4)
    assert cache.memory.positions(0) == [0, 1, 2, 3]
    assert cache.memory.tokens(0) == [106, 107, 108, 109]
    # Window already small enough
    assert cache.apply_sliding_window(10)
    assert cache.memory.positions(0) == [0, 1, 2, 3]
    with pytest.raises(ConfigurationError):
        cache.apply_sliding_window(0)


def test_context_shift_keeps_prefix(cache):
    discarded = cache.context_shift(0, keep_first=2)
    # 8 positions after the prefix, half of them dropped
    assert discarded == 4
    assert cache.memory.tokens(0) == [100, 101, 106, 107, 108, 109]
    assert cache.memory.positions(0) == list(range(6))


def test_context_shift_explicit_discard(cache):
    assert cache.context_shift(0, keep_first=0, discard=3) == 3
    assert cache.memory.tokens(0)[0] == 103
    assert cache.token_count(0) == 7
