"""Tests for the single-flight cache."""

import threading
import time

import pytest

from certwarden.lib.cache import SingleFlightCache


def test_loads_once():
    cache = SingleFlightCache()
    calls = []

    def loader(key):
        calls.append(key)
        return key * 2

    assert cache.get_or_load(2, loader) == 4
    assert cache.get_or_load(2, loader) == 4
    assert calls == [2]


def test_none_is_cached():
    cache = SingleFlightCache()
    calls = []

    def loader(key):
        calls.append(key)
        return None

    cache.get_or_load("x", loader)
    cache.get_or_load("x", loader)

    assert calls == ["x"]
    assert "x" in cache


def test_concurrent_loads_collapse():
    cache = SingleFlightCache()
    calls = []
    lock = threading.Lock()

    def loader(key):
        with lock:
            calls.append(key)
        time.sleep(0.05)
        return key.upper()

    results = []
    threads = [
        threading.Thread(target=lambda: results.append(cache.get_or_load("sid", loader)))
        for _ in range(10)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results == ["SID"] * 10
    assert calls == ["sid"]


def test_failed_load_is_not_cached():
    cache = SingleFlightCache()

    def failing(key):
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        cache.get_or_load("k", failing)

    assert "k" not in cache
    assert cache.get_or_load("k", lambda key: 1) == 1


def test_put_keeps_first_value():
    cache = SingleFlightCache()

    assert cache.put("k", 1) == 1
    assert cache.put("k", 2) == 1
    assert cache.keys() == ["k"]
    assert len(cache) == 1
