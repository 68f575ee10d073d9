from datetime import date, datetime, timedelta

import fakeredis
import pytest

from cache import (
    CacheService,
    InvalidationDispatcher,
    STATISTICS_TTL,
    fingerprint,
    resolve_patterns,
    transaction_invalidations,
)


def test_fingerprint_is_canonical() -> None:
    left = fingerprint(
        "account",
        "statistics",
        7,
        {"end_date": date(2025, 1, 31), "start_date": datetime(2025, 1, 1)},
        variant="burn_rate",
    )
    right = fingerprint(
        "account",
        "statistics",
        7,
        {"start_date": datetime(2025, 1, 1), "end_date": date(2025, 1, 31)},
        variant="burn_rate",
    )

    assert left == right
    assert left.startswith("account:statistics:7:burn_rate:{")
    assert "2025-01-31" in left
    assert fingerprint("summary", "transactions") == "summary:transactions:{}"


def test_resolve_patterns_skips_missing_placeholders() -> None:
    assert resolve_patterns("account", {"account_id": 3}) == [
        "account:detail:3",
        "account:paged:*",
        "account:statistics:3:*",
        "summary:accounts:*",
    ]
    assert resolve_patterns("account", {}) == ["account:paged:*", "summary:accounts:*"]

    with pytest.raises(KeyError):
        resolve_patterns("unknown", {})


def test_fetch_with_cache_counts_hits_and_misses() -> None:
    cache = CacheService(fakeredis.FakeRedis())
    calls = []

    def loader():
        calls.append(1)
        return {"when": date(2025, 1, 1), "total": 5}

    first = cache.fetch_with_cache("k", STATISTICS_TTL, loader)
    second = cache.fetch_with_cache("k", STATISTICS_TTL, loader)

    assert first == second == {"when": "2025-01-01", "total": 5}
    assert len(calls) == 1
    assert cache.stats() == {"hits": 1, "misses": 1}
    assert cache.ttl("k") <= STATISTICS_TTL


def test_loader_errors_are_not_cached() -> None:
    cache = CacheService(fakeredis.FakeRedis())

    def broken():
        raise RuntimeError("database unavailable")

    with pytest.raises(RuntimeError):
        cache.fetch_with_cache("k", STATISTICS_TTL, broken)

    assert cache.get_json("k") is None
    assert cache.fetch_with_cache("k", STATISTICS_TTL, lambda: [1, 2]) == [1, 2]


def test_invalidate_removes_only_matching_entity_keys() -> None:
    cache = CacheService(fakeredis.FakeRedis())
    ttl = timedelta(minutes=5)
    cache.set_json(fingerprint("account", "statistics", 1, {}, variant="burn_rate"), 1, ttl)
    cache.set_json(fingerprint("account", "statistics", 2, {}, variant="burn_rate"), 2, ttl)
    cache.set_json(fingerprint("summary", "accounts", params={"frequency": "monthly"}), 3, ttl)
    cache.set_json(fingerprint("summary", "transactions", params={}), 4, ttl)

    removed = cache.invalidate("account", {"account_id": 1})

    assert removed == 2
    remaining = sorted(key.decode() for key in cache.client.keys("*"))
    assert remaining == [
        fingerprint("account", "statistics", 2, {}, variant="burn_rate"),
        "summary:transactions:{}",
    ]


def test_delete_pattern_handles_many_keys() -> None:
    cache = CacheService(fakeredis.FakeRedis())
    for i in range(1_200):
        cache.client.set(f"transaction:paged:{i}", i)

    assert cache.delete_pattern("transaction:*") == 1_200
    assert cache.client.dbsize() == 0


def test_category_change_clears_every_account_heatmap() -> None:
    cache = CacheService(fakeredis.FakeRedis())
    ttl = timedelta(minutes=5)
    heatmaps = [
        fingerprint("account", "statistics", account_id, {}, variant="category_heatmap")
        for account_id in (1, 2)
    ]
    burn_rate = fingerprint("account", "statistics", 1, {}, variant="burn_rate")
    for key in [*heatmaps, burn_rate]:
        cache.set_json(key, {"Food": 100}, ttl)

    cache.invalidate("category", {"category_id": 7})

    assert [cache.get_json(key) for key in heatmaps] == [None, None]
    assert cache.get_json(burn_rate) == {"Food": 100}


def test_dispatcher_applies_published_invalidations() -> None:
    cache = CacheService(fakeredis.FakeRedis())
    dispatcher = InvalidationDispatcher(cache)
    cache.set_json("summary:transactions:{}", {"total": 1}, timedelta(minutes=5))
    cache.set_json("account:statistics:4:burn_rate:{}", {}, timedelta(minutes=5))

    for entity, fields in transaction_invalidations({4}, {9}):
        dispatcher.publish(entity, fields)
    dispatcher.join()

    assert cache.get_json("summary:transactions:{}") is None
    assert cache.get_json("account:statistics:4:burn_rate:{}") is None
    assert dispatcher.processed == 3
    assert dispatcher.failures == 0
    dispatcher.stop()


def test_dispatcher_failures_are_counted_not_raised() -> None:
    cache = CacheService(fakeredis.FakeRedis())
    dispatcher = InvalidationDispatcher(cache)

    dispatcher.publish("no_such_entity", {})
    dispatcher.publish("transaction", {})
    dispatcher.join()

    assert dispatcher.failures == 1
    assert dispatcher.processed == 1
    dispatcher.stop()
