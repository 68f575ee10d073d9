import json
import logging
import queue
import re
import threading
from datetime import date, datetime, timedelta
from enum import Enum
from functools import lru_cache
from typing import Any, Callable, Optional

import redis

from config import get_settings

logger = logging.getLogger(__name__)

STATISTICS_TTL = timedelta(minutes=5)
SUMMARY_TTL = timedelta(minutes=5)
DRAFT_TTL = timedelta(hours=24)
GEO_TTL = timedelta(hours=24)

# Glob patterns removed when an entity changes. Placeholders are filled from
# the fields passed to ``invalidate``; a pattern with an unresolved
# placeholder is skipped.
ENTITY_CACHE_PATTERNS: dict[str, list[str]] = {
    "transaction": [
        "transaction:*",
        "summary:transactions:*",
    ],
    "account": [
        "account:detail:{account_id}",
        "account:paged:*",
        "account:statistics:{account_id}:*",
        "summary:accounts:*",
    ],
    "category": [
        "category:detail:{category_id}",
        "category:paged:*",
        "category:statistics:{category_id}:*",
        "summary:categories:*",
        "account:statistics:*:category_heatmap:*",
    ],
    "budget": [
        "budget:*",
        "account:statistics:*:budget_health:*",
        "account:statistics:*:burn_rate:*",
        "category:statistics:*:budget_utilization:*",
    ],
    "budget_template": ["budget_template:*"],
    "transaction_template": [
        "transaction_template:detail:{template_id}",
        "transaction_template:paged:*",
    ],
    "tag": ["tag:*"],
}

_PLACEHOLDER = re.compile(r"\{([a-z_]+)\}")


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    raise TypeError(f"Cannot serialize {type(value).__name__}")


def canonical_json(params: Any) -> str:
    return json.dumps(
        params, sort_keys=True, separators=(",", ":"), default=_json_default
    )


def fingerprint(
    entity: str,
    kind: str,
    entity_id: Optional[object] = None,
    params: Any = None,
    variant: Optional[str] = None,
) -> str:
    """Build a cache key such as ``account:statistics:7:burn_rate:{...}``."""
    parts = [entity, kind]
    if entity_id is not None:
        parts.append(str(entity_id))
    if variant is not None:
        parts.append(variant)
    parts.append(canonical_json(params if params is not None else {}))
    return ":".join(parts)


def resolve_patterns(entity: str, fields: dict[str, object]) -> list[str]:
    if entity not in ENTITY_CACHE_PATTERNS:
        raise KeyError(f"No cache patterns registered for {entity}")
    resolved: list[str] = []
    for pattern in ENTITY_CACHE_PATTERNS[entity]:
        names = _PLACEHOLDER.findall(pattern)
        missing = [name for name in names if fields.get(name) is None]
        if missing:
            logger.debug(
                f"cache_invalidate_skip: entity={entity} pattern={pattern} missing={missing}"
            )
            continue
        resolved.append(
            _PLACEHOLDER.sub(lambda m: str(fields[m.group(1)]), pattern)
        )
    return resolved


class CacheService:
    def __init__(self, client: redis.Redis) -> None:
        self.client = client
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def _count(self, hit: bool) -> None:
        with self._lock:
            if hit:
                self.hits += 1
            else:
                self.misses += 1

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {"hits": self.hits, "misses": self.misses}

    def get_json(self, key: str) -> Optional[Any]:
        raw = self.client.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    def set_json(self, key: str, value: Any, ttl: timedelta) -> None:
        self.client.set(key, json.dumps(value, default=_json_default), ex=ttl)

    def ttl(self, key: str) -> Optional[timedelta]:
        seconds = self.client.ttl(key)
        if seconds is None or seconds < 0:
            return None
        return timedelta(seconds=seconds)

    def delete(self, key: str) -> int:
        return int(self.client.delete(key))

    def fetch_with_cache(
        self, key: str, ttl: timedelta, loader: Callable[[], Any]
    ) -> Any:
        cached = self.get_json(key)
        if cached is not None:
            self._count(hit=True)
            return cached
        self._count(hit=False)
        value = loader()
        # Round-trip through JSON so hits and misses return the same shape.
        payload = json.loads(json.dumps(value, default=_json_default))
        self.client.set(key, json.dumps(payload), ex=ttl)
        return payload

    def delete_pattern(self, pattern: str) -> int:
        removed = 0
        batch: list[bytes] = []
        for key in self.client.scan_iter(match=pattern, count=500):
            batch.append(key)
            if len(batch) >= 500:
                removed += int(self.client.delete(*batch))
                batch = []
        if batch:
            removed += int(self.client.delete(*batch))
        return removed

    def invalidate(self, entity: str, fields: Optional[dict[str, object]] = None) -> int:
        removed = 0
        for pattern in resolve_patterns(entity, fields or {}):
            removed += self.delete_pattern(pattern)
        logger.debug(f"cache_invalidate: entity={entity} fields={fields} removed={removed}")
        return removed


class InvalidationDispatcher:
    """Applies cache invalidations on a background thread.

    Callers publish after their database commit; failures are logged and
    counted and never reach the publisher.
    """

    def __init__(self, cache: CacheService) -> None:
        self.cache = cache
        self._queue: "queue.Queue[Optional[tuple[str, dict[str, object]]]]" = (
            queue.Queue()
        )
        self._thread: Optional[threading.Thread] = None
        self._start_lock = threading.Lock()
        self._counter_lock = threading.Lock()
        self.failures = 0
        self.processed = 0

    def _ensure_started(self) -> None:
        with self._start_lock:
            if self._thread is None or not self._thread.is_alive():
                self._thread = threading.Thread(
                    target=self._run, name="cache-invalidation", daemon=True
                )
                self._thread.start()

    def publish(self, entity: str, fields: Optional[dict[str, object]] = None) -> None:
        self._ensure_started()
        self._queue.put((entity, dict(fields or {})))

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is None:
                    return
                entity, fields = item
                try:
                    self.cache.invalidate(entity, fields)
                    with self._counter_lock:
                        self.processed += 1
                except Exception as exc:
                    with self._counter_lock:
                        self.failures += 1
                    logger.warning(
                        f"cache_invalidate_failed: entity={entity} fields={fields} error={exc}"
                    )
            finally:
                self._queue.task_done()

    def join(self) -> None:
        """Block until every published invalidation has been applied."""
        self._queue.join()

    def stop(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            self._queue.put(None)
            self._thread.join(timeout=5)


def transaction_invalidations(
    account_ids: set[int], category_ids: set[int]
) -> list[tuple[str, dict[str, object]]]:
    signals: list[tuple[str, dict[str, object]]] = [("transaction", {})]
    for account_id in sorted(account_ids):
        signals.append(("account", {"account_id": account_id}))
    for category_id in sorted(category_ids):
        signals.append(("category", {"category_id": category_id}))
    return signals


@lru_cache(maxsize=1)
def get_cache_client() -> redis.Redis:
    settings = get_settings()
    return redis.Redis.from_url(settings.cache_url)


@lru_cache(maxsize=1)
def get_cache() -> CacheService:
    return CacheService(get_cache_client())


@lru_cache(maxsize=1)
def get_dispatcher() -> InvalidationDispatcher:
    return InvalidationDispatcher(get_cache())
