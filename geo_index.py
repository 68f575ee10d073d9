import logging
import queue
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from functools import lru_cache
from typing import Callable, Optional, TypeVar

import redis
from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from cache import GEO_TTL, get_cache_client
from database import SessionLocal, session_scope
from models import Transaction
from scheduler import TaskContext

logger = logging.getLogger(__name__)

GEO_KEY = "transactions:geo"
RETRY_BACKOFF = (0.1, 0.2, 0.4)
REPOPULATE_BATCH_SIZE = 500
REPOPULATE_WORKERS = 5
DEFAULT_SEARCH_RADIUS_METERS = 1000.0

T = TypeVar("T")


class GeoIndexManager:
    def __init__(
        self,
        client: redis.Redis,
        key: str = GEO_KEY,
        backoff: tuple[float, ...] = RETRY_BACKOFF,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.client = client
        self.key = key
        self.backoff = backoff
        self.sleep = sleep

    def _retry(self, op: str, fn: Callable[[], T]) -> T:
        attempt = 0
        while True:
            try:
                return fn()
            except redis.RedisError as exc:
                if attempt >= len(self.backoff):
                    logger.warning(f"geo_{op}_failed: attempts={attempt + 1} error={exc}")
                    raise
                delay = self.backoff[attempt]
                attempt += 1
                logger.debug(f"geo_{op}_retry: attempt={attempt} delay={delay}")
                self.sleep(delay)

    def index(self, transaction_id: int, latitude: float, longitude: float) -> None:
        def _write() -> None:
            pipe = self.client.pipeline()
            pipe.geoadd(self.key, [longitude, latitude, str(transaction_id)])
            pipe.expire(self.key, GEO_TTL)
            pipe.execute()

        self._retry("index", _write)

    def update(self, transaction_id: int, latitude: float, longitude: float) -> None:
        self.index(transaction_id, latitude, longitude)

    def remove(self, transaction_id: int) -> None:
        self._retry("remove", lambda: self.client.zrem(self.key, str(transaction_id)))

    def search(
        self,
        latitude: float,
        longitude: float,
        radius_meters: float = DEFAULT_SEARCH_RADIUS_METERS,
    ) -> list[int]:
        members = self._retry(
            "search",
            lambda: self.client.geosearch(
                self.key,
                longitude=longitude,
                latitude=latitude,
                radius=radius_meters,
                unit="m",
                sort="ASC",
            ),
        )
        return [int(m.decode() if isinstance(m, bytes) else m) for m in members]


class GeoIndexRepopulator:
    """Loads geotagged transactions into the geo index with a small pool.

    Counters belong to a single run, so a scheduled run and an on-demand
    refresh may overlap. Refreshes coalesce onto the one already in flight.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        geo: GeoIndexManager,
        batch_size: int = REPOPULATE_BATCH_SIZE,
        workers: int = REPOPULATE_WORKERS,
    ) -> None:
        self.session_factory = session_factory
        self.geo = geo
        self.batch_size = batch_size
        self.workers = workers
        self._lock = threading.Lock()
        self._refresh_thread: Optional[threading.Thread] = None
        self.runs = 0

    def _load(self) -> list[tuple[int, float, float]]:
        with session_scope(self.session_factory) as session:
            rows = session.execute(
                select(Transaction.id, Transaction.latitude, Transaction.longitude)
                .where(Transaction.deleted_at.is_(None))
                .order_by(Transaction.created_at.desc(), Transaction.id.desc())
                .limit(self.batch_size)
            ).all()
        return [
            (row.id, row.latitude, row.longitude)
            for row in rows
            if row.latitude is not None and row.longitude is not None
        ]

    def _worker(
        self,
        work: "queue.Queue[tuple[int, float, float]]",
        counts: dict[str, int],
        context: Optional[TaskContext],
    ) -> None:
        while True:
            if context is not None and context.cancelled:
                return
            try:
                transaction_id, latitude, longitude = work.get_nowait()
            except queue.Empty:
                return
            try:
                self.geo.index(transaction_id, latitude, longitude)
            except Exception as exc:
                with self._lock:
                    counts["failure"] += 1
                logger.warning(
                    f"geo_repopulate_item_failed: transaction_id={transaction_id} error={exc}"
                )
            else:
                with self._lock:
                    counts["success"] += 1

    def run(self, context: Optional[TaskContext] = None) -> dict[str, int]:
        items = self._load()
        if not items:
            logger.info("geo_repopulate: no geotagged transactions")
            return {"total": 0, "success": 0, "failure": 0}

        work: "queue.Queue[tuple[int, float, float]]" = queue.Queue()
        for item in items:
            work.put(item)
        counts = {"success": 0, "failure": 0}

        with ThreadPoolExecutor(
            max_workers=self.workers, thread_name_prefix="geo-index"
        ) as pool:
            for _ in range(self.workers):
                pool.submit(self._worker, work, counts, context)

        with self._lock:
            self.runs += 1
            result = {"total": len(items), **counts}
        logger.info(
            f"geo_repopulate: total={result['total']} success={result['success']} failure={result['failure']}"
        )
        return result

    def refresh(
        self, latitude: Optional[float] = None, longitude: Optional[float] = None
    ) -> threading.Thread:
        """Run a repopulation in the background and return immediately.

        While a refresh is still running, later calls return its thread.
        """

        def _target() -> None:
            try:
                self.run()
                if latitude is not None and longitude is not None:
                    nearby = self.geo.search(latitude, longitude)
                    logger.info(
                        f"geo_refresh: latitude={latitude} longitude={longitude} nearby={len(nearby)}"
                    )
            except Exception as exc:
                logger.error(f"geo_refresh_failed: error={exc}")

        with self._lock:
            if self._refresh_thread is not None and self._refresh_thread.is_alive():
                logger.info("geo_refresh_skipped: refresh already running")
                return self._refresh_thread
            thread = threading.Thread(target=_target, name="geo-refresh", daemon=True)
            self._refresh_thread = thread
            thread.start()
        return thread


@lru_cache(maxsize=1)
def get_geo_index() -> GeoIndexManager:
    return GeoIndexManager(get_cache_client())


@lru_cache(maxsize=1)
def get_repopulator() -> GeoIndexRepopulator:
    return GeoIndexRepopulator(SessionLocal, get_geo_index())
