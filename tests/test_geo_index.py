import threading
from datetime import datetime

import fakeredis
import pytest
import redis
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from geo_index import GEO_KEY, GeoIndexManager, GeoIndexRepopulator
from models import AccountType, TransactionType
from scheduler import TaskContext
from schemas import AccountIn, CategoryIn, TransactionIn
from services import AccountService, CategoryService, TransactionService

JAKARTA = (-6.2000, 106.8166)
NEARBY = (-6.2010, 106.8170)
LONDON = (51.5072, -0.1276)


class FlakyRedis:
    """Raises connection errors for the first ``failures`` calls to zrem."""

    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0
        self.inner = fakeredis.FakeRedis()

    def zrem(self, *args):
        self.calls += 1
        if self.calls <= self.failures:
            raise redis.ConnectionError("connection reset")
        return self.inner.zrem(*args)


class RejectingGeo(GeoIndexManager):
    def __init__(self, client, rejected: set[int]) -> None:
        super().__init__(client)
        self.rejected = rejected

    def index(self, transaction_id: int, latitude: float, longitude: float) -> None:
        if transaction_id in self.rejected:
            raise redis.ConnectionError("unavailable")
        super().index(transaction_id, latitude, longitude)


class GatedGeo(GeoIndexManager):
    """Blocks every index call until the test opens the gate."""

    def __init__(self, client) -> None:
        super().__init__(client)
        self.gate = threading.Event()
        self.entered = threading.Semaphore(0)

    def index(self, transaction_id: int, latitude: float, longitude: float) -> None:
        self.entered.release()
        self.gate.wait(timeout=10)
        super().index(transaction_id, latitude, longitude)


def make_factory(tmp_path):
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'geo.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def _populate(factory, points) -> list[int]:
    with factory() as session:
        account = AccountService(session).create(
            AccountIn(name="Wallet", type=AccountType.expense, amount=100_000)
        )
        category = CategoryService(session).create(
            CategoryIn(name="Coffee", type=TransactionType.expense)
        )
        engine = TransactionService(session)
        ids = []
        for point in points:
            latitude, longitude = point if point else (None, None)
            txn = engine.create(
                TransactionIn(
                    type=TransactionType.expense,
                    date=datetime(2025, 4, 1, 8),
                    amount=100,
                    account_id=account.id,
                    category_id=category.id,
                    latitude=latitude,
                    longitude=longitude,
                )
            )
            ids.append(txn.id)
        return ids


def test_index_search_and_remove() -> None:
    client = fakeredis.FakeRedis()
    geo = GeoIndexManager(client)

    geo.index(1, *JAKARTA)
    geo.index(2, *LONDON)
    geo.update(3, *LONDON)
    geo.update(3, *NEARBY)

    assert geo.search(*JAKARTA, radius_meters=1_000) == [1, 3]
    assert geo.search(*LONDON, radius_meters=1_000) == [2]
    assert client.ttl(GEO_KEY) > 0

    geo.remove(1)
    assert geo.search(*JAKARTA, radius_meters=1_000) == [3]


def test_retries_with_backoff_then_succeeds() -> None:
    sleeps = []
    client = FlakyRedis(failures=2)
    geo = GeoIndexManager(client, sleep=sleeps.append)

    geo.remove(7)

    assert sleeps == [0.1, 0.2]
    assert client.calls == 3


def test_retries_are_bounded() -> None:
    sleeps = []
    client = FlakyRedis(failures=10)
    geo = GeoIndexManager(client, sleep=sleeps.append)

    with pytest.raises(redis.ConnectionError):
        geo.remove(7)

    assert sleeps == [0.1, 0.2, 0.4]
    assert client.calls == 4


def test_repopulate_indexes_only_geotagged_rows(tmp_path) -> None:
    factory = make_factory(tmp_path)
    ids = _populate(factory, [JAKARTA, None, NEARBY, LONDON, None])
    geo = GeoIndexManager(fakeredis.FakeRedis())
    repopulator = GeoIndexRepopulator(factory, geo)

    result = repopulator.run()

    assert result == {"total": 3, "success": 3, "failure": 0}
    assert repopulator.runs == 1
    assert sorted(geo.search(*JAKARTA, radius_meters=1_000)) == [ids[0], ids[2]]


def test_repopulate_counts_failures_and_respects_batch_size(tmp_path) -> None:
    factory = make_factory(tmp_path)
    ids = _populate(factory, [JAKARTA, NEARBY, LONDON])
    geo = RejectingGeo(fakeredis.FakeRedis(), rejected={ids[2]})

    result = GeoIndexRepopulator(factory, geo, batch_size=2, workers=2).run()

    # Newest two rows by creation.
    assert result == {"total": 2, "success": 1, "failure": 1}
    assert geo.search(*NEARBY, radius_meters=1_000) == [ids[1]]


def test_cancelled_run_indexes_nothing(tmp_path) -> None:
    factory = make_factory(tmp_path)
    _populate(factory, [JAKARTA, NEARBY])
    stop = threading.Event()
    stop.set()

    result = GeoIndexRepopulator(factory, GeoIndexManager(fakeredis.FakeRedis())).run(
        TaskContext(stop)
    )

    assert result == {"total": 2, "success": 0, "failure": 0}


def test_refresh_runs_in_background(tmp_path) -> None:
    factory = make_factory(tmp_path)
    ids = _populate(factory, [JAKARTA])
    geo = GeoIndexManager(fakeredis.FakeRedis())
    repopulator = GeoIndexRepopulator(factory, geo)

    thread = repopulator.refresh(*JAKARTA)
    thread.join(timeout=10)

    assert not thread.is_alive()
    assert repopulator.runs == 1
    assert geo.search(*JAKARTA) == [ids[0]]


def test_overlapping_runs_report_their_own_counts(tmp_path) -> None:
    factory = make_factory(tmp_path)
    _populate(factory, [JAKARTA] * 10)
    geo = GatedGeo(fakeredis.FakeRedis())
    repopulator = GeoIndexRepopulator(factory, geo, workers=2)
    results = []
    threads = [
        threading.Thread(target=lambda: results.append(repopulator.run()))
        for _ in range(2)
    ]
    for thread in threads:
        thread.start()

    # Both runs have every worker parked inside index().
    for _ in range(4):
        assert geo.entered.acquire(timeout=10)
    geo.gate.set()
    for thread in threads:
        thread.join(timeout=10)

    assert results == [{"total": 10, "success": 10, "failure": 0}] * 2
    assert repopulator.runs == 2


def test_refresh_coalesces_while_running(tmp_path) -> None:
    factory = make_factory(tmp_path)
    _populate(factory, [JAKARTA, NEARBY])
    geo = GatedGeo(fakeredis.FakeRedis())
    repopulator = GeoIndexRepopulator(factory, geo)

    first = repopulator.refresh()
    assert geo.entered.acquire(timeout=10)
    second = repopulator.refresh(*JAKARTA)
    geo.gate.set()
    first.join(timeout=10)

    assert second is first
    assert repopulator.runs == 1

    third = repopulator.refresh()
    third.join(timeout=10)
    assert third is not first
    assert repopulator.runs == 2
