from datetime import datetime, timedelta

import fakeredis
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from bulk_drafts import DRAFT_KEY, MAX_DRAFT_UPDATES, BulkDraftService
from cache import CacheService, InvalidationDispatcher, fingerprint
from database import Base
from errors import DraftTooLarge, InvalidReference, NotFoundError
from models import Account, AccountType, Transaction, TransactionType
from schemas import AccountIn, BulkTransactionPatch, CategoryIn, TransactionIn
from services import AccountService, CategoryService, TransactionService


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def _setup(session):
    a = AccountService(session).create(
        AccountIn(name="A", type=AccountType.expense, amount=10_000)
    )
    b = AccountService(session).create(
        AccountIn(name="B", type=AccountType.expense, amount=5_000)
    )
    food = CategoryService(session).create(
        CategoryIn(name="Food", type=TransactionType.expense)
    )
    service = TransactionService(session)
    t1 = service.create(
        TransactionIn(
            type=TransactionType.expense,
            date=datetime(2025, 3, 1),
            amount=1_000,
            account_id=a.id,
            category_id=food.id,
        )
    )
    t2 = service.create(
        TransactionIn(
            type=TransactionType.expense,
            date=datetime(2025, 3, 2),
            amount=2_000,
            account_id=b.id,
            category_id=food.id,
        )
    )
    return a, b, food, t1, t2


def _balance(session, account_id: int) -> int:
    session.expire_all()
    return session.get(Account, account_id).amount


def test_commit_is_atomic_and_retry_applies_everything() -> None:
    session = make_session()
    a, b, food, t1, t2 = _setup(session)
    cache = CacheService(fakeredis.FakeRedis())
    drafts = BulkDraftService(session, cache)

    drafts.save_draft(
        [
            BulkTransactionPatch(id=t1.id, amount=1_500),
            BulkTransactionPatch(id=t2.id, amount=2_500, category_id=9_999),
        ]
    )
    with pytest.raises(InvalidReference):
        drafts.commit_draft()

    assert _balance(session, a.id) == 9_000
    assert _balance(session, b.id) == 3_000
    assert session.get(Transaction, t1.id).amount == 1_000
    assert session.get(Transaction, t2.id).amount == 2_000
    assert cache.get_json(DRAFT_KEY) is not None

    drafts.save_draft(
        [
            BulkTransactionPatch(id=t1.id, amount=1_500),
            BulkTransactionPatch(id=t2.id, amount=2_500, category_id=food.id),
        ]
    )
    result = drafts.commit_draft()

    assert result["success_count"] == 2
    assert sorted(result["updated_ids"]) == sorted([t1.id, t2.id])
    assert result["duration_ms"] >= 0
    assert _balance(session, a.id) == 8_500
    assert _balance(session, b.id) == 2_500
    assert cache.get_json(DRAFT_KEY) is None


def test_missing_transaction_fails_whole_commit() -> None:
    session = make_session()
    a, b, food, t1, t2 = _setup(session)
    drafts = BulkDraftService(session, CacheService(fakeredis.FakeRedis()))
    drafts.save_draft(
        [
            BulkTransactionPatch(id=t1.id, account_id=b.id),
            BulkTransactionPatch(id=12_345, amount=10),
        ]
    )

    with pytest.raises(NotFoundError):
        drafts.commit_draft()

    assert _balance(session, a.id) == 9_000
    assert _balance(session, b.id) == 3_000


def test_draft_size_limit() -> None:
    session = make_session()
    _, _, _, t1, _ = _setup(session)
    drafts = BulkDraftService(session, CacheService(fakeredis.FakeRedis()))

    with pytest.raises(DraftTooLarge):
        drafts.save_draft(
            [BulkTransactionPatch(id=t1.id, note="x")] * (MAX_DRAFT_UPDATES + 1)
        )

    saved = drafts.save_draft(
        [BulkTransactionPatch(id=t1.id, note="x")] * MAX_DRAFT_UPDATES
    )
    assert saved["count"] == MAX_DRAFT_UPDATES
    assert len(drafts.get_draft()["updates"]) == MAX_DRAFT_UPDATES


def test_save_keeps_created_at_and_sets_ttl() -> None:
    session = make_session()
    _, _, _, t1, t2 = _setup(session)
    client = fakeredis.FakeRedis()
    drafts = BulkDraftService(session, CacheService(client))

    first = drafts.save_draft([BulkTransactionPatch(id=t1.id, note="first")])
    second = drafts.save_draft(
        [
            BulkTransactionPatch(id=t1.id, note="first"),
            BulkTransactionPatch(id=t2.id, note="second"),
        ]
    )

    assert second["created_at"] == first["created_at"]
    assert second["count"] == 2
    ttl = client.ttl(DRAFT_KEY)
    assert timedelta(hours=23) < timedelta(seconds=ttl) <= timedelta(hours=24)

    draft = drafts.get_draft()
    assert draft["metadata"]["count"] == 2
    assert draft["updates"][1] == {"id": t2.id, "note": "second"}
    assert "expires_at" in draft


def test_get_and_delete_missing_draft() -> None:
    session = make_session()
    drafts = BulkDraftService(session, CacheService(fakeredis.FakeRedis()))

    with pytest.raises(NotFoundError):
        drafts.get_draft()
    with pytest.raises(NotFoundError):
        drafts.delete_draft()
    with pytest.raises(NotFoundError):
        drafts.commit_draft()


def test_commit_invalidates_cached_views_of_touched_entities() -> None:
    session = make_session()
    a, b, food, t1, _ = _setup(session)
    cache = CacheService(fakeredis.FakeRedis())
    dispatcher = InvalidationDispatcher(cache)
    stale_a = fingerprint("account", "statistics", a.id, {}, variant="burn_rate")
    stale_b = fingerprint("account", "statistics", b.id, {}, variant="burn_rate")
    stale_food = fingerprint("category", "statistics", food.id, {}, variant="transaction_size")
    for key in (stale_a, stale_b, stale_food):
        cache.set_json(key, {"stale": True}, timedelta(minutes=5))

    drafts = BulkDraftService(session, cache, dispatcher)
    drafts.save_draft([BulkTransactionPatch(id=t1.id, account_id=b.id)])
    drafts.commit_draft()
    dispatcher.join()

    assert cache.get_json(stale_a) is None
    assert cache.get_json(stale_b) is None
    assert cache.get_json(stale_food) is None
    dispatcher.stop()
