from datetime import datetime

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import (
    ConflictError,
    CoordinatePairing,
    InvalidAccountTypeForExpense,
    InvalidReference,
    MissingDestinationAccount,
    NoFieldsToUpdate,
    NotFoundError,
    TransferSameAccount,
    TypeCategoryMismatch,
    ValidationFailed,
)
from models import Account, AccountType, Transaction, TransactionType
from schemas import (
    AccountIn,
    CategoryIn,
    ListParams,
    TransactionFilters,
    TransactionIn,
    TransactionPatch,
)
from services import (
    AccountService,
    CategoryService,
    TagService,
    TransactionService,
    TransactionState,
)


class RecordingInvalidator:
    def __init__(self) -> None:
        self.signals: list[tuple[str, dict]] = []

    def publish(self, entity, fields=None) -> None:
        self.signals.append((entity, dict(fields or {})))


class RecordingGeo:
    def __init__(self) -> None:
        self.updated: list[int] = []
        self.removed: list[int] = []

    def update(self, transaction_id, latitude, longitude) -> None:
        self.updated.append(transaction_id)

    def remove(self, transaction_id) -> None:
        self.removed.append(transaction_id)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def _account(session, name: str, amount: int = 0, type=AccountType.expense):
    return AccountService(session).create(AccountIn(name=name, type=type, amount=amount))


def _category(session, name: str, type: TransactionType):
    return CategoryService(session).create(CategoryIn(name=name, type=type))


def _balance(session, account_id: int) -> int:
    session.expire_all()
    return session.get(Account, account_id).amount


def _live_effects(session, account_id: int) -> int:
    rows = session.scalars(
        select(Transaction).where(Transaction.deleted_at.is_(None))
    ).all()
    return sum(TransactionState.of(row).signed_effects().get(account_id, 0) for row in rows)


def _expense(account_id: int, category_id: int, amount: int = 3_000, **extra) -> TransactionIn:
    return TransactionIn(
        type=TransactionType.expense,
        date=datetime(2025, 3, 10, 12, 0),
        amount=amount,
        account_id=account_id,
        category_id=category_id,
        **extra,
    )


def test_create_expense_debits_source_account() -> None:
    session = make_session()
    a = _account(session, "A", 10_000)
    food = _category(session, "Food", TransactionType.expense)

    TransactionService(session).create(_expense(a.id, food.id))

    assert _balance(session, a.id) == 7_000
    live = session.scalars(
        select(Transaction).where(
            Transaction.account_id == a.id, Transaction.deleted_at.is_(None)
        )
    ).all()
    assert len(live) == 1


def test_transfer_moves_amount_between_accounts() -> None:
    session = make_session()
    a = _account(session, "A", 10_000)
    b = _account(session, "B", 0)
    x = _category(session, "X", TransactionType.transfer)

    TransactionService(session).create(
        TransactionIn(
            type=TransactionType.transfer,
            date=datetime(2025, 3, 10),
            amount=2_500,
            account_id=a.id,
            destination_account_id=b.id,
            category_id=x.id,
        )
    )

    assert _balance(session, a.id) == 7_500
    assert _balance(session, b.id) == 2_500


def test_update_changing_account_moves_effect() -> None:
    session = make_session()
    a = _account(session, "A", 10_000)
    a2 = _account(session, "A2", 0)
    food = _category(session, "Food", TransactionType.expense)
    invalidator = RecordingInvalidator()
    service = TransactionService(session, invalidator)
    txn = service.create(_expense(a.id, food.id))
    invalidator.signals.clear()

    service.update(txn.id, TransactionPatch(account_id=a2.id))

    assert _balance(session, a.id) == 10_000
    assert _balance(session, a2.id) == -3_000
    assert ("transaction", {}) in invalidator.signals
    assert ("account", {"account_id": a.id}) in invalidator.signals
    assert ("account", {"account_id": a2.id}) in invalidator.signals
    assert ("category", {"category_id": food.id}) in invalidator.signals


def test_delete_transfer_restores_balances() -> None:
    session = make_session()
    a = _account(session, "A", 10_000)
    b = _account(session, "B", 0)
    x = _category(session, "X", TransactionType.transfer)
    service = TransactionService(session)
    txn = service.create(
        TransactionIn(
            type=TransactionType.transfer,
            date=datetime(2025, 3, 10),
            amount=2_500,
            account_id=a.id,
            destination_account_id=b.id,
            category_id=x.id,
        )
    )

    service.delete(txn.id)

    assert _balance(session, a.id) == 10_000
    assert _balance(session, b.id) == 0
    with pytest.raises(NotFoundError):
        service.get(txn.id)
    with pytest.raises(NotFoundError):
        service.delete(txn.id)


def test_balances_match_live_effects_after_mixed_writes() -> None:
    session = make_session()
    a = _account(session, "A", 50_000)
    b = _account(session, "B", 1_000, type=AccountType.income)
    food = _category(session, "Food", TransactionType.expense)
    salary = _category(session, "Salary", TransactionType.income)
    moves = _category(session, "Moves", TransactionType.transfer)
    service = TransactionService(session)

    t1 = service.create(_expense(a.id, food.id, 4_000))
    t2 = service.create(
        TransactionIn(
            type=TransactionType.income,
            date=datetime(2025, 3, 11),
            amount=9_000,
            account_id=b.id,
            category_id=salary.id,
        )
    )
    t3 = service.create(
        TransactionIn(
            type=TransactionType.transfer,
            date=datetime(2025, 3, 12),
            amount=1_500,
            account_id=b.id,
            destination_account_id=a.id,
            category_id=moves.id,
        )
    )
    service.update(t1.id, TransactionPatch(amount=6_000))
    service.update(t3.id, TransactionPatch(account_id=a.id, destination_account_id=b.id))
    service.delete(t2.id)

    assert _balance(session, a.id) == 50_000 + _live_effects(session, a.id)
    assert _balance(session, b.id) == 1_000 + _live_effects(session, b.id)


def test_update_with_identical_values_is_a_noop() -> None:
    session = make_session()
    a = _account(session, "A", 10_000)
    food = _category(session, "Food", TransactionType.expense)
    service = TransactionService(session)
    txn = service.create(_expense(a.id, food.id, note="Lunch"))
    before = TransactionState.of(txn)

    updated = service.update(
        txn.id,
        TransactionPatch(
            type=txn.type,
            date=txn.date,
            amount=txn.amount,
            account_id=txn.account_id,
            category_id=txn.category_id,
            note=txn.note,
        ),
    )

    assert _balance(session, a.id) == 7_000
    assert TransactionState.of(updated) == before
    assert updated.note == "Lunch"


def test_delete_then_recreate_restores_balances() -> None:
    session = make_session()
    a = _account(session, "A", 10_000)
    food = _category(session, "Food", TransactionType.expense)
    service = TransactionService(session)
    payload = _expense(a.id, food.id, 1_250)
    txn = service.create(payload)
    before = _balance(session, a.id)

    service.delete(txn.id)
    service.create(payload)

    assert _balance(session, a.id) == before


def test_type_must_match_category_type() -> None:
    session = make_session()
    a = _account(session, "A", 10_000)
    salary = _category(session, "Salary", TransactionType.income)

    with pytest.raises(TypeCategoryMismatch):
        TransactionService(session).create(_expense(a.id, salary.id))

    assert _balance(session, a.id) == 10_000
    assert session.scalars(select(Transaction)).all() == []


def test_expense_rejected_on_account_type_outside_expense_and_income() -> None:
    session = make_session()
    legacy = Account(name="Legacy", type="savings", amount=5_000)
    session.add(legacy)
    session.commit()
    food = _category(session, "Food", TransactionType.expense)

    with pytest.raises(InvalidAccountTypeForExpense):
        TransactionService(session).create(_expense(legacy.id, food.id))

    assert _balance(session, legacy.id) == 5_000


def test_transfer_rules() -> None:
    session = make_session()
    a = _account(session, "A", 10_000)
    x = _category(session, "X", TransactionType.transfer)
    service = TransactionService(session)
    base = dict(
        type=TransactionType.transfer,
        date=datetime(2025, 3, 10),
        amount=100,
        account_id=a.id,
        category_id=x.id,
    )

    with pytest.raises(TransferSameAccount):
        service.create(TransactionIn(destination_account_id=a.id, **base))
    with pytest.raises(MissingDestinationAccount):
        service.create(TransactionIn(**base))
    with pytest.raises(InvalidReference):
        service.create(TransactionIn(destination_account_id=999, **base))

    assert _balance(session, a.id) == 10_000


def test_empty_patch_is_rejected() -> None:
    session = make_session()
    a = _account(session, "A", 10_000)
    food = _category(session, "Food", TransactionType.expense)
    service = TransactionService(session)
    txn = service.create(_expense(a.id, food.id))

    with pytest.raises(NoFieldsToUpdate):
        service.update(txn.id, TransactionPatch())


def test_failed_update_rolls_back_reverted_effect() -> None:
    session = make_session()
    a = _account(session, "A", 10_000)
    food = _category(session, "Food", TransactionType.expense)
    salary = _category(session, "Salary", TransactionType.income)
    service = TransactionService(session)
    txn = service.create(_expense(a.id, food.id))

    with pytest.raises(TypeCategoryMismatch):
        service.update(txn.id, TransactionPatch(category_id=salary.id))

    assert _balance(session, a.id) == 7_000
    assert service.get(txn.id).category_id == food.id


def test_references_to_deleted_rows_fail_validation() -> None:
    session = make_session()
    a = _account(session, "A", 10_000)
    food = _category(session, "Food", TransactionType.expense)
    CategoryService(session).delete(food.id)

    with pytest.raises(InvalidReference):
        TransactionService(session).create(_expense(a.id, food.id))


def test_changing_type_away_from_transfer_clears_destination() -> None:
    session = make_session()
    a = _account(session, "A", 10_000)
    b = _account(session, "B", 0)
    x = _category(session, "X", TransactionType.transfer)
    food = _category(session, "Food", TransactionType.expense)
    service = TransactionService(session)
    txn = service.create(
        TransactionIn(
            type=TransactionType.transfer,
            date=datetime(2025, 3, 10),
            amount=2_000,
            account_id=a.id,
            destination_account_id=b.id,
            category_id=x.id,
        )
    )

    updated = service.update(
        txn.id, TransactionPatch(type=TransactionType.expense, category_id=food.id)
    )

    assert updated.destination_account_id is None
    assert _balance(session, a.id) == 8_000
    assert _balance(session, b.id) == 0


def test_coordinates_must_be_paired() -> None:
    session = make_session()
    a = _account(session, "A", 10_000)
    food = _category(session, "Food", TransactionType.expense)
    geo = RecordingGeo()
    service = TransactionService(session, geo=geo)

    with pytest.raises(CoordinatePairing):
        service.create(_expense(a.id, food.id, latitude=-6.2))

    txn = service.create(_expense(a.id, food.id, latitude=-6.2, longitude=106.8))
    assert geo.updated == [txn.id]

    with pytest.raises(CoordinatePairing):
        service.update(txn.id, TransactionPatch(longitude=None))

    service.update(txn.id, TransactionPatch(latitude=None, longitude=None))
    assert geo.removed == [txn.id]


def test_geo_failures_do_not_fail_the_write() -> None:
    class BrokenGeo(RecordingGeo):
        def update(self, transaction_id, latitude, longitude) -> None:
            raise RuntimeError("redis down")

    session = make_session()
    a = _account(session, "A", 10_000)
    food = _category(session, "Food", TransactionType.expense)

    txn = TransactionService(session, geo=BrokenGeo()).create(
        _expense(a.id, food.id, latitude=1.0, longitude=2.0)
    )

    assert txn.id is not None
    assert _balance(session, a.id) == 7_000


def test_list_filters_by_account_on_either_side() -> None:
    session = make_session()
    a = _account(session, "A", 10_000)
    b = _account(session, "B", 0)
    x = _category(session, "X", TransactionType.transfer)
    food = _category(session, "Food", TransactionType.expense)
    service = TransactionService(session)
    service.create(_expense(a.id, food.id))
    transfer = service.create(
        TransactionIn(
            type=TransactionType.transfer,
            date=datetime(2025, 3, 10),
            amount=100,
            account_id=a.id,
            destination_account_id=b.id,
            category_id=x.id,
        )
    )

    page = service.list(ListParams(), TransactionFilters(account_ids=[b.id]))
    assert [t.id for t in page.items] == [transfer.id]
    assert page.total == 1

    with pytest.raises(ValidationFailed):
        service.list(ListParams(), TransactionFilters(latitude=1.0, longitude=1.0))


def test_transaction_tags() -> None:
    session = make_session()
    a = _account(session, "A", 10_000)
    food = _category(session, "Food", TransactionType.expense)
    tags = TagService(session)
    work = tags.create("Work")
    service = TransactionService(session)
    txn = service.create(_expense(a.id, food.id))

    service.add_tag(txn.id, work.id)
    assert [tag.name for tag in service.list_tags(txn.id)] == ["work"]

    with pytest.raises(ConflictError):
        service.add_tag(txn.id, work.id)

    service.remove_tag(txn.id, work.id)
    assert service.list_tags(txn.id) == []
    with pytest.raises(NotFoundError):
        service.remove_tag(txn.id, work.id)


def test_relations_are_undirected_and_unique() -> None:
    session = make_session()
    a = _account(session, "A", 10_000)
    food = _category(session, "Food", TransactionType.expense)
    service = TransactionService(session)
    first = service.create(_expense(a.id, food.id, 100))
    second = service.create(_expense(a.id, food.id, 200))

    with pytest.raises(ValidationFailed):
        service.create_relation(first.id, first.id)

    service.create_relation(second.id, first.id)
    with pytest.raises(ConflictError):
        service.create_relation(first.id, second.id)

    assert [t.id for t in service.list_relations(first.id, ListParams()).items] == [second.id]
    assert [t.id for t in service.list_relations(second.id, ListParams()).items] == [first.id]
    assert service.get_relation(first.id, second.id).id == second.id

    service.delete_relation(first.id, second.id)
    with pytest.raises(NotFoundError):
        service.get_relation(second.id, first.id)

    service.create_relation(first.id, second.id)
    assert service.list_relations(first.id, ListParams()).total == 1
