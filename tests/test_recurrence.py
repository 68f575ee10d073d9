import threading
from datetime import date, datetime

from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from database import Base
from models import (
    Account,
    AccountType,
    Budget,
    BudgetRecurrence,
    BudgetTemplate,
    TemplateRecurrence,
    TransactionTemplate,
    TransactionType,
)
from recurrence import (
    BudgetTemplateWorker,
    TransactionTemplateWorker,
    add_months,
    budget_window,
    is_due,
    next_due,
)
from scheduler import TaskContext
from schemas import (
    AccountIn,
    BudgetTemplateIn,
    CategoryIn,
    ListParams,
    TransactionTemplateIn,
)
from services import (
    AccountService,
    BudgetTemplateService,
    CategoryService,
    TransactionTemplateService,
)


def make_factory(tmp_path):
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'recurrence.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def _refs(session):
    account = AccountService(session).create(
        AccountIn(name="Checking", type=AccountType.expense, amount=10_000)
    )
    category = CategoryService(session).create(
        CategoryIn(name="Rent", type=TransactionType.expense)
    )
    return account, category


def test_add_months_clamps_to_month_end() -> None:
    assert add_months(datetime(2025, 1, 31), 1) == datetime(2025, 2, 28)
    assert add_months(datetime(2024, 1, 31), 1) == datetime(2024, 2, 29)
    assert add_months(datetime(2024, 2, 29), 12) == datetime(2025, 2, 28)
    assert add_months(datetime(2025, 11, 15, 8), 3) == datetime(2026, 2, 15, 8)


def test_next_due_and_is_due() -> None:
    last = datetime(2025, 1, 31, 6)
    assert next_due(last, TemplateRecurrence.daily) == datetime(2025, 2, 1, 6)
    assert next_due(last, TemplateRecurrence.weekly) == datetime(2025, 2, 7, 6)
    assert next_due(last, TemplateRecurrence.monthly) == datetime(2025, 2, 28, 6)
    assert next_due(last, TemplateRecurrence.none) is None

    start = datetime(2025, 1, 1)
    monthly = TemplateRecurrence.monthly
    assert is_due(monthly, start, None, None, datetime(2025, 1, 1))
    assert not is_due(monthly, start, None, last, datetime(2025, 2, 27))
    assert is_due(monthly, start, None, last, datetime(2025, 2, 28, 6))
    assert not is_due(monthly, datetime(2025, 6, 1), None, None, datetime(2025, 5, 1))
    assert not is_due(monthly, start, datetime(2025, 3, 1), None, datetime(2025, 4, 1))
    assert not is_due(TemplateRecurrence.none, start, None, None, datetime(2025, 4, 1))


def test_budget_window() -> None:
    wednesday = date(2025, 3, 5)
    assert budget_window(BudgetRecurrence.weekly, wednesday) == (
        date(2025, 3, 3),
        date(2025, 3, 9),
    )
    assert budget_window(BudgetRecurrence.monthly, date(2024, 2, 10)) == (
        date(2024, 2, 1),
        date(2024, 2, 29),
    )
    assert budget_window(BudgetRecurrence.yearly, wednesday) == (
        date(2025, 1, 1),
        date(2025, 12, 31),
    )


def test_installment_template_materializes_until_exhausted(tmp_path) -> None:
    factory = make_factory(tmp_path)
    with factory() as session:
        account, category = _refs(session)
        template = TransactionTemplateService(session).create(
            TransactionTemplateIn(
                name="Laptop",
                type=TransactionType.expense,
                amount=1_500,
                account_id=account.id,
                category_id=category.id,
                recurrence=TemplateRecurrence.monthly,
                start_date=datetime(2025, 1, 1),
                installment_count=2,
                note="zero interest",
            )
        )
    worker = TransactionTemplateWorker(factory)

    assert worker.run(now=datetime(2025, 1, 1, 10)) == {"due": 1, "created": 1, "failed": 0}
    assert worker.run(now=datetime(2025, 1, 20, 10))["due"] == 0
    assert worker.run(now=datetime(2025, 2, 1, 10))["created"] == 1
    assert worker.run(now=datetime(2025, 3, 1, 10))["due"] == 0

    with factory() as session:
        assert session.get(Account, account.id).amount == 7_000
        stored = session.get(TransactionTemplate, template.id)
        assert stored.installment_current == 2
        assert stored.last_executed_at == datetime(2025, 2, 1, 10)

        linked = TransactionTemplateService(session).related_transactions(
            template.id, ListParams(order_by="date", order_direction="asc")
        )
        assert linked.total == 2
        first, second = linked.items
        assert first.date == datetime(2025, 1, 1)
        assert first.note == "Laptop (Occurrence 1 of 2) - zero interest"
        assert second.note == "Laptop (Occurrence 2 of 2) - zero interest"


def test_template_failure_is_counted_and_skipped(tmp_path) -> None:
    factory = make_factory(tmp_path)
    with factory() as session:
        account, category = _refs(session)
        other = AccountService(session).create(
            AccountIn(name="Closed", type=AccountType.expense, amount=0)
        )
        for name, account_id in (("Broken", other.id), ("Fine", account.id)):
            TransactionTemplateService(session).create(
                TransactionTemplateIn(
                    name=name,
                    type=TransactionType.expense,
                    amount=100,
                    account_id=account_id,
                    category_id=category.id,
                    recurrence=TemplateRecurrence.daily,
                    start_date=datetime(2025, 1, 1),
                )
            )
        AccountService(session).delete(other.id)

    worker = TransactionTemplateWorker(factory)
    result = worker.run(now=datetime(2025, 1, 2))

    assert result == {"due": 2, "created": 1, "failed": 1}
    assert worker.failures == 1
    with factory() as session:
        broken = session.scalars(
            select(TransactionTemplate).where(TransactionTemplate.name == "Broken")
        ).one()
        assert broken.installment_current == 0
        assert broken.last_executed_at is None


def test_cancelled_context_stops_between_templates(tmp_path) -> None:
    factory = make_factory(tmp_path)
    with factory() as session:
        account, category = _refs(session)
        TransactionTemplateService(session).create(
            TransactionTemplateIn(
                name="Gym",
                type=TransactionType.expense,
                amount=100,
                account_id=account.id,
                category_id=category.id,
                recurrence=TemplateRecurrence.weekly,
                start_date=datetime(2025, 1, 1),
            )
        )
    stop = threading.Event()
    stop.set()

    result = TransactionTemplateWorker(factory).run(
        TaskContext(stop), now=datetime(2025, 1, 2)
    )

    assert result == {"due": 1, "created": 0, "failed": 0}


def test_budget_worker_creates_one_budget_per_window(tmp_path) -> None:
    factory = make_factory(tmp_path)
    with factory() as session:
        _, category = _refs(session)
        template = BudgetTemplateService(session).create(
            BudgetTemplateIn(
                name="Rent cap",
                category_id=category.id,
                amount_limit=5_000,
                recurrence=BudgetRecurrence.monthly,
                start_date=datetime(2025, 1, 1),
            )
        )
    worker = BudgetTemplateWorker(factory)

    assert worker.run(now=datetime(2025, 1, 10))["created"] == 1
    assert worker.run(now=datetime(2025, 1, 10, 0, 15))["created"] == 0
    assert worker.run(now=datetime(2025, 2, 1, 0, 15))["created"] == 1

    with factory() as session:
        budgets = session.scalars(
            select(Budget)
            .where(Budget.template_id == template.id)
            .order_by(Budget.period_start)
        ).all()
        assert [(b.period_start, b.period_end) for b in budgets] == [
            (date(2025, 1, 1), date(2025, 1, 31)),
            (date(2025, 2, 1), date(2025, 2, 28)),
        ]
        assert budgets[0].name == "Rent cap (2025-01-01)"
        assert budgets[0].amount_limit == 5_000


def test_budget_worker_truncates_overlapping_previous_window(tmp_path) -> None:
    factory = make_factory(tmp_path)
    with factory() as session:
        _, category = _refs(session)
        template = BudgetTemplateService(session).create(
            BudgetTemplateIn(
                name="Groceries",
                category_id=category.id,
                amount_limit=9_000,
                recurrence=BudgetRecurrence.yearly,
                start_date=datetime(2025, 1, 1),
            )
        )
    worker = BudgetTemplateWorker(factory)
    worker.run(now=datetime(2025, 1, 10))

    with factory() as session:
        session.get(BudgetTemplate, template.id).recurrence = BudgetRecurrence.monthly
        session.commit()
    worker.run(now=datetime(2025, 2, 3))

    with factory() as session:
        budgets = session.scalars(
            select(Budget).order_by(Budget.period_start)
        ).all()
        assert [(b.period_start, b.period_end) for b in budgets] == [
            (date(2025, 1, 1), date(2025, 1, 31)),
            (date(2025, 2, 1), date(2025, 2, 28)),
        ]


def test_budget_templates_outside_their_dates_are_ignored(tmp_path) -> None:
    factory = make_factory(tmp_path)
    with factory() as session:
        _, category = _refs(session)
        BudgetTemplateService(session).create(
            BudgetTemplateIn(
                name="Holiday",
                category_id=category.id,
                amount_limit=1_000,
                recurrence=BudgetRecurrence.weekly,
                start_date=datetime(2025, 6, 1),
                end_date=datetime(2025, 8, 31),
            )
        )
        BudgetTemplateService(session).create(
            BudgetTemplateIn(
                name="One off",
                category_id=category.id,
                amount_limit=1_000,
                start_date=datetime(2025, 1, 1),
            )
        )
    worker = BudgetTemplateWorker(factory)

    assert worker.run(now=datetime(2025, 5, 1)) == {"due": 0, "created": 0, "failed": 0}
    assert worker.run(now=datetime(2025, 9, 2))["due"] == 0
    assert worker.run(now=datetime(2025, 7, 2))["created"] == 1
