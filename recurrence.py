import logging
from datetime import date, datetime, time, timedelta
from typing import Optional, Union

from sqlalchemy import or_, select
from sqlalchemy.orm import Session, sessionmaker

from models import (
    Budget,
    BudgetRecurrence,
    BudgetTemplate,
    TemplateRecurrence,
    TransactionTemplate,
)
from scheduler import TaskContext
from schemas import TransactionIn
from services import (
    Invalidator,
    TransactionService,
    TransactionState,
    TransactionTemplateService,
    publish_invalidation,
    utcnow,
)

logger = logging.getLogger(__name__)

Recurrence = Union[TemplateRecurrence, BudgetRecurrence]


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def add_months(base: datetime, months: int) -> datetime:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    day = min(base.day, days_in_month(year, month))
    return base.replace(year=year, month=month, day=day)


def next_due(last_executed_at: datetime, recurrence: Recurrence) -> Optional[datetime]:
    value = recurrence.value
    if value == "daily":
        return last_executed_at + timedelta(days=1)
    if value == "weekly":
        return last_executed_at + timedelta(weeks=1)
    if value == "monthly":
        return add_months(last_executed_at, 1)
    if value == "yearly":
        return add_months(last_executed_at, 12)
    return None


def is_due(
    recurrence: Recurrence,
    start_date: datetime,
    end_date: Optional[datetime],
    last_executed_at: Optional[datetime],
    now: datetime,
) -> bool:
    if recurrence.value == "none":
        return False
    if start_date > now:
        return False
    if end_date is not None and end_date < now:
        return False
    if last_executed_at is None:
        return True
    due_at = next_due(last_executed_at, recurrence)
    return due_at is not None and now >= due_at


def budget_window(recurrence: BudgetRecurrence, today: date) -> tuple[date, date]:
    if recurrence == BudgetRecurrence.weekly:
        start = today - timedelta(days=today.weekday())
        return start, start + timedelta(days=6)
    if recurrence == BudgetRecurrence.monthly:
        start = today.replace(day=1)
        return start, today.replace(day=days_in_month(today.year, today.month))
    if recurrence == BudgetRecurrence.yearly:
        return date(today.year, 1, 1), date(today.year, 12, 31)
    return today, today


def occurrence_note(template: TransactionTemplate, occurrence: int) -> str:
    label = f"Occurrence {occurrence}"
    if template.installment_count:
        label = f"{label} of {template.installment_count}"
    note = f"{template.name} ({label})"
    if template.note:
        note = f"{note} - {template.note}"
    return note


class TransactionTemplateWorker:
    """Materializes due transaction templates through the transaction engine."""

    def __init__(
        self,
        session_factory: sessionmaker,
        invalidator: Optional[Invalidator] = None,
        geo=None,
    ) -> None:
        self.session_factory = session_factory
        self.invalidator = invalidator
        self.geo = geo
        self.failures = 0

    def due_templates(self, session: Session, now: datetime) -> list[TransactionTemplate]:
        stmt = (
            select(TransactionTemplate)
            .where(
                TransactionTemplate.deleted_at.is_(None),
                TransactionTemplate.recurrence != TemplateRecurrence.none,
                TransactionTemplate.start_date <= now,
                or_(
                    TransactionTemplate.end_date.is_(None),
                    TransactionTemplate.end_date >= now,
                ),
            )
            .order_by(TransactionTemplate.id)
        )
        due = []
        for template in session.scalars(stmt):
            if (
                template.installment_count is not None
                and template.installment_current >= template.installment_count
            ):
                continue
            if is_due(
                template.recurrence,
                template.start_date,
                template.end_date,
                template.last_executed_at,
                now,
            ):
                due.append(template)
        return due

    def _materialize(self, session: Session, template_id: int, now: datetime) -> int:
        template = session.get(TransactionTemplate, template_id)
        occurrence = template.installment_current + 1
        engine = TransactionService(session, self.invalidator, self.geo)
        txn = engine.create_in_session(
            TransactionIn(
                type=template.type,
                date=datetime.combine(now.date(), time.min),
                amount=template.amount,
                account_id=template.account_id,
                category_id=template.category_id,
                destination_account_id=template.destination_account_id,
                note=occurrence_note(template, occurrence),
            )
        )
        TransactionTemplateService(session).link_transaction(template.id, txn.id)
        template.installment_current = occurrence
        template.last_executed_at = now
        session.commit()

        engine.after_commit([TransactionState.of(txn)])
        publish_invalidation(self.invalidator, "transaction_template", template_id=template.id)
        return txn.id

    def run(
        self, context: Optional[TaskContext] = None, now: Optional[datetime] = None
    ) -> dict[str, int]:
        now = now or utcnow()
        with self.session_factory() as session:
            template_ids = [t.id for t in self.due_templates(session, now)]

        created = 0
        failed = 0
        for template_id in template_ids:
            if context is not None and context.cancelled:
                logger.info("transaction_template_worker: cancelled")
                break
            session: Session = self.session_factory()
            try:
                txn_id = self._materialize(session, template_id, now)
                created += 1
                logger.info(
                    f"transaction_template_materialized: template_id={template_id} transaction_id={txn_id}"
                )
            except Exception as exc:
                session.rollback()
                failed += 1
                logger.error(
                    f"transaction_template_failed: template_id={template_id} error={exc}"
                )
            finally:
                session.close()

        self.failures += failed
        logger.info(
            f"transaction_template_worker: due={len(template_ids)} created={created} failed={failed}"
        )
        return {"due": len(template_ids), "created": created, "failed": failed}


class BudgetTemplateWorker:
    """Creates one budget per template for the current recurrence window."""

    def __init__(
        self, session_factory: sessionmaker, invalidator: Optional[Invalidator] = None
    ) -> None:
        self.session_factory = session_factory
        self.invalidator = invalidator
        self.failures = 0

    def due_templates(self, session: Session, now: datetime) -> list[BudgetTemplate]:
        stmt = (
            select(BudgetTemplate)
            .where(
                BudgetTemplate.deleted_at.is_(None),
                BudgetTemplate.recurrence != BudgetRecurrence.none,
                BudgetTemplate.start_date <= now,
                or_(BudgetTemplate.end_date.is_(None), BudgetTemplate.end_date >= now),
            )
            .order_by(BudgetTemplate.id)
        )
        # Windows are calendar aligned, so every active template is checked and
        # deduplicated per window instead of gated on last_executed_at.
        return list(session.scalars(stmt))

    def _materialize(
        self, session: Session, template_id: int, now: datetime
    ) -> Optional[int]:
        template = session.get(BudgetTemplate, template_id)
        period_start, period_end = budget_window(template.recurrence, now.date())

        existing = session.scalars(
            select(Budget).where(
                Budget.template_id == template.id, Budget.deleted_at.is_(None)
            )
        ).all()
        if any(budget.period_start == period_start for budget in existing):
            return None

        # Close out the previous window's budget if it still overlaps.
        for budget in existing:
            if budget.period_start < period_start <= budget.period_end:
                budget.period_end = period_start - timedelta(days=1)

        budget = Budget(
            template_id=template.id,
            name=f"{template.name} ({period_start.isoformat()})",
            account_id=template.account_id,
            category_id=template.category_id,
            amount_limit=template.amount_limit,
            period_start=period_start,
            period_end=period_end,
            note=template.note,
        )
        session.add(budget)
        template.last_executed_at = now
        session.commit()
        publish_invalidation(self.invalidator, "budget")
        publish_invalidation(self.invalidator, "budget_template")
        return budget.id

    def run(
        self, context: Optional[TaskContext] = None, now: Optional[datetime] = None
    ) -> dict[str, int]:
        now = now or utcnow()
        with self.session_factory() as session:
            template_ids = [t.id for t in self.due_templates(session, now)]

        created = 0
        failed = 0
        for template_id in template_ids:
            if context is not None and context.cancelled:
                logger.info("budget_template_worker: cancelled")
                break
            session: Session = self.session_factory()
            try:
                budget_id = self._materialize(session, template_id, now)
                if budget_id is not None:
                    created += 1
                    logger.info(
                        f"budget_template_materialized: template_id={template_id} budget_id={budget_id}"
                    )
            except Exception as exc:
                session.rollback()
                failed += 1
                logger.error(f"budget_template_failed: template_id={template_id} error={exc}")
            finally:
                session.close()

        self.failures += failed
        logger.info(
            f"budget_template_worker: due={len(template_ids)} created={created} failed={failed}"
        )
        return {"due": len(template_ids), "created": created, "failed": failed}
