import logging
import statistics
import threading
from collections import Counter, defaultdict
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from datetime import date, datetime, time, timedelta
from typing import Any, Callable, Iterable, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session, sessionmaker

from cache import STATISTICS_TTL, SUMMARY_TTL, CacheService, fingerprint
from errors import ValidationFailed
from models import Account, Budget, Category, Transaction, TransactionType
from recurrence import days_in_month
from schemas import DateRange, SummaryParams
from services import get_live, to_naive_utc, utcnow

logger = logging.getLogger(__name__)

DEFAULT_RANGE = timedelta(days=180)
DEFAULT_SUMMARY_RANGE = timedelta(days=365)
PAST_BUDGET_LIMIT = 12
WEEKDAYS = [
    "Monday",
    "Tuesday",
    "Wednesday",
    "Thursday",
    "Friday",
    "Saturday",
    "Sunday",
]

ACCOUNT_METRICS = (
    "category_heatmap",
    "monthly_velocity",
    "time_frequency",
    "cash_flow_pulse",
    "burn_rate",
    "budget_health",
)
CATEGORY_METRICS = (
    "spending_velocity",
    "account_distribution",
    "transaction_size",
    "day_of_week_pattern",
    "budget_utilization",
)


class StatisticsCancelled(Exception):
    pass


def _check(cancel: Optional[threading.Event]) -> None:
    if cancel is not None and cancel.is_set():
        raise StatisticsCancelled()


def resolve_range(
    params: DateRange, default: timedelta = DEFAULT_RANGE
) -> tuple[datetime, datetime]:
    # Default bounds snap to whole days so repeated calls share a cache key.
    end = to_naive_utc(params.end_date)
    if end is None:
        end = datetime.combine(utcnow().date(), time(23, 59, 59))
    start = to_naive_utc(params.start_date)
    if start is None:
        start = datetime.combine((end - default).date(), time.min)
    if start > end:
        raise ValidationFailed("start_date must be before end_date")
    return start, end


def run_parallel(
    tasks: dict[str, Callable[[threading.Event], Any]], max_workers: int
) -> dict[str, Any]:
    """Run tasks concurrently; the first failure cancels the rest and is raised."""
    cancel = threading.Event()
    with ThreadPoolExecutor(
        max_workers=max_workers, thread_name_prefix="statistics"
    ) as pool:
        futures = {pool.submit(fn, cancel): name for name, fn in tasks.items()}
        done, pending = wait(futures, return_when=FIRST_EXCEPTION)
        failed = next((f for f in done if f.exception() is not None), None)
        if failed is not None:
            cancel.set()
            for future in pending:
                future.cancel()
            raise failed.exception()
        return {futures[future]: future.result() for future in done}


def _pct(part: float, whole: float) -> float:
    return round(part / whole * 100, 2) if whole else 0.0


def _direction(first: float, last: float) -> str:
    if first == 0:
        return "increasing" if last > 0 else "stable"
    change = (last - first) / first
    if change > 0.1:
        return "increasing"
    if change < -0.1:
        return "decreasing"
    return "stable"


def _month_key(value: datetime) -> str:
    return f"{value.year:04d}-{value.month:02d}"


def _rows(
    session: Session,
    start: Optional[datetime],
    end: Optional[datetime],
    *,
    touching_account: Optional[int] = None,
    account_id: Optional[int] = None,
    category_id: Optional[int] = None,
    type: Optional[TransactionType] = None,
    account_ids: Iterable[int] = (),
    category_ids: Iterable[int] = (),
):
    stmt = select(
        Transaction.id,
        Transaction.type,
        Transaction.amount,
        Transaction.date,
        Transaction.account_id,
        Transaction.destination_account_id,
        Transaction.category_id,
    ).where(Transaction.deleted_at.is_(None))
    if start is not None:
        stmt = stmt.where(Transaction.date >= start)
    if end is not None:
        stmt = stmt.where(Transaction.date <= end)
    if touching_account is not None:
        stmt = stmt.where(
            or_(
                Transaction.account_id == touching_account,
                Transaction.destination_account_id == touching_account,
            )
        )
    if account_id is not None:
        stmt = stmt.where(Transaction.account_id == account_id)
    if category_id is not None:
        stmt = stmt.where(Transaction.category_id == category_id)
    if type is not None:
        stmt = stmt.where(Transaction.type == type)
    account_ids = list(account_ids)
    if account_ids:
        stmt = stmt.where(
            or_(
                Transaction.account_id.in_(account_ids),
                Transaction.destination_account_id.in_(account_ids),
            )
        )
    category_ids = list(category_ids)
    if category_ids:
        stmt = stmt.where(Transaction.category_id.in_(category_ids))
    return session.execute(stmt.order_by(Transaction.date, Transaction.id)).all()


def _effect_on(row, account_id: int) -> int:
    if row.type == TransactionType.income:
        return row.amount if row.account_id == account_id else 0
    if row.type == TransactionType.expense:
        return -row.amount if row.account_id == account_id else 0
    delta = 0
    if row.account_id == account_id:
        delta -= row.amount
    if row.destination_account_id == account_id:
        delta += row.amount
    return delta


def _expense_total(
    session: Session,
    period_start: date,
    period_end: date,
    *,
    account_id: Optional[int] = None,
    category_id: Optional[int] = None,
) -> int:
    stmt = select(func.coalesce(func.sum(Transaction.amount), 0)).where(
        Transaction.deleted_at.is_(None),
        Transaction.type == TransactionType.expense,
        Transaction.date >= datetime.combine(period_start, time.min),
        Transaction.date <= datetime.combine(period_end, time.max),
    )
    if account_id is not None:
        stmt = stmt.where(Transaction.account_id == account_id)
    if category_id is not None:
        stmt = stmt.where(Transaction.category_id == category_id)
    return int(session.execute(stmt).scalar_one() or 0)


def _budgets_for(
    session: Session,
    *,
    account_id: Optional[int] = None,
    category_id: Optional[int] = None,
) -> list[Budget]:
    stmt = select(Budget).where(Budget.deleted_at.is_(None))
    if account_id is not None:
        stmt = stmt.where(Budget.account_id == account_id)
    if category_id is not None:
        stmt = stmt.where(Budget.category_id == category_id)
    return list(session.scalars(stmt.order_by(Budget.period_end.desc())).all())


def _budget_status(percent: float) -> str:
    if percent >= 100:
        return "exceeded"
    if percent >= 80:
        return "warning"
    return "on-track"


# Account metrics


def category_heatmap(session, account_id, start, end, cancel=None) -> dict:
    stmt = (
        select(
            Category.id,
            Category.name,
            func.count(Transaction.id).label("count"),
            func.coalesce(func.sum(Transaction.amount), 0).label("total"),
        )
        .join(Category, Category.id == Transaction.category_id)
        .where(
            Transaction.deleted_at.is_(None),
            Transaction.account_id == account_id,
            Transaction.type == TransactionType.expense,
            Transaction.date >= start,
            Transaction.date <= end,
        )
        .group_by(Category.id, Category.name)
    )
    rows = session.execute(stmt).all()
    _check(cancel)
    total = sum(int(row.total) for row in rows)
    categories = [
        {
            "category_id": row.id,
            "category_name": row.name,
            "transaction_count": int(row.count),
            "total_amount": int(row.total),
            "percentage": _pct(int(row.total), total),
        }
        for row in rows
    ]
    categories.sort(key=lambda item: (-item["total_amount"], item["category_id"]))
    return {"categories": categories, "total_spending": total}


def monthly_velocity(session, account_id, start, end, cancel=None) -> dict:
    rows = _rows(session, start, end, touching_account=account_id)
    _check(cancel)
    months: dict[str, dict[str, Any]] = {}
    for row in rows:
        key = _month_key(row.date)
        bucket = months.setdefault(
            key,
            {
                "month": key,
                "transaction_count": 0,
                "income_amount": 0,
                "expense_amount": 0,
                "transfer_in": 0,
                "transfer_out": 0,
            },
        )
        bucket["transaction_count"] += 1
        if row.type == TransactionType.income:
            bucket["income_amount"] += row.amount
        elif row.type == TransactionType.expense:
            bucket["expense_amount"] += row.amount
        else:
            if row.account_id == account_id:
                bucket["transfer_out"] += row.amount
            if row.destination_account_id == account_id:
                bucket["transfer_in"] += row.amount

    ordered = [months[key] for key in sorted(months)]
    for bucket in ordered:
        year, month = (int(part) for part in bucket["month"].split("-"))
        bucket["net"] = (
            bucket["income_amount"]
            + bucket["transfer_in"]
            - bucket["expense_amount"]
            - bucket["transfer_out"]
        )
        bucket["daily_average"] = round(
            bucket["expense_amount"] / days_in_month(year, month), 2
        )

    spends = [bucket["expense_amount"] for bucket in ordered]
    return {
        "months": ordered,
        "average_monthly_spend": round(sum(spends) / len(spends), 2) if spends else 0.0,
        "trend": _direction(spends[0], spends[-1]) if len(spends) > 1 else "stable",
    }


def _gap_pattern(days: float) -> str:
    if days <= 1:
        return "daily"
    if days <= 7:
        return "weekly"
    if days <= 30:
        return "monthly"
    return "irregular"


def time_frequency(session, account_id, start, end, cancel=None) -> dict:
    rows = _rows(session, start, end, touching_account=account_id)
    _check(cancel)
    patterns = Counter({"daily": 0, "weekly": 0, "monthly": 0, "irregular": 0})
    gaps: list[float] = []
    for previous, current in zip(rows, rows[1:]):
        gap = (current.date - previous.date).total_seconds() / 86400
        gaps.append(gap)
        patterns[_gap_pattern(gap)] += 1

    by_day = [{"day": name, "count": 0, "amount": 0} for name in WEEKDAYS]
    by_hour = [{"hour": hour, "count": 0, "amount": 0} for hour in range(24)]
    for row in rows:
        by_day[row.date.weekday()]["count"] += 1
        by_day[row.date.weekday()]["amount"] += row.amount
        by_hour[row.date.hour]["count"] += 1
        by_hour[row.date.hour]["amount"] += row.amount

    most_common = "irregular"
    if gaps:
        # Ties resolve toward the more frequent pattern.
        most_common = max(
            ("daily", "weekly", "monthly", "irregular"), key=lambda p: patterns[p]
        )
    return {
        "frequency_patterns": dict(patterns),
        "most_common_pattern": most_common,
        "average_days_between": round(sum(gaps) / len(gaps), 2) if gaps else 0.0,
        "total_transactions": len(rows),
        "by_day_of_week": by_day,
        "by_hour": by_hour,
    }


def cash_flow_pulse(session, account_id, start, end, cancel=None) -> dict:
    account = session.get(Account, account_id)
    current_balance = int(account.amount) if account is not None else 0
    since_start = _rows(session, start, None, touching_account=account_id)
    _check(cancel)

    net_since_start = sum(_effect_on(row, account_id) for row in since_start)
    starting_balance = current_balance - net_since_start

    daily: dict[date, int] = defaultdict(int)
    for row in since_start:
        if row.date <= end:
            daily[row.date.date()] += _effect_on(row, account_id)

    points = []
    balance = starting_balance
    day = start.date()
    while day <= end.date():
        net = daily.get(day, 0)
        balance += net
        points.append({"date": day.isoformat(), "net": net, "balance": balance})
        day += timedelta(days=1)

    balances = [point["balance"] for point in points] or [starting_balance]
    ending_balance = balances[-1]
    if ending_balance > starting_balance:
        trend = "increasing"
    elif ending_balance < starting_balance:
        trend = "decreasing"
    else:
        trend = "stable"
    return {
        "starting_balance": starting_balance,
        "ending_balance": ending_balance,
        "min_balance": min(balances),
        "max_balance": max(balances),
        "trend": trend,
        "points": points,
    }


def burn_rate(session, account_id, start, end, cancel=None) -> dict:
    rows = _rows(
        session, start, end, account_id=account_id, type=TransactionType.expense
    )
    _check(cancel)
    total = sum(row.amount for row in rows)
    days = max((end.date() - start.date()).days, 1)
    daily = total / days
    spending_days = len({row.date.date() for row in rows})

    reference = end.date()
    active = next(
        (
            budget
            for budget in _budgets_for(session, account_id=account_id)
            if budget.period_start <= reference <= budget.period_end
        ),
        None,
    )
    _check(cancel)
    budget_info: dict[str, Any] = {"status": "no-budget"}
    if active is not None:
        spent = _expense_total(
            session,
            active.period_start,
            active.period_end,
            account_id=account_id,
            category_id=active.category_id,
        )
        period_days = (active.period_end - active.period_start).days + 1
        projected = round(daily * period_days)
        percent = _pct(spent, active.amount_limit)
        if spent >= active.amount_limit:
            status = "exceeded"
        elif percent > 80 or projected > active.amount_limit:
            status = "at-risk"
        else:
            status = "within"
        budget_info = {
            "status": status,
            "budget_id": active.id,
            "amount_limit": active.amount_limit,
            "spent": spent,
            "percentage_used": percent,
            "projected_spend": projected,
            "days_remaining": max((active.period_end - reference).days, 0),
        }
    return {
        "total_spent": total,
        "daily_average": round(daily, 2),
        "weekly_average": round(daily * 7, 2),
        "monthly_average": round(daily * 30, 2),
        "spending_days": spending_days,
        "budget": budget_info,
    }


def budget_health(session, account_id, start, end, cancel=None) -> dict:
    budgets = _budgets_for(session, account_id=account_id)
    reference = end.date()
    active_items = []
    past_items = []
    for budget in budgets:
        _check(cancel)
        if budget.period_start <= reference <= budget.period_end:
            spent = _expense_total(
                session,
                budget.period_start,
                budget.period_end,
                account_id=account_id,
                category_id=budget.category_id,
            )
            percent = _pct(spent, budget.amount_limit)
            active_items.append(
                {
                    "budget_id": budget.id,
                    "name": budget.name,
                    "amount_limit": budget.amount_limit,
                    "spent": spent,
                    "remaining": budget.amount_limit - spent,
                    "percentage_used": percent,
                    "status": _budget_status(percent),
                    "days_remaining": (budget.period_end - reference).days,
                }
            )
        elif budget.period_end < reference and len(past_items) < PAST_BUDGET_LIMIT:
            spent = _expense_total(
                session,
                budget.period_start,
                budget.period_end,
                account_id=account_id,
                category_id=budget.category_id,
            )
            past_items.append(
                {
                    "budget_id": budget.id,
                    "name": budget.name,
                    "amount_limit": budget.amount_limit,
                    "spent": spent,
                    "period_start": budget.period_start.isoformat(),
                    "period_end": budget.period_end.isoformat(),
                    "status": "achieved" if spent <= budget.amount_limit else "exceeded",
                }
            )

    statuses = {item["status"] for item in active_items}
    if "exceeded" in statuses:
        overall = "concerning"
    elif "warning" in statuses:
        overall = "at-risk"
    else:
        overall = "healthy"
    achieved = sum(1 for item in past_items if item["status"] == "achieved")
    return {
        "active_budgets": active_items,
        "past_budgets": past_items,
        "overall_health": overall,
        "achievement_rate": _pct(achieved, len(past_items)),
    }


# Category metrics


def spending_velocity(session, category_id, start, end, cancel=None) -> dict:
    rows = _rows(session, start, end, category_id=category_id)
    _check(cancel)
    months: dict[str, dict[str, Any]] = {}
    for row in rows:
        key = _month_key(row.date)
        bucket = months.setdefault(
            key, {"month": key, "transaction_count": 0, "total_amount": 0}
        )
        bucket["transaction_count"] += 1
        bucket["total_amount"] += row.amount
    ordered = [months[key] for key in sorted(months)]
    totals = [bucket["total_amount"] for bucket in ordered]
    return {
        "months": ordered,
        "average_monthly": round(sum(totals) / len(totals), 2) if totals else 0.0,
        "trend": _direction(totals[0], totals[-1]) if len(totals) > 1 else "stable",
    }


def account_distribution(session, category_id, start, end, cancel=None) -> dict:
    stmt = (
        select(
            Account.id,
            Account.name,
            func.count(Transaction.id).label("count"),
            func.coalesce(func.sum(Transaction.amount), 0).label("total"),
        )
        .join(Account, Account.id == Transaction.account_id)
        .where(
            Transaction.deleted_at.is_(None),
            Transaction.category_id == category_id,
            Transaction.date >= start,
            Transaction.date <= end,
        )
        .group_by(Account.id, Account.name)
    )
    rows = session.execute(stmt).all()
    _check(cancel)
    total = sum(int(row.total) for row in rows)
    accounts = [
        {
            "account_id": row.id,
            "account_name": row.name,
            "transaction_count": int(row.count),
            "total_amount": int(row.total),
            "percentage": _pct(int(row.total), total),
        }
        for row in rows
    ]
    accounts.sort(key=lambda item: (-item["total_amount"], item["account_id"]))
    return {"accounts": accounts, "total_amount": total}


def _size_summary(amounts: list[int]) -> dict[str, Any]:
    if not amounts:
        return {"count": 0, "average": 0.0, "min": 0, "max": 0, "median": 0.0}
    return {
        "count": len(amounts),
        "average": round(sum(amounts) / len(amounts), 2),
        "min": min(amounts),
        "max": max(amounts),
        "median": float(statistics.median(amounts)),
    }


def transaction_size(session, category_id, start, end, cancel=None) -> dict:
    rows = _rows(session, start, end, category_id=category_id)
    _check(cancel)
    expenses = [row.amount for row in rows if row.type == TransactionType.expense]
    incomes = [row.amount for row in rows if row.type == TransactionType.income]
    transfers = [row.amount for row in rows if row.type == TransactionType.transfer]
    expense_total = sum(expenses)
    return {
        "expense": _size_summary(expenses),
        "income": _size_summary(incomes),
        "transfer": _size_summary(transfers),
        "overall": _size_summary([row.amount for row in rows]),
        "income_to_expense_ratio": (
            round(sum(incomes) / expense_total, 4) if expense_total else None
        ),
    }


def day_of_week_pattern(session, category_id, start, end, cancel=None) -> dict:
    rows = _rows(session, start, end, category_id=category_id)
    _check(cancel)
    days = [{"day": name, "count": 0, "amount": 0} for name in WEEKDAYS]
    for row in rows:
        days[row.date.weekday()]["count"] += 1
        days[row.date.weekday()]["amount"] += row.amount
    most_active = max(days, key=lambda d: d["count"]) if rows else None
    highest = max(days, key=lambda d: d["amount"]) if rows else None
    return {
        "days": days,
        "most_active_day": most_active["day"] if most_active else None,
        "highest_spend_day": highest["day"] if highest else None,
    }


def budget_utilization(session, category_id, start, end, cancel=None) -> dict:
    items = []
    for budget in _budgets_for(session, category_id=category_id):
        _check(cancel)
        if budget.period_end < start.date() or budget.period_start > end.date():
            continue
        spent = _expense_total(
            session,
            budget.period_start,
            budget.period_end,
            account_id=budget.account_id,
            category_id=category_id,
        )
        percent = _pct(spent, budget.amount_limit)
        items.append(
            {
                "budget_id": budget.id,
                "name": budget.name,
                "amount_limit": budget.amount_limit,
                "spent": spent,
                "utilization": percent,
                "status": _budget_status(percent),
                "period_start": budget.period_start.isoformat(),
                "period_end": budget.period_end.isoformat(),
            }
        )
    total_limit = sum(item["amount_limit"] for item in items)
    total_spent = sum(item["spent"] for item in items)
    return {
        "budgets": items,
        "total_limit": total_limit,
        "total_spent": total_spent,
        "average_utilization": (
            round(sum(item["utilization"] for item in items) / len(items), 2)
            if items
            else 0.0
        ),
    }


ACCOUNT_METRIC_FUNCS = {
    "category_heatmap": category_heatmap,
    "monthly_velocity": monthly_velocity,
    "time_frequency": time_frequency,
    "cash_flow_pulse": cash_flow_pulse,
    "burn_rate": burn_rate,
    "budget_health": budget_health,
}

CATEGORY_METRIC_FUNCS = {
    "spending_velocity": spending_velocity,
    "account_distribution": account_distribution,
    "transaction_size": transaction_size,
    "day_of_week_pattern": day_of_week_pattern,
    "budget_utilization": budget_utilization,
}


class _EntityStatisticsService:
    entity = ""
    model: Any = None
    label = ""
    metric_funcs: dict[str, Callable[..., dict]] = {}

    def __init__(
        self,
        session_factory: sessionmaker,
        cache: CacheService,
        max_workers: Optional[int] = None,
    ) -> None:
        self.session_factory = session_factory
        self.cache = cache
        self.max_workers = max_workers or len(self.metric_funcs)

    def _ensure_exists(self, entity_id: int) -> None:
        with self.session_factory() as session:
            get_live(session, self.model, entity_id, self.label)

    def _fetch(
        self,
        entity_id: int,
        metric: str,
        start: datetime,
        end: datetime,
        cancel: Optional[threading.Event] = None,
    ) -> dict:
        compute = self.metric_funcs[metric]
        key = fingerprint(
            self.entity,
            "statistics",
            entity_id,
            {"start_date": start, "end_date": end},
            variant=metric,
        )

        def _load() -> dict:
            _check(cancel)
            with self.session_factory() as session:
                return compute(session, entity_id, start, end, cancel)

        return self.cache.fetch_with_cache(key, STATISTICS_TTL, _load)

    def metric(self, entity_id: int, metric: str, params: DateRange) -> dict:
        if metric not in self.metric_funcs:
            raise KeyError(metric)
        start, end = resolve_range(params)
        self._ensure_exists(entity_id)
        return self._fetch(entity_id, metric, start, end)

    def bundle(self, entity_id: int, params: DateRange) -> dict:
        start, end = resolve_range(params)
        self._ensure_exists(entity_id)
        tasks = {
            name: (
                lambda cancel, name=name: self._fetch(entity_id, name, start, end, cancel)
            )
            for name in self.metric_funcs
        }
        results = run_parallel(tasks, self.max_workers)
        logger.debug(f"statistics_bundle: entity={self.entity} id={entity_id}")
        return {
            f"{self.entity}_id": entity_id,
            "start_date": start.isoformat(),
            "end_date": end.isoformat(),
            **{name: results[name] for name in self.metric_funcs},
        }


class AccountStatisticsService(_EntityStatisticsService):
    entity = "account"
    model = Account
    label = "Account"
    metric_funcs = ACCOUNT_METRIC_FUNCS


class CategoryStatisticsService(_EntityStatisticsService):
    entity = "category"
    model = Category
    label = "Category"
    metric_funcs = CATEGORY_METRIC_FUNCS


# Summaries


def period_key(value: datetime, frequency: str) -> str:
    if frequency == "daily":
        return value.strftime("%Y-%m-%d")
    if frequency == "weekly":
        iso_year, iso_week, _ = value.isocalendar()
        return f"{iso_year:04d}-W{iso_week:02d}"
    if frequency == "yearly":
        return f"{value.year:04d}"
    return _month_key(value)


def period_keys(start: datetime, end: datetime, frequency: str) -> list[str]:
    keys: list[str] = []
    day = start.date()
    last = end.date()
    while day <= last:
        key = period_key(datetime.combine(day, time.min), frequency)
        if not keys or keys[-1] != key:
            keys.append(key)
        day += timedelta(days=1)
    return keys


def apply_trend(periods: list[dict[str, Any]]) -> tuple[float, str]:
    """Annotate ascending periods with change_percent/trend; return the overall trend."""
    increasing = 0
    decreasing = 0
    total_change = 0.0
    for index, period in enumerate(periods):
        if index == 0:
            period["change_percent"] = 0.0
            period["trend"] = "stable"
            continue
        previous = periods[index - 1]["total_amount"]
        current = period["total_amount"]
        if previous == 0:
            change = 100.0 if current > 0 else 0.0
        else:
            change = (current - previous) / previous * 100
        if change > 5:
            trend = "increasing"
            increasing += 1
        elif change < -5:
            trend = "decreasing"
            decreasing += 1
        else:
            trend = "stable"
        period["change_percent"] = round(change, 2)
        period["trend"] = trend
        total_change += change

    if len(periods) <= 1:
        return 0.0, "stable"
    average = round(total_change / (len(periods) - 1), 2)
    if increasing > decreasing * 2:
        status = "increasing"
    elif decreasing > increasing * 2:
        status = "decreasing"
    elif increasing > 0 and decreasing > 0:
        status = "volatile"
    else:
        status = "stable"
    return average, status


def _empty_period(key: str) -> dict[str, Any]:
    return {
        "period": key,
        "total_amount": 0,
        "income_amount": 0,
        "expense_amount": 0,
        "transfer_amount": 0,
        "net": 0,
        "count": 0,
    }


def _bucket_rows(rows, keys: list[str], frequency: str) -> list[dict[str, Any]]:
    buckets = {key: _empty_period(key) for key in keys}
    for row in rows:
        bucket = buckets.get(period_key(row.date, frequency))
        if bucket is None:
            continue
        bucket["count"] += 1
        bucket["total_amount"] += row.amount
        if row.type == TransactionType.income:
            bucket["income_amount"] += row.amount
            bucket["net"] += row.amount
        elif row.type == TransactionType.expense:
            bucket["expense_amount"] += row.amount
            bucket["net"] -= row.amount
        else:
            bucket["transfer_amount"] += row.amount
    return [buckets[key] for key in keys]


def _trend_block(rows, keys: list[str], frequency: str) -> dict[str, Any]:
    periods = _bucket_rows(rows, keys, frequency)
    avg_change, status = apply_trend(periods)
    return {
        "periods": list(reversed(periods)),
        "avg_change": avg_change,
        "trend_status": status,
    }


class SummaryService:
    def __init__(self, session_factory: sessionmaker, cache: CacheService) -> None:
        self.session_factory = session_factory
        self.cache = cache

    def _params(self, params: SummaryParams) -> tuple[datetime, datetime, dict]:
        start, end = resolve_range(
            DateRange(start_date=params.start_date, end_date=params.end_date),
            default=DEFAULT_SUMMARY_RANGE,
        )
        key_params = params.model_dump(mode="json")
        key_params.update({"start_date": start, "end_date": end})
        return start, end, key_params

    def transactions(self, params: SummaryParams) -> dict:
        start, end, key_params = self._params(params)

        def _load() -> dict:
            with self.session_factory() as session:
                rows = _rows(
                    session,
                    start,
                    end,
                    type=params.type,
                    account_ids=params.account_ids,
                    category_ids=params.category_ids,
                )
            keys = period_keys(start, end, params.frequency)
            block = _trend_block(rows, keys, params.frequency)
            periods = block["periods"]
            return {
                "frequency": params.frequency,
                "start_date": start,
                "end_date": end,
                "totals": {
                    "count": sum(p["count"] for p in periods),
                    "income_amount": sum(p["income_amount"] for p in periods),
                    "expense_amount": sum(p["expense_amount"] for p in periods),
                    "transfer_amount": sum(p["transfer_amount"] for p in periods),
                    "net": sum(p["net"] for p in periods),
                },
                **block,
            }

        key = fingerprint("summary", "transactions", params=key_params)
        return self.cache.fetch_with_cache(key, SUMMARY_TTL, _load)

    def accounts(self, params: SummaryParams) -> dict:
        start, end, key_params = self._params(params)

        def _load() -> dict:
            with self.session_factory() as session:
                rows = _rows(
                    session,
                    start,
                    end,
                    type=params.type,
                    account_ids=params.account_ids,
                    category_ids=params.category_ids,
                )
                stmt = select(Account).where(Account.deleted_at.is_(None))
                if params.account_ids:
                    stmt = stmt.where(Account.id.in_(params.account_ids))
                accounts = list(session.scalars(stmt.order_by(Account.display_order, Account.id)))

            by_account: dict[int, list] = defaultdict(list)
            for row in rows:
                by_account[row.account_id].append(row)
                if row.destination_account_id is not None:
                    by_account[row.destination_account_id].append(row)

            keys = period_keys(start, end, params.frequency)
            data = []
            for account in accounts:
                account_rows = by_account.get(account.id, [])
                income = sum(
                    r.amount for r in account_rows if r.type == TransactionType.income
                )
                expense = sum(
                    r.amount for r in account_rows if r.type == TransactionType.expense
                )
                data.append(
                    {
                        "account_id": account.id,
                        "account_name": account.name,
                        "account_type": account.type,
                        "transaction_count": len(account_rows),
                        "income_amount": income,
                        "expense_amount": expense,
                        "net": sum(_effect_on(r, account.id) for r in account_rows),
                        **_trend_block(account_rows, keys, params.frequency),
                    }
                )
            return {
                "frequency": params.frequency,
                "start_date": start,
                "end_date": end,
                "data": data,
            }

        key = fingerprint("summary", "accounts", params=key_params)
        return self.cache.fetch_with_cache(key, SUMMARY_TTL, _load)

    def categories(self, params: SummaryParams) -> dict:
        start, end, key_params = self._params(params)

        def _load() -> dict:
            with self.session_factory() as session:
                rows = _rows(
                    session,
                    start,
                    end,
                    type=params.type,
                    account_ids=params.account_ids,
                    category_ids=params.category_ids,
                )
                stmt = select(Category).where(Category.deleted_at.is_(None))
                if params.category_ids:
                    stmt = stmt.where(Category.id.in_(params.category_ids))
                if params.type is not None:
                    stmt = stmt.where(Category.type == params.type)
                categories = list(
                    session.scalars(stmt.order_by(Category.display_order, Category.id))
                )

            by_category: dict[int, list] = defaultdict(list)
            for row in rows:
                by_category[row.category_id].append(row)

            keys = period_keys(start, end, params.frequency)
            data = []
            for category in categories:
                category_rows = by_category.get(category.id, [])
                data.append(
                    {
                        "category_id": category.id,
                        "category_name": category.name,
                        "category_type": category.type.value,
                        "transaction_count": len(category_rows),
                        "total_amount": sum(r.amount for r in category_rows),
                        **_trend_block(category_rows, keys, params.frequency),
                    }
                )
            return {
                "frequency": params.frequency,
                "start_date": start,
                "end_date": end,
                "data": data,
            }

        key = fingerprint("summary", "categories", params=key_params)
        return self.cache.fetch_with_cache(key, SUMMARY_TTL, _load)
