import logging
from datetime import datetime, time, timedelta
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from errors import ConflictError
from models import Account, AccountType, BudgetRecurrence, TransactionType
from schemas import (
    AccountIn,
    BudgetTemplateIn,
    CategoryIn,
    TransactionIn,
    TransactionTemplateIn,
)
from services import (
    AccountService,
    BudgetTemplateService,
    CategoryService,
    Invalidator,
    TagService,
    TransactionService,
    TransactionTemplateService,
    utcnow,
)

logger = logging.getLogger(__name__)

SEED_ACCOUNTS = [
    ("Main Wallet", AccountType.expense, 1_500_000, "wallet", "#4CAF50"),
    ("Savings", AccountType.income, 10_000_000, "piggy-bank", "#2196F3"),
    ("Credit Card", AccountType.expense, 0, "credit-card", "#FF9800"),
    ("Salary Account", AccountType.income, 2_000_000, "building", "#9C27B0"),
]

SEED_CATEGORIES = [
    ("Food & Drinks", TransactionType.expense),
    ("Transport", TransactionType.expense),
    ("Entertainment", TransactionType.expense),
    ("Bills", TransactionType.expense),
    ("Salary", TransactionType.income),
    ("Freelance", TransactionType.income),
    ("Transfer", TransactionType.transfer),
]

SEED_TAGS = ["important", "recurring", "business", "personal", "online"]

# (days ago, type, amount, account, category, destination, note, tags)
SEED_TRANSACTIONS = [
    (1, TransactionType.expense, 45_000, "Main Wallet", "Food & Drinks", None, "Lunch", ["personal"]),
    (2, TransactionType.expense, 25_000, "Main Wallet", "Transport", None, "Ride to the office", []),
    (3, TransactionType.expense, 350_000, "Credit Card", "Bills", None, "Electricity", ["important", "recurring"]),
    (5, TransactionType.income, 8_500_000, "Salary Account", "Salary", None, "Monthly salary", ["recurring"]),
    (6, TransactionType.transfer, 1_000_000, "Salary Account", "Transfer", "Savings", "Move to savings", []),
    (9, TransactionType.expense, 120_000, "Credit Card", "Entertainment", None, "Cinema", ["personal", "online"]),
    (12, TransactionType.income, 2_000_000, "Savings", "Freelance", None, "Website project", ["business"]),
]


def seed_development(
    session: Session, invalidator: Optional[Invalidator] = None, geo=None
) -> dict[str, Any]:
    """Populate an empty database with illustrative data for local work."""
    existing = session.scalar(
        select(func.count(Account.id)).where(Account.deleted_at.is_(None))
    )
    if existing:
        raise ConflictError("Database already contains accounts; refusing to seed")

    accounts = {}
    for order, (name, account_type, amount, icon, color) in enumerate(SEED_ACCOUNTS):
        accounts[name] = AccountService(session, invalidator).create(
            AccountIn(
                name=name,
                type=account_type,
                amount=amount,
                icon=icon,
                icon_color=color,
                display_order=order,
            )
        )

    categories = {}
    for order, (name, category_type) in enumerate(SEED_CATEGORIES):
        categories[name] = CategoryService(session, invalidator).create(
            CategoryIn(name=name, type=category_type, display_order=order)
        )

    tags = {name: TagService(session, invalidator).create(name) for name in SEED_TAGS}

    today = datetime.combine(utcnow().date(), time(12, 0))
    engine = TransactionService(session, invalidator, geo)
    created = 0
    for days_ago, txn_type, amount, account, category, destination, note, tag_names in SEED_TRANSACTIONS:
        engine.create(
            TransactionIn(
                type=txn_type,
                date=today - timedelta(days=days_ago),
                amount=amount,
                account_id=accounts[account].id,
                category_id=categories[category].id,
                destination_account_id=accounts[destination].id if destination else None,
                note=note,
                tag_ids=[tags[name].id for name in tag_names],
            )
        )
        created += 1

    TransactionTemplateService(session, invalidator).create(
        TransactionTemplateIn(
            name="Internet subscription",
            type=TransactionType.expense,
            amount=300_000,
            account_id=accounts["Credit Card"].id,
            category_id=categories["Bills"].id,
            recurrence="monthly",
            start_date=today,
        )
    )
    BudgetTemplateService(session, invalidator).create(
        BudgetTemplateIn(
            name="Food budget",
            category_id=categories["Food & Drinks"].id,
            amount_limit=2_000_000,
            recurrence=BudgetRecurrence.monthly,
            start_date=today.replace(day=1),
        )
    )

    logger.info(
        f"seed_development: accounts={len(accounts)} categories={len(categories)} "
        f"tags={len(tags)} transactions={created}"
    )
    return {
        "accounts": len(accounts),
        "categories": len(categories),
        "tags": len(tags),
        "transactions": created,
        "transaction_templates": 1,
        "budget_templates": 1,
    }
