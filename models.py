from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum as SAEnum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"
    transfer = "transfer"


class AccountType(str, Enum):
    income = "income"
    expense = "expense"


class BudgetRecurrence(str, Enum):
    none = "none"
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"


class TemplateRecurrence(str, Enum):
    none = "none"
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class SoftDeleteMixin:
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    @property
    def is_live(self) -> bool:
        return self.deleted_at is None


class Account(Base, TimestampMixin, SoftDeleteMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    # Kept as plain text; legacy rows may carry types outside AccountType.
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    note: Mapped[Optional[str]] = mapped_column(Text)
    amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    icon: Mapped[Optional[str]] = mapped_column(String(50))
    icon_color: Mapped[Optional[str]] = mapped_column(String(20))
    display_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    archived_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    __table_args__ = (Index("ix_accounts_deleted_order", "deleted_at", "display_order"),)


class Category(Base, TimestampMixin, SoftDeleteMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    note: Mapped[Optional[str]] = mapped_column(Text)
    display_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="category"
    )


class Tag(Base, TimestampMixin, SoftDeleteMixin):
    __tablename__ = "tags"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(50), nullable=False)

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", secondary="transaction_tags", back_populates="tags"
    )


transaction_tags = Table(
    "transaction_tags",
    Base.metadata,
    Column("transaction_id", Integer, ForeignKey("transactions.id"), primary_key=True),
    Column("tag_id", Integer, ForeignKey("tags.id"), primary_key=True),
)


class Transaction(Base, TimestampMixin, SoftDeleteMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    destination_account_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("accounts.id")
    )
    note: Mapped[Optional[str]] = mapped_column(Text)
    latitude: Mapped[Optional[float]] = mapped_column(Float)
    longitude: Mapped[Optional[float]] = mapped_column(Float)

    account: Mapped["Account"] = relationship("Account", foreign_keys=[account_id])
    destination_account: Mapped[Optional["Account"]] = relationship(
        "Account", foreign_keys=[destination_account_id]
    )
    category: Mapped["Category"] = relationship(
        "Category", back_populates="transactions"
    )
    tags: Mapped[list["Tag"]] = relationship(
        "Tag", secondary="transaction_tags", back_populates="transactions"
    )

    __table_args__ = (
        Index("ix_transactions_account_date", "account_id", "date"),
        Index("ix_transactions_destination_date", "destination_account_id", "date"),
        Index("ix_transactions_category_date", "category_id", "date"),
        Index("ix_transactions_type_date", "type", "date"),
        CheckConstraint("amount > 0", name="ck_transactions_amount_positive"),
        CheckConstraint(
            "(latitude IS NULL) = (longitude IS NULL)",
            name="ck_transactions_coordinates_paired",
        ),
    )


class TransactionRelation(Base, TimestampMixin, SoftDeleteMixin):
    """Undirected link between two transactions.

    Stored once per pair with ``transaction_id < related_transaction_id``.
    """

    __tablename__ = "transaction_relations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    transaction_id: Mapped[int] = mapped_column(
        ForeignKey("transactions.id"), nullable=False
    )
    related_transaction_id: Mapped[int] = mapped_column(
        ForeignKey("transactions.id"), nullable=False
    )

    __table_args__ = (
        UniqueConstraint(
            "transaction_id", "related_transaction_id", name="uq_transaction_relation"
        ),
        CheckConstraint(
            "transaction_id < related_transaction_id",
            name="ck_transaction_relation_ordered",
        ),
    )


class BudgetTemplate(Base, TimestampMixin, SoftDeleteMixin):
    __tablename__ = "budget_templates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    account_id: Mapped[Optional[int]] = mapped_column(ForeignKey("accounts.id"))
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    amount_limit: Mapped[int] = mapped_column(Integer, nullable=False)
    recurrence: Mapped[BudgetRecurrence] = mapped_column(
        SAEnum(BudgetRecurrence), nullable=False, default=BudgetRecurrence.none
    )
    start_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_date: Mapped[Optional[datetime]] = mapped_column(DateTime)
    note: Mapped[Optional[str]] = mapped_column(Text)
    last_executed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    budgets: Mapped[list["Budget"]] = relationship("Budget", back_populates="template")

    __table_args__ = (
        CheckConstraint("amount_limit > 0", name="ck_budget_templates_limit_positive"),
    )


class Budget(Base, TimestampMixin, SoftDeleteMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    template_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("budget_templates.id")
    )
    name: Mapped[str] = mapped_column(String(160), nullable=False)
    account_id: Mapped[Optional[int]] = mapped_column(ForeignKey("accounts.id"))
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    amount_limit: Mapped[int] = mapped_column(Integer, nullable=False)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    note: Mapped[Optional[str]] = mapped_column(Text)

    template: Mapped[Optional["BudgetTemplate"]] = relationship(
        "BudgetTemplate", back_populates="budgets"
    )

    __table_args__ = (
        Index("ix_budgets_period", "period_start", "period_end"),
        CheckConstraint("amount_limit > 0", name="ck_budgets_limit_positive"),
        CheckConstraint("period_start <= period_end", name="ck_budgets_period_order"),
    )


class TransactionTemplate(Base, TimestampMixin, SoftDeleteMixin):
    __tablename__ = "transaction_templates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    destination_account_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("accounts.id")
    )
    recurrence: Mapped[TemplateRecurrence] = mapped_column(
        SAEnum(TemplateRecurrence), nullable=False, default=TemplateRecurrence.none
    )
    start_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_date: Mapped[Optional[datetime]] = mapped_column(DateTime)
    installment_count: Mapped[Optional[int]] = mapped_column(Integer)
    installment_current: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    note: Mapped[Optional[str]] = mapped_column(Text)
    last_executed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_transaction_templates_amount_positive"),
    )


transaction_template_relations = Table(
    "transaction_template_relations",
    Base.metadata,
    Column(
        "template_id",
        Integer,
        ForeignKey("transaction_templates.id"),
        primary_key=True,
    ),
    Column("transaction_id", Integer, ForeignKey("transactions.id"), primary_key=True),
    Column("created_at", DateTime, nullable=False, default=datetime.utcnow),
)
