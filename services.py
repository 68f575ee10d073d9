from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from datetime import date, datetime, timezone
from typing import TYPE_CHECKING, Any, Optional, Protocol

from sqlalchemy import and_, delete, func, insert, or_, select
from sqlalchemy.orm import Session, joinedload

from cache import transaction_invalidations
from errors import (
    ConflictError,
    CoordinatePairing,
    DomainRuleViolation,
    DuplicateReorderID,
    InvalidAccountTypeForExpense,
    InvalidReference,
    MissingDestinationAccount,
    NoFieldsToUpdate,
    NotFoundError,
    TransferSameAccount,
    TypeCategoryMismatch,
    ValidationFailed,
)
from models import (
    Account,
    AccountType,
    Budget,
    BudgetTemplate,
    Category,
    Tag,
    Transaction,
    TransactionRelation,
    TransactionTemplate,
    TransactionType,
    transaction_tags,
    transaction_template_relations,
)
from schemas import (
    AccountIn,
    AccountPatch,
    BudgetIn,
    BudgetPatch,
    BudgetTemplateIn,
    BudgetTemplatePatch,
    CategoryIn,
    CategoryPatch,
    ListParams,
    TransactionFilters,
    TransactionIn,
    TransactionPatch,
    TransactionTemplateIn,
    TransactionTemplatePatch,
)

if TYPE_CHECKING:  # pragma: no cover
    from geo_index import GeoIndexManager

logger = logging.getLogger(__name__)


class Invalidator(Protocol):
    def publish(self, entity: str, fields: Optional[dict[str, object]] = None) -> None:
        ...


def utcnow() -> datetime:
    return datetime.utcnow()


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


@dataclass
class Page:
    items: list[Any]
    page: int
    limit: int
    total: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


def paginate(
    session: Session,
    stmt,
    model,
    params: ListParams,
    allowed: dict[str, Any],
) -> Page:
    column = allowed.get(params.order_by)
    if column is None:
        order = model.created_at.desc()
    elif params.order_direction == "asc":
        order = column.asc()
    else:
        order = column.desc()

    count_stmt = select(func.count()).select_from(stmt.order_by(None).subquery())
    total = int(session.execute(count_stmt).scalar_one() or 0)
    rows = (
        session.scalars(
            stmt.order_by(order, model.id.desc())
            .offset(params.offset)
            .limit(params.limit)
        )
        .unique()
        .all()
    )
    return Page(items=list(rows), page=params.page, limit=params.limit, total=total)


def get_live(session: Session, model, row_id: int, label: str):
    row = session.scalar(
        select(model).where(model.id == row_id, model.deleted_at.is_(None))
    )
    if row is None:
        raise NotFoundError(label, row_id)
    return row


def _patch_data(patch) -> dict[str, Any]:
    data = patch.model_dump(exclude_unset=True)
    if not data:
        raise NoFieldsToUpdate()
    return data


def publish_invalidation(
    invalidator: Optional[Invalidator], entity: str, **fields: object
) -> None:
    if invalidator is None:
        return
    try:
        invalidator.publish(entity, fields)
    except Exception as exc:
        logger.warning(f"invalidation_publish_failed: entity={entity} error={exc}")


def _reorder(session: Session, model, ids: list[int], label: str) -> list[Any]:
    seen: set[int] = set()
    for item_id in ids:
        if item_id in seen:
            raise DuplicateReorderID(item_id)
        seen.add(item_id)
    rows = session.scalars(
        select(model).where(model.id.in_(ids), model.deleted_at.is_(None))
    ).all()
    by_id = {row.id: row for row in rows}
    for item_id in ids:
        if item_id not in by_id:
            raise NotFoundError(label, item_id)
    for position, item_id in enumerate(ids):
        by_id[item_id].display_order = position
    return [by_id[item_id] for item_id in ids]


def check_account_type_for_expense(account_type: object) -> None:
    value = account_type.value if isinstance(account_type, AccountType) else account_type
    if value not in (AccountType.expense.value, AccountType.income.value):
        raise InvalidAccountTypeForExpense(str(value))


def check_coordinates(latitude: Optional[float], longitude: Optional[float]) -> None:
    if (latitude is None) != (longitude is None):
        raise CoordinatePairing()


@dataclass(frozen=True)
class TransactionState:
    """The fields of a transaction that drive balances and validation."""

    type: TransactionType
    amount: int
    account_id: int
    category_id: int
    destination_account_id: Optional[int] = None

    @classmethod
    def of(cls, row) -> "TransactionState":
        return cls(
            type=TransactionType(row.type),
            amount=row.amount,
            account_id=row.account_id,
            category_id=row.category_id,
            destination_account_id=row.destination_account_id,
        )

    def merged(self, data: dict[str, Any]) -> "TransactionState":
        fields = {
            name: data[name]
            for name in (
                "type",
                "amount",
                "account_id",
                "category_id",
                "destination_account_id",
            )
            if name in data
        }
        state = replace(self, **fields)
        if state.type != TransactionType.transfer and state.destination_account_id:
            state = replace(state, destination_account_id=None)
        return state

    def signed_effects(self) -> dict[int, int]:
        if self.type == TransactionType.income:
            return {self.account_id: self.amount}
        if self.type == TransactionType.expense:
            return {self.account_id: -self.amount}
        effects = {self.account_id: -self.amount}
        if self.destination_account_id is not None:
            effects[self.destination_account_id] = (
                effects.get(self.destination_account_id, 0) + self.amount
            )
        return effects

    @property
    def account_ids(self) -> set[int]:
        ids = {self.account_id}
        if self.destination_account_id is not None:
            ids.add(self.destination_account_id)
        return ids


def validate_references(session: Session, state: TransactionState) -> None:
    account = session.scalar(
        select(Account).where(
            Account.id == state.account_id, Account.deleted_at.is_(None)
        )
    )
    if account is None:
        raise InvalidReference("Account", state.account_id)

    if state.type == TransactionType.transfer:
        if state.destination_account_id is None:
            raise MissingDestinationAccount()
        if state.destination_account_id == state.account_id:
            raise TransferSameAccount()
        destination = session.scalar(
            select(Account).where(
                Account.id == state.destination_account_id,
                Account.deleted_at.is_(None),
            )
        )
        if destination is None:
            raise InvalidReference("Account", state.destination_account_id)

    category = session.scalar(
        select(Category).where(
            Category.id == state.category_id, Category.deleted_at.is_(None)
        )
    )
    if category is None:
        raise InvalidReference("Category", state.category_id)
    if TransactionType(category.type) != state.type:
        raise TypeCategoryMismatch(state.type.value, TransactionType(category.type).value)

    if state.type == TransactionType.expense:
        check_account_type_for_expense(account.type)


ACCOUNT_ORDERING = {
    "name": Account.name,
    "type": Account.type,
    "amount": Account.amount,
    "display_order": Account.display_order,
    "created_at": Account.created_at,
    "updated_at": Account.updated_at,
}


class AccountService:
    def __init__(
        self, session: Session, invalidator: Optional[Invalidator] = None
    ) -> None:
        self.session = session
        self.invalidator = invalidator

    def list(
        self,
        params: ListParams,
        *,
        name: Optional[str] = None,
        type: Optional[AccountType] = None,
        archived: Optional[bool] = None,
    ) -> Page:
        stmt = select(Account).where(Account.deleted_at.is_(None))
        if name:
            stmt = stmt.where(func.lower(Account.name).like(f"%{name.lower()}%"))
        if type is not None:
            stmt = stmt.where(Account.type == type.value)
        if archived is True:
            stmt = stmt.where(Account.archived_at.isnot(None))
        elif archived is False:
            stmt = stmt.where(Account.archived_at.is_(None))
        return paginate(self.session, stmt, Account, params, ACCOUNT_ORDERING)

    def get(self, account_id: int) -> Account:
        return get_live(self.session, Account, account_id, "Account")

    def create(self, data: AccountIn) -> Account:
        account = Account(
            name=data.name.strip(),
            type=data.type.value,
            note=data.note,
            amount=data.amount,
            icon=data.icon,
            icon_color=data.icon_color,
            display_order=data.display_order,
        )
        self.session.add(account)
        self.session.commit()
        self.session.refresh(account)
        publish_invalidation(self.invalidator, "account", account_id=account.id)
        return account

    def update(self, account_id: int, patch: AccountPatch) -> Account:
        data = _patch_data(patch)
        account = self.get(account_id)
        if "archived" in data:
            archived = data.pop("archived")
            if archived and account.archived_at is None:
                account.archived_at = utcnow()
            elif archived is False:
                account.archived_at = None
        for field in ("name", "type", "note", "icon", "icon_color", "display_order"):
            if field not in data:
                continue
            value = data[field]
            if field in ("name", "type", "display_order") and value is None:
                raise ValidationFailed(f"{field} cannot be null")
            if field == "type":
                value = AccountType(value).value
            setattr(account, field, value)
        account.updated_at = utcnow()
        self.session.commit()
        self.session.refresh(account)
        publish_invalidation(self.invalidator, "account", account_id=account.id)
        return account

    def delete(self, account_id: int) -> None:
        account = self.get(account_id)
        account.deleted_at = utcnow()
        self.session.commit()
        publish_invalidation(self.invalidator, "account", account_id=account_id)

    def reorder(self, ids: list[int]) -> list[Account]:
        accounts = _reorder(self.session, Account, ids, "Account")
        self.session.commit()
        publish_invalidation(self.invalidator, "account")
        return accounts


CATEGORY_ORDERING = {
    "name": Category.name,
    "type": Category.type,
    "display_order": Category.display_order,
    "created_at": Category.created_at,
    "updated_at": Category.updated_at,
}


class CategoryService:
    def __init__(
        self, session: Session, invalidator: Optional[Invalidator] = None
    ) -> None:
        self.session = session
        self.invalidator = invalidator

    def list(
        self,
        params: ListParams,
        *,
        name: Optional[str] = None,
        type: Optional[TransactionType] = None,
    ) -> Page:
        stmt = select(Category).where(Category.deleted_at.is_(None))
        if name:
            stmt = stmt.where(func.lower(Category.name).like(f"%{name.lower()}%"))
        if type is not None:
            stmt = stmt.where(Category.type == type)
        return paginate(self.session, stmt, Category, params, CATEGORY_ORDERING)

    def get(self, category_id: int) -> Category:
        return get_live(self.session, Category, category_id, "Category")

    def create(self, data: CategoryIn) -> Category:
        category = Category(
            name=data.name.strip(),
            type=data.type,
            note=data.note,
            display_order=data.display_order,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        publish_invalidation(self.invalidator, "category", category_id=category.id)
        return category

    def update(self, category_id: int, patch: CategoryPatch) -> Category:
        data = _patch_data(patch)
        category = self.get(category_id)
        for field in ("name", "type", "display_order"):
            if field in data and data[field] is None:
                raise ValidationFailed(f"{field} cannot be null")
        new_type = data.get("type")
        if new_type is not None and TransactionType(new_type) != category.type:
            in_use = self.session.scalar(
                select(func.count(Transaction.id)).where(
                    Transaction.category_id == category.id,
                    Transaction.deleted_at.is_(None),
                )
            )
            if in_use:
                raise DomainRuleViolation(
                    "Category type cannot change while live transactions use it"
                )
        for field, value in data.items():
            setattr(category, field, value)
        category.updated_at = utcnow()
        self.session.commit()
        self.session.refresh(category)
        publish_invalidation(self.invalidator, "category", category_id=category.id)
        return category

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        category.deleted_at = utcnow()
        self.session.commit()
        publish_invalidation(self.invalidator, "category", category_id=category_id)

    def reorder(self, ids: list[int]) -> list[Category]:
        categories = _reorder(self.session, Category, ids, "Category")
        self.session.commit()
        publish_invalidation(self.invalidator, "category")
        return categories


TAG_ORDERING = {"name": Tag.name, "created_at": Tag.created_at}


class TagService:
    def __init__(
        self, session: Session, invalidator: Optional[Invalidator] = None
    ) -> None:
        self.session = session
        self.invalidator = invalidator

    def list(self, params: ListParams, *, name: Optional[str] = None) -> Page:
        stmt = select(Tag).where(Tag.deleted_at.is_(None))
        if name:
            stmt = stmt.where(Tag.name.like(f"%{name.strip().lower()}%"))
        return paginate(self.session, stmt, Tag, params, TAG_ORDERING)

    def get(self, tag_id: int) -> Tag:
        return get_live(self.session, Tag, tag_id, "Tag")

    def create(self, name: str) -> Tag:
        clean_name = name.strip().lower()
        if not clean_name:
            raise ValidationFailed("Tag name cannot be empty")

        stmt = select(Tag).where(Tag.name == clean_name, Tag.deleted_at.is_(None))
        if self.session.scalar(stmt):
            raise ConflictError(f"Tag {clean_name} already exists")

        tag = Tag(name=clean_name)
        self.session.add(tag)
        self.session.commit()
        self.session.refresh(tag)
        publish_invalidation(self.invalidator, "tag")
        return tag

    def delete(self, tag_id: int) -> None:
        tag = self.get(tag_id)
        self.session.execute(
            delete(transaction_tags).where(transaction_tags.c.tag_id == tag.id)
        )
        tag.deleted_at = utcnow()
        self.session.commit()
        publish_invalidation(self.invalidator, "tag")
        publish_invalidation(self.invalidator, "transaction")


TRANSACTION_ORDERING = {
    "date": Transaction.date,
    "amount": Transaction.amount,
    "type": Transaction.type,
    "created_at": Transaction.created_at,
    "updated_at": Transaction.updated_at,
}

_REQUIRED_TRANSACTION_FIELDS = ("type", "date", "amount", "account_id", "category_id")


class TransactionService:
    """Transaction CRUD that keeps account balances equal to their live effects.

    Every write reverts the stored effect before applying the new one; there
    is no differential path. Public writes commit or roll back as a unit,
    the ``*_in_session`` primitives leave the commit to the caller.
    """

    def __init__(
        self,
        session: Session,
        invalidator: Optional[Invalidator] = None,
        geo: Optional["GeoIndexManager"] = None,
    ) -> None:
        self.session = session
        self.invalidator = invalidator
        self.geo = geo

    # Balance primitives

    def _lock_accounts(self, account_ids: set[int]) -> dict[int, Account]:
        if not account_ids:
            return {}
        stmt = (
            select(Account)
            .where(Account.id.in_(sorted(account_ids)))
            .order_by(Account.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return {account.id: account for account in self.session.scalars(stmt)}

    def _shift_balances(self, state: TransactionState, sign: int) -> None:
        accounts = self._lock_accounts(state.account_ids)
        for account_id, delta in state.signed_effects().items():
            account = accounts.get(account_id)
            if account is None:
                raise InvalidReference("Account", account_id)
            account.amount += sign * delta
            account.updated_at = utcnow()
        self.session.flush()

    def apply_effect(self, state: TransactionState) -> None:
        self._shift_balances(state, 1)

    def revert_effect(self, state: TransactionState) -> None:
        self._shift_balances(state, -1)

    # Reads

    def get(self, transaction_id: int) -> Transaction:
        stmt = (
            select(Transaction)
            .options(
                joinedload(Transaction.account),
                joinedload(Transaction.destination_account),
                joinedload(Transaction.category),
                joinedload(Transaction.tags),
            )
            .where(
                Transaction.id == transaction_id, Transaction.deleted_at.is_(None)
            )
        )
        txn = self.session.scalars(stmt).unique().first()
        if txn is None:
            raise NotFoundError("Transaction", transaction_id)
        return txn

    def list(self, params: ListParams, filters: Optional[TransactionFilters] = None) -> Page:
        filters = filters or TransactionFilters()
        stmt = (
            select(Transaction)
            .options(
                joinedload(Transaction.account),
                joinedload(Transaction.destination_account),
                joinedload(Transaction.category),
                joinedload(Transaction.tags),
            )
            .where(Transaction.deleted_at.is_(None))
        )
        if filters.type is not None:
            stmt = stmt.where(Transaction.type == filters.type)
        if filters.account_ids:
            stmt = stmt.where(
                or_(
                    Transaction.account_id.in_(filters.account_ids),
                    Transaction.destination_account_id.in_(filters.account_ids),
                )
            )
        if filters.category_ids:
            stmt = stmt.where(Transaction.category_id.in_(filters.category_ids))
        if filters.tag_ids:
            tagged = select(transaction_tags.c.transaction_id).where(
                transaction_tags.c.tag_id.in_(filters.tag_ids)
            )
            stmt = stmt.where(Transaction.id.in_(tagged))
        if filters.start_date is not None:
            stmt = stmt.where(Transaction.date >= to_naive_utc(filters.start_date))
        if filters.end_date is not None:
            stmt = stmt.where(Transaction.date <= to_naive_utc(filters.end_date))
        if filters.min_amount is not None:
            stmt = stmt.where(Transaction.amount >= filters.min_amount)
        if filters.max_amount is not None:
            stmt = stmt.where(Transaction.amount <= filters.max_amount)
        if filters.latitude is not None or filters.longitude is not None:
            check_coordinates(filters.latitude, filters.longitude)
            if self.geo is None:
                raise ValidationFailed("Proximity search is not available")
            nearby = self.geo.search(
                filters.latitude, filters.longitude, filters.radius_meters or 1000.0
            )
            stmt = stmt.where(Transaction.id.in_(nearby or [-1]))
        return paginate(self.session, stmt, Transaction, params, TRANSACTION_ORDERING)

    # Writes

    def _load_for_write(self, transaction_id: int) -> Transaction:
        return get_live(self.session, Transaction, transaction_id, "Transaction")

    def create_in_session(self, data: TransactionIn) -> Transaction:
        check_coordinates(data.latitude, data.longitude)
        state = TransactionState(
            type=data.type,
            amount=data.amount,
            account_id=data.account_id,
            category_id=data.category_id,
            destination_account_id=data.destination_account_id,
        ).merged({})
        validate_references(self.session, state)

        txn = Transaction(
            type=state.type,
            date=to_naive_utc(data.date),
            amount=state.amount,
            account_id=state.account_id,
            category_id=state.category_id,
            destination_account_id=state.destination_account_id,
            note=data.note,
            latitude=data.latitude,
            longitude=data.longitude,
        )
        if data.tag_ids:
            tags = self.session.scalars(
                select(Tag).where(
                    Tag.id.in_(set(data.tag_ids)), Tag.deleted_at.is_(None)
                )
            ).all()
            found = {tag.id for tag in tags}
            for tag_id in data.tag_ids:
                if tag_id not in found:
                    raise InvalidReference("Tag", tag_id)
            txn.tags = list(tags)
        self.session.add(txn)
        self.session.flush()
        self.apply_effect(state)
        return txn

    def update_in_session(
        self, transaction_id: int, data: dict[str, Any]
    ) -> tuple[Transaction, TransactionState, TransactionState]:
        if not data:
            raise NoFieldsToUpdate()
        for field in _REQUIRED_TRANSACTION_FIELDS:
            if field in data and data[field] is None:
                raise ValidationFailed(f"{field} cannot be null")

        txn = self._load_for_write(transaction_id)
        before = TransactionState.of(txn)
        after = before.merged(data)
        self._lock_accounts(before.account_ids | after.account_ids)

        latitude = data["latitude"] if "latitude" in data else txn.latitude
        longitude = data["longitude"] if "longitude" in data else txn.longitude
        check_coordinates(latitude, longitude)

        self.revert_effect(before)
        validate_references(self.session, after)
        self.apply_effect(after)

        txn.type = after.type
        txn.amount = after.amount
        txn.account_id = after.account_id
        txn.category_id = after.category_id
        txn.destination_account_id = after.destination_account_id
        txn.latitude = latitude
        txn.longitude = longitude
        if "date" in data:
            txn.date = to_naive_utc(data["date"])
        if "note" in data:
            txn.note = data["note"]
        txn.updated_at = utcnow()
        self.session.flush()
        return txn, before, after

    def delete_in_session(self, transaction_id: int) -> tuple[Transaction, TransactionState]:
        txn = self._load_for_write(transaction_id)
        state = TransactionState.of(txn)
        self.revert_effect(state)
        txn.deleted_at = utcnow()
        self.session.flush()
        return txn, state

    def create(self, data: TransactionIn) -> Transaction:
        try:
            txn = self.create_in_session(data)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        state = TransactionState.of(txn)
        self.after_commit([state])
        self.sync_geo(txn)
        logger.info(f"transaction_created: id={txn.id} type={txn.type.value}")
        return self.get(txn.id)

    def update(self, transaction_id: int, patch: TransactionPatch) -> Transaction:
        data = _patch_data(patch)
        try:
            txn, before, after = self.update_in_session(transaction_id, data)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        self.after_commit([before, after])
        self.sync_geo(txn)
        return self.get(transaction_id)

    def delete(self, transaction_id: int) -> None:
        try:
            txn, state = self.delete_in_session(transaction_id)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        self.after_commit([state])
        self.sync_geo(txn)

    def after_commit(self, states: list[TransactionState]) -> None:
        account_ids: set[int] = set()
        category_ids: set[int] = set()
        for state in states:
            account_ids |= state.account_ids
            category_ids.add(state.category_id)
        for entity, fields in transaction_invalidations(account_ids, category_ids):
            publish_invalidation(self.invalidator, entity, **fields)

    def sync_geo(self, txn: Transaction) -> None:
        if self.geo is None:
            return
        try:
            if txn.deleted_at is None and txn.latitude is not None:
                self.geo.update(txn.id, txn.latitude, txn.longitude)
            else:
                self.geo.remove(txn.id)
        except Exception as exc:
            logger.warning(f"geo_sync_failed: transaction_id={txn.id} error={exc}")

    # Tags

    def list_tags(self, transaction_id: int) -> list[Tag]:
        self._load_for_write(transaction_id)
        stmt = (
            select(Tag)
            .join(transaction_tags, transaction_tags.c.tag_id == Tag.id)
            .where(
                transaction_tags.c.transaction_id == transaction_id,
                Tag.deleted_at.is_(None),
            )
            .order_by(Tag.name)
        )
        return list(self.session.scalars(stmt).all())

    def add_tag(self, transaction_id: int, tag_id: int) -> Tag:
        self._load_for_write(transaction_id)
        tag = get_live(self.session, Tag, tag_id, "Tag")
        exists = self.session.execute(
            select(transaction_tags.c.tag_id).where(
                transaction_tags.c.transaction_id == transaction_id,
                transaction_tags.c.tag_id == tag_id,
            )
        ).first()
        if exists:
            raise ConflictError(f"Tag {tag_id} already attached to transaction")
        self.session.execute(
            insert(transaction_tags).values(
                transaction_id=transaction_id, tag_id=tag_id
            )
        )
        self.session.commit()
        publish_invalidation(self.invalidator, "transaction")
        return tag

    def remove_tag(self, transaction_id: int, tag_id: int) -> None:
        self._load_for_write(transaction_id)
        result = self.session.execute(
            delete(transaction_tags).where(
                transaction_tags.c.transaction_id == transaction_id,
                transaction_tags.c.tag_id == tag_id,
            )
        )
        if not result.rowcount:
            self.session.rollback()
            raise NotFoundError("Transaction tag", tag_id)
        self.session.commit()
        publish_invalidation(self.invalidator, "transaction")

    # Relations

    @staticmethod
    def _pair(a: int, b: int) -> tuple[int, int]:
        return (a, b) if a < b else (b, a)

    def _relation(self, transaction_id: int, related_id: int) -> Optional[TransactionRelation]:
        low, high = self._pair(transaction_id, related_id)
        return self.session.scalar(
            select(TransactionRelation).where(
                TransactionRelation.transaction_id == low,
                TransactionRelation.related_transaction_id == high,
            )
        )

    def list_relations(self, transaction_id: int, params: ListParams) -> Page:
        self._load_for_write(transaction_id)
        forward = select(TransactionRelation.related_transaction_id).where(
            TransactionRelation.transaction_id == transaction_id,
            TransactionRelation.deleted_at.is_(None),
        )
        backward = select(TransactionRelation.transaction_id).where(
            TransactionRelation.related_transaction_id == transaction_id,
            TransactionRelation.deleted_at.is_(None),
        )
        stmt = select(Transaction).where(
            Transaction.deleted_at.is_(None),
            or_(Transaction.id.in_(forward), Transaction.id.in_(backward)),
        )
        return paginate(self.session, stmt, Transaction, params, TRANSACTION_ORDERING)

    def get_relation(self, transaction_id: int, related_id: int) -> Transaction:
        relation = self._relation(transaction_id, related_id)
        if relation is None or relation.deleted_at is not None:
            raise NotFoundError("Transaction relation", related_id)
        return self.get(related_id)

    def create_relation(self, transaction_id: int, related_id: int) -> Transaction:
        if transaction_id == related_id:
            raise ValidationFailed("A transaction cannot be related to itself")
        self._load_for_write(transaction_id)
        related = self._load_for_write(related_id)
        relation = self._relation(transaction_id, related_id)
        if relation is not None and relation.deleted_at is None:
            raise ConflictError("Transactions are already related")
        if relation is None:
            low, high = self._pair(transaction_id, related_id)
            self.session.add(
                TransactionRelation(transaction_id=low, related_transaction_id=high)
            )
        else:
            relation.deleted_at = None
            relation.updated_at = utcnow()
        self.session.commit()
        publish_invalidation(self.invalidator, "transaction")
        return related

    def delete_relation(self, transaction_id: int, related_id: int) -> None:
        relation = self._relation(transaction_id, related_id)
        if relation is None or relation.deleted_at is not None:
            raise NotFoundError("Transaction relation", related_id)
        relation.deleted_at = utcnow()
        self.session.commit()
        publish_invalidation(self.invalidator, "transaction")


def _check_scope_refs(
    session: Session, account_id: Optional[int], category_id: Optional[int]
) -> None:
    if account_id is not None:
        if session.scalar(
            select(Account.id).where(
                Account.id == account_id, Account.deleted_at.is_(None)
            )
        ) is None:
            raise InvalidReference("Account", account_id)
    if category_id is not None:
        if session.scalar(
            select(Category.id).where(
                Category.id == category_id, Category.deleted_at.is_(None)
            )
        ) is None:
            raise InvalidReference("Category", category_id)


BUDGET_ORDERING = {
    "name": Budget.name,
    "amount_limit": Budget.amount_limit,
    "period_start": Budget.period_start,
    "period_end": Budget.period_end,
    "created_at": Budget.created_at,
}


class BudgetService:
    def __init__(
        self, session: Session, invalidator: Optional[Invalidator] = None
    ) -> None:
        self.session = session
        self.invalidator = invalidator

    def list(
        self,
        params: ListParams,
        *,
        account_id: Optional[int] = None,
        category_id: Optional[int] = None,
        template_id: Optional[int] = None,
        active_on: Optional[date] = None,
        name: Optional[str] = None,
    ) -> Page:
        stmt = select(Budget).where(Budget.deleted_at.is_(None))
        if account_id is not None:
            stmt = stmt.where(Budget.account_id == account_id)
        if category_id is not None:
            stmt = stmt.where(Budget.category_id == category_id)
        if template_id is not None:
            stmt = stmt.where(Budget.template_id == template_id)
        if active_on is not None:
            stmt = stmt.where(
                and_(Budget.period_start <= active_on, Budget.period_end >= active_on)
            )
        if name:
            stmt = stmt.where(func.lower(Budget.name).like(f"%{name.lower()}%"))
        return paginate(self.session, stmt, Budget, params, BUDGET_ORDERING)

    def get(self, budget_id: int) -> Budget:
        return get_live(self.session, Budget, budget_id, "Budget")

    def create(self, data: BudgetIn) -> Budget:
        if data.period_start > data.period_end:
            raise ValidationFailed("period_start must not be after period_end")
        _check_scope_refs(self.session, data.account_id, data.category_id)
        budget = Budget(**data.model_dump())
        self.session.add(budget)
        self.session.commit()
        self.session.refresh(budget)
        publish_invalidation(self.invalidator, "budget")
        return budget

    def update(self, budget_id: int, patch: BudgetPatch) -> Budget:
        data = _patch_data(patch)
        budget = self.get(budget_id)
        for field in ("name", "amount_limit", "period_start", "period_end"):
            if field in data and data[field] is None:
                raise ValidationFailed(f"{field} cannot be null")
        _check_scope_refs(
            self.session,
            data.get("account_id"),
            data.get("category_id"),
        )
        for field, value in data.items():
            setattr(budget, field, value)
        if budget.period_start > budget.period_end:
            self.session.rollback()
            raise ValidationFailed("period_start must not be after period_end")
        budget.updated_at = utcnow()
        self.session.commit()
        self.session.refresh(budget)
        publish_invalidation(self.invalidator, "budget")
        return budget

    def delete(self, budget_id: int) -> None:
        budget = self.get(budget_id)
        budget.deleted_at = utcnow()
        self.session.commit()
        publish_invalidation(self.invalidator, "budget")


BUDGET_TEMPLATE_ORDERING = {
    "name": BudgetTemplate.name,
    "amount_limit": BudgetTemplate.amount_limit,
    "recurrence": BudgetTemplate.recurrence,
    "start_date": BudgetTemplate.start_date,
    "created_at": BudgetTemplate.created_at,
}


class BudgetTemplateService:
    def __init__(
        self, session: Session, invalidator: Optional[Invalidator] = None
    ) -> None:
        self.session = session
        self.invalidator = invalidator

    def list(self, params: ListParams, *, name: Optional[str] = None) -> Page:
        stmt = select(BudgetTemplate).where(BudgetTemplate.deleted_at.is_(None))
        if name:
            stmt = stmt.where(
                func.lower(BudgetTemplate.name).like(f"%{name.lower()}%")
            )
        return paginate(
            self.session, stmt, BudgetTemplate, params, BUDGET_TEMPLATE_ORDERING
        )

    def get(self, template_id: int) -> BudgetTemplate:
        return get_live(self.session, BudgetTemplate, template_id, "Budget template")

    def create(self, data: BudgetTemplateIn) -> BudgetTemplate:
        _check_scope_refs(self.session, data.account_id, data.category_id)
        start = to_naive_utc(data.start_date)
        end = to_naive_utc(data.end_date)
        if end is not None and end < start:
            raise ValidationFailed("end_date must not be before start_date")
        template = BudgetTemplate(
            name=data.name.strip(),
            account_id=data.account_id,
            category_id=data.category_id,
            amount_limit=data.amount_limit,
            recurrence=data.recurrence,
            start_date=start,
            end_date=end,
            note=data.note,
        )
        self.session.add(template)
        self.session.commit()
        self.session.refresh(template)
        publish_invalidation(self.invalidator, "budget_template")
        return template

    def update(self, template_id: int, patch: BudgetTemplatePatch) -> BudgetTemplate:
        data = _patch_data(patch)
        template = self.get(template_id)
        for field in ("name", "amount_limit", "recurrence", "start_date"):
            if field in data and data[field] is None:
                raise ValidationFailed(f"{field} cannot be null")
        _check_scope_refs(self.session, data.get("account_id"), data.get("category_id"))
        for field, value in data.items():
            if field in ("start_date", "end_date"):
                value = to_naive_utc(value)
            setattr(template, field, value)
        if template.end_date is not None and template.end_date < template.start_date:
            self.session.rollback()
            raise ValidationFailed("end_date must not be before start_date")
        template.updated_at = utcnow()
        self.session.commit()
        self.session.refresh(template)
        publish_invalidation(self.invalidator, "budget_template")
        return template

    def delete(self, template_id: int) -> None:
        template = self.get(template_id)
        template.deleted_at = utcnow()
        self.session.commit()
        publish_invalidation(self.invalidator, "budget_template")

    def budgets(self, template_id: int, params: ListParams) -> Page:
        self.get(template_id)
        return BudgetService(self.session).list(params, template_id=template_id)


TRANSACTION_TEMPLATE_ORDERING = {
    "name": TransactionTemplate.name,
    "amount": TransactionTemplate.amount,
    "recurrence": TransactionTemplate.recurrence,
    "start_date": TransactionTemplate.start_date,
    "created_at": TransactionTemplate.created_at,
}


class TransactionTemplateService:
    def __init__(
        self, session: Session, invalidator: Optional[Invalidator] = None
    ) -> None:
        self.session = session
        self.invalidator = invalidator

    def list(
        self,
        params: ListParams,
        *,
        name: Optional[str] = None,
        account_id: Optional[int] = None,
        category_id: Optional[int] = None,
    ) -> Page:
        stmt = select(TransactionTemplate).where(
            TransactionTemplate.deleted_at.is_(None)
        )
        if name:
            stmt = stmt.where(
                func.lower(TransactionTemplate.name).like(f"%{name.lower()}%")
            )
        if account_id is not None:
            stmt = stmt.where(TransactionTemplate.account_id == account_id)
        if category_id is not None:
            stmt = stmt.where(TransactionTemplate.category_id == category_id)
        return paginate(
            self.session,
            stmt,
            TransactionTemplate,
            params,
            TRANSACTION_TEMPLATE_ORDERING,
        )

    def get(self, template_id: int) -> TransactionTemplate:
        return get_live(
            self.session, TransactionTemplate, template_id, "Transaction template"
        )

    def create(self, data: TransactionTemplateIn) -> TransactionTemplate:
        state = TransactionState(
            type=data.type,
            amount=data.amount,
            account_id=data.account_id,
            category_id=data.category_id,
            destination_account_id=data.destination_account_id,
        ).merged({})
        validate_references(self.session, state)
        start = to_naive_utc(data.start_date)
        end = to_naive_utc(data.end_date)
        if end is not None and end < start:
            raise ValidationFailed("end_date must not be before start_date")
        template = TransactionTemplate(
            name=data.name.strip(),
            type=state.type,
            amount=state.amount,
            account_id=state.account_id,
            category_id=state.category_id,
            destination_account_id=state.destination_account_id,
            recurrence=data.recurrence,
            start_date=start,
            end_date=end,
            installment_count=data.installment_count,
            installment_current=0,
            note=data.note,
        )
        self.session.add(template)
        self.session.commit()
        self.session.refresh(template)
        publish_invalidation(self.invalidator, "transaction_template", template_id=template.id)
        return template

    def update(
        self, template_id: int, patch: TransactionTemplatePatch
    ) -> TransactionTemplate:
        data = _patch_data(patch)
        template = self.get(template_id)
        for field in (
            "name",
            "type",
            "amount",
            "account_id",
            "category_id",
            "recurrence",
            "start_date",
        ):
            if field in data and data[field] is None:
                raise ValidationFailed(f"{field} cannot be null")
        state = TransactionState.of(template).merged(data)
        validate_references(self.session, state)
        for field, value in data.items():
            if field in ("start_date", "end_date"):
                value = to_naive_utc(value)
            setattr(template, field, value)
        template.destination_account_id = state.destination_account_id
        if template.end_date is not None and template.end_date < template.start_date:
            self.session.rollback()
            raise ValidationFailed("end_date must not be before start_date")
        template.updated_at = utcnow()
        self.session.commit()
        self.session.refresh(template)
        publish_invalidation(self.invalidator, "transaction_template", template_id=template.id)
        return template

    def delete(self, template_id: int) -> None:
        template = self.get(template_id)
        template.deleted_at = utcnow()
        self.session.commit()
        publish_invalidation(self.invalidator, "transaction_template", template_id=template_id)

    def related_transactions(self, template_id: int, params: ListParams) -> Page:
        self.get(template_id)
        linked = select(transaction_template_relations.c.transaction_id).where(
            transaction_template_relations.c.template_id == template_id
        )
        stmt = select(Transaction).where(
            Transaction.deleted_at.is_(None), Transaction.id.in_(linked)
        )
        return paginate(self.session, stmt, Transaction, params, TRANSACTION_ORDERING)

    def link_transaction(self, template_id: int, transaction_id: int) -> None:
        self.session.execute(
            insert(transaction_template_relations).values(
                template_id=template_id,
                transaction_id=transaction_id,
                created_at=utcnow(),
            )
        )
