from datetime import date, datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from models import AccountType, BudgetRecurrence, TemplateRecurrence, TransactionType


class ListParams(BaseModel):
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=100)
    order_by: str = "created_at"
    order_direction: Literal["asc", "desc"] = "desc"

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


class DateRange(BaseModel):
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: AccountType
    note: Optional[str] = None
    amount: int = 0
    icon: Optional[str] = Field(default=None, max_length=50)
    icon_color: Optional[str] = Field(default=None, max_length=20)
    display_order: int = 0


class AccountPatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    type: Optional[AccountType] = None
    note: Optional[str] = None
    icon: Optional[str] = Field(default=None, max_length=50)
    icon_color: Optional[str] = Field(default=None, max_length=20)
    display_order: Optional[int] = None
    archived: Optional[bool] = None


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: TransactionType
    note: Optional[str] = None
    display_order: int = 0


class CategoryPatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    type: Optional[TransactionType] = None
    note: Optional[str] = None
    display_order: Optional[int] = None


class ReorderIn(BaseModel):
    ids: list[int] = Field(..., min_length=1)


class TagIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)


class TransactionIn(BaseModel):
    type: TransactionType
    date: datetime
    amount: int = Field(..., gt=0)
    account_id: int
    category_id: int
    destination_account_id: Optional[int] = None
    note: Optional[str] = None
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    tag_ids: list[int] = Field(default_factory=list)


class TransactionPatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Optional[TransactionType] = None
    date: Optional[datetime] = None
    amount: Optional[int] = Field(default=None, gt=0)
    account_id: Optional[int] = None
    category_id: Optional[int] = None
    destination_account_id: Optional[int] = None
    note: Optional[str] = None
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)


class BulkTransactionPatch(TransactionPatch):
    id: int


class BulkDraftIn(BaseModel):
    updates: list[BulkTransactionPatch]


class TransactionFilters(BaseModel):
    type: Optional[TransactionType] = None
    account_ids: list[int] = Field(default_factory=list)
    category_ids: list[int] = Field(default_factory=list)
    tag_ids: list[int] = Field(default_factory=list)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    min_amount: Optional[int] = None
    max_amount: Optional[int] = None
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    radius_meters: Optional[float] = Field(default=None, gt=0)


class RelationIn(BaseModel):
    related_transaction_id: int


class TransactionTagIn(BaseModel):
    tag_id: int


class BudgetIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=160)
    account_id: Optional[int] = None
    category_id: Optional[int] = None
    amount_limit: int = Field(..., gt=0)
    period_start: date
    period_end: date
    note: Optional[str] = None


class BudgetPatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=160)
    account_id: Optional[int] = None
    category_id: Optional[int] = None
    amount_limit: Optional[int] = Field(default=None, gt=0)
    period_start: Optional[date] = None
    period_end: Optional[date] = None
    note: Optional[str] = None


class BudgetTemplateIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    account_id: Optional[int] = None
    category_id: Optional[int] = None
    amount_limit: int = Field(..., gt=0)
    recurrence: BudgetRecurrence = BudgetRecurrence.none
    start_date: datetime
    end_date: Optional[datetime] = None
    note: Optional[str] = None


class BudgetTemplatePatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    account_id: Optional[int] = None
    category_id: Optional[int] = None
    amount_limit: Optional[int] = Field(default=None, gt=0)
    recurrence: Optional[BudgetRecurrence] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    note: Optional[str] = None


class TransactionTemplateIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    type: TransactionType
    amount: int = Field(..., gt=0)
    account_id: int
    category_id: int
    destination_account_id: Optional[int] = None
    recurrence: TemplateRecurrence = TemplateRecurrence.none
    start_date: datetime
    end_date: Optional[datetime] = None
    installment_count: Optional[int] = Field(default=None, gt=0)
    note: Optional[str] = None


class TransactionTemplatePatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    type: Optional[TransactionType] = None
    amount: Optional[int] = Field(default=None, gt=0)
    account_id: Optional[int] = None
    category_id: Optional[int] = None
    destination_account_id: Optional[int] = None
    recurrence: Optional[TemplateRecurrence] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    installment_count: Optional[int] = Field(default=None, gt=0)
    note: Optional[str] = None


class SummaryParams(BaseModel):
    frequency: Literal["daily", "weekly", "monthly", "yearly"] = "monthly"
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    type: Optional[TransactionType] = None
    account_ids: list[int] = Field(default_factory=list)
    category_ids: list[int] = Field(default_factory=list)


class GeoRefreshIn(BaseModel):
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
