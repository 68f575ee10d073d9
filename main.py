import logging
from datetime import date, datetime, timedelta
from typing import Any, Callable, Literal, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session, sessionmaker

from analytics import (
    ACCOUNT_METRICS,
    CATEGORY_METRICS,
    AccountStatisticsService,
    CategoryStatisticsService,
    SummaryService,
)
from auth import auth_enabled, verify_token
from bulk_drafts import BulkDraftService
from cache import CacheService, InvalidationDispatcher, get_cache, get_dispatcher
from config import get_settings
from database import SessionLocal
from errors import NotFoundError, ServiceError
from geo_index import (
    GeoIndexManager,
    GeoIndexRepopulator,
    get_geo_index,
    get_repopulator,
)
from models import (
    Account,
    AccountType,
    Budget,
    BudgetTemplate,
    Category,
    Tag,
    Transaction,
    TransactionTemplate,
    TransactionType,
)
from recurrence import BudgetTemplateWorker, TransactionTemplateWorker
from scheduler import CronScheduler, CronTask
from schemas import (
    AccountIn,
    AccountPatch,
    BudgetIn,
    BudgetPatch,
    BudgetTemplateIn,
    BudgetTemplatePatch,
    BulkDraftIn,
    CategoryIn,
    CategoryPatch,
    DateRange,
    GeoRefreshIn,
    ListParams,
    RelationIn,
    ReorderIn,
    SummaryParams,
    TagIn,
    TransactionFilters,
    TransactionIn,
    TransactionPatch,
    TransactionTagIn,
    TransactionTemplateIn,
    TransactionTemplatePatch,
)
from seed import seed_development
from services import (
    AccountService,
    BudgetService,
    BudgetTemplateService,
    CategoryService,
    Page,
    TagService,
    TransactionService,
    TransactionTemplateService,
    check_coordinates,
)

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


def require_auth(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> None:
    if not auth_enabled():
        return
    if credentials is None or verify_token(credentials.credentials) is None:
        raise HTTPException(
            status_code=401,
            detail="Invalid or missing bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        )


app = FastAPI(title="Spendly", dependencies=[Depends(require_auth)])


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"detail": jsonable_errors(exc.errors())},
    )


def jsonable_errors(errors) -> list[dict[str, Any]]:
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in errors
    ]


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory() -> sessionmaker:
    return SessionLocal


def list_params(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    order_by: str = "created_at",
    order_direction: Literal["asc", "desc"] = "desc",
) -> ListParams:
    return ListParams(
        page=page, limit=limit, order_by=order_by, order_direction=order_direction
    )


def date_range(
    start_date: Optional[datetime] = None, end_date: Optional[datetime] = None
) -> DateRange:
    return DateRange(start_date=start_date, end_date=end_date)


def transaction_filters(
    type: Optional[TransactionType] = None,
    account_ids: list[int] = Query(default=[]),
    category_ids: list[int] = Query(default=[]),
    tag_ids: list[int] = Query(default=[]),
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    min_amount: Optional[int] = None,
    max_amount: Optional[int] = None,
    latitude: Optional[float] = Query(None, ge=-90, le=90),
    longitude: Optional[float] = Query(None, ge=-180, le=180),
    radius_meters: Optional[float] = Query(None, gt=0),
) -> TransactionFilters:
    return TransactionFilters(
        type=type,
        account_ids=account_ids,
        category_ids=category_ids,
        tag_ids=tag_ids,
        start_date=start_date,
        end_date=end_date,
        min_amount=min_amount,
        max_amount=max_amount,
        latitude=latitude,
        longitude=longitude,
        radius_meters=radius_meters,
    )


def summary_params(
    frequency: Literal["daily", "weekly", "monthly", "yearly"] = "monthly",
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    type: Optional[TransactionType] = None,
    account_ids: list[int] = Query(default=[]),
    category_ids: list[int] = Query(default=[]),
) -> SummaryParams:
    return SummaryParams(
        frequency=frequency,
        start_date=start_date,
        end_date=end_date,
        type=type,
        account_ids=account_ids,
        category_ids=category_ids,
    )


def _iso(value: Optional[datetime | date]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def account_out(account: Account) -> dict[str, Any]:
    return {
        "id": account.id,
        "name": account.name,
        "type": account.type,
        "note": account.note,
        "amount": account.amount,
        "icon": account.icon,
        "icon_color": account.icon_color,
        "display_order": account.display_order,
        "archived": account.archived_at is not None,
        "archived_at": _iso(account.archived_at),
        "created_at": _iso(account.created_at),
        "updated_at": _iso(account.updated_at),
    }


def category_out(category: Category) -> dict[str, Any]:
    return {
        "id": category.id,
        "name": category.name,
        "type": category.type.value,
        "note": category.note,
        "display_order": category.display_order,
        "created_at": _iso(category.created_at),
        "updated_at": _iso(category.updated_at),
    }


def tag_out(tag: Tag) -> dict[str, Any]:
    return {"id": tag.id, "name": tag.name, "created_at": _iso(tag.created_at)}


def transaction_out(txn: Transaction) -> dict[str, Any]:
    return {
        "id": txn.id,
        "type": txn.type.value,
        "date": _iso(txn.date),
        "amount": txn.amount,
        "account_id": txn.account_id,
        "category_id": txn.category_id,
        "destination_account_id": txn.destination_account_id,
        "note": txn.note,
        "latitude": txn.latitude,
        "longitude": txn.longitude,
        "tags": [tag_out(tag) for tag in txn.tags if tag.deleted_at is None],
        "created_at": _iso(txn.created_at),
        "updated_at": _iso(txn.updated_at),
    }


def budget_out(budget: Budget) -> dict[str, Any]:
    return {
        "id": budget.id,
        "template_id": budget.template_id,
        "name": budget.name,
        "account_id": budget.account_id,
        "category_id": budget.category_id,
        "amount_limit": budget.amount_limit,
        "period_start": _iso(budget.period_start),
        "period_end": _iso(budget.period_end),
        "note": budget.note,
        "created_at": _iso(budget.created_at),
        "updated_at": _iso(budget.updated_at),
    }


def budget_template_out(template: BudgetTemplate) -> dict[str, Any]:
    return {
        "id": template.id,
        "name": template.name,
        "account_id": template.account_id,
        "category_id": template.category_id,
        "amount_limit": template.amount_limit,
        "recurrence": template.recurrence.value,
        "start_date": _iso(template.start_date),
        "end_date": _iso(template.end_date),
        "note": template.note,
        "last_executed_at": _iso(template.last_executed_at),
        "created_at": _iso(template.created_at),
        "updated_at": _iso(template.updated_at),
    }


def transaction_template_out(template: TransactionTemplate) -> dict[str, Any]:
    return {
        "id": template.id,
        "name": template.name,
        "type": template.type.value,
        "amount": template.amount,
        "account_id": template.account_id,
        "category_id": template.category_id,
        "destination_account_id": template.destination_account_id,
        "recurrence": template.recurrence.value,
        "start_date": _iso(template.start_date),
        "end_date": _iso(template.end_date),
        "installment_count": template.installment_count,
        "installment_current": template.installment_current,
        "note": template.note,
        "last_executed_at": _iso(template.last_executed_at),
        "created_at": _iso(template.created_at),
        "updated_at": _iso(template.updated_at),
    }


def page_out(page: Page, serialize: Callable[[Any], dict]) -> dict[str, Any]:
    return {
        "items": [serialize(item) for item in page.items],
        "page": page.page,
        "limit": page.limit,
        "total": page.total,
        "total_pages": page.total_pages,
    }


def build_scheduler(session_factory: sessionmaker = SessionLocal) -> CronScheduler:
    dispatcher = get_dispatcher()
    geo = get_geo_index()
    cron = CronScheduler()
    cron.register(
        CronTask(
            id="transaction_templates",
            name="Materialize recurring transactions",
            schedule=timedelta(hours=1),
            handler=TransactionTemplateWorker(session_factory, dispatcher, geo).run,
        )
    )
    cron.register(
        CronTask(
            id="budget_templates",
            name="Materialize recurring budgets",
            schedule=timedelta(minutes=15),
            handler=BudgetTemplateWorker(session_factory, dispatcher).run,
            run_immediately=True,
        )
    )
    cron.register(
        CronTask(
            id="geo_index",
            name="Repopulate transaction geo index",
            schedule=timedelta(hours=12),
            handler=get_repopulator().run,
            run_immediately=True,
            timeout=timedelta(minutes=5),
        )
    )
    return cron


scheduler_manager: Optional[CronScheduler] = None


@app.on_event("startup")
def startup_event():
    global scheduler_manager
    if not get_settings().enable_workers:
        logger.info("Background workers disabled")
        return
    scheduler_manager = build_scheduler()
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    if scheduler_manager is not None:
        scheduler_manager.stop()
    get_dispatcher().stop()


@app.get("/health")
def health():
    return {"status": "ok"}


# Accounts


@app.get("/accounts")
def list_accounts(
    name: Optional[str] = None,
    type: Optional[AccountType] = None,
    archived: Optional[bool] = None,
    params: ListParams = Depends(list_params),
    db: Session = Depends(get_db),
):
    page = AccountService(db).list(params, name=name, type=type, archived=archived)
    return page_out(page, account_out)


@app.post("/accounts", status_code=201)
def create_account(
    payload: AccountIn,
    db: Session = Depends(get_db),
    dispatcher: InvalidationDispatcher = Depends(get_dispatcher),
):
    return account_out(AccountService(db, dispatcher).create(payload))


@app.post("/accounts/reorder")
def reorder_accounts(
    payload: ReorderIn,
    db: Session = Depends(get_db),
    dispatcher: InvalidationDispatcher = Depends(get_dispatcher),
):
    accounts = AccountService(db, dispatcher).reorder(payload.ids)
    return {"items": [account_out(account) for account in accounts]}


@app.get("/accounts/{account_id}")
def get_account(account_id: int, db: Session = Depends(get_db)):
    return account_out(AccountService(db).get(account_id))


@app.patch("/accounts/{account_id}")
def update_account(
    account_id: int,
    payload: AccountPatch,
    db: Session = Depends(get_db),
    dispatcher: InvalidationDispatcher = Depends(get_dispatcher),
):
    return account_out(AccountService(db, dispatcher).update(account_id, payload))


@app.delete("/accounts/{account_id}", status_code=204)
def delete_account(
    account_id: int,
    db: Session = Depends(get_db),
    dispatcher: InvalidationDispatcher = Depends(get_dispatcher),
):
    AccountService(db, dispatcher).delete(account_id)
    return Response(status_code=204)


@app.get("/accounts/{account_id}/statistics")
def account_statistics(
    account_id: int,
    period: DateRange = Depends(date_range),
    session_factory: sessionmaker = Depends(get_session_factory),
    cache: CacheService = Depends(get_cache),
):
    return AccountStatisticsService(session_factory, cache).bundle(account_id, period)


@app.get("/accounts/{account_id}/statistics/{metric}")
def account_statistic(
    account_id: int,
    metric: str,
    period: DateRange = Depends(date_range),
    session_factory: sessionmaker = Depends(get_session_factory),
    cache: CacheService = Depends(get_cache),
):
    name = metric.replace("-", "_")
    if name not in ACCOUNT_METRICS:
        raise NotFoundError("Statistic", metric)
    return AccountStatisticsService(session_factory, cache).metric(account_id, name, period)


# Categories


@app.get("/categories")
def list_categories(
    name: Optional[str] = None,
    type: Optional[TransactionType] = None,
    params: ListParams = Depends(list_params),
    db: Session = Depends(get_db),
):
    return page_out(CategoryService(db).list(params, name=name, type=type), category_out)


@app.post("/categories", status_code=201)
def create_category(
    payload: CategoryIn,
    db: Session = Depends(get_db),
    dispatcher: InvalidationDispatcher = Depends(get_dispatcher),
):
    return category_out(CategoryService(db, dispatcher).create(payload))


@app.post("/categories/reorder")
def reorder_categories(
    payload: ReorderIn,
    db: Session = Depends(get_db),
    dispatcher: InvalidationDispatcher = Depends(get_dispatcher),
):
    categories = CategoryService(db, dispatcher).reorder(payload.ids)
    return {"items": [category_out(category) for category in categories]}


@app.get("/categories/{category_id}")
def get_category(category_id: int, db: Session = Depends(get_db)):
    return category_out(CategoryService(db).get(category_id))


@app.patch("/categories/{category_id}")
def update_category(
    category_id: int,
    payload: CategoryPatch,
    db: Session = Depends(get_db),
    dispatcher: InvalidationDispatcher = Depends(get_dispatcher),
):
    return category_out(CategoryService(db, dispatcher).update(category_id, payload))


@app.delete("/categories/{category_id}", status_code=204)
def delete_category(
    category_id: int,
    db: Session = Depends(get_db),
    dispatcher: InvalidationDispatcher = Depends(get_dispatcher),
):
    CategoryService(db, dispatcher).delete(category_id)
    return Response(status_code=204)


@app.get("/categories/{category_id}/statistics")
def category_statistics(
    category_id: int,
    period: DateRange = Depends(date_range),
    session_factory: sessionmaker = Depends(get_session_factory),
    cache: CacheService = Depends(get_cache),
):
    return CategoryStatisticsService(session_factory, cache).bundle(category_id, period)


@app.get("/categories/{category_id}/statistics/{metric}")
def category_statistic(
    category_id: int,
    metric: str,
    period: DateRange = Depends(date_range),
    session_factory: sessionmaker = Depends(get_session_factory),
    cache: CacheService = Depends(get_cache),
):
    name = metric.replace("-", "_")
    if name not in CATEGORY_METRICS:
        raise NotFoundError("Statistic", metric)
    return CategoryStatisticsService(session_factory, cache).metric(
        category_id, name, period
    )


# Budget templates are registered before /budgets/{budget_id} so the literal
# path wins.


@app.get("/budgets/templates")
def list_budget_templates(
    name: Optional[str] = None,
    params: ListParams = Depends(list_params),
    db: Session = Depends(get_db),
):
    page = BudgetTemplateService(db).list(params, name=name)
    return page_out(page, budget_template_out)


@app.post("/budgets/templates", status_code=201)
def create_budget_template(
    payload: BudgetTemplateIn,
    db: Session = Depends(get_db),
    dispatcher: InvalidationDispatcher = Depends(get_dispatcher),
):
    return budget_template_out(BudgetTemplateService(db, dispatcher).create(payload))


@app.get("/budgets/templates/{template_id}")
def get_budget_template(template_id: int, db: Session = Depends(get_db)):
    return budget_template_out(BudgetTemplateService(db).get(template_id))


@app.patch("/budgets/templates/{template_id}")
def update_budget_template(
    template_id: int,
    payload: BudgetTemplatePatch,
    db: Session = Depends(get_db),
    dispatcher: InvalidationDispatcher = Depends(get_dispatcher),
):
    template = BudgetTemplateService(db, dispatcher).update(template_id, payload)
    return budget_template_out(template)


@app.delete("/budgets/templates/{template_id}", status_code=204)
def delete_budget_template(
    template_id: int,
    db: Session = Depends(get_db),
    dispatcher: InvalidationDispatcher = Depends(get_dispatcher),
):
    BudgetTemplateService(db, dispatcher).delete(template_id)
    return Response(status_code=204)


@app.get("/budgets/templates/{template_id}/budgets")
def list_template_budgets(
    template_id: int,
    params: ListParams = Depends(list_params),
    db: Session = Depends(get_db),
):
    return page_out(BudgetTemplateService(db).budgets(template_id, params), budget_out)


@app.get("/budgets")
def list_budgets(
    account_id: Optional[int] = None,
    category_id: Optional[int] = None,
    template_id: Optional[int] = None,
    active_on: Optional[date] = None,
    name: Optional[str] = None,
    params: ListParams = Depends(list_params),
    db: Session = Depends(get_db),
):
    page = BudgetService(db).list(
        params,
        account_id=account_id,
        category_id=category_id,
        template_id=template_id,
        active_on=active_on,
        name=name,
    )
    return page_out(page, budget_out)


@app.post("/budgets", status_code=201)
def create_budget(
    payload: BudgetIn,
    db: Session = Depends(get_db),
    dispatcher: InvalidationDispatcher = Depends(get_dispatcher),
):
    return budget_out(BudgetService(db, dispatcher).create(payload))


@app.get("/budgets/{budget_id}")
def get_budget(budget_id: int, db: Session = Depends(get_db)):
    return budget_out(BudgetService(db).get(budget_id))


@app.patch("/budgets/{budget_id}")
def update_budget(
    budget_id: int,
    payload: BudgetPatch,
    db: Session = Depends(get_db),
    dispatcher: InvalidationDispatcher = Depends(get_dispatcher),
):
    return budget_out(BudgetService(db, dispatcher).update(budget_id, payload))


@app.delete("/budgets/{budget_id}", status_code=204)
def delete_budget(
    budget_id: int,
    db: Session = Depends(get_db),
    dispatcher: InvalidationDispatcher = Depends(get_dispatcher),
):
    BudgetService(db, dispatcher).delete(budget_id)
    return Response(status_code=204)


# Bulk draft


@app.patch("/transactions/bulk/draft")
def save_bulk_draft(
    payload: BulkDraftIn,
    db: Session = Depends(get_db),
    cache: CacheService = Depends(get_cache),
):
    return BulkDraftService(db, cache).save_draft(payload.updates)


@app.get("/transactions/bulk/draft")
def get_bulk_draft(db: Session = Depends(get_db), cache: CacheService = Depends(get_cache)):
    return BulkDraftService(db, cache).get_draft()


@app.post("/transactions/bulk/draft/commit")
def commit_bulk_draft(
    db: Session = Depends(get_db),
    cache: CacheService = Depends(get_cache),
    dispatcher: InvalidationDispatcher = Depends(get_dispatcher),
    geo: GeoIndexManager = Depends(get_geo_index),
):
    return BulkDraftService(db, cache, dispatcher, geo).commit_draft()


@app.delete("/transactions/bulk/draft", status_code=204)
def delete_bulk_draft(
    db: Session = Depends(get_db), cache: CacheService = Depends(get_cache)
):
    BulkDraftService(db, cache).delete_draft()
    return Response(status_code=204)


# Transactions


@app.get("/transactions")
def list_transactions(
    filters: TransactionFilters = Depends(transaction_filters),
    params: ListParams = Depends(list_params),
    db: Session = Depends(get_db),
    geo: GeoIndexManager = Depends(get_geo_index),
):
    page = TransactionService(db, geo=geo).list(params, filters)
    return page_out(page, transaction_out)


@app.post("/transactions", status_code=201)
def create_transaction(
    payload: TransactionIn,
    db: Session = Depends(get_db),
    dispatcher: InvalidationDispatcher = Depends(get_dispatcher),
    geo: GeoIndexManager = Depends(get_geo_index),
):
    return transaction_out(TransactionService(db, dispatcher, geo).create(payload))


@app.get("/transactions/{transaction_id}")
def get_transaction(transaction_id: int, db: Session = Depends(get_db)):
    return transaction_out(TransactionService(db).get(transaction_id))


@app.patch("/transactions/{transaction_id}")
def update_transaction(
    transaction_id: int,
    payload: TransactionPatch,
    db: Session = Depends(get_db),
    dispatcher: InvalidationDispatcher = Depends(get_dispatcher),
    geo: GeoIndexManager = Depends(get_geo_index),
):
    txn = TransactionService(db, dispatcher, geo).update(transaction_id, payload)
    return transaction_out(txn)


@app.delete("/transactions/{transaction_id}", status_code=204)
def delete_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    dispatcher: InvalidationDispatcher = Depends(get_dispatcher),
    geo: GeoIndexManager = Depends(get_geo_index),
):
    TransactionService(db, dispatcher, geo).delete(transaction_id)
    return Response(status_code=204)


@app.get("/transactions/{transaction_id}/relations")
def list_transaction_relations(
    transaction_id: int,
    params: ListParams = Depends(list_params),
    db: Session = Depends(get_db),
):
    page = TransactionService(db).list_relations(transaction_id, params)
    return page_out(page, transaction_out)


@app.post("/transactions/{transaction_id}/relations", status_code=201)
def create_transaction_relation(
    transaction_id: int,
    payload: RelationIn,
    db: Session = Depends(get_db),
    dispatcher: InvalidationDispatcher = Depends(get_dispatcher),
):
    related = TransactionService(db, dispatcher).create_relation(
        transaction_id, payload.related_transaction_id
    )
    return transaction_out(related)


@app.get("/transactions/{transaction_id}/relations/{related_id}")
def get_transaction_relation(
    transaction_id: int, related_id: int, db: Session = Depends(get_db)
):
    return transaction_out(TransactionService(db).get_relation(transaction_id, related_id))


@app.delete("/transactions/{transaction_id}/relations/{related_id}", status_code=204)
def delete_transaction_relation(
    transaction_id: int,
    related_id: int,
    db: Session = Depends(get_db),
    dispatcher: InvalidationDispatcher = Depends(get_dispatcher),
):
    TransactionService(db, dispatcher).delete_relation(transaction_id, related_id)
    return Response(status_code=204)


@app.get("/transactions/{transaction_id}/tags")
def list_transaction_tags(transaction_id: int, db: Session = Depends(get_db)):
    tags = TransactionService(db).list_tags(transaction_id)
    return {"items": [tag_out(tag) for tag in tags]}


@app.post("/transactions/{transaction_id}/tags", status_code=201)
def add_transaction_tag(
    transaction_id: int,
    payload: TransactionTagIn,
    db: Session = Depends(get_db),
    dispatcher: InvalidationDispatcher = Depends(get_dispatcher),
):
    tag = TransactionService(db, dispatcher).add_tag(transaction_id, payload.tag_id)
    return tag_out(tag)


@app.delete("/transactions/{transaction_id}/tags/{tag_id}", status_code=204)
def remove_transaction_tag(
    transaction_id: int,
    tag_id: int,
    db: Session = Depends(get_db),
    dispatcher: InvalidationDispatcher = Depends(get_dispatcher),
):
    TransactionService(db, dispatcher).remove_tag(transaction_id, tag_id)
    return Response(status_code=204)


# Transaction templates


@app.get("/transaction-templates")
def list_transaction_templates(
    name: Optional[str] = None,
    account_id: Optional[int] = None,
    category_id: Optional[int] = None,
    params: ListParams = Depends(list_params),
    db: Session = Depends(get_db),
):
    page = TransactionTemplateService(db).list(
        params, name=name, account_id=account_id, category_id=category_id
    )
    return page_out(page, transaction_template_out)


@app.post("/transaction-templates", status_code=201)
def create_transaction_template(
    payload: TransactionTemplateIn,
    db: Session = Depends(get_db),
    dispatcher: InvalidationDispatcher = Depends(get_dispatcher),
):
    template = TransactionTemplateService(db, dispatcher).create(payload)
    return transaction_template_out(template)


@app.get("/transaction-templates/{template_id}")
def get_transaction_template(template_id: int, db: Session = Depends(get_db)):
    return transaction_template_out(TransactionTemplateService(db).get(template_id))


@app.patch("/transaction-templates/{template_id}")
def update_transaction_template(
    template_id: int,
    payload: TransactionTemplatePatch,
    db: Session = Depends(get_db),
    dispatcher: InvalidationDispatcher = Depends(get_dispatcher),
):
    template = TransactionTemplateService(db, dispatcher).update(template_id, payload)
    return transaction_template_out(template)


@app.delete("/transaction-templates/{template_id}", status_code=204)
def delete_transaction_template(
    template_id: int,
    db: Session = Depends(get_db),
    dispatcher: InvalidationDispatcher = Depends(get_dispatcher),
):
    TransactionTemplateService(db, dispatcher).delete(template_id)
    return Response(status_code=204)


@app.get("/transaction-templates/{template_id}/transactions")
def list_template_transactions(
    template_id: int,
    params: ListParams = Depends(list_params),
    db: Session = Depends(get_db),
):
    page = TransactionTemplateService(db).related_transactions(template_id, params)
    return page_out(page, transaction_out)


# Tags


@app.get("/tags")
def list_tags(
    name: Optional[str] = None,
    params: ListParams = Depends(list_params),
    db: Session = Depends(get_db),
):
    return page_out(TagService(db).list(params, name=name), tag_out)


@app.post("/tags", status_code=201)
def create_tag(
    payload: TagIn,
    db: Session = Depends(get_db),
    dispatcher: InvalidationDispatcher = Depends(get_dispatcher),
):
    return tag_out(TagService(db, dispatcher).create(payload.name))


@app.get("/tags/{tag_id}")
def get_tag(tag_id: int, db: Session = Depends(get_db)):
    return tag_out(TagService(db).get(tag_id))


@app.delete("/tags/{tag_id}", status_code=204)
def delete_tag(
    tag_id: int,
    db: Session = Depends(get_db),
    dispatcher: InvalidationDispatcher = Depends(get_dispatcher),
):
    TagService(db, dispatcher).delete(tag_id)
    return Response(status_code=204)


# Summaries


@app.get("/summary/transactions")
def summary_transactions(
    params: SummaryParams = Depends(summary_params),
    session_factory: sessionmaker = Depends(get_session_factory),
    cache: CacheService = Depends(get_cache),
):
    return SummaryService(session_factory, cache).transactions(params)


@app.get("/summary/accounts")
def summary_accounts(
    params: SummaryParams = Depends(summary_params),
    session_factory: sessionmaker = Depends(get_session_factory),
    cache: CacheService = Depends(get_cache),
):
    return SummaryService(session_factory, cache).accounts(params)


@app.get("/summary/categories")
def summary_categories(
    params: SummaryParams = Depends(summary_params),
    session_factory: sessionmaker = Depends(get_session_factory),
    cache: CacheService = Depends(get_cache),
):
    return SummaryService(session_factory, cache).categories(params)


# Preferences and development helpers


@app.post("/preferences/refresh-geo-cache", status_code=202)
def refresh_geo_cache(
    payload: Optional[GeoRefreshIn] = None,
    repopulator: GeoIndexRepopulator = Depends(get_repopulator),
):
    payload = payload or GeoRefreshIn()
    check_coordinates(payload.latitude, payload.longitude)
    repopulator.refresh(payload.latitude, payload.longitude)
    return {"status": "scheduled"}


@app.post("/seed/development", status_code=201)
def seed_development_data(
    db: Session = Depends(get_db),
    dispatcher: InvalidationDispatcher = Depends(get_dispatcher),
    geo: GeoIndexManager = Depends(get_geo_index),
):
    if not get_settings().is_development:
        raise NotFoundError("Route")
    return seed_development(db, dispatcher, geo)
