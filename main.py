import logging
from typing import Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from config import get_settings
from database import Base, SessionLocal, engine
from errors import (
    EditWindowViolation,
    EmptyQueryItems,
    InvalidRequest,
    LedgerError,
    NotFound,
    NothingToUpdate,
    OperationFailed,
    TooManyQueryItems,
    WrongTransactionType,
)
from models import (
    MAX_UTC_OFFSET,
    MIN_UTC_OFFSET,
    Account,
    CategoryType,
    TransactionCategory,
    TransactionTag,
    TransactionType,
    User,
)
from notifications import NotificationDispatcher
from periods import parse_year_month
from schemas import (
    AccountIn,
    AccountModifyIn,
    CategoryIn,
    CategoryModifyIn,
    ClearDataIn,
    DisplayOrderIn,
    HideIn,
    TagIn,
    TransactionCreateIn,
    TransactionModifyIn,
    UserRegisterIn,
    UserSettingsIn,
)
from services import (
    AccountService,
    AccountTree,
    CategoryService,
    StatisticsService,
    TagService,
    TransactionFilters,
    TransactionPage,
    TransactionService,
    UserService,
)

settings = get_settings()
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Ledger")

dispatcher = NotificationDispatcher()

ERROR_STATUS: list[tuple[type, int]] = [
    (NotFound, 404),
    (EditWindowViolation, 403),
    (OperationFailed, 500),
    (InvalidRequest, 400),
    (WrongTransactionType, 400),
    (NothingToUpdate, 400),
    (TooManyQueryItems, 400),
    (EmptyQueryItems, 400),
]


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    status_code = next(
        (code for cls, code in ERROR_STATUS if isinstance(exc, cls)), 400
    )
    if status_code >= 500:
        logger.error(f"request_failed: path={request.url.path} error={exc}")
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error": type(exc).__name__},
    )


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_current_user_id(x_user_id: int = Header(..., gt=0)) -> int:
    # authentication happens upstream; the proxy forwards the resolved user id
    return x_user_id


def get_utc_offset(
    x_timezone_offset: int = Header(0, ge=MIN_UTC_OFFSET, le=MAX_UTC_OFFSET)
) -> int:
    return x_timezone_offset


def client_ip(request: Request) -> Optional[str]:
    if request.client is None:
        return None
    return request.client.host[:39]


@app.on_event("startup")
def startup_event():
    Base.metadata.create_all(bind=engine)
    dispatcher.start()


@app.on_event("shutdown")
def shutdown_event():
    dispatcher.stop()


def user_out(user: User) -> dict:
    return {
        "id": user.id,
        "username": user.username,
        "email": user.email,
        "nickname": user.nickname,
        "default_currency": user.default_currency,
        "default_account_id": user.default_account_id,
        "transaction_edit_scope": user.transaction_edit_scope.value,
        "first_day_of_week": user.first_day_of_week,
        "language": user.language,
    }


def account_out(account: Account) -> dict:
    return {
        "id": account.id,
        "parent_id": account.parent_account_id,
        "name": account.name,
        "category": account.category.value,
        "type": account.type.value,
        "icon": account.icon,
        "color": account.color,
        "currency": account.currency,
        "balance": account.balance,
        "comment": account.comment,
        "display_order": account.display_order,
        "hidden": account.hidden,
    }


def account_tree_out(tree: AccountTree) -> dict:
    data = account_out(tree.account)
    data["sub_accounts"] = [account_out(sub) for sub in tree.sub_accounts]
    return data


def category_out(category: TransactionCategory) -> dict:
    return {
        "id": category.id,
        "name": category.name,
        "parent_id": category.parent_category_id,
        "type": category.type.value,
        "icon": category.icon,
        "color": category.color,
        "comment": category.comment,
        "display_order": category.display_order,
        "hidden": category.hidden,
    }


def tag_out(tag: TransactionTag) -> dict:
    return {
        "id": tag.id,
        "name": tag.name,
        "display_order": tag.display_order,
        "hidden": tag.hidden,
    }


def transaction_filters(
    db: Session,
    user_id: int,
    type: Optional[TransactionType],
    category_id: Optional[int],
    account_id: Optional[int],
    keyword: Optional[str],
    min_time: Optional[int],
    max_time: Optional[int],
) -> Optional[TransactionFilters]:
    """Build ledger filters; ``None`` means a filter matched nothing."""
    category_ids = CategoryService(db, user_id).resolve_category_group(category_id)
    account_ids = AccountService(db, user_id).resolve_account_group(account_id)
    if (category_id and not category_ids) or (account_id and not account_ids):
        return None
    return TransactionFilters(
        type=type,
        category_ids=category_ids,
        account_ids=account_ids,
        keyword=keyword or None,
        min_time=min_time,
        max_time=max_time,
    )


# Users and data


@app.post("/api/v1/users/register")
def api_register(data: UserRegisterIn, db: Session = Depends(get_db)):
    user = UserService(db, dispatcher=dispatcher).register(data)
    return user_out(user)


@app.get("/api/v1/users/profile")
def api_profile(
    db: Session = Depends(get_db), user_id: int = Depends(get_current_user_id)
):
    return user_out(UserService(db).get(user_id))


@app.post("/api/v1/users/settings")
def api_update_settings(
    data: UserSettingsIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    return user_out(UserService(db).update_settings(user_id, data))


@app.get("/api/v1/data/statistics")
def api_data_statistics(
    db: Session = Depends(get_db), user_id: int = Depends(get_current_user_id)
):
    return UserService(db).data_statistics(user_id)


@app.post("/api/v1/data/clear")
def api_clear_data(
    data: ClearDataIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    UserService(db).clear_data(user_id, data.password)
    return {"ok": True}


# Accounts


@app.get("/api/v1/accounts")
def api_accounts(
    include_hidden: bool = True,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    trees = AccountService(db, user_id).list_all(include_hidden=include_hidden)
    return [account_tree_out(tree) for tree in trees]


@app.get("/api/v1/accounts/{account_id}")
def api_account(
    account_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    return account_tree_out(AccountService(db, user_id).get_with_sub_accounts(account_id))


@app.post("/api/v1/accounts")
def api_create_account(
    data: AccountIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
    utc_offset: int = Depends(get_utc_offset),
):
    return account_tree_out(AccountService(db, user_id).create(data, utc_offset))


@app.post("/api/v1/accounts/{account_id}/modify")
def api_modify_account(
    account_id: int,
    data: AccountModifyIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    return account_tree_out(AccountService(db, user_id).modify(account_id, data))


@app.post("/api/v1/accounts/hide")
def api_hide_accounts(
    data: HideIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    AccountService(db, user_id).hide(data.ids, data.hidden)
    return {"ok": True}


@app.post("/api/v1/accounts/move")
def api_move_accounts(
    data: list[DisplayOrderIn],
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    AccountService(db, user_id).move(data)
    return {"ok": True}


@app.post("/api/v1/accounts/{account_id}/delete")
def api_delete_account(
    account_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    AccountService(db, user_id).delete(account_id)
    return {"ok": True}


# Categories


@app.get("/api/v1/categories")
def api_categories(
    type: Optional[CategoryType] = None,
    parent_id: Optional[int] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    categories = CategoryService(db, user_id).list_all(type=type, parent_id=parent_id)
    return [category_out(category) for category in categories]


@app.get("/api/v1/categories/{category_id}")
def api_category(
    category_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    return category_out(CategoryService(db, user_id).get(category_id))


@app.post("/api/v1/categories")
def api_create_category(
    data: CategoryIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    return category_out(CategoryService(db, user_id).create(data))


@app.post("/api/v1/categories/{category_id}/modify")
def api_modify_category(
    category_id: int,
    data: CategoryModifyIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    return category_out(CategoryService(db, user_id).modify(category_id, data))


@app.post("/api/v1/categories/{category_id}/hide")
def api_hide_category(
    category_id: int,
    hidden: bool = True,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    CategoryService(db, user_id).hide(category_id, hidden)
    return {"ok": True}


@app.post("/api/v1/categories/move")
def api_move_categories(
    data: list[DisplayOrderIn],
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    CategoryService(db, user_id).move(data)
    return {"ok": True}


@app.post("/api/v1/categories/{category_id}/delete")
def api_delete_category(
    category_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    CategoryService(db, user_id).delete(category_id)
    return {"ok": True}


# Tags


@app.get("/api/v1/tags")
def api_tags(db: Session = Depends(get_db), user_id: int = Depends(get_current_user_id)):
    return [tag_out(tag) for tag in TagService(db, user_id).list_all()]


@app.post("/api/v1/tags")
def api_create_tag(
    data: TagIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    return tag_out(TagService(db, user_id).create(data))


@app.post("/api/v1/tags/{tag_id}/modify")
def api_modify_tag(
    tag_id: int,
    data: TagIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    return tag_out(TagService(db, user_id).modify(tag_id, data))


@app.post("/api/v1/tags/{tag_id}/hide")
def api_hide_tag(
    tag_id: int,
    hidden: bool = True,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    TagService(db, user_id).hide(tag_id, hidden)
    return {"ok": True}


@app.post("/api/v1/tags/move")
def api_move_tags(
    data: list[DisplayOrderIn],
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    TagService(db, user_id).move(data)
    return {"ok": True}


@app.post("/api/v1/tags/{tag_id}/delete")
def api_delete_tag(
    tag_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    TagService(db, user_id).delete(tag_id)
    return {"ok": True}


# Transactions


@app.get("/api/v1/transactions")
def api_transactions(
    count: int = 50,
    page: int = 1,
    before_time: Optional[int] = None,
    type: Optional[TransactionType] = None,
    category_id: Optional[int] = None,
    account_id: Optional[int] = None,
    keyword: Optional[str] = None,
    min_time: Optional[int] = None,
    max_time: Optional[int] = None,
    with_count: bool = False,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
    utc_offset: int = Depends(get_utc_offset),
):
    filters = transaction_filters(
        db, user_id, type, category_id, account_id, keyword, min_time, max_time
    )
    if filters is None:
        return TransactionPage(
            items=[], next_time_sequence_id=None, total_count=0 if with_count else None
        )
    return TransactionService(db, user_id).list_by_max_time(
        filters,
        count=count,
        before_time=before_time,
        page=page,
        with_count=with_count,
        utc_offset=utc_offset,
    )


@app.get("/api/v1/transactions/month")
def api_transactions_in_month(
    year: int,
    month: int,
    type: Optional[TransactionType] = None,
    category_id: Optional[int] = None,
    account_id: Optional[int] = None,
    keyword: Optional[str] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
    utc_offset: int = Depends(get_utc_offset),
):
    filters = transaction_filters(
        db, user_id, type, category_id, account_id, keyword, None, None
    )
    if filters is None:
        return {"items": [], "total_count": 0}
    items = TransactionService(db, user_id).list_in_month(
        year, month, filters, utc_offset=utc_offset
    )
    return {"items": items, "total_count": len(items)}


@app.get("/api/v1/transactions/count")
def api_transaction_count(
    type: Optional[TransactionType] = None,
    category_id: Optional[int] = None,
    account_id: Optional[int] = None,
    keyword: Optional[str] = None,
    min_time: Optional[int] = None,
    max_time: Optional[int] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    filters = transaction_filters(
        db, user_id, type, category_id, account_id, keyword, min_time, max_time
    )
    if filters is None:
        return {"total_count": 0}
    return {"total_count": TransactionService(db, user_id).count(filters)}


@app.get("/api/v1/transactions/{transaction_id}")
def api_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
    utc_offset: int = Depends(get_utc_offset),
):
    return TransactionService(db, user_id).get(transaction_id, utc_offset=utc_offset)


@app.post("/api/v1/transactions")
def api_create_transaction(
    data: TransactionCreateIn,
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
    utc_offset: int = Depends(get_utc_offset),
):
    service = TransactionService(db, user_id)
    txn = service.create(data, client_ip=client_ip(request))
    return service.get(txn.id, utc_offset=utc_offset)


@app.post("/api/v1/transactions/{transaction_id}/modify")
def api_modify_transaction(
    transaction_id: int,
    data: TransactionModifyIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
    utc_offset: int = Depends(get_utc_offset),
):
    service = TransactionService(db, user_id)
    txn = service.modify(transaction_id, data)
    return service.get(txn.id, utc_offset=utc_offset)


@app.post("/api/v1/transactions/{transaction_id}/delete")
def api_delete_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
    utc_offset: int = Depends(get_utc_offset),
):
    TransactionService(db, user_id).delete(transaction_id, utc_offset=utc_offset)
    return {"ok": True}


# Statistics


@app.get("/api/v1/statistics")
def api_statistics(
    start_time: int,
    end_time: int,
    use_transaction_timezone: bool = False,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
    utc_offset: int = Depends(get_utc_offset),
):
    items = StatisticsService(db, user_id).accounts_and_categories_totals(
        start_time, end_time, utc_offset, use_transaction_timezone
    )
    return {"items": items}


@app.get("/api/v1/statistics/trends")
def api_statistics_trends(
    start_year_month: str,
    end_year_month: str,
    use_transaction_timezone: bool = False,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
    utc_offset: int = Depends(get_utc_offset),
):
    start_year, start_month = parse_year_month(start_year_month)
    end_year, end_month = parse_year_month(end_year_month)
    trends = StatisticsService(db, user_id).monthly_income_and_expense(
        start_year, start_month, end_year, end_month, utc_offset, use_transaction_timezone
    )
    return [
        {"year": key // 100, "month": key % 100, "items": items}
        for key, items in trends.items()
    ]


@app.get("/api/v1/statistics/amounts")
def api_statistics_amounts(
    query: str,
    use_transaction_timezone: bool = False,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
    utc_offset: int = Depends(get_utc_offset),
):
    return StatisticsService(db, user_id).amounts(
        query, utc_offset, use_transaction_timezone
    )
