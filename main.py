import logging
import tomllib
from datetime import date
from typing import Callable, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from bank_client import BankApiError, BankAuthError, BankClient, BankRateLimitError
from database import SessionLocal
from models import Account, Budget, BudgetCategory, MonthlyBudgetGoal, Transaction
from oauth import OAuthClient, OAuthConfigError, OAuthError
from oauth_state import generate_state, validate_state
from periods import day_end_ms, day_start_ms, from_millis, local_today
from scheduler import SchedulerManager
from schemas import (
    AuthorizeRequest,
    BudgetIn,
    CleanupRequest,
    MonthlyGoalIn,
    SyncRequest,
    TokenExchangeRequest,
    TokenRefreshRequest,
)
from services import (
    AnalyticsService,
    BudgetService,
    DuplicateService,
    Failed,
    ResourceNotFound,
    SyncService,
    TokenExpired,
    TransactionService,
    UserService,
    require_fresh_token,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Budget Sync")


def _load_app_version() -> str:
    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError):
        return "unknown"
    return str(data.get("project", {}).get("version", "unknown"))


APP_VERSION = _load_app_version()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


BankClientFactory = Callable[[str], BankClient]


def get_bank_client_factory() -> BankClientFactory:
    return BankClient


def get_oauth_client() -> OAuthClient:
    return OAuthClient()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


class ApiError(Exception):
    def __init__(self, status_code: int, error: str, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error = error
        self.message = message


def ok(data: object = None, message: Optional[str] = None) -> dict:
    body: dict[str, object] = {"success": True}
    if data is not None:
        body["data"] = data
    if message:
        body["message"] = message
    return body


def error_response(
    status_code: int,
    error: str,
    message: str,
    *,
    headers: Optional[dict[str, str]] = None,
    **extra: object,
) -> JSONResponse:
    body: dict[str, object] = {"success": False, "error": error, "message": message}
    body.update(extra)
    return JSONResponse(status_code=status_code, content=body, headers=headers)


@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError):
    return error_response(exc.status_code, exc.error, exc.message)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    problems = []
    for err in exc.errors():
        field = ".".join(str(part) for part in err.get("loc", ())[1:]) or "body"
        problems.append(f"{field}: {err.get('msg')}")
    return error_response(400, "missing_parameters", "; ".join(problems))


@app.exception_handler(TokenExpired)
async def token_expired_handler(request: Request, exc: TokenExpired):
    return error_response(401, "token_expired", str(exc))


@app.exception_handler(ResourceNotFound)
async def not_found_handler(request: Request, exc: ResourceNotFound):
    return error_response(404, exc.code, str(exc))


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return error_response(400, "invalid_request", str(exc))


@app.exception_handler(BankAuthError)
async def bank_auth_handler(request: Request, exc: BankAuthError):
    status = exc.status_code if exc.status_code in (401, 403) else 401
    return error_response(status, "bank_auth_failed", str(exc))


@app.exception_handler(BankRateLimitError)
async def bank_rate_limit_handler(request: Request, exc: BankRateLimitError):
    headers = {"Retry-After": exc.retry_after} if exc.retry_after else None
    return error_response(
        429, "rate_limited", str(exc), headers=headers, retryAfter=exc.retry_after
    )


@app.exception_handler(BankApiError)
async def bank_api_handler(request: Request, exc: BankApiError):
    logger.error(f"bank_api_failed: path={request.url.path} error={exc}")
    return error_response(500, "sync_failed", str(exc))


@app.exception_handler(OAuthConfigError)
async def oauth_config_handler(request: Request, exc: OAuthConfigError):
    return error_response(500, "oauth_not_configured", str(exc))


@app.exception_handler(OAuthError)
async def oauth_error_handler(request: Request, exc: OAuthError):
    if exc.status_code in (400, 401, 403):
        return error_response(401, "oauth_rejected", str(exc))
    return error_response(500, "oauth_failed", str(exc))


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError):
    logger.exception(f"database_error: path={request.url.path}")
    return error_response(500, "database_error", "Database operation failed")


def _resolve_month(year: Optional[int], month: Optional[int]) -> tuple[int, int]:
    today = local_today()
    return (year or today.year, month or today.month)


def _account_dict(account: Account) -> dict:
    return {
        "id": account.id,
        "key": account.key,
        "accountNumber": account.account_number,
        "iban": account.iban,
        "name": account.name,
        "description": account.description,
        "type": account.type,
        "productType": account.product_type,
        "balance": float(account.balance) if account.balance is not None else None,
        "availableBalance": (
            float(account.available_balance)
            if account.available_balance is not None
            else None
        ),
        "currencyCode": account.currency_code,
        "syncedAt": account.synced_at.isoformat() if account.synced_at else None,
    }


def _transaction_dict(txn: Transaction) -> dict:
    account = txn.account
    return {
        "id": txn.id,
        "sparebank1Id": txn.sparebank1_id,
        "description": txn.description,
        "cleanedDescription": txn.cleaned_description,
        "amount": float(txn.amount),
        "date": from_millis(txn.date).isoformat(),
        "dateMs": txn.date,
        "currencyCode": txn.currency_code,
        "typeCode": txn.type_code,
        "source": txn.source,
        "bookingStatus": txn.booking_status,
        "isConfidential": txn.is_confidential,
        "remoteAccountName": txn.remote_account_name,
        "remoteAccountNumber": txn.remote_account_number,
        "merchant": txn.merchant,
        "account": (
            {
                "id": account.id,
                "name": account.name,
                "accountNumber": account.account_number,
                "type": account.type,
            }
            if account
            else None
        ),
        "createdAt": txn.created_at.isoformat(),
    }


def _category_dict(category: BudgetCategory) -> dict:
    return {
        "id": category.id,
        "name": category.name,
        "icon": category.icon,
        "color": category.color,
        "isIncome": category.is_income,
    }


def _budget_dict(budget: Budget) -> dict:
    return {
        "id": budget.id,
        "category": _category_dict(budget.category),
        "month": budget.month,
        "year": budget.year,
        "budgetedAmount": float(budget.budgeted_amount),
        "alertPercentage": budget.alert_percentage,
        "isActive": budget.is_active,
    }


def _goal_dict(goal: MonthlyBudgetGoal) -> dict:
    return {
        "id": goal.id,
        "month": goal.month,
        "year": goal.year,
        "totalBudget": float(goal.total_budget),
        "notes": goal.notes,
    }


@app.get("/health")
def health():
    return ok({"status": "ok", "version": APP_VERSION})


@app.post("/oauth/authorize")
def oauth_authorize(
    payload: AuthorizeRequest, oauth: OAuthClient = Depends(get_oauth_client)
):
    state = payload.state
    if not state or not validate_state(state):
        state = generate_state()
    return ok({"authorizationUrl": oauth.authorization_url(state), "state": state})


@app.post("/oauth/exchange")
def oauth_exchange(
    payload: TokenExchangeRequest, oauth: OAuthClient = Depends(get_oauth_client)
):
    if not validate_state(payload.state):
        raise ApiError(400, "invalid_state", "OAuth state is invalid or has expired")
    credentials = oauth.exchange_code(payload.code, payload.state)
    return ok(credentials.as_dict(), message="Token exchange successful")


@app.post("/oauth/refresh")
def oauth_refresh(
    payload: TokenRefreshRequest, oauth: OAuthClient = Depends(get_oauth_client)
):
    credentials = oauth.refresh(payload.refresh_token)
    return ok(credentials.as_dict(), message="Token refreshed")


@app.post("/sync/accounts")
def sync_accounts(
    payload: SyncRequest,
    db: Session = Depends(get_db),
    client_factory: BankClientFactory = Depends(get_bank_client_factory),
):
    require_fresh_token(payload.expires_at)
    user = UserService(db).get_or_create(payload.user_email)
    with client_factory(payload.access_token) as client:
        outcome = SyncService(db, user.id, client).sync_accounts(force=payload.force)

    accounts = [_account_dict(a) for a in outcome.accounts]
    message = (
        "Accounts already synced today"
        if outcome.cached
        else f"Synced {len(accounts)} accounts"
    )
    return ok(
        {
            "accounts": accounts,
            "count": len(accounts),
            "cached": outcome.cached,
            "syncedAt": outcome.synced_at.isoformat(),
        },
        message=message,
    )


@app.post("/sync/transactions")
def sync_transactions(
    payload: SyncRequest,
    db: Session = Depends(get_db),
    client_factory: BankClientFactory = Depends(get_bank_client_factory),
):
    require_fresh_token(payload.expires_at)
    user = UserService(db).get_or_create(payload.user_email)
    with client_factory(payload.access_token) as client:
        outcome = SyncService(db, user.id, client).sync_transactions()

    result = outcome.result
    return ok(
        {
            "saved": result.saved,
            "skipped": result.skipped,
            "failed": result.failed,
            "total": outcome.total,
            "failures": [
                {"index": o.index, "error": o.error}
                for o in result.outcomes
                if isinstance(o, Failed)
            ],
            "dateRange": {
                "from": outcome.from_date.isoformat(),
                "to": outcome.to_date.isoformat(),
            },
        },
        message=(
            f"Saved {result.saved} new transactions, skipped {result.skipped}, "
            f"failed {result.failed}"
        ),
    )


@app.post("/transactions/cleanup-duplicates")
def cleanup_duplicates(payload: CleanupRequest, db: Session = Depends(get_db)):
    user = UserService(db).get_or_create(payload.user_email)
    result = DuplicateService(db, user.id).collapse()
    if not result.groups:
        return ok(result.as_dict(), message="No duplicate transactions found")
    return ok(
        result.as_dict(),
        message=f"Removed {result.duplicates_removed} duplicate transactions",
    )


@app.get("/transactions")
def list_transactions(
    user_email: str = Query(..., alias="userEmail", min_length=1),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    account_id: Optional[int] = Query(None, alias="accountId"),
    search: Optional[str] = None,
    from_date: Optional[date] = Query(None, alias="fromDate"),
    to_date: Optional[date] = Query(None, alias="toDate"),
    db: Session = Depends(get_db),
):
    user = UserService(db).get_or_create(user_email)
    result = TransactionService(db, user.id).list(
        page=page,
        limit=limit,
        account_id=account_id,
        search=search,
        from_ms=day_start_ms(from_date) if from_date else None,
        to_ms=day_end_ms(to_date) if to_date else None,
    )
    return ok(
        {
            "transactions": [_transaction_dict(t) for t in result.items],
            "pagination": {
                "page": result.page,
                "limit": result.limit,
                "total": result.total,
                "hasMore": result.has_more,
            },
        }
    )


@app.get("/budget/summary")
def budget_summary(
    user_email: str = Query(..., alias="userEmail", min_length=1),
    month: Optional[int] = Query(None, ge=1, le=12),
    year: Optional[int] = Query(None, ge=1970, le=3000),
    db: Session = Depends(get_db),
):
    user = UserService(db).get_or_create(user_email)
    year, month = _resolve_month(year, month)
    return ok(BudgetService(db, user.id).summary(year, month))


@app.get("/budget/analysis")
def budget_analysis(
    user_email: str = Query(..., alias="userEmail", min_length=1),
    year: Optional[int] = Query(None, ge=1970, le=3000),
    month: Optional[int] = Query(None, ge=1, le=12),
    db: Session = Depends(get_db),
):
    user = UserService(db).get_or_create(user_email)
    year, month = _resolve_month(year, month)
    return ok(BudgetService(db, user.id).analysis(year, month).as_dict())


@app.get("/budget/goal")
def get_budget_goal(
    user_email: str = Query(..., alias="userEmail", min_length=1),
    month: Optional[int] = Query(None, ge=1, le=12),
    year: Optional[int] = Query(None, ge=1970, le=3000),
    db: Session = Depends(get_db),
):
    user = UserService(db).get_or_create(user_email)
    year, month = _resolve_month(year, month)
    goal = BudgetService(db, user.id).get_goal(year, month)
    return ok({"goal": _goal_dict(goal) if goal else None})


@app.post("/budget/goal")
def set_budget_goal(payload: MonthlyGoalIn, db: Session = Depends(get_db)):
    user = UserService(db).get_or_create(payload.user_email)
    goal = BudgetService(db, user.id).set_goal(payload)
    return ok({"goal": _goal_dict(goal)}, message="Monthly budget goal saved")


@app.get("/budget/manage")
def list_budgets(
    user_email: str = Query(..., alias="userEmail", min_length=1),
    month: Optional[int] = Query(None, ge=1, le=12),
    year: Optional[int] = Query(None, ge=1970, le=3000),
    db: Session = Depends(get_db),
):
    user = UserService(db).get_or_create(user_email)
    year, month = _resolve_month(year, month)
    budgets = BudgetService(db, user.id).list_budgets(year, month)
    return ok({"budgets": [_budget_dict(b) for b in budgets]})


@app.post("/budget/manage")
def upsert_budget(payload: BudgetIn, db: Session = Depends(get_db)):
    user = UserService(db).get_or_create(payload.user_email)
    budget = BudgetService(db, user.id).upsert_budget(payload)
    return ok({"budget": _budget_dict(budget)}, message="Budget saved")


@app.get("/budget/categories")
def list_categories(
    include_income: bool = Query(True, alias="includeIncome"),
    db: Session = Depends(get_db),
):
    categories = BudgetService(db).list_categories(include_income=include_income)
    return ok({"categories": [_category_dict(c) for c in categories]})


@app.post("/budget/categories")
def initialize_categories(db: Session = Depends(get_db)):
    service = BudgetService(db)
    count = service.initialize_categories()
    categories = service.list_categories()
    return ok(
        {"categories": [_category_dict(c) for c in categories]},
        message=f"Initialized {count} budget categories",
    )


@app.get("/analytics")
def analytics(
    user_email: str = Query(..., alias="userEmail", min_length=1),
    month: Optional[int] = Query(None, ge=1, le=12),
    year: Optional[int] = Query(None, ge=1970, le=3000),
    db: Session = Depends(get_db),
):
    user = UserService(db).get_or_create(user_email)
    year, month = _resolve_month(year, month)
    return ok(AnalyticsService(db, user.id).overview(year, month))


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
