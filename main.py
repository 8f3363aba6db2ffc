import logging
import platform
import time
from datetime import datetime
from pathlib import Path
from typing import Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import DisconnectionError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import get_settings
from database import Store
from errors import FinanceError, StorageUnavailable
from models import Budget, Transaction, TransactionType, User
from money import cents_to_amount
from periods import resolve_range, utc_now_iso
from schemas import (
    BalanceAdjustmentIn,
    BudgetIn,
    LoginIn,
    TransactionIn,
    TransactionUpdateIn,
    UserIn,
    UserUpdateIn,
)
from services import (
    BudgetService,
    StatsService,
    TransactionFilters,
    TransactionService,
    UserService,
)

logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent

app = FastAPI(title="Finance Tracker")


def _load_app_version() -> str:
    try:
        import tomllib
    except ImportError:
        return "unknown"
    try:
        with open(BASE_DIR / "pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except (OSError, tomllib.TOMLDecodeError):
        return "unknown"


APP_VERSION = _load_app_version()
STARTED_AT = time.monotonic()


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def serialize_user(user: User, *, include_balance: bool = True) -> dict[str, object]:
    data: dict[str, object] = {"id": user.id, "name": user.name, "email": user.email}
    if include_balance:
        data["balance"] = cents_to_amount(user.balance_cents)
    return data


def serialize_transaction(txn: Transaction) -> dict[str, object]:
    return {
        "id": txn.id,
        "userId": txn.user_id,
        "amount": cents_to_amount(txn.amount_cents),
        "type": txn.type.value,
        "category": txn.category,
        "description": txn.description,
        "date": _iso(txn.date),
        "createdAt": _iso(txn.created_at),
        "updatedAt": _iso(txn.updated_at),
    }


def serialize_budget(budget: Budget) -> dict[str, object]:
    return {
        "id": budget.id,
        "userId": budget.user_id,
        "month": budget.month,
        "year": budget.year,
        "totalBudget": cents_to_amount(budget.total_budget_cents),
        "spentAmount": cents_to_amount(budget.spent_amount_cents),
        "remainingBudget": cents_to_amount(budget.remaining_budget_cents),
        "categories": [
            {
                "name": c.name.value,
                "budgetAmount": cents_to_amount(c.budget_amount_cents),
                "spentAmount": cents_to_amount(c.spent_amount_cents),
            }
            for c in budget.categories
        ],
        "createdAt": _iso(budget.created_at),
        "updatedAt": _iso(budget.updated_at),
    }


def get_store(request: Request) -> Store:
    return request.app.state.store


def get_db(store: Store = Depends(get_store)):
    db = store.session()
    try:
        yield db
    finally:
        db.close()


def _storage_details(store: Store) -> dict[str, object]:
    return {"connectionState": store.state.value, "state": store.state.name}


def require_storage(store: Store = Depends(get_store)) -> None:
    if not store.ping():
        raise StorageUnavailable(
            "Database connection error", details=_storage_details(store)
        )


writes = [Depends(require_storage)]


@app.on_event("startup")
def startup_event():
    settings = get_settings()
    store = getattr(app.state, "store", None)
    if store is None:
        store = Store.from_settings()
        app.state.store = store
    try:
        store.init(create_schema=settings.create_schema)
    except SQLAlchemyError:
        logger.error("startup: store unavailable, refusing writes until it recovers")


@app.on_event("shutdown")
def shutdown_event():
    store = getattr(app.state, "store", None)
    if store is not None:
        store.dispose()


@app.exception_handler(FinanceError)
async def finance_error_handler(request: Request, exc: FinanceError):
    content: dict[str, object] = {"success": False, "message": exc.message}
    if isinstance(exc, StorageUnavailable):
        content.update(exc.details)
        logger.error(f"storage_unavailable: path={request.url.path} {exc.details}")
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    message = "Invalid input"
    errors = exc.errors()
    if errors:
        first = errors[0]
        loc = [
            str(p)
            for p in first.get("loc", ())
            if p not in ("body", "query", "path")
        ]
        message = str(first.get("msg"))
        if loc:
            message = f"{'.'.join(loc)}: {message}"
    return JSONResponse(status_code=400, content={"success": False, "message": message})


@app.exception_handler(OperationalError)
@app.exception_handler(DisconnectionError)
async def storage_error_handler(request: Request, exc: SQLAlchemyError):
    store: Store = request.app.state.store
    logger.error(
        f"storage_error: path={request.url.path} error={exc.__class__.__name__}"
    )
    content: dict[str, object] = {
        "success": False,
        "message": "Database connection error",
    }
    content.update(_storage_details(store))
    return JSONResponse(status_code=503, content=content)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": str(exc.detail)},
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception(f"unexpected_error: path={request.url.path}")
    return JSONResponse(
        status_code=500, content={"success": False, "message": "Server error"}
    )


@app.get("/health")
def health(store: Store = Depends(get_store)):
    database = store.health()
    healthy = bool(database.pop("healthy"))
    payload = {
        "status": "healthy" if healthy else "unhealthy",
        "timestamp": utc_now_iso(),
        "database": database,
        "server": {
            "uptime": round(time.monotonic() - STARTED_AT, 3),
            "python": platform.python_version(),
            "version": APP_VERSION,
        },
    }
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={"success": healthy, "data": payload},
    )


@app.post("/user", status_code=201, dependencies=writes)
def create_user(data: UserIn, db: Session = Depends(get_db)):
    user = UserService(db).create(data)
    return {
        "success": True,
        "message": "User created successfully",
        "data": serialize_user(user, include_balance=False),
    }


@app.post("/user/login")
def login_user(data: LoginIn, db: Session = Depends(get_db)):
    user = UserService(db).authenticate(data)
    return {"success": True, "data": serialize_user(user)}


@app.get("/user/{user_id}")
def get_user(user_id: str, db: Session = Depends(get_db)):
    user = UserService(db).get(user_id)
    return {"success": True, "data": serialize_user(user)}


@app.put("/user/{user_id}", dependencies=writes)
def update_user(user_id: str, data: UserUpdateIn, db: Session = Depends(get_db)):
    user = UserService(db).update_profile(user_id, data)
    return {"success": True, "data": serialize_user(user, include_balance=False)}


@app.post("/user/{user_id}/balance", dependencies=writes)
def adjust_balance(
    user_id: str, data: BalanceAdjustmentIn, db: Session = Depends(get_db)
):
    user = UserService(db).adjust_balance(user_id, data)
    return {"success": True, "data": {"balance": cents_to_amount(user.balance_cents)}}


@app.get("/transactions/{user_id}")
def list_transactions(
    user_id: str,
    page: int = 1,
    limit: int = 10,
    type: Optional[str] = None,
    start_date: Optional[str] = Query(default=None, alias="startDate"),
    end_date: Optional[str] = Query(default=None, alias="endDate"),
    month: Optional[int] = None,
    year: Optional[int] = None,
    db: Session = Depends(get_db),
):
    txn_type = None
    if type:
        try:
            txn_type = TransactionType(type)
        except ValueError:
            txn_type = None
    start, end = resolve_range(start_date, end_date, month, year)
    result = TransactionService(db, user_id).list(
        TransactionFilters(type=txn_type, start=start, end=end),
        page=page,
        limit=limit,
    )
    return {
        "success": True,
        "data": {
            "transactions": [serialize_transaction(t) for t in result.items],
            "totalPages": result.total_pages,
            "currentPage": result.page,
            "total": result.total,
        },
    }


@app.get("/transactions/{user_id}/stats")
def transaction_stats(
    user_id: str,
    start_date: Optional[str] = Query(default=None, alias="startDate"),
    end_date: Optional[str] = Query(default=None, alias="endDate"),
    db: Session = Depends(get_db),
):
    start, end = resolve_range(start_date, end_date)
    stats = StatsService(db, user_id).transaction_stats(start, end)
    return {
        "success": True,
        "data": {
            "income": cents_to_amount(stats.income_cents),
            "expenses": cents_to_amount(stats.expense_cents),
            "balance": cents_to_amount(stats.balance_cents),
            "totalTransactions": stats.total_count,
            "incomeTransactions": stats.income_count,
            "expenseTransactions": stats.expense_count,
        },
    }


@app.get("/transactions/{user_id}/{transaction_id}")
def get_transaction(user_id: str, transaction_id: str, db: Session = Depends(get_db)):
    txn = TransactionService(db, user_id).get(transaction_id)
    return {"success": True, "data": serialize_transaction(txn)}


@app.post("/transactions/{user_id}", status_code=201, dependencies=writes)
def create_transaction(
    user_id: str, data: TransactionIn, db: Session = Depends(get_db)
):
    result = TransactionService(db, user_id).create(data)
    return {
        "success": True,
        "message": "Transaction added successfully",
        "data": {
            "transaction": serialize_transaction(result.transaction),
            "newBalance": cents_to_amount(result.balance_cents),
        },
    }


@app.put("/transactions/{user_id}/{transaction_id}", dependencies=writes)
def update_transaction(
    user_id: str,
    transaction_id: str,
    data: TransactionUpdateIn,
    db: Session = Depends(get_db),
):
    result = TransactionService(db, user_id).update(transaction_id, data)
    return {
        "success": True,
        "message": "Transaction updated successfully",
        "data": {
            "transaction": serialize_transaction(result.transaction),
            "newBalance": cents_to_amount(result.balance_cents),
        },
    }


@app.delete("/transactions/{user_id}/{transaction_id}", dependencies=writes)
def delete_transaction(
    user_id: str, transaction_id: str, db: Session = Depends(get_db)
):
    result = TransactionService(db, user_id).delete(transaction_id)
    return {
        "success": True,
        "message": "Transaction deleted successfully",
        "data": {
            "deletedTransaction": serialize_transaction(result.transaction),
            "newBalance": cents_to_amount(result.balance_cents),
        },
    }


@app.get("/budget/{user_id}")
def get_budget(
    user_id: str,
    month: Optional[int] = None,
    year: Optional[int] = None,
    db: Session = Depends(get_db),
):
    budget = BudgetService(db, user_id).get_or_create_current(month, year)
    return {"success": True, "data": serialize_budget(budget)}


@app.get("/budget/{user_id}/stats")
def budget_stats(user_id: str, db: Session = Depends(get_db)):
    stats = BudgetService(db, user_id).stats()
    budget = stats.budget
    return {
        "success": True,
        "data": {
            "totalBudget": cents_to_amount(budget.total_budget_cents),
            "spentAmount": cents_to_amount(budget.spent_amount_cents),
            "remainingBudget": cents_to_amount(budget.remaining_budget_cents),
            "percentageUsed": stats.percentage_used,
            "categoryBreakdown": [
                {
                    "category": row.category,
                    "totalSpent": cents_to_amount(row.total_cents),
                    "transactionCount": row.count,
                }
                for row in stats.breakdown
            ],
            "month": budget.month,
            "year": budget.year,
        },
    }


@app.get("/budget/{user_id}/history")
def budget_history(user_id: str, limit: int = 12, db: Session = Depends(get_db)):
    budgets = BudgetService(db, user_id).history(limit)
    return {"success": True, "data": [serialize_budget(b) for b in budgets]}


@app.post("/budget/{user_id}", dependencies=writes)
def upsert_budget(user_id: str, data: BudgetIn, db: Session = Depends(get_db)):
    budget = BudgetService(db, user_id).upsert(data)
    return {
        "success": True,
        "message": "Budget updated successfully",
        "data": serialize_budget(budget),
    }


@app.delete("/budget/{user_id}/{month}/{year}", dependencies=writes)
def delete_budget(user_id: str, month: int, year: int, db: Session = Depends(get_db)):
    budget = BudgetService(db, user_id).delete(month, year)
    return {
        "success": True,
        "message": "Budget deleted successfully",
        "data": serialize_budget(budget),
    }


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
