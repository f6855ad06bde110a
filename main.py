import logging
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from access import (
    SESSION_COOKIE,
    AccessGate,
    LoginRateLimiter,
    SessionSigner,
    current_user,
)
from config import get_settings
from database import SessionLocal, init_db, session_scope
from errors import AuthenticationError, BudgetyError, RateLimitedError, ValidationError
from models import User
from money import parse_amount
from periods import Month, month_or_current, parse_bound, resolve_period
from schemas import (
    BudgetOverrideIn,
    BudgetUpdateRequest,
    CategoryIn,
    DefaultBudgetIn,
    LoginIn,
    TransactionCreateRequest,
    TransactionIn,
)
from services import (
    BudgetService,
    CategoryService,
    SummaryService,
    TransactionFilters,
    TransactionService,
    UserService,
    transaction_view,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Budgety")

login_limiter = LoginRateLimiter.from_settings(get_settings())
session_signer = SessionSigner.from_settings(get_settings())


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_login_limiter() -> LoginRateLimiter:
    return login_limiter


def get_session_signer() -> SessionSigner:
    return session_signer


def require_user(
    request: Request,
    db: Session = Depends(get_db),
    signer: SessionSigner = Depends(get_session_signer),
) -> User:
    user = current_user(db, signer, request.cookies.get(SESSION_COOKIE))
    if user is None:
        raise AuthenticationError("Not authenticated")
    return user


@app.on_event("startup")
def startup_event():
    logging.basicConfig(level=logging.INFO)
    settings = get_settings()
    init_db()
    with session_scope() as session:
        UserService(session).ensure_seeded(settings.owner_name, settings.partner_name)
    logger.info("startup: schema ready, users seeded")


@app.exception_handler(BudgetyError)
async def budgety_error_handler(request: Request, exc: BudgetyError):
    headers = {}
    if isinstance(exc, RateLimitedError) and exc.retry_after:
        headers["Retry-After"] = str(exc.retry_after)
    return JSONResponse(
        {"error": exc.message}, status_code=exc.status_code, headers=headers
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse({"error": _first_error(exc.errors())}, status_code=400)


@app.exception_handler(SQLAlchemyError)
async def store_error_handler(request: Request, exc: SQLAlchemyError):
    logger.exception("Unhandled store error")
    return JSONResponse({"error": "Temporary failure, please retry"}, status_code=503)


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error")
    return JSONResponse({"error": "Internal server error"}, status_code=500)


def _first_error(errors) -> str:
    if not errors:
        return "Invalid request"
    first = errors[0]
    where = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid value")
    return f"{where}: {message}" if where else message


def client_identifier(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client:
        return request.client.host
    return "unknown"


def filters_from_request(request: Request) -> TransactionFilters:
    params = request.query_params
    raw_ids = params.getlist("category_ids") + params.getlist("categoryIds[]")
    return TransactionFilters.from_params(raw_ids, params.get("payer"))


def user_payload(user: User) -> dict[str, object]:
    return {
        "id": user.id.value,
        "display_name": user.display_name,
        "is_owner": user.is_owner,
    }


def category_payload(category) -> dict[str, object]:
    return {
        "id": category.id,
        "name": category.name,
        "default_budget_cents": category.default_budget_cents,
    }


@app.get("/healthz")
def healthz():
    return {"status": "ok"}


@app.post("/api/auth/login")
def login(
    payload: LoginIn,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    limiter: LoginRateLimiter = Depends(get_login_limiter),
    signer: SessionSigner = Depends(get_session_signer),
):
    settings = get_settings()
    gate = AccessGate(db, limiter, settings.auth_code)
    user = gate.login(client_identifier(request), payload.user_id, payload.code)
    response.set_cookie(
        SESSION_COOKIE,
        signer.dumps(user.id),
        max_age=signer.max_age_secs,
        httponly=True,
        secure=request.url.scheme == "https",
        samesite="lax",
    )
    return {"success": True, "user": user_payload(user)}


@app.post("/api/auth/logout")
def logout(response: Response):
    response.delete_cookie(SESSION_COOKIE)
    return {"success": True}


@app.get("/api/me")
def me(user: User = Depends(require_user)):
    return user_payload(user)


@app.get("/api/categories")
def list_categories(
    db: Session = Depends(get_db), user: User = Depends(require_user)
):
    return [category_payload(c) for c in CategoryService(db).list_all()]


@app.post("/api/categories")
def create_category(
    payload: CategoryIn,
    db: Session = Depends(get_db),
    user: User = Depends(require_user),
):
    category = CategoryService(db).create(payload)
    return category_payload(category)


@app.get("/api/budgets")
def get_budgets(
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_user),
):
    month = month_or_current(request.query_params.get("month"))
    return BudgetService(db).budgets_for_month(month)


@app.put("/api/budgets")
def update_budget(
    payload: BudgetUpdateRequest,
    db: Session = Depends(get_db),
    user: User = Depends(require_user),
):
    if payload.type == "default":
        amount_cents = (
            None
            if payload.amount is None or payload.amount == ""
            else parse_amount(payload.amount)
        )
        category = CategoryService(db).set_default_budget(
            DefaultBudgetIn(category_id=payload.category_id, amount_cents=amount_cents)
        )
        return category_payload(category)

    if payload.amount is None:
        raise ValidationError("Amount is required")
    month = Month.parse(payload.month or "")
    override = BudgetService(db).upsert_override(
        BudgetOverrideIn(
            category_id=payload.category_id,
            year=month.year,
            month=month.month,
            amount_cents=parse_amount(payload.amount),
        )
    )
    return {
        "id": override.id,
        "category_id": override.category_id,
        "month": override.month_key,
        "amount_cents": override.amount_cents,
    }


@app.delete("/api/budgets/overrides/{category_id}/{month}")
def clear_override(
    category_id: int,
    month: str,
    db: Session = Depends(get_db),
    user: User = Depends(require_user),
):
    removed = BudgetService(db).clear_override(category_id, Month.parse(month))
    return {"success": True, "removed": removed}


@app.get("/api/transactions")
def list_transactions(
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_user),
):
    filters = filters_from_request(request)
    start = parse_bound(request.query_params.get("from"), end_of_day=False)
    end = parse_bound(request.query_params.get("to"), end_of_day=True)
    items = TransactionService(db).list(filters, start=start, end=end)
    return [transaction_view(txn) for txn in items]


@app.post("/api/transactions")
def create_transaction(
    payload: TransactionCreateRequest,
    db: Session = Depends(get_db),
    user: User = Depends(require_user),
):
    try:
        data = TransactionIn(
            amount_cents=parse_amount(payload.amount, allow_zero=False),
            category_id=payload.category_id,
            category_name=payload.category_name,
            occurred_at=payload.occurred_at,
            note=payload.note,
        )
    except PydanticValidationError as exc:
        raise ValidationError(_first_error(exc.errors())) from exc
    txn = TransactionService(db).create(data, payer=user.id)
    return transaction_view(txn)


@app.delete("/api/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(require_user),
):
    TransactionService(db).delete(transaction_id, actor=user)
    return {"success": True}


@app.get("/api/summary")
def get_summary(
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_user),
):
    params = request.query_params
    period = resolve_period(
        params.get("period") or "this-month", params.get("from"), params.get("to")
    )
    filters = filters_from_request(request)
    return SummaryService(db).summary(period, filters).to_payload()


def main(host: Optional[str] = None, port: int = 8000):
    import uvicorn

    uvicorn.run("main:app", host=host or "0.0.0.0", port=port, reload=False)


if __name__ == "__main__":
    main()
