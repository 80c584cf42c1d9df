import logging
from datetime import datetime
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.templating import Jinja2Templates
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from auth import (
    SESSION_MAX_AGE_SECS,
    SessionUser,
    issue_session_token,
    optional_user,
    require_user,
)
from config import get_settings
from csrf import (
    CSRF_HEADER,
    SAFE_METHODS,
    generate_csrf_token,
    new_nonce,
    validate_csrf_token,
)
from database import check_connection, get_db
from models import Category, Expense, Payment, User
from schemas import (
    BalanceRow,
    BulkDeleteIn,
    CategoryIn,
    CategoryOut,
    CategoryRef,
    ExpenseIn,
    ExpenseOut,
    LoginIn,
    PaymentIn,
    PaymentOut,
    SeedDefaultsIn,
    SignupIn,
    UserOut,
)
from services import (
    CSVService,
    CategoryService,
    ExpenseFilters,
    ExpenseService,
    PaymentService,
    ReportService,
    ServiceError,
    StatsService,
    UserService,
    ValidationFailed,
    cents_to_amount,
)

settings = get_settings()
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Expense Ledger")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.client_origin],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", CSRF_HEADER],
)
templates = Jinja2Templates(directory="templates")


def _load_app_version() -> str:
    try:
        import tomllib
    except Exception:
        return "unknown"
    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except Exception:
        return "unknown"


APP_VERSION = _load_app_version()


def format_amount(cents: int) -> str:
    return f"{cents / 100:,.2f}"


templates.env.filters["amount"] = format_amount


@app.on_event("startup")
def startup_event():
    try:
        check_connection()
    except Exception as exc:
        logger.exception("startup: database unreachable")
        raise SystemExit(1) from exc


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    body: dict[str, object] = {"message": exc.message}
    if isinstance(exc, ValidationFailed):
        body["errors"] = [{"field": exc.field, "message": exc.message}]
    return JSONResponse(status_code=exc.status_code, content=body)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [
        {
            "field": ".".join(
                str(part) for part in err["loc"] if part not in ("body", "query", "path")
            ),
            "message": err["msg"],
        }
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400, content={"message": "Invalid input", "errors": errors}
    )


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"message": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"unhandled_error: method={request.method} path={request.url.path}")
    return JSONResponse(status_code=500, content={"message": "Internal server error"})


def require_csrf(request: Request) -> None:
    if request.method in SAFE_METHODS:
        return
    token = request.headers.get(CSRF_HEADER)
    nonce = request.cookies.get(settings.csrf_cookie_name)
    if not validate_csrf_token(token, nonce):
        raise HTTPException(status_code=403, detail="Invalid CSRF token")


def filters_from_request(request: Request) -> ExpenseFilters:
    category_param = request.query_params.get("category")
    query = request.query_params.get("search")
    category_id = None
    if category_param:
        try:
            category_id = int(category_param)
        except ValueError as exc:
            raise ValidationFailed("Invalid category", field="category") from exc
    return ExpenseFilters(category_id=category_id, query=query or None)


def parse_sort(raw: Optional[str]) -> tuple[str, str]:
    key, _, direction = (raw or "date:desc").partition(":")
    return key or "date", "asc" if direction.lower() == "asc" else "desc"


def _set_session_cookie(response: Response, user: User) -> None:
    response.set_cookie(
        settings.session_cookie_name,
        issue_session_token(user.id, user.email),
        max_age=SESSION_MAX_AGE_SECS,
        httponly=True,
        samesite="lax",
        secure=settings.cookie_secure,
    )


def user_out(user: User) -> dict:
    return UserOut.model_validate(user).model_dump(by_alias=True, mode="json")


def category_out(category: Category) -> dict:
    return CategoryOut(
        id=category.id, name=category.name, fields=category.fields or []
    ).model_dump(by_alias=True, mode="json")


def expense_out(expense: Expense) -> dict:
    category = expense.category
    return ExpenseOut(
        id=expense.id,
        category_id=expense.category_id,
        category=CategoryRef(id=category.id, name=category.name) if category else None,
        item_name=expense.item_name,
        amount=cents_to_amount(expense.amount_cents),
        date=expense.date,
        description=expense.description,
        custom_fields=expense.custom_fields or {},
    ).model_dump(by_alias=True, mode="json")


def payment_out(payment: Payment) -> dict:
    return PaymentOut(
        id=payment.id,
        category_id=payment.category_id,
        amount=cents_to_amount(payment.amount_cents),
        date=payment.date,
        note=payment.note,
    ).model_dump(by_alias=True, mode="json")


@app.get("/csrf-token")
def csrf_token(request: Request, response: Response):
    nonce = request.cookies.get(settings.csrf_cookie_name) or new_nonce()
    response.set_cookie(
        settings.csrf_cookie_name,
        nonce,
        httponly=True,
        samesite="lax",
        secure=settings.cookie_secure,
    )
    return {"csrfToken": generate_csrf_token(nonce)}


@app.post("/auth/signup", status_code=201, dependencies=[Depends(require_csrf)])
def signup(data: SignupIn, response: Response, db: Session = Depends(get_db)):
    user = UserService(db).signup(data)
    _set_session_cookie(response, user)
    return {"user": user_out(user)}


@app.post("/auth/login", dependencies=[Depends(require_csrf)])
def login(data: LoginIn, response: Response, db: Session = Depends(get_db)):
    user = UserService(db).authenticate(data.email, data.password)
    _set_session_cookie(response, user)
    return {"user": user_out(user)}


@app.post("/auth/logout", dependencies=[Depends(require_csrf)])
def logout(response: Response):
    response.delete_cookie(settings.session_cookie_name)
    return {"message": "Logged out"}


@app.get("/auth/me")
def me(
    session_user: Optional[SessionUser] = Depends(optional_user),
    db: Session = Depends(get_db),
):
    if session_user is None:
        return {"user": None}
    user = UserService(db).get(session_user.id)
    if user is None:
        return {"user": None}
    return {"user": user_out(user)}


@app.get("/categories")
def list_categories(
    user: SessionUser = Depends(require_user), db: Session = Depends(get_db)
):
    categories = CategoryService(db, user.id).list_all()
    return {"categories": [category_out(c) for c in categories]}


@app.post("/categories", status_code=201, dependencies=[Depends(require_csrf)])
def create_category(
    data: CategoryIn,
    user: SessionUser = Depends(require_user),
    db: Session = Depends(get_db),
):
    category = CategoryService(db, user.id).create(data)
    return {"category": category_out(category)}


@app.post("/categories/seed-default", dependencies=[Depends(require_csrf)])
def seed_default_categories(
    data: SeedDefaultsIn,
    user: SessionUser = Depends(require_user),
    db: Session = Depends(get_db),
):
    created = CategoryService(db, user.id).seed_defaults(data.names)
    return {"created": created}


@app.put("/categories/{category_id}", dependencies=[Depends(require_csrf)])
def update_category(
    category_id: int,
    data: CategoryIn,
    user: SessionUser = Depends(require_user),
    db: Session = Depends(get_db),
):
    category = CategoryService(db, user.id).update(category_id, data)
    return {"category": category_out(category)}


@app.delete("/categories/{category_id}", dependencies=[Depends(require_csrf)])
def delete_category(
    category_id: int,
    user: SessionUser = Depends(require_user),
    db: Session = Depends(get_db),
):
    CategoryService(db, user.id).delete(category_id)
    return {"message": "Deleted"}


@app.get("/expenses")
def list_expenses(
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1),
    sort: Optional[str] = Query(None),
    user: SessionUser = Depends(require_user),
    db: Session = Depends(get_db),
):
    filters = filters_from_request(request)
    sort_key, sort_dir = parse_sort(sort)
    items, total = ExpenseService(db, user.id).list(
        filters, page=page, limit=limit, sort_key=sort_key, sort_dir=sort_dir
    )
    return {
        "items": [expense_out(e) for e in items],
        "total": total,
        "page": page,
        "limit": min(limit, 100),
    }


@app.post("/expenses", status_code=201, dependencies=[Depends(require_csrf)])
def create_expense(
    data: ExpenseIn,
    user: SessionUser = Depends(require_user),
    db: Session = Depends(get_db),
):
    expense = ExpenseService(db, user.id).create(data)
    return {"expense": expense_out(expense)}


@app.get("/expenses/export/csv")
def export_expenses_csv(
    request: Request,
    user: SessionUser = Depends(require_user),
    db: Session = Depends(get_db),
):
    filters = filters_from_request(request)
    csv_text = CSVService(db, user.id).export(filters)
    logger.info(f"expense_export: user_id={user.id} format=csv bytes={len(csv_text)}")
    return StreamingResponse(
        iter([csv_text]),
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="expenses.csv"'},
    )


def render_pdf(data: dict[str, object], base_url: str) -> bytes:
    try:
        from weasyprint import CSS, HTML
    except Exception as exc:
        raise HTTPException(
            status_code=500,
            detail="PDF export requires WeasyPrint system dependencies; install them for your OS and retry.",
        ) from exc

    html = templates.env.get_template("expenses_report.html").render(**data)
    css = CSS(
        string="""
            @page {
                size: A4;
                margin: 18mm 16mm 20mm 16mm;
                @bottom-center {
                    content: "Page " counter(page) " of " counter(pages);
                    color: #64748b;
                    font-size: 9pt;
                }
            }
            body { font-family: sans-serif; color: #0f172a; font-size: 10pt; }
            h1 { text-align: center; font-size: 18pt; margin-bottom: 4mm; }
            .meta { color: #64748b; text-align: center; margin-bottom: 6mm; }
            table { width: 100%; border-collapse: collapse; }
            th, td { border-bottom: 1px solid #e2e8f0; padding: 2mm; text-align: left; }
            td.amount, th.amount { text-align: right; }
            tfoot td { font-weight: bold; }
        """
    )
    return HTML(string=html, base_url=base_url).write_pdf(stylesheets=[css])


@app.get("/expenses/export/pdf")
def export_expenses_pdf(
    request: Request,
    user: SessionUser = Depends(require_user),
    db: Session = Depends(get_db),
):
    filters = filters_from_request(request)
    start_time = datetime.now()
    data = ReportService(db, user.id).gather_data(filters)
    data["generated_at"] = datetime.now()
    data["app_version"] = APP_VERSION
    try:
        pdf_bytes = render_pdf(data, str(request.base_url))
    except HTTPException:
        raise
    except Exception as exc:
        logger.exception("Error generating PDF export")
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    duration = (datetime.now() - start_time).total_seconds()
    logger.info(
        f"expense_export: user_id={user.id} format=pdf rows={len(data['rows'])} "
        f"pdf_size_bytes={len(pdf_bytes)} duration={duration:.2f}s"
    )
    return StreamingResponse(
        iter([pdf_bytes]),
        media_type="application/pdf",
        headers={
            "Content-Disposition": 'attachment; filename="expenses.pdf"',
            "Content-Length": str(len(pdf_bytes)),
        },
    )


@app.post("/expenses/bulk-delete", dependencies=[Depends(require_csrf)])
def bulk_delete_expenses(
    data: BulkDeleteIn,
    user: SessionUser = Depends(require_user),
    db: Session = Depends(get_db),
):
    deleted = ExpenseService(db, user.id).bulk_delete(
        data.category_id, days=data.days, start=data.start, end=data.end
    )
    return {"deleted": deleted}


@app.put("/expenses/{expense_id}", dependencies=[Depends(require_csrf)])
def update_expense(
    expense_id: int,
    data: ExpenseIn,
    user: SessionUser = Depends(require_user),
    db: Session = Depends(get_db),
):
    expense = ExpenseService(db, user.id).update(expense_id, data)
    return {"expense": expense_out(expense)}


@app.delete("/expenses/{expense_id}", dependencies=[Depends(require_csrf)])
def delete_expense(
    expense_id: int,
    user: SessionUser = Depends(require_user),
    db: Session = Depends(get_db),
):
    ExpenseService(db, user.id).delete(expense_id)
    return {"message": "Deleted"}


@app.post("/payments", status_code=201, dependencies=[Depends(require_csrf)])
def record_payment(
    data: PaymentIn,
    user: SessionUser = Depends(require_user),
    db: Session = Depends(get_db),
):
    payment = PaymentService(db, user.id).record(data)
    return {"payment": payment_out(payment)}


@app.get("/payments/summary")
def payment_summary(
    category_id: Optional[int] = Query(None, alias="categoryId"),
    include_all: Optional[bool] = Query(None, alias="includeAll"),
    user: SessionUser = Depends(require_user),
    db: Session = Depends(get_db),
):
    service = PaymentService(db, user.id)
    rows = service.summary(category_id, include_all=include_all)
    summary = [
        BalanceRow(
            category_id=row["category_id"],
            name=row["name"],
            total_expenses=cents_to_amount(row["total_expenses_cents"]),
            total_paid=cents_to_amount(row["total_paid_cents"]),
            balance=cents_to_amount(row["balance_cents"]),
        ).model_dump(by_alias=True, mode="json")
        for row in rows
    ]
    payments = []
    if category_id is not None:
        payments = [payment_out(p) for p in service.history(category_id)]
    return {"summary": summary, "payments": payments}


@app.get("/stats/summary")
def stats_summary(
    user: SessionUser = Depends(require_user), db: Session = Depends(get_db)
):
    data = StatsService(db, user.id).summary()
    return {
        "byCategory": [
            {
                "categoryId": row["category_id"],
                "name": row["name"],
                "total": cents_to_amount(row["total_cents"]),
            }
            for row in data["by_category"]
        ],
        "byDate": [
            {"date": row["date"], "total": cents_to_amount(row["total_cents"])}
            for row in data["by_date"]
        ],
    }


def main():
    import uvicorn

    uvicorn.run("main:app", host=settings.host, port=settings.port, reload=False)


if __name__ == "__main__":
    main()
