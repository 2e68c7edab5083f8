import logging
import math
from datetime import date
from typing import Literal, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from auth import current_user
from config import get_settings
from csv_utils import monthly_report_csv, yearly_report_csv
from database import get_db
from errors import (
    BusinessRuleError,
    ConflictError,
    DomainError,
    ExportUnavailableError,
    NotFoundError,
    ValidationError,
)
from exports import format_export
from formatting import MONTH_ABBREVIATIONS, cents_to_units
from mailer import Mailer
from models import CategoryType, TransactionType, User
from notifications import NotificationService, build_custom_alerts
from periods import month_period, parse_month, parse_range, resolve_period
from scheduler import AlertScheduler
from schemas import (
    AlertCheckIn,
    CategoryIn,
    CategoryUpdateIn,
    CustomAlertIn,
    MultipleAlertsIn,
    ProfileIn,
    SendEmailIn,
    TransactionBody,
)
from services import (
    CategoryService,
    MetricsService,
    ReportService,
    StatisticsService,
    TransactionFilters,
    TransactionService,
    UserService,
    local_today,
    serialize_category,
    serialize_transaction,
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(title="MoneyWise API")
app.state.alert_scheduler = AlertScheduler()

STATUS_BY_ERROR = (
    (ValidationError, 400),
    (NotFoundError, 404),
    (ConflictError, 409),
    (BusinessRuleError, 409),
)


@app.on_event("startup")
def startup_event():
    app.state.alert_scheduler.start()


@app.on_event("shutdown")
def shutdown_event():
    app.state.alert_scheduler.stop()


def _error(status_code: int, message: str, code: str, **extra) -> JSONResponse:
    body = {"message": message, "code": code}
    body.update(extra)
    return JSONResponse(status_code=status_code, content=body)


@app.exception_handler(DomainError)
def domain_error_handler(request: Request, exc: DomainError):
    status_code = 400
    for error_type, status in STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            status_code = status
            break
    return _error(status_code, str(exc), exc.code)


@app.exception_handler(SQLAlchemyError)
def database_error_handler(request: Request, exc: SQLAlchemyError):
    logger.exception(f"database_error: path={request.url.path}")
    return _error(
        503,
        "The database is temporarily unavailable, please retry",
        "database_unavailable",
        retryable=True,
    )


@app.exception_handler(ExportUnavailableError)
def export_unavailable_handler(request: Request, exc: ExportUnavailableError):
    return _error(500, str(exc), exc.code)


@app.exception_handler(RequestValidationError)
def request_validation_handler(request: Request, exc: RequestValidationError):
    details = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        details.append(f"{location}: {err.get('msg')}" if location else err.get("msg"))
    return _error(400, "; ".join(details) or "Invalid request", "validation_error")


@app.exception_handler(StarletteHTTPException)
def http_error_handler(request: Request, exc: StarletteHTTPException):
    response = _error(exc.status_code, str(exc.detail), "http_error")
    if exc.status_code == 401:
        response.headers["WWW-Authenticate"] = "Bearer"
    return response


def get_mailer() -> Mailer:
    return Mailer()


def get_alert_scheduler(request: Request) -> AlertScheduler:
    return request.app.state.alert_scheduler


def serialize_user(user: User) -> dict[str, object]:
    return {
        "id": user.id,
        "email": user.email,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "email_verified": user.email_verified,
    }


def attachment(payload, filename: str, content_type: str) -> Response:
    return Response(
        content=payload,
        media_type=content_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# Profile


@app.get("/api/profile")
def get_profile(user: User = Depends(current_user)):
    return serialize_user(user)


@app.put("/api/profile")
def update_profile(
    data: ProfileIn,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    updated = UserService(db).update_profile(user.id, data)
    return {"message": "Profile updated", "user": serialize_user(updated)}


# Categories


@app.get("/api/categories")
def list_categories(
    type: Optional[CategoryType] = None,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    categories = CategoryService(db, user.id).list_all(type)
    return {"categories": [serialize_category(c) for c in categories]}


@app.get("/api/categories/stats")
def category_stats(user: User = Depends(current_user), db: Session = Depends(get_db)):
    return {"categories": MetricsService(db, user.id).category_statistics()}


@app.post("/api/categories/defaults", status_code=201)
def create_default_categories(
    user: User = Depends(current_user), db: Session = Depends(get_db)
):
    created = CategoryService(db, user.id).create_defaults()
    return {
        "message": f"{len(created)} default categories created",
        "categories": [serialize_category(c) for c in created],
    }


@app.post("/api/categories/reset")
def reset_categories(user: User = Depends(current_user), db: Session = Depends(get_db)):
    CategoryService(db, user.id).reset_defaults()
    categories = CategoryService(db, user.id).list_all()
    return {
        "message": "Categories reset to defaults",
        "categories": [serialize_category(c) for c in categories],
    }


@app.get("/api/categories/{category_id}")
def get_category(
    category_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    service = CategoryService(db, user.id)
    category = service.get(category_id)
    data = serialize_category(category)
    data["transaction_count"] = service.transaction_count(category.id)
    return data


@app.post("/api/categories", status_code=201)
def create_category(
    data: CategoryIn, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    category = CategoryService(db, user.id).create(data)
    return {"message": "Category created", "category": serialize_category(category)}


@app.put("/api/categories/{category_id}")
def update_category(
    category_id: int,
    data: CategoryUpdateIn,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    category = CategoryService(db, user.id).update(category_id, data)
    return {"message": "Category updated", "category": serialize_category(category)}


@app.delete("/api/categories/{category_id}")
def delete_category(
    category_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    CategoryService(db, user.id).delete(category_id)
    return {"message": "Category deleted"}


# Transactions


def _page_payload(items, total: int, page: int, limit: int) -> dict[str, object]:
    return {
        "transactions": [serialize_transaction(txn) for txn in items],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit) if total else 0,
        },
    }


@app.get("/api/transactions")
def list_transactions(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    type: Optional[TransactionType] = None,
    category_id: Optional[int] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    if start_date and end_date and start_date > end_date:
        raise ValidationError("Start date must be before end date")
    service = TransactionService(db, user.id)
    filters = TransactionFilters(
        type=type, category_id=category_id, start=start_date, end=end_date
    )
    items = service.list(filters, limit=limit, offset=(page - 1) * limit)
    return _page_payload(items, service.count(filters), page, limit)


@app.get("/api/transactions/balance/summary")
def balance_summary(user: User = Depends(current_user), db: Session = Depends(get_db)):
    summary = StatisticsService(db, user.id).overall_summary()
    return {
        "balance": summary["balance"],
        "total_income": summary["total_income"],
        "total_expense": summary["total_expense"],
    }


@app.get("/api/transactions/stats/monthly/{year}/{month}")
def transaction_monthly_stats(
    year: int,
    month: int,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    stats = StatisticsService(db, user.id).monthly_statistics(year, month)
    return {"year": year, "month": month, "statistics": stats.as_dict()}


@app.get("/api/transactions/stats/by-category")
def transaction_stats_by_category(
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    type: TransactionType = TransactionType.expense,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    period = parse_range(start_date, end_date)
    metrics = MetricsService(db, user.id)
    breakdown = metrics.with_percentages(metrics.breakdown_by_category(period, type))
    return {"breakdown": breakdown}


@app.get("/api/transactions/stats/trend/{year}")
def transaction_trend(
    year: int, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    return {"year": year, "trend": MetricsService(db, user.id).monthly_trend(year)}


@app.get("/api/transactions/by-category/{category_id}")
def transactions_by_category(
    category_id: int,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    CategoryService(db, user.id).get(category_id)
    service = TransactionService(db, user.id)
    filters = TransactionFilters(
        category_id=category_id, start=start_date, end=end_date
    )
    items = service.list(filters, limit=limit, offset=(page - 1) * limit)
    return _page_payload(items, service.count(filters), page, limit)


@app.get("/api/transactions/{transaction_id}")
def get_transaction(
    transaction_id: int,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    return serialize_transaction(TransactionService(db, user.id).get(transaction_id))


@app.post("/api/transactions", status_code=201)
def create_transaction(
    body: TransactionBody,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    txn = TransactionService(db, user.id).create(body.to_transaction_in())
    return {"message": "Transaction created", "transaction": serialize_transaction(txn)}


@app.put("/api/transactions/{transaction_id}")
def update_transaction(
    transaction_id: int,
    body: TransactionBody,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    txn = TransactionService(db, user.id).update(
        transaction_id, body.to_transaction_in()
    )
    return {"message": "Transaction updated", "transaction": serialize_transaction(txn)}


@app.delete("/api/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    TransactionService(db, user.id).delete(transaction_id)
    return {"message": "Transaction deleted"}


# Dashboard


@app.get("/api/dashboard/summary")
def dashboard_summary(
    year: Optional[int] = None,
    month: Optional[int] = None,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    today = local_today()
    if year is None:
        year = today.year
    if month is None:
        month = today.month
    period = month_period(year, month)
    statistics = StatisticsService(db, user.id)
    metrics = MetricsService(db, user.id)
    stats = statistics.monthly_statistics(year, month)
    return {
        "balance": cents_to_units(statistics.overall_balance()),
        "total_income": cents_to_units(stats.total_income_cents),
        "total_expense": cents_to_units(stats.total_expense_cents),
        "monthly_statistics": stats.as_dict(),
        "expenses_by_category": metrics.with_percentages(
            metrics.breakdown_by_category(period)
        ),
        "last_six_months": statistics.recent_months(year, month, count=6),
    }


@app.get("/api/dashboard/monthly-stats")
def dashboard_monthly_stats(
    month: Optional[str] = None,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    year, month_number = parse_month(month)
    stats = StatisticsService(db, user.id).monthly_statistics(year, month_number)
    return {
        "month": f"{year:04d}-{month_number:02d}",
        "income": cents_to_units(stats.total_income_cents),
        "expense": cents_to_units(stats.total_expense_cents),
        "balance": cents_to_units(stats.balance_cents),
        "transaction_count": stats.transaction_count,
    }


@app.get("/api/dashboard/category-breakdown")
def dashboard_category_breakdown(
    type: TransactionType = TransactionType.expense,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    period = resolve_period(start_date, end_date, today=local_today())
    metrics = MetricsService(db, user.id)
    return metrics.with_percentages(metrics.breakdown_by_category(period, type))


@app.get("/api/dashboard/charts")
def dashboard_charts(
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    chart_type: Optional[Literal["pie", "line", "bar"]] = None,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    period = parse_range(start_date, end_date)
    metrics = MetricsService(db, user.id)
    charts: dict[str, object] = {}

    if chart_type in (None, "pie"):
        charts["pie"] = [
            {
                "name": entry["category_name"],
                "value": entry["total_amount"],
                "color": entry["color"],
            }
            for entry in metrics.breakdown_by_category(period)
        ]

    if chart_type in (None, "line"):
        charts["line"] = [
            {
                "month": MONTH_ABBREVIATIONS[int(entry["month"]) - 1],
                "income": entry["total_amount"]
                if entry["type"] == TransactionType.income.value
                else 0,
                "expense": entry["total_amount"]
                if entry["type"] == TransactionType.expense.value
                else 0,
            }
            for entry in metrics.monthly_trend(period.start.year)
        ]

    if chart_type in (None, "bar"):
        summary = StatisticsService(db, user.id).overall_summary()
        charts["bar"] = [
            {"name": "Income", "value": summary["total_income"], "color": "#10B981"},
            {"name": "Expense", "value": summary["total_expense"], "color": "#EF4444"},
        ]

    return charts


@app.get("/api/dashboard/alerts")
def dashboard_alerts(
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
):
    report = NotificationService(db, mailer).evaluate_for_user(user, send_email=False)
    return {"alerts": report.as_dict()["alerts"]}


# Export


@app.get("/api/export/transactions/{fmt}")
def export_transactions_route(
    fmt: str,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    type: Optional[TransactionType] = None,
    description_max_length: Optional[int] = Query(None, ge=10, le=500),
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    settings = get_settings()
    period = parse_range(start_date, end_date)
    transactions = TransactionService(db, user.id).all_for_period(period, type)
    result = format_export(
        transactions,
        period,
        fmt,
        currency=settings.currency,
        description_max_length=description_max_length
        or settings.csv_description_max_length,
    )
    return attachment(result.payload, result.filename, result.content_type)


@app.get("/api/export/report/monthly/{year}/{month}")
def monthly_report(
    year: int,
    month: int,
    format: Literal["json", "csv"] = "json",
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    report = ReportService(db, user.id).monthly_report(year, month)
    filename = f"monthly_report_{year:04d}_{month:02d}.{format}"
    if format == "csv":
        return attachment(monthly_report_csv(report), filename, "text/csv; charset=utf-8")
    return JSONResponse(
        content=report,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/api/export/report/yearly/{year}")
def yearly_report(
    year: int,
    format: Literal["json", "csv"] = "json",
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    report = ReportService(db, user.id).yearly_report(year)
    filename = f"yearly_report_{year:04d}.{format}"
    if format == "csv":
        return attachment(yearly_report_csv(report), filename, "text/csv; charset=utf-8")
    return JSONResponse(
        content=report,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# Notifications


@app.post("/api/notifications/check", status_code=202)
def check_all_users(
    background_tasks: BackgroundTasks,
    data: Optional[AlertCheckIn] = None,
    user: User = Depends(current_user),
    scheduler: AlertScheduler = Depends(get_alert_scheduler),
):
    send_email = data.send_email if data else False
    background_tasks.add_task(
        scheduler.run_check, f"api_user_{user.id}", send_email
    )
    return {"message": "Alert check started for all users"}


@app.post("/api/notifications/check-user")
def check_current_user(
    data: Optional[AlertCheckIn] = None,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
):
    send_email = data.send_email if data else False
    report = NotificationService(db, mailer).evaluate_for_user(user, send_email)
    return report.as_dict()


@app.post("/api/notifications/send-email")
def send_alert_email(
    data: Optional[SendEmailIn] = None,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
):
    force_send = data.force_send if data else False
    report = NotificationService(db, mailer).evaluate_for_user(user, send_email=True)
    if not report.alerts and not force_send:
        message = "No alert detected, email not sent"
    elif report.email_sent:
        message = "Alert email sent"
    elif not report.alerts:
        message = "No alert detected, nothing to send"
    else:
        message = "Alert email could not be sent"
    payload = report.as_dict()
    payload["message"] = message
    return payload


@app.post("/api/notifications/send-custom-alert")
def send_custom_alert(
    data: CustomAlertIn,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
):
    alerts = build_custom_alerts([data.model_dump(exclude={"send_email"})])
    report = NotificationService(db, mailer).send_custom_alerts(
        user, alerts, send_email=data.send_email
    )
    return report.as_dict()


@app.post("/api/notifications/send-multiple-alerts")
def send_multiple_alerts(
    data: MultipleAlertsIn,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
):
    alerts = build_custom_alerts(
        [item.model_dump() for item in data.alerts], numbered=True
    )
    report = NotificationService(db, mailer).send_custom_alerts(
        user, alerts, send_email=data.send_email
    )
    return report.as_dict()


@app.get("/api/notifications/status")
def notification_status(
    user: User = Depends(current_user),
    scheduler: AlertScheduler = Depends(get_alert_scheduler),
):
    return scheduler.status()
