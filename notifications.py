"""Financial alert rules and their delivery.

Rule evaluation is a pure function of the month's statistics, the date of
the latest transaction and the current time. Email delivery happens after
evaluation and never changes the list of alerts.
"""

import logging
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Optional, Sequence

from sqlalchemy.orm import Session

from config import get_settings
from errors import ValidationError
from formatting import format_decimal
from mailer import Mailer
from models import User
from services import (
    MonthlyStatistics,
    StatisticsService,
    TransactionService,
    UserService,
    local_now,
)

logger = logging.getLogger(__name__)

EXPENSE_RATIO_NUMERATOR = 4
EXPENSE_RATIO_DENOMINATOR = 5
INACTIVITY_DAYS = 7
CUSTOM_ALERT_CODE = "CUSTOM_ALERT"


class AlertKind(str, Enum):
    danger = "danger"
    warning = "warning"
    info = "info"
    success = "success"


class AlertSeverity(str, Enum):
    critical = "critical"
    high = "high"
    medium = "medium"
    low = "low"


@dataclass(frozen=True)
class Alert:
    kind: AlertKind
    message: str
    severity: AlertSeverity
    code: str

    def as_dict(self) -> dict[str, str]:
        data = asdict(self)
        data["kind"] = self.kind.value
        data["severity"] = self.severity.value
        return data


@dataclass
class AlertReport:
    alerts: list[Alert] = field(default_factory=list)
    email_sent: bool = False

    def as_dict(self) -> dict[str, object]:
        return {
            "alerts": [alert.as_dict() for alert in self.alerts],
            "email_sent": self.email_sent,
        }


def days_since(last_date: date, now: datetime) -> int:
    return (now - datetime.combine(last_date, time.min)) // timedelta(days=1)


def evaluate_rules(
    stats: MonthlyStatistics,
    last_transaction_date: Optional[date],
    now: datetime,
    currency: str,
) -> list[Alert]:
    alerts: list[Alert] = []

    balance = stats.balance_cents
    if balance < 0:
        alerts.append(
            Alert(
                AlertKind.danger,
                f"balance is negative: {format_decimal(balance)} {currency}",
                AlertSeverity.high,
                "NEGATIVE_BALANCE",
            )
        )

    income = stats.total_income_cents
    expense = stats.total_expense_cents
    if income > 0 and (
        expense * EXPENSE_RATIO_DENOMINATOR > income * EXPENSE_RATIO_NUMERATOR
    ):
        alerts.append(
            Alert(
                AlertKind.warning,
                "expenses exceed 80% of income this month",
                AlertSeverity.medium,
                "HIGH_EXPENSE_RATIO",
            )
        )

    if last_transaction_date is not None:
        idle_days = days_since(last_transaction_date, now)
        if idle_days > INACTIVITY_DAYS:
            alerts.append(
                Alert(
                    AlertKind.info,
                    f"no transaction in {idle_days} days",
                    AlertSeverity.low,
                    "INACTIVITY",
                )
            )

    return alerts


def build_custom_alerts(
    items: Sequence[dict[str, Optional[str]]], *, numbered: bool = False
) -> list[Alert]:
    """Validate caller-supplied alerts and assign default codes.

    A single alert defaults to ``CUSTOM_ALERT``; in a numbered batch the
    n-th alert defaults to ``CUSTOM_ALERT_<n>``.
    """
    if not items:
        raise ValidationError("At least one alert is required")
    alerts = []
    for index, item in enumerate(items, start=1):
        message = (item.get("message") or "").strip()
        if not message:
            raise ValidationError(f"Alert {index}: message is required")
        try:
            kind = AlertKind(item.get("type"))
            severity = AlertSeverity(item.get("severity") or "medium")
        except ValueError as exc:
            raise ValidationError(f"Alert {index}: {exc}") from exc
        default_code = (
            f"{CUSTOM_ALERT_CODE}_{index}" if numbered else CUSTOM_ALERT_CODE
        )
        alerts.append(Alert(kind, message, severity, item.get("code") or default_code))
    return alerts


class NotificationService:
    def __init__(self, session: Session, mailer: Optional[Mailer] = None) -> None:
        self.session = session
        self.mailer = mailer or Mailer()
        self.currency = get_settings().currency

    @staticmethod
    def display_name(user: User) -> str:
        return f"{user.first_name} {user.last_name}".strip() or user.email

    def _deliver(self, user: User, alerts: list[Alert]) -> bool:
        if not alerts:
            return False
        return self.mailer.send_alert_email(
            user.email, self.display_name(user), [a.as_dict() for a in alerts]
        )

    def evaluate_for_user(
        self, user: User, send_email: bool = False, now: Optional[datetime] = None
    ) -> AlertReport:
        now = now or local_now()
        stats = StatisticsService(self.session, user.id).monthly_statistics(
            now.year, now.month
        )
        last_date = TransactionService(self.session, user.id).last_transaction_date()
        alerts = evaluate_rules(stats, last_date, now, self.currency)
        logger.info(
            f"alerts_evaluated: user_id={user.id} alerts={len(alerts)} "
            f"codes={','.join(a.code for a in alerts) or '-'}"
        )
        report = AlertReport(alerts=alerts)
        if send_email:
            report.email_sent = self._deliver(user, alerts)
        return report

    def check_all_users(
        self, send_email: bool = False, now: Optional[datetime] = None
    ) -> int:
        checked = 0
        for user in UserService(self.session).list_all():
            try:
                self.evaluate_for_user(user, send_email=send_email, now=now)
            except Exception:
                logger.exception(f"alert_check_failed: user_id={user.id}")
                self.session.rollback()
                continue
            checked += 1
        logger.info(f"alert_check_completed: users_checked={checked}")
        return checked

    def send_custom_alerts(
        self, user: User, alerts: list[Alert], send_email: bool = True
    ) -> AlertReport:
        report = AlertReport(alerts=alerts)
        if send_email:
            report.email_sent = self._deliver(user, alerts)
        logger.info(
            f"custom_alerts_sent: user_id={user.id} alerts={len(alerts)} "
            f"email_sent={report.email_sent}"
        )
        return report
