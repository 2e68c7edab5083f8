import smtplib
from datetime import date, datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import ValidationError
from mailer import Mailer
from models import CategoryType, TransactionType, User
from notifications import (
    AlertKind,
    AlertSeverity,
    NotificationService,
    build_custom_alerts,
    days_since,
    evaluate_rules,
)
from schemas import CategoryIn, TransactionIn
from services import CategoryService, MonthlyStatistics, TransactionService


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def make_user(session, email: str = "ama@example.com") -> User:
    user = User(email=email, first_name="Ama", last_name="Kouassi")
    session.add(user)
    session.commit()
    return user


def seed(session, user, entries):
    category = CategoryService(session, user.id).create(
        CategoryIn(name="Business", type=CategoryType.hybrid)
    )
    txns = TransactionService(session, user.id)
    for kind, cents, day in entries:
        txns.create(
            TransactionIn(
                date=day, type=kind, amount_cents=cents, category_id=category.id
            )
        )


class RecordingMailer(Mailer):
    def __init__(self) -> None:
        super().__init__()
        self.sent = []

    def send_alert_email(self, address, display_name, alerts) -> bool:
        self.sent.append((address, display_name, list(alerts)))
        return True


class BrokenSMTPMailer(Mailer):
    @property
    def configured(self) -> bool:
        return True

    def _deliver(self, message) -> None:
        raise smtplib.SMTPException("connection refused")


def test_no_rules_fire_for_healthy_month() -> None:
    stats = MonthlyStatistics(2024, 1, 200000, 50000, 2)
    alerts = evaluate_rules(stats, date(2024, 1, 20), datetime(2024, 1, 22, 9), "FCFA")
    assert alerts == []


def test_negative_balance_alert_only_when_balance_below_zero() -> None:
    now = datetime(2024, 1, 22, 9)
    negative = MonthlyStatistics(2024, 1, 0, 5000, 1)
    zero = MonthlyStatistics(2024, 1, 5000, 5000, 2)

    alerts = evaluate_rules(negative, date(2024, 1, 21), now, "FCFA")
    assert [a.code for a in alerts] == ["NEGATIVE_BALANCE"]
    assert alerts[0].kind == AlertKind.danger
    assert alerts[0].severity == AlertSeverity.high
    assert alerts[0].message == "balance is negative: -50.00 FCFA"

    codes = [a.code for a in evaluate_rules(zero, date(2024, 1, 21), now, "FCFA")]
    assert "NEGATIVE_BALANCE" not in codes


def test_expense_ratio_is_strictly_above_eighty_percent() -> None:
    now = datetime(2024, 2, 20, 10)
    at_limit = MonthlyStatistics(2024, 2, 100000, 80000, 2)
    above = MonthlyStatistics(2024, 2, 100000, 80001, 2)

    assert evaluate_rules(at_limit, date(2024, 2, 19), now, "FCFA") == []
    alerts = evaluate_rules(above, date(2024, 2, 19), now, "FCFA")
    assert [(a.kind, a.severity, a.code) for a in alerts] == [
        (AlertKind.warning, AlertSeverity.medium, "HIGH_EXPENSE_RATIO")
    ]
    assert alerts[0].message == "expenses exceed 80% of income this month"


def test_rules_keep_their_fixed_order() -> None:
    stats = MonthlyStatistics(2024, 3, 1000, 5000, 2)
    alerts = evaluate_rules(stats, date(2024, 2, 1), datetime(2024, 3, 11, 9), "FCFA")
    assert [a.code for a in alerts] == [
        "NEGATIVE_BALANCE",
        "HIGH_EXPENSE_RATIO",
        "INACTIVITY",
    ]


def test_days_since_uses_whole_days_from_midnight() -> None:
    assert days_since(date(2024, 3, 1), datetime(2024, 3, 11, 9, 30)) == 10
    assert days_since(date(2024, 3, 1), datetime(2024, 3, 8, 23, 59)) == 7
    assert days_since(date(2024, 3, 1), datetime(2024, 3, 1, 0, 0)) == 0


def test_february_high_ratio_produces_single_warning() -> None:
    session = make_session()
    user = make_user(session)
    seed(
        session,
        user,
        [
            (TransactionType.income, 200000, date(2024, 2, 1)),
            (TransactionType.expense, 180000, date(2024, 2, 15)),
        ],
    )

    report = NotificationService(session, RecordingMailer()).evaluate_for_user(
        user, now=datetime(2024, 2, 20, 10, 0)
    )

    assert len(report.alerts) == 1
    assert report.alerts[0].kind == AlertKind.warning
    assert report.email_sent is False


def test_inactivity_alert_counts_days() -> None:
    session = make_session()
    user = make_user(session)
    seed(session, user, [(TransactionType.income, 100000, date(2024, 3, 1))])

    report = NotificationService(session, RecordingMailer()).evaluate_for_user(
        user, now=datetime(2024, 3, 11, 9, 0)
    )

    assert [a.message for a in report.alerts] == ["no transaction in 10 days"]
    assert report.alerts[0].severity == AlertSeverity.low


def test_user_without_transactions_gets_no_alerts() -> None:
    session = make_session()
    user = make_user(session)
    mailer = RecordingMailer()

    report = NotificationService(session, mailer).evaluate_for_user(
        user, send_email=True, now=datetime(2024, 3, 11, 9, 0)
    )

    assert report.alerts == []
    assert report.email_sent is False
    assert mailer.sent == []


def test_email_is_sent_after_evaluation() -> None:
    session = make_session()
    user = make_user(session)
    seed(session, user, [(TransactionType.expense, 5000, date(2024, 3, 10))])
    mailer = RecordingMailer()

    report = NotificationService(session, mailer).evaluate_for_user(
        user, send_email=True, now=datetime(2024, 3, 11, 9, 0)
    )

    assert report.email_sent is True
    address, display_name, alerts = mailer.sent[0]
    assert address == "ama@example.com"
    assert display_name == "Ama Kouassi"
    assert alerts[0]["code"] == "NEGATIVE_BALANCE"


def test_email_failure_reports_not_sent() -> None:
    session = make_session()
    user = make_user(session)
    seed(session, user, [(TransactionType.expense, 5000, date(2024, 3, 10))])

    report = NotificationService(session, BrokenSMTPMailer()).evaluate_for_user(
        user, send_email=True, now=datetime(2024, 3, 11, 9, 0)
    )

    assert [a.code for a in report.alerts] == ["NEGATIVE_BALANCE"]
    assert report.email_sent is False


def test_check_all_users_continues_after_a_failure() -> None:
    session = make_session()
    first = make_user(session, email="first@example.com")
    second = make_user(session, email="second@example.com")
    seed(session, first, [(TransactionType.expense, 100, date(2024, 3, 10))])
    seed(session, second, [(TransactionType.expense, 100, date(2024, 3, 10))])

    class FlakyMailer(RecordingMailer):
        def send_alert_email(self, address, display_name, alerts) -> bool:
            if address == "first@example.com":
                raise RuntimeError("template exploded")
            return super().send_alert_email(address, display_name, alerts)

    mailer = FlakyMailer()
    checked = NotificationService(session, mailer).check_all_users(
        send_email=True, now=datetime(2024, 3, 11, 9, 0)
    )

    assert checked == 1
    assert [sent[0] for sent in mailer.sent] == ["second@example.com"]


def test_custom_alert_codes() -> None:
    single = build_custom_alerts([{"type": "success", "message": "Goal reached"}])
    assert single[0].code == "CUSTOM_ALERT"
    assert single[0].severity == AlertSeverity.medium

    batch = build_custom_alerts(
        [
            {"type": "info", "message": "One", "severity": "low"},
            {"type": "danger", "message": "Two", "severity": "critical"},
            {"type": "warning", "message": "Three", "code": "BUDGET"},
        ],
        numbered=True,
    )
    assert [a.code for a in batch] == ["CUSTOM_ALERT_1", "CUSTOM_ALERT_2", "BUDGET"]
    assert batch[1].severity == AlertSeverity.critical


@pytest.mark.parametrize(
    "item",
    [
        {"type": "panic", "message": "x"},
        {"type": "info", "message": "x", "severity": "urgent"},
        {"type": "info", "message": "   "},
    ],
)
def test_custom_alert_validation(item) -> None:
    with pytest.raises(ValidationError):
        build_custom_alerts([item])


def test_custom_alerts_are_mailed_to_the_user() -> None:
    session = make_session()
    user = make_user(session)
    mailer = RecordingMailer()
    alerts = build_custom_alerts([{"type": "info", "message": "Hello"}])

    report = NotificationService(session, mailer).send_custom_alerts(user, alerts)

    assert report.email_sent is True
    assert mailer.sent[0][0] == "ama@example.com"
    assert report.as_dict()["alerts"] == [
        {
            "kind": "info",
            "message": "Hello",
            "severity": "medium",
            "code": "CUSTOM_ALERT",
        }
    ]
