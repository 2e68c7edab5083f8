from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import case, delete, extract, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from config import get_settings
from errors import (
    BusinessRuleError,
    ConflictError,
    NotFoundError,
    ValidationError,
    category_in_use,
    category_not_found,
    category_type_mismatch,
    transaction_not_found,
)
from formatting import cents_to_units, month_label, round1
from models import Category, CategoryType, Transaction, TransactionType, User
from periods import Period, add_months, month_period, year_period
from schemas import CategoryIn, CategoryUpdateIn, ProfileIn, TransactionIn


logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100
MONTHLY_REPORT_TRANSACTION_LIMIT = 50

DEFAULT_CATEGORIES: tuple[tuple[str, str, CategoryType], ...] = (
    ("Salary", "#10B981", CategoryType.income),
    ("Freelance", "#3B82F6", CategoryType.income),
    ("Investments", "#8B5CF6", CategoryType.income),
    ("Other income", "#6B7280", CategoryType.income),
    ("Rent", "#EF4444", CategoryType.expense),
    ("Food", "#F59E0B", CategoryType.expense),
    ("Transport", "#06B6D4", CategoryType.expense),
    ("Leisure", "#EC4899", CategoryType.expense),
    ("Health", "#84CC16", CategoryType.expense),
    ("Shopping", "#F97316", CategoryType.expense),
    ("Bills", "#6366F1", CategoryType.expense),
    ("Other expenses", "#6B7280", CategoryType.expense),
    ("Business", "#059669", CategoryType.hybrid),
    ("Projects", "#7C3AED", CategoryType.hybrid),
    ("Events", "#DC2626", CategoryType.hybrid),
)


def local_now() -> datetime:
    """Naive wall-clock time in the configured timezone."""
    settings = get_settings()
    return datetime.now(ZoneInfo(settings.timezone)).replace(tzinfo=None)


def local_today() -> date:
    return local_now().date()


@dataclass(frozen=True)
class MonthlyStatistics:
    year: int
    month: int
    total_income_cents: int = 0
    total_expense_cents: int = 0
    transaction_count: int = 0

    @property
    def balance_cents(self) -> int:
        return self.total_income_cents - self.total_expense_cents

    def as_dict(self) -> dict[str, object]:
        return {
            "year": self.year,
            "month": self.month,
            "total_income": cents_to_units(self.total_income_cents),
            "total_expense": cents_to_units(self.total_expense_cents),
            "balance": cents_to_units(self.balance_cents),
            "transaction_count": self.transaction_count,
        }


@dataclass
class TransactionFilters:
    type: Optional[TransactionType] = None
    category_id: Optional[int] = None
    start: Optional[date] = None
    end: Optional[date] = None


def _sum_for(kind: TransactionType):
    return func.coalesce(
        func.sum(
            case((Transaction.type == kind, Transaction.amount_cents), else_=0)
        ),
        0,
    )


def _count_for(kind: TransactionType):
    return func.coalesce(
        func.sum(case((Transaction.type == kind, 1), else_=0)),
        0,
    )


def serialize_category(category: Category) -> dict[str, object]:
    return {
        "id": category.id,
        "name": category.name,
        "color": category.color,
        "type": category.type.value,
        "created_at": category.created_at.isoformat() if category.created_at else None,
    }


def serialize_transaction(txn: Transaction) -> dict[str, object]:
    category = txn.category
    return {
        "id": txn.id,
        "date": txn.date.isoformat(),
        "type": txn.type.value,
        "amount": cents_to_units(txn.amount_cents),
        "amount_cents": txn.amount_cents,
        "description": txn.note,
        "category_id": txn.category_id,
        "category_name": category.name if category else None,
        "category_color": category.color if category else None,
        "created_at": txn.created_at.isoformat() if txn.created_at else None,
    }


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, user_id: int) -> User:
        user = self.session.get(User, user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    def list_all(self) -> list[User]:
        return self.session.scalars(select(User).order_by(User.id)).all()

    def update_profile(self, user_id: int, data: ProfileIn) -> User:
        user = self.get(user_id)
        user.first_name = data.first_name
        user.last_name = data.last_name
        self.session.commit()
        self.session.refresh(user)
        logger.info(f"profile_updated: user_id={user_id}")
        return user


class CategoryService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self, type: Optional[CategoryType] = None) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.name)
        )
        if type is not None:
            stmt = stmt.where(Category.type == type)
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise NotFoundError(category_not_found(category_id))
        return category

    def _find_by_name(
        self, name: str, exclude_id: Optional[int] = None
    ) -> Optional[Category]:
        stmt = select(Category).where(
            Category.user_id == self.user_id,
            func.lower(Category.name) == name.strip().lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        return self.session.scalar(stmt)

    def transaction_count(self, category_id: int) -> int:
        stmt = select(func.count(Transaction.id)).where(
            Transaction.user_id == self.user_id,
            Transaction.category_id == category_id,
        )
        return int(self.session.execute(stmt).scalar_one() or 0)

    def create(self, data: CategoryIn) -> Category:
        if self._find_by_name(data.name):
            raise ConflictError("Category with this name already exists")
        category = Category(
            user_id=self.user_id,
            name=data.name.strip(),
            color=data.color,
            type=data.type,
        )
        self.session.add(category)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise ConflictError("Category with this name already exists") from exc
        self.session.refresh(category)
        logger.info(
            f"category_created: user_id={self.user_id} category_id={category.id}"
        )
        return category

    def update(self, category_id: int, data: CategoryUpdateIn) -> Category:
        category = self.get(category_id)
        if data.name is not None:
            if self._find_by_name(data.name, exclude_id=category.id):
                raise ConflictError("Category with this name already exists")
            category.name = data.name.strip()
        if data.color is not None:
            category.color = data.color
        if data.type is not None and data.type != category.type:
            if data.type != CategoryType.hybrid:
                mismatched = self.session.execute(
                    select(func.count(Transaction.id)).where(
                        Transaction.user_id == self.user_id,
                        Transaction.category_id == category.id,
                        Transaction.type != TransactionType(data.type.value),
                    )
                ).scalar_one()
                if mismatched:
                    raise BusinessRuleError(
                        f"Cannot change category type to '{data.type.value}': "
                        f"{mismatched} transactions of another type use it"
                    )
            category.type = data.type
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise ConflictError("Category with this name already exists") from exc
        self.session.refresh(category)
        return category

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        count = self.transaction_count(category.id)
        if count:
            raise BusinessRuleError(category_in_use(category.name, count))
        self.session.delete(category)
        self.session.commit()
        logger.info(
            f"category_deleted: user_id={self.user_id} category_id={category_id}"
        )

    def create_defaults(self) -> list[Category]:
        created: list[Category] = []
        for name, color, category_type in DEFAULT_CATEGORIES:
            if self._find_by_name(name):
                continue
            category = Category(
                user_id=self.user_id, name=name, color=color, type=category_type
            )
            self.session.add(category)
            created.append(category)
        self.session.commit()
        for category in created:
            self.session.refresh(category)
        logger.info(
            f"default_categories_created: user_id={self.user_id} count={len(created)}"
        )
        return created

    def reset_defaults(self) -> list[Category]:
        """Drop every unused category, then recreate the missing defaults."""
        used_ids = select(Transaction.category_id).where(
            Transaction.user_id == self.user_id
        )
        self.session.execute(
            delete(Category).where(
                Category.user_id == self.user_id,
                Category.id.not_in(used_ids),
            )
        )
        self.session.flush()
        return self.create_defaults()


class TransactionService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _category_for(self, data: TransactionIn) -> Category:
        category = self.session.get(Category, data.category_id)
        if not category or category.user_id != self.user_id:
            raise NotFoundError(category_not_found(data.category_id))
        if not category.type.accepts(data.type):
            raise BusinessRuleError(
                category_type_mismatch(category.type.value, data.type.value)
            )
        return category

    def _filtered(self, stmt, filters: TransactionFilters):
        if filters.type:
            stmt = stmt.where(Transaction.type == filters.type)
        if filters.category_id:
            stmt = stmt.where(Transaction.category_id == filters.category_id)
        if filters.start:
            stmt = stmt.where(Transaction.date >= filters.start)
        if filters.end:
            stmt = stmt.where(Transaction.date <= filters.end)
        return stmt

    def create(self, data: TransactionIn) -> Transaction:
        self._category_for(data)
        txn = Transaction(
            user_id=self.user_id,
            date=data.date,
            type=data.type,
            amount_cents=data.amount_cents,
            category_id=data.category_id,
            note=data.note,
        )
        self.session.add(txn)
        self.session.commit()
        logger.info(
            f"transaction_created: user_id={self.user_id} transaction_id={txn.id} "
            f"type={txn.type.value} amount_cents={txn.amount_cents}"
        )
        return self.get(txn.id)

    def get(self, transaction_id: int) -> Transaction:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
        )
        txn = self.session.scalar(stmt)
        if not txn:
            raise NotFoundError(transaction_not_found(transaction_id))
        return txn

    def update(self, transaction_id: int, data: TransactionIn) -> Transaction:
        txn = self.get(transaction_id)
        self._category_for(data)
        txn.date = data.date
        txn.type = data.type
        txn.amount_cents = data.amount_cents
        txn.category_id = data.category_id
        txn.note = data.note
        self.session.commit()
        self.session.expire(txn, ["category"])
        return self.get(transaction_id)

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        self.session.delete(txn)
        self.session.commit()
        logger.info(
            f"transaction_deleted: user_id={self.user_id} "
            f"transaction_id={transaction_id}"
        )

    def list(
        self,
        filters: Optional[TransactionFilters] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Transaction]:
        filters = filters or TransactionFilters()
        if limit < 1 or limit > MAX_PAGE_SIZE:
            raise ValidationError(f"Limit must be between 1 and {MAX_PAGE_SIZE}")
        if offset < 0:
            raise ValidationError("Offset must not be negative")
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .offset(offset)
            .limit(limit)
        )
        return self.session.scalars(self._filtered(stmt, filters)).all()

    def count(self, filters: Optional[TransactionFilters] = None) -> int:
        filters = filters or TransactionFilters()
        stmt = select(func.count(Transaction.id)).where(
            Transaction.user_id == self.user_id
        )
        return int(self.session.execute(self._filtered(stmt, filters)).scalar_one())

    def all_for_period(
        self, period: Period, type: Optional[TransactionType] = None
    ) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(
                Transaction.user_id == self.user_id,
                Transaction.date.between(period.start, period.end),
            )
            .order_by(Transaction.date.desc(), Transaction.id.desc())
        )
        if type is not None:
            stmt = stmt.where(Transaction.type == type)
        return self.session.scalars(stmt).all()

    def last_transaction_date(self) -> Optional[date]:
        stmt = select(func.max(Transaction.date)).where(
            Transaction.user_id == self.user_id
        )
        return self.session.execute(stmt).scalar_one_or_none()


class StatisticsService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def monthly_statistics(self, year: int, month: int) -> MonthlyStatistics:
        """Totals for one calendar month.

        A data-store failure is logged and answered with an all-zero result
        so that dashboards and alert checks keep rendering.
        """
        period = month_period(year, month)
        stmt = select(
            _sum_for(TransactionType.income).label("income"),
            _sum_for(TransactionType.expense).label("expense"),
            func.count(Transaction.id).label("count"),
        ).where(
            Transaction.user_id == self.user_id,
            Transaction.date.between(period.start, period.end),
        )
        try:
            row = self.session.execute(stmt).one()
        except SQLAlchemyError:
            logger.exception(
                f"monthly_statistics_failed: user_id={self.user_id} "
                f"period={period.slug}"
            )
            self.session.rollback()
            return MonthlyStatistics(year=year, month=month)
        return MonthlyStatistics(
            year=year,
            month=month,
            total_income_cents=int(row.income or 0),
            total_expense_cents=int(row.expense or 0),
            transaction_count=int(row.count or 0),
        )

    def overall_balance(self) -> int:
        stmt = select(
            _sum_for(TransactionType.income) - _sum_for(TransactionType.expense)
        ).where(Transaction.user_id == self.user_id)
        return int(self.session.execute(stmt).scalar_one() or 0)

    def overall_summary(self) -> dict[str, object]:
        stmt = select(
            func.count(Transaction.id).label("count"),
            _count_for(TransactionType.income).label("income_count"),
            _count_for(TransactionType.expense).label("expense_count"),
            _sum_for(TransactionType.income).label("income"),
            _sum_for(TransactionType.expense).label("expense"),
            func.avg(Transaction.amount_cents).label("average"),
        ).where(Transaction.user_id == self.user_id)
        row = self.session.execute(stmt).one()
        income = int(row.income or 0)
        expense = int(row.expense or 0)
        return {
            "transaction_count": int(row.count or 0),
            "income_count": int(row.income_count or 0),
            "expense_count": int(row.expense_count or 0),
            "total_income": cents_to_units(income),
            "total_expense": cents_to_units(expense),
            "average_amount": round(cents_to_units(int(row.average or 0)), 2),
            "balance": cents_to_units(income - expense),
        }

    def recent_months(
        self, year: int, month: int, count: int = 6
    ) -> list[dict[str, object]]:
        month_period(year, month)
        months = []
        for offset in range(count - 1, -1, -1):
            y, m = add_months(year, month, -offset)
            stats = self.monthly_statistics(y, m)
            months.append(
                {
                    "month": month_label(y, m),
                    "income": cents_to_units(stats.total_income_cents),
                    "expense": cents_to_units(stats.total_expense_cents),
                    "balance": cents_to_units(stats.balance_cents),
                }
            )
        return months


class MetricsService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def breakdown_by_category(
        self,
        period: Period,
        transaction_type: TransactionType = TransactionType.expense,
    ) -> list[dict[str, object]]:
        total = func.sum(Transaction.amount_cents)
        stmt = (
            select(
                Category.id.label("category_id"),
                Category.name.label("name"),
                Category.color.label("color"),
                total.label("total"),
                func.count(Transaction.id).label("count"),
            )
            .join(Category, Category.id == Transaction.category_id)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.type == transaction_type,
                Transaction.date.between(period.start, period.end),
            )
            .group_by(Category.id, Category.name, Category.color)
            .order_by(total.desc(), Category.name)
        )
        return [
            {
                "category_id": row.category_id,
                "category_name": row.name,
                "color": row.color,
                "amount_cents": int(row.total or 0),
                "total_amount": cents_to_units(int(row.total or 0)),
                "transaction_count": int(row.count or 0),
            }
            for row in self.session.execute(stmt).all()
        ]

    @staticmethod
    def with_percentages(
        entries: list[dict[str, object]],
    ) -> list[dict[str, object]]:
        total = sum(int(entry["amount_cents"]) for entry in entries)
        result = []
        for entry in entries:
            amount = int(entry["amount_cents"])
            percentage = round1(amount * 100 / total) if total else 0
            result.append({**entry, "percentage": percentage})
        return result

    def monthly_trend(self, year: int) -> list[dict[str, object]]:
        period = year_period(year)
        month = extract("month", Transaction.date)
        stmt = (
            select(
                month.label("month"),
                Transaction.type.label("type"),
                func.sum(Transaction.amount_cents).label("total"),
                func.count(Transaction.id).label("count"),
            )
            .where(
                Transaction.user_id == self.user_id,
                Transaction.date.between(period.start, period.end),
            )
            .group_by(month, Transaction.type)
            .order_by(month, Transaction.type)
        )
        return [
            {
                "month": int(row.month),
                "type": row.type.value,
                "amount_cents": int(row.total or 0),
                "total_amount": cents_to_units(int(row.total or 0)),
                "transaction_count": int(row.count or 0),
            }
            for row in self.session.execute(stmt).all()
        ]

    def category_statistics(self) -> list[dict[str, object]]:
        total = func.coalesce(func.sum(Transaction.amount_cents), 0)
        stmt = (
            select(
                Category.id.label("id"),
                Category.name.label("name"),
                Category.color.label("color"),
                Category.type.label("type"),
                func.count(Transaction.id).label("count"),
                total.label("total"),
                func.coalesce(func.avg(Transaction.amount_cents), 0).label("average"),
            )
            .outerjoin(Transaction, Transaction.category_id == Category.id)
            .where(Category.user_id == self.user_id)
            .group_by(Category.id, Category.name, Category.color, Category.type)
            .order_by(total.desc(), Category.name)
        )
        return [
            {
                "id": row.id,
                "name": row.name,
                "color": row.color,
                "type": row.type.value,
                "transaction_count": int(row.count or 0),
                "total_amount": cents_to_units(int(row.total or 0)),
                "average_amount": round(cents_to_units(float(row.average or 0)), 2),
            }
            for row in self.session.execute(stmt).all()
        ]


class ReportService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.statistics = StatisticsService(session, user_id)
        self.metrics = MetricsService(session, user_id)

    @staticmethod
    def _expense_shares(
        breakdown: list[dict[str, object]], total_expense_cents: int
    ) -> list[dict[str, object]]:
        rows = []
        for entry in breakdown:
            amount = int(entry["amount_cents"])
            rows.append(
                {
                    "category": entry["category_name"],
                    "amount": cents_to_units(amount),
                    "percentage": round1(amount * 100 / total_expense_cents)
                    if total_expense_cents
                    else 0,
                    "transaction_count": entry["transaction_count"],
                }
            )
        return rows

    def monthly_report(
        self, year: int, month: int, *, now: Optional[datetime] = None
    ) -> dict[str, object]:
        period = month_period(year, month)
        stats = self.statistics.monthly_statistics(year, month)
        breakdown = self.metrics.breakdown_by_category(period)
        transactions = TransactionService(self.session, self.user_id).list(
            TransactionFilters(start=period.start, end=period.end),
            limit=MONTHLY_REPORT_TRANSACTION_LIMIT,
        )
        categories = CategoryService(self.session, self.user_id).list_all()
        now = now or local_now()
        return {
            "report_type": "monthly",
            "period": {
                "year": year,
                "month": month,
                "label": month_label(year, month),
            },
            "summary": {
                "total_income": cents_to_units(stats.total_income_cents),
                "total_expense": cents_to_units(stats.total_expense_cents),
                "balance": cents_to_units(stats.balance_cents),
                "transaction_count": stats.transaction_count,
            },
            "expenses_by_category": self._expense_shares(
                breakdown, stats.total_expense_cents
            ),
            "transactions": [serialize_transaction(txn) for txn in transactions],
            "categories": [serialize_category(category) for category in categories],
            "generated_at": now.isoformat(),
        }

    def yearly_report(
        self, year: int, *, now: Optional[datetime] = None
    ) -> dict[str, object]:
        period = year_period(year)
        trend = self.metrics.monthly_trend(year)
        months: dict[int, dict[str, int]] = {}
        income_total = 0
        expense_total = 0
        for entry in trend:
            bucket = months.setdefault(int(entry["month"]), {"income": 0, "expense": 0})
            amount = int(entry["amount_cents"])
            if entry["type"] == TransactionType.income.value:
                bucket["income"] += amount
                income_total += amount
            else:
                bucket["expense"] += amount
                expense_total += amount

        breakdown = self.metrics.breakdown_by_category(period)
        now = now or local_now()
        return {
            "report_type": "yearly",
            "period": {"year": year},
            "summary": {
                "total_income": cents_to_units(income_total),
                "total_expense": cents_to_units(expense_total),
                "balance": cents_to_units(income_total - expense_total),
                "average_monthly_income": round(cents_to_units(income_total) / 12, 2),
                "average_monthly_expense": round(
                    cents_to_units(expense_total) / 12, 2
                ),
            },
            "monthly_breakdown": [
                {
                    "month": month,
                    "label": month_label(year, month),
                    "income": cents_to_units(values["income"]),
                    "expense": cents_to_units(values["expense"]),
                    "balance": cents_to_units(values["income"] - values["expense"]),
                }
                for month, values in sorted(months.items())
            ],
            "expenses_by_category": self._expense_shares(breakdown, expense_total),
            "generated_at": now.isoformat(),
        }
