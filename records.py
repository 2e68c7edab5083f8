from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from models import TransactionType

logger = logging.getLogger(__name__)

UNCATEGORIZED = "uncategorized"
UNREADABLE_RECORD = "record could not be read"


def _field(raw: Any, name: str, default: Any = None) -> Any:
    if isinstance(raw, Mapping):
        return raw.get(name, default)
    return getattr(raw, name, default)


def _coerce_amount_cents(raw: Any) -> int:
    cents = _field(raw, "amount_cents")
    if cents is None:
        amount = _field(raw, "amount")
        if amount is None or amount == "":
            return 0
        try:
            cents = int((Decimal(str(amount)) * 100).quantize(Decimal("1")))
        except InvalidOperation as exc:
            raise ValueError(f"Invalid amount: {amount!r}") from exc
    if isinstance(cents, bool) or not isinstance(cents, (int, Decimal)):
        try:
            cents = int(str(cents))
        except ValueError as exc:
            raise ValueError(f"Invalid amount: {cents!r}") from exc
    if isinstance(cents, Decimal) and not cents.is_finite():
        raise ValueError(f"Invalid amount: {cents!r}")
    cents = int(cents)
    if cents < 0:
        raise ValueError("Amount must be positive")
    return cents


def _coerce_date(value: Any) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip()[:10])
        except ValueError:
            return None
    return None


def _coerce_category(raw: Any) -> str:
    category = _field(raw, "category")
    name = _field(category, "name") if category is not None else None
    if name is None and isinstance(category, str):
        name = category
    if name is None:
        name = _field(raw, "category_name")
    name = (name or "").strip() if isinstance(name, str) else ""
    return name or UNCATEGORIZED


@dataclass(frozen=True)
class TransactionRecord:
    """A transaction row validated once, at the data-store boundary."""

    id: Optional[int]
    date: Optional[date]
    type: TransactionType
    amount_cents: int
    category: str
    description: str
    created_at: Optional[datetime]

    @property
    def is_expense(self) -> bool:
        return self.type == TransactionType.expense

    @classmethod
    def coerce(cls, raw: Any) -> "TransactionRecord":
        """Build a record from an ORM row or a mapping.

        Missing amounts become 0, missing categories become
        ``uncategorized`` and unparseable dates become ``None``. An unknown
        transaction type or a non-numeric amount raises ``ValueError``.
        """
        type_raw = _field(raw, "type")
        if isinstance(type_raw, TransactionType):
            txn_type = type_raw
        else:
            txn_type = TransactionType(str(type_raw or "").strip().lower())

        created_at = _field(raw, "created_at")
        if not isinstance(created_at, datetime):
            created_at = None

        note = _field(raw, "note")
        if note is None:
            note = _field(raw, "description")

        return cls(
            id=_field(raw, "id"),
            date=_coerce_date(_field(raw, "date")),
            type=txn_type,
            amount_cents=_coerce_amount_cents(raw),
            category=_coerce_category(raw),
            description=str(note or ""),
            created_at=created_at,
        )


def coerce_all(items: Iterable[Any]) -> list[Optional[TransactionRecord]]:
    """Coerce every item; an item that cannot be read becomes ``None``."""
    records: list[Optional[TransactionRecord]] = []
    for index, raw in enumerate(items):
        try:
            records.append(TransactionRecord.coerce(raw))
        except (ValueError, ArithmeticError) as exc:
            logger.warning(
                f"transaction_record_skipped: index={index} "
                f"id={_field(raw, 'id')} error={exc}"
            )
            records.append(None)
    return records
