from datetime import date
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from csv_utils import parse_amount
from models import CategoryType, TransactionType

COLOR_PATTERN = r"^#[0-9A-Fa-f]{6}$"

AlertKindLiteral = Literal["danger", "warning", "info", "success"]
AlertSeverityLiteral = Literal["critical", "high", "medium", "low"]


class ProfileIn(BaseModel):
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)

    @field_validator("first_name", "last_name")
    @classmethod
    def _strip(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    color: str = Field(default="#6B7280", pattern=COLOR_PATTERN)
    type: CategoryType

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value


class CategoryUpdateIn(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    color: Optional[str] = Field(default=None, pattern=COLOR_PATTERN)
    type: Optional[CategoryType] = None

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value


class TransactionIn(BaseModel):
    date: date
    type: TransactionType
    amount_cents: int = Field(..., gt=0)
    category_id: int
    note: Optional[str] = Field(default=None, max_length=500)


class TransactionBody(BaseModel):
    """Request body for the JSON API, where amounts are given in units."""

    model_config = ConfigDict(extra="forbid")

    date: date
    type: TransactionType
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    category_id: int
    description: Optional[str] = Field(default=None, max_length=500)

    def to_transaction_in(self) -> TransactionIn:
        return TransactionIn(
            date=self.date,
            type=self.type,
            amount_cents=parse_amount(str(self.amount)),
            category_id=self.category_id,
            note=(self.description or "").strip() or None,
        )


class AlertCheckIn(BaseModel):
    send_email: bool = False


class SendEmailIn(BaseModel):
    force_send: bool = False


class CustomAlertIn(BaseModel):
    type: AlertKindLiteral
    message: str = Field(..., min_length=1, max_length=500)
    severity: AlertSeverityLiteral = "medium"
    code: Optional[str] = Field(default=None, max_length=64)
    send_email: bool = True

    @field_validator("message")
    @classmethod
    def _strip_message(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value


class CustomAlertItem(BaseModel):
    type: AlertKindLiteral
    message: str = Field(..., min_length=1, max_length=500)
    severity: AlertSeverityLiteral = "medium"
    code: Optional[str] = Field(default=None, max_length=64)


class MultipleAlertsIn(BaseModel):
    alerts: list[CustomAlertItem] = Field(..., min_length=1, max_length=20)
    send_email: bool = True
