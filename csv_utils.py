import csv
import re
from decimal import Decimal, InvalidOperation
from io import StringIO
from typing import Any, Iterable, Optional

from formatting import INVALID_DATE, format_amount, format_date, format_decimal
from models import TransactionType
from records import UNCATEGORIZED, UNREADABLE_RECORD, TransactionRecord, coerce_all

CSV_HEADER = ("Date", "Type", "Amount", "Category", "Description")
TYPE_LABELS = {
    TransactionType.income: "Income",
    TransactionType.expense: "Expense",
}

_LINE_BREAKS = re.compile(r"\r\n|\r|\n")
_UNSAFE_DESCRIPTION_CHARS = re.compile(r"[^\w\s\-.,!?()\"]")
_NEEDS_QUOTING = re.compile(r"[\",\r\n]")


def sanitize_csv_value(value: str) -> str:
    """
    Sanitize CSV values to prevent formula injection by prefixing dangerous patterns with tab.
    """
    if not value or value.strip() == "":
        return ""

    value = value.strip()

    formula_triggers = ("=", "+", "-", "@", "\t", "\r")

    if value.startswith(formula_triggers):
        return "\t" + value

    dangerous_patterns = [
        r"^cmd\s*",
        r"^powershell\s*",
        r"^bash\s*",
        r"^\.",
        r"^http[s]?://",
    ]

    for pattern in dangerous_patterns:
        if re.match(pattern, value, re.IGNORECASE):
            return "\t" + value

    return value


def sanitize_description(value: Optional[str], max_length: int) -> str:
    """Fold line breaks, drop unsafe characters and cap the length.

    A truncated result is exactly ``max_length`` characters long and ends
    with ``...``.
    """
    if max_length < 1:
        raise ValueError("max_length must be positive")
    text = _LINE_BREAKS.sub(" ", value or "")
    text = _UNSAFE_DESCRIPTION_CHARS.sub("", text).strip()
    if len(text) > max_length:
        if max_length <= 3:
            return text[:max_length]
        text = text[: max_length - 3] + "..."
    return text


def quote_field(value: str, *, always: bool = False) -> str:
    if always or _NEEDS_QUOTING.search(value):
        return '"' + value.replace('"', '""') + '"'
    return value


def parse_amount(value: str, *, allow_negative: bool = False) -> int:
    clean = value.strip().upper()
    for symbol in ("FCFA", "XOF", "EUR", "€", "$", " "):
        clean = clean.replace(symbol, "")
    clean = clean.replace(",", ".")
    if clean.count(".") > 1:
        parts = clean.split(".")
        clean = "".join(parts[:-1]) + "." + parts[-1]
    try:
        amount = Decimal(clean)
    except InvalidOperation as exc:
        raise ValueError("Invalid amount") from exc
    if not amount.is_finite():
        raise ValueError("Invalid amount")
    cents = int((amount * 100).quantize(Decimal("1")))
    if cents < 0 and not allow_negative:
        raise ValueError("Amount must be positive")
    return cents


def _record_row(record: TransactionRecord, currency: str, max_length: int) -> str:
    # Joined by hand: the description column is always quoted, the others only
    # when needed, and csv.writer applies one quoting mode to every column.
    category = sanitize_csv_value(record.category) or UNCATEGORIZED
    return ",".join(
        [
            format_date(record.date),
            TYPE_LABELS[record.type],
            format_amount(record.amount_cents, currency, negative=record.is_expense),
            quote_field(category),
            quote_field(sanitize_description(record.description, max_length), always=True),
        ]
    )


def _placeholder_row(currency: str) -> str:
    return ",".join(
        [
            INVALID_DATE,
            "Error",
            format_amount(0, currency),
            UNCATEGORIZED,
            quote_field(UNREADABLE_RECORD, always=True),
        ]
    )


def export_transactions(
    transactions: Iterable[Any],
    *,
    currency: str,
    description_max_length: int = 100,
) -> str:
    lines = [",".join(CSV_HEADER)]
    for record in coerce_all(transactions):
        if record is None:
            lines.append(_placeholder_row(currency))
        else:
            lines.append(_record_row(record, currency, description_max_length))
    return "\n".join(lines) + "\n"


def _report_writer() -> tuple[StringIO, Any]:
    output = StringIO()
    return output, csv.writer(output, lineterminator="\n")


def monthly_report_csv(report: dict[str, Any]) -> str:
    output, writer = _report_writer()
    summary = report["summary"]
    writer.writerow(["Monthly report - MoneyWise"])
    writer.writerow([])
    writer.writerow([f"Summary for {report['period']['label']}"])
    writer.writerow(["Total income", _units(summary["total_income"])])
    writer.writerow(["Total expense", _units(summary["total_expense"])])
    writer.writerow(["Balance", _units(summary["balance"])])
    writer.writerow(["Transaction count", summary["transaction_count"]])
    writer.writerow([])
    writer.writerow(["Expenses by category"])
    writer.writerow(["Category", "Amount", "Percentage", "Transaction count"])
    for row in report["expenses_by_category"]:
        writer.writerow(
            [
                sanitize_csv_value(row["category"]),
                _units(row["amount"]),
                f"{row['percentage']}%",
                row["transaction_count"],
            ]
        )
    return output.getvalue()


def yearly_report_csv(report: dict[str, Any]) -> str:
    output, writer = _report_writer()
    summary = report["summary"]
    writer.writerow([f"Yearly report {report['period']['year']} - MoneyWise"])
    writer.writerow([])
    writer.writerow(["Summary of the year"])
    writer.writerow(["Total income", _units(summary["total_income"])])
    writer.writerow(["Total expense", _units(summary["total_expense"])])
    writer.writerow(["Balance", _units(summary["balance"])])
    writer.writerow(["Average monthly income", f"{summary['average_monthly_income']:.2f}"])
    writer.writerow(["Average monthly expense", f"{summary['average_monthly_expense']:.2f}"])
    writer.writerow([])
    writer.writerow(["Monthly breakdown"])
    writer.writerow(["Month", "Income", "Expense", "Balance"])
    for row in report["monthly_breakdown"]:
        writer.writerow(
            [
                row["label"],
                _units(row["income"]),
                _units(row["expense"]),
                _units(row["balance"]),
            ]
        )
    return output.getvalue()


def _units(value: float) -> str:
    return format_decimal(int(round(value * 100)))
