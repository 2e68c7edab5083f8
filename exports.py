import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Optional, Union

from csv_utils import export_transactions
from errors import ValidationError
from formatting import cents_to_units
from pdf_report import build_layout, render_html, render_pdf
from periods import Period
from records import UNREADABLE_RECORD, TransactionRecord, coerce_all

logger = logging.getLogger(__name__)

EXPORT_FORMATS = ("csv", "json", "pdf")
CONTENT_TYPES = {
    "csv": "text/csv; charset=utf-8",
    "json": "application/json",
    "pdf": "application/pdf",
}


@dataclass(frozen=True)
class ExportResult:
    payload: Union[str, bytes]
    filename: str
    content_type: str


def export_filename(period: Period, fmt: str) -> str:
    return f"transactions_{period.start.isoformat()}_{period.end.isoformat()}.{fmt}"


def _json_entry(record: Optional[TransactionRecord], raw: Any) -> dict[str, object]:
    if record is None:
        raw_id = raw.get("id") if isinstance(raw, Mapping) else getattr(raw, "id", None)
        return {"id": raw_id, "error": UNREADABLE_RECORD}
    return {
        "id": record.id,
        "date": record.date.isoformat() if record.date else None,
        "type": record.type.value,
        "amount": cents_to_units(record.amount_cents),
        "category": record.category,
        "description": record.description,
        "created_at": record.created_at.isoformat() if record.created_at else None,
    }


def json_export(
    transactions: list[Any], period: Period, *, exported_at: Optional[datetime] = None
) -> str:
    records = coerce_all(transactions)
    envelope = {
        "exported_at": (exported_at or datetime.now()).isoformat(),
        "period": {
            "start": period.start.isoformat(),
            "end": period.end.isoformat(),
        },
        "total_transactions": len(records),
        "transactions": [
            _json_entry(record, raw) for record, raw in zip(records, transactions)
        ],
    }
    return json.dumps(envelope, ensure_ascii=False, indent=2)


def format_export(
    transactions: Iterable[Any],
    period: Period,
    fmt: str,
    *,
    currency: str,
    description_max_length: int = 100,
    now: Optional[datetime] = None,
) -> ExportResult:
    if fmt not in EXPORT_FORMATS:
        raise ValidationError(
            f"Unsupported export format '{fmt}', use one of {', '.join(EXPORT_FORMATS)}"
        )
    items = list(transactions)
    now = now or datetime.now()
    if fmt == "csv":
        payload: Union[str, bytes] = export_transactions(
            items, currency=currency, description_max_length=description_max_length
        )
    elif fmt == "json":
        payload = json_export(items, period, exported_at=now)
    else:
        layout = build_layout(coerce_all(items), currency=currency)
        payload = render_pdf(render_html(layout, period, now))
    logger.info(
        f"export_generated: format={fmt} period={period.start}to{period.end} "
        f"transactions={len(items)}"
    )
    return ExportResult(
        payload=payload,
        filename=export_filename(period, fmt),
        content_type=CONTENT_TYPES[fmt],
    )
