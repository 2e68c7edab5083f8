"""Paginated transaction table rendered to PDF.

A layout pass walks the records with a vertical cursor measured in points
from the top of an A4 page and starts a new page whenever the next row would
cross ``PAGE_BOTTOM``. Each page repeats the header band. The resulting
layout is rendered to HTML with Jinja2 and converted by WeasyPrint.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Sequence

from csv_utils import CSV_HEADER, TYPE_LABELS, sanitize_description
from errors import ExportUnavailableError
from formatting import INVALID_DATE, format_amount, format_date
from periods import Period
from records import UNCATEGORIZED, UNREADABLE_RECORD, TransactionRecord
from templating import templates

logger = logging.getLogger(__name__)

PAGE_TOP = 50
HEADER_HEIGHT = 60
ROW_HEIGHT = 20
PAGE_BOTTOM = 750
BAR_MAX_WIDTH = 300
PDF_DESCRIPTION_MAX_LENGTH = 40


@dataclass(frozen=True)
class PdfRow:
    top: int
    shaded: bool
    kind: str
    cells: tuple[str, ...]


@dataclass
class PdfPage:
    number: int
    header: tuple[str, ...] = CSV_HEADER
    rows: list[PdfRow] = field(default_factory=list)


@dataclass(frozen=True)
class SummaryBars:
    income_width: int
    expense_width: int


@dataclass(frozen=True)
class PdfSummary:
    total_income: str
    total_expense: str
    balance: str
    bars: SummaryBars


@dataclass
class PdfLayout:
    pages: list[PdfPage]
    summary: PdfSummary


def summary_bars(
    income_cents: int, expense_cents: int, max_width: int = BAR_MAX_WIDTH
) -> SummaryBars:
    largest = max(income_cents, expense_cents)
    if largest <= 0:
        return SummaryBars(0, 0)
    return SummaryBars(
        income_width=round(max_width * income_cents / largest),
        expense_width=round(max_width * expense_cents / largest),
    )


def _cells(
    record: Optional[TransactionRecord], currency: str
) -> tuple[str, tuple[str, ...]]:
    if record is None:
        return (
            "error",
            (
                INVALID_DATE,
                "Error",
                format_amount(0, currency),
                UNCATEGORIZED,
                UNREADABLE_RECORD,
            ),
        )
    kind = record.type.value
    return (
        kind,
        (
            format_date(record.date),
            TYPE_LABELS[record.type],
            format_amount(record.amount_cents, currency, negative=record.is_expense),
            record.category,
            sanitize_description(record.description, PDF_DESCRIPTION_MAX_LENGTH),
        ),
    )


def layout_pages(
    records: Sequence[Optional[TransactionRecord]], *, currency: str
) -> list[PdfPage]:
    first_row = PAGE_TOP + HEADER_HEIGHT
    pages = [PdfPage(number=1)]
    cursor = first_row
    for record in records:
        if cursor + ROW_HEIGHT > PAGE_BOTTOM:
            pages.append(PdfPage(number=len(pages) + 1))
            cursor = first_row
        page = pages[-1]
        kind, cells = _cells(record, currency)
        page.rows.append(
            PdfRow(
                top=cursor,
                shaded=len(page.rows) % 2 == 1,
                kind=kind,
                cells=cells,
            )
        )
        cursor += ROW_HEIGHT
    return pages


def build_layout(
    records: Sequence[Optional[TransactionRecord]], *, currency: str
) -> PdfLayout:
    income = sum(r.amount_cents for r in records if r is not None and not r.is_expense)
    expense = sum(r.amount_cents for r in records if r is not None and r.is_expense)
    balance = income - expense
    summary = PdfSummary(
        total_income=format_amount(income, currency),
        total_expense=format_amount(expense, currency),
        balance=format_amount(balance, currency),
        bars=summary_bars(income, expense),
    )
    return PdfLayout(pages=layout_pages(records, currency=currency), summary=summary)


def render_html(layout: PdfLayout, period: Period, generated_at: datetime) -> str:
    template = templates.get_template("report_table.html")
    return template.render(
        layout=layout,
        period_start=format_date(period.start),
        period_end=format_date(period.end),
        generated_at=generated_at.strftime("%d-%m-%Y %H:%M"),
        page_top=PAGE_TOP,
        header_height=HEADER_HEIGHT,
        row_height=ROW_HEIGHT,
        bar_max_width=BAR_MAX_WIDTH,
    )


def render_pdf(html: str) -> bytes:
    try:
        from weasyprint import HTML
    except (ImportError, OSError) as exc:
        logger.exception("pdf_export_unavailable")
        raise ExportUnavailableError(
            "PDF export requires WeasyPrint system dependencies; install them for your OS and retry."
        ) from exc

    started = datetime.now()
    pdf_bytes = HTML(string=html).write_pdf()
    duration = (datetime.now() - started).total_seconds()
    logger.info(
        f"pdf_rendered: pdf_size_bytes={len(pdf_bytes)} pdf_duration={duration:.2f}s"
    )
    return pdf_bytes
