"""Shift report PDF rendering with reportlab platypus."""

import io
import logging
from datetime import date, datetime

from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.pdfgen import canvas
from reportlab.platypus import PageBreak, Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from sigor.core.config import get_timezone, local_now
from sigor.reports.shifts import (
    ShiftRecord,
    format_duration,
    operator_summary,
    total_minutes,
    vehicle_summary,
)

logger = logging.getLogger(__name__)

REPORT_TITLE = "Shift Report - SIGOR"
HEADER_COLOR = colors.Color(30 / 255, 58 / 255, 95 / 255)

_TABLE_STYLE = TableStyle(
    [
        ("BACKGROUND", (0, 0), (-1, 0), HEADER_COLOR),
        ("TEXTCOLOR", (0, 0), (-1, 0), colors.white),
        ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
        ("ROWBACKGROUNDS", (0, 1), (-1, -1), [colors.white, colors.whitesmoke]),
        ("GRID", (0, 0), (-1, -1), 0.25, colors.lightgrey),
        ("PADDING", (0, 0), (-1, -1), 4),
    ]
)


def report_filename(now: datetime | None = None) -> str:
    now = now or local_now()
    return f"shift-report-{now:%Y-%m-%d-%H%M}.pdf"


def _footer_canvas(generated_at: datetime) -> type[canvas.Canvas]:
    """Canvas class that stamps "Generated on ... - Page i of n" on every page.

    Pages are buffered until save so the total page count is known.
    """
    stamp = f"Generated on {generated_at:%d/%m/%Y} at {generated_at:%H:%M}"

    class FooterCanvas(canvas.Canvas):
        def __init__(self, *args, **kwargs):
            super().__init__(*args, **kwargs)
            self._pages = []

        def showPage(self):
            self._pages.append(dict(self.__dict__))
            self._startPage()

        def save(self):
            total = len(self._pages)
            for number, state in enumerate(self._pages, start=1):
                self.__dict__.update(state)
                self.setFont("Helvetica", 8)
                self.setFillColor(colors.grey)
                self.drawCentredString(
                    self._pagesize[0] / 2, 10 * mm, f"{stamp} - Page {number} of {total}"
                )
                super().showPage()
            super().save()

    return FooterCanvas


def _table(rows: list[list[str]], col_widths: list[float], font_size: int = 9) -> Table:
    table = Table(rows, colWidths=col_widths, repeatRows=1)
    table.setStyle(_TABLE_STYLE)
    table.setStyle(TableStyle([("FONTSIZE", (0, 0), (-1, -1), font_size)]))
    return table


def render_shift_report(
    records: list[ShiftRecord],
    start: date,
    end: date,
    *,
    now: datetime | None = None,
) -> bytes:
    """Render the shift report and return the PDF bytes.

    Args:
        records: Joined shifts, newest first
        start: First day of the reported period
        end: Last day of the reported period
        now: Reference time for open shifts and the footer stamp
    """
    now = now or local_now()
    tz = get_timezone()

    styles = getSampleStyleSheet()
    title_style = ParagraphStyle(
        "ReportTitle", parent=styles["Heading1"], fontSize=18, alignment=TA_CENTER
    )
    period_style = ParagraphStyle(
        "Period", parent=styles["Normal"], fontSize=10, alignment=TA_CENTER
    )
    section_style = ParagraphStyle("Section", parent=styles["Heading2"], fontSize=12)
    body_style = styles["Normal"]

    elements = [
        Paragraph(REPORT_TITLE, title_style),
        Paragraph(f"Period: {start:%d/%m/%Y} to {end:%d/%m/%Y}", period_style),
        Spacer(1, 8 * mm),
        Paragraph("Summary", section_style),
        Paragraph(f"Total shifts: {len(records)}", body_style),
        Paragraph(f"Hours worked: {format_duration(total_minutes(records, now))}", body_style),
        Spacer(1, 6 * mm),
        Paragraph("Hours by Vehicle", section_style),
    ]

    vehicle_rows = [["Vehicle", "Type", "Base", "Shifts", "Total"]]
    for v in vehicle_summary(records, now):
        vehicle_rows.append(
            [v.identifier, v.type, v.base_name, str(v.shifts), format_duration(v.total_minutes)]
        )
    elements.append(_table(vehicle_rows, [35 * mm, 30 * mm, 55 * mm, 20 * mm, 30 * mm]))
    elements.append(Spacer(1, 6 * mm))

    elements.append(Paragraph("Hours by Operator", section_style))
    operator_rows = [["Operator", "Shifts", "Vehicles", "Total"]]
    for o in operator_summary(records, now):
        operator_rows.append(
            [o.name, str(o.shifts), ", ".join(o.vehicles), format_duration(o.total_minutes)]
        )
    elements.append(_table(operator_rows, [60 * mm, 20 * mm, 60 * mm, 30 * mm]))

    elements.append(PageBreak())
    elements.append(Paragraph("Detailed Shift List", section_style))
    detail_rows = [["Operator", "Vehicle", "Start", "End", "Duration"]]
    for r in records:
        detail_rows.append(
            [
                r.operator_name or "N/A",
                r.vehicle.identifier if r.vehicle else "N/A",
                f"{r.joined_at.astimezone(tz):%d/%m/%Y %H:%M}",
                f"{r.left_at.astimezone(tz):%d/%m/%Y %H:%M}" if r.left_at else "On duty",
                format_duration(r.minutes(now)),
            ]
        )
    elements.append(
        _table(detail_rows, [50 * mm, 30 * mm, 32 * mm, 32 * mm, 26 * mm], font_size=8)
    )

    buffer = io.BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=A4,
        title=REPORT_TITLE,
        topMargin=15 * mm,
        bottomMargin=20 * mm,
    )
    doc.build(elements, canvasmaker=_footer_canvas(now.astimezone(tz)))
    logger.info("Rendered shift report: %d shifts", len(records))
    return buffer.getvalue()
