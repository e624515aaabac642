import io
import re
import logging
from typing import Optional

from models.document import Block, Document, Footer, Section
from models.report import NormalizedReport, GenericStageResult
from services.page_flow import (
    FONT_NAME,
    FONT_NAME_BOLD,
    FONT_SIZE,
    CELL_PAD,
    LINE_HEIGHT,
    _sanitize,
    column_widths,
    wrap_cells,
)
from services.report_assembler import generic_stage_rows

logger = logging.getLogger(__name__)

HEADER_BG = "#2563EB"
STRIPE_BG = "#F8F9FA"
TITLE_COLOR = "#1E3A5F"
TEXT_COLOR = "#333333"
MUTED_COLOR = "#666666"
RULE_COLOR = "#CCCCCC"

STAGE_SHEET_TITLES = {
    "stage3": "Stage 3",
    "stage4": "Stage 4",
}


def _draw_title(c, block: Block, doc: Document):
    from reportlab.lib.colors import HexColor
    top = doc.page_height - block.y
    c.setFont("Helvetica-Bold", 18)
    c.setFillColor(HexColor(TITLE_COLOR))
    c.drawString(doc.margin, top - 18, _sanitize(block.text))
    if doc.generated_at is not None:
        c.setFont("Helvetica", 9)
        c.setFillColor(HexColor(MUTED_COLOR))
        c.drawString(doc.margin, top - 32, f"Generated on {doc.generated_at.strftime('%m/%d/%Y %H:%M')}")


def _draw_section_header(c, block: Block, doc: Document):
    from reportlab.lib.colors import HexColor
    top = doc.page_height - block.y
    content_width = doc.page_width - 2 * doc.margin
    c.setFont("Helvetica-Bold", 12)
    c.setFillColor(HexColor(TITLE_COLOR))
    c.drawString(doc.margin, top - 14, _sanitize(block.text))
    c.setStrokeColor(HexColor(RULE_COLOR))
    c.setLineWidth(0.5)
    c.line(doc.margin, top - 20, doc.margin + content_width, top - 20)


def _draw_subsection_header(c, block: Block, doc: Document):
    from reportlab.lib.colors import HexColor
    top = doc.page_height - block.y
    c.setFont("Helvetica-Bold", 9)
    c.setFillColor(HexColor(TEXT_COLOR))
    c.drawString(doc.margin, top - 10, _sanitize(block.text))


def _draw_table(c, block: Block, doc: Document):
    from reportlab.lib.colors import HexColor
    col_widths = column_widths(doc.page_width - 2 * doc.margin)
    table_w = sum(col_widths)
    x = doc.margin
    y = doc.page_height - block.y

    def draw_row(cells, rh, bold, bg=None):
        nonlocal y
        if bg:
            c.setFillColor(HexColor(bg))
            c.rect(x, y - rh, table_w, rh, fill=1, stroke=0)
        cx = x
        fn = FONT_NAME_BOLD if bold else FONT_NAME
        fc = "#FFFFFF" if bg == HEADER_BG else TEXT_COLOR
        for i, wrapped in enumerate(wrap_cells(cells, col_widths, bold)):
            c.setFont(fn, FONT_SIZE)
            c.setFillColor(HexColor(fc))
            ty = y - CELL_PAD - FONT_SIZE
            for line in wrapped:
                c.drawString(cx + CELL_PAD, ty, line)
                ty -= LINE_HEIGHT
            cx += col_widths[i]
        c.setStrokeColor(HexColor(RULE_COLOR))
        c.setLineWidth(0.5)
        c.rect(x, y - rh, table_w, rh, fill=0, stroke=1)
        y -= rh

    headers = block.headers or ("Parameter", "Value")
    draw_row(headers, block.head_height, True, HEADER_BG)
    for idx, (row, rh) in enumerate(zip(block.rows, block.row_heights)):
        bg = STRIPE_BG if idx % 2 == 1 else None
        draw_row(row, rh, False, bg)


def _draw_footer(c, footer: Footer, doc: Document):
    from reportlab.lib.colors import HexColor
    baseline = doc.margin / 2
    c.setFont("Helvetica", 8)
    c.setFillColor(HexColor("#808080"))
    c.drawString(doc.margin, baseline, _sanitize(footer.attribution))
    c.drawRightString(doc.page_width - doc.margin, baseline, footer.label)


_BLOCK_PAINTERS = {
    "title": _draw_title,
    "section_header": _draw_section_header,
    "subsection_header": _draw_subsection_header,
    "table": _draw_table,
}


def render_pdf(document: Document) -> bytes:
    """Draw a laid-out Document. Every block is drawn where the layout put it."""
    from reportlab.pdfgen import canvas

    buf = io.BytesIO()
    c = canvas.Canvas(buf, pagesize=(document.page_width, document.page_height))
    c.setTitle(_sanitize(document.title) or "Report")
    c.setAuthor("Aqua BluePrint")

    for page in document.pages:
        for block in page.blocks:
            _BLOCK_PAINTERS[block.kind](c, block, document)
        _draw_footer(c, page.footer, document)
        c.showPage()

    c.save()
    buf.seek(0)
    data = buf.read()
    logger.info("Rendered PDF: %s page(s), %s bytes", len(document.pages), len(data))
    return data


def _sheet_title(title: str, used: set) -> str:
    base = re.sub(r"[\[\]:*?/\\]", "", title).strip()[:31] or "Sheet"
    name = base
    n = 2
    while name in used:
        suffix = f" ({n})"
        name = base[:31 - len(suffix)] + suffix
        n += 1
    used.add(name)
    return name


def export_report_excel(report: NormalizedReport, sections: list[Section], title: str,
                        project_name: Optional[str] = None) -> bytes:
    from openpyxl import Workbook
    from openpyxl.styles import Font

    wb = Workbook()
    wb.remove(wb.active)
    used: set = set()
    bold = Font(bold=True)

    ws = wb.create_sheet(_sheet_title("Summary", used))
    ws.append([title])
    ws["A1"].font = Font(bold=True, size=14)
    if project_name:
        ws.append([f"Project: {project_name}"])
    ws.append([f"Project ID: {report.project_id or '-'}", f"Type: {report.project_type}"])
    ws.append([])
    ws.append(["Section"])
    for section in sections:
        ws.append([section.title])
    ws.column_dimensions["A"].width = 40
    ws.column_dimensions["B"].width = 20

    for section in sections:
        ws = wb.create_sheet(_sheet_title(section.title, used))
        ws.append([section.title])
        ws["A1"].font = bold
        ws.append([])
        for table in section.tables:
            ws.append(list(table.headers))
            for row in table.rows:
                ws.append(list(row))
            ws.append([])
        for sub in section.subsections:
            ws.append([sub.title])
            ws.cell(row=ws.max_row, column=1).font = bold
            ws.append(list(sub.table.headers))
            for row in sub.table.rows:
                ws.append(list(row))
            ws.append([])
        ws.column_dimensions["A"].width = 55
        ws.column_dimensions["B"].width = 25

    for stage, sheet_title in STAGE_SHEET_TITLES.items():
        result = report.stage_results.get(stage)
        if not isinstance(result, GenericStageResult) or not result.life_stages:
            continue
        ws = wb.create_sheet(_sheet_title(sheet_title, used))
        ws.append([f"{sheet_title} Results"])
        ws["A1"].font = bold
        ws.append([])
        for life_stage, rows in generic_stage_rows(result).items():
            ws.append([life_stage.title()])
            ws.cell(row=ws.max_row, column=1).font = bold
            ws.append(["Parameter", "Value"])
            for row in rows:
                ws.append(list(row))
            ws.append([])
        ws.column_dimensions["A"].width = 35
        ws.column_dimensions["B"].width = 20

    if report.diagnostics:
        ws = wb.create_sheet(_sheet_title("Diagnostics", used))
        ws.append(["Code", "Stage", "Severity", "Message"])
        for d in report.diagnostics:
            ws.append([d.code, d.stage or "", d.severity, d.message])
        for col_letter, w in [("A", 22), ("B", 12), ("C", 10), ("D", 70)]:
            ws.column_dimensions[col_letter].width = w

    output = io.BytesIO()
    wb.save(output)
    output.seek(0)
    return output.read()
