"""
Page flow: turns an ordered list of report sections into a paginated Document.

The engine walks the section tree with a single top-down cursor. Before a
header is placed it reserves room for the header, any headers that follow it
directly, and the start of the next table (the whole table when the whole
chain fits on one page, otherwise the head row plus the first body row), so
a header is never left at the bottom of a page without its content.

Tables are placed whole when they fit, moved to a fresh page when they would
fit there, and otherwise split at row boundaries; every continuation repeats
the head row. Page numbers are stamped in a second pass once the page count
is known.
"""
import os
import logging
from datetime import datetime
from typing import NamedTuple, Optional, Sequence

from models.document import Block, Document, Footer, Page, Section, Table

logger = logging.getLogger(__name__)

ATTRIBUTION = os.environ.get("REPORT_ATTRIBUTION", "Generated by Aqua BluePrint")

LETTER_WIDTH = 612
LETTER_HEIGHT = 792
DEFAULT_MARGIN = 50

FONT_NAME = "Helvetica"
FONT_NAME_BOLD = "Helvetica-Bold"
FONT_SIZE = 8
CELL_PAD = 3
MIN_ROW_HEIGHT = 16
LINE_HEIGHT = FONT_SIZE + 2
FIRST_COLUMN_SHARE = 0.6

TITLE_HEIGHT = 40
SECTION_HEADER_HEIGHT = 28
SUBSECTION_HEADER_HEIGHT = 14
SECTION_TABLE_SPACING = 15
SUBSECTION_TABLE_SPACING = 10


def _sanitize(text) -> str:
    if not text:
        return ""
    s = str(text)
    s = s.replace("\u2018", "'").replace("\u2019", "'").replace("\u201a", "'")
    s = s.replace("\u201c", '"').replace("\u201d", '"').replace("\u201e", '"')
    s = s.replace("\u2026", "...").replace("\u2013", "-").replace("\u2014", "--")
    s = s.replace("\u00a0", " ").replace("\u2082", "2")
    return s


def _wrap_text(text: str, max_width: float, font_name: str, font_size: int) -> list:
    from reportlab.pdfbase.pdfmetrics import stringWidth
    words = text.split()
    lines = []
    current = ""
    for word in words:
        test = f"{current} {word}".strip()
        if stringWidth(test, font_name, font_size) <= max_width:
            current = test
        else:
            if current:
                lines.append(current)
            current = word
    if current:
        lines.append(current)
    return lines if lines else [""]


def column_widths(content_width: float) -> tuple[float, float]:
    first = round(content_width * FIRST_COLUMN_SHARE, 2)
    return first, round(content_width - first, 2)


def wrap_cells(cells: Sequence[str], col_widths: Sequence[float], bold: bool = False) -> list[list[str]]:
    font = FONT_NAME_BOLD if bold else FONT_NAME
    return [
        _wrap_text(_sanitize(cell), col_widths[i] - CELL_PAD * 2, font, FONT_SIZE)
        for i, cell in enumerate(cells)
    ]


def measure_row(cells: Sequence[str], col_widths: Sequence[float], bold: bool = False) -> float:
    max_h = MIN_ROW_HEIGHT
    for lines in wrap_cells(cells, col_widths, bold):
        h = len(lines) * LINE_HEIGHT + CELL_PAD * 2
        if h > max_h:
            max_h = h
    return float(max_h)


class _Item(NamedTuple):
    kind: str
    text: str = ""
    height: float = 0.0
    table: Optional[Table] = None
    head_height: float = 0.0
    row_heights: tuple = ()
    spacing: float = 0.0


def _measure_table(table: Table, col_widths, spacing: float) -> _Item:
    head_h = measure_row(table.headers, col_widths, bold=True)
    row_heights = tuple(measure_row(row, col_widths) for row in table.rows)
    return _Item(
        kind="table",
        height=head_h + sum(row_heights),
        table=table,
        head_height=head_h,
        row_heights=row_heights,
        spacing=spacing,
    )


def _flatten(sections: Sequence[Section], col_widths) -> list[_Item]:
    items = []
    for section in sections:
        items.append(_Item(kind="section_header", text=section.title, height=SECTION_HEADER_HEIGHT))
        for table in section.tables:
            items.append(_measure_table(table, col_widths, SECTION_TABLE_SPACING))
        for sub in section.subsections:
            items.append(_Item(kind="subsection_header", text=sub.title, height=SUBSECTION_HEADER_HEIGHT))
            items.append(_measure_table(sub.table, col_widths, SUBSECTION_TABLE_SPACING))
    return items


def _table_start(item: _Item) -> float:
    """Smallest piece of a table that may be placed: head row plus first body row."""
    first = item.row_heights[0] if item.row_heights else 0.0
    return item.head_height + first


def header_reserve(items: Sequence[_Item], index: int, usable: float) -> float:
    """Height that must be free before the header at `index` is placed."""
    chain = items[index].height
    j = index + 1
    while j < len(items) and items[j].kind != "table":
        chain += items[j].height
        j += 1
    if j >= len(items):
        return chain
    table = items[j]
    if chain + table.height <= usable:
        return chain + table.height
    return chain + _table_start(table)


class _Flow:
    def __init__(self, page_height: float, margin: float):
        self.top = margin
        self.bottom = page_height - margin
        self.usable = self.bottom - self.top
        self.pages: list[list[Block]] = [[]]
        self.y = self.top
        self.overflowed = False

    @property
    def remaining(self) -> float:
        return self.bottom - self.y

    @property
    def page_empty(self) -> bool:
        return not self.pages[-1]

    def new_page(self):
        self.pages.append([])
        self.y = self.top

    def break_unless_empty(self):
        if not self.page_empty:
            self.new_page()

    def place(self, block_kwargs: dict, height: float) -> Block:
        if height > self.usable:
            self.break_unless_empty()
            self.overflowed = True
            logger.warning(
                "Block %r (%.1fpt) exceeds usable page height %.1fpt; placing at top of page %s",
                block_kwargs.get("text") or block_kwargs.get("kind"), height, self.usable, len(self.pages),
            )
        block = Block(y=self.y, height=height, **block_kwargs)
        self.pages[-1].append(block)
        self.y += height
        return block


def _place_header(flow: _Flow, items: Sequence[_Item], index: int):
    item = items[index]
    reserve = header_reserve(items, index, flow.usable)
    if flow.remaining < reserve:
        flow.break_unless_empty()
    flow.place({"kind": item.kind, "text": item.text}, item.height)


def _place_table(flow: _Flow, item: _Item, attached: bool):
    table = item.table
    if not table.rows:
        if item.head_height > flow.remaining:
            flow.break_unless_empty()
        flow.place({
            "kind": "table", "headers": table.headers, "head_height": item.head_height,
        }, item.head_height)
        flow.y += item.spacing
        return

    if item.height > flow.remaining:
        fits_fresh = item.height <= flow.usable
        if not attached and (fits_fresh or flow.remaining < _table_start(item)):
            flow.break_unless_empty()

    rows = list(table.rows)
    heights = list(item.row_heights)
    continued = False
    while rows:
        budget = flow.remaining - item.head_height
        take = 0
        used = 0.0
        while take < len(rows) and used + heights[take] <= budget:
            used += heights[take]
            take += 1
        if take == 0:
            if not flow.page_empty:
                flow.new_page()
                continue
            # A single row taller than the page; place it anyway and flag it.
            take = 1
            used = heights[0]
        flow.place({
            "kind": "table",
            "headers": table.headers,
            "rows": rows[:take],
            "row_heights": heights[:take],
            "head_height": item.head_height,
            "continued": continued,
        }, item.head_height + used)
        rows, heights = rows[take:], heights[take:]
        if rows:
            flow.new_page()
            continued = True
    flow.y += item.spacing


def stamp_page_numbers(page_blocks: Sequence[Sequence[Block]], attribution: str = ATTRIBUTION) -> list[Page]:
    total = len(page_blocks)
    return [
        Page(
            number=n,
            blocks=list(blocks),
            footer=Footer(page_number=n, total_pages=total, label=f"Page {n}", attribution=attribution),
        )
        for n, blocks in enumerate(page_blocks, start=1)
    ]


def layout(
    sections: Sequence[Section],
    page_height: float = LETTER_HEIGHT,
    margin: float = DEFAULT_MARGIN,
    *,
    page_width: float = LETTER_WIDTH,
    title: str = "",
    generated_at: Optional[datetime] = None,
    attribution: str = ATTRIBUTION,
) -> Document:
    if page_height <= 2 * margin or page_width <= 2 * margin:
        raise ValueError(f"Margin {margin} leaves no room on a {page_width}x{page_height} page")

    col_widths = column_widths(page_width - 2 * margin)
    items = _flatten(sections, col_widths)
    flow = _Flow(page_height, margin)

    if title:
        flow.place({"kind": "title", "text": title}, TITLE_HEIGHT)

    previous_kind = None
    for index, item in enumerate(items):
        if item.kind == "table":
            attached = previous_kind in ("section_header", "subsection_header") and not flow.page_empty
            _place_table(flow, item, attached)
        else:
            _place_header(flow, items, index)
        previous_kind = item.kind

    pages = stamp_page_numbers(flow.pages, attribution)
    if flow.overflowed:
        logger.warning("Layout overflowed; %s page(s) produced", len(pages))
    else:
        logger.info("Laid out %s section(s) on %s page(s)", len(sections), len(pages))
    return Document(
        title=title,
        generated_at=generated_at,
        page_width=page_width,
        page_height=page_height,
        margin=margin,
        pages=pages,
        overflowed=flow.overflowed,
    )
