"""
Section tree consumed by the page-flow engine and the Document it produces.

Offsets are measured top-down in points from the top edge of the page.
A Document is immutable once built.
"""
from datetime import datetime
from typing import Optional, Literal

from pydantic import BaseModel, Field


BlockKind = Literal["title", "section_header", "subsection_header", "table"]


class Table(BaseModel):
    headers: tuple[str, str] = ("Parameter", "Value")
    rows: list[tuple[str, str]] = Field(default_factory=list)

    model_config = {"frozen": True}


class Subsection(BaseModel):
    title: str
    table: Table

    model_config = {"frozen": True}


class Section(BaseModel):
    title: str
    tables: list[Table] = Field(default_factory=list)
    subsections: list[Subsection] = Field(default_factory=list)

    model_config = {"frozen": True}


class Block(BaseModel):
    kind: BlockKind
    text: str = ""
    y: float
    height: float
    headers: Optional[tuple[str, str]] = None
    rows: list[tuple[str, str]] = Field(default_factory=list)
    row_heights: list[float] = Field(default_factory=list)
    head_height: float = 0.0
    continued: bool = False

    model_config = {"frozen": True}


class Footer(BaseModel):
    page_number: int
    total_pages: int
    label: str
    attribution: str

    model_config = {"frozen": True}


class Page(BaseModel):
    number: int
    blocks: list[Block] = Field(default_factory=list)
    footer: Footer

    model_config = {"frozen": True}


class Document(BaseModel):
    title: str = ""
    generated_at: Optional[datetime] = None
    page_width: float
    page_height: float
    margin: float
    pages: list[Page] = Field(default_factory=list)
    overflowed: bool = False

    model_config = {"frozen": True}
