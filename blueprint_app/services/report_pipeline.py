"""
Fetch -> normalize -> assemble -> layout for one project.
"""
import os
import logging
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

import httpx

from models.document import Document
from models.report import NormalizedReport
from services.page_flow import LETTER_HEIGHT, LETTER_WIDTH, layout
from services.report_assembler import REQUIRED_STAGES, assemble, build_sections, report_title
from services.stage_client import (
    ADVANCED_PROJECT_STAGES,
    BASIC_PROJECT_STAGES,
    CredentialProvider,
    MissingRequiredStage,
    StageFetchError,
    fetch_stage_payloads,
)
from services.unit_normalizer import STAGE_NAMES, normalize

logger = logging.getLogger(__name__)

PAGE_SIZES = {
    "letter": (LETTER_WIDTH, LETTER_HEIGHT),
    "a4": (595.28, 841.89),
}
REPORT_PAGE_SIZE = os.environ.get("REPORT_PAGE_SIZE", "letter").lower()
REPORT_MARGIN = float(os.environ.get("REPORT_MARGIN", "50"))


def build_report(payloads: Mapping[str, Any], project_id: Optional[str] = None,
                 project_type: str = "advanced") -> NormalizedReport:
    """Normalize and assemble fetched payloads; basic and stage6 must be present."""
    missing = {
        stage: StageFetchError(stage, "no payload")
        for stage in REQUIRED_STAGES
        if payloads.get(stage) is None
    }
    if missing:
        logger.error("Project %s is missing required stage(s): %s", project_id, ", ".join(missing))
        raise MissingRequiredStage(project_id, missing)

    sub_reports = []
    for stage in STAGE_NAMES:
        if payloads.get(stage) is None:
            logger.info("Stage %s not available for project %s; section omitted", stage, project_id)
            continue
        sub_reports.append(normalize(stage, payloads[stage]))
    report = assemble(sub_reports, project_id=project_id, project_type=project_type)
    for d in report.diagnostics:
        logger.warning("Project %s: %s (%s)", project_id, d.message, d.code)
    return report


async def load_report(project_id: str, credentials: CredentialProvider, project_type: str = "advanced",
                      client: Optional[httpx.AsyncClient] = None) -> NormalizedReport:
    stages = BASIC_PROJECT_STAGES if project_type == "basic" else ADVANCED_PROJECT_STAGES
    payloads = await fetch_stage_payloads(project_id, credentials, client=client, stages=stages)
    return build_report(payloads, project_id=project_id, project_type=project_type)


def page_dimensions(page_size: str = REPORT_PAGE_SIZE) -> tuple[float, float]:
    size = PAGE_SIZES.get(page_size.lower())
    if size is None:
        logger.warning("Unknown page size %r; using letter", page_size)
        size = PAGE_SIZES["letter"]
    return size


def layout_report(report: NormalizedReport, generated_at: Optional[datetime] = None,
                  page_size: str = REPORT_PAGE_SIZE, margin: float = REPORT_MARGIN) -> Document:
    width, height = page_dimensions(page_size)
    return layout(
        build_sections(report),
        height,
        margin,
        page_width=width,
        title=report_title(report),
        generated_at=generated_at or datetime.now(timezone.utc),
    )
