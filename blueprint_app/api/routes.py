import re
import logging
from datetime import datetime, timezone
from typing import Optional

import httpx
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Response

from models.report import NormalizedReport
from services.export_service import export_report_excel, render_pdf
from services.record_dedup import build_listing
from services.report_assembler import build_sections, report_title
from services.report_pipeline import layout_report, load_report
from services.stage_client import (
    STAGE_FETCH_TIMEOUT,
    BearerCredentials,
    MissingRequiredStage,
    StageFetchError,
    fetch_design_listing,
)

logger = logging.getLogger(__name__)

api_router = APIRouter(prefix="/api")

PROJECT_TYPE_PATTERN = "^(basic|advanced)$"


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def get_credentials(authorization: Optional[str] = Header(None)) -> BearerCredentials:
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing authorization token")
    try:
        return BearerCredentials(authorization)
    except ValueError:
        raise HTTPException(status_code=401, detail="Missing authorization token")


async def get_http_client():
    async with httpx.AsyncClient(timeout=STAGE_FETCH_TIMEOUT) as client:
        yield client


async def _load(project_id: str, project_type: str, credentials, client) -> NormalizedReport:
    try:
        return await load_report(project_id, credentials, project_type=project_type, client=client)
    except MissingRequiredStage as e:
        logger.error("Report for project %s unavailable: %s", project_id, str(e))
        raise HTTPException(
            status_code=502,
            detail={"message": "Could not load calculations", "stages": e.stages},
        )


def _download_name(report: NormalizedReport, extension: str) -> str:
    stem = re.sub(r"[^a-zA-Z0-9_-]", "_", report_title(report))
    return f"{stem}-{report.project_id}.{extension}"


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------


@api_router.get("/projects")
async def list_projects(
    category: Optional[str] = Query(None, pattern=PROJECT_TYPE_PATTERN),
    credentials: BearerCredentials = Depends(get_credentials),
    client: httpx.AsyncClient = Depends(get_http_client),
):
    try:
        designs = await fetch_design_listing(credentials, client=client)
        listing = build_listing(designs)
        if category == "basic":
            return {"projects": [p.model_dump(mode="json") for p in listing.basic]}
        if category == "advanced":
            return {"projects": [p.model_dump(mode="json") for p in listing.advanced]}
        return listing.model_dump(mode="json")
    except StageFetchError as e:
        logger.error("Error fetching design listing: %s", str(e))
        raise HTTPException(status_code=502, detail="Could not load projects")
    except HTTPException:
        raise
    except Exception as e:
        logger.error("Error building project listing: %s", str(e))
        raise HTTPException(status_code=500, detail="Failed to fetch projects")


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


@api_router.get("/projects/{project_id}/report")
async def get_report(
    project_id: str,
    project_type: str = Query("advanced", alias="type", pattern=PROJECT_TYPE_PATTERN),
    credentials: BearerCredentials = Depends(get_credentials),
    client: httpx.AsyncClient = Depends(get_http_client),
):
    try:
        report = await _load(project_id, project_type, credentials, client)
        return {
            "title": report_title(report),
            "report": report.model_dump(mode="json"),
            "sections": [s.model_dump(mode="json") for s in build_sections(report)],
        }
    except HTTPException:
        raise
    except Exception as e:
        logger.error("Error building report: %s", str(e))
        raise HTTPException(status_code=500, detail="Failed to build report")


@api_router.get("/projects/{project_id}/report/layout")
async def get_report_layout(
    project_id: str,
    project_type: str = Query("advanced", alias="type", pattern=PROJECT_TYPE_PATTERN),
    credentials: BearerCredentials = Depends(get_credentials),
    client: httpx.AsyncClient = Depends(get_http_client),
):
    try:
        report = await _load(project_id, project_type, credentials, client)
        document = layout_report(report)
        return document.model_dump(mode="json")
    except HTTPException:
        raise
    except Exception as e:
        logger.error("Error laying out report: %s", str(e))
        raise HTTPException(status_code=500, detail="Failed to lay out report")


@api_router.get("/projects/{project_id}/report/pdf")
async def export_report_pdf(
    project_id: str,
    project_type: str = Query("advanced", alias="type", pattern=PROJECT_TYPE_PATTERN),
    credentials: BearerCredentials = Depends(get_credentials),
    client: httpx.AsyncClient = Depends(get_http_client),
):
    try:
        report = await _load(project_id, project_type, credentials, client)
        pdf_bytes = render_pdf(layout_report(report))
        return Response(
            content=pdf_bytes,
            media_type="application/pdf",
            headers={
                "Content-Disposition": f'attachment; filename="{_download_name(report, "pdf")}"',
                "Content-Length": str(len(pdf_bytes)),
            },
        )
    except HTTPException:
        raise
    except Exception as e:
        logger.error("Error exporting report PDF: %s", str(e))
        raise HTTPException(status_code=500, detail="Failed to export PDF")


@api_router.get("/projects/{project_id}/report/xlsx")
async def export_report_xlsx(
    project_id: str,
    project_type: str = Query("advanced", alias="type", pattern=PROJECT_TYPE_PATTERN),
    credentials: BearerCredentials = Depends(get_credentials),
    client: httpx.AsyncClient = Depends(get_http_client),
):
    try:
        report = await _load(project_id, project_type, credentials, client)
        xlsx_bytes = export_report_excel(report, build_sections(report), report_title(report))
        return Response(
            content=xlsx_bytes,
            media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
            headers={
                "Content-Disposition": f'attachment; filename="{_download_name(report, "xlsx")}"',
                "Content-Length": str(len(xlsx_bytes)),
            },
        )
    except HTTPException:
        raise
    except Exception as e:
        logger.error("Error exporting report workbook: %s", str(e))
        raise HTTPException(status_code=500, detail="Failed to export Excel")


@api_router.get("/health")
async def health():
    return {"status": "ok", "time": datetime.now(timezone.utc)}
