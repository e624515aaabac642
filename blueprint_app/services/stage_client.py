"""
HTTP client for the formulas backend.

Stage payloads for one project are fetched concurrently and fanned in once
every request has resolved or timed out. Only the basic mass balance and
stage 6 are required; every other stage is best-effort and simply absent
when its request fails. Nothing is retried.
"""
import os
import asyncio
import logging
from typing import Any, Iterable, Mapping, Optional, Protocol

import httpx

logger = logging.getLogger(__name__)

AQUA_API_BASE = os.environ.get("AQUA_API_BASE", "http://localhost:8000/backend").rstrip("/")
STAGE_FETCH_TIMEOUT = float(os.environ.get("STAGE_FETCH_TIMEOUT", "8"))
DESIGN_LISTING_MAX_PAGES = int(os.environ.get("DESIGN_LISTING_MAX_PAGES", "20"))

STAGE_ENDPOINTS = {
    "inputs": "/new_design/api/projects/{project_id}/water-quality-parameters",
    "basic": "/formulas/api/projects/{project_id}/production-calculations",
    "stage3": "/advanced/formulas/api/projects/{project_id}/step3",
    "stage4": "/advanced/formulas/api/projects/{project_id}/step4",
    "stage6": "/advanced/formulas/api/projects/{project_id}/step_6_results",
    "limiting_factor": "/advanced/formulas/api/projects/{project_id}/limiting_factor",
    "stage7": "/advanced/formulas/api/projects/{project_id}/step7",
    "stage8": "/advanced/formulas/api/projects/{project_id}/step8",
}
DESIGNS_ENDPOINT = "/new_design/api/designs"

REQUIRED_STAGES = ("basic", "stage6")
BASIC_PROJECT_STAGES = ("inputs", "basic", "stage6", "limiting_factor")
ADVANCED_PROJECT_STAGES = tuple(STAGE_ENDPOINTS)


class CredentialProvider(Protocol):
    def authorization_header(self) -> dict[str, str]:
        ...


class BearerCredentials:
    """Read-only holder for the caller's bearer token."""

    def __init__(self, token: str):
        token = (token or "").strip()
        if token.lower().startswith("bearer "):
            token = token[7:].strip()
        if not token:
            raise ValueError("Bearer token is empty")
        self._token = token

    def authorization_header(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._token}"}

    def __repr__(self) -> str:
        return "BearerCredentials(****)"


class StageFetchError(Exception):
    def __init__(self, stage: str, reason: str, status_code: Optional[int] = None):
        self.stage = stage
        self.reason = reason
        self.status_code = status_code
        detail = f"HTTP {status_code}" if status_code is not None else reason
        super().__init__(f"{stage}: {detail}")


class MissingRequiredStage(Exception):
    """One or more required stages could not be loaded; carries all of them."""

    def __init__(self, project_id: str, failures: Mapping[str, StageFetchError]):
        self.project_id = project_id
        self.failures = dict(failures)
        stages = ", ".join(str(err) for err in self.failures.values())
        super().__init__(f"Could not load calculations for project {project_id} ({stages})")

    @property
    def stages(self) -> list[str]:
        return list(self.failures)


async def _get_json(client: httpx.AsyncClient, stage: str, url: str, headers: dict, params=None) -> Any:
    try:
        resp = await client.get(url, headers=headers, params=params)
    except httpx.TimeoutException as e:
        raise StageFetchError(stage, f"timeout: {e}") from e
    except httpx.HTTPError as e:
        raise StageFetchError(stage, f"request failed: {e}") from e
    if resp.status_code != 200:
        raise StageFetchError(stage, resp.text[:200], status_code=resp.status_code)
    try:
        return resp.json()
    except ValueError as e:
        raise StageFetchError(stage, "response is not JSON") from e


async def _fetch_stage(client, stage, url, headers) -> tuple[str, Any, Optional[StageFetchError]]:
    try:
        return stage, await _get_json(client, stage, url, headers), None
    except StageFetchError as e:
        return stage, None, e


async def fetch_stage_payloads(
    project_id: str,
    credentials: CredentialProvider,
    client: Optional[httpx.AsyncClient] = None,
    stages: Iterable[str] = ADVANCED_PROJECT_STAGES,
    base_url: str = AQUA_API_BASE,
) -> dict[str, Any]:
    """
    Fetch the raw stage payloads for one project.

    Returns a mapping of stage name to payload for every stage that loaded.
    The limiting-factor response is folded into the stage6 payload under
    "limiting_factor". Raises MissingRequiredStage when basic or stage6
    failed.
    """
    if client is None:
        async with httpx.AsyncClient(timeout=STAGE_FETCH_TIMEOUT) as own_client:
            return await fetch_stage_payloads(project_id, credentials, own_client, stages, base_url)

    stages = [s for s in stages if s in STAGE_ENDPOINTS]
    for required in REQUIRED_STAGES:
        if required not in stages:
            stages.append(required)
    headers = {"Accept": "application/json", **credentials.authorization_header()}

    results = await asyncio.gather(*[
        _fetch_stage(client, stage, base_url + STAGE_ENDPOINTS[stage].format(project_id=project_id), headers)
        for stage in stages
    ])

    payloads: dict[str, Any] = {}
    failures: dict[str, StageFetchError] = {}
    for stage, payload, error in results:
        if error is None and payload is None:
            error = StageFetchError(stage, "empty response")
        if error is None:
            payloads[stage] = payload
        elif stage in REQUIRED_STAGES:
            logger.error("Required stage %s failed for project %s: %s", stage, project_id, error.reason)
            failures[stage] = error
        else:
            logger.info("Optional stage %s unavailable for project %s: %s", stage, project_id, error)

    if failures:
        raise MissingRequiredStage(project_id, failures)

    limiting = payloads.pop("limiting_factor", None)
    if limiting is not None and isinstance(payloads.get("stage6"), Mapping):
        payloads["stage6"] = {**payloads["stage6"], "limiting_factor": limiting}
    logger.info("Fetched %s stage payload(s) for project %s", len(payloads), project_id)
    return payloads


def _has_more_pages(data: Any, page: int) -> bool:
    if not isinstance(data, Mapping):
        return False
    if data.get("has_more") or data.get("next_page"):
        return True
    total = data.get("total_pages") or data.get("pages")
    return isinstance(total, int) and page < total


async def fetch_design_listing(
    credentials: CredentialProvider,
    client: Optional[httpx.AsyncClient] = None,
    base_url: str = AQUA_API_BASE,
    max_pages: int = DESIGN_LISTING_MAX_PAGES,
) -> list[dict]:
    """Read every page of the design listing and return the raw design entries."""
    if client is None:
        async with httpx.AsyncClient(timeout=STAGE_FETCH_TIMEOUT) as own_client:
            return await fetch_design_listing(credentials, own_client, base_url, max_pages)

    headers = {"Accept": "application/json", **credentials.authorization_header()}
    designs: list[dict] = []
    page = 1
    while page <= max_pages:
        data = await _get_json(client, "designs", base_url + DESIGNS_ENDPOINT, headers, params={"page": page})
        batch = data.get("designs", []) if isinstance(data, Mapping) else data
        if not isinstance(batch, list):
            logger.warning("Design listing page %s has no designs array", page)
            break
        designs.extend(batch)
        if not batch or not _has_more_pages(data, page):
            break
        page += 1
    else:
        logger.warning("Design listing truncated at %s page(s)", max_pages)
    return designs
