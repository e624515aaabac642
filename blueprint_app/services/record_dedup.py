"""
Listing deduplication and classification.

The design listing returns the same project several times (one entry per
design revision, plus historical copies). These helpers collapse those into
one record per project, newest first, and split them into basic and advanced.
"""
import logging
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Iterable, Mapping, Optional

from models.schemas import DesignRecord, ProjectListing, ProjectRecord, ProjectType

logger = logging.getLogger(__name__)


def _usable_id(value: Any) -> Optional[str]:
    if value is None or isinstance(value, bool):
        return None
    text = str(value).strip()
    return text or None


def _first_id(raw: Mapping, *keys: str) -> Optional[str]:
    for key in keys:
        rid = _usable_id(raw.get(key))
        if rid is not None:
            return rid
    return None


def _design_id(raw: Mapping) -> Optional[str]:
    """A design entry names its id either `design_id` or `id`; `design_id` wins."""
    return _first_id(raw, "design_id", "id")


def _text(value: Any) -> str:
    return "" if value is None else str(value).strip()


def parse_created_at(raw: Any) -> Optional[datetime]:
    """Accept ISO-8601 or RFC-1123 timestamps; naive values are taken as UTC."""
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        parsed = raw
    else:
        text = str(raw).strip()
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            try:
                parsed = parsedate_to_datetime(text)
            except (TypeError, ValueError):
                parsed = None
            if parsed is None:
                logger.warning("Unparseable created_at value: %s", text)
                return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def classify(raw_type: Any) -> ProjectType:
    return "advanced" if raw_type == "advanced" else "basic"


def _recency_key(record) -> tuple:
    created = record.created_at
    return (created is None, -created.timestamp() if created is not None else 0.0)


def project_record(raw: Mapping, design: Optional[Mapping] = None) -> ProjectRecord:
    design = design or {}
    created = raw.get("created_at") or design.get("created_at")
    return ProjectRecord(
        id=_first_id(raw, "id", "project_id"),
        name=_text(raw.get("name") or raw.get("project_name")),
        species_names=_text(raw.get("species_names")),
        type=classify(raw.get("type")),
        design_system_name=_text(raw.get("design_system_name") or design.get("design_system_name")) or None,
        design_id=_design_id(design) if design else _first_id(raw, "design_id"),
        created_at=parse_created_at(created),
    )


def design_record(raw: Mapping) -> DesignRecord:
    projects = raw.get("projects") or []
    return DesignRecord(
        design_id=_design_id(raw),
        design_system_name=_text(raw.get("design_system_name")),
        project_name=_text(raw.get("project_name")),
        created_at=parse_created_at(raw.get("created_at")),
        projects=[project_record(p, raw) for p in projects if isinstance(p, Mapping)],
    )


def _designs_from(listing: Any) -> list[Mapping]:
    if isinstance(listing, Mapping):
        listing = listing.get("designs", [])
    if not isinstance(listing, list):
        logger.warning("Design listing is not a list (%s); treating as empty", type(listing).__name__)
        return []
    return [d for d in listing if isinstance(d, Mapping)]


def design_records_from_listing(listing: Any) -> list[DesignRecord]:
    return [design_record(d) for d in _designs_from(listing)]


def flatten_listing(listing: Any) -> list[ProjectRecord]:
    """Turn a nested design -> projects listing into flat project records."""
    return [project for design in design_records_from_listing(listing) for project in design.projects]


def dedupe(records: Iterable[ProjectRecord]) -> list[ProjectRecord]:
    """
    Collapse duplicate project records, first occurrence wins.

    Two records are the same project when they share a usable id, or when
    neither has one and (name, species_names) match. Output is sorted by
    created_at descending with undated records last; the sort is stable.
    """
    records = list(records)
    seen_ids: set[str] = set()
    seen_names: set[tuple[str, str]] = set()
    unique = []
    for record in records:
        rid = _usable_id(record.id)
        if rid is not None:
            if rid in seen_ids:
                continue
            seen_ids.add(rid)
        else:
            key = (record.name, record.species_names)
            if key in seen_names:
                continue
            seen_names.add(key)
        unique.append(record)
    dropped = len(records) - len(unique)
    if dropped:
        logger.info("Dropped %s duplicate project record(s)", dropped)
    return sorted(unique, key=_recency_key)


def dedupe_latest(records: Iterable[ProjectRecord]) -> list[ProjectRecord]:
    """Like dedupe, but the newest record of each project survives."""
    return dedupe(sorted(records, key=_recency_key))


def dedupe_designs(designs: Iterable[DesignRecord]) -> list[DesignRecord]:
    seen_ids: set[str] = set()
    seen_names: set[tuple[str, str]] = set()
    unique = []
    for design in designs:
        did = _usable_id(design.design_id)
        if did is not None:
            if did in seen_ids:
                continue
            seen_ids.add(did)
        else:
            key = (design.design_system_name, design.project_name)
            if key in seen_names:
                continue
            seen_names.add(key)
        unique.append(design)
    return sorted(unique, key=_recency_key)


def split_by_category(records: Iterable[ProjectRecord]) -> tuple[list[ProjectRecord], list[ProjectRecord]]:
    basic, advanced = [], []
    for record in records:
        (advanced if record.type == "advanced" else basic).append(record)
    return basic, advanced


def build_listing(listing: Any) -> ProjectListing:
    designs = dedupe_designs(design_records_from_listing(listing))
    projects = dedupe_latest(p for d in designs for p in d.projects)
    basic, advanced = split_by_category(projects)
    logger.info(
        "Project listing: %s design(s), %s project(s) (%s basic, %s advanced)",
        len(designs), len(projects), len(basic), len(advanced),
    )
    return ProjectListing(projects=projects, basic=basic, advanced=advanced)
