# [Core: Section Router]
"""
Section Router: maps document sections to the workers responsible for them
and the global page ranges each worker should see.

Matching is a case-insensitive substring test in both directions between
the section title and each routing rule. Level-1 sections are routed first;
level-2/3 subsections only add a range when no range already assigned to
that worker contains it. Subsection pages are local to their parent and are
translated to global pages before use.

An optional semantic router asks a cheap model to assign sections and falls
back to string matching on any failure.
"""
from __future__ import annotations

import json
import logging
from typing import Dict, List, Optional, Sequence

from brf_extract.agent.workers import ALL_WORKERS, WORKERS
from brf_extract.config import settings
from brf_extract.models.schemas import (
    CallRequest,
    ChatMessage,
    PageRange,
    Routing,
    Section,
    SectionMap,
)
from brf_extract.tools.json_repair import parse_worker_output
from brf_extract.tools.worker import Dispatcher

logger = logging.getLogger(__name__)

FULL_DOCUMENT = "Full Document"

# Swedish section title -> workers. Several workers may read the same section.
SECTION_WORKER_ROUTING: Dict[str, List[str]] = {
    # Governance
    "Förvaltningsberättelse": [
        "chairman_agent",
        "board_members_agent",
        "property_agent",
        "events_agent",
        "leverantörer_agent",
    ],
    "Styrelsen": ["chairman_agent", "board_members_agent"],
    "Styrelse": ["chairman_agent", "board_members_agent"],
    "Revisorer": ["auditor_agent"],
    "Revisor": ["auditor_agent"],
    # Financial statements
    "Resultaträkning": ["financial_agent", "key_metrics_agent"],
    "Balansräkning": ["financial_agent", "balance_sheet_agent", "key_metrics_agent"],
    "Kassaflödesanalys": ["cashflow_agent"],
    "Kassaflöde": ["cashflow_agent"],
    # Notes
    "Noter": [
        "notes_depreciation_agent",
        "notes_maintenance_agent",
        "notes_tax_agent",
        "loans_agent",
        "operating_costs_agent",
    ],
    "Tilläggsupplysningar": [
        "notes_depreciation_agent",
        "notes_maintenance_agent",
        "notes_tax_agent",
    ],
    # Other
    "Revisionsberättelse": ["audit_report_agent"],
    "Energideklaration": ["energy_agent"],
    "Energi": ["energy_agent"],
    "Avgifter": ["fees_agent"],
    "Årsavgift": ["fees_agent"],
    "Avsättningar": ["reserves_agent"],
    "Underhåll": ["notes_maintenance_agent", "operating_costs_agent"],
    "Driftskostnader": ["operating_costs_agent", "financial_agent"],
}


def match_workers(title: str) -> List[str]:
    """Workers whose routing rule matches ``title`` (deduplicated, in table order)."""
    needle = title.strip().lower()
    if not needle:
        return []
    matched: List[str] = []
    for pattern, workers in SECTION_WORKER_ROUTING.items():
        rule = pattern.lower()
        if rule in needle or needle in rule:
            matched.extend(w for w in workers if w not in matched)
    return matched


def _find(sections: Sequence[Section], title: Optional[str]) -> Optional[Section]:
    if not title:
        return None
    wanted = title.strip().lower()
    for section in sections:
        if section.title.lower() == wanted:
            return section
    return None


def _to_global(section: Section, parent: Section) -> Section:
    start = min(parent.start_page + section.start_page - 1, parent.end_page)
    end = min(parent.start_page + section.end_page - 1, parent.end_page)
    return section.model_copy(update={"start_page": start, "end_page": max(start, end)})


def globalize_subsections(section_map: SectionMap) -> List[Section]:
    """
    Level-2 then level-3 sections with pages translated to global numbering.

    Level-2 parents are level-1 titles; level-3 parents may be either.
    Subsections whose parent cannot be found are skipped.
    """
    resolved_l2: List[Section] = []
    for section in section_map.level_2:
        parent = _find(section_map.level_1, section.parent)
        if parent is None:
            logger.warning(f"Skipping L2 section '{section.title}': parent '{section.parent}' not found")
            continue
        resolved_l2.append(_to_global(section, parent))

    resolved_l3: List[Section] = []
    for section in section_map.level_3:
        parent = _find(resolved_l2, section.parent) or _find(section_map.level_1, section.parent)
        if parent is None:
            logger.warning(f"Skipping L3 section '{section.title}': parent '{section.parent}' not found")
            continue
        resolved_l3.append(_to_global(section, parent))

    return resolved_l2 + resolved_l3


def route(
    section_map: SectionMap,
    requested_workers: Optional[Sequence[str]] = None,
    page_count: Optional[int] = None,
) -> Routing:
    """
    Route sections to workers.

    Args:
        section_map: Hierarchical section map (level 2/3 pages local to parent)
        requested_workers: Workers allowed to run (default: every registered worker)
        page_count: Page count of the document, for the no-match fallback

    Returns:
        worker id -> list of global page ranges
    """
    requested = list(requested_workers) if requested_workers else list(ALL_WORKERS)
    allowed = set(requested)
    routing: Routing = {}

    for section in section_map.level_1:
        for worker_id in match_workers(section.title):
            if worker_id not in allowed:
                continue
            routing.setdefault(worker_id, []).append(
                PageRange(start_page=section.start_page, end_page=section.end_page, section=section.title)
            )

    for section in globalize_subsections(section_map):
        candidate = PageRange(start_page=section.start_page, end_page=section.end_page, section=section.title)
        for worker_id in match_workers(section.title):
            if worker_id not in allowed:
                continue
            ranges = routing.setdefault(worker_id, [])
            if not any(existing.contains(candidate) for existing in ranges):
                ranges.append(candidate)

    if not routing:
        last_page = page_count or section_map.last_page
        logger.warning(f"No section matches found, running {len(requested)} workers on pages 1-{last_page}")
        full = PageRange(start_page=1, end_page=max(last_page, 1), section=FULL_DOCUMENT)
        routing = {worker_id: [full] for worker_id in requested}

    return routing


def routed_pages(ranges: Sequence[PageRange], page_count: Optional[int] = None) -> List[int]:
    """Sorted unique 1-based pages covered by ``ranges``."""
    pages = {page for r in ranges for page in r.pages()}
    if page_count is not None:
        pages = {p for p in pages if p <= page_count}
    return sorted(pages)


def extract_page_images(all_images: Sequence[str], ranges: Sequence[PageRange]) -> List[str]:
    """Images for the pages covered by ``ranges``, in page order, each page once."""
    return [all_images[page - 1] for page in routed_pages(ranges, page_count=len(all_images))]


def validate_routing(routing: Routing, requested_workers: Sequence[str]) -> List[str]:
    """Requested workers that ended up with no page range."""
    return [w for w in requested_workers if not routing.get(w)]


# ──────────────────────────────────────────────
# Semantic routing
# ──────────────────────────────────────────────

SEMANTIC_ROUTING_PROMPT = """You assign sections of a Swedish BRF annual report to extraction workers.

SECTIONS (title: pages):
{sections}

WORKERS (id: responsibility):
{workers}

Return a JSON object mapping each worker id to the list of section titles it should read.
Use the section titles exactly as given. Omit workers with no relevant section."""


class SemanticRouter:
    """
    LLM-assisted routing through the dispatch gateway.

    ``route()`` never fails: any error (gateway, parsing, empty answer)
    falls back to string matching.
    """

    def __init__(self, gateway: Dispatcher, tenant_id: str, model: str = "", max_tokens: int = 2000):
        self.gateway = gateway
        self.tenant_id = tenant_id
        self.model = model or settings.router_model
        self.max_tokens = max_tokens

    async def route(
        self,
        section_map: SectionMap,
        requested_workers: Optional[Sequence[str]] = None,
        page_count: Optional[int] = None,
    ) -> Routing:
        try:
            routing = await self._route_semantic(section_map, requested_workers)
            if not routing:
                raise ValueError("semantic router assigned no sections")
            return routing
        except Exception as e:
            logger.warning(f"Semantic routing failed ({e}); falling back to title matching")
            return route(section_map, requested_workers, page_count)

    async def _route_semantic(
        self, section_map: SectionMap, requested_workers: Optional[Sequence[str]]
    ) -> Routing:
        requested = list(requested_workers) if requested_workers else list(ALL_WORKERS)
        sections = list(section_map.level_1) + globalize_subsections(section_map)
        if not sections:
            return {}

        prompt = SEMANTIC_ROUTING_PROMPT.format(
            sections="\n".join(f"- {s.title}: {s.start_page}-{s.end_page}" for s in sections),
            workers="\n".join(
                f"- {w}: {WORKERS[w].description if w in WORKERS else w}" for w in requested
            ),
        )
        request = CallRequest(
            model=self.model,
            messages=(ChatMessage(content=prompt),),
            temperature=0.0,
            max_output_tokens=self.max_tokens,
            structured_output=True,
        )
        response = await self.gateway.dispatch(self.tenant_id, request)
        assignments = parse_worker_output(response.content).data

        by_title = {s.title.lower(): s for s in sections}
        routing: Routing = {}
        for worker_id, titles in assignments.items():
            if worker_id not in requested or not isinstance(titles, list):
                continue
            for title in titles:
                section = by_title.get(str(title).strip().lower())
                if section is None:
                    continue
                candidate = PageRange(start_page=section.start_page, end_page=section.end_page, section=section.title)
                ranges = routing.setdefault(worker_id, [])
                if not any(existing.contains(candidate) for existing in ranges):
                    ranges.append(candidate)

        logger.info(f"Semantic router assigned {len(routing)} workers: {json.dumps(sorted(routing))}")
        return {w: r for w, r in routing.items() if r}
