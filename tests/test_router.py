"""Section routing: title matching, page translation and semantic fallback."""

from __future__ import annotations

from typing import List

import pytest

from brf_extract.agent.router import (
    FULL_DOCUMENT,
    SemanticRouter,
    extract_page_images,
    globalize_subsections,
    match_workers,
    route,
    routed_pages,
    validate_routing,
)
from brf_extract.models.schemas import CallRequest, PageRange, Section, SectionMap
from brf_extract.services.errors import InsufficientBalance

from conftest import completion


@pytest.fixture
def section_map() -> SectionMap:
    return SectionMap(
        level_1=[
            Section(title="Förvaltningsberättelse", start_page=1, end_page=4),
            Section(title="Resultaträkning", start_page=5, end_page=5),
            Section(title="Balansräkning", start_page=6, end_page=7),
            Section(title="Noter", start_page=8, end_page=12),
        ],
        level_2=[
            Section(title="Revisorer", start_page=2, end_page=2, parent="Förvaltningsberättelse"),
            Section(title="Styrelsen", start_page=1, end_page=2, parent="Förvaltningsberättelse"),
            Section(title="Tilläggsupplysningar", start_page=2, end_page=5, parent="Noter"),
            Section(title="Avgifter", start_page=1, end_page=1, parent="Okänd rubrik"),
        ],
        level_3=[
            Section(title="Avsättningar", start_page=2, end_page=2, parent="Tilläggsupplysningar"),
            Section(title="Energideklaration", start_page=4, end_page=9, parent="Noter"),
        ],
    )


def _span(ranges: List[PageRange]):
    return [(r.start_page, r.end_page) for r in ranges]


def test_balance_sheet_title_routes_to_financial_workers():
    workers = match_workers("Balansräkning")
    assert "financial_agent" in workers
    assert "balance_sheet_agent" in workers


def test_matching_is_case_insensitive_and_two_way():
    assert match_workers("STYRELSEN") == ["chairman_agent", "board_members_agent"]
    assert match_workers("Kassaflödesanalys 2023") == ["cashflow_agent"]
    assert match_workers("Framsida") == []


def test_subsection_pages_translated_to_global(section_map):
    resolved = {s.title: (s.start_page, s.end_page) for s in globalize_subsections(section_map)}
    assert resolved["Revisorer"] == (2, 2)
    assert resolved["Tilläggsupplysningar"] == (9, 12)
    # L3 under an L2 parent
    assert resolved["Avsättningar"] == (10, 10)
    # clamped to the parent's last page
    assert resolved["Energideklaration"] == (11, 12)
    assert "Avgifter" not in resolved


def test_route(section_map):
    routing = route(section_map)

    assert _span(routing["financial_agent"]) == [(5, 5), (6, 7)]
    assert _span(routing["balance_sheet_agent"]) == [(6, 7)]
    assert _span(routing["auditor_agent"]) == [(2, 2)]
    assert _span(routing["reserves_agent"]) == [(10, 10)]
    assert _span(routing["energy_agent"]) == [(11, 12)]
    # contained in the L1 range already assigned
    assert _span(routing["chairman_agent"]) == [(1, 4)]
    assert _span(routing["notes_tax_agent"]) == [(8, 12)]
    # parent not found
    assert "fees_agent" not in routing


def test_route_respects_requested_workers(section_map):
    routing = route(section_map, requested_workers=["balance_sheet_agent", "fees_agent"])
    assert set(routing) == {"balance_sheet_agent"}
    assert validate_routing(routing, ["balance_sheet_agent", "fees_agent"]) == ["fees_agent"]


def test_no_match_falls_back_to_full_document():
    section_map = SectionMap(level_1=[Section(title="Framsida", start_page=1, end_page=3)])

    routing = route(section_map, requested_workers=["chairman_agent", "fees_agent"], page_count=12)
    assert set(routing) == {"chairman_agent", "fees_agent"}
    assert _span(routing["fees_agent"]) == [(1, 12)]
    assert routing["fees_agent"][0].section == FULL_DOCUMENT

    assert _span(route(section_map, requested_workers=["fees_agent"])["fees_agent"]) == [(1, 3)]


def test_routed_pages_and_images():
    ranges = [PageRange(start_page=2, end_page=3), PageRange(start_page=3, end_page=4), PageRange(start_page=9, end_page=10)]
    assert routed_pages(ranges) == [2, 3, 4, 9, 10]
    assert extract_page_images(["p1", "p2", "p3", "p4"], ranges) == ["p2", "p3", "p4"]


# ──────────────────────────────────────────────
# Semantic routing
# ──────────────────────────────────────────────

class StubDispatcher:
    def __init__(self, content: str = "{}", error: Exception = None):
        self.content = content
        self.error = error
        self.requests: List[CallRequest] = []

    async def dispatch(self, tenant_id: str, request: CallRequest):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return completion(self.content)


async def test_semantic_router_maps_titles(section_map):
    stub = StubDispatcher('{"balance_sheet_agent": ["Balansräkning"], "auditor_agent": ["revisorer"], "ghost_agent": ["Noter"]}')
    router = SemanticRouter(stub, tenant_id="tenant-1", model="test/router")

    routing = await router.route(section_map, requested_workers=["balance_sheet_agent", "auditor_agent"])

    assert _span(routing["balance_sheet_agent"]) == [(6, 7)]
    assert _span(routing["auditor_agent"]) == [(2, 2)]
    assert set(routing) == {"balance_sheet_agent", "auditor_agent"}
    [request] = stub.requests
    assert request.model == "test/router"
    assert request.structured_output


@pytest.mark.parametrize(
    "stub",
    [
        StubDispatcher(error=InsufficientBalance("no funds")),
        StubDispatcher("{}"),
        StubDispatcher("I am not sure."),
    ],
)
async def test_semantic_router_falls_back_to_title_matching(section_map, stub):
    router = SemanticRouter(stub, tenant_id="tenant-1", model="test/router")
    routing = await router.route(section_map, page_count=12)
    assert routing == route(section_map, page_count=12)
