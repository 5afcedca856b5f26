# [Core: Worker Registry]
"""
Worker registry: the specialist extraction roles and their prompts.

Which fields a worker extracts is data, not logic. Each ``WorkerDef`` names
the fields the worker is expected to return; validation uses that list for
coverage warnings only. Prompts live as markdown files, one per worker, in
``settings.prompts_dir``.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from brf_extract.config import settings

logger = logging.getLogger(__name__)

JSON_ONLY_SUFFIX = (
    "IMPORTANT: Return ONLY valid JSON with the extracted fields. "
    "Do not include markdown formatting or explanations."
)


@dataclass
class WorkerDef:
    """Definition of a specialist extraction worker."""
    worker_id: str
    description: str
    expected_fields: List[str] = field(default_factory=list)


# ──────────────────────────────────────────────
# Worker library
# ──────────────────────────────────────────────

WORKERS: Dict[str, WorkerDef] = {
    w.worker_id: w
    for w in [
        WorkerDef(
            "chairman_agent",
            "Extracts chairman information from board section",
            ["chairman"],
        ),
        WorkerDef(
            "board_members_agent",
            "Extracts board member names and roles",
            ["board_members"],
        ),
        WorkerDef(
            "auditor_agent",
            "Extracts auditor information",
            ["auditor_name", "audit_firm"],
        ),
        WorkerDef(
            "financial_agent",
            "Extracts income statement data (revenue, costs, net result)",
            ["total_revenue_tkr", "property_revenue_tkr", "total_costs_tkr", "operational_costs_tkr", "net_result_tkr"],
        ),
        WorkerDef(
            "balance_sheet_agent",
            "Extracts balance sheet data (assets, liabilities, equity)",
            ["total_assets_tkr", "fixed_assets_tkr", "current_assets_tkr", "total_liabilities_tkr", "total_equity_tkr"],
        ),
        WorkerDef(
            "cashflow_agent",
            "Extracts cash flow statement data",
            ["operating_cash_flow_tkr", "investing_cash_flow_tkr", "financing_cash_flow_tkr", "net_cash_change_tkr"],
        ),
        WorkerDef(
            "property_agent",
            "Extracts property information (address, designation, building details)",
            ["property_designation", "address", "city", "built_year", "total_apartments"],
        ),
        WorkerDef(
            "fees_agent",
            "Extracts membership fees and charges",
            ["annual_fee_per_sqm", "fee_change_percent"],
        ),
        WorkerDef(
            "operational_agent",
            "Extracts operational statistics",
            ["number_of_members", "total_area_sqm"],
        ),
        WorkerDef(
            "notes_depreciation_agent",
            "Extracts depreciation notes",
            ["depreciation_method", "depreciation_tkr"],
        ),
        WorkerDef(
            "notes_maintenance_agent",
            "Extracts maintenance notes",
            ["maintenance_plan", "maintenance_costs_tkr"],
        ),
        WorkerDef(
            "notes_tax_agent",
            "Extracts tax notes",
            ["tax_status", "property_tax_tkr"],
        ),
        WorkerDef(
            "events_agent",
            "Extracts significant events",
            ["significant_events"],
        ),
        WorkerDef(
            "audit_report_agent",
            "Extracts audit report findings",
            ["audit_opinion", "audit_date"],
        ),
        WorkerDef(
            "loans_agent",
            "Extracts loan information",
            ["total_debt_tkr", "loans"],
        ),
        WorkerDef(
            "reserves_agent",
            "Extracts reserve fund information",
            ["maintenance_fund_tkr"],
        ),
        WorkerDef(
            "energy_agent",
            "Extracts energy declaration data",
            ["energy_class", "energy_consumption_kwh_per_sqm"],
        ),
        WorkerDef(
            "operating_costs_agent",
            "Extracts detailed operating costs",
            ["heating_costs_tkr", "electricity_costs_tkr", "water_costs_tkr"],
        ),
        WorkerDef(
            "key_metrics_agent",
            "Extracts key performance metrics",
            ["debt_per_sqm", "solidity_percent"],
        ),
        WorkerDef(
            "leverantörer_agent",
            "Extracts supplier information",
            ["suppliers"],
        ),
    ]
}

ALL_WORKERS: List[str] = list(WORKERS)


def get_worker(worker_id: str) -> WorkerDef:
    """Registry lookup; unknown ids get an empty definition rather than failing."""
    return WORKERS.get(worker_id) or WorkerDef(worker_id, f"Extracts data for {worker_id}")


# ──────────────────────────────────────────────
# Prompt library
# ──────────────────────────────────────────────

class PromptLibrary:
    """
    Loads worker prompts from ``<prompts_dir>/<worker_id>.md``.

    Prompt content is external. A missing file falls back to a generic
    prompt so that a run never fails on a missing template.
    """

    def __init__(self, prompts_dir: Optional[str] = None):
        self.prompts_dir = Path(prompts_dir or settings.prompts_dir)
        self._cache: Dict[str, str] = {}

    def get(self, worker_id: str) -> str:
        if worker_id in self._cache:
            return self._cache[worker_id]

        path = self.prompts_dir / f"{worker_id}.md"
        if path.is_file():
            prompt = f"{path.read_text(encoding='utf-8').strip()}\n\n{JSON_ONLY_SUFFIX}"
        else:
            logger.warning(f"Prompt {path} not found, using default prompt for {worker_id}")
            prompt = self.default_prompt(worker_id)
        self._cache[worker_id] = prompt
        return prompt

    @staticmethod
    def default_prompt(worker_id: str) -> str:
        worker = get_worker(worker_id)
        lines = [f"{worker.description} from the attached pages of a Swedish BRF annual report."]
        if worker.expected_fields:
            lines.append(f"Fields: {', '.join(worker.expected_fields)}.")
        lines.append(
            "Amounts go in *_tkr fields with the printed text in <field>_original. "
            "Use null for anything not present. Include evidence_pages."
        )
        lines.append(JSON_ONLY_SUFFIX)
        return "\n".join(lines)
