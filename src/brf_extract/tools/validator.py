# [Core: Worker Executor]
"""
Field Validator: lenient checks on a worker payload and cross-field
reconciliation on the merged record.

Severity policy:
  - errors: numeric type mismatches only (a ``_tkr`` field that is not a
    number, evidence pages that are not integers)
  - warnings: everything else (missing expected fields, absent evidence,
    missing ``_original``, implausible magnitudes, placeholders, dates)

Errors flip ``valid`` to False and are logged. They abort the worker only
in strict mode, where ``ValidationFailed`` is raised.
"""
from __future__ import annotations

import logging
import re
from typing import Any, Dict, Iterable, List, Optional

from brf_extract.models.schemas import (
    ExtractionField,
    IssueSeverity,
    ValidationIssue,
    ValidationMetadata,
    ValidationResult,
)
from brf_extract.services.errors import ValidationFailed
from brf_extract.tools.field_wrapper import (
    EVIDENCE_KEY,
    EVIDENCE_SUFFIX,
    ORIGINAL_SUFFIX,
    TKR_SUFFIX,
    is_auxiliary_key,
    is_currency_string,
    parse_swedish_number,
)

logger = logging.getLogger(__name__)

MAX_PLAUSIBLE_TKR = 1_000_000  # 1 billion SEK; no BRF is that large
BALANCE_TOLERANCE = 0.01
CASH_FLOW_TOLERANCE = 0.02

PLACEHOLDERS = {
    "n/a", "na", "-", "--", "?", "unknown", "okänt", "okänd", "saknas",
    "tbd", "xxx", "null", "none", "[name]", "[namn]", "<name>", "ej angivet",
}
_UNIT_MARKER = re.compile(r"msek|mkr|tkr|ksek|tsek|sek|kr\b|kronor", re.IGNORECASE)
_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def _issue(field: str, kind: str, message: str, severity: IssueSeverity = IssueSeverity.WARNING,
           recommendation: Optional[str] = None) -> ValidationIssue:
    return ValidationIssue(
        field=field, kind=kind, message=message, severity=severity, recommendation=recommendation
    )


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _check_pages(name: str, pages: Any) -> Optional[ValidationIssue]:
    if not isinstance(pages, list):
        return _issue(name, "evidence_type", f"{name} is not a list of page numbers", IssueSeverity.ERROR)
    bad = [p for p in pages if not (isinstance(p, int) and not isinstance(p, bool) and p >= 1)]
    if bad:
        return _issue(name, "evidence_type", f"{name} contains non-integer pages: {bad}", IssueSeverity.ERROR)
    if not pages:
        return _issue(name, "evidence_missing", f"{name} is empty")
    return None


def validate_worker_output(
    worker_id: str,
    data: Dict[str, Any],
    expected_fields: Iterable[str] = (),
    strict: bool = False,
) -> ValidationResult:
    """Validate one worker's parsed payload."""
    errors: List[ValidationIssue] = []
    warnings: List[ValidationIssue] = []
    expected = list(expected_fields)

    data_fields = {k: v for k, v in data.items() if not is_auxiliary_key(k)}
    meta = ValidationMetadata(
        total_fields=len(data_fields),
        null_fields=sum(1 for v in data_fields.values() if v is None),
        evidence_pages_present=EVIDENCE_KEY in data or any(k.endswith(EVIDENCE_SUFFIX) for k in data),
    )

    # Evidence pages
    if EVIDENCE_KEY in data:
        issue = _check_pages(EVIDENCE_KEY, data[EVIDENCE_KEY])
        if issue:
            (errors if issue.severity == IssueSeverity.ERROR else warnings).append(issue)
    for key in data:
        if key.endswith(EVIDENCE_SUFFIX):
            issue = _check_pages(key, data[key])
            if issue:
                (errors if issue.severity == IssueSeverity.ERROR else warnings).append(issue)
    if not meta.evidence_pages_present:
        warnings.append(_issue(
            EVIDENCE_KEY, "evidence_missing", "No evidence pages provided",
            recommendation="Ask the worker to cite the pages it read",
        ))

    # Expected fields
    for name in expected:
        if name not in data:
            warnings.append(_issue(name, "missing_field", f"Expected field {name} is missing"))
    if expected:
        present = sum(1 for name in expected if name in data)
        meta.coverage_percentage = round(100.0 * present / len(expected), 1)

    # Per-field checks
    for name, value in data_fields.items():
        original = data.get(f"{name}{ORIGINAL_SUFFIX}")

        if name.endswith(TKR_SUFFIX):
            meta.tkr_fields += 1
            if original is not None:
                meta.tkr_fields_with_original += 1
            if value is None:
                continue
            number: Optional[float] = value if _is_number(value) else None
            if number is None and isinstance(value, str):
                number = parse_swedish_number(value)
            if number is None:
                errors.append(_issue(
                    name, "type_mismatch", f"{name} should be numeric, got {type(value).__name__}: {value!r}",
                    IssueSeverity.ERROR,
                ))
                continue
            if original is None and not isinstance(value, str):
                warnings.append(_issue(
                    name, "missing_original", f"{name}: missing {name}{ORIGINAL_SUFFIX} field",
                    recommendation="Keep the printed amount for auditing",
                ))
            elif isinstance(original, str) and not _UNIT_MARKER.search(original):
                warnings.append(_issue(name, "unitless_original", f"{name}: original '{original}' has no unit, assuming tkr"))
            if abs(number) > MAX_PLAUSIBLE_TKR:
                warnings.append(_issue(name, "implausible_magnitude", f"{name}: {number} tkr is implausibly large"))
            continue

        if isinstance(value, str):
            if value.strip().lower() in PLACEHOLDERS:
                warnings.append(_issue(name, "placeholder", f"{name}: placeholder value {value!r}"))
            elif name.endswith("_date") and not _ISO_DATE.match(value.strip()):
                warnings.append(_issue(name, "date_format", f"{name}: {value!r} is not an ISO date (YYYY-MM-DD)"))
            elif is_currency_string(value):
                meta.tkr_fields += 1
                meta.tkr_fields_with_original += 1

    result = ValidationResult(valid=not errors, errors=errors, warnings=warnings, metadata=meta)

    for issue in errors:
        logger.error(f"[{worker_id}] validation error: {issue.message}")
    if warnings:
        logger.warning(f"[{worker_id}] {len(warnings)} validation warning(s): " + "; ".join(w.message for w in warnings[:5]))

    if strict and errors:
        raise ValidationFailed(
            f"{worker_id} failed strict validation with {len(errors)} error(s)",
            errors=[e.message for e in errors],
        )
    return result


# ──────────────────────────────────────────────
# Cross-field reconciliation (after merge)
# ──────────────────────────────────────────────

def _value(fields: Dict[str, ExtractionField], name: str) -> Optional[float]:
    field = fields.get(name)
    if field is None or not _is_number(field.value):
        return None
    return float(field.value)


def _within(actual: float, expected: float, tolerance: float) -> bool:
    scale = max(abs(actual), abs(expected), 1.0)
    return abs(actual - expected) <= tolerance * scale


def reconcile(fields: Dict[str, ExtractionField]) -> List[ValidationIssue]:
    """
    Cross-field consistency checks on the merged record.

    Balance sheet: assets == liabilities + equity (1% tolerance).
    Cash flow: operating + investing + financing == net change (2% tolerance).
    """
    issues: List[ValidationIssue] = []

    assets = _value(fields, "total_assets_tkr")
    liabilities = _value(fields, "total_liabilities_tkr")
    equity = _value(fields, "total_equity_tkr")
    if None not in (assets, liabilities, equity):
        if not _within(assets, liabilities + equity, BALANCE_TOLERANCE):
            issues.append(_issue(
                "total_assets_tkr", "balance_sheet_mismatch",
                f"Assets ({assets}) != liabilities ({liabilities}) + equity ({equity})",
                recommendation="Re-run balance_sheet_agent on the balance sheet pages",
            ))

    flows = [_value(fields, f"{kind}_cash_flow_tkr") for kind in ("operating", "investing", "financing")]
    net_change = _value(fields, "net_cash_change_tkr")
    if None not in flows and net_change is not None:
        total = sum(flows)
        if not _within(total, net_change, CASH_FLOW_TOLERANCE):
            issues.append(_issue(
                "net_cash_change_tkr", "cash_flow_mismatch",
                f"Operating + investing + financing ({total}) != net cash change ({net_change})",
                recommendation="Re-run cashflow_agent on the cash flow pages",
            ))

    for issue in issues:
        logger.warning(f"Reconciliation: {issue.message}")
    return issues
