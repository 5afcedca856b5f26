# [Core: Worker Executor]
"""
Field Wrapper: converts a parsed worker payload into confidence-tagged
``ExtractionField`` values.

This is the single boundary where untyped worker JSON becomes typed fields.
Per field it:
  - infers a heuristic confidence from the value's shape
  - normalises currency amounts to tkr (thousand SEK), detecting MSEK / tkr /
    SEK markers, and keeps the original string
  - attaches evidence pages (per field if given, else response level, else
    the pages the worker was routed to)
  - records provenance (worker id, model, parse stage)

Repaired payloads get their confidence scaled down.
"""
from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional, Tuple

from brf_extract.models.schemas import ExtractionField, ParseStage, RawWorkerOutput

logger = logging.getLogger(__name__)

EVIDENCE_KEY = "evidence_pages"
ORIGINAL_SUFFIX = "_original"
EVIDENCE_SUFFIX = "_evidence_pages"
TKR_SUFFIX = "_tkr"

_MSEK = re.compile(r"\bmsek\b|\bmkr\b|miljoner?\s*(sek|kronor)", re.IGNORECASE)
_TKR = re.compile(r"\btkr\b|\bksek\b|\btsek\b|tusen\s*(sek|kronor)", re.IGNORECASE)
_SEK = re.compile(r"\bsek\b|\bkr\b|kronor", re.IGNORECASE)

_APPROXIMATE = re.compile(r"(^|\s)(ca\.?|c\.|cirka|ungefär|approximately)(\s|$)|~", re.IGNORECASE)
_ABBREVIATION = re.compile(r"\b[A-ZÅÄÖ]{2,4}\b")
_PARENTHESISED = re.compile(r"\(.+\)")

_LEADING_NUMBER = re.compile(r"[-+−]?\d[\d.,]*")
_CURRENCY_STRING = re.compile(
    r"^\s*(ca\.?\s*|~\s*)?[-+−]?\d[\d\s .,]*\s*"
    r"(msek|mkr|tkr|ksek|tsek|sek|kr|kronor|miljoner\s*kronor|tusen\s*kronor)\.?\s*$",
    re.IGNORECASE,
)

_TO_TKR = {"MSEK": 1000.0, "TKR": 1.0, "KSEK": 1.0, "TSEK": 1.0, "SEK": 0.001}


# ──────────────────────────────────────────────
# Swedish currency handling
# ──────────────────────────────────────────────

def detect_swedish_unit(text: Optional[str]) -> Optional[str]:
    """Detect the currency scale marker in a Swedish amount string.

    Returns "MSEK", "tkr" or "SEK"; unmarked amounts are assumed to be tkr,
    which is what BRF reports use almost everywhere. ``None`` for empty input.
    """
    if not text:
        return None
    normalized = text.strip().lower()
    if _MSEK.search(normalized):
        return "MSEK"
    if _TKR.search(normalized):
        return "tkr"
    if _SEK.search(normalized):
        return "SEK"
    return "tkr"


def normalize_to_tkr(value: float, unit: Optional[str]) -> Tuple[float, float, str]:
    """Return (normalized value, conversion factor, source unit)."""
    unit_upper = (unit or "tkr").upper()
    factor = _TO_TKR.get(unit_upper)
    if factor is None:
        logger.warning(f"Unknown currency unit '{unit}', assuming tkr")
        return value, 1.0, "unknown"
    return value * factor, factor, unit_upper if unit_upper != "TKR" else "tkr"


def parse_swedish_number(text: Optional[str]) -> Optional[float]:
    """
    Parse a number written in Swedish or English style.

        "12 500,89"   -> 12500.89
        "12,500.89"   -> 12500.89
        "12,5 MSEK"   -> 12.5
        "-1 234"      -> -1234.0
    """
    if not text:
        return None
    cleaned = re.sub(r"\s", "", text).replace("−", "-")
    match = _LEADING_NUMBER.search(cleaned)
    if not match:
        return None
    number = match.group(0)
    if "," in number and "." not in number:
        # Comma without a period is a Swedish decimal comma
        number = number.replace(",", ".", 1).replace(",", "")
    else:
        number = number.replace(",", "")
    try:
        return float(number)
    except ValueError:
        return None


def is_currency_string(value: Any) -> bool:
    return isinstance(value, str) and bool(_CURRENCY_STRING.match(value))


# ──────────────────────────────────────────────
# Confidence
# ──────────────────────────────────────────────

def infer_confidence(value: Any, original: Optional[str] = None) -> float:
    """
    Heuristic confidence from the shape of an extracted value.

      1.0        explicit, unambiguous
      0.90-0.95  minor variation (abbreviations, formatting, round numbers)
      0.85       approximate ("ca 12 500 tkr") or possibly partial
      0.60       very short strings
      0.0        nothing extracted
    """
    if original and _APPROXIMATE.search(original):
        return 0.0 if value is None else 0.85
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return 0.90
    if isinstance(value, (int, float)):
        if value % 1000 == 0 and value >= 10000:
            return 0.90
        return 0.95
    if isinstance(value, str):
        if not value:
            return 0.0
        if len(value) < 3:
            return 0.60
        if _APPROXIMATE.search(value):
            return 0.85
        if _ABBREVIATION.search(value):
            return 0.90
        if _PARENTHESISED.search(value):
            return 0.95
        return 0.85
    if isinstance(value, list):
        if not value:
            return 0.0
        return 0.85 if len(value) == 1 else 0.90
    if isinstance(value, dict):
        return 0.85
    return 0.80


def confidence_level(confidence: float) -> str:
    if confidence >= 0.95:
        return "very_high"
    if confidence >= 0.85:
        return "high"
    if confidence >= 0.70:
        return "medium"
    if confidence >= 0.50:
        return "low"
    if confidence > 0.0:
        return "very_low"
    return "not_found"


# ──────────────────────────────────────────────
# Wrapping
# ──────────────────────────────────────────────

def is_auxiliary_key(name: str) -> bool:
    """Keys that describe other fields rather than carry data."""
    return name == EVIDENCE_KEY or name.endswith(ORIGINAL_SUFFIX) or name.endswith(EVIDENCE_SUFFIX)


def coerce_pages(value: Any) -> Optional[List[int]]:
    """Integer page list from a worker-supplied value; ``None`` if unusable."""
    if not isinstance(value, list):
        return None
    pages: List[int] = []
    for item in value:
        if isinstance(item, bool):
            continue
        if isinstance(item, int):
            pages.append(item)
        elif isinstance(item, float) and item.is_integer():
            pages.append(int(item))
        elif isinstance(item, str) and item.strip().isdigit():
            pages.append(int(item.strip()))
    return sorted(set(p for p in pages if p >= 1))


def wrap_field(
    name: str,
    value: Any,
    worker_id: str,
    evidence_pages: List[int],
    original: Optional[str] = None,
    model_used: Optional[str] = None,
    stage: ParseStage = ParseStage.DIRECT,
    repaired_factor: float = 0.8,
) -> ExtractionField:
    final_value = value
    original_string = original if isinstance(original, str) and original else None
    is_number = isinstance(value, (int, float)) and not isinstance(value, bool)

    if isinstance(value, str) and (name.endswith(TKR_SUFFIX) or is_currency_string(value)):
        parsed = parse_swedish_number(value)
        if parsed is not None:
            original_string = original_string or value
            final_value = parsed
            is_number = True

    if is_number and (name.endswith(TKR_SUFFIX) or final_value is not value):
        normalized, factor, source_unit = normalize_to_tkr(
            float(final_value), detect_swedish_unit(original_string)
        )
        if factor != 1.0:
            logger.info(f"Normalised {name}: {final_value} {source_unit} -> {normalized} tkr (x{factor})")
            final_value = normalized

    confidence = infer_confidence(final_value, original_string)
    if stage == ParseStage.REPAIRED:
        confidence *= repaired_factor

    return ExtractionField(
        value=final_value,
        confidence=round(min(max(confidence, 0.0), 1.0), 4),
        evidence_pages=evidence_pages,
        original_string=original_string,
        provenance=worker_id,
        model_used=model_used,
        parse_stage=stage,
    )


def wrap_worker_output(
    raw: RawWorkerOutput,
    worker_id: str,
    default_evidence_pages: List[int],
    model_used: Optional[str] = None,
    repaired_factor: float = 0.8,
) -> Dict[str, ExtractionField]:
    """Wrap every data field of a worker payload into an ``ExtractionField``."""
    data = raw.data
    response_pages = coerce_pages(data.get(EVIDENCE_KEY))
    wrapped: Dict[str, ExtractionField] = {}

    for name, value in data.items():
        if is_auxiliary_key(name):
            continue
        pages = coerce_pages(data.get(f"{name}{EVIDENCE_SUFFIX}")) or response_pages or list(default_evidence_pages)
        original = data.get(f"{name}{ORIGINAL_SUFFIX}")
        wrapped[name] = wrap_field(
            name,
            value,
            worker_id=worker_id,
            evidence_pages=pages,
            original=original if isinstance(original, str) else None,
            model_used=model_used,
            stage=raw.stage,
            repaired_factor=repaired_factor,
        )
    return wrapped
