# [Core: Parallel Orchestrator]
"""
Linkage identifiers: tie an extraction run back to the cooperative it
describes, from the source filename first and the merged fields second.
"""
from __future__ import annotations

import re
from pathlib import PurePath
from typing import Dict, Optional, Tuple

from brf_extract.models.schemas import ExtractionField, LinkageInfo

# (pattern, confidence), most reliable first
BRF_ID_PATTERNS: Tuple[Tuple[re.Pattern, float], ...] = (
    (re.compile(r"brf[_-](\d+)", re.IGNORECASE), 1.0),
    (re.compile(r"^(\d{5,6})_"), 0.95),
    (re.compile(r"(\d{5,6})"), 0.75),
)

_BRF_ID_FORMAT = re.compile(r"^brf_\d{5,6}$")


def extract_brf_id(document_name: str) -> Tuple[Optional[str], float, str]:
    """
    BRF id from a filename or path.

        brf_12345.pdf                 -> ("brf_12345", 1.0, "filename")
        12345_arsredovisning_2023.pdf -> ("brf_12345", 0.95, "filename")
        report-812345.pdf             -> ("brf_812345", 0.75, "filename")
    """
    stem = PurePath(document_name or "").name
    if stem.lower().endswith(".pdf"):
        stem = stem[:-4]
    for pattern, confidence in BRF_ID_PATTERNS:
        match = pattern.search(stem)
        if match:
            return f"brf_{match.group(1)}", confidence, "filename"
    return None, 0.0, "none"


def is_valid_brf_id(brf_id: str) -> bool:
    return bool(_BRF_ID_FORMAT.match(brf_id or ""))


def _text(fields: Dict[str, ExtractionField], name: str) -> Tuple[Optional[str], Optional[float]]:
    field = fields.get(name)
    if field is None or not isinstance(field.value, str) or not field.value.strip():
        return None, None
    return field.value.strip(), field.confidence


def build_linkage(document_name: str, fields: Dict[str, ExtractionField]) -> LinkageInfo:
    brf_id, confidence, source = extract_brf_id(document_name)
    designation, designation_confidence = _text(fields, "property_designation")
    brf_name, _ = _text(fields, "brf_name")
    city, _ = _text(fields, "city")
    return LinkageInfo(
        brf_id=brf_id,
        brf_id_confidence=confidence,
        brf_id_source=source,
        property_designation=designation,
        property_designation_confidence=designation_confidence,
        brf_name=brf_name,
        city=city,
    )
