"""Currency normalisation, confidence inference and field wrapping."""

from __future__ import annotations

import pytest

from brf_extract.models.schemas import ParseStage, RawWorkerOutput
from brf_extract.tools.field_wrapper import (
    coerce_pages,
    confidence_level,
    detect_swedish_unit,
    infer_confidence,
    normalize_to_tkr,
    parse_swedish_number,
    wrap_field,
    wrap_worker_output,
)


@pytest.mark.parametrize(
    "text, unit",
    [
        ("12,5 MSEK", "MSEK"),
        ("3 mkr", "MSEK"),
        ("12 500 tkr", "tkr"),
        ("12 500 KSEK", "tkr"),
        ("500 000 kr", "SEK"),
        ("500 000 kronor", "SEK"),
        ("12 500", "tkr"),
        ("", None),
        (None, None),
    ],
)
def test_detect_swedish_unit(text, unit):
    assert detect_swedish_unit(text) == unit


def test_normalize_to_tkr():
    assert normalize_to_tkr(12.5, "MSEK") == (12500.0, 1000.0, "MSEK")
    assert normalize_to_tkr(500000, "SEK") == (500.0, 0.001, "SEK")
    assert normalize_to_tkr(42, "tkr") == (42, 1.0, "tkr")
    assert normalize_to_tkr(42, "EUR") == (42, 1.0, "unknown")


@pytest.mark.parametrize(
    "text, number",
    [
        ("12 500,89", 12500.89),
        ("12,500.89", 12500.89),
        ("12,5 MSEK", 12.5),
        ("-1 234", -1234.0),
        ("ca 800 tkr", 800.0),
        ("saknas", None),
        ("", None),
    ],
)
def test_parse_swedish_number(text, number):
    assert parse_swedish_number(text) == number


def test_infer_confidence():
    assert infer_confidence(None) == 0.0
    assert infer_confidence(1234) == 0.95
    assert infer_confidence(12000) == 0.90
    assert infer_confidence("Anna Svensson") == 0.85
    assert infer_confidence("HSB Stockholm") == 0.90
    assert infer_confidence("ab") == 0.60
    assert infer_confidence(12500, original="ca 12 500 tkr") == 0.85
    assert infer_confidence([]) == 0.0


def test_confidence_levels():
    assert confidence_level(1.0) == "very_high"
    assert confidence_level(0.85) == "high"
    assert confidence_level(0.7) == "medium"
    assert confidence_level(0.0) == "not_found"


def test_coerce_pages():
    assert coerce_pages([3, "4", 4.0, 0, True, "x"]) == [3, 4]
    assert coerce_pages("3") is None


def test_msek_amount_normalised_to_tkr():
    field = wrap_field("total_assets_tkr", 12.5, "balance_sheet_agent", [5], original="12,5 MSEK")
    assert field.value == 12500.0
    assert field.original_string == "12,5 MSEK"
    assert field.provenance == "balance_sheet_agent"
    assert field.evidence_pages == [5]


def test_currency_string_parsed_and_original_kept():
    field = wrap_field("monthly_fee", "500 000 kr", "fees_agent", [2])
    assert field.value == 500.0
    assert field.original_string == "500 000 kr"


def test_plain_numeric_field_without_tkr_suffix_untouched():
    field = wrap_field("apartment_count", 42, "property_agent", [1], original="42 st")
    assert field.value == 42


def test_repaired_stage_scales_confidence():
    direct = wrap_field("revenue_tkr", 1234, "financial_agent", [1])
    repaired = wrap_field("revenue_tkr", 1234, "financial_agent", [1], stage=ParseStage.REPAIRED,
                          repaired_factor=0.8)
    assert direct.confidence == 0.95
    assert repaired.confidence == pytest.approx(0.76)
    assert repaired.parse_stage == ParseStage.REPAIRED


def test_null_value_has_zero_confidence():
    assert wrap_field("chairman", None, "governance_agent", [1]).confidence == 0.0


def test_wrap_worker_output_evidence_precedence():
    raw = RawWorkerOutput(
        stage=ParseStage.DIRECT,
        data={
            "chairman": "Anna Svensson",
            "city": "Stockholm",
            "city_evidence_pages": [9],
            "total_assets_tkr": 1000,
            "total_assets_tkr_original": "1 000 tkr",
            "evidence_pages": [3, 4],
        },
    )
    fields = wrap_worker_output(raw, "property_agent", default_evidence_pages=[1, 2], model_used="m")
    assert set(fields) == {"chairman", "city", "total_assets_tkr"}
    assert fields["city"].evidence_pages == [9]
    assert fields["chairman"].evidence_pages == [3, 4]
    assert fields["total_assets_tkr"].original_string == "1 000 tkr"
    assert fields["chairman"].model_used == "m"


def test_wrap_worker_output_defaults_to_routed_pages():
    raw = RawWorkerOutput(stage=ParseStage.DIRECT, data={"chairman": "Anna Svensson"})
    fields = wrap_worker_output(raw, "governance_agent", default_evidence_pages=[7, 8])
    assert fields["chairman"].evidence_pages == [7, 8]
