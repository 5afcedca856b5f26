"""Parse chain and truncation recovery."""

from __future__ import annotations

import json

import pytest

from brf_extract.models.schemas import ParseStage
from brf_extract.services.errors import UnparsableResponse
from brf_extract.tools.json_repair import (
    apply_fixups,
    extract_balanced_object,
    parse_worker_output,
    repair,
    strip_code_fences,
)


# ──────────────────────────────────────────────
# repair()
# ──────────────────────────────────────────────

def test_unterminated_value_is_dropped():
    assert repair('{"a":"b","c":"par') == '{"a":"b"}'


def test_open_containers_closed_innermost_first():
    repaired = repair('{"level_2":[{"title":"x"')
    assert json.loads(repaired) == {"level_2": [{"title": "x"}]}


def test_valid_input_returned_unchanged():
    text = '{"a": [1, 2, {"b": null}]}'
    assert repair(text) == text


@pytest.mark.parametrize(
    "text, expected",
    [
        ('{"a":1,"ke', {"a": 1}),
        ('{"a":1,"b":', {"a": 1}),
        ('{"a":1,', {"a": 1}),
        ('{"items":["alpha","be', {"items": ["alpha"]}),
        ('{"first":"unfinished', {}),
        ('noise before {"a":{"b":2', {"a": {"b": 2}}),
        ('{"s":"brace } inside","t":"x', {"s": "brace } inside"}),
        ('{"a":"b","c"', {"a": "b"}),
        ('{"a":1,"b":tru', {"a": 1}),
        ('{"a":1,"b":1.', {"a": 1}),
        ('{"a":[1,{"b":fal', {"a": [1, {}]}),
    ],
)
def test_truncation_cases(text, expected):
    repaired = repair(text)
    assert repaired is not None
    assert json.loads(repaired) == expected


def test_valid_null_is_not_a_failure():
    assert repair("null") == "null"


def test_repair_is_idempotent():
    once = repair('{"a":{"b":[1,2')
    assert once is not None
    assert repair(once) == once


@pytest.mark.parametrize("text", ["", "   ", "no json at all", "[1, 2"])
def test_unsalvageable_returns_none(text):
    assert repair(text) is None


# ──────────────────────────────────────────────
# Helpers
# ──────────────────────────────────────────────

def test_strip_code_fences():
    assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_code_fences('```\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_code_fences('```json\n{"a": 1') == '{"a": 1'
    assert strip_code_fences('  {"a": 1}  ') == '{"a": 1}'


def test_extract_balanced_object_ignores_braces_in_strings():
    text = 'Result: {"note": "a } b", "n": {"x": 1}} trailing {"other": 2}'
    assert extract_balanced_object(text) == '{"note": "a } b", "n": {"x": 1}}'
    assert extract_balanced_object("nothing here") is None


def test_apply_fixups():
    assert json.loads(apply_fixups('{"a": 1, "b": [1, 2,],}')) == {"a": 1, "b": [1, 2]}
    assert json.loads(apply_fixups("{'a': 'b'}")) == {"a": "b"}
    assert json.loads(apply_fixups("{“a”: “b”}")) == {"a": "b"}


# ──────────────────────────────────────────────
# parse_worker_output()
# ──────────────────────────────────────────────

def test_direct_parse_of_fenced_output():
    raw = parse_worker_output('```json\n{"chairman": "Anna"}\n```')
    assert raw.stage == ParseStage.DIRECT
    assert raw.data == {"chairman": "Anna"}


def test_backticks_inside_values_parse_directly():
    raw = parse_worker_output('{"note": "see ```table``` below", "total_assets_tkr": 5}')
    assert raw.stage == ParseStage.DIRECT
    assert raw.data == {"note": "see ```table``` below", "total_assets_tkr": 5}


def test_balanced_object_inside_prose():
    raw = parse_worker_output('Here is the data: {"chairman": "Anna"} Let me know!')
    assert raw.stage == ParseStage.BALANCED
    assert raw.data == {"chairman": "Anna"}


def test_fixup_stage():
    raw = parse_worker_output("{'chairman': 'Anna',}")
    assert raw.stage == ParseStage.FIXUP
    assert raw.data == {"chairman": "Anna"}


def test_repaired_stage_keeps_truncation_flag():
    raw = parse_worker_output('{"chairman": "Anna", "board_members": ["Bo", "Ca', truncated=True)
    assert raw.stage == ParseStage.REPAIRED
    assert raw.data == {"chairman": "Anna", "board_members": ["Bo"]}
    assert raw.truncated is True


@pytest.mark.parametrize("text", ["", "I could not read the page.", "[1, 2, 3]"])
def test_unparsable_output_raises(text):
    with pytest.raises(UnparsableResponse):
        parse_worker_output(text)
