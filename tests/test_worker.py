"""Worker executor: request building, parse recovery and field wrapping."""

from __future__ import annotations

import pytest

from brf_extract.models.schemas import ParseStage
from brf_extract.services.errors import UnparsableResponse, ValidationFailed
from brf_extract.tools.worker import WorkerExecutor

from conftest import PNG_B64, TENANT, TEST_MODEL, completion


@pytest.fixture
def executor(gateway) -> WorkerExecutor:
    return WorkerExecutor(gateway, TENANT, model=TEST_MODEL, max_tokens=500, strict=False, repaired_factor=0.8)


def test_build_request(executor):
    request = executor.build_request("Extract the chairman.", [PNG_B64, PNG_B64])
    assert request.model == TEST_MODEL
    assert request.structured_output
    assert request.max_output_tokens == 500
    assert request.image_count() == 2
    assert request.text_length() == len("Extract the chairman.")
    first_image = request.messages[0].content[1]
    assert first_image.image_url["url"].startswith("data:image/png;base64,")


async def test_empty_prompt_or_no_images_rejected_before_dispatch(executor, transport):
    with pytest.raises(ValueError):
        await executor.run("chairman_agent", "   ", [PNG_B64])
    with pytest.raises(ValueError):
        await executor.run("chairman_agent", "Extract the chairman.", [])
    assert transport.calls == []


async def test_run_wraps_fields(executor, transport):
    transport.enqueue(completion(
        '```json\n{"chairman": "Anna Svensson", "board_members": ["Bo Ek", "Cia Lind"]}\n```',
        input_tokens=900,
        output_tokens=40,
    ))

    result = await executor.run("board_members_agent", "Extract the board.", [PNG_B64, PNG_B64], evidence_pages=[5, 6])

    assert result.worker_id == "board_members_agent"
    assert result.stage == ParseStage.DIRECT
    assert result.tokens == 940
    assert result.cost > 0
    assert result.validation.valid
    assert result.fields["chairman"].evidence_pages == [5, 6]
    assert result.fields["chairman"].provenance == "board_members_agent"
    assert result.fields["chairman"].model_used == TEST_MODEL
    assert result.fields["board_members"].value == ["Bo Ek", "Cia Lind"]


async def test_evidence_defaults_to_image_positions(executor, transport):
    transport.enqueue(completion('{"chairman": "Anna Svensson"}'))
    result = await executor.run("chairman_agent", "Extract the chairman.", [PNG_B64, PNG_B64, PNG_B64])
    assert result.fields["chairman"].evidence_pages == [1, 2, 3]


async def test_truncated_output_is_repaired_with_lower_confidence(executor, transport):
    transport.enqueue(completion(
        '{"chairman": "Anna Svensson", "board_members": ["Bo Ek", "Ci',
        finish_reason="length",
    ))

    result = await executor.run("board_members_agent", "Extract the board.", [PNG_B64])

    assert result.stage == ParseStage.REPAIRED
    assert result.truncated
    assert result.fields["board_members"].value == ["Bo Ek"]
    assert result.fields["chairman"].confidence == pytest.approx(0.85 * 0.8)


async def test_unparsable_output_raises_after_billing(executor, transport, ledger):
    transport.enqueue(completion("Sorry, I cannot read this page."))
    with pytest.raises(UnparsableResponse):
        await executor.run("chairman_agent", "Extract the chairman.", [PNG_B64])
    assert ledger.balance(TENANT) < 10.0


async def test_strict_validation_fails_worker(gateway, transport):
    executor = WorkerExecutor(gateway, TENANT, model=TEST_MODEL, max_tokens=500, strict=True)
    transport.enqueue(completion('{"total_assets_tkr": "se not", "evidence_pages": [6]}'))
    with pytest.raises(ValidationFailed):
        await executor.run("balance_sheet_agent", "Extract the balance sheet.", [PNG_B64])
