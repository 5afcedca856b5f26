# [Core: Worker Executor]
"""
Worker Executor: runs one specialist worker against its routed pages.

  prompt + page images
    -> one multimodal CallRequest (structured output, low temperature)
    -> DispatchGateway.dispatch()
    -> parse chain / truncation recovery
    -> lenient validation
    -> confidence-tagged ExtractionField map

Gateway errors and UnparsableResponse propagate to the caller; the
orchestrator turns them into per-worker failure records.
"""
from __future__ import annotations

import logging
import time
from typing import List, Optional, Protocol, Sequence

from brf_extract.agent.workers import get_worker
from brf_extract.config import settings
from brf_extract.models.schemas import (
    CallRequest,
    CallResponse,
    ChatMessage,
    ContentPart,
    MessageRole,
    WorkerResult,
)
from brf_extract.tools.field_wrapper import wrap_worker_output
from brf_extract.tools.json_repair import parse_worker_output
from brf_extract.tools.validator import validate_worker_output

logger = logging.getLogger(__name__)


class Dispatcher(Protocol):
    async def dispatch(self, tenant_id: str, request: CallRequest) -> CallResponse: ...


class WorkerExecutor:
    """
    Executes specialist workers for one tenant through a shared gateway.

    Usage:
        executor = WorkerExecutor(gateway, tenant_id="tenant-1")
        result = await executor.run("balance_sheet_agent", prompt, images, evidence_pages=[5, 6])
    """

    def __init__(
        self,
        gateway: Dispatcher,
        tenant_id: str,
        model: str = "",
        temperature: Optional[float] = None,
        max_tokens: int = 0,
        strict: Optional[bool] = None,
        repaired_factor: Optional[float] = None,
    ):
        self.gateway = gateway
        self.tenant_id = tenant_id
        self.model = model or settings.worker_model
        self.temperature = settings.worker_temperature if temperature is None else temperature
        self.max_tokens = max_tokens or settings.worker_max_tokens
        self.strict = settings.strict_validation if strict is None else strict
        self.repaired_factor = (
            settings.repaired_confidence_factor if repaired_factor is None else repaired_factor
        )

    def build_request(self, prompt: str, page_images: Sequence[str]) -> CallRequest:
        parts = [ContentPart.text_part(prompt)]
        parts.extend(ContentPart.image_part(image) for image in page_images)
        return CallRequest(
            model=self.model,
            messages=(ChatMessage(role=MessageRole.USER, content=tuple(parts)),),
            temperature=self.temperature,
            max_output_tokens=self.max_tokens,
            structured_output=True,
        )

    async def run(
        self,
        worker_id: str,
        prompt: str,
        page_images: Sequence[str],
        evidence_pages: Optional[List[int]] = None,
    ) -> WorkerResult:
        """
        Run one worker.

        Args:
            worker_id: Registry id of the worker
            prompt: Worker prompt text (must be non-empty)
            page_images: Base64 page images, at least one
            evidence_pages: Global page numbers of ``page_images``; used as the
                default evidence for fields that cite none

        Raises:
            ValueError: no images or an empty prompt
            GatewayError: the dispatched call failed
            UnparsableResponse: the output could not be recovered
            ValidationFailed: strict mode and the payload has errors
        """
        if not prompt or not prompt.strip():
            raise ValueError(f"{worker_id}: prompt must not be empty")
        if not page_images:
            raise ValueError(f"{worker_id}: at least one page image is required")

        t0 = time.monotonic()
        response = await self.gateway.dispatch(self.tenant_id, self.build_request(prompt, page_images))

        raw = parse_worker_output(response.content, truncated=response.truncated)
        if raw.truncated:
            logger.warning(f"[{worker_id}] output truncated at the token cap; recovered via {raw.stage.value}")

        worker = get_worker(worker_id)
        validation = validate_worker_output(worker_id, raw.data, worker.expected_fields, strict=self.strict)

        default_pages = list(evidence_pages) if evidence_pages else list(range(1, len(page_images) + 1))
        fields = wrap_worker_output(
            raw,
            worker_id,
            default_evidence_pages=default_pages,
            model_used=response.model or self.model,
            repaired_factor=self.repaired_factor,
        )

        logger.info(
            "[%s] %d fields (%s parse) in %.1fs, cost $%.6f",
            worker_id, len(fields), raw.stage.value, time.monotonic() - t0, response.cost,
        )
        return WorkerResult(
            worker_id=worker_id,
            fields=fields,
            stage=raw.stage,
            truncated=raw.truncated,
            tokens=response.usage.total_tokens if response.usage else 0,
            cost=response.cost,
            validation=validation,
        )
