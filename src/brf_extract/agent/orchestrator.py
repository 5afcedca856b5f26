# [Core: Parallel Orchestrator]
"""
Parallel Orchestrator: the fan-out/fan-in core of an extraction run.

Pipeline for one document:
  1. Route sections to workers (semantic router optional, title matching otherwise)
  2. Launch every routed worker concurrently through the Worker Executor
  3. Merge successful field maps as workers finish (last write wins)
  4. Reconcile cross-field consistency on the merged record
  5. Attach run metadata and linkage identifiers

A worker failure is recorded, never propagated. The run fails only when
every routed worker failed.
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from brf_extract.agent.linkage import build_linkage
from brf_extract.agent.router import (
    SemanticRouter,
    extract_page_images,
    route,
    routed_pages,
    validate_routing,
)
from brf_extract.agent.workers import PromptLibrary
from brf_extract.config import settings
from brf_extract.models.schemas import (
    AlternativeValue,
    ExtractionReport,
    FieldCollision,
    JobStatus,
    JobSubmission,
    PageRange,
    Routing,
    RunState,
    WorkerCost,
    WorkerFailure,
    WorkerResult,
)
from brf_extract.services.errors import ExtractionFailed
from brf_extract.tools.validator import reconcile
from brf_extract.tools.worker import Dispatcher, WorkerExecutor

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ParallelOrchestrator:
    """
    Runs routed workers concurrently and merges their fields.

    Usage:
        orchestrator = ParallelOrchestrator(WorkerExecutor(gateway, tenant_id))
        state = await orchestrator.execute_all(routing, page_images, state)
    """

    def __init__(self, executor: WorkerExecutor, prompts: Optional[PromptLibrary] = None):
        self.executor = executor
        self.prompts = prompts or PromptLibrary()

    async def execute_all(
        self,
        routing: Routing,
        page_images: Sequence[str],
        state: Optional[RunState] = None,
    ) -> RunState:
        """
        Launch all routed workers, wait for every one to settle, merge.

        Raises:
            ExtractionFailed: nothing was routed, or every worker failed
        """
        state = state or RunState(job_id=str(uuid.uuid4())[:8], tenant_id=self.executor.tenant_id)
        state.routing = routing
        if not routing:
            raise ExtractionFailed("No workers were routed")

        logger.info(f"Launching {len(routing)} workers: {', '.join(routing)}")
        await asyncio.gather(
            *[self._run_worker(worker_id, ranges, page_images, state) for worker_id, ranges in routing.items()],
            return_exceptions=True,
        )

        state.reconciliation = reconcile(state.fields)

        if not state.completed:
            raise ExtractionFailed(
                f"All {len(routing)} workers failed",
                failures=list(state.failed),
            )
        logger.info(f"Workers settled: {len(state.completed)} completed, {len(state.failed)} failed")
        return state

    async def _run_worker(
        self,
        worker_id: str,
        ranges: List[PageRange],
        page_images: Sequence[str],
        state: RunState,
    ) -> None:
        """Run one worker; record its outcome on ``state`` instead of raising."""
        start = time.monotonic()
        try:
            pages = routed_pages(ranges, page_count=len(page_images))
            result = await self.executor.run(
                worker_id,
                self.prompts.get(worker_id),
                extract_page_images(page_images, ranges),
                evidence_pages=pages,
            )
        except Exception as e:
            code = getattr(e, "code", "WORKER_FAILED")
            logger.error(f"[{worker_id}] failed after {time.monotonic() - start:.1f}s ({code}): {e}")
            state.failed.append(WorkerFailure(worker_id=worker_id, error=str(e) or type(e).__name__, error_code=code))
            return

        self._merge(state, result)
        state.completed.append(worker_id)
        state.worker_costs[worker_id] = WorkerCost(tokens=result.tokens, cost=result.cost)

    @staticmethod
    def _merge(state: RunState, result: WorkerResult) -> None:
        """Merge one worker's fields. Later results overwrite earlier ones."""
        for name, field in result.fields.items():
            previous = state.fields.get(name)
            if previous is not None:
                state.collisions.append(
                    FieldCollision(field=name, overwritten_by=result.worker_id, previous_worker=previous.provenance)
                )
                field = field.model_copy(
                    update={
                        "alternative_values": previous.alternative_values
                        + [
                            AlternativeValue(
                                value=previous.value,
                                confidence=previous.confidence,
                                provenance=previous.provenance,
                            )
                        ]
                    }
                )
                logger.debug(f"Field {name}: {result.worker_id} overwrote {previous.provenance}")
            state.fields[name] = field


class ExtractionPipeline:
    """
    End-to-end extraction of one rendered document for one tenant.

    Usage:
        pipeline = ExtractionPipeline(gateway)
        state = await pipeline.run(submission)
        report = pipeline.get_result()
    """

    def __init__(
        self,
        gateway: Dispatcher,
        prompts: Optional[PromptLibrary] = None,
        semantic_routing: Optional[bool] = None,
    ):
        self.gateway = gateway
        self.prompts = prompts or PromptLibrary()
        self.semantic_routing = settings.semantic_routing if semantic_routing is None else semantic_routing
        self._state: Optional[RunState] = None

    @property
    def state(self) -> Optional[RunState]:
        return self._state

    async def run(self, submission: JobSubmission, job_id: Optional[str] = None) -> RunState:
        page_count = len(submission.page_images)
        self._state = RunState(
            job_id=job_id or str(uuid.uuid4())[:8],
            tenant_id=submission.tenant_id,
            document_name=submission.document_name,
            status=JobStatus.RUNNING,
            started_at=_utcnow(),
        )
        state = self._state
        start = time.monotonic()

        try:
            # ── Step 1: Routing ──
            if self.semantic_routing:
                router = SemanticRouter(self.gateway, submission.tenant_id)
                routing = await router.route(submission.section_map, submission.workers, page_count)
            else:
                routing = route(submission.section_map, submission.workers, page_count)
            missing = validate_routing(routing, submission.workers or [])
            if missing:
                logger.warning(f"Job {state.job_id}: no pages routed to {', '.join(missing)}")

            # ── Step 2: Parallel extraction ──
            orchestrator = ParallelOrchestrator(WorkerExecutor(self.gateway, submission.tenant_id), self.prompts)
            await orchestrator.execute_all(routing, submission.page_images, state)
            state.status = JobStatus.COMPLETED
        except Exception as e:
            state.status = JobStatus.FAILED
            state.error = str(e)
            raise
        finally:
            # ── Step 3: Run metadata ──
            state.completed_at = _utcnow()
            meta = state.metadata
            meta.page_count = page_count
            meta.completed_count = len(state.completed)
            meta.failed_count = len(state.failed)
            meta.elapsed_ms = int((time.monotonic() - start) * 1000)
            meta.total_tokens = sum(c.tokens for c in state.worker_costs.values())
            meta.total_cost = sum(c.cost for c in state.worker_costs.values())
            meta.linkage = build_linkage(submission.document_name, state.fields)

        logger.info(
            f"Job {state.job_id} completed: {meta.completed_count} workers ok, {meta.failed_count} failed, "
            f"{len(state.fields)} fields, ${meta.total_cost:.4f} in {meta.elapsed_ms}ms"
        )
        return state

    def get_result(self) -> Optional[ExtractionReport]:
        """The output record, once the run has completed."""
        state = self._state
        if state is None or state.status != JobStatus.COMPLETED:
            return None
        return ExtractionReport(
            job_id=state.job_id,
            fields=state.fields,
            completed=state.completed,
            failed=state.failed,
            worker_costs=state.worker_costs,
            reconciliation=state.reconciliation,
            collisions=state.collisions,
            metadata=state.metadata,
        )
