"""
REST API for extraction job submission and result retrieval.
"""
from __future__ import annotations

import logging
import uuid
from typing import Dict, List

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException

from brf_extract.agent.orchestrator import ExtractionPipeline
from brf_extract.api.deps import get_gateway
from brf_extract.models.schemas import (
    JobResponse,
    JobResult,
    JobStatus,
    JobSubmission,
    RunState,
)
from brf_extract.services.gateway import DispatchGateway

logger = logging.getLogger(__name__)
router = APIRouter()

# In-memory store for active/completed jobs
# In production, the caller persists the report and discards the run state
_jobs: Dict[str, ExtractionPipeline] = {}
_submissions: Dict[str, JobSubmission] = {}


async def _run_pipeline(pipeline: ExtractionPipeline, submission: JobSubmission, job_id: str) -> None:
    try:
        await pipeline.run(submission, job_id=job_id)
    except Exception as e:
        logger.error(f"Job {job_id} failed: {e}")


@router.post("/submit", response_model=JobResponse)
async def submit_job(
    submission: JobSubmission,
    background_tasks: BackgroundTasks,
    gateway: DispatchGateway = Depends(get_gateway),
):
    """
    Submit a rendered document for extraction.

    The pipeline runs in the background. Poll /api/jobs/{job_id} for the
    state and, once completed, the report.
    """
    job_id = str(uuid.uuid4())[:8]
    pipeline = ExtractionPipeline(gateway)
    _jobs[job_id] = pipeline
    _submissions[job_id] = submission
    background_tasks.add_task(_run_pipeline, pipeline, submission, job_id)

    return JobResponse(
        job_id=job_id,
        status=JobStatus.PENDING,
        message=f"Extraction of {len(submission.page_images)} pages queued.",
    )


def _state_for(job_id: str) -> RunState:
    pipeline = _jobs.get(job_id)
    if pipeline is None:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    if pipeline.state is not None:
        return pipeline.state
    submission = _submissions[job_id]
    return RunState(job_id=job_id, tenant_id=submission.tenant_id, document_name=submission.document_name)


@router.get("/{job_id}", response_model=JobResult)
async def get_job(job_id: str):
    """Get the current state and, if completed, the report for a job."""
    state = _state_for(job_id)
    return JobResult(job_id=job_id, state=state, report=_jobs[job_id].get_result())


@router.get("", response_model=List[Dict[str, str]])
async def list_jobs():
    """List all jobs held in memory."""
    jobs = []
    for job_id in _jobs:
        state = _state_for(job_id)
        jobs.append({"job_id": job_id, "tenant_id": state.tenant_id, "status": state.status.value})
    return jobs
