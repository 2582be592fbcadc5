"""Publish routes.

Submit returns {job_id, state} at once; the build runs in the orchestrator's
task for the job and callers read progress from GET /publish/jobs/{job_id}.
"""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends

from quire.api.deps import get_orchestrator
from quire.responses import success_response
from quire.schemas.publish import PublishJobOut, PublishSubmitOut
from quire.services.publish import PublishOrchestrator

router = APIRouter()

OrchestratorDep = Annotated[PublishOrchestrator, Depends(get_orchestrator)]


@router.post("/books/{book_id}/publish/{format}", status_code=202)
async def submit_publish(book_id: UUID, format: str, orchestrator: OrchestratorDep) -> dict:
    """Start publishing a book in one format.

    While a job for (book, format) is still active, the same job is returned.
    """
    job = await orchestrator.submit(book_id, format)
    return success_response(
        PublishSubmitOut(job_id=job.id, state=job.state).model_dump(mode="json")
    )


@router.get("/books/{book_id}/publish")
def list_publish_jobs(book_id: UUID, orchestrator: OrchestratorDep) -> dict:
    """All publish jobs of a book, newest first."""
    jobs = orchestrator.list_jobs(book_id)
    return success_response([PublishJobOut.model_validate(j).model_dump(mode="json") for j in jobs])


@router.get("/publish/jobs/{job_id}")
def get_publish_job(job_id: UUID, orchestrator: OrchestratorDep) -> dict:
    job = orchestrator.get(job_id)
    return success_response(PublishJobOut.model_validate(job).model_dump(mode="json"))


@router.post("/publish/jobs/{job_id}/cancel")
async def cancel_publish_job(job_id: UUID, orchestrator: OrchestratorDep) -> dict:
    """Cancel an active job. The builder is asked to stop on a best-effort basis."""
    job = await orchestrator.cancel(job_id)
    return success_response(PublishJobOut.model_validate(job).model_dump(mode="json"))
