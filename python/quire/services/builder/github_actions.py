"""GitHub Actions builder client.

Builds run as a workflow_dispatch workflow in a separate repository. The
workflow fetches the builder payload from payload_url, renders the artifact
and uploads it as a run artifact.

Endpoints:
- Submit: POST /repos/{owner}/{repo}/actions/workflows/{workflow_id}/dispatches
  body {"ref": <branch>, "inputs": {book_id, format, job_ref, payload_url, chapter_count}}
  -> 204, no body
- Locate run: GET /repos/{owner}/{repo}/actions/workflows/{workflow_id}/runs
  ?event=workflow_dispatch, newest first; the workflow sets
  `run-name: ${{ inputs.job_ref }}`, so the run is the one whose display_title
  equals the handle. Up to RUN_LOOKUP_MAX_PAGES pages are scanned per lookup
- Status: GET /repos/{owner}/{repo}/actions/runs/{run_id}
- Artifacts: GET /repos/{owner}/{repo}/actions/runs/{run_id}/artifacts
- Cancel: POST /repos/{owner}/{repo}/actions/runs/{run_id}/cancel -> 202, 409 if finished

The dispatch endpoint returns no run id, so the external handle is the job
ref, derived from the job id. A dispatched run that is not listed yet reports
as pending. Run ids are cached until the run completes or is canceled.

Run status mapping:
- queued / requested / waiting / pending -> pending
- in_progress -> running
- completed + success -> succeeded(archive_download_url of the artifact)
- completed + anything else -> failed(conclusion)
"""

from uuid import UUID

import httpx

from quire.errors import BuilderInvalidInputError, BuilderUnavailableError, NotCancelableError
from quire.logging import get_logger
from quire.services.builder.base import BuilderClient
from quire.services.builder.types import BuildRequest, BuildStatus

logger = get_logger(__name__)

GITHUB_API_VERSION = "2022-11-28"
RUN_LOOKUP_PAGE_SIZE = 100
RUN_LOOKUP_MAX_PAGES = 5

_PENDING_RUN_STATUSES = frozenset({"queued", "requested", "waiting", "pending"})


class GitHubActionsBuilder(BuilderClient):
    """Builder client backed by a GitHub Actions workflow."""

    name = "github_actions"

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        owner: str,
        repo: str,
        token: str,
        workflow_id: str,
        ref: str = "main",
        api_url: str = "https://api.github.com",
        timeout_s: float = 15.0,
    ):
        self._client = client
        self._repo_url = f"{api_url.rstrip('/')}/repos/{owner}/{repo}"
        self._workflow_id = workflow_id
        self._ref = ref
        self._token = token
        self._timeout = httpx.Timeout(timeout_s, connect=5.0)
        self._run_ids: dict[str, int] = {}

    # -------------------------------------------------------------------------
    # BuilderClient
    # -------------------------------------------------------------------------

    async def submit(self, request: BuildRequest) -> str:
        self.validate_request(request)
        handle = self.handle_for(request.job_id)
        body = {
            "ref": self._ref,
            "inputs": {
                "book_id": str(request.book_id),
                "format": request.format.value,
                "job_ref": handle,
                "payload_url": request.payload_url,
                "chapter_count": str(request.chapter_count),
            },
        }

        response = await self._send(
            "POST",
            f"{self._repo_url}/actions/workflows/{self._workflow_id}/dispatches",
            json=body,
        )
        if response.status_code in (400, 404, 422):
            raise BuilderInvalidInputError(
                f"Workflow dispatch rejected with HTTP {response.status_code}"
            )
        self._raise_for_status(response, "dispatch")

        logger.info(
            "github_workflow_dispatched",
            job_ref=handle,
            book_id=str(request.book_id),
            format=request.format.value,
        )
        return handle

    async def status(self, handle: str) -> BuildStatus:
        run_id = await self._find_run_id(handle)
        if run_id is None:
            return BuildStatus.pending()

        response = await self._send("GET", f"{self._repo_url}/actions/runs/{run_id}")
        self._raise_for_status(response, "get_run")
        run = response.json()

        status = run.get("status")
        if status in _PENDING_RUN_STATUSES:
            return BuildStatus.pending()
        if status != "completed":
            return BuildStatus.running()
        self._run_ids.pop(handle, None)

        conclusion = run.get("conclusion")
        if conclusion != "success":
            return BuildStatus.failed(f"Build run concluded with {conclusion or 'no conclusion'}")

        artifact_url = await self._artifact_url(run_id)
        if artifact_url is None:
            return BuildStatus.failed("Build run succeeded without producing an artifact")
        return BuildStatus.succeeded(artifact_url)

    async def cancel(self, handle: str) -> None:
        run_id = await self._find_run_id(handle)
        if run_id is None:
            raise NotCancelableError("Build run has not started yet")
        self._run_ids.pop(handle, None)

        response = await self._send("POST", f"{self._repo_url}/actions/runs/{run_id}/cancel")
        if response.status_code == 409:
            raise NotCancelableError("Build run already finished")
        self._raise_for_status(response, "cancel_run")
        logger.info("github_run_cancel_requested", job_ref=handle, run_id=run_id)

    def handle_for(self, job_id: UUID) -> str:
        return str(job_id)

    def release(self, handle: str) -> None:
        self._run_ids.pop(handle, None)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _find_run_id(self, handle: str) -> int | None:
        if handle in self._run_ids:
            return self._run_ids[handle]

        for page in range(1, RUN_LOOKUP_MAX_PAGES + 1):
            response = await self._send(
                "GET",
                f"{self._repo_url}/actions/workflows/{self._workflow_id}/runs",
                params={
                    "event": "workflow_dispatch",
                    "per_page": RUN_LOOKUP_PAGE_SIZE,
                    "page": page,
                },
            )
            self._raise_for_status(response, "list_runs")

            runs = response.json().get("workflow_runs", [])
            for run in runs:
                if run.get("display_title") == handle:
                    self._run_ids[handle] = run["id"]
                    return run["id"]
            if len(runs) < RUN_LOOKUP_PAGE_SIZE:
                break
        return None

    async def _artifact_url(self, run_id: int) -> str | None:
        response = await self._send("GET", f"{self._repo_url}/actions/runs/{run_id}/artifacts")
        self._raise_for_status(response, "list_artifacts")
        artifacts = [a for a in response.json().get("artifacts", []) if not a.get("expired")]
        if not artifacts:
            return None
        return artifacts[0].get("archive_download_url")

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        headers = {
            "Accept": "application/vnd.github+json",
            "Authorization": f"Bearer {self._token}",
            "X-GitHub-Api-Version": GITHUB_API_VERSION,
        }
        try:
            return await self._client.request(
                method, url, headers=headers, timeout=self._timeout, **kwargs
            )
        except httpx.TimeoutException as exc:
            raise BuilderUnavailableError("GitHub API request timed out") from exc
        except httpx.HTTPError as exc:
            raise BuilderUnavailableError(f"GitHub API unreachable: {type(exc).__name__}") from exc

    @staticmethod
    def _raise_for_status(response: httpx.Response, operation: str) -> None:
        if response.is_success:
            return
        logger.warning(
            "github_api_error",
            operation=operation,
            status_code=response.status_code,
        )
        raise BuilderUnavailableError(
            f"GitHub API {operation} failed with HTTP {response.status_code}"
        )
