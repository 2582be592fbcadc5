"""In-process builder for publish tests.

ScriptedBuilder answers status() from a script. Each call consumes the next
entry; the last entry repeats forever. An entry is a BuildStatus to return or
an exception to raise.

With derives_handles=True the handle is named after the job id, the way the
GitHub Actions builder names its runs, so handle_for() can predict it.
"""

import asyncio
from uuid import UUID

from quire.config import PublishConfig
from quire.services.builder import BuilderClient, BuildRequest, BuildStatus

DEFAULT_ARTIFACT_URL = "https://artifacts.test/build.pdf"

FAST_PUBLISH_CONFIG = PublishConfig(
    poll_interval_s=0.01,
    backoff_cap_s=0.04,
    max_poll_failures=3,
    timeout_s=5.0,
    submit_timeout_s=1.0,
)


class ScriptedBuilder(BuilderClient):
    name = "scripted"

    def __init__(
        self,
        statuses: list[BuildStatus | Exception] | None = None,
        *,
        submit_error: Exception | None = None,
        submit_hangs: bool = False,
        status_hangs: bool = False,
        cancel_error: Exception | None = None,
        derives_handles: bool = False,
    ):
        self.statuses: list[BuildStatus | Exception] = list(
            statuses
            if statuses is not None
            else [BuildStatus.running(), BuildStatus.succeeded(DEFAULT_ARTIFACT_URL)]
        )
        self.submit_error = submit_error
        self.submit_hangs = submit_hangs
        self.status_hangs = status_hangs
        self.cancel_error = cancel_error
        self.derives_handles = derives_handles

        self.submitted: list[BuildRequest] = []
        self.status_calls: list[str] = []
        self.canceled: list[str] = []
        self.released: list[str] = []

    async def submit(self, request: BuildRequest) -> str:
        self.validate_request(request)
        self.submitted.append(request)
        if self.submit_hangs:
            await asyncio.Event().wait()
        if self.submit_error is not None:
            raise self.submit_error
        return self.handle_for(request.job_id) or f"build-{len(self.submitted)}"

    async def status(self, handle: str) -> BuildStatus:
        self.status_calls.append(handle)
        if self.status_hangs:
            await asyncio.Event().wait()
        entry = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        if isinstance(entry, Exception):
            raise entry
        return entry

    async def cancel(self, handle: str) -> None:
        self.canceled.append(handle)
        if self.cancel_error is not None:
            raise self.cancel_error

    def handle_for(self, job_id: UUID) -> str | None:
        return f"job-{job_id}" if self.derives_handles else None

    def release(self, handle: str) -> None:
        self.released.append(handle)
