"""Abstract base class for builder clients.

A builder turns a chapter snapshot into a downloadable artifact. It runs
outside this service; clients only submit, observe and cancel builds.

Rules:
- No retries inside clients (the orchestrator owns retry/backoff policy)
- No DB access
- No logging of payload bodies
- Transport and 5xx failures raise BuilderUnavailableError
- Rejected input raises BuilderInvalidInputError
"""

from abc import ABC, abstractmethod
from uuid import UUID

from quire.errors import BuilderInvalidInputError
from quire.services.builder.types import BuildRequest, BuildStatus


class BuilderClient(ABC):
    """Contract the publish orchestrator depends on."""

    name: str = "builder"

    @abstractmethod
    async def submit(self, request: BuildRequest) -> str:
        """Start a build and return its external handle.

        Raises:
            BuilderUnavailableError: Builder unreachable or failed transiently.
            BuilderInvalidInputError: Builder rejected the request.
        """

    @abstractmethod
    async def status(self, handle: str) -> BuildStatus:
        """Observe a build. Safe to call any number of times.

        Raises:
            BuilderUnavailableError: Builder unreachable or failed transiently.
        """

    @abstractmethod
    async def cancel(self, handle: str) -> None:
        """Ask the builder to stop a build. Best-effort.

        Raises:
            NotCancelableError: The build already finished or cannot be stopped.
            BuilderUnavailableError: Builder unreachable.
        """

    def handle_for(self, job_id: UUID) -> str | None:
        """The handle submit() returns for this job, if it is derived from the job id.

        Lets a job canceled mid-submit still ask the builder to stop a build
        that was already dispatched. None means the handle is only known once
        submit() returns.
        """
        return None

    def release(self, handle: str) -> None:  # noqa: B027
        """Drop any per-build state kept for handle. Called once nobody polls it."""

    async def aclose(self) -> None:  # noqa: B027
        """Release client resources. No-op by default."""

    @staticmethod
    def validate_request(request: BuildRequest) -> None:
        """Reject requests no builder can act on."""
        if request.chapter_count == 0:
            raise BuilderInvalidInputError("Book has no chapters to publish")
