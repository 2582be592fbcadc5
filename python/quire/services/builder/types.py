"""Types shared by builder clients and the publish orchestrator."""

from dataclasses import dataclass
from enum import Enum
from uuid import UUID

from quire.db.models import PublishFormat


class BuildPhase(str, Enum):
    pending = "pending"
    running = "running"
    succeeded = "succeeded"
    failed = "failed"


@dataclass(frozen=True)
class BuildStatus:
    """One status observation of an external build.

    artifact_url is set only for succeeded, reason only for failed.
    """

    phase: BuildPhase
    artifact_url: str | None = None
    reason: str | None = None

    @classmethod
    def pending(cls) -> "BuildStatus":
        return cls(BuildPhase.pending)

    @classmethod
    def running(cls) -> "BuildStatus":
        return cls(BuildPhase.running)

    @classmethod
    def succeeded(cls, artifact_url: str) -> "BuildStatus":
        return cls(BuildPhase.succeeded, artifact_url=artifact_url)

    @classmethod
    def failed(cls, reason: str) -> "BuildStatus":
        return cls(BuildPhase.failed, reason=reason)

    @property
    def is_terminal(self) -> bool:
        return self.phase in (BuildPhase.succeeded, BuildPhase.failed)


@dataclass(frozen=True)
class BuildRequest:
    """Everything a builder needs to start one build.

    Attributes:
        job_id: Publish job the build belongs to (used as the correlation ref)
        book_id: Book being built
        format: Target artifact format
        payload: Builder payload document (book metadata + chapters in pre-order)
        payload_url: Where the builder can fetch the same payload
    """

    job_id: UUID
    book_id: UUID
    format: PublishFormat
    payload: dict
    payload_url: str

    @property
    def chapter_count(self) -> int:
        return len(self.payload.get("book", {}).get("chapters", []))
