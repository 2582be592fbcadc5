"""Builder clients: the external system that renders publish artifacts."""

import httpx

from quire.config import Settings
from quire.services.builder.base import BuilderClient
from quire.services.builder.github_actions import GitHubActionsBuilder
from quire.services.builder.types import BuildPhase, BuildRequest, BuildStatus

__all__ = [
    "BuildPhase",
    "BuildRequest",
    "BuildStatus",
    "BuilderClient",
    "GitHubActionsBuilder",
    "create_builder",
]


def create_builder(settings: Settings, client: httpx.AsyncClient) -> BuilderClient:
    """Create the configured builder client.

    Raises:
        ValueError: If BUILDER_BACKEND names an unknown backend.
    """
    if settings.builder_backend == "github_actions":
        return GitHubActionsBuilder(
            client,
            owner=settings.github_owner or "",
            repo=settings.github_repo or "",
            token=settings.github_token or "",
            workflow_id=settings.github_workflow_id or "",
            ref=settings.github_branch,
            api_url=settings.github_api_url,
        )
    raise ValueError(f"Unknown BUILDER_BACKEND: {settings.builder_backend}")
