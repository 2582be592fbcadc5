"""Application settings loaded from environment variables.

Environment Configuration:
    QUIRE_ENV: Deployment environment (local | test | staging | prod)
    DATABASE_URL: SQLAlchemy connection string (required)
    PUBLIC_BASE_URL: Externally reachable base URL (used in builder payload links)

Redis / Celery Configuration:
    REDIS_URL: Redis connection string (required for worker)
    CELERY_BROKER_URL: Celery broker URL (defaults to REDIS_URL)
    CELERY_RESULT_BACKEND: Celery result backend URL (defaults to REDIS_URL)

Publish Configuration:
    PUBLISH_POLL_INTERVAL_S: Fixed interval between builder status polls
    PUBLISH_POLL_BACKOFF_CAP_S: Ceiling for backoff after transient poll errors
    PUBLISH_MAX_POLL_FAILURES: Consecutive transient failures before a job fails
    PUBLISH_TIMEOUT_S: Wall-clock budget for a running job
    PUBLISH_SUBMIT_TIMEOUT_S: Bound on a single builder submit call

Builder Configuration (required in staging/prod):
    GITHUB_OWNER, GITHUB_REPO, GITHUB_TOKEN, GITHUB_WORKFLOW_ID
    GITHUB_BRANCH: Ref the workflow is dispatched on (default: main)
"""

from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import Annotated

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings


class Environment(str, Enum):
    """Valid deployment environments."""

    LOCAL = "local"
    TEST = "test"
    STAGING = "staging"
    PROD = "prod"


@dataclass(frozen=True)
class PublishConfig:
    """Explicit publish policy handed to the orchestrator at construction.

    All durations are seconds.
    """

    poll_interval_s: float = 5.0
    backoff_cap_s: float = 60.0
    max_poll_failures: int = 5
    timeout_s: float = 1800.0
    submit_timeout_s: float = 30.0


class Settings(BaseSettings):
    """Application configuration.

    Validation rules:
    - DATABASE_URL is always required
    - Publish durations and counters must be positive
    - PUBLISH_POLL_BACKOFF_CAP_S must not be below PUBLISH_POLL_INTERVAL_S
    - GitHub builder settings are required in staging and prod only
    """

    quire_env: Environment = Field(default=Environment.LOCAL, alias="QUIRE_ENV")
    database_url: Annotated[str, Field(alias="DATABASE_URL")]
    public_base_url: str = Field(default="http://localhost:8000", alias="PUBLIC_BASE_URL")

    # Redis / Celery settings
    redis_url: str | None = Field(default=None, alias="REDIS_URL")
    celery_broker_url: str | None = Field(default=None, alias="CELERY_BROKER_URL")
    celery_result_backend: str | None = Field(default=None, alias="CELERY_RESULT_BACKEND")

    # Publish orchestration
    publish_poll_interval_s: float = Field(default=5.0, alias="PUBLISH_POLL_INTERVAL_S")
    publish_poll_backoff_cap_s: float = Field(default=60.0, alias="PUBLISH_POLL_BACKOFF_CAP_S")
    publish_max_poll_failures: int = Field(default=5, alias="PUBLISH_MAX_POLL_FAILURES")
    publish_timeout_s: float = Field(default=1800.0, alias="PUBLISH_TIMEOUT_S")  # 30 minutes
    publish_submit_timeout_s: float = Field(default=30.0, alias="PUBLISH_SUBMIT_TIMEOUT_S")

    # External builder (GitHub Actions workflow dispatch)
    builder_backend: str = Field(default="github_actions", alias="BUILDER_BACKEND")
    github_api_url: str = Field(default="https://api.github.com", alias="GITHUB_API_URL")
    github_owner: str | None = Field(default=None, alias="GITHUB_OWNER")
    github_repo: str | None = Field(default=None, alias="GITHUB_REPO")
    github_token: str | None = Field(default=None, alias="GITHUB_TOKEN")
    github_workflow_id: str | None = Field(default=None, alias="GITHUB_WORKFLOW_ID")
    github_branch: str = Field(default="main", alias="GITHUB_BRANCH")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @model_validator(mode="after")
    def validate_publish_settings(self) -> "Settings":
        """Reject non-positive publish limits and an inverted backoff window."""
        positive = {
            "PUBLISH_POLL_INTERVAL_S": self.publish_poll_interval_s,
            "PUBLISH_POLL_BACKOFF_CAP_S": self.publish_poll_backoff_cap_s,
            "PUBLISH_MAX_POLL_FAILURES": self.publish_max_poll_failures,
            "PUBLISH_TIMEOUT_S": self.publish_timeout_s,
            "PUBLISH_SUBMIT_TIMEOUT_S": self.publish_submit_timeout_s,
        }
        for name, value in positive.items():
            if value <= 0:
                raise ValueError(f"{name} must be > 0 (got {value})")

        if self.publish_poll_backoff_cap_s < self.publish_poll_interval_s:
            raise ValueError(
                "PUBLISH_POLL_BACKOFF_CAP_S must be >= PUBLISH_POLL_INTERVAL_S "
                f"({self.publish_poll_backoff_cap_s} < {self.publish_poll_interval_s})"
            )

        return self

    @model_validator(mode="after")
    def validate_builder_settings(self) -> "Settings":
        """Ensure the GitHub builder is fully configured in deployed environments."""
        if self.quire_env not in (Environment.STAGING, Environment.PROD):
            return self
        if self.builder_backend != "github_actions":
            return self

        missing = [
            alias
            for alias, value in (
                ("GITHUB_OWNER", self.github_owner),
                ("GITHUB_REPO", self.github_repo),
                ("GITHUB_TOKEN", self.github_token),
                ("GITHUB_WORKFLOW_ID", self.github_workflow_id),
            )
            if not value
        ]
        if missing:
            raise ValueError(
                f"Missing required builder settings for QUIRE_ENV={self.quire_env.value}: "
                f"{', '.join(missing)}"
            )
        return self

    @property
    def effective_celery_broker_url(self) -> str | None:
        """Return Celery broker URL, falling back to REDIS_URL if not set."""
        return self.celery_broker_url or self.redis_url

    @property
    def effective_celery_result_backend(self) -> str | None:
        """Return Celery result backend URL, falling back to REDIS_URL if not set."""
        return self.celery_result_backend or self.redis_url

    def publish_config(self) -> PublishConfig:
        """Build the explicit publish policy for the orchestrator."""
        return PublishConfig(
            poll_interval_s=self.publish_poll_interval_s,
            backoff_cap_s=self.publish_poll_backoff_cap_s,
            max_poll_failures=self.publish_max_poll_failures,
            timeout_s=self.publish_timeout_s,
            submit_timeout_s=self.publish_submit_timeout_s,
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings.

    Raises:
        ValidationError: If required settings are missing or invalid.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache. Useful for testing."""
    get_settings.cache_clear()
