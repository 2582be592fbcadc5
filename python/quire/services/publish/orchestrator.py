"""Publish orchestrator.

Drives publish jobs from queued to a terminal state. Each job gets one asyncio
task that owns it for its whole life:

1. queued -> submitting, build the payload, call builder.submit (bounded by
   submit_timeout_s). A submit failure fails the job; it is never retried.
2. submitting -> running with the external handle.
3. Poll builder.status every poll_interval_s. After a transient failure the
   delay doubles per consecutive failure up to backoff_cap_s; a successful
   poll resets it. max_poll_failures consecutive failures fail the job.
4. The job fails with E_PUBLISH_TIMEOUT once timeout_s has passed since it
   entered running, even if a status call is still hanging.

Errors inside a task are written to the job record and never raised out of
the task. The task is the only writer of its job; cancel() stops the task
before writing canceled. Stopping a task without cancel() (book deleted,
shutdown) leaves the job in its last recorded state, and resume() picks such
jobs up again.

Registry and payload calls are synchronous SQLAlchemy work and run in the
threadpool (run_in_threadpool), so a slow database never stalls other tasks.
"""

import asyncio
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from uuid import UUID

from starlette.concurrency import run_in_threadpool

from quire.config import PublishConfig
from quire.db.models import ACTIVE_JOB_STATES, PublishFormat, PublishJobState, utcnow
from quire.errors import (
    ApiError,
    ApiErrorCode,
    BuilderUnavailableError,
    InvalidTransitionError,
    NotCancelableError,
)
from quire.logging import get_logger, set_job_context
from quire.services.builder import BuildPhase, BuildRequest, BuilderClient
from quire.services.publish.payload import PayloadSource
from quire.services.publish.registry import JobRegistry, PublishJobRecord, parse_format

logger = get_logger(__name__)


@dataclass
class _JobTask:
    book_id: UUID
    task: asyncio.Task


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


class PublishOrchestrator:
    """Owns one poll task per active publish job in this process."""

    def __init__(
        self,
        registry: JobRegistry,
        builder: BuilderClient,
        payloads: PayloadSource,
        config: PublishConfig,
    ):
        self._registry = registry
        self._builder = builder
        self._payloads = payloads
        self._config = config
        self._tasks: dict[UUID, _JobTask] = {}

    @property
    def registry(self) -> JobRegistry:
        return self._registry

    # -------------------------------------------------------------------------
    # Caller operations
    # -------------------------------------------------------------------------

    async def submit(self, book_id: UUID, format: PublishFormat | str) -> PublishJobRecord:
        """Create (or reuse) the active job for (book, format) and return immediately.

        The handoff to the builder happens in the job's task, so the caller
        never waits on external I/O.
        """
        format = parse_format(format)
        job, created = await run_in_threadpool(self._registry.submit, book_id, format)
        if created:
            self._spawn(job)
            logger.info(
                "publish_job_submitted",
                job_id=str(job.id),
                book_id=str(book_id),
                format=format.value,
            )
        return job

    def get(self, job_id: UUID) -> PublishJobRecord:
        return self._registry.get(job_id)

    def list_jobs(self, book_id: UUID) -> list[PublishJobRecord]:
        return self._registry.list_for_book(book_id)

    async def cancel(self, job_id: UUID) -> PublishJobRecord:
        """Cancel a non-terminal job.

        The local transition to canceled always happens; asking the builder to
        stop is best-effort.

        Raises:
            NotFoundError: Job does not exist.
            InvalidTransitionError: Job is already terminal.
        """
        job = await run_in_threadpool(self._registry.get, job_id)
        if job.is_terminal:
            raise InvalidTransitionError(job.state.value, PublishJobState.canceled.value)

        await self.stop_polling(job_id)
        job = await run_in_threadpool(self._registry.transition, job_id, PublishJobState.canceled)
        self._registry.forget(job_id)

        # A job stopped mid-submit has no stored handle, but the build may
        # already exist if the builder can name it from the job id alone.
        handle = job.external_handle
        if handle is None and job.submitted_at is not None:
            handle = self._builder.handle_for(job.id)

        if handle:
            try:
                await asyncio.wait_for(
                    self._builder.cancel(handle),
                    timeout=self._config.submit_timeout_s,
                )
            except (NotCancelableError, BuilderUnavailableError) as exc:
                logger.info(
                    "publish_external_cancel_skipped",
                    job_id=str(job_id),
                    error_code=exc.code.value,
                    reason=exc.message,
                )
            except TimeoutError:
                logger.info("publish_external_cancel_skipped", job_id=str(job_id), reason="timeout")

        logger.info("publish_job_canceled", job_id=str(job_id), book_id=str(job.book_id))
        return job

    # -------------------------------------------------------------------------
    # Task control
    # -------------------------------------------------------------------------

    def is_polling(self, job_id: UUID) -> bool:
        return job_id in self._tasks

    async def stop_polling(self, job_id: UUID) -> None:
        """Stop a job's task without changing its state."""
        entry = self._tasks.pop(job_id, None)
        if entry is None:
            return
        entry.task.cancel()
        try:
            await entry.task
        except asyncio.CancelledError:
            pass

    async def stop_polling_for_book(self, book_id: UUID) -> int:
        """Stop every task of a book that is about to be deleted.

        The stopped jobs' locks are dropped too; nothing writes them again.
        """
        job_ids = [job_id for job_id, entry in self._tasks.items() if entry.book_id == book_id]
        for job_id in job_ids:
            await self.stop_polling(job_id)
            self._registry.forget(job_id)
        if job_ids:
            logger.info(
                "publish_polling_stopped_for_book", book_id=str(book_id), count=len(job_ids)
            )
        return len(job_ids)

    def forget_book(self, book_id: UUID) -> None:
        """Drop per-book submit state once the book is gone."""
        self._registry.forget_book(book_id)

    async def join(self, job_id: UUID) -> None:
        """Wait until a job's task finishes. Returns at once if there is none."""
        entry = self._tasks.get(job_id)
        if entry is not None:
            await asyncio.shield(entry.task)

    async def resume(self) -> int:
        """Re-attach tasks to jobs left active by a previous process.

        queued jobs are driven from the start and running jobs resume polling
        with their original deadline. A submitting job may or may not have
        reached the builder, so it fails rather than risk a duplicate build.
        """
        resumed = 0
        active = await run_in_threadpool(self._registry.list_in_states, ACTIVE_JOB_STATES)
        for job in active:
            if job.id in self._tasks:
                continue
            if job.state == PublishJobState.submitting:
                await self._fail(
                    job.id,
                    ApiErrorCode.E_BUILDER_UNAVAILABLE,
                    "Publish job was interrupted during submission",
                )
                continue
            self._spawn(job)
            resumed += 1
        logger.info("publish_jobs_resumed", count=resumed)
        return resumed

    async def shutdown(self) -> None:
        for job_id in list(self._tasks):
            await self.stop_polling(job_id)

    # -------------------------------------------------------------------------
    # Job task
    # -------------------------------------------------------------------------

    def _spawn(self, job: PublishJobRecord) -> None:
        task = asyncio.create_task(self._drive(job), name=f"publish-job-{job.id}")
        self._tasks[job.id] = _JobTask(book_id=job.book_id, task=task)

        def _done(finished: asyncio.Task) -> None:
            entry = self._tasks.get(job.id)
            if entry is not None and entry.task is finished:
                del self._tasks[job.id]
            if not finished.cancelled():
                self._registry.forget(job.id)

        task.add_done_callback(_done)

    async def _drive(self, job: PublishJobRecord) -> None:
        job_id = job.id
        set_job_context(str(job_id), book_id=str(job.book_id))
        try:
            if job.state == PublishJobState.queued:
                running = await self._hand_off(job)
                if running is None:
                    return
                job = running
            try:
                await self._poll(job)
            finally:
                if job.external_handle:
                    self._builder.release(job.external_handle)
        except asyncio.CancelledError:
            logger.info("publish_task_stopped", job_id=str(job_id))
            raise
        except InvalidTransitionError as exc:
            # Another process (the overdue sweep) finalized the job first.
            logger.info("publish_job_finalized_elsewhere", job_id=str(job_id), state=exc.current)
        except Exception as exc:
            logger.exception("publish_task_crashed", job_id=str(job_id))
            await self._record_crash(job_id, exc)

    async def _record_crash(self, job_id: UUID, exc: Exception) -> None:
        """Finalize a job whose task crashed.

        queued has no edge to failed, so a job that crashed before submitting
        is canceled instead. If even that write fails the job stays active
        until the next resume().
        """
        try:
            try:
                await self._fail(
                    job_id, ApiErrorCode.E_INTERNAL, f"Publish task crashed: {type(exc).__name__}"
                )
            except InvalidTransitionError as invalid:
                if invalid.current != PublishJobState.queued.value:
                    logger.info(
                        "publish_job_finalized_elsewhere", job_id=str(job_id), state=invalid.current
                    )
                    return
                await run_in_threadpool(
                    self._registry.transition, job_id, PublishJobState.canceled
                )
                logger.warning("publish_job_abandoned_before_submit", job_id=str(job_id))
        except Exception:
            logger.exception("publish_crash_not_recorded", job_id=str(job_id))

    async def _hand_off(self, job: PublishJobRecord) -> PublishJobRecord | None:
        """queued -> submitting -> running. Returns None if the job failed."""
        job = await run_in_threadpool(
            self._registry.transition, job.id, PublishJobState.submitting, count_attempt=True
        )
        try:
            payload = await run_in_threadpool(self._payloads.load, job.book_id)
            request = BuildRequest(
                job_id=job.id,
                book_id=job.book_id,
                format=job.format,
                payload=payload,
                payload_url=self._payloads.url_for(job.book_id),
            )
            handle = await asyncio.wait_for(
                self._builder.submit(request), timeout=self._config.submit_timeout_s
            )
        except ApiError as exc:
            logger.warning(
                "publish_submit_failed",
                job_id=str(job.id),
                error_code=exc.code.value,
                reason=exc.message,
            )
            await self._fail(job.id, exc.code, exc.message)
            return None
        except TimeoutError:
            logger.warning("publish_submit_timed_out", job_id=str(job.id))
            await self._fail(
                job.id,
                ApiErrorCode.E_BUILDER_UNAVAILABLE,
                f"Builder submit did not answer within {self._config.submit_timeout_s:g}s",
            )
            return None

        return await run_in_threadpool(
            self._registry.transition, job.id, PublishJobState.running, external_handle=handle
        )

    async def _poll(self, job: PublishJobRecord) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._remaining_budget(job)
        failures = job.poll_failures

        while True:
            remaining = deadline - loop.time()
            if remaining > 0:
                await asyncio.sleep(min(self._delay(failures), remaining))
                remaining = deadline - loop.time()
            if remaining <= 0:
                await self._fail_timeout(job)
                return

            try:
                status = await asyncio.wait_for(
                    self._builder.status(job.external_handle or ""), timeout=remaining
                )
            except TimeoutError:
                await self._fail_timeout(job)
                return
            except BuilderUnavailableError as exc:
                failures += 1
                await run_in_threadpool(self._registry.record_poll_failures, job.id, failures)
                logger.warning(
                    "publish_poll_failed",
                    job_id=str(job.id),
                    consecutive_failures=failures,
                    reason=exc.message,
                )
                if failures >= self._config.max_poll_failures:
                    await self._fail(
                        job.id,
                        ApiErrorCode.E_BUILDER_UNAVAILABLE,
                        f"Builder unreachable after {failures} consecutive polls: {exc.message}",
                    )
                    return
                continue

            if failures:
                failures = 0
                await run_in_threadpool(self._registry.record_poll_failures, job.id, 0)

            if status.phase == BuildPhase.succeeded:
                await run_in_threadpool(
                    self._registry.transition,
                    job.id,
                    PublishJobState.succeeded,
                    result_url=status.artifact_url,
                )
                return
            if status.phase == BuildPhase.failed:
                reason = status.reason or "Build failed"
                await self._fail(job.id, ApiErrorCode.E_BUILD_FAILED, reason)
                return

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _delay(self, failures: int) -> float:
        interval = self._config.poll_interval_s
        if failures <= 0:
            return interval
        return min(interval * (2**failures), self._config.backoff_cap_s)

    def _remaining_budget(self, job: PublishJobRecord) -> float:
        if job.running_since is None:
            return self._config.timeout_s
        elapsed = (utcnow() - _as_utc(job.running_since)).total_seconds()
        return self._config.timeout_s - elapsed

    async def _fail_timeout(self, job: PublishJobRecord) -> None:
        logger.warning("publish_job_timed_out", job_id=str(job.id))
        await self._fail(
            job.id,
            ApiErrorCode.E_PUBLISH_TIMEOUT,
            f"Build did not finish within {self._config.timeout_s:g}s",
        )

    async def _fail(self, job_id: UUID, code: ApiErrorCode, message: str) -> None:
        await run_in_threadpool(
            self._registry.transition,
            job_id,
            PublishJobState.failed,
            error_code=code,
            error=message,
        )


def fail_overdue_jobs(registry: JobRegistry, config: PublishConfig, grace_s: float = 0.0) -> int:
    """Fail running jobs whose wall-clock budget (plus grace) has passed.

    Runs outside any orchestrator, so it covers jobs nobody is polling.
    Returns the number of jobs failed.
    """
    cutoff = utcnow() - timedelta(seconds=config.timeout_s + grace_s)
    failed = 0
    for job in registry.list_running_since_before(cutoff):
        try:
            registry.transition(
                job.id,
                PublishJobState.failed,
                error_code=ApiErrorCode.E_PUBLISH_TIMEOUT,
                error=f"Build did not finish within {config.timeout_s:g}s",
            )
        except InvalidTransitionError:
            continue
        failed += 1
        logger.warning("publish_job_expired", job_id=str(job.id), book_id=str(job.book_id))
    return failed
