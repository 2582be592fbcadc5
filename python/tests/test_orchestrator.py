"""Tests for the publish orchestrator.

The builder is scripted in-process; poll intervals are hundredths of a second
so whole job lifecycles run in well under a second.
"""

import asyncio
import sqlite3
import time
from dataclasses import replace
from datetime import timedelta
from uuid import UUID

import pytest
from sqlalchemy import Engine, update
from sqlalchemy.orm import Session

from quire.db.models import PublishJob, PublishJobState, utcnow
from quire.errors import (
    ApiErrorCode,
    BuilderInvalidInputError,
    BuilderUnavailableError,
    InvalidTransitionError,
    NotCancelableError,
)
from quire.services.builder import BuildStatus
from quire.services.publish import (
    JobRegistry,
    PayloadSource,
    PublishOrchestrator,
    fail_overdue_jobs,
)
from quire.tasks.sweep_publish_jobs import sweep_overdue_jobs
from tests.fakes import DEFAULT_ARTIFACT_URL, FAST_PUBLISH_CONFIG, ScriptedBuilder

S = PublishJobState


def make_orchestrator(
    registry: JobRegistry, payloads: PayloadSource, builder: ScriptedBuilder, **config
) -> PublishOrchestrator:
    return PublishOrchestrator(registry, builder, payloads, replace(FAST_PUBLISH_CONFIG, **config))


async def wait_for_state(registry: JobRegistry, job_id: UUID, state: PublishJobState):
    for _ in range(200):
        job = registry.get(job_id)
        if job.state == state:
            return job
        await asyncio.sleep(0.01)
    raise AssertionError(f"job never reached {state.value} (last: {job.state.value})")


async def wait_for_submit_call(builder: ScriptedBuilder):
    for _ in range(200):
        if builder.submitted:
            return
        await asyncio.sleep(0.01)
    raise AssertionError("builder.submit was never called")


async def run_to_end(orchestrator: PublishOrchestrator, book_id: UUID, format: str = "pdf"):
    job = await orchestrator.submit(book_id, format)
    await asyncio.wait_for(orchestrator.join(job.id), timeout=5)
    return orchestrator.get(job.id)


class TestSubmit:
    @pytest.mark.asyncio
    async def test_returns_queued_job_immediately(
        self, orchestrator: PublishOrchestrator, chaptered_book_id: UUID
    ):
        job = await orchestrator.submit(chaptered_book_id, "pdf")

        assert job.state == S.queued
        assert orchestrator.is_polling(job.id)
        await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_double_submit_returns_same_job(
        self, orchestrator: PublishOrchestrator, chaptered_book_id: UUID, builder: ScriptedBuilder
    ):
        first = await orchestrator.submit(chaptered_book_id, "pdf")
        second = await orchestrator.submit(chaptered_book_id, "pdf")

        assert second.id == first.id
        await orchestrator.join(first.id)
        assert len(builder.submitted) == 1

    @pytest.mark.asyncio
    async def test_payload_is_sent_in_preorder(
        self, orchestrator: PublishOrchestrator, chaptered_book_id: UUID, builder: ScriptedBuilder
    ):
        job = await run_to_end(orchestrator, chaptered_book_id)

        request = builder.submitted[0]
        assert request.job_id == job.id
        assert request.payload_url == f"https://quire.test/books/{chaptered_book_id}/payload"
        titles = [c["title"] for c in request.payload["book"]["chapters"]]
        assert titles == ["Intro", "Background", "Body"]


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_running_then_succeeded_records_result_url(
        self, registry: JobRegistry, payloads: PayloadSource, chaptered_book_id: UUID
    ):
        builder = ScriptedBuilder([BuildStatus.running(), BuildStatus.succeeded("x")])
        orchestrator = make_orchestrator(registry, payloads, builder)

        job = await run_to_end(orchestrator, chaptered_book_id)

        assert job.state == S.succeeded
        assert job.result_url == "x"
        assert job.external_handle == "build-1"
        assert builder.released == ["build-1"]
        assert job.attempt_count == 1
        assert job.finished_at is not None
        assert not orchestrator.is_polling(job.id)
        assert job.id not in registry._job_locks

    @pytest.mark.asyncio
    async def test_pending_polls_until_done(
        self, registry: JobRegistry, payloads: PayloadSource, chaptered_book_id: UUID
    ):
        builder = ScriptedBuilder(
            [BuildStatus.pending(), BuildStatus.pending(), BuildStatus.succeeded("x")]
        )
        orchestrator = make_orchestrator(registry, payloads, builder)

        job = await run_to_end(orchestrator, chaptered_book_id)

        assert job.state == S.succeeded
        assert builder.status_calls == ["build-1"] * 3

    @pytest.mark.asyncio
    async def test_builder_reported_failure(
        self, registry: JobRegistry, payloads: PayloadSource, chaptered_book_id: UUID
    ):
        builder = ScriptedBuilder([BuildStatus.failed("LaTeX error")])
        orchestrator = make_orchestrator(registry, payloads, builder)

        job = await run_to_end(orchestrator, chaptered_book_id)

        assert job.state == S.failed
        assert job.error_code == ApiErrorCode.E_BUILD_FAILED.value
        assert job.error == "LaTeX error"
        assert job.result_url is None

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_job(
        self, registry: JobRegistry, payloads: PayloadSource, chaptered_book_id: UUID
    ):
        builder = ScriptedBuilder([RuntimeError("boom")])
        orchestrator = make_orchestrator(registry, payloads, builder)

        job = await run_to_end(orchestrator, chaptered_book_id)

        assert job.state == S.failed
        assert job.error_code == ApiErrorCode.E_INTERNAL.value

    @pytest.mark.asyncio
    async def test_crash_while_queued_cancels_job(
        self,
        registry: JobRegistry,
        payloads: PayloadSource,
        builder: ScriptedBuilder,
        chaptered_book_id: UUID,
        monkeypatch: pytest.MonkeyPatch,
    ):
        transition = registry.transition

        def transition_without_submitting(job_id, target, **fields):
            if target == S.submitting:
                raise RuntimeError("database went away")
            return transition(job_id, target, **fields)

        monkeypatch.setattr(registry, "transition", transition_without_submitting)
        orchestrator = make_orchestrator(registry, payloads, builder)

        job = await run_to_end(orchestrator, chaptered_book_id)

        assert job.state == S.canceled
        assert job.finished_at is not None
        assert builder.submitted == []
        assert not orchestrator.is_polling(job.id)


class TestEventLoop:
    @pytest.mark.asyncio
    async def test_database_lock_does_not_stall_other_tasks(
        self, engine: Engine, orchestrator: PublishOrchestrator, chaptered_book_id: UUID
    ):
        if engine.dialect.name != "sqlite":
            pytest.skip("holds a SQLite database lock")
        loop = asyncio.get_running_loop()
        blocker = sqlite3.connect(engine.url.database, isolation_level=None)
        blocker.execute("BEGIN IMMEDIATE")
        loop.call_later(0.5, blocker.execute, "ROLLBACK")
        gaps: list[float] = []

        async def heartbeat():
            last = loop.time()
            while True:
                await asyncio.sleep(0.02)
                now = loop.time()
                gaps.append(now - last)
                last = now

        beat = asyncio.create_task(heartbeat())
        started = loop.time()
        try:
            job = await orchestrator.submit(chaptered_book_id, "pdf")
        finally:
            beat.cancel()
            blocker.close()

        assert loop.time() - started >= 0.4
        assert job.state == S.queued
        assert gaps
        assert max(gaps) < 0.25
        await orchestrator.shutdown()


class TestSubmitFailures:
    @pytest.mark.asyncio
    async def test_empty_book_fails_without_retry(
        self, orchestrator: PublishOrchestrator, book_id: UUID, builder: ScriptedBuilder
    ):
        job = await run_to_end(orchestrator, book_id)

        assert job.state == S.failed
        assert job.error_code == ApiErrorCode.E_BUILDER_INVALID_INPUT.value
        assert job.attempt_count == 1
        assert builder.submitted == []
        assert builder.status_calls == []

    @pytest.mark.asyncio
    async def test_rejected_submit_fails_job(
        self, registry: JobRegistry, payloads: PayloadSource, chaptered_book_id: UUID
    ):
        builder = ScriptedBuilder(submit_error=BuilderInvalidInputError("bad format"))
        orchestrator = make_orchestrator(registry, payloads, builder)

        job = await run_to_end(orchestrator, chaptered_book_id)

        assert job.state == S.failed
        assert job.error_code == ApiErrorCode.E_BUILDER_INVALID_INPUT.value
        assert job.error == "bad format"
        assert job.external_handle is None

    @pytest.mark.asyncio
    async def test_unreachable_builder_fails_job_once(
        self, registry: JobRegistry, payloads: PayloadSource, chaptered_book_id: UUID
    ):
        builder = ScriptedBuilder(submit_error=BuilderUnavailableError("connection refused"))
        orchestrator = make_orchestrator(registry, payloads, builder)

        job = await run_to_end(orchestrator, chaptered_book_id)

        assert job.state == S.failed
        assert job.error_code == ApiErrorCode.E_BUILDER_UNAVAILABLE.value
        assert len(builder.submitted) == 1

    @pytest.mark.asyncio
    async def test_hanging_submit_is_bounded(
        self, registry: JobRegistry, payloads: PayloadSource, chaptered_book_id: UUID
    ):
        builder = ScriptedBuilder(submit_hangs=True)
        orchestrator = make_orchestrator(registry, payloads, builder, submit_timeout_s=0.05)

        job = await run_to_end(orchestrator, chaptered_book_id)

        assert job.state == S.failed
        assert job.error_code == ApiErrorCode.E_BUILDER_UNAVAILABLE.value


class TestPollFailures:
    @pytest.mark.asyncio
    async def test_consecutive_failures_hit_cap(
        self, registry: JobRegistry, payloads: PayloadSource, chaptered_book_id: UUID
    ):
        builder = ScriptedBuilder([BuilderUnavailableError("502 from GitHub")])
        orchestrator = make_orchestrator(registry, payloads, builder)

        job = await run_to_end(orchestrator, chaptered_book_id)

        assert job.state == S.failed
        assert job.error_code == ApiErrorCode.E_BUILDER_UNAVAILABLE.value
        assert len(builder.status_calls) == FAST_PUBLISH_CONFIG.max_poll_failures
        assert job.poll_failures == FAST_PUBLISH_CONFIG.max_poll_failures

    @pytest.mark.asyncio
    async def test_successful_poll_resets_failure_count(
        self, registry: JobRegistry, payloads: PayloadSource, chaptered_book_id: UUID
    ):
        flaky = BuilderUnavailableError("flaky")
        builder = ScriptedBuilder(
            [flaky, flaky, BuildStatus.running(), flaky, flaky, BuildStatus.succeeded("x")]
        )
        orchestrator = make_orchestrator(registry, payloads, builder)

        job = await run_to_end(orchestrator, chaptered_book_id)

        assert job.state == S.succeeded
        assert job.poll_failures == 0

    def test_backoff_doubles_up_to_cap(self, orchestrator: PublishOrchestrator):
        delays = [orchestrator._delay(n) for n in range(5)]

        assert delays == pytest.approx([0.01, 0.02, 0.04, 0.04, 0.04])


class TestTimeout:
    @pytest.mark.asyncio
    async def test_never_finishing_build_times_out(
        self, registry: JobRegistry, payloads: PayloadSource, chaptered_book_id: UUID
    ):
        builder = ScriptedBuilder([BuildStatus.running()])
        orchestrator = make_orchestrator(registry, payloads, builder, timeout_s=0.2)

        job = await run_to_end(orchestrator, chaptered_book_id)

        assert job.state == S.failed
        assert job.error_code == ApiErrorCode.E_PUBLISH_TIMEOUT.value

    @pytest.mark.asyncio
    async def test_hanging_status_call_still_times_out(
        self, registry: JobRegistry, payloads: PayloadSource, chaptered_book_id: UUID
    ):
        builder = ScriptedBuilder(status_hangs=True)
        orchestrator = make_orchestrator(registry, payloads, builder, timeout_s=0.2)

        started = time.monotonic()
        job = await run_to_end(orchestrator, chaptered_book_id)

        assert time.monotonic() - started < 2.0
        assert job.state == S.failed
        assert job.error_code == ApiErrorCode.E_PUBLISH_TIMEOUT.value
        assert len(builder.status_calls) == 1


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_running_job(
        self, registry: JobRegistry, payloads: PayloadSource, chaptered_book_id: UUID
    ):
        builder = ScriptedBuilder([BuildStatus.running()])
        orchestrator = make_orchestrator(registry, payloads, builder)
        job = await orchestrator.submit(chaptered_book_id, "pdf")
        await wait_for_state(registry, job.id, S.running)

        canceled = await orchestrator.cancel(job.id)

        assert canceled.state == S.canceled
        assert canceled.result_url is None
        assert builder.canceled == ["build-1"]
        assert not orchestrator.is_polling(job.id)
        await asyncio.sleep(0.05)
        assert registry.get(job.id).state == S.canceled

    @pytest.mark.asyncio
    async def test_cancel_queued_job_never_reaches_builder(
        self, orchestrator: PublishOrchestrator, chaptered_book_id: UUID, builder: ScriptedBuilder
    ):
        job = await orchestrator.submit(chaptered_book_id, "pdf")

        canceled = await orchestrator.cancel(job.id)

        assert canceled.state == S.canceled
        assert builder.submitted == []
        assert builder.canceled == []

    @pytest.mark.asyncio
    async def test_external_cancel_refusal_still_cancels_locally(
        self, registry: JobRegistry, payloads: PayloadSource, chaptered_book_id: UUID
    ):
        builder = ScriptedBuilder(
            [BuildStatus.running()], cancel_error=NotCancelableError("already finished")
        )
        orchestrator = make_orchestrator(registry, payloads, builder)
        job = await orchestrator.submit(chaptered_book_id, "pdf")
        await wait_for_state(registry, job.id, S.running)

        canceled = await orchestrator.cancel(job.id)

        assert canceled.state == S.canceled
        assert builder.canceled == ["build-1"]

    @pytest.mark.asyncio
    async def test_cancel_terminal_job_rejected(
        self, orchestrator: PublishOrchestrator, chaptered_book_id: UUID
    ):
        job = await run_to_end(orchestrator, chaptered_book_id)
        assert job.state == S.succeeded

        with pytest.raises(InvalidTransitionError):
            await orchestrator.cancel(job.id)
        assert orchestrator.get(job.id).result_url == DEFAULT_ARTIFACT_URL

    @pytest.mark.asyncio
    async def test_cancel_submitting_job_stops_dispatched_build(
        self, registry: JobRegistry, payloads: PayloadSource, chaptered_book_id: UUID
    ):
        builder = ScriptedBuilder(submit_hangs=True, derives_handles=True)
        orchestrator = make_orchestrator(registry, payloads, builder, submit_timeout_s=5.0)
        job = await orchestrator.submit(chaptered_book_id, "pdf")
        await wait_for_submit_call(builder)

        canceled = await orchestrator.cancel(job.id)

        assert canceled.state == S.canceled
        assert canceled.external_handle is None
        assert len(builder.submitted) == 1
        assert builder.canceled == [f"job-{job.id}"]
        assert not orchestrator.is_polling(job.id)

    @pytest.mark.asyncio
    async def test_cancel_submitting_job_without_known_handle(
        self, registry: JobRegistry, payloads: PayloadSource, chaptered_book_id: UUID
    ):
        builder = ScriptedBuilder(submit_hangs=True)
        orchestrator = make_orchestrator(registry, payloads, builder, submit_timeout_s=5.0)
        job = await orchestrator.submit(chaptered_book_id, "pdf")
        await wait_for_submit_call(builder)

        canceled = await orchestrator.cancel(job.id)

        assert canceled.state == S.canceled
        assert builder.canceled == []
        assert registry.get(job.id).state == S.canceled


class TestTaskControl:
    @pytest.mark.asyncio
    async def test_stop_polling_keeps_state(
        self, registry: JobRegistry, payloads: PayloadSource, chaptered_book_id: UUID
    ):
        builder = ScriptedBuilder([BuildStatus.running()])
        orchestrator = make_orchestrator(registry, payloads, builder)
        job = await orchestrator.submit(chaptered_book_id, "pdf")
        await wait_for_state(registry, job.id, S.running)

        stopped = await orchestrator.stop_polling_for_book(chaptered_book_id)

        assert stopped == 1
        assert not orchestrator.is_polling(job.id)
        assert registry.get(job.id).state == S.running

    @pytest.mark.asyncio
    async def test_resume_picks_up_active_jobs(
        self,
        registry: JobRegistry,
        payloads: PayloadSource,
        builder: ScriptedBuilder,
        chaptered_book_id: UUID,
    ):
        queued, _ = registry.submit(chaptered_book_id, "pdf")
        interrupted, _ = registry.submit(chaptered_book_id, "epub")
        registry.transition(interrupted.id, S.submitting, count_attempt=True)
        running, _ = registry.submit(chaptered_book_id, "mobi")
        registry.transition(running.id, S.submitting, count_attempt=True)
        registry.transition(running.id, S.running, external_handle="build-earlier")

        orchestrator = make_orchestrator(registry, payloads, builder)
        resumed = await orchestrator.resume()
        await orchestrator.join(queued.id)
        await orchestrator.join(running.id)

        assert resumed == 2
        assert registry.get(queued.id).state == S.succeeded
        assert registry.get(running.id).state == S.succeeded
        assert "build-earlier" in builder.status_calls
        failed = registry.get(interrupted.id)
        assert failed.state == S.failed
        assert failed.error_code == ApiErrorCode.E_BUILDER_UNAVAILABLE.value


class TestOverdueSweep:
    @staticmethod
    def _age_running_job(db: Session, job_id: UUID, seconds: float) -> None:
        db.execute(
            update(PublishJob)
            .where(PublishJob.id == job_id)
            .values(running_since=utcnow() - timedelta(seconds=seconds))
        )
        db.commit()

    def _running_job(self, registry: JobRegistry, book_id: UUID, format: str) -> UUID:
        job, _ = registry.submit(book_id, format)
        registry.transition(job.id, S.submitting)
        registry.transition(job.id, S.running, external_handle="h")
        return job.id

    def test_fails_only_overdue_jobs(
        self, registry: JobRegistry, chaptered_book_id: UUID, db_session: Session
    ):
        overdue = self._running_job(registry, chaptered_book_id, "pdf")
        fresh = self._running_job(registry, chaptered_book_id, "epub")
        self._age_running_job(db_session, overdue, 60)

        assert fail_overdue_jobs(registry, FAST_PUBLISH_CONFIG) == 1

        assert registry.get(overdue).error_code == ApiErrorCode.E_PUBLISH_TIMEOUT.value
        assert registry.get(fresh).state == S.running

    def test_sweep_task_uses_configured_budget(
        self, registry: JobRegistry, chaptered_book_id: UUID, db_session: Session
    ):
        job_id = self._running_job(registry, chaptered_book_id, "pdf")
        self._age_running_job(db_session, job_id, 2 * 3600)

        assert sweep_overdue_jobs(registry) == 1
        assert sweep_overdue_jobs(registry) == 0
        assert registry.get(job_id).state == S.failed
