"""Publish job registry.

Owns every read and write of publish_jobs. The state machine:

    queued -> submitting -> running -> succeeded | failed
    queued | submitting | running -> canceled
    submitting -> failed            (submit failure, no retry)

Terminal states (succeeded, failed, canceled) accept no transition. An
illegal transition raises InvalidTransitionError and leaves the row untouched.

result_url is written only together with succeeded, so it is set if and only
if the job succeeded.

At most one non-terminal job exists per (book, format). submit() deduplicates
under a process-local lock; the partial unique index catches writers in other
processes, and the loser of that race returns the winner's job.
"""

import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from quire.db.models import (
    ACTIVE_JOB_STATES,
    Book,
    PublishFormat,
    PublishJob,
    PublishJobState,
    utcnow,
)
from quire.db.session import session_scope
from quire.errors import ApiErrorCode, InvalidRequestError, InvalidTransitionError, NotFoundError
from quire.logging import get_logger

logger = get_logger(__name__)

ALLOWED_TRANSITIONS: dict[PublishJobState, frozenset[PublishJobState]] = {
    PublishJobState.queued: frozenset({PublishJobState.submitting, PublishJobState.canceled}),
    PublishJobState.submitting: frozenset(
        {PublishJobState.running, PublishJobState.failed, PublishJobState.canceled}
    ),
    PublishJobState.running: frozenset(
        {PublishJobState.succeeded, PublishJobState.failed, PublishJobState.canceled}
    ),
    PublishJobState.succeeded: frozenset(),
    PublishJobState.failed: frozenset(),
    PublishJobState.canceled: frozenset(),
}


@dataclass(frozen=True)
class PublishJobRecord:
    """Detached, immutable view of one publish job."""

    id: UUID
    book_id: UUID
    format: PublishFormat
    state: PublishJobState
    external_handle: str | None
    result_url: str | None
    error_code: str | None
    error: str | None
    attempt_count: int
    poll_failures: int
    created_at: datetime
    updated_at: datetime
    submitted_at: datetime | None
    running_since: datetime | None
    finished_at: datetime | None

    @classmethod
    def from_row(cls, row: PublishJob) -> "PublishJobRecord":
        return cls(
            id=row.id,
            book_id=row.book_id,
            format=PublishFormat(row.format),
            state=PublishJobState(row.state),
            external_handle=row.external_handle,
            result_url=row.result_url,
            error_code=row.error_code,
            error=row.error,
            attempt_count=row.attempt_count,
            poll_failures=row.poll_failures,
            created_at=row.created_at,
            updated_at=row.updated_at,
            submitted_at=row.submitted_at,
            running_since=row.running_since,
            finished_at=row.finished_at,
        )

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal


def parse_format(value: PublishFormat | str) -> PublishFormat:
    """Coerce a format name, raising E_INVALID_FORMAT for unknown ones."""
    try:
        return PublishFormat(value)
    except ValueError as exc:
        allowed = ", ".join(f.value for f in PublishFormat)
        raise InvalidRequestError(
            ApiErrorCode.E_INVALID_FORMAT, f"Unknown publish format: {value} (expected {allowed})"
        ) from exc


class JobRegistry:
    """Durable publish job records with an enforced state machine."""

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory
        self._guard = threading.Lock()
        self._job_locks: dict[UUID, threading.Lock] = {}
        self._submit_locks: dict[tuple[UUID, PublishFormat], threading.Lock] = {}

    # -------------------------------------------------------------------------
    # Submit
    # -------------------------------------------------------------------------

    def submit(
        self, book_id: UUID, format: PublishFormat | str
    ) -> tuple[PublishJobRecord, bool]:
        """Return the active job for (book, format), creating a queued one if none exists.

        Returns:
            (job, created) where created is False when an active job was reused.

        Raises:
            NotFoundError: Book does not exist.
            InvalidRequestError: Unknown format.
        """
        format = parse_format(format)
        key = (book_id, format)
        with self._guard:
            lock = self._submit_locks.setdefault(key, threading.Lock())

        with lock:
            try:
                with session_scope(self._session_factory) as db:
                    if db.get(Book, book_id) is None:
                        raise NotFoundError(ApiErrorCode.E_BOOK_NOT_FOUND, "Book not found")

                    existing = self._active_row(db, book_id, format)
                    if existing is not None:
                        logger.info(
                            "publish_job_deduplicated",
                            job_id=str(existing.id),
                            book_id=str(book_id),
                            format=format.value,
                            state=existing.state.value,
                        )
                        return PublishJobRecord.from_row(existing), False

                    now = utcnow()
                    row = PublishJob(
                        book_id=book_id,
                        format=format,
                        state=PublishJobState.queued,
                        attempt_count=0,
                        poll_failures=0,
                        created_at=now,
                        updated_at=now,
                    )
                    db.add(row)
                    db.flush()
                    record = PublishJobRecord.from_row(row)
            except IntegrityError:
                # Lost race against another process: its job is the active one.
                winner = self.get_active(book_id, format)
                if winner is None:
                    raise
                logger.info(
                    "publish_job_deduplicated_after_race",
                    job_id=str(winner.id),
                    book_id=str(book_id),
                    format=format.value,
                )
                return winner, False

        logger.info(
            "publish_job_created", job_id=str(record.id), book_id=str(book_id), format=format.value
        )
        return record, True

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get(self, job_id: UUID) -> PublishJobRecord:
        with session_scope(self._session_factory) as db:
            return PublishJobRecord.from_row(self._get_row(db, job_id))

    def get_active(self, book_id: UUID, format: PublishFormat | str) -> PublishJobRecord | None:
        format = parse_format(format)
        with session_scope(self._session_factory) as db:
            row = self._active_row(db, book_id, format)
            return PublishJobRecord.from_row(row) if row is not None else None

    def list_for_book(self, book_id: UUID) -> list[PublishJobRecord]:
        """All jobs for a book, newest first."""
        with session_scope(self._session_factory) as db:
            if db.get(Book, book_id) is None:
                raise NotFoundError(ApiErrorCode.E_BOOK_NOT_FOUND, "Book not found")
            rows = db.execute(
                select(PublishJob)
                .where(PublishJob.book_id == book_id)
                .order_by(PublishJob.created_at.desc(), PublishJob.id)
            ).scalars()
            return [PublishJobRecord.from_row(r) for r in rows]

    def list_in_states(self, states: Iterable[PublishJobState]) -> list[PublishJobRecord]:
        with session_scope(self._session_factory) as db:
            rows = db.execute(
                select(PublishJob)
                .where(PublishJob.state.in_(list(states)))
                .order_by(PublishJob.created_at)
            ).scalars()
            return [PublishJobRecord.from_row(r) for r in rows]

    def list_running_since_before(self, cutoff: datetime) -> list[PublishJobRecord]:
        """Running jobs whose running_since is older than cutoff."""
        with session_scope(self._session_factory) as db:
            rows = db.execute(
                select(PublishJob).where(
                    PublishJob.state == PublishJobState.running,
                    PublishJob.running_since < cutoff,
                )
            ).scalars()
            return [PublishJobRecord.from_row(r) for r in rows]

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def transition(
        self,
        job_id: UUID,
        target: PublishJobState,
        *,
        external_handle: str | None = None,
        result_url: str | None = None,
        error_code: ApiErrorCode | str | None = None,
        error: str | None = None,
        count_attempt: bool = False,
    ) -> PublishJobRecord:
        """Move a job to target, writing the fields that belong to that state.

        Raises:
            NotFoundError: Job does not exist.
            InvalidTransitionError: target is not reachable from the current state.
            ValueError: succeeded without result_url.
        """
        target = PublishJobState(target)
        if isinstance(error_code, ApiErrorCode):
            error_code = error_code.value
        if target == PublishJobState.succeeded and not result_url:
            raise ValueError("succeeded requires a result_url")

        with self._hold(job_id), session_scope(self._session_factory) as db:
            row = self._get_row(db, job_id, for_update=True)
            current = PublishJobState(row.state)
            if target not in ALLOWED_TRANSITIONS[current]:
                raise InvalidTransitionError(current.value, target.value)

            now = utcnow()
            row.state = target
            row.updated_at = now
            if count_attempt:
                row.attempt_count += 1
            if external_handle is not None:
                row.external_handle = external_handle

            if target == PublishJobState.submitting:
                row.submitted_at = now
            elif target == PublishJobState.running:
                row.running_since = now
                row.poll_failures = 0
            elif target.is_terminal:
                row.finished_at = now

            if target == PublishJobState.succeeded:
                row.result_url = result_url
                row.error_code = None
                row.error = None
            elif target == PublishJobState.failed:
                row.error_code = error_code
                row.error = error

            db.flush()
            record = PublishJobRecord.from_row(row)

        logger.info(
            "publish_job_transitioned",
            job_id=str(job_id),
            book_id=str(record.book_id),
            from_state=current.value,
            to_state=target.value,
            error_code=record.error_code,
        )
        return record

    def record_poll_failures(self, job_id: UUID, failures: int) -> None:
        """Persist the consecutive transient poll failure count of a running job.

        Not a state change; a job that already left running is left alone.
        """
        with self._hold(job_id), session_scope(self._session_factory) as db:
            db.execute(
                update(PublishJob)
                .where(PublishJob.id == job_id, PublishJob.state == PublishJobState.running)
                .values(poll_failures=failures, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )

    def forget(self, job_id: UUID) -> None:
        """Drop the in-process lock of a job nobody will write again."""
        with self._guard:
            self._job_locks.pop(job_id, None)

    def forget_book(self, book_id: UUID) -> None:
        """Drop the submit locks of a deleted book."""
        with self._guard:
            for key in [key for key in self._submit_locks if key[0] == book_id]:
                del self._submit_locks[key]

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    @contextmanager
    def _hold(self, job_id: UUID) -> Iterator[None]:
        with self._guard:
            lock = self._job_locks.setdefault(job_id, threading.Lock())
        with lock:
            yield

    @staticmethod
    def _get_row(db: Session, job_id: UUID, for_update: bool = False) -> PublishJob:
        stmt = select(PublishJob).where(PublishJob.id == job_id)
        if for_update:
            stmt = stmt.with_for_update()
        row = db.execute(stmt).scalar()
        if row is None:
            raise NotFoundError(ApiErrorCode.E_JOB_NOT_FOUND, "Publish job not found")
        return row

    @staticmethod
    def _active_row(db: Session, book_id: UUID, format: PublishFormat) -> PublishJob | None:
        return db.execute(
            select(PublishJob).where(
                PublishJob.book_id == book_id,
                PublishJob.format == format,
                PublishJob.state.in_(list(ACTIVE_JOB_STATES)),
            )
        ).scalar()
