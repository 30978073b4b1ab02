"""Job queue engine.

Keeps the ordered collection of generation jobs and runs them one at a
time against the session borrowed from the connection manager. All
mutations happen on the event loop; observers get copies.

Processing loop: while the queue is not paused, nothing is processing, a
pending job exists and the connection manager has a live session, the
first pending job is marked processing and streamed through
``Session.generate``. Progress overwrites the job's progress; the terminal
outcome is persisted and the loop moves on to the next pending job. With
no session the loop records ``last_error`` and goes idle until the
connection manager reports a new connection.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Iterable, Optional

from .errors import GenerationError, ServerConnectionError
from .jobs import GenerationJob, JobProgress, JobRequest, JobStatus, assign_random_seed
from .session import GenerationResult, PreviewUpdate, ProgressUpdate, PromptRequest, Session
from .state import ConnectionState
from .storage import RecordStore, StoreWriter

DEFAULT_CANCEL_TIMEOUT = 5.0
DEFAULT_PROGRESS_PERSIST_INTERVAL = 2.0

NOT_CONNECTED = "Not connected to server"
NO_IMAGES = "No images returned from generation"


class QueueEventKind(str, Enum):
    added = "added"
    started = "started"
    progress = "progress"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"
    removed = "removed"
    retried = "retried"
    reset = "reset"
    reordered = "reordered"
    cleared = "cleared"
    paused = "paused"
    resumed = "resumed"
    stalled = "stalled"


@dataclass(frozen=True)
class QueueEvent:
    kind: QueueEventKind
    job: Optional[GenerationJob] = None
    job_id: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class QueueSnapshot:
    jobs: tuple[GenerationJob, ...]
    current_job_id: Optional[str]
    is_paused: bool
    last_error: Optional[str]

    @property
    def is_processing(self) -> bool:
        return self.current_job_id is not None

    @property
    def pending_count(self) -> int:
        return sum(1 for job in self.jobs if job.is_pending)

    def count(self, status: JobStatus) -> int:
        return sum(1 for job in self.jobs if job.status is status)


QueueListener = Callable[[QueueEvent], None]


class JobQueue:
    """Ordered generation jobs with single-slot processing."""

    def __init__(
        self,
        store: RecordStore,
        connection=None,
        *,
        cancel_timeout: float = DEFAULT_CANCEL_TIMEOUT,
        progress_persist_interval: float = DEFAULT_PROGRESS_PERSIST_INTERVAL,
        start_paused: bool = False,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Args:
            store: Where job records are persisted.
            connection: Source of the live session. Needs an ``active_session``
                property and ``subscribe(listener)``; usually a ConnectionManager.
            cancel_timeout: Seconds to wait for the server to acknowledge a cancel.
            progress_persist_interval: Minimum seconds between progress saves.
        """
        self.logger = logger or logging.getLogger(__name__)
        self.cancel_timeout = cancel_timeout
        self.progress_persist_interval = progress_persist_interval
        self._writer = StoreWriter(store, self.logger)
        self._connection = connection
        self._jobs: list[GenerationJob] = []
        self._paused = start_paused
        self._last_error: Optional[str] = None
        self._listeners: list[QueueListener] = []

        # Processing slot
        self._current: Optional[GenerationJob] = None
        self._session: Optional[Session] = None
        self._job_task: Optional[asyncio.Task] = None
        self._runner: Optional[asyncio.Task] = None
        self._cancelling: Optional[str] = None
        self._awaiting_connection = False
        self._stopped = False
        self._last_progress_save = 0.0

        self._load_jobs(store)
        if connection is not None:
            self._unsubscribe = connection.subscribe(self._on_connection_state)
        else:
            self._unsubscribe = None

    # Views

    @property
    def jobs(self) -> tuple[GenerationJob, ...]:
        return tuple(job.snapshot() for job in self._jobs)

    def get(self, job_id: str) -> Optional[GenerationJob]:
        job = self._find(job_id)
        return job.snapshot() if job else None

    def index_of(self, job_id: str) -> Optional[int]:
        return next((i for i, job in enumerate(self._jobs) if job.id == job_id), None)

    @property
    def current_job(self) -> Optional[GenerationJob]:
        return self._current.snapshot() if self._current else None

    @property
    def current_progress(self) -> Optional[JobProgress]:
        if self._current is None or self._current.progress is None:
            return None
        return JobProgress(**vars(self._current.progress))

    @property
    def current_preview(self) -> Optional[bytes]:
        progress = self.current_progress
        return progress.preview_image if progress else None

    @property
    def pending_jobs(self) -> list[GenerationJob]:
        return self._filter(JobStatus.pending)

    @property
    def completed_jobs(self) -> list[GenerationJob]:
        return self._filter(JobStatus.completed)

    @property
    def failed_jobs(self) -> list[GenerationJob]:
        return self._filter(JobStatus.failed)

    @property
    def pending_count(self) -> int:
        return sum(1 for job in self._jobs if job.is_pending)

    @property
    def processing_count(self) -> int:
        return sum(1 for job in self._jobs if job.is_processing)

    @property
    def active_count(self) -> int:
        """Pending plus processing; what a badge would show."""
        return self.pending_count + self.processing_count

    @property
    def has_pending_jobs(self) -> bool:
        return self.pending_count > 0

    @property
    def is_processing(self) -> bool:
        return self._current is not None

    @property
    def is_paused(self) -> bool:
        return self._paused

    @property
    def is_empty(self) -> bool:
        return not self._jobs

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    def snapshot(self) -> QueueSnapshot:
        return QueueSnapshot(
            jobs=self.jobs,
            current_job_id=self._current.id if self._current else None,
            is_paused=self._paused,
            last_error=self._last_error,
        )

    def subscribe(self, listener: QueueListener) -> Callable[[], None]:
        """Register a listener for queue events; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # Queue operations

    def submit(self, request: JobRequest) -> str:
        """Validate and enqueue a request. Returns the new job id.

        Raises:
            ValidationError: the request is missing its prompt or configuration.
        """
        job = self._prepare(request)
        self._jobs.append(job)
        self._save()
        self.logger.info(f"Job {job.id} queued: {job.name}")
        self._emit(QueueEventKind.added, job)
        self._kick()
        return job.id

    def submit_many(self, requests: Iterable[JobRequest]) -> list[str]:
        """Enqueue several requests, all or nothing, with a single save."""
        jobs = [self._prepare(request) for request in requests]
        if not jobs:
            return []
        self._jobs.extend(jobs)
        self._save()
        for job in jobs:
            self._emit(QueueEventKind.added, job)
        self.logger.info(f"{len(jobs)} jobs queued")
        self._kick()
        return [job.id for job in jobs]

    async def cancel(self, job_id: str) -> bool:
        """Cancel a pending or processing job. Returns False if nothing changed."""
        job = self._find(job_id)
        if job is None or job.is_finished:
            return False

        if job.is_pending:
            self._mark_cancelled(job)
            self._save()
            self._emit(QueueEventKind.cancelled, job)
            return True

        if self._cancelling == job.id:
            return False
        # From here on any event still arriving for this job is dropped.
        self._cancelling = job.id
        session = self._session
        if session is not None:
            try:
                await asyncio.wait_for(session.cancel_current(), timeout=self.cancel_timeout)
            except asyncio.TimeoutError:
                self.logger.warning(
                    f"Server did not acknowledge cancel of job {job_id} within {self.cancel_timeout}s"
                )
            except Exception as e:
                self.logger.warning(f"Failed to cancel job {job_id} on server: {e}")

        if self._current is not job:
            # Connection loss put it back to pending while we waited.
            if self._cancelling == job.id:
                self._cancelling = None
            if not job.is_pending:
                return False
            self._mark_cancelled(job)
            self._save()
            self._emit(QueueEventKind.cancelled, job)
            return True

        task = self._job_task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait({task})
        self._mark_cancelled(job)
        self._release_slot()
        self._save()
        self.logger.info(f"Job {job_id} cancelled")
        self._emit(QueueEventKind.cancelled, job)
        self._kick()
        return True

    def retry(self, job_id: str) -> bool:
        """Resubmit a failed job at the tail of the pending order."""
        job = self._find(job_id)
        if job is None or not job.can_retry:
            self.logger.warning(f"Job {job_id} cannot be retried")
            return False
        job.status = JobStatus.pending
        job.error_message = None
        job.progress = None
        job.started_at = None
        job.completed_at = None
        job.retry_count += 1
        self._jobs.remove(job)
        self._jobs.append(job)
        self._save()
        self.logger.info(f"Job {job_id} retried (attempt {job.retry_count})")
        self._emit(QueueEventKind.retried, job)
        self._kick()
        return True

    def remove(self, job_id: str) -> bool:
        """Delete a job. A processing job has to be cancelled first."""
        job = self._find(job_id)
        if job is None or job.is_processing:
            return False
        self._jobs.remove(job)
        self._save()
        self._emit(QueueEventKind.removed, job_id=job_id)
        return True

    def move_jobs(self, from_indices: Iterable[int], to_index: int) -> bool:
        """Reorder pending jobs.

        Indices address the whole collection. Sources that are not pending
        are ignored. The moved jobs keep their relative order and land before
        the first remaining pending job at or after ``to_index``, or at the
        tail of the pending order if there is none. Non-pending jobs keep
        their positions.
        """
        sources = sorted({i for i in from_indices if 0 <= i < len(self._jobs) and self._jobs[i].is_pending})
        if not sources:
            return False
        moving = [self._jobs[i] for i in sources]
        slots = [i for i, job in enumerate(self._jobs) if job.is_pending]
        remaining = [i for i in slots if i not in sources]
        insert_at = next((k for k, i in enumerate(remaining) if i >= to_index), len(remaining))
        ordered = [self._jobs[i] for i in remaining]
        ordered[insert_at:insert_at] = moving
        for slot, job in zip(slots, ordered):
            self._jobs[slot] = job
        self._save()
        self._emit(QueueEventKind.reordered)
        return True

    def clear_completed(self) -> int:
        return self._clear(lambda job: job.status is JobStatus.completed)

    def clear_failed(self) -> int:
        """Remove failed and cancelled jobs."""
        return self._clear(lambda job: job.status in (JobStatus.failed, JobStatus.cancelled))

    def clear_finished(self) -> int:
        return self._clear(lambda job: job.is_finished)

    async def clear_all(self) -> int:
        """Cancel the current job, then remove everything."""
        if self._current is not None:
            await self.cancel(self._current.id)
        return self._clear(lambda job: not job.is_processing)

    # Queue control

    def pause(self) -> None:
        if self._paused:
            return
        self._paused = True
        self.logger.info("Queue paused")
        self._emit(QueueEventKind.paused)

    def resume(self) -> None:
        """Unpause, forget the last error and start the next job if possible."""
        self._paused = False
        self._last_error = None
        self._awaiting_connection = False
        self.logger.info("Queue resumed")
        self._emit(QueueEventKind.resumed)
        self._kick()

    def start(self) -> None:
        """Evaluate the processing loop, e.g. after loading a non-empty queue."""
        self._kick()

    async def flush(self) -> None:
        await self._writer.flush()

    async def shutdown(self) -> None:
        """Stop processing; an interrupted job goes back to pending."""
        self._stopped = True
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        # The runner goes first so it cannot pick the requeued job again.
        runner, self._runner = self._runner, None
        if runner is not None and not runner.done():
            runner.cancel()
            await asyncio.wait({runner})
        job, task = self._current, self._job_task
        self._job_task = None
        if job is not None:
            self._reset_to_pending(job)
            self._release_slot()
            self._save()
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait({task})
        await self._writer.flush()

    # Processing loop

    def _kick(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        if self._stopped:
            return
        if self._runner is None or self._runner.done():
            self._runner = loop.create_task(self._run())

    async def _run(self) -> None:
        while True:
            picked = self._pick_next()
            if picked is None:
                return
            job, session = picked
            self._mark_started(job, session)
            self._job_task = asyncio.create_task(self._generate(job, session))
            task = self._job_task
            await asyncio.wait({task})
            if self._job_task is task:
                self._job_task = None
            if not task.cancelled() and task.exception() is not None:
                error = task.exception()
                self.logger.error(f"Job task for {job.id} crashed: {error}")
                if self._current is job:
                    self._finish_failed(job, str(error) or type(error).__name__)

    def _pick_next(self) -> Optional[tuple[GenerationJob, Session]]:
        if self._stopped or self._paused or self._current is not None or self._awaiting_connection:
            return None
        job = next((job for job in self._jobs if job.is_pending), None)
        if job is None:
            return None
        session = self._connection.active_session if self._connection is not None else None
        if session is None:
            if self._last_error != NOT_CONNECTED:
                self._last_error = NOT_CONNECTED
                self.logger.warning(f"{self.pending_count} jobs waiting: {NOT_CONNECTED}")
                self._emit(QueueEventKind.stalled, error=NOT_CONNECTED)
            return None
        return job, session

    async def _generate(self, job: GenerationJob, session: Session) -> None:
        try:
            request = PromptRequest.from_job(job)
        except (TypeError, ValueError) as e:
            self._finish_failed(job, f"Invalid configuration: {e}")
            return

        images: Optional[tuple[bytes, ...]] = None
        stream = session.generate(request)
        try:
            async for update in stream:
                if not self._owns(job):
                    return
                if isinstance(update, GenerationResult):
                    images = update.images
                    break
                if isinstance(update, ProgressUpdate):
                    self._apply_progress(job, update)
                elif isinstance(update, PreviewUpdate):
                    self._apply_preview(job, update.image)
        except ServerConnectionError as e:
            if self._owns(job):
                self.logger.error(f"Connection lost while running job {job.id}: {e}")
                self._requeue(job, f"Connection lost: {e}")
            return
        except GenerationError as e:
            if self._owns(job):
                self._finish_failed(job, str(e))
            return
        except Exception as e:
            self.logger.exception(f"Unexpected error while running job {job.id}")
            if self._owns(job):
                self._finish_failed(job, str(e) or type(e).__name__)
            return
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        if not self._owns(job):
            return
        if not images:
            self._finish_failed(job, NO_IMAGES)
        else:
            self._finish_completed(job, list(images))

    def _owns(self, job: GenerationJob) -> bool:
        return self._current is job and self._cancelling != job.id

    def _on_connection_state(self, state: ConnectionState) -> None:
        if state.is_connected:
            self._awaiting_connection = False
            if self._last_error == NOT_CONNECTED:
                self._last_error = None
            self._kick()
            return
        job = self._current
        if job is None:
            return
        task = self._job_task
        reason = state.error_message or "disconnected from server"
        self._requeue(job, f"Connection lost: {reason}")
        if task is not None and not task.done():
            task.cancel()

    # State transitions

    def _prepare(self, request: JobRequest) -> GenerationJob:
        job = GenerationJob.from_request(request)
        seed = assign_random_seed(job)
        if seed is not None:
            self.logger.debug(f"Assigned random seed {seed} to job {job.id}")
        return job

    def _mark_started(self, job: GenerationJob, session: Session) -> None:
        job.status = JobStatus.processing
        job.started_at = _now()
        job.completed_at = None
        job.error_message = None
        job.progress = JobProgress()
        self._current = job
        self._session = session
        self._cancelling = None
        self._last_error = None
        self._last_progress_save = time.monotonic()
        self._save()
        self.logger.info(f"Job {job.id} started: {job.name}")
        self._emit(QueueEventKind.started, job)

    def _apply_progress(self, job: GenerationJob, update: ProgressUpdate) -> None:
        preview = job.progress.preview_image if job.progress else None
        job.progress = JobProgress(
            current_step=update.current_step,
            total_steps=update.total_steps,
            stage=update.stage,
            preview_image=preview,
        )
        self.logger.debug(f"Job {job.id}: step {update.current_step}/{update.total_steps} {update.stage or ''}")
        self._progress_changed(job)

    def _apply_preview(self, job: GenerationJob, image: bytes) -> None:
        progress = job.progress or JobProgress()
        progress.preview_image = image
        job.progress = progress
        self._progress_changed(job)

    def _progress_changed(self, job: GenerationJob) -> None:
        now = time.monotonic()
        if now - self._last_progress_save >= self.progress_persist_interval:
            self._last_progress_save = now
            self._save()
        self._emit(QueueEventKind.progress, job)

    def _finish_completed(self, job: GenerationJob, images: list[bytes]) -> None:
        job.status = JobStatus.completed
        job.result_images = images
        job.completed_at = _now()
        job.error_message = None
        job.progress = None
        self._release_slot()
        self._save()
        self.logger.info(f"Job {job.id} completed with {len(images)} images ({job.duration_string})")
        self._emit(QueueEventKind.completed, job)

    def _finish_failed(self, job: GenerationJob, message: str) -> None:
        job.status = JobStatus.failed
        job.error_message = message
        job.completed_at = _now()
        job.progress = None
        self._release_slot()
        self._save()
        self.logger.error(f"Job {job.id} failed: {message}")
        self._emit(QueueEventKind.failed, job, error=message)

    def _requeue(self, job: GenerationJob, message: str) -> None:
        """Put an interrupted job back to pending and wait for a new connection."""
        self._reset_to_pending(job)
        self._release_slot()
        self._awaiting_connection = True
        self._last_error = message
        self._save()
        self._emit(QueueEventKind.reset, job, error=message)

    def _mark_cancelled(self, job: GenerationJob) -> None:
        job.status = JobStatus.cancelled
        job.completed_at = _now()
        job.progress = None

    @staticmethod
    def _reset_to_pending(job: GenerationJob) -> None:
        job.status = JobStatus.pending
        job.started_at = None
        job.progress = None

    def _release_slot(self) -> None:
        self._current = None
        self._session = None
        self._cancelling = None

    def _clear(self, predicate: Callable[[GenerationJob], bool]) -> int:
        before = len(self._jobs)
        self._jobs = [job for job in self._jobs if not predicate(job)]
        removed = before - len(self._jobs)
        if removed:
            self._save()
            self._emit(QueueEventKind.cleared)
        return removed

    # Persistence and observation

    def _load_jobs(self, store: RecordStore) -> None:
        recovered = False
        for record in store.load():
            try:
                job = GenerationJob.from_dict(record)
            except (KeyError, TypeError, ValueError) as e:
                self.logger.warning(f"Skipping malformed job record: {e}")
                continue
            if job.is_processing:
                # The process quit mid-job.
                self._reset_to_pending(job)
                recovered = True
            self._jobs.append(job)
        if recovered:
            self._save()
        self.logger.info(f"Loaded {len(self._jobs)} jobs ({self.pending_count} pending)")

    def _save(self) -> None:
        self._writer.schedule([job.to_dict() for job in self._jobs])

    def _emit(
        self,
        kind: QueueEventKind,
        job: Optional[GenerationJob] = None,
        job_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        if not self._listeners:
            return
        event = QueueEvent(
            kind=kind,
            job=job.snapshot() if job else None,
            job_id=job.id if job else job_id,
            error=error,
        )
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                self.logger.exception(f"Queue listener failed on {kind.value} event")

    def _find(self, job_id: str) -> Optional[GenerationJob]:
        return next((job for job in self._jobs if job.id == job_id), None)

    def _filter(self, status: JobStatus) -> list[GenerationJob]:
        return [job.snapshot() for job in self._jobs if job.status is status]


def _now() -> datetime:
    return datetime.now(timezone.utc)
