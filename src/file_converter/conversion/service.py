import asyncio
import dataclasses
import threading
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Mapping

from ..config import Settings
from ..errors import (
    CancellationNotSupported,
    ConversionCancelled,
    ConversionFailed,
    ConversionTimeout,
    ConverterError,
    NotFound,
    QueueFull,
    UnsupportedType,
)
from ..logging import get_logger
from .backends import BackendTable, select_backend
from .clock import Clock, isoformat_z, utcnow
from .formats import Format, FormatRegistry
from .intake import UploadedFile, UploadIntake
from .interfaces import SecurityGateway
from .options import ImageOptions, parse_options
from .results import ConversionResult, ResultStore

logger = get_logger(__name__)


class JobStatus:
    QUEUED = "Queued"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    CANCELLED = "Cancelled"

    TERMINAL = frozenset({SUCCEEDED, FAILED, CANCELLED})


@dataclass
class ConversionJob:
    id: str
    upload_id: str
    input_path: Path
    filename: str
    source_type: str
    target: Format
    options: ImageOptions | None
    client_id: str
    tier: str
    created_at: datetime
    access_token_hash: str = ""
    status: str = JobStatus.QUEUED
    started_at: datetime | None = None
    finished_at: datetime | None = None
    expires_at: datetime | None = None
    attempts: int = 0
    error: dict[str, str] | None = None
    result: ConversionResult | None = None
    cancel_requested: bool = False
    stop_event: threading.Event = field(default_factory=threading.Event, repr=False, compare=False)

    @property
    def terminal(self) -> bool:
        return self.status in JobStatus.TERMINAL

    @property
    def download_name(self) -> str:
        return f"{Path(self.filename).stem or 'converted'}.{self.target.extension}"

    def to_dict(self, now: datetime | None = None) -> dict[str, Any]:
        body: dict[str, Any] = {
            "jobId": self.id,
            "status": self.status,
            "uploadedFileId": self.upload_id,
            "filename": self.filename,
            "sourceType": self.source_type,
            "targetFormat": self.target.code,
            "settings": self.options.model_dump(by_alias=True) if self.options is not None else None,
            "createdAt": isoformat_z(self.created_at),
            "startedAt": isoformat_z(self.started_at),
            "finishedAt": isoformat_z(self.finished_at),
            "attempts": self.attempts,
            "error": self.error,
        }
        if self.result is not None:
            body["result"] = self.result.to_dict()
            body["result"]["expired"] = now is not None and now >= self.result.expires_at
        return body


class ConversionService:
    """Core domain service orchestrating conversion jobs.

    Queues, per-tier running counters and job state transitions are only
    mutated while holding ``self._cond``. Backend calls, upload cleanup and
    result writes happen outside the lock on worker threads.
    """

    def __init__(
        self,
        *,
        intake: UploadIntake,
        results: ResultStore,
        registry: FormatRegistry,
        backends: BackendTable,
        security: SecurityGateway,
        settings: Settings,
        clock: Clock = utcnow,
    ) -> None:
        self._intake = intake
        self._results = results
        self._registry = registry
        self._backends = backends
        self._security = security
        self._settings = settings
        self._clock = clock
        self._jobs: dict[str, ConversionJob] = {}
        self._queues: dict[str, deque[str]] = {tier: deque() for tier in settings.TIERS}
        self._running: dict[str, int] = {tier: 0 for tier in settings.TIERS}
        self._tier_order = settings.tiers_by_priority()
        self._cond = asyncio.Condition()
        self._tasks: list[asyncio.Task] = []

    async def start(self) -> None:
        for i in range(self._settings.WORKERS):
            task = asyncio.create_task(self._worker_loop(f"worker-{i+1}"))
            self._tasks.append(task)
        self._tasks.append(asyncio.create_task(self._sweep_loop()))
        logger.info("service_started", workers=self._settings.WORKERS)

    async def stop(self) -> None:
        for t in self._tasks:
            t.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    async def submit(
        self,
        upload: UploadedFile,
        target_format: str,
        settings: Mapping[str, Any] | None = None,
    ) -> tuple[ConversionJob, str]:
        """Validate and enqueue a job for a staged upload; returns the job and its one-time access token."""
        target = self._registry.get(target_format)
        if not self._registry.is_compatible(upload.content_type, target):
            raise UnsupportedType(f"{upload.content_type} cannot be converted to {target.code}")
        options = parse_options(target.category, settings)
        token = self._security.new_token()
        token_hash = await asyncio.to_thread(self._security.hash_token, token)

        job_id = str(uuid.uuid4())
        async with self._cond:
            limits = self._settings.tier(upload.tier)
            pending = len(self._queues[upload.tier]) + self._running[upload.tier]
            if pending >= limits.max_pending:
                logger.warning("job_rejected", kind="QueueFull", tier=upload.tier, pending=pending)
                raise QueueFull()
            self._intake.claim(upload.id, job_id)
            job = ConversionJob(
                id=job_id,
                upload_id=upload.id,
                input_path=upload.path,
                filename=upload.filename,
                source_type=upload.content_type,
                target=target,
                options=options,
                client_id=upload.client_id,
                tier=upload.tier,
                created_at=self._clock(),
                access_token_hash=token_hash,
            )
            self._jobs[job_id] = job
            self._queues[upload.tier].append(job_id)
            self._cond.notify_all()
            snapshot = dataclasses.replace(job)

        logger.info("job_queued", job_id=job_id, tier=upload.tier, target=target.code)
        return snapshot, token

    async def status(self, job_id: str) -> ConversionJob:
        async with self._cond:
            job = self._jobs.get(job_id)
            if job is None:
                raise NotFound("job not found")
            return dataclasses.replace(job)

    def verify_token(self, job: ConversionJob, token: str) -> bool:
        return self._security.verify(job.access_token_hash, token)

    async def cancel(self, job_id: str) -> bool:
        """Request cancellation.

        Returns True when the job is (or will end) Cancelled, False when it
        already finished otherwise. Raises ``CancellationNotSupported`` for a
        running job whose backend cannot stop early.
        """
        async with self._cond:
            job = self._jobs.get(job_id)
            if job is None:
                raise NotFound("job not found")
            if job.status == JobStatus.CANCELLED:
                return True
            if job.status in JobStatus.TERMINAL:
                return False
            if job.status == JobStatus.RUNNING:
                backend = self._backends.get(job.target.category)
                if not getattr(backend, "supports_cancellation", False):
                    raise CancellationNotSupported()
                job.cancel_requested = True
                job.stop_event.set()
                logger.info("job_cancel_requested", job_id=job_id)
                return True
            self._queues[job.tier].remove(job_id)
            job.cancel_requested = True
            self._mark_finished(job, JobStatus.CANCELLED)
            self._cond.notify_all()

        await asyncio.to_thread(self._intake.discard, job.upload_id)
        logger.info("job_cancelled", job_id=job_id, while_status=JobStatus.QUEUED)
        return True

    async def locate_result(self, job_id: str) -> ConversionResult:
        return await asyncio.to_thread(self._results.locate, job_id)

    async def delete_result(self, job_id: str) -> bool:
        deleted = await asyncio.to_thread(self._results.delete, job_id)
        async with self._cond:
            job = self._jobs.get(job_id)
            if job is not None:
                job.result = None
        return deleted

    def now(self) -> datetime:
        return self._clock()

    async def stats(self) -> dict[str, dict[str, int]]:
        async with self._cond:
            return {
                tier: {"queued": len(self._queues[tier]), "running": self._running[tier]}
                for tier in self._tier_order
            }

    async def sweep(self) -> None:
        """Expire results and stale uploads, then prune job records past their tombstone window."""
        now = self._clock()
        await asyncio.to_thread(self._results.sweep, now)
        await asyncio.to_thread(self._intake.sweep, now)
        grace = timedelta(seconds=self._settings.TOMBSTONE_TTL_SEC)
        async with self._cond:
            stale = [
                job_id
                for job_id, job in self._jobs.items()
                if job.terminal and job.expires_at is not None and job.expires_at + grace <= now
            ]
            for job_id in stale:
                del self._jobs[job_id]
        if stale:
            logger.info("jobs_pruned", count=len(stale))

    def _take_next(self) -> ConversionJob | None:
        # Highest-priority tier with both queued work and spare running capacity
        for tier in self._tier_order:
            queue = self._queues[tier]
            if queue and self._running[tier] < self._settings.tier(tier).max_running:
                return self._jobs[queue.popleft()]
        return None

    def _mark_finished(
        self,
        job: ConversionJob,
        status: str,
        *,
        result: ConversionResult | None = None,
        error: ConverterError | None = None,
    ) -> None:
        now = self._clock()
        job.status = status
        job.finished_at = now
        job.result = result
        job.error = error.to_dict() if error is not None else None
        if result is not None:
            job.expires_at = result.expires_at
        else:
            job.expires_at = now + timedelta(seconds=self._settings.tier(job.tier).retention_seconds)

    async def _finish(self, job: ConversionJob, status: str, **kwargs: Any) -> None:
        async with self._cond:
            self._mark_finished(job, status, **kwargs)
        logger.info(
            "job_finished",
            job_id=job.id,
            status=status,
            attempts=job.attempts,
            kind=job.error["kind"] if job.error else None,
        )

    async def _worker_loop(self, name: str) -> None:
        while True:
            async with self._cond:
                job = self._take_next()
                while job is None:
                    await self._cond.wait()
                    job = self._take_next()
                job.status = JobStatus.RUNNING
                job.started_at = self._clock()
                self._running[job.tier] += 1
            logger.info("job_started", job_id=job.id, worker=name, tier=job.tier)
            try:
                await self._execute(job)
            except Exception as e:
                logger.exception("job_crashed", job_id=job.id, worker=name)
                await self._finish(job, JobStatus.FAILED, error=ConversionFailed(str(e) or None))
            finally:
                async with self._cond:
                    self._running[job.tier] -= 1
                    self._cond.notify_all()
            await asyncio.to_thread(self._intake.discard, job.upload_id)

    async def _execute(self, job: ConversionJob) -> None:
        try:
            backend = select_backend(self._backends, job.target.category)
        except ConverterError as e:
            await self._finish(job, JobStatus.FAILED, error=e)
            return

        error: ConverterError | None = None
        for attempt in (1, 2):
            job.attempts = attempt
            abort = threading.Event()

            def should_stop() -> bool:
                return job.stop_event.is_set() or abort.is_set()

            # Shielded so a timeout leaves a handle on the thread, which cannot be killed
            attempt_future = asyncio.ensure_future(
                asyncio.to_thread(
                    backend.convert, job.input_path, job.source_type, job.target, job.options, should_stop
                )
            )
            try:
                data = await asyncio.wait_for(asyncio.shield(attempt_future), timeout=self._settings.JOB_TIMEOUT_SEC)
            except asyncio.TimeoutError:
                abort.set()
                error = ConversionTimeout(f"conversion exceeded {self._settings.JOB_TIMEOUT_SEC:g}s")
                if not getattr(backend, "supports_cancellation", False):
                    # No retry while the first attempt is still converting; the tier slot stays
                    # taken until that thread returns
                    await self._finish(job, JobStatus.FAILED, error=ConversionFailed(f"{error.message}; not retried"))
                    await self._drain(job, attempt_future)
                    return
                await self._drain(job, attempt_future)
            except ConversionCancelled as e:
                error = e
            except ConverterError as e:
                error = e
            except Exception as e:
                logger.exception("backend_error", job_id=job.id, attempt=attempt)
                error = ConversionFailed(f"unexpected backend error: {e.__class__.__name__}")
            else:
                if job.stop_event.is_set():
                    await self._finish(job, JobStatus.CANCELLED)
                    return
                result = await asyncio.to_thread(
                    self._results.put,
                    job.id,
                    data,
                    extension=job.target.extension,
                    media_type=job.target.media_type,
                    filename=job.download_name,
                    retention_seconds=self._settings.tier(job.tier).retention_seconds,
                )
                await self._finish(job, JobStatus.SUCCEEDED, result=result)
                return

            if job.stop_event.is_set():
                await self._finish(job, JobStatus.CANCELLED)
                return
            if isinstance(error, ConversionCancelled):
                error = ConversionFailed("conversion was aborted")
            if error.transient and attempt == 1:
                logger.warning("job_retrying", job_id=job.id, kind=error.kind, message=error.message)
                continue
            break

        assert error is not None
        if error.transient:
            error = ConversionFailed(f"{error.message} (after retry)")
        await self._finish(job, JobStatus.FAILED, error=error)

    @staticmethod
    async def _drain(job: ConversionJob, attempt_future: "asyncio.Future[bytes]") -> None:
        """Wait for a timed-out attempt's thread to return; its output is discarded."""
        await asyncio.wait({attempt_future})
        exc = attempt_future.exception() if not attempt_future.cancelled() else None
        logger.info(
            "timed_out_attempt_returned",
            job_id=job.id,
            attempt=job.attempts,
            outcome=exc.__class__.__name__ if exc is not None else "discarded",
        )

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._settings.SWEEP_INTERVAL_SEC)
            try:
                await self.sweep()
            except Exception:
                logger.exception("sweep_failed")
