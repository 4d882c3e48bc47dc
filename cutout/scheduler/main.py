import asyncio, gc, os
from typing import Optional, Dict, Set

import structlog
from prometheus_client import Gauge, Counter, Histogram

from ..common.artifacts import ArtifactStore
from ..common.models import (
    Accepted, Artifact, ArtifactMeta, Failure, Job, JobState, OutputOptions,
    Rejected, ResultSink, SchedulerStatus, SubmitResult, Success,
)
from ..common.errors import TransformError
from ..common.queue import JobQueue, MAX_QUEUE_LENGTH
from ..worker.main import TransformationGateway

logger = structlog.get_logger()

MAX_CONCURRENCY = int(os.getenv("MAX_CONCURRENCY", "1"))
PACING_DELAY_SEC = float(os.getenv("PACING_DELAY_SEC", "0.1"))
GC_HINT = os.getenv("GC_HINT", "1").lower() not in ("0", "false", "no")

SUBMITTED = Counter("cutout_jobs_submitted_total", "Jobs admitted to the queue")
REJECTED = Counter("cutout_jobs_rejected_total", "Submissions rejected because the queue was full")
COMPLETED = Counter("cutout_jobs_completed_total", "Jobs completed")
FAILED = Counter("cutout_jobs_failed_total", "Jobs failed")
QUEUE_LEN = Gauge("cutout_queue_length", "Pending queue length")
ACTIVE = Gauge("cutout_active_slots", "Execution slots in use")
WAIT = Histogram("cutout_job_wait_seconds", "Time from admission to dispatch (sec)",
                 buckets=(0.1, 0.5, 1, 2, 3, 5, 8, 13, 21, 34, 55))
LATENCY = Histogram("cutout_job_latency_seconds", "Time from dispatch to terminal state (sec)",
                    buckets=(0.5, 1, 2, 3, 5, 8, 13, 21, 34, 55))


class Scheduler:
    """
    Admission control plus serialized execution for one memory-hungry engine.

    The queue and the slot counter are only touched from the event loop
    thread and never across an await, so check-then-enqueue in submit() and
    pop-then-increment in dispatch() can't interleave.

    Lifecycle of a job:
      submit() -> queued -> dispatch() -> processing -> completed | failed
    After every job the artifact is released, the slot is returned, a gc
    hint is issued and dispatch() is re-armed after `pacing_delay` seconds.
    """

    def __init__(
        self,
        gateway: TransformationGateway,
        store: ArtifactStore,
        max_queue_length: Optional[int] = None,
        max_concurrency: Optional[int] = None,
        pacing_delay: Optional[float] = None,
        gc_hint: Optional[bool] = None,
    ):
        self.gateway = gateway
        self.store = store
        self.max_concurrency = max_concurrency if max_concurrency is not None else MAX_CONCURRENCY
        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self.pacing_delay = pacing_delay if pacing_delay is not None else PACING_DELAY_SEC
        self.gc_hint = gc_hint if gc_hint is not None else GC_HINT
        self._queue = JobQueue(max_queue_length if max_queue_length is not None else MAX_QUEUE_LENGTH)
        self._active = 0
        self._jobs: Dict[str, Job] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._rearm: Optional[asyncio.TimerHandle] = None
        self._closed = False

    @property
    def max_queue_length(self) -> int:
        return self._queue.max_length

    @property
    def queue_length(self) -> int:
        return len(self._queue)

    @property
    def active_slots(self) -> int:
        return self._active

    @property
    def is_full(self) -> bool:
        return self._closed or self._queue.is_full

    def get_job(self, job_id: str) -> Optional[Job]:
        """Live (queued or processing) job, None once it reached a terminal state."""
        return self._jobs.get(job_id)

    def snapshot(self) -> SchedulerStatus:
        return SchedulerStatus(
            queue_length=self.queue_length,
            active_slots=self._active,
            max_queue_length=self.max_queue_length,
            max_concurrency=self.max_concurrency,
        )

    def submit(self, meta: ArtifactMeta, artifact: Artifact, sink: ResultSink,
               options: Optional[OutputOptions] = None) -> SubmitResult:
        # On rejection the caller still owns the artifact and must release it.
        if self.is_full:
            REJECTED.inc()
            logger.warning("job_rejected", name=meta.original_name, queue_length=self.queue_length)
            return Rejected()

        job = Job(artifact=artifact, meta=meta, options=options or OutputOptions(), sink=sink)
        self._queue.push(job)
        self._jobs[job.job_id] = job
        SUBMITTED.inc()
        logger.info("job_admitted", job_id=job.job_id, name=meta.original_name,
                    mime_type=meta.mime_type, size=meta.size_bytes, queue_length=self.queue_length)

        self.dispatch()
        return Accepted(job_id=job.job_id, queue_length=self.queue_length)

    def dispatch(self) -> None:
        if self._rearm is not None:
            # pacing window still open; the timer calls back in
            return
        loop = asyncio.get_running_loop()
        while self._active < self.max_concurrency:
            job = self._queue.pop()
            if job is None:
                break
            self._active += 1
            job.transition(JobState.PROCESSING)
            WAIT.observe(job.started_at - job.enqueued_at)
            task = loop.create_task(self._execute(job), name=f"cutout-job-{job.job_id}")
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        self._update_gauges()

    async def _execute(self, job: Job) -> None:
        log = logger.bind(job_id=job.job_id)
        try:
            if job.sink.abandoned:
                # caller disconnected while queued: don't burn memory on it
                self._fail(job, "abandoned")
                job.sink.deliver(Failure(error="Background removal failed", message="caller went away"))
                log.info("job_abandoned")
                return

            log.info("job_started", name=job.meta.original_name, waited=round(job.started_at - job.enqueued_at, 3))
            try:
                out = await self.gateway.transform(job.artifact, job.options)
                if not isinstance(out, (bytes, bytearray)) or not out:
                    raise TransformError(f"engine returned no image data ({type(out).__name__})")
                outcome = Success(
                    body=bytes(out),
                    media_type="image/png" if job.options.format == "png" else f"image/{job.options.format}",
                    headers={"Content-Length": str(len(out)), "Cache-Control": "no-store"},
                )
            except asyncio.CancelledError:
                self._fail(job, "cancelled")
                job.sink.deliver(Failure(error="Background removal failed", message="processing cancelled"))
                raise
            except Exception as e:
                message = str(e) or type(e).__name__
                self._fail(job, message)
                log.error("job_failed", error=message, error_type=type(e).__name__)
                job.sink.deliver(Failure(error="Background removal failed", message=message))
                return

            job.transition(JobState.COMPLETED)
            COMPLETED.inc()
            job.sink.deliver(outcome)
            log.info("job_completed", out_bytes=len(outcome.body), latency=round(job.finished_at - job.started_at, 3))
        finally:
            try:
                if not job.sink.delivered:
                    # something raised outside the engine call; the caller still gets an answer
                    if job.state is JobState.PROCESSING:
                        self._fail(job, "internal error")
                    job.sink.deliver(Failure(error="Background removal failed", message="internal error"))
                await self.store.release(job.artifact)
            finally:
                self._finish(job)

    def _fail(self, job: Job, error: str) -> None:
        job.error = error
        job.transition(JobState.FAILED)
        FAILED.inc()

    def _finish(self, job: Job) -> None:
        self._jobs.pop(job.job_id, None)
        self._active -= 1
        if job.finished_at is not None:
            LATENCY.observe(job.finished_at - job.started_at)
        self._update_gauges()
        self._reclaim_memory()
        if self._closed:
            return
        if self.pacing_delay > 0 and len(self._queue):
            # pace only work that was already waiting; an idle scheduler stays immediately available
            if self._rearm is not None:
                self._rearm.cancel()
            self._rearm = asyncio.get_running_loop().call_later(self.pacing_delay, self._on_rearm)
        else:
            self.dispatch()

    def _on_rearm(self) -> None:
        self._rearm = None
        self.dispatch()

    def _reclaim_memory(self) -> None:
        if not self.gc_hint:
            return
        try:
            gc.collect()
        except Exception as e:
            logger.warning("gc_hint_failed", error=str(e))

    def _update_gauges(self) -> None:
        QUEUE_LEN.set(self.queue_length)
        ACTIVE.set(self._active)

    async def shutdown(self) -> None:
        """Stop admitting, fail whatever is still queued, wait for running jobs."""
        self._closed = True
        if self._rearm is not None:
            self._rearm.cancel()
            self._rearm = None
        for job in self._queue.drain():
            self._jobs.pop(job.job_id, None)
            job.abort("shutdown")
            FAILED.inc()
            job.sink.deliver(Failure(error="Server shutting down",
                                     message="The server stopped before this image was processed.",
                                     status_code=503))
            await self.store.release(job.artifact)
        self._update_gauges()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        logger.info("scheduler_stopped", released=self.store.released_count)
