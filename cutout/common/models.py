import asyncio, time, uuid
from enum import Enum
from pathlib import Path
from typing import Optional, Dict, Literal, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field

logger = structlog.get_logger()


class JobState(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


_TRANSITIONS = {
    JobState.QUEUED: {JobState.PROCESSING},
    JobState.PROCESSING: {JobState.COMPLETED, JobState.FAILED},
    JobState.COMPLETED: set(),
    JobState.FAILED: set(),
}


class Artifact(BaseModel):
    """Handle to one ephemeral input file, owned by a single job until released."""
    path: Path
    size_bytes: int = 0
    released: bool = False


class ArtifactMeta(BaseModel):
    original_name: str
    mime_type: str
    size_bytes: int = Field(ge=0)


class OutputOptions(BaseModel):
    format: str = Field(default="png", pattern="^(png|webp)$")
    quality: float = Field(default=0.8, gt=0, le=1)


class Success(BaseModel):
    body: bytes
    media_type: str = "image/png"
    headers: Dict[str, str] = Field(default_factory=dict)


class Failure(BaseModel):
    error: str
    message: str
    status_code: int = 500


Outcome = Union[Success, Failure]


class ResultSink:
    """
    One-shot delivery channel back to the caller that submitted a job.
    deliver() resolves the caller's future at most once and never raises.
    """

    def __init__(self, future: Optional[asyncio.Future] = None):
        self._future = future if future is not None else asyncio.get_running_loop().create_future()
        self._delivered = False

    @property
    def delivered(self) -> bool:
        return self._delivered

    @property
    def abandoned(self) -> bool:
        # caller stopped waiting (client disconnect cancels the awaiting task)
        return not self._delivered and self._future.done()

    def deliver(self, outcome: Outcome) -> bool:
        if self._delivered:
            logger.warning("sink_already_delivered", outcome=type(outcome).__name__)
            return False
        self._delivered = True
        if self._future.done():
            logger.info("sink_caller_gone", outcome=type(outcome).__name__)
            return False
        self._future.set_result(outcome)
        return True

    async def wait(self) -> Outcome:
        return await self._future


class Job(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    job_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    artifact: Artifact
    meta: ArtifactMeta
    options: OutputOptions = Field(default_factory=OutputOptions)
    sink: ResultSink
    state: JobState = JobState.QUEUED
    enqueued_at: float = Field(default_factory=time.time)
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    error: Optional[str] = None

    def transition(self, new_state: JobState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise ValueError(f"illegal job transition {self.state.value} -> {new_state.value}")
        self.state = new_state
        if new_state is JobState.PROCESSING:
            self.started_at = time.time()
        elif new_state in (JobState.COMPLETED, JobState.FAILED):
            self.finished_at = time.time()

    def abort(self, error: str) -> None:
        """
        Fail a job that never left the queue (scheduler shutdown). This is the
        only path from queued straight to failed.
        """
        if self.state is not JobState.QUEUED:
            raise ValueError(f"only queued jobs can be aborted, not {self.state.value}")
        self.state = JobState.FAILED
        self.error = error
        self.finished_at = time.time()


class Accepted(BaseModel):
    job_id: str
    queue_length: int


class Rejected(BaseModel):
    reason: Literal["busy"] = "busy"


SubmitResult = Union[Accepted, Rejected]


class SchedulerStatus(BaseModel):
    queue_length: int
    active_slots: int
    max_queue_length: int
    max_concurrency: int
