import os
from collections import deque
from typing import Optional, Deque, List

from .models import Job

MAX_QUEUE_LENGTH = int(os.getenv("MAX_QUEUE_LENGTH", "3"))


class JobQueue:
    """
    Bounded FIFO of pending jobs. No priorities: head is always the oldest job.
    Only the scheduler mutates it, from the event loop thread.
    """

    def __init__(self, max_length: int = MAX_QUEUE_LENGTH):
        if max_length < 0:
            raise ValueError("max_length must be >= 0")
        self.max_length = max_length
        self._jobs: Deque[Job] = deque()

    def __len__(self) -> int:
        return len(self._jobs)

    @property
    def is_full(self) -> bool:
        return len(self._jobs) >= self.max_length

    def push(self, job: Job) -> None:
        """Append job. Admission is decided by the caller via is_full; pushing past capacity is a bug."""
        if self.is_full:
            raise OverflowError(f"job queue is full ({self.max_length})")
        self._jobs.append(job)

    def pop(self) -> Optional[Job]:
        return self._jobs.popleft() if self._jobs else None

    def drain(self) -> List[Job]:
        jobs = list(self._jobs)
        self._jobs.clear()
        return jobs

    def job_ids(self) -> List[str]:
        return [j.job_id for j in self._jobs]
