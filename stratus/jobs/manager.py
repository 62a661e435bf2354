"""Asynchronous job manager.

Long cloud operations (create, delete) outlive the HTTP request that
started them. The manager runs each one as an asyncio task on the server
loop and records its outcome under a fresh id that clients poll.

Example:
    jobs = JobManager()
    job_id = jobs.submit(task.create)
    ...
    jobs.get_status(job_id)  # JobStatus(state=<JobState.RUNNING: 'running'>, error=None)
"""

from __future__ import annotations

import asyncio
import threading
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

from loguru import logger

from stratus.core.exceptions import JobNotFoundError

if TYPE_CHECKING:
    from loguru import Logger

type Operation = Callable[[], Awaitable[object]]


class JobState(StrEnum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self is not JobState.RUNNING


@dataclass(frozen=True, slots=True)
class JobStatus:
    state: JobState
    error: str | None = None


_RUNNING = JobStatus(JobState.RUNNING)


class JobManager:
    """Runs operations in the background and tracks their outcome.

    Statuses are immutable and replaced whole under a lock, so readers on
    any thread see either the previous or the next status. A job leaves
    RUNNING exactly once.
    """

    def __init__(self, log: Logger | None = None) -> None:
        self._log = log or logger.bind(component="jobs")
        self._lock = threading.Lock()
        self._statuses: dict[str, JobStatus] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}

    def submit(self, operation: Operation) -> str:
        """Schedule ``operation`` on the running loop and return its job id.

        Raises:
            RuntimeError: If no event loop is running. No job is recorded.
        """
        job_id = uuid.uuid4().hex
        run = self._run(job_id, operation)
        try:
            task = asyncio.create_task(run, name=f"job-{job_id}")
        except RuntimeError:
            run.close()
            raise

        # the task cannot start before submit returns control to the loop
        with self._lock:
            self._statuses[job_id] = _RUNNING
        self._tasks[job_id] = task
        task.add_done_callback(lambda t: self._done(job_id, t))
        self._log.debug("Submitted job {job_id}", job_id=job_id)
        return job_id

    def _done(self, job_id: str, task: asyncio.Task[None]) -> None:
        self._tasks.pop(job_id, None)
        # a task cancelled before its first step never enters _run
        if task.cancelled():
            self._finish(job_id, JobStatus(JobState.FAILED, "cancelled"))

    async def _run(self, job_id: str, operation: Operation) -> None:
        try:
            await operation()
        except asyncio.CancelledError:
            self._finish(job_id, JobStatus(JobState.FAILED, "cancelled"))
            raise
        except Exception as e:
            self._log.error("Job {job_id} failed: {error}", job_id=job_id, error=e)
            self._finish(job_id, JobStatus(JobState.FAILED, str(e) or type(e).__name__))
        else:
            self._log.info("Job {job_id} succeeded", job_id=job_id)
            self._finish(job_id, JobStatus(JobState.SUCCEEDED))

    def _finish(self, job_id: str, status: JobStatus) -> None:
        with self._lock:
            if self._statuses[job_id].state.terminal:
                return
            self._statuses[job_id] = status

    def get_status(self, job_id: str) -> JobStatus:
        """Return the current status of a job.

        Raises:
            JobNotFoundError: If no job with this id was submitted.
        """
        with self._lock:
            status = self._statuses.get(job_id)
        if status is None:
            raise JobNotFoundError(job_id)
        return status

    async def wait(self, job_id: str) -> JobStatus:
        """Wait for a job to finish and return its terminal status."""
        status = self.get_status(job_id)
        task = self._tasks.get(job_id)
        if task is not None and not status.state.terminal:
            await asyncio.wait([task])
        return self.get_status(job_id)

    async def shutdown(self) -> None:
        """Cancel every running job and wait for the cancellations to land."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._log.debug("Job manager stopped ({count} jobs cancelled)", count=len(tasks))
