"""Journaled work queue for long-running transcription jobs."""

import asyncio
import json
import os
import tempfile
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Deque, Dict, List, Optional

import structlog

from ..domain.errors import JobFailedError
from ..domain.models import AttachmentJob, JobState, utcnow
from ..metrics import TRANSCRIPTION_JOBS

logger = structlog.get_logger()

JobHandler = Callable[[str], Awaitable[str]]


@dataclass
class JobHandle:
    """What ``enqueue`` hands back: the job id and a future for its outcome."""

    job_id: str
    future: asyncio.Future

    async def wait(self, timeout: Optional[float] = None) -> str:
        """Wait for the transcript.

        Raises JobFailedError if the job failed and asyncio.TimeoutError if
        ``timeout`` elapses. A timeout does not cancel the job itself.
        """
        return await asyncio.wait_for(asyncio.shield(self.future), timeout=timeout)


class TranscriptionJobQueue:
    """A pool of workers executing transcription jobs with at-least-once semantics.

    Every state transition is written to a JSON journal before it takes effect
    for waiters. Jobs still ``queued`` or ``processing`` in the journal when the
    queue starts are delivered again. Failed jobs are not retried.

    The queue owns each job's source file and deletes it once the job is done
    or failed. Only the ``retain_finished`` most recent finished jobs are kept,
    in memory and in the journal.
    """

    def __init__(
        self,
        handler: JobHandler,
        journal_path: Optional[str] = None,
        workers: int = 2,
        retain_finished: int = 100,
    ) -> None:
        self.handler = handler
        self.journal_path = Path(journal_path) if journal_path else None
        self.workers = workers
        self.retain_finished = retain_finished
        self._jobs: Dict[str, AttachmentJob] = {}
        self._futures: Dict[str, asyncio.Future] = {}
        self._finished: Deque[str] = deque()
        self._queue: asyncio.Queue = asyncio.Queue()
        self._lock = asyncio.Lock()
        self._tasks: List[asyncio.Task] = []
        logger.info("job_queue_initialized", workers=workers, journal=str(self.journal_path))

    async def start(self) -> None:
        """Load the journal, re-deliver unfinished jobs and start the workers."""
        if self._tasks:
            return
        self._jobs = await asyncio.to_thread(self._read_journal)
        finished = sorted(
            (job for job in self._jobs.values() if job.state.terminal),
            key=lambda job: job.updated_at,
        )
        self._finished = deque(job.id for job in finished)
        pruned = self._prune_finished()

        redelivered = 0
        for job in self._jobs.values():
            if not job.state.terminal:
                job.state = JobState.QUEUED
                self._futures[job.id] = asyncio.get_running_loop().create_future()
                self._queue.put_nowait(job.id)
                redelivered += 1
        if redelivered or pruned:
            await self._write_journal()
        if redelivered:
            logger.info("jobs_redelivered", count=redelivered)
        self._tasks = [
            asyncio.create_task(self._worker(index)) for index in range(self.workers)
        ]

    async def enqueue(self, job: AttachmentJob) -> JobHandle:
        """Record a job as queued and schedule it for a worker."""
        future = asyncio.get_running_loop().create_future()
        async with self._lock:
            self._jobs[job.id] = job
            self._futures[job.id] = future
            try:
                await self._write_journal_locked()
            except OSError:
                del self._jobs[job.id]
                del self._futures[job.id]
                raise
        await self._queue.put(job.id)
        logger.info("job_enqueued", job_id=job.id, source=job.source_path)
        return JobHandle(job_id=job.id, future=future)

    def handle(self, job_id: str) -> Optional[JobHandle]:
        future = self._futures.get(job_id)
        return JobHandle(job_id=job_id, future=future) if future else None

    def get(self, job_id: str) -> Optional[AttachmentJob]:
        return self._jobs.get(job_id)

    async def _worker(self, index: int) -> None:
        try:
            while True:
                job_id = await self._queue.get()
                try:
                    await self._run(job_id)
                except Exception as e:
                    logger.error("job_worker_error", worker=index, job_id=job_id, error=str(e))
                finally:
                    self._queue.task_done()
        except asyncio.CancelledError:
            logger.info("job_worker_cancelled", worker=index)
            raise

    async def _run(self, job_id: str) -> None:
        job = self._jobs[job_id]
        await self._transition(job, JobState.PROCESSING, attempts=job.attempts + 1)
        try:
            transcript = await self.handler(job.source_path)
        except asyncio.CancelledError:
            # Leave the job re-deliverable
            await self._transition(job, JobState.QUEUED)
            raise
        except Exception as e:
            logger.error("job_failed", job_id=job_id, error=str(e))
            await self._transition(job, JobState.FAILED, error=str(e))
            _discard_source(job.source_path)
            self._resolve(job_id, error=JobFailedError(job_id, str(e)))
            return

        await self._transition(job, JobState.DONE, result=transcript)
        _discard_source(job.source_path)
        self._resolve(job_id, result=transcript)
        logger.info("job_done", job_id=job_id)

    async def _transition(self, job: AttachmentJob, state: JobState, **changes) -> None:
        async with self._lock:
            job.state = state
            job.updated_at = utcnow()
            for key, value in changes.items():
                setattr(job, key, value)
            if state.terminal:
                self._finished.append(job.id)
                self._prune_finished()
            try:
                await self._write_journal_locked()
            except OSError as e:
                logger.error("job_journal_write_failed", job_id=job.id, error=str(e))
        if state.terminal:
            TRANSCRIPTION_JOBS.labels(state=state.value).inc()

    def _prune_finished(self) -> int:
        """Forget the oldest finished jobs beyond ``retain_finished``."""
        pruned = 0
        while len(self._finished) > self.retain_finished:
            job_id = self._finished[0]
            future = self._futures.get(job_id)
            if future is not None and not future.done():
                break
            self._finished.popleft()
            self._jobs.pop(job_id, None)
            self._futures.pop(job_id, None)
            pruned += 1
        return pruned

    def _resolve(self, job_id: str, result: Optional[str] = None, error: Optional[Exception] = None) -> None:
        future = self._futures.get(job_id)
        if future is None or future.done():
            return
        if error is not None:
            future.set_exception(error)
            # Nobody may be waiting on a re-delivered job
            future.exception()
        else:
            future.set_result(result)

    async def _write_journal(self) -> None:
        async with self._lock:
            await self._write_journal_locked()

    async def _write_journal_locked(self) -> None:
        if self.journal_path is None:
            return
        document = {job_id: job.model_dump(mode="json") for job_id, job in self._jobs.items()}
        await asyncio.to_thread(self._dump, document)

    def _dump(self, document: dict) -> None:
        self.journal_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.journal_path.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(document, handle, indent=2)
            os.replace(tmp_path, self.journal_path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def _read_journal(self) -> Dict[str, AttachmentJob]:
        if self.journal_path is None or not self.journal_path.exists():
            return {}
        with self.journal_path.open("r", encoding="utf-8") as handle:
            raw = json.load(handle)
        return {job_id: AttachmentJob.model_validate(data) for job_id, data in raw.items()}

    async def cleanup(self) -> None:
        """Stop the workers. Unfinished jobs stay in the journal for re-delivery.

        Their waiters fail with JobFailedError; the source files are kept for
        the next start.
        """
        for task in self._tasks:
            if not task.done():
                task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        for job_id, future in self._futures.items():
            if not future.done():
                future.set_exception(JobFailedError(job_id, "transcription service shut down"))
                future.exception()
        self._futures.clear()
        self._queue = asyncio.Queue()
        logger.info("job_queue_cleaned_up")


def _discard_source(path: str) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.error("job_source_delete_failed", path=path, error=str(e))
