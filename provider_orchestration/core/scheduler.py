import asyncio
import random
import string
import time
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Set
from loguru import logger
from ..config import CONFIG
from .exceptions import JobFailedError, JobTimeoutError
from .types import ErrorKind, Job, JobEvent, JobState, JobStatusView, JobSummary, QueueStats

ProgressReporter = Callable[[float], None]
JobHandler = Callable[[Job, ProgressReporter], Awaitable[Any]]


class JobScheduler:
    """
    In-memory priority queue with a bounded worker pool.

    Higher priority runs first; equal priorities run in submission order.
    Every run races the handler against ``job_timeout``. A failed run is
    retried up to ``max_retries`` times: the same job goes back to the front
    of the queue after ``retry_delay * retries`` seconds. Terminal jobs are
    kept in the completed/failed maps until cleared.
    """
    def __init__(
            self,
            concurrency: int = CONFIG['QUEUE_CONCURRENCY'],
            retry_delay: float = CONFIG['QUEUE_RETRY_DELAY'],
            job_timeout: float = CONFIG['QUEUE_JOB_TIMEOUT'],
            max_retries: int = CONFIG['QUEUE_MAX_RETRIES'],
            clock: Callable[[], float] = time.time
    ):
        self.concurrency = concurrency
        self.retry_delay = retry_delay
        self.job_timeout = job_timeout
        self.max_retries = max_retries
        self.clock = clock

        self.queue: List[Job] = []
        self.jobs: Dict[str, Job] = {}
        self.processing: Set[str] = set()
        self.completed: Dict[str, Job] = {}
        self.failed: Dict[str, Job] = {}
        self.handlers: Dict[str, JobHandler] = {}

        self.total_jobs = 0
        self.completed_jobs = 0
        self.failed_jobs = 0
        self.retried_jobs = 0

        self._tasks: Set[asyncio.Task] = set()
        self._closed = False
        self._subscribers: Dict[str, List[asyncio.Queue]] = {}

    def register_handler(self, job_type: str, handler: JobHandler):
        self.handlers[job_type] = handler
        logger.info(f"[JobScheduler] Registered handler for {job_type}")

    def _generate_job_id(self) -> str:
        suffix = ''.join(random.choices(string.ascii_lowercase + string.digits, k=6))
        return f"job_{int(self.clock() * 1000)}_{suffix}"

    def _enqueue(self, job: Job):
        index = len(self.queue)
        for i, queued in enumerate(self.queue):
            if queued.priority < job.priority:
                index = i
                break
        self.queue.insert(index, job)

    def submit(self, job_type: str, payload: Any = None, priority: int = 0) -> str:
        if self._closed:
            raise RuntimeError(f"[JobScheduler] Shut down, not accepting {job_type} jobs")

        job_id = self._generate_job_id()
        while job_id in self.jobs or job_id in self.completed or job_id in self.failed:
            job_id = self._generate_job_id()

        job = Job(
            id=job_id,
            type=job_type,
            payload=payload,
            priority=priority,
            created_at=self.clock(),
            max_retries=self.max_retries
        )
        self.jobs[job_id] = job
        self._enqueue(job)
        self.total_jobs += 1
        logger.info(f"[JobScheduler] Job added: {job_id} (type: {job_type}, priority: {priority})")

        self._publish(job)
        self._pump()
        return job_id

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _pump(self):
        if self._closed:
            return
        while len(self.processing) < self.concurrency and self.queue:
            job = self.queue.pop(0)
            self.processing.add(job.id)
            job.start(self.clock())
            self._publish(job)
            self._spawn(self._execute(job))

    async def _execute(self, job: Job):
        logger.info(f"[JobScheduler] Processing job: {job.id}")

        def report_progress(progress: float):
            if job.status != JobState.PROCESSING:
                return
            job.update_progress(progress)
            self._publish(job)

        try:
            handler = self.handlers.get(job.type)
            if handler is None:
                raise ValueError(f"No handler registered for job type: {job.type}")

            result = await self._run_with_deadline(handler(job, report_progress), job)

            job.complete(result, self.clock())
            job.update_progress(100)
            self._finish(job, self.completed)
            self.completed_jobs += 1
            logger.info(f"[JobScheduler] Job completed: {job.id} (duration: {job.duration(self.clock()):.2f}s)")

        except Exception as e:
            if job.retries < job.max_retries:
                job.retries += 1
                self.retried_jobs += 1
                job.status = JobState.PENDING
                job.error = str(e) or type(e).__name__
                logger.warning(f"[JobScheduler] Retrying job {job.id} (attempt {job.retries}/{job.max_retries}): {job.error}")
                self._publish(job)
                self._spawn(self._requeue(job, self.retry_delay * job.retries))
            else:
                kind = ErrorKind.JOB_TIMEOUT if isinstance(e, JobTimeoutError) else ErrorKind.JOB_FAILED
                job.fail(e, kind, self.clock())
                self._finish(job, self.failed)
                self.failed_jobs += 1
                logger.error(f"[JobScheduler] Job failed: {job.id} ({kind.value}) - {job.error}")

        finally:
            self.processing.discard(job.id)
            self._pump()

    async def _run_with_deadline(self, call: Awaitable[Any], job: Job) -> Any:
        # Only our own deadline counts as a job timeout; a TimeoutError raised
        # by the handler is an ordinary failure.
        task = asyncio.ensure_future(call)
        try:
            done, _ = await asyncio.wait({task}, timeout=self.job_timeout)
        except asyncio.CancelledError:
            task.cancel()
            raise
        if not done:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise JobTimeoutError(job.id, self.job_timeout)
        return task.result()

    async def _requeue(self, job: Job, delay: float):
        await asyncio.sleep(delay)
        self.queue.insert(0, job)
        self._pump()

    def _finish(self, job: Job, terminal: Dict[str, Job]):
        self.jobs.pop(job.id, None)
        terminal[job.id] = job
        self._publish(job)
        self._subscribers.pop(job.id, None)

    def _find(self, job_id: str) -> Optional[Job]:
        return self.jobs.get(job_id) or self.completed.get(job_id) or self.failed.get(job_id)

    def status(self, job_id: str) -> Optional[JobStatusView]:
        job = self._find(job_id)
        if job is None:
            return None
        return JobStatusView(
            id=job.id,
            type=job.type,
            status=job.status,
            progress=job.progress,
            retries=job.retries,
            result=job.result if job.status == JobState.COMPLETED else None,
            error=job.error if job.status == JobState.FAILED else None,
            error_kind=job.error_kind
        )

    # ── Events ───────────────────────────────────────────────────────────

    @staticmethod
    def _event(job: Job) -> JobEvent:
        return JobEvent(
            job_id=job.id,
            status=job.status,
            progress=job.progress,
            retries=job.retries,
            error=job.error if job.status == JobState.FAILED else None,
            error_kind=job.error_kind
        )

    def _publish(self, job: Job):
        event = self._event(job)
        for queue in self._subscribers.get(job.id, []):
            queue.put_nowait(event)

    async def subscribe(self, job_id: str) -> AsyncIterator[JobEvent]:
        job = self._find(job_id)
        if job is None:
            raise KeyError(f"Unknown job: {job_id}")

        current = self._event(job)
        if current.terminal:
            yield current
            return

        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.setdefault(job_id, []).append(queue)
        try:
            yield current
            while True:
                event = await queue.get()
                yield event
                if event.terminal:
                    return
        finally:
            listeners = self._subscribers.get(job_id)
            if listeners and queue in listeners:
                listeners.remove(queue)

    async def wait(self, job_id: str) -> Any:
        async for event in self.subscribe(job_id):
            if event.terminal:
                break
        job = self._find(job_id)
        if job.status == JobState.FAILED:
            if job.error_kind == ErrorKind.JOB_TIMEOUT:
                raise JobTimeoutError(job.id, self.job_timeout) from None
            raise JobFailedError(job.id, job.error)
        return job.result

    # ── Introspection ────────────────────────────────────────────────────

    def average_job_seconds(self) -> float:
        if not self.completed:
            return 0.0
        now = self.clock()
        return round(sum(j.duration(now) for j in self.completed.values()) / len(self.completed), 2)

    def stats(self) -> QueueStats:
        return QueueStats(
            total_jobs=self.total_jobs,
            completed_jobs=self.completed_jobs,
            failed_jobs=self.failed_jobs,
            retried_jobs=self.retried_jobs,
            pending=sum(1 for j in self.jobs.values() if j.status == JobState.PENDING),
            processing=len(self.processing),
            completed=len(self.completed),
            failed=len(self.failed),
            average_job_seconds=self.average_job_seconds()
        )

    def pending_jobs(self) -> List[JobSummary]:
        return [
            JobSummary(id=j.id, type=j.type, priority=j.priority, created_at=j.created_at)
            for j in self.queue
        ]

    def recent_completed(self, limit: int = 10) -> List[JobSummary]:
        now = self.clock()
        jobs = sorted(self.completed.values(), key=lambda j: j.completed_at, reverse=True)[:limit]
        return [
            JobSummary(
                id=j.id, type=j.type, priority=j.priority, created_at=j.created_at,
                completed_at=j.completed_at, duration_seconds=round(j.duration(now), 2)
            )
            for j in jobs
        ]

    def recent_failed(self, limit: int = 10) -> List[JobSummary]:
        jobs = sorted(self.failed.values(), key=lambda j: j.completed_at, reverse=True)[:limit]
        return [
            JobSummary(
                id=j.id, type=j.type, priority=j.priority, created_at=j.created_at,
                completed_at=j.completed_at, error=j.error
            )
            for j in jobs
        ]

    def clear_completed(self) -> int:
        size = len(self.completed)
        self.completed.clear()
        logger.info(f"[JobScheduler] Cleared {size} completed jobs")
        return size

    def clear_failed(self) -> int:
        size = len(self.failed)
        self.failed.clear()
        logger.info(f"[JobScheduler] Cleared {size} failed jobs")
        return size

    async def drain(self):
        """Wait until no job is queued, running or waiting on a retry delay."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self):
        self._closed = True
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        # Queued, running and retry-waiting jobs will never run now; fail them so waiters see a terminal event.
        now = self.clock()
        abandoned = list(self.jobs.values())
        for job in abandoned:
            job.fail(RuntimeError('Scheduler shut down before the job finished'), ErrorKind.JOB_FAILED, now)
            self._finish(job, self.failed)
            self.failed_jobs += 1
        self.queue.clear()
        self.processing.clear()
        logger.info(f"[JobScheduler] Shut down ({len(tasks)} in-flight tasks cancelled, {len(abandoned)} jobs abandoned)")
