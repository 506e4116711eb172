"""
Job status polling.

Every asynchronous job gets its own JobPoller task. A poller queries the
status route right away and then once per interval until the job reaches a
terminal state or the poll budget runs out. Pollers never wait on one
another; JobTracker just keeps the set of running ones.
"""
import asyncio
import logging
from typing import Callable, Dict, List, Optional

from showroom.config import settings
from showroom.providers import BackgroundReplacementProvider
from showroom.schemas import JobStatus, JobStatusResponse, JobSummary, ProcessingJob

log = logging.getLogger("showroom.poller")

NO_RESULT_URLS = "No result URLs received from processing"
PROCESSING_FAILED = "Processing failed"
TIMED_OUT = "Processing timed out"
STATUS_UNAVAILABLE = "Failed to get processing status after multiple attempts"

CompleteCallback = Callable[[str, str, List[str]], None]
FailedCallback = Callable[[str, str, str], None]


class JobPoller:
    def __init__(
        self,
        job: ProcessingJob,
        provider: BackgroundReplacementProvider,
        on_complete: CompleteCallback,
        on_failed: FailedCallback,
        *,
        interval: Optional[float] = None,
        max_polls: Optional[int] = None,
    ):
        self.job = job.model_copy()
        self.provider = provider
        self.on_complete = on_complete
        self.on_failed = on_failed
        self.interval = interval if interval is not None else settings.POLL_INTERVAL_SECONDS
        self.max_polls = max_polls if max_polls is not None else settings.SINGLE_JOB_MAX_POLLS
        self.queries = 0
        self._task: Optional[asyncio.Task] = None
        self._log = logging.getLogger(f"job.{job.job_id}")

    @property
    def task(self) -> Optional[asyncio.Task]:
        return self._task

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"poll-{self.job.job_id}")
        return self._task

    def cancel(self) -> None:
        """Stop polling without firing any callback."""
        if self.active:
            self._log.info("Polling cancelled for publicId=%s", self.job.public_id)
            self._task.cancel()

    async def _run(self) -> None:
        if self.job.status.is_terminal:
            return

        loop = asyncio.get_running_loop()
        last_error: Optional[Exception] = None
        while self.queries < self.max_polls:
            self.queries += 1
            self.job = self.job.model_copy(update={"poll_count": self.queries})
            started = loop.time()
            try:
                # a query may use at most one interval, so the whole run stays
                # within max_polls * interval
                status = await asyncio.wait_for(
                    self.provider.get_status(self.job.job_id),
                    timeout=self.interval or None,
                )
            except asyncio.CancelledError:
                raise
            except asyncio.TimeoutError as e:
                last_error = e
                self._log.warning("Status query %d/%d timed out after %ss",
                                  self.queries, self.max_polls, self.interval)
            except Exception as e:
                # may be transient; keep polling while the budget lasts
                last_error = e
                self._log.warning("Status query %d/%d failed: %s", self.queries, self.max_polls, e)
            else:
                last_error = None
                if self._apply(status):
                    return

            if self.queries < self.max_polls:
                await asyncio.sleep(max(0.0, self.interval - (loop.time() - started)))

        self._fail(STATUS_UNAVAILABLE if last_error is not None else TIMED_OUT)

    def _apply(self, status: JobStatusResponse) -> bool:
        state = (status.status or "").lower()

        if state == JobStatus.COMPLETED.value:
            urls = [u for u in (status.urls or []) if u]
            if urls:
                self._complete(urls)
            else:
                self._fail(NO_RESULT_URLS)
            return True

        if state == JobStatus.FAILED.value:
            self._fail(status.error or PROCESSING_FAILED)
            return True

        if self.job.status != JobStatus.PROCESSING:
            self.job = self.job.model_copy(update={"status": JobStatus.PROCESSING})
        self._log.debug("Still processing (%d/%d)", self.queries, self.max_polls)
        return False

    def _complete(self, urls: List[str]) -> None:
        self.job = self.job.model_copy(update={"status": JobStatus.COMPLETED, "error": None})
        self._log.info("Job completed after %d polls urls=%d", self.queries, len(urls))
        try:
            self.on_complete(self.job.public_id, self.job.job_id, urls)
        except Exception:
            self._log.exception("on_complete callback raised")

    def _fail(self, message: str) -> None:
        self.job = self.job.model_copy(update={"status": JobStatus.FAILED, "error": message})
        self._log.warning("Job failed after %d polls: %s", self.queries, message)
        try:
            self.on_failed(self.job.public_id, self.job.job_id, message)
        except Exception:
            self._log.exception("on_failed callback raised")


class JobTracker:
    """
    Running pollers keyed by publicId. Tracking a new job for a publicId
    cancels the poller of the previous one, so an image never has two live
    jobs.
    """

    def __init__(self, *, interval: Optional[float] = None, max_polls: Optional[int] = None):
        self.interval = interval
        self.max_polls = max_polls if max_polls is not None else settings.MAX_POLLS
        self._pollers: Dict[str, JobPoller] = {}

    def track(
        self,
        job: ProcessingJob,
        provider: BackgroundReplacementProvider,
        on_complete: CompleteCallback,
        on_failed: FailedCallback,
    ) -> JobPoller:
        self.cancel(job.public_id)
        poller = JobPoller(
            job, provider, on_complete, on_failed,
            interval=self.interval, max_polls=self.max_polls,
        )
        self._pollers[job.public_id] = poller
        poller.start()
        log.info("Tracking job=%s publicId=%s source=%s", job.job_id, job.public_id, job.source)
        return poller

    def cancel(self, public_id: str) -> None:
        poller = self._pollers.pop(public_id, None)
        if poller is not None:
            poller.cancel()

    def cancel_all(self) -> None:
        for public_id in list(self._pollers):
            self.cancel(public_id)

    def get(self, public_id: str) -> Optional[JobPoller]:
        return self._pollers.get(public_id)

    def jobs(self) -> List[ProcessingJob]:
        return [p.job for p in self._pollers.values()]

    def summary(self) -> JobSummary:
        jobs = self.jobs()
        completed = sum(1 for j in jobs if j.status == JobStatus.COMPLETED)
        failed = sum(1 for j in jobs if j.status == JobStatus.FAILED)
        return JobSummary(completed=completed, failed=failed, in_progress=len(jobs) - completed - failed)

    async def wait(self) -> None:
        """Block until every tracked poller has finished or been cancelled."""
        while True:
            pending = [p.task for p in self._pollers.values() if p.active]
            if not pending:
                return
            await asyncio.wait(pending)
