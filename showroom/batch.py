"""
Batch coordination for "process all images" runs.

BatchState is immutable; every change goes through one of the reducer
functions below and the coordinator swaps in the returned state. Poller
callbacks can land in any order, so each reducer reads only the state it is
handed and ignores callbacks for jobs that are no longer the active job of
their image.
"""
import logging
import uuid
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from showroom.classifier import classify_response
from showroom.errors import BatchProcessingError, ValidationError
from showroom.poller import JobTracker
from showroom.providers import SubmissionClient
from showroom.schemas import Image, JobStatus, ProcessingJob, ProcessingResult

NO_IMAGES = "No images to process"
ALL_FAILED = "Failed to process any images"
STILL_PROCESSING = "Some images are still processing. Results will appear when ready."
ALL_DONE = "All images processed successfully. Select your preferred version for each image."


@dataclass(frozen=True)
class BatchState:
    previews: Dict[str, List[str]] = field(default_factory=dict)
    selected: Dict[str, str] = field(default_factory=dict)
    jobs: Tuple[ProcessingJob, ...] = ()
    results: Tuple[ProcessingResult, ...] = ()
    errors: Dict[str, str] = field(default_factory=dict)
    progress: float = 0.0
    submitting: bool = False
    error: Optional[str] = None
    message: Optional[str] = None


# --- reducers ---

def _without(mapping: Mapping, keys: Iterable[str]) -> dict:
    drop = set(keys)
    return {k: v for k, v in mapping.items() if k not in drop}


def start_batch(state: BatchState, public_ids: List[str]) -> BatchState:
    """Forget everything known about the images being reprocessed."""
    ids = set(public_ids)
    return replace(
        state,
        previews=_without(state.previews, ids),
        selected=_without(state.selected, ids),
        errors=_without(state.errors, ids),
        jobs=tuple(j for j in state.jobs if j.public_id not in ids),
        results=(),
        progress=0.0,
        submitting=True,
        error=None,
        message=None,
    )


def record_result(state: BatchState, result: ProcessingResult, index: int, total: int) -> BatchState:
    progress = max(state.progress, round((index + 1) / total * 100, 2)) if total else 100.0
    errors = state.errors
    if result.error:
        errors = {**errors, result.original: result.error}
    return replace(state, results=state.results + (result,), progress=progress, errors=errors)


def merge_sync_result(state: BatchState, result: ProcessingResult) -> BatchState:
    if not result.previews:
        return state
    return replace(
        state,
        previews={**state.previews, result.original: list(result.previews)},
        selected={**state.selected, result.original: result.previews[0]},
    )


def register_job(state: BatchState, job: ProcessingJob) -> BatchState:
    jobs = tuple(j for j in state.jobs if j.public_id != job.public_id) + (job,)
    return replace(state, jobs=jobs)


def _active_job(state: BatchState, public_id: str, job_id: str) -> Optional[ProcessingJob]:
    for job in state.jobs:
        if job.public_id == public_id and job.job_id == job_id and not job.status.is_terminal:
            return job
    return None


def _update_job(state: BatchState, job_id: str, **changes) -> Tuple[ProcessingJob, ...]:
    return tuple(j.model_copy(update=changes) if j.job_id == job_id else j for j in state.jobs)


def complete_job(state: BatchState, public_id: str, job_id: str, urls: List[str]) -> BatchState:
    if _active_job(state, public_id, job_id) is None or not urls:
        return state
    return replace(
        state,
        jobs=_update_job(state, job_id, status=JobStatus.COMPLETED, error=None),
        previews={**state.previews, public_id: list(urls)},
        selected={**state.selected, public_id: urls[0]},
        errors=_without(state.errors, [public_id]),
    )


def fail_job(state: BatchState, public_id: str, job_id: str, message: str) -> BatchState:
    if _active_job(state, public_id, job_id) is None:
        return state
    return replace(
        state,
        jobs=_update_job(state, job_id, status=JobStatus.FAILED, error=message),
        errors={**state.errors, public_id: message},
    )


def finish_submissions(state: BatchState, message: Optional[str] = None, error: Optional[str] = None) -> BatchState:
    return replace(state, submitting=False, message=message, error=error)


def select_preview(state: BatchState, public_id: str, url: str) -> BatchState:
    if url not in state.previews.get(public_id, []):
        raise ValidationError(
            f"{url} is not a preview of {public_id}",
            details={"publicId": public_id},
        )
    return replace(state, selected={**state.selected, public_id: url})


def clear_state() -> BatchState:
    return BatchState()


def pending_jobs(state: BatchState) -> List[ProcessingJob]:
    return [j for j in state.jobs if not j.status.is_terminal]


def is_done(state: BatchState) -> bool:
    return not state.submitting and not pending_jobs(state)


@dataclass(frozen=True)
class BatchReport:
    total: int
    successful: int
    failed: int
    pending: int
    fallback: int
    progress: float
    done: bool
    message: Optional[str] = None
    error: Optional[str] = None

    @property
    def fully_successful(self) -> bool:
        return self.done and self.failed == 0 and self.successful == self.total


def build_report(state: BatchState) -> BatchReport:
    total = len(state.results)
    ids = [r.original for r in state.results]
    successful = sum(1 for pid in ids if pid in state.previews)
    pending = sum(1 for pid in ids if any(j.public_id == pid for j in pending_jobs(state)))
    return BatchReport(
        total=total,
        successful=successful,
        failed=total - successful - pending,
        pending=pending,
        fallback=sum(1 for r in state.results if r.used_fallback),
        progress=state.progress,
        done=is_done(state),
        message=state.message,
        error=state.error,
    )


class BatchCoordinator:
    """
    Runs one batch at a time: submits images one by one, lets async jobs
    poll concurrently through the JobTracker, and folds every result and
    callback into BatchState.
    """

    def __init__(
        self,
        client: SubmissionClient,
        tracker: Optional[JobTracker] = None,
        *,
        on_progress: Optional[Callable[[float], None]] = None,
        on_batch_complete: Optional[Callable[[BatchReport], None]] = None,
        batch_id: Optional[str] = None,
    ):
        self.client = client
        self.tracker = tracker or JobTracker()
        self.on_progress = on_progress
        self.on_batch_complete = on_batch_complete
        self.batch_id = batch_id or f"batch_{uuid.uuid4().hex[:10]}"
        self.state = BatchState()
        self._completion_fired = False
        self.log = logging.getLogger(f"batch.{self.batch_id}")

    async def process_batch_background(self, images: List[Image], prompt: Optional[str]) -> BatchReport:
        if not images:
            self.state = replace(self.state, error=NO_IMAGES)
            raise ValidationError(NO_IMAGES)

        public_ids = [img.public_id for img in images]
        for public_id in public_ids:
            self.tracker.cancel(public_id)
        self.state = start_batch(self.state, public_ids)
        self._completion_fired = False
        self._emit_progress()

        self.log.info("Batch started: images=%d prompt=%r", len(images), prompt)
        total = len(images)
        for index, image in enumerate(images):
            result, job = await self._process_image(image.public_id, prompt)

            self.state = record_result(self.state, result, index, total)
            if job is not None:
                self.state = register_job(self.state, job)
                self.tracker.track(
                    job,
                    self.client.status_provider(job.source),
                    self.on_job_complete,
                    self.on_job_failed,
                )
            else:
                self.state = merge_sync_result(self.state, result)
            self._emit_progress()

        if not any(r.usable for r in self.state.results):
            self.state = finish_submissions(self.state, error=ALL_FAILED)
            self.log.error("Batch failed: no image produced a usable result")
            raise BatchProcessingError(ALL_FAILED, details={"errors": dict(self.state.errors)})

        message = STILL_PROCESSING if pending_jobs(self.state) else ALL_DONE
        self.state = finish_submissions(self.state, message=message)
        report = build_report(self.state)
        self.log.info(
            "Submissions finished: successful=%d failed=%d pending=%d fallback=%d",
            report.successful, report.failed, report.pending, report.fallback,
        )
        self._check_done()
        return report

    async def _process_image(self, public_id: str, prompt: Optional[str]):
        try:
            submission = await self.client.submit(public_id, prompt)
        except Exception as e:
            self.log.warning("Submission failed for publicId=%s: %s", public_id, e)
            return ProcessingResult(original=public_id, error=str(e)), None
        result, job = classify_response(public_id, submission)
        if result.error:
            self.log.warning("publicId=%s: %s", public_id, result.error)
        return result, job

    def on_job_complete(self, public_id: str, job_id: str, urls: List[str]) -> None:
        self.state = complete_job(self.state, public_id, job_id, urls)
        self._check_done()

    def on_job_failed(self, public_id: str, job_id: str, message: str) -> None:
        self.state = fail_job(self.state, public_id, job_id, message)
        self._check_done()

    def select(self, public_id: str, url: str) -> None:
        self.state = select_preview(self.state, public_id, url)

    async def wait_for_jobs(self) -> BatchReport:
        await self.tracker.wait()
        return build_report(self.state)

    def report(self) -> BatchReport:
        return build_report(self.state)

    async def save_batch_selection(self, images: List[Image], reconciler, selections: Optional[Dict[str, str]] = None) -> List[Image]:
        """
        Persist the chosen previews through `reconciler`. State is cleared
        only when the save succeeds so a failed save can be retried.
        """
        if selections is None:
            selections = dict(self.state.selected)
        else:
            for public_id, url in selections.items():
                select_preview(self.state, public_id, url)

        updated = await reconciler.save_batch_selection(images, selections)
        self.tracker.cancel_all()
        self.state = clear_state()
        self.log.info("Saved %d selections", len(selections))
        return updated

    def _emit_progress(self) -> None:
        if self.on_progress is not None:
            self.on_progress(self.state.progress)

    def _check_done(self) -> None:
        if self._completion_fired or not is_done(self.state) or self.state.error:
            return
        self._completion_fired = True
        report = build_report(self.state)
        if report.failed == 0:
            self.state = replace(self.state, message=ALL_DONE)
        else:
            self.state = replace(
                self.state,
                message=f"Processed {report.successful} of {report.total} images",
            )
        report = build_report(self.state)
        self.log.info("Batch complete: %s", report.message)
        if self.on_batch_complete is not None:
            self.on_batch_complete(report)
