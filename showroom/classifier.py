from typing import Optional, Tuple

from showroom.providers import Submission
from showroom.schemas import JobStatus, ProcessingJob, ProcessingResult

UNRECOGNIZED_ERROR = "No preview images were generated or job status not recognized"


def classify_response(public_id: str, submission: Submission) -> Tuple[ProcessingResult, Optional[ProcessingJob]]:
    """
    Map one submission response to a result, plus a job when the service
    answered asynchronously.

    - urls present        -> completed result, no job
    - jobId without urls  -> async result with empty previews, job in `processing`
    - neither             -> failed result
    """
    response = submission.response
    urls = [u for u in (response.urls or []) if u]

    if urls:
        return ProcessingResult(
            original=public_id,
            previews=urls,
            used_fallback=submission.used_fallback,
        ), None

    if response.jobId:
        job = ProcessingJob(
            public_id=public_id,
            job_id=response.jobId,
            status=JobStatus.PROCESSING,
            source=submission.source,
        )
        return ProcessingResult(
            original=public_id,
            previews=[],
            job_id=response.jobId,
            is_async=True,
            used_fallback=submission.used_fallback,
        ), job

    return ProcessingResult(
        original=public_id,
        error=UNRECOGNIZED_ERROR,
        used_fallback=submission.used_fallback,
    ), None
