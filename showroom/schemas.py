from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class Image(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    public_id: str = Field(alias="publicId")
    url: str
    processed: bool = False


class ProcessingJob(BaseModel):
    public_id: str
    job_id: str
    status: JobStatus = JobStatus.PENDING
    source: Literal["primary", "mock"] = "primary"
    poll_count: int = 0
    error: Optional[str] = None


class ProcessingResult(BaseModel):
    original: str
    previews: List[str] = Field(default_factory=list)
    error: Optional[str] = None
    job_id: Optional[str] = None
    is_async: bool = False
    used_fallback: bool = False

    @property
    def usable(self) -> bool:
        return bool(self.previews) or self.is_async


# --- wire models shared by the services and the provider clients ---

class SubmissionRequest(BaseModel):
    publicId: Optional[str] = None
    prompt: Optional[str] = None
    seed: Optional[int] = None
    removeBackground: bool = False


class SubmissionResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    status: Optional[str] = None
    urls: Optional[List[str]] = None
    jobId: Optional[str] = None
    publicId: Optional[str] = None
    previewUrl: Optional[str] = None
    generatedUrl: Optional[str] = None
    transformation: Optional[str] = None
    message: Optional[str] = None
    error: Optional[str] = None
    details: Optional[Dict[str, Any]] = None


class JobStatusResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    jobId: Optional[str] = None
    status: Optional[str] = None
    urls: Optional[List[str]] = None
    error: Optional[str] = None
    message: Optional[str] = None


class ListingCreate(BaseModel):
    id: Optional[str] = None
    title: str = ""
    images: List[Image] = Field(default_factory=list)


class ListingCreated(BaseModel):
    id: str
    title: str
    images: List[Image]
    count: int


class ListingImagesUpdate(BaseModel):
    images: List[Image]


class ListingImagesResponse(BaseModel):
    images: List[Image]
    count: int


class BatchRunRequest(BaseModel):
    imageIds: Optional[List[str]] = None
    prompt: Optional[str] = None


class BatchRunAccepted(BaseModel):
    batchId: str
    listingId: str
    total: int
    message: str = "Background processing started"


class JobSummary(BaseModel):
    completed: int = 0
    failed: int = 0
    in_progress: int = 0


class BatchStatusResponse(BaseModel):
    batchId: str
    listingId: str
    status: Literal["processing", "waiting", "completed", "failed", "saved"]
    progress: float
    previews: Dict[str, List[str]]
    selected: Dict[str, str]
    errors: Dict[str, str] = Field(default_factory=dict)
    jobs: JobSummary
    message: Optional[str] = None
    error: Optional[str] = None


class SaveSelectionRequest(BaseModel):
    selections: Optional[Dict[str, str]] = None
