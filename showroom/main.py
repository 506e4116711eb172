import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from fastapi import BackgroundTasks, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from showroom.batch import BatchCoordinator, is_done, pending_jobs
from showroom.cloudinary_fill import CloudinaryFillService
from showroom.config import settings
from showroom.errors import BatchProcessingError, ShowroomError, ValidationError
from showroom.logging_config import setup_logging
from showroom.mock_fill import MockFillService
from showroom.poller import JobTracker
from showroom.providers import FallbackProvider, ServiceProvider, SubmissionClient
from showroom.reconciler import SelectionReconciler
from showroom.schemas import (
    BatchRunAccepted,
    BatchRunRequest,
    BatchStatusResponse,
    Image,
    JobStatusResponse,
    ListingCreate,
    ListingCreated,
    ListingImagesResponse,
    ListingImagesUpdate,
    SaveSelectionRequest,
    SubmissionRequest,
    SubmissionResponse,
)
from showroom.storage import JobStore, ListingStore
from showroom.webhook import WebhookHandler

setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger("showroom-api")

app = FastAPI(title="Showroom Background Replacement API")

DATA = Path(settings.DATA_DIR)
DATA.mkdir(parents=True, exist_ok=True)

job_store = JobStore(str(DATA / "jobs.sqlite3"))
listing_store = ListingStore(str(DATA / "listings.sqlite3"))

cloudinary_fill = CloudinaryFillService(job_store)
mock_fill = MockFillService()
webhook = WebhookHandler(job_store)

logger.info(
    "Startup config: base_url=%s data_dir=%s cloudinary_configured=%s webhook_verify=%s",
    settings.BASE_URL,
    settings.DATA_DIR,
    cloudinary_fill.configured,
    webhook.verify,
)


@dataclass
class BatchRun:
    listing_id: str
    images: List[Image]
    coordinator: BatchCoordinator
    saved: bool = False
    finished_at: Optional[float] = None


batch_runs: Dict[str, BatchRun] = {}


def _prune_batch_runs():
    """Drop finished runs older than the TTL. Call from the event loop only."""
    now = time.monotonic()
    for batch_id, run in list(batch_runs.items()):
        if run.finished_at is not None and now - run.finished_at >= settings.BATCH_RUN_TTL_SECONDS:
            run.coordinator.tracker.cancel_all()
            del batch_runs[batch_id]
            logger.info("Batch %s evicted saved=%s", batch_id, run.saved)


def _submission_client() -> SubmissionClient:
    return SubmissionClient(FallbackProvider(
        ServiceProvider("generative-fill", cloudinary_fill, source="primary"),
        ServiceProvider("mock-fill", mock_fill, source="mock"),
    ))


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    req_id = request.headers.get("x-request-id") or f"req_{uuid.uuid4().hex[:10]}"
    request.state.request_id = req_id
    resp = await call_next(request)
    resp.headers["x-request-id"] = req_id
    return resp


@app.exception_handler(ShowroomError)
async def showroom_error_handler(request: Request, exc: ShowroomError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# --- generative fill (primary) ---

@app.post("/api/cloudinary/generative-fill", response_model=SubmissionResponse, response_model_exclude_none=True)
def generative_fill(body: SubmissionRequest):
    logger.info("POST generative-fill publicId=%s has_prompt=%s", body.publicId, bool(body.prompt))
    return cloudinary_fill.submit(body.model_dump(exclude_none=True))


@app.get("/api/cloudinary/generative-fill", response_model=JobStatusResponse, response_model_exclude_none=True)
def generative_fill_status(jobId: Optional[str] = None):
    if not jobId:
        raise HTTPException(status_code=400, detail="Job ID is required")
    return cloudinary_fill.status(jobId)


# --- mock fill (fallback) ---

@app.post("/api/cloudinary/mock-fill", response_model=SubmissionResponse, response_model_exclude_none=True)
def mock_generative_fill(body: SubmissionRequest):
    return mock_fill.submit(body.model_dump(exclude_none=True))


@app.get("/api/cloudinary/mock-fill", response_model=JobStatusResponse, response_model_exclude_none=True)
def mock_fill_status(jobId: Optional[str] = None):
    if not jobId:
        raise HTTPException(status_code=400, detail="Job ID is required")
    return mock_fill.status(jobId)


@app.post("/api/cloudinary/webhook")
async def cloudinary_webhook(request: Request):
    body = (await request.body()).decode("utf-8")
    return await asyncio.to_thread(
        webhook.handle,
        body,
        request.headers.get("x-cld-timestamp", ""),
        request.headers.get("x-cld-signature", ""),
    )


# --- listing images ---

@app.post("/api/listings", response_model=ListingCreated, status_code=201)
def create_listing(body: ListingCreate):
    listing_id = body.id or f"listing_{uuid.uuid4().hex[:8]}"
    images = listing_store.create_listing(listing_id, body.title, body.images)
    logger.info("Listing %s created images=%d", listing_id, len(images))
    return ListingCreated(id=listing_id, title=body.title, images=images, count=len(images))


def _listing_images(listing_id: str) -> List[Image]:
    images = listing_store.get_images(listing_id)
    if images is None:
        raise HTTPException(status_code=404, detail="Listing not found")
    return images


@app.get("/api/listings/{listing_id}/images", response_model=ListingImagesResponse)
def get_listing_images(listing_id: str):
    images = _listing_images(listing_id)
    return ListingImagesResponse(images=images, count=len(images))


@app.put("/api/listings/{listing_id}/images", response_model=ListingImagesResponse)
def put_listing_images(listing_id: str, body: ListingImagesUpdate):
    _listing_images(listing_id)
    images = listing_store.replace_images(listing_id, body.images)
    logger.info("Listing %s images replaced count=%d", listing_id, len(images))
    return ListingImagesResponse(images=images, count=len(images))


# --- server-side batch runs ---

async def run_batch(batch_id: str, prompt: Optional[str]):
    run = batch_runs[batch_id]
    log = logging.getLogger(f"batch.{batch_id}")
    try:
        await run.coordinator.process_batch_background(run.images, prompt)
        await run.coordinator.wait_for_jobs()
    except BatchProcessingError as e:
        log.error("Batch failed: %s", e)
    except Exception as e:
        log.exception("Batch crashed: %s", e)
    finally:
        run.finished_at = time.monotonic()


@app.post("/api/listings/{listing_id}/background-process", response_model=BatchRunAccepted, status_code=202)
async def start_background_process(listing_id: str, body: BatchRunRequest, bg: BackgroundTasks):
    _prune_batch_runs()
    images = await asyncio.to_thread(_listing_images, listing_id)
    if body.imageIds:
        wanted = set(body.imageIds)
        images = [img for img in images if img.public_id in wanted]
    if not images:
        raise ValidationError("No images to process")

    batch_id = f"batch_{uuid.uuid4().hex[:10]}"
    coordinator = BatchCoordinator(
        _submission_client(),
        JobTracker(),
        batch_id=batch_id,
    )
    batch_runs[batch_id] = BatchRun(listing_id=listing_id, images=images, coordinator=coordinator)
    bg.add_task(run_batch, batch_id, body.prompt or settings.DEFAULT_PROMPT)
    logger.info("Batch %s queued listing=%s images=%d", batch_id, listing_id, len(images))
    return BatchRunAccepted(batchId=batch_id, listingId=listing_id, total=len(images))


def _batch_run(listing_id: str, batch_id: str) -> BatchRun:
    run = batch_runs.get(batch_id)
    if run is None or run.listing_id != listing_id:
        raise HTTPException(status_code=404, detail="Batch not found")
    return run


@app.get("/api/listings/{listing_id}/background-process/{batch_id}", response_model=BatchStatusResponse)
async def get_background_process(listing_id: str, batch_id: str):
    _prune_batch_runs()
    run = _batch_run(listing_id, batch_id)
    state = run.coordinator.state
    if run.saved:
        status = "saved"
    elif state.error:
        status = "failed"
    elif state.submitting:
        status = "processing"
    elif pending_jobs(state):
        status = "waiting"
    elif is_done(state) and state.results:
        status = "completed"
    else:
        status = "processing"

    return BatchStatusResponse(
        batchId=batch_id,
        listingId=listing_id,
        status=status,
        progress=state.progress,
        previews=state.previews,
        selected=state.selected,
        errors=state.errors,
        jobs=run.coordinator.tracker.summary(),
        message=state.message,
        error=state.error,
    )


@app.post("/api/listings/{listing_id}/background-process/{batch_id}/save", response_model=ListingImagesResponse)
async def save_background_process(listing_id: str, batch_id: str, body: SaveSelectionRequest):
    _prune_batch_runs()
    run = _batch_run(listing_id, batch_id)
    current = await asyncio.to_thread(_listing_images, listing_id)
    reconciler = SelectionReconciler(listing_id, listing_store)
    images = await run.coordinator.save_batch_selection(current, reconciler, body.selections)
    run.saved = True
    run.finished_at = time.monotonic()
    return ListingImagesResponse(images=images, count=len(images))
