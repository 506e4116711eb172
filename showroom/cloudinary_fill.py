"""
Generative background replacement on Cloudinary.

The derived image is requested through the SDK's `explicit` call as an eager
transformation. Cloudinary either returns the derived asset right away or
processes it in the background and calls our webhook when done; in the
second case a job is recorded in the JobStore and the status route reads it.
"""
import logging
import random
import string
import time
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import cloudinary
import cloudinary.api
import cloudinary.uploader
from cloudinary.exceptions import Error as CloudinaryError
from cloudinary.exceptions import NotFound

from showroom.config import settings
from showroom.errors import NotFoundError, ProviderError, ValidationError
from showroom.storage import JobStore
from showroom.utils import safe_preview

log = logging.getLogger("showroom.cloudinary")

DELIVERY_ROOT = "https://res.cloudinary.com"
APP_TAG = "car-dealer-ai"
_JOB_ALPHABET = string.ascii_lowercase + string.digits


def build_transformation(prompt: Optional[str], seed: Optional[int]) -> str:
    transformation = "e_gen_background_replace"
    if prompt:
        transformation += f":prompt_{quote(prompt, safe='')}"
    if seed:
        transformation += f";seed_{seed}"
    return transformation


def new_job_id() -> str:
    suffix = "".join(random.choice(_JOB_ALPHABET) for _ in range(7))
    return f"gen_bg_replace_{int(time.time() * 1000)}_{suffix}"


def ready_urls(eager: Any) -> List[str]:
    """secure_urls of eager derivatives that are already generated."""
    if not isinstance(eager, list):
        return []
    return [
        item["secure_url"]
        for item in eager
        if isinstance(item, dict) and item.get("secure_url") and item.get("status") != "processing"
    ]


class CloudinaryFillService:
    def __init__(self, store: JobStore, *, cloud_name: Optional[str] = None, api_key: Optional[str] = None,
                 api_secret: Optional[str] = None, notification_url: Optional[str] = None,
                 timeout: Optional[float] = None):
        self.store = store
        self.cloud_name = cloud_name if cloud_name is not None else settings.CLOUDINARY_CLOUD_NAME
        self.api_key = api_key if api_key is not None else settings.CLOUDINARY_API_KEY
        self.api_secret = api_secret if api_secret is not None else settings.CLOUDINARY_API_SECRET
        self.notification_url = notification_url or f"{settings.BASE_URL.rstrip('/')}/api/cloudinary/webhook"
        self.timeout = timeout if timeout is not None else settings.CLOUDINARY_TIMEOUT_SECONDS
        if self.configured:
            cloudinary.config(cloud_name=self.cloud_name, api_key=self.api_key,
                              api_secret=self.api_secret, secure=True)

    @property
    def configured(self) -> bool:
        return bool(self.cloud_name and self.api_key and self.api_secret)

    def _options(self) -> Dict[str, Any]:
        # credentials travel with each call; the SDK config is process-wide
        return {
            "cloud_name": self.cloud_name,
            "api_key": self.api_key,
            "api_secret": self.api_secret,
            "timeout": self.timeout,
        }

    def preview_url(self, public_id: str, transformation: str) -> str:
        return f"{DELIVERY_ROOT}/{self.cloud_name}/image/upload/{transformation}/{public_id}"

    def _ensure_resource(self, public_id: str) -> None:
        try:
            cloudinary.api.resource(public_id, **self._options())
        except NotFound:
            raise NotFoundError(
                f"Image not found in Cloudinary: {public_id}",
                details={
                    "message": "Please upload the image to Cloudinary first before applying transformations",
                    "suggestion": "Check that the correct publicId is being used and that the image was successfully uploaded",
                },
            )
        except CloudinaryError as e:
            raise ProviderError(
                f"Cloudinary resource check failed: {e}",
                details={"message": str(e)},
            ) from e

    def _explicit(self, public_id: str, transformation: str, tags: List[str]) -> Dict[str, Any]:
        log.info("explicit publicId=%s transformation=%s", public_id, transformation)
        try:
            result = cloudinary.uploader.explicit(
                public_id,
                type="upload",
                eager=[{"effect": transformation[len("e_"):], "format": "jpg", "quality": 80}],
                eager_async=True,
                eager_notification_url=self.notification_url,
                tags=tags,
                **self._options(),
            )
        except CloudinaryError as e:
            log.warning("Cloudinary explicit failed publicId=%s: %s", public_id, e)
            raise ProviderError(
                "Failed to process image with Cloudinary",
                details={"message": str(e)},
            ) from e
        log.info("Cloudinary response body=%s", safe_preview(result, 800))
        return dict(result or {})

    def submit(self, body: Dict[str, Any]) -> Dict[str, Any]:
        public_id = body.get("publicId")
        if not public_id:
            raise ValidationError("Public ID is required")
        if not self.configured:
            raise ProviderError("Cloudinary is not configured", code="not_configured")

        prompt = body.get("prompt")
        seed = body.get("seed")
        log.info("Generative background replacement publicId=%s prompt=%s seed=%s",
                 public_id, prompt or "none", seed or "random")

        self._ensure_resource(public_id)

        job_id = new_job_id()
        transformation = build_transformation(prompt, seed)
        preview = self.preview_url(public_id, transformation)
        kind = "generative-bg-replace" if prompt else "auto-bg-replace"
        result = self._explicit(public_id, transformation, [job_id, kind, APP_TAG])

        urls = ready_urls(result.get("eager"))
        if urls:
            return {
                "status": "completed",
                "urls": urls,
                "generatedUrl": preview,
                "publicId": result.get("public_id", public_id),
                "transformation": transformation,
            }

        self.store.create(job_id, public_id, transformation)
        log.info("Job %s recorded as processing", job_id)
        return {
            "status": "processing",
            "jobId": job_id,
            "publicId": public_id,
            "previewUrl": preview,
            "transformation": transformation,
            "message": "Generative background replacement request accepted and is being processed",
        }

    def status(self, job_id: str) -> Dict[str, Any]:
        if not job_id:
            raise ValidationError("Job ID is required")
        job = self.store.get(job_id)
        if job is None or job["status"] == "processing":
            return {
                "jobId": job_id,
                "status": "processing",
                "message": "Job is still being processed. Check back later or wait for webhook notification.",
            }
        if job["status"] == "completed":
            return {"jobId": job_id, "status": "completed", "urls": job["urls"]}
        return {"jobId": job_id, "status": "failed", "error": job["error"] or "Processing failed"}
