"""
Simulated generative fill.

Stands in for the real service when it is down or unconfigured: answers with
canned Unsplash photos picked by prompt keyword, sometimes as an async job
to exercise the polling path.
"""
import logging
import random
import time
import uuid
from typing import Any, Dict, List, Optional

from showroom.config import settings
from showroom.errors import ValidationError

log = logging.getLogger("showroom.mock_fill")

_UNSPLASH = "https://images.unsplash.com/{}?q=80&crop=entropy&cs=tinysrgb&fit=crop&fm=jpg&h=900&w=1600"

BACKGROUND_REMOVED = [
    _UNSPLASH.format("photo-1580273916550-e323be2ae537"),
    _UNSPLASH.format("photo-1552519507-da3b142c6e3d"),
]

GENERATIVE_FILL = {
    "luxury car showroom": [
        _UNSPLASH.format("photo-1606664669253-81806922ce4d"),
        _UNSPLASH.format("photo-1602777924012-f8664f4ee67e"),
    ],
    "beach sunset": [
        _UNSPLASH.format("photo-1506953823976-52e1fdc0149a"),
        _UNSPLASH.format("photo-1507525428034-b723cf961d3e"),
    ],
    "city street": [
        _UNSPLASH.format("photo-1505761671935-60b3a7427bad"),
        _UNSPLASH.format("photo-1514924013411-cbf25faa35bb"),
    ],
    "default": [
        _UNSPLASH.format("photo-1542282088-fe8426682b8f"),
        _UNSPLASH.format("photo-1596609548086-85bbf8ddb6b9"),
    ],
}


def mock_urls(prompt: Optional[str], remove_background: bool = False) -> List[str]:
    if remove_background and not prompt:
        return list(BACKGROUND_REMOVED)
    if prompt:
        lowered = prompt.lower()
        for key, urls in GENERATIVE_FILL.items():
            if key != "default" and key in lowered:
                return list(urls)
    return list(GENERATIVE_FILL["default"])


class MockFillService:
    def __init__(self, *, rng: Optional[random.Random] = None, delay: Optional[float] = None,
                 async_rate: Optional[float] = None, complete_rate: Optional[float] = None):
        self.rng = rng or random.Random()
        self.delay = settings.MOCK_DELAY_SECONDS if delay is None else delay
        self.async_rate = settings.MOCK_ASYNC_RATE if async_rate is None else async_rate
        self.complete_rate = settings.MOCK_COMPLETE_RATE if complete_rate is None else complete_rate

    def submit(self, body: Dict[str, Any]) -> Dict[str, Any]:
        public_id = body.get("publicId")
        if not public_id:
            raise ValidationError("Public ID is required")
        prompt = body.get("prompt")
        remove_background = bool(body.get("removeBackground", False))

        log.info("Mock generative fill publicId=%s prompt=%s", public_id, prompt or "none")
        if self.delay > 0:
            time.sleep(self.delay)

        if self.rng.random() < self.async_rate:
            job_id = f"mock_{int(time.time() * 1000)}_{uuid.uuid4().hex[:7]}"
            log.info("Mock job started job=%s", job_id)
            return {
                "status": "processing",
                "jobId": job_id,
                "publicId": public_id,
                "message": "Mock processing job started. This is a simulation.",
            }

        transformations = []
        if remove_background:
            transformations.append({"background_removal": "mock_ai"})
        if prompt:
            transformations.append({"effect": "generative_fill", "prompt": prompt})
        return {
            "status": "completed",
            "urls": mock_urls(prompt, remove_background),
            "publicId": public_id,
            "transformations": transformations,
            "message": "This is a mock response with placeholder images from Unsplash.",
        }

    def status(self, job_id: str) -> Dict[str, Any]:
        if not job_id:
            raise ValidationError("Job ID is required")
        log.info("Mock job status check job=%s", job_id)
        if self.rng.random() < self.complete_rate:
            key = self.rng.choice(sorted(GENERATIVE_FILL))
            return {
                "status": "completed",
                "jobId": job_id,
                "urls": list(GENERATIVE_FILL[key]),
                "message": "Mock job completed successfully. This is a simulation.",
            }
        return {
            "status": "processing",
            "jobId": job_id,
            "message": "Mock job is still processing. This is a simulation.",
        }
