import hmac
import json
import logging
from typing import Any, Dict, List, Optional

from cloudinary.utils import compute_hex_hash

from showroom.config import settings
from showroom.errors import ShowroomError, ValidationError
from showroom.storage import JobStore

log = logging.getLogger("showroom.webhook")

JOB_TAG_PREFIX = "gen_bg_replace_"


class InvalidSignature(ShowroomError):
    default_code = "invalid_signature"
    status_code = 403


def expected_signature(body: str, timestamp: str, api_secret: str) -> str:
    return compute_hex_hash(body + timestamp + api_secret)


def verify_signature(body: str, timestamp: str, signature: str, api_secret: str) -> bool:
    if not api_secret:
        log.error("CLOUDINARY_API_SECRET is not set; cannot verify webhook")
        return False
    return hmac.compare_digest(expected_signature(body, timestamp, api_secret), signature or "")


class WebhookHandler:
    """Resolves async generative-fill jobs from Cloudinary notifications."""

    def __init__(self, store: JobStore, *, verify: Optional[bool] = None, api_secret: Optional[str] = None):
        self.store = store
        self.verify = settings.WEBHOOK_VERIFY if verify is None else verify
        self.api_secret = api_secret if api_secret is not None else settings.CLOUDINARY_API_SECRET

    def handle(self, body: str, timestamp: str, signature: str) -> Dict[str, Any]:
        log.info("Cloudinary webhook received timestamp=%s has_signature=%s body_length=%d",
                 timestamp, bool(signature), len(body))
        if self.verify and not verify_signature(body, timestamp, signature, self.api_secret):
            log.error("Invalid Cloudinary webhook signature")
            raise InvalidSignature("Invalid signature")

        try:
            data = json.loads(body)
        except ValueError:
            raise ValidationError("Invalid JSON in webhook body")
        if not isinstance(data, dict):
            raise ValidationError("Webhook body must be an object")

        kind = data.get("notification_type")
        log.info("Cloudinary notification type: %s", kind)
        job_id = self._job_id(data)

        if kind in ("eager", "generation"):
            urls = self._urls(data)
            if job_id and urls:
                self.store.set_status(job_id, "completed", urls=urls)
                log.info("Job %s completed from webhook urls=%d", job_id, len(urls))
            elif job_id:
                self.store.set_status(job_id, "failed", error="No result URLs received from processing")
        elif kind == "error":
            message = data.get("message") or data.get("error") or "Processing failed"
            if isinstance(message, dict):
                message = message.get("message") or json.dumps(message)
            log.error("Cloudinary processing error publicId=%s: %s", data.get("public_id"), message)
            if job_id:
                self.store.set_status(job_id, "failed", error=str(message))
        else:
            log.info("Unhandled notification type: %s", kind)

        return {"received": True, "jobId": job_id}

    def _job_id(self, data: Dict[str, Any]) -> Optional[str]:
        for tag in data.get("tags") or []:
            if isinstance(tag, str) and tag.startswith(JOB_TAG_PREFIX):
                return tag
        public_id = data.get("public_id")
        if public_id:
            return self.store.latest_processing(public_id)
        return None

    @staticmethod
    def _urls(data: Dict[str, Any]) -> List[str]:
        eager = data.get("eager") or []
        urls = [e.get("secure_url") for e in eager if isinstance(e, dict) and e.get("secure_url")]
        if not urls and data.get("secure_url"):
            urls = [data["secure_url"]]
        return urls
