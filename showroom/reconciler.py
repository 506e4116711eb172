import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Mapping, Optional

import requests

from showroom.config import settings
from showroom.errors import PersistenceError
from showroom.schemas import Image
from showroom.utils import extract_error_message, safe_preview

log = logging.getLogger("showroom.reconciler")


def apply_selections(images: List[Image], selections: Mapping[str, str]) -> List[Image]:
    """
    Replace the url of every image that has a selection and flag it as
    processed. Images without a selection are passed through untouched.
    """
    if not selections:
        return list(images)
    return [
        img.model_copy(update={"url": selections[img.public_id], "processed": True})
        if img.public_id in selections else img
        for img in images
    ]


class ListingImageRepository(ABC):
    """Owner of a listing's image array; accepts full replacements only."""

    @abstractmethod
    def replace_images(self, listing_id: str, images: List[Image]) -> List[Image]:
        ...


class HttpListingRepository(ListingImageRepository):
    """PUTs the image array to the listing images route."""

    def __init__(self, base_url: Optional[str] = None, timeout: float = 30):
        self.base_url = (base_url or settings.BASE_URL).rstrip("/")
        self.timeout = timeout

    def replace_images(self, listing_id: str, images: List[Image]) -> List[Image]:
        url = self.base_url + settings.LISTING_IMAGES_PATH.format(listing_id=listing_id)
        payload = {"images": [img.model_dump(by_alias=True) for img in images]}
        log.info("PUT %s images=%d", url, len(images))
        resp = requests.put(url, json=payload, timeout=self.timeout)
        try:
            body = resp.json()
        except ValueError:
            body = None
        if resp.status_code >= 400:
            message = extract_error_message(body) or f"HTTP {resp.status_code}: {safe_preview(resp.text, 200)}"
            raise PersistenceError(f"Failed to save selected images: {message}")
        returned = (body or {}).get("images")
        if isinstance(returned, list):
            return [Image.model_validate(i) for i in returned]
        return images


class SelectionReconciler:
    def __init__(self, listing_id: str, repository: Optional[ListingImageRepository]):
        self.listing_id = listing_id
        self.repository = repository

    async def save_batch_selection(self, images: List[Image], selections: Dict[str, str]) -> List[Image]:
        if self.repository is None:
            raise PersistenceError("Listing image update is not available")

        updated = apply_selections(images, selections)
        try:
            saved = await asyncio.to_thread(self.repository.replace_images, self.listing_id, updated)
        except PersistenceError:
            log.exception("Saving images for listing=%s failed", self.listing_id)
            raise
        except Exception as e:
            log.exception("Saving images for listing=%s failed", self.listing_id)
            raise PersistenceError(f"Failed to save selected images: {e}") from e

        log.info("Listing %s updated: %d selections applied", self.listing_id, len(selections))
        return saved if saved is not None else updated
