"""
Background replacement providers.

A provider turns a SubmissionRequest into a Submission (the raw service
response plus where it came from) and answers job status queries. Three
shapes exist:

* HttpReplacementProvider: one of the HTTP routes (primary generative fill
  or the mock fill), reached with `requests`.
* ServiceProvider: the same services called in-process, used when the batch
  runs inside the API server itself.
* FallbackProvider: primary first, bounded by the submission timeout, then
  the fallback with the same payload.

SubmissionClient sits on top and adds the deterministic seed.
"""
import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import requests

from showroom.config import settings
from showroom.errors import ProviderError, SubmissionError
from showroom.schemas import JobStatusResponse, SubmissionRequest, SubmissionResponse
from showroom.utils import extract_error_message, optimized_seed, safe_preview

log = logging.getLogger("showroom.submit")

LOG_RESPONSE_PREVIEW_CHARS = 600


@dataclass(frozen=True)
class Submission:
    response: SubmissionResponse
    source: str = "primary"
    used_fallback: bool = False
    primary_error: Optional[str] = None


class BackgroundReplacementProvider(ABC):
    name = "provider"
    source = "primary"

    @abstractmethod
    async def submit(self, request: SubmissionRequest) -> Submission:
        ...

    @abstractmethod
    async def get_status(self, job_id: str) -> JobStatusResponse:
        ...

    def provider_for(self, source: str) -> "BackgroundReplacementProvider":
        """Provider that answers status queries for jobs created by `source`."""
        return self


def _parse_body(resp: requests.Response, name: str) -> dict:
    try:
        body = resp.json()
    except ValueError:
        log.error("[%s] Non-JSON response status=%s body=%s",
                  name, resp.status_code, safe_preview(resp.text, 500))
        raise ProviderError(f"{name} returned a non-JSON response", http_status=resp.status_code)

    err = extract_error_message(body)
    if resp.status_code >= 400 or err:
        message = err or f"{name} returned HTTP {resp.status_code}"
        details = body.get("details") if isinstance(body, dict) else None
        raise ProviderError(
            message,
            http_status=resp.status_code,
            details=details if isinstance(details, dict) else None,
        )
    if not isinstance(body, dict):
        raise ProviderError(f"{name} returned an unexpected body", http_status=resp.status_code)
    return body


class HttpReplacementProvider(BackgroundReplacementProvider):
    """POSTs submissions to `base_url + path` and polls `GET path?jobId=`."""

    def __init__(self, name: str, path: str, *, source: str = "primary",
                 base_url: Optional[str] = None, timeout: Optional[float] = None):
        self.name = name
        self.source = source
        self.url = (base_url or settings.BASE_URL).rstrip("/") + path
        self.timeout = timeout if timeout is not None else settings.SUBMIT_TIMEOUT_SECONDS

    def _post(self, payload: dict) -> SubmissionResponse:
        log.info("[%s] POST %s publicId=%s seed=%s", self.name, self.url,
                 payload.get("publicId"), payload.get("seed"))
        resp = requests.post(self.url, json=payload, timeout=self.timeout)
        log.info("[%s] HTTP status=%s", self.name, resp.status_code)
        body = _parse_body(resp, self.name)
        log.debug("[%s] Response preview: %s", self.name,
                  safe_preview(json.dumps(body), LOG_RESPONSE_PREVIEW_CHARS))
        return SubmissionResponse.model_validate(body)

    def _get(self, job_id: str) -> JobStatusResponse:
        resp = requests.get(self.url, params={"jobId": job_id}, timeout=self.timeout)
        return JobStatusResponse.model_validate(_parse_body(resp, self.name))

    async def submit(self, request: SubmissionRequest) -> Submission:
        payload = request.model_dump(exclude_none=True)
        response = await asyncio.to_thread(self._post, payload)
        return Submission(response=response, source=self.source)

    async def get_status(self, job_id: str) -> JobStatusResponse:
        return await asyncio.to_thread(self._get, job_id)


def primary_http_provider(**kwargs) -> HttpReplacementProvider:
    return HttpReplacementProvider("generative-fill", settings.GENERATIVE_FILL_PATH, source="primary", **kwargs)


def mock_http_provider(**kwargs) -> HttpReplacementProvider:
    return HttpReplacementProvider("mock-fill", settings.MOCK_FILL_PATH, source="mock", **kwargs)


class ServiceProvider(BackgroundReplacementProvider):
    """
    Wraps an in-process service exposing blocking `submit(dict) -> dict` and
    `status(job_id) -> dict` (CloudinaryFillService, MockFillService).
    """

    def __init__(self, name: str, service, *, source: str = "primary"):
        self.name = name
        self.service = service
        self.source = source

    async def submit(self, request: SubmissionRequest) -> Submission:
        body = await asyncio.to_thread(self.service.submit, request.model_dump(exclude_none=True))
        err = extract_error_message(body)
        if err:
            details = body.get("details")
            raise ProviderError(err, details=details if isinstance(details, dict) else None)
        return Submission(response=SubmissionResponse.model_validate(body), source=self.source)

    async def get_status(self, job_id: str) -> JobStatusResponse:
        body = await asyncio.to_thread(self.service.status, job_id)
        return JobStatusResponse.model_validate(body)


class FallbackProvider(BackgroundReplacementProvider):
    """
    Try `primary` under `timeout`; on timeout or any failure send the same
    payload to `fallback`. If the fallback fails too, the primary error is
    the one raised.
    """

    name = "fallback-chain"

    def __init__(self, primary: BackgroundReplacementProvider, fallback: BackgroundReplacementProvider,
                 *, timeout: Optional[float] = None):
        self.primary = primary
        self.fallback = fallback
        self.timeout = timeout if timeout is not None else settings.SUBMIT_TIMEOUT_SECONDS

    async def submit(self, request: SubmissionRequest) -> Submission:
        try:
            return await asyncio.wait_for(self.primary.submit(request), timeout=self.timeout)
        except asyncio.TimeoutError:
            primary_error = ProviderError(
                f"{self.primary.name} timed out after {self.timeout:g}s",
                code="timeout",
            )
        except Exception as e:
            primary_error = e

        log.warning("Primary provider %s failed for publicId=%s (%s); using %s",
                    self.primary.name, request.publicId, primary_error, self.fallback.name)
        try:
            fallback = await self.fallback.submit(request)
        except Exception as e:
            log.error("Fallback provider %s also failed for publicId=%s: %s",
                      self.fallback.name, request.publicId, e)
            raise SubmissionError(str(primary_error), fallback_error=e) from primary_error

        log.warning("publicId=%s served by fallback provider %s", request.publicId, self.fallback.name)
        return Submission(
            response=fallback.response,
            source=fallback.source,
            used_fallback=True,
            primary_error=str(primary_error),
        )

    async def get_status(self, job_id: str) -> JobStatusResponse:
        return await self.primary.get_status(job_id)

    def provider_for(self, source: str) -> BackgroundReplacementProvider:
        if source == self.fallback.source:
            return self.fallback
        return self.primary


class SubmissionClient:
    def __init__(self, provider: BackgroundReplacementProvider):
        self.provider = provider

    async def submit(self, public_id: str, prompt: Optional[str]) -> Submission:
        seed = optimized_seed(public_id, prompt)
        request = SubmissionRequest(publicId=public_id, prompt=prompt or None, seed=seed)
        return await self.provider.submit(request)

    def status_provider(self, source: str) -> BackgroundReplacementProvider:
        return self.provider.provider_for(source)


def default_client(base_url: Optional[str] = None) -> SubmissionClient:
    """Primary generative-fill route with the mock-fill route as fallback."""
    return SubmissionClient(FallbackProvider(
        primary_http_provider(base_url=base_url),
        mock_http_provider(base_url=base_url),
    ))
