import asyncio
import os
import tempfile

os.environ.setdefault("DATA_DIR", tempfile.mkdtemp(prefix="showroom-test-"))
os.environ.setdefault("MOCK_DELAY_SECONDS", "0")

import pytest

from showroom.providers import BackgroundReplacementProvider, Submission
from showroom.schemas import Image, JobStatusResponse, SubmissionResponse


class FakeProvider(BackgroundReplacementProvider):
    """
    Scripted provider. `responses` maps publicId to a response dict or an
    exception; `statuses` maps jobId to a list of status dicts/exceptions
    consumed in order (the last one repeats).
    """

    def __init__(self, name="fake", source="primary", responses=None, statuses=None, delays=None,
                 default=None):
        self.name = name
        self.source = source
        self.responses = responses or {}
        self.statuses = {k: list(v) for k, v in (statuses or {}).items()}
        self.delays = delays or {}
        self.default = default or {"status": "completed", "urls": [f"https://cdn.test/{name}.jpg"]}
        self.submitted = []
        self.queries = []

    async def submit(self, request):
        self.submitted.append(request)
        delay = self.delays.get(request.publicId)
        if delay:
            await asyncio.sleep(delay)
        response = self.responses.get(request.publicId, self.default)
        if isinstance(response, Exception):
            raise response
        return Submission(response=SubmissionResponse.model_validate(response), source=self.source)

    async def get_status(self, job_id):
        self.queries.append(job_id)
        sequence = self.statuses.get(job_id) or [{"status": "processing"}]
        item = sequence.pop(0) if len(sequence) > 1 else sequence[0]
        if isinstance(item, Exception):
            raise item
        return JobStatusResponse.model_validate(item)


@pytest.fixture
def fake_provider():
    return FakeProvider


@pytest.fixture
def images():
    return [
        Image(publicId="img1", url="https://res.cloudinary.com/demo/image/upload/img1.jpg"),
        Image(publicId="img2", url="https://res.cloudinary.com/demo/image/upload/img2.jpg"),
        Image(publicId="img3", url="https://res.cloudinary.com/demo/image/upload/img3.jpg"),
    ]
