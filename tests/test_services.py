import hashlib
import json
import random

import cloudinary.api
import cloudinary.uploader
import pytest
from cloudinary.exceptions import Error as CloudinaryError
from cloudinary.exceptions import NotFound

from showroom.cloudinary_fill import CloudinaryFillService, build_transformation, ready_urls
from showroom.errors import ConflictError, NotFoundError, ProviderError, ValidationError
from showroom.mock_fill import BACKGROUND_REMOVED, GENERATIVE_FILL, MockFillService, mock_urls
from showroom.schemas import Image
from showroom.storage import JobStore, ListingStore, _SqliteStore
from showroom.webhook import InvalidSignature, WebhookHandler, expected_signature


@pytest.fixture
def job_store(tmp_path):
    return JobStore(str(tmp_path / "jobs.sqlite3"))


# --- storage ---

def test_job_store_lifecycle(job_store):
    job_store.create("gen_bg_replace_1_abc", "img1", "e_gen_background_replace")

    assert job_store.get("gen_bg_replace_1_abc")["status"] == "processing"
    assert job_store.latest_processing("img1") == "gen_bg_replace_1_abc"

    assert job_store.set_status("gen_bg_replace_1_abc", "completed", urls=["a.jpg"])
    job = job_store.get("gen_bg_replace_1_abc")
    assert job["status"] == "completed"
    assert job["urls"] == ["a.jpg"]
    assert job_store.latest_processing("img1") is None
    assert not job_store.set_status("unknown", "failed")
    assert job_store.get("unknown") is None


def test_listing_store_replaces_whole_array(tmp_path):
    store = ListingStore(str(tmp_path / "listings.sqlite3"))
    store.create_listing("listing_123", "2023 Honda Civic EX", [
        Image(publicId="a", url="a.jpg"),
        Image(publicId="b", url="b.jpg"),
    ])

    store.replace_images("listing_123", [Image(publicId="b", url="b2.jpg", processed=True)])

    assert store.get_images("listing_123") == [Image(publicId="b", url="b2.jpg", processed=True)]
    assert store.get_images("missing") is None
    with pytest.raises(NotFoundError):
        store.replace_images("missing", [])


def test_listing_store_rejects_duplicate_ids(tmp_path):
    store = ListingStore(str(tmp_path / "listings.sqlite3"))
    store.create_listing("listing_123", "2023 Honda Civic EX")

    with pytest.raises(ConflictError):
        store.create_listing("listing_123", "again")


def test_sqlite_store_base_is_abstract(tmp_path):
    with pytest.raises(TypeError):
        _SqliteStore(str(tmp_path / "x.sqlite3"))


# --- mock fill ---

def test_mock_urls_by_prompt_keyword():
    assert mock_urls("A Luxury Car Showroom at night") == GENERATIVE_FILL["luxury car showroom"]
    assert mock_urls("beach sunset") == GENERATIVE_FILL["beach sunset"]
    assert mock_urls("mountain road") == GENERATIVE_FILL["default"]
    assert mock_urls(None, remove_background=True) == BACKGROUND_REMOVED
    assert mock_urls(None) == GENERATIVE_FILL["default"]


def test_mock_submit_sync_and_async():
    sync = MockFillService(delay=0, async_rate=0).submit({"publicId": "img1", "prompt": "city street"})
    assert sync["status"] == "completed"
    assert sync["urls"] == GENERATIVE_FILL["city street"]

    pending = MockFillService(delay=0, async_rate=1).submit({"publicId": "img1"})
    assert pending["status"] == "processing"
    assert pending["jobId"].startswith("mock_")


def test_mock_submit_requires_public_id():
    with pytest.raises(ValidationError):
        MockFillService(delay=0).submit({"prompt": "x"})


def test_mock_status():
    service = MockFillService(rng=random.Random(7), complete_rate=1)
    done = service.status("mock_1")
    assert done["status"] == "completed"
    assert done["urls"] in GENERATIVE_FILL.values()

    assert MockFillService(complete_rate=0).status("mock_1")["status"] == "processing"


# --- cloudinary generative fill ---

def test_build_transformation():
    assert build_transformation(None, None) == "e_gen_background_replace"
    assert build_transformation("showroom", 42) == "e_gen_background_replace:prompt_showroom;seed_42"
    assert build_transformation("luxury car showroom", None) == \
        "e_gen_background_replace:prompt_luxury%20car%20showroom"


def test_ready_urls_skips_pending_derivatives():
    eager = [
        {"secure_url": "https://res.cloudinary.com/x/a.jpg"},
        {"status": "processing", "secure_url": "https://res.cloudinary.com/x/b.jpg"},
        {"status": "processing"},
    ]
    assert ready_urls(eager) == ["https://res.cloudinary.com/x/a.jpg"]
    assert ready_urls(None) == []


def _service(job_store):
    return CloudinaryFillService(job_store, cloud_name="demo", api_key="key", api_secret="secret",
                                 notification_url="http://svc.test/api/cloudinary/webhook")


@pytest.fixture
def existing_resource(monkeypatch):
    checked = []
    monkeypatch.setattr(cloudinary.api, "resource",
                        lambda public_id, **options: checked.append((public_id, options)) or {"public_id": public_id})
    return checked


def test_cloudinary_submit_async(monkeypatch, job_store, existing_resource):
    calls = []

    def fake_explicit(public_id, **options):
        calls.append((public_id, options))
        return {"public_id": public_id, "eager": [{"status": "processing", "batch_id": "b"}]}

    monkeypatch.setattr(cloudinary.uploader, "explicit", fake_explicit)

    result = _service(job_store).submit({"publicId": "img1", "prompt": "showroom", "seed": 7})

    assert result["status"] == "processing"
    assert result["previewUrl"] == \
        "https://res.cloudinary.com/demo/image/upload/e_gen_background_replace:prompt_showroom;seed_7/img1"
    assert job_store.get(result["jobId"])["status"] == "processing"

    public_id, options = calls[0]
    assert public_id == "img1"
    assert options["type"] == "upload"
    assert options["eager"] == [{"effect": "gen_background_replace:prompt_showroom;seed_7", "format": "jpg", "quality": 80}]
    assert options["eager_async"] is True
    assert options["eager_notification_url"] == "http://svc.test/api/cloudinary/webhook"
    assert options["tags"] == [result["jobId"], "generative-bg-replace", "car-dealer-ai"]
    assert options["cloud_name"] == "demo" and options["api_key"] == "key"
    assert existing_resource[0][0] == "img1"


def test_cloudinary_submit_completed(monkeypatch, job_store, existing_resource):
    monkeypatch.setattr(cloudinary.uploader, "explicit", lambda public_id, **options: {
        "public_id": public_id, "eager": [{"secure_url": "https://res.cloudinary.com/demo/derived.jpg"}],
    })

    result = _service(job_store).submit({"publicId": "img1"})

    assert result["status"] == "completed"
    assert result["urls"] == ["https://res.cloudinary.com/demo/derived.jpg"]
    assert result["transformation"] == "e_gen_background_replace"


def test_cloudinary_missing_image(monkeypatch, job_store):
    def missing(public_id, **options):
        raise NotFound(f"Resource not found - {public_id}")

    monkeypatch.setattr(cloudinary.api, "resource", missing)

    with pytest.raises(NotFoundError) as excinfo:
        _service(job_store).submit({"publicId": "ghost"})
    assert "ghost" in excinfo.value.message


def test_cloudinary_api_error(monkeypatch, job_store, existing_resource):
    def rate_limited(public_id, **options):
        raise CloudinaryError("Rate limit")

    monkeypatch.setattr(cloudinary.uploader, "explicit", rate_limited)

    with pytest.raises(ProviderError) as excinfo:
        _service(job_store).submit({"publicId": "img1", "prompt": "x"})
    assert excinfo.value.details["message"] == "Rate limit"
    assert job_store.latest_processing("img1") is None


def test_cloudinary_unconfigured(job_store):
    service = CloudinaryFillService(job_store, cloud_name="", api_key="", api_secret="")
    with pytest.raises(ProviderError):
        service.submit({"publicId": "img1"})


def test_cloudinary_status_from_store(job_store):
    service = _service(job_store)
    job_store.create("gen_bg_replace_1_a", "img1")
    job_store.create("gen_bg_replace_2_b", "img2")
    job_store.set_status("gen_bg_replace_1_a", "completed", urls=["a.jpg"])
    job_store.set_status("gen_bg_replace_2_b", "failed", error="moderation")

    assert service.status("unknown")["status"] == "processing"
    assert service.status("gen_bg_replace_1_a") == {"jobId": "gen_bg_replace_1_a", "status": "completed", "urls": ["a.jpg"]}
    assert service.status("gen_bg_replace_2_b")["error"] == "moderation"


# --- webhook ---

def test_webhook_completes_job_from_tags(job_store):
    job_store.create("gen_bg_replace_1_a", "img1")
    body = json.dumps({
        "notification_type": "eager",
        "public_id": "img1",
        "tags": ["gen_bg_replace_1_a", "car-dealer-ai"],
        "eager": [{"secure_url": "https://res.cloudinary.com/demo/done.jpg"}],
    })

    reply = WebhookHandler(job_store, verify=False).handle(body, "", "")

    assert reply == {"received": True, "jobId": "gen_bg_replace_1_a"}
    assert job_store.get("gen_bg_replace_1_a")["urls"] == ["https://res.cloudinary.com/demo/done.jpg"]


def test_webhook_error_notification_fails_latest_job(job_store):
    job_store.create("gen_bg_replace_1_a", "img1")
    body = json.dumps({"notification_type": "error", "public_id": "img1", "message": "Generation failed"})

    WebhookHandler(job_store, verify=False).handle(body, "", "")

    job = job_store.get("gen_bg_replace_1_a")
    assert job["status"] == "failed"
    assert job["error"] == "Generation failed"


def test_webhook_signature(job_store):
    body = json.dumps({"notification_type": "upload", "public_id": "img1"})
    handler = WebhookHandler(job_store, verify=True, api_secret="secret")

    with pytest.raises(InvalidSignature):
        handler.handle(body, "1700000000", "bogus")

    good = expected_signature(body, "1700000000", "secret")
    assert good == hashlib.sha1((body + "1700000000secret").encode()).hexdigest()
    assert handler.handle(body, "1700000000", good)["received"]


def test_webhook_rejects_bad_json(job_store):
    with pytest.raises(ValidationError):
        WebhookHandler(job_store, verify=False).handle("not json", "", "")
