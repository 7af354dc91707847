from types import SimpleNamespace

import pytest
from azure.core.exceptions import ResourceNotFoundError

from provenance.app.verification.verifier import verify_asset
from provenance.app.workers.blob_worker import BlobSigningWorker, run_worker
from provenance.tests.fixtures.assets import make_jpeg, make_png
from provenance.tests.fixtures.authority import FakeSigningAuthority, make_settings
from provenance.tests.fixtures.pipeline import make_pipeline

pytestmark = pytest.mark.anyio


# ------------------------------------------------------------------
# In-memory stand-ins for the storage SDK container/blob clients
# ------------------------------------------------------------------

class FakeLease:
    def __init__(self, container, name):
        self.container = container
        self.name = name

    async def release(self):
        self.container.leased.discard(self.name)


class FakeBlobClient:
    def __init__(self, container, name):
        self.container = container
        self.name = name

    async def acquire_lease(self, lease_duration=-1):
        assert self.name not in self.container.leased
        self.container.leased.add(self.name)
        return FakeLease(self.container, self.name)

    async def download_blob(self, lease=None):
        if self.name in self.container.missing:
            raise ResourceNotFoundError(f"{self.name} vanished")
        data, content_type = self.container.blobs[self.name]
        return SimpleNamespace(
            properties=SimpleNamespace(
                content_settings=SimpleNamespace(content_type=content_type)
            ),
            readall=_returning(data),
        )

    async def upload_blob(self, data, overwrite=False, content_settings=None):
        self.container.blobs[self.name] = (data, content_settings.content_type)

    async def delete_blob(self):
        assert self.name not in self.container.leased
        del self.container.blobs[self.name]


class CrashingPipeline:
    """Raises an unexpected error for one asset, signs the rest."""

    def __init__(self, pipeline, crash_on):
        self.pipeline = pipeline
        self.crash_on = crash_on

    async def run(self, data, *, asset_id):
        if asset_id == self.crash_on:
            raise AttributeError("'NoneType' object has no attribute 'encode'")
        return await self.pipeline.run(data, asset_id=asset_id)


def _returning(value):
    async def call():
        return value
    return call


class FakeContainerClient:
    def __init__(self, blobs=None):
        self.blobs = dict(blobs or {})
        self.leased = set()
        self.missing = set()

    def get_blob_client(self, name):
        return FakeBlobClient(self, name)

    def list_blobs(self, results_per_page=None):
        names = sorted(self.blobs)
        size = results_per_page or len(names) or 1

        async def page(chunk):
            for name in chunk:
                yield SimpleNamespace(name=name)

        async def pages():
            for i in range(0, len(names), size):
                yield page(names[i:i + size])

        return SimpleNamespace(by_page=pages)


# ------------------------------------------------------------------
# Tests
# ------------------------------------------------------------------

async def test_signs_and_moves_every_blob_on_the_page():
    source = FakeContainerClient({
        "a.png": (make_png(), "image/png"),
        "b.jpg": (make_jpeg(), "image/jpeg"),
    })
    target = FakeContainerClient()
    worker = BlobSigningWorker(make_pipeline(), source, target)

    summary = await worker.process_first_page()

    assert sorted(summary.succeeded) == ["a.png", "b.jpg"]
    assert summary.failed == []
    assert source.blobs == {}
    assert source.leased == set()
    assert target.blobs["b.jpg"][1] == "image/jpeg"
    for data, _ in target.blobs.values():
        assert verify_asset(data).passed


async def test_failed_blob_stays_in_input_and_others_continue():
    source = FakeContainerClient({
        "good.png": (make_png(), "image/png"),
        "notes.txt": (b"not an image", "text/plain"),
        "gone.png": (make_png(), "image/png"),
    })
    source.missing.add("gone.png")
    target = FakeContainerClient()
    worker = BlobSigningWorker(make_pipeline(), source, target)

    summary = await worker.process_first_page()

    assert summary.succeeded == ["good.png"]
    assert sorted(summary.failed) == ["gone.png", "notes.txt"]
    assert summary.processed == 3
    assert sorted(source.blobs) == ["gone.png", "notes.txt"]
    assert list(target.blobs) == ["good.png"]
    assert source.leased == set()


async def test_unexpected_error_on_one_blob_does_not_stop_the_page():
    source = FakeContainerClient({
        "a.png": (make_png(), "image/png"),
        "b.png": (make_png(color=(0, 90, 0)), "image/png"),
    })
    target = FakeContainerClient()
    worker = BlobSigningWorker(
        CrashingPipeline(make_pipeline(), crash_on="a.png"), source, target
    )

    summary = await worker.process_first_page()

    assert summary.succeeded == ["b.png"]
    assert summary.failed == ["a.png"]
    assert list(source.blobs) == ["a.png"]
    assert list(target.blobs) == ["b.png"]
    assert source.leased == set()


async def test_malformed_authority_response_fails_the_blob_only():
    source = FakeContainerClient({"a.png": (make_png(), "image/png")})
    worker = BlobSigningWorker(
        make_pipeline(FakeSigningAuthority(mode="no_certificate")),
        source,
        FakeContainerClient(),
    )

    summary = await worker.process_first_page()

    assert summary.failed == ["a.png"]
    assert list(source.blobs) == ["a.png"]


async def test_only_the_first_page_is_processed():
    source = FakeContainerClient({
        f"{i}.png": (make_png(color=(i * 40, 0, 0)), "image/png") for i in range(3)
    })
    target = FakeContainerClient()
    worker = BlobSigningWorker(make_pipeline(), source, target, page_size=2)

    summary = await worker.process_first_page()

    assert summary.processed == 2
    assert len(source.blobs) == 1


async def test_empty_container():
    worker = BlobSigningWorker(
        make_pipeline(), FakeContainerClient(), FakeContainerClient()
    )
    summary = await worker.process_first_page()
    assert summary.processed == 0


async def test_worker_requires_storage_settings():
    with pytest.raises(ValueError, match="STORAGE_ACCOUNT"):
        await run_worker(
            make_settings(
                storage_account=None,
                input_container="in",
                output_container="out",
            )
        )
