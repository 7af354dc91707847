import asyncio
import hashlib
import warnings
from datetime import timedelta

import httpx
import pytest

from provenance.app.core.errors import (
    SigningAuthError,
    SigningAuthorityError,
    SigningFailedError,
    SigningQuotaError,
    SigningTimeoutError,
    SigningTransportError,
)
from provenance.app.schemas.signing import JobStatus
from provenance.app.services import azure_api
from provenance.app.services.azure_api import AzureArtifactSigningClient
from provenance.tests.fixtures.authority import (
    FakeCredential,
    FakeSigningAuthority,
    make_client,
    make_settings,
)

pytestmark = pytest.mark.anyio

DIGEST = hashlib.sha384(b"to-be-signed").digest()
OTHER_DIGEST = hashlib.sha384(b"something else").digest()


async def test_submit_and_await_returns_signature_and_chain():
    authority = FakeSigningAuthority(pending_polls=2)
    client = make_client(authority)

    job_id = await client.submit(DIGEST)
    job = await client.await_completion(job_id)

    assert job.status is JobStatus.SUCCEEDED
    assert job.digest == DIGEST
    assert job.signature
    assert job.certificate_chain == authority.ca.chain_der
    assert job.authority_timestamp is not None
    assert authority.polls == 3
    assert client.credential.scopes[0] == AzureArtifactSigningClient.TOKEN_SCOPE


async def test_poll_status_is_a_single_check():
    authority = FakeSigningAuthority(pending_polls=5)
    client = make_client(authority)

    job_id = await client.submit(DIGEST)
    job = await client.poll_status(job_id)

    assert job.status is JobStatus.PENDING
    assert authority.polls == 1


async def test_resubmitting_a_pending_digest_returns_the_same_job():
    authority = FakeSigningAuthority(pending_polls=3)
    client = make_client(authority)

    first = await client.submit(DIGEST)
    second = await client.submit(DIGEST)
    other = await client.submit(OTHER_DIGEST)

    assert first == second
    assert other != first
    assert authority.submissions == 2


async def test_concurrent_submissions_of_one_digest_share_a_job():
    authority = FakeSigningAuthority()
    client = make_client(authority)

    job_ids = await asyncio.gather(*(client.submit(DIGEST) for _ in range(5)))

    assert len(set(job_ids)) == 1
    assert authority.submissions == 1


async def test_completed_job_is_retired():
    authority = FakeSigningAuthority(pending_polls=0)
    client = make_client(authority)

    first = await client.sign_digest(DIGEST)
    assert client.outstanding_jobs() == []

    second = await client.sign_digest(DIGEST)
    assert second.job_id != first.job_id
    assert authority.submissions == 2


async def test_transient_errors_are_retried():
    authority = FakeSigningAuthority(transient_failures=2, pending_polls=0)
    client = make_client(authority, make_settings(signing_max_attempts=3))

    job = await client.sign_digest(DIGEST)

    assert job.status is JobStatus.SUCCEEDED
    assert authority.submissions == 1


async def test_exhausted_transient_retries_raise_transport_error():
    authority = FakeSigningAuthority(transient_failures=10)
    client = make_client(authority, make_settings(signing_max_attempts=3))

    with pytest.raises(SigningTransportError):
        await client.submit(DIGEST)
    assert authority.requests == 3


async def test_network_errors_are_retried_then_reported():
    calls = []

    def unreachable(request):
        calls.append(request)
        raise httpx.ConnectError("connection refused", request=request)

    client = AzureArtifactSigningClient(
        credential=FakeCredential(),
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(unreachable)),
        settings=make_settings(signing_max_attempts=2),
    )

    with pytest.raises(SigningTransportError):
        await client.submit(DIGEST)
    assert len(calls) == 2


@pytest.mark.parametrize(
    ("mode", "error"),
    [("unauthorized", SigningAuthError), ("throttled", SigningQuotaError)],
)
async def test_authority_rejections_are_not_retried(mode, error):
    authority = FakeSigningAuthority(mode=mode)
    client = make_client(authority)

    with pytest.raises(error):
        await client.submit(DIGEST)
    assert authority.requests == 1


@pytest.mark.parametrize("mode", ["fail", "expire"])
async def test_terminal_failures_raise_signing_failed(mode):
    authority = FakeSigningAuthority(mode=mode, pending_polls=0)
    client = make_client(authority)

    job_id = await client.submit(DIGEST)
    with pytest.raises(SigningFailedError):
        await client.await_completion(job_id)
    assert client.outstanding_jobs() == []


async def test_pending_job_times_out_within_bound():
    authority = FakeSigningAuthority(mode="pending_forever")
    client = make_client(authority)

    job_id = await client.submit(DIGEST)

    loop = asyncio.get_running_loop()
    started = loop.time()
    with pytest.raises(SigningTimeoutError):
        await client.await_completion(job_id, max_wait=0.3)

    assert loop.time() - started < 1.0
    assert authority.polls >= 2
    assert client.outstanding_jobs() == []


async def test_missing_date_header_leaves_timestamp_unset():
    authority = FakeSigningAuthority(pending_polls=0, date_header=False)
    job = await make_client(authority).sign_digest(DIGEST)
    assert job.authority_timestamp is None


async def test_digest_length_must_match_algorithm():
    client = make_client(FakeSigningAuthority())
    with pytest.raises(ValueError):
        await client.submit(hashlib.sha256(b"x").digest())


async def test_account_and_profile_names_are_validated():
    client = make_client(FakeSigningAuthority())
    with pytest.raises(ValueError):
        await client.submit(DIGEST, account="../other")


@pytest.mark.parametrize("mode", ["no_certificate", "not_an_object"])
async def test_malformed_success_response_is_an_authority_error(mode):
    authority = FakeSigningAuthority(mode=mode, pending_polls=0)
    client = make_client(authority)

    job_id = await client.submit(DIGEST)
    with pytest.raises(SigningAuthorityError):
        await client.await_completion(job_id)
    assert client.outstanding_jobs() == []


async def test_rejected_poll_retires_the_job():
    authority = FakeSigningAuthority(mode="poll_rejected")
    client = make_client(authority)

    first = await client.submit(DIGEST)
    with pytest.raises(SigningAuthorityError):
        await client.await_completion(first)
    assert client.outstanding_jobs() == []

    second = await client.submit(DIGEST)
    assert second != first
    assert authority.submissions == 2


async def test_submit_response_without_operation_id_is_rejected():
    def handler(request):
        return httpx.Response(202, json={"status": "InProgress"})

    client = AzureArtifactSigningClient(
        credential=FakeCredential(),
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        settings=make_settings(),
    )

    with pytest.raises(SigningAuthorityError):
        await client.submit(DIGEST)
    assert client.outstanding_jobs() == []


async def test_stale_jobs_are_pruned_on_submit(monkeypatch):
    authority = FakeSigningAuthority(mode="pending_forever")
    client = make_client(authority)

    abandoned = await client.submit(DIGEST)
    assert client.outstanding_jobs() == [abandoned]

    monkeypatch.setattr(azure_api, "JOB_REUSE_WINDOW", timedelta(0))
    current = await client.submit(OTHER_DIGEST)

    assert client.outstanding_jobs() == [current]
    assert abandoned not in client._jobs


async def test_submission_locks_are_released_after_use():
    client = make_client(FakeSigningAuthority(pending_polls=0))

    await asyncio.gather(
        client.sign_digest(DIGEST),
        client.sign_digest(DIGEST),
        client.sign_digest(OTHER_DIGEST),
    )

    assert client._key_locks == {}
    assert client.outstanding_jobs() == []


async def test_zero_max_wait_is_not_replaced_by_the_default():
    authority = FakeSigningAuthority(mode="pending_forever")
    client = make_client(authority, make_settings(signing_max_wait_seconds=30.0))

    job_id = await client.submit(DIGEST)

    loop = asyncio.get_running_loop()
    started = loop.time()
    with pytest.raises(SigningTimeoutError):
        await client.await_completion(job_id, max_wait=0)

    assert loop.time() - started < 1.0
    assert authority.polls == 1


async def test_backoff_raises_no_deprecation_warnings():
    authority = FakeSigningAuthority(pending_polls=2)
    client = make_client(authority)

    with warnings.catch_warnings():
        warnings.simplefilter("error", DeprecationWarning)
        job = await client.sign_digest(DIGEST)

    assert job.status is JobStatus.SUCCEEDED
