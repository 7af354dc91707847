import asyncio
from datetime import datetime, timezone

import pytest

from provenance.app.assets.accessor import extract_record, open_asset
from provenance.app.core.errors import FailureReason
from provenance.app.events import PipelineEvent, PipelineEventType
from provenance.app.manifest.record import decode_record
from provenance.app.pipeline.orchestrator import ContentCredentialPipeline
from provenance.app.schemas.manifest import (
    AssertionDefinition,
    AssertionKind,
    IngredientValidation,
    ManifestDefinition,
    TimestampSource,
)
from provenance.app.schemas.pipeline import PipelineState
from provenance.app.verification.verifier import verify_asset
from provenance.tests.fixtures.assets import flip_last_byte, make_jpeg, make_png
from provenance.tests.fixtures.authority import (
    FakeSigningAuthority,
    certificate_authority,
)
from provenance.tests.fixtures.pipeline import make_pipeline, sign_bytes
from provenance.tests.fixtures.timestamps import (
    FakeTimestampAuthority,
    make_timestamper,
    time_stamping_identity,
)

pytestmark = pytest.mark.anyio

HAPPY_PATH = [
    PipelineState.LOADED,
    PipelineState.MANIFEST_BUILT,
    PipelineState.SIGNING_SUBMITTED,
    PipelineState.SIGNING_COMPLETED,
    PipelineState.EMBEDDED,
    PipelineState.VALIDATED,
]


class ListEmitter:
    def __init__(self):
        self.events: list[PipelineEvent] = []

    async def emit(self, event: PipelineEvent) -> None:
        self.events.append(event)


# ------------------------------------------------------------------
# End to end
# ------------------------------------------------------------------

async def test_still_image_end_to_end():
    data = make_png()
    result = await make_pipeline().run(data, asset_id="example.png")

    assert result.state is PipelineState.VALIDATED
    assert result.history == HAPPY_PATH
    assert result.failure_reason is None

    claim = result.manifest.claim
    assert claim.ingredient is None
    assert [a.kind for a in claim.assertions] == [
        AssertionKind.THUMBNAIL,
        AssertionKind.CUSTOM,
    ]

    # Bytes outside the record are the input, untouched
    location = extract_record(result.output)
    r = location.segment
    assert result.output[:r.start] + result.output[r.end:] == data

    report = verify_asset(result.output)
    assert report.passed
    assert report.tbs_digest == result.tbs_digest
    assert result.manifest.timestamp_source is TimestampSource.AUTHORITY


async def test_jpeg_end_to_end():
    result = await make_pipeline().run(make_jpeg(), asset_id="example.jpg")
    assert result.succeeded
    assert result.manifest.claim.mime_type == "image/jpeg"


async def test_local_time_is_used_without_authority_timestamp():
    authority = FakeSigningAuthority(date_header=False)
    result = await make_pipeline(authority).run(make_png(), asset_id="a")

    assert result.succeeded
    assert result.manifest.timestamp_source is TimestampSource.LOCAL


async def test_timestamp_authority_time_is_recorded_and_embedded():
    tsa = FakeTimestampAuthority()
    pipeline = make_pipeline(timestamper=make_timestamper(tsa))
    result = await pipeline.run(make_png(), asset_id="stamped.png")

    assert result.succeeded, result.failure_detail
    assert result.history == HAPPY_PATH
    assert result.manifest.timestamp_source is TimestampSource.TSA
    assert result.manifest.timestamp_token == tsa.issued[0]

    embedded = decode_record(extract_record(result.output).payload)
    assert embedded.timestamp_token == tsa.issued[0]
    assert embedded.signed_at == result.manifest.signed_at

    report = verify_asset(result.output)
    assert report.passed
    assert report.timestamp_source is TimestampSource.TSA


async def test_timestamp_refusal_fails_the_run():
    authority = FakeSigningAuthority()
    tsa = FakeTimestampAuthority(mode="reject")
    result = await make_pipeline(
        authority, timestamper=make_timestamper(tsa)
    ).run(make_png(), asset_id="x")

    assert result.failure_reason is FailureReason.SIGNING_AUTHORITY
    assert result.history[-2:] == [
        PipelineState.SIGNING_COMPLETED,
        PipelineState.FAILED,
    ]
    assert result.output is None
    assert authority.submissions == 1


async def test_chain_outside_the_trust_anchors_fails_validation():
    untrusted = make_pipeline(trust_anchors=[time_stamping_identity()[0]])
    result = await untrusted.run(make_png(), asset_id="x")

    assert result.failure_reason is FailureReason.VALIDATION
    assert "PV-TRU-001" in result.failure_detail
    assert result.output is None

    trusted = make_pipeline(trust_anchors=[certificate_authority().root])
    assert (await trusted.run(make_png(), asset_id="x")).succeeded


async def test_same_input_produces_same_claim_and_digest():
    data = make_png()
    created_at = datetime(2024, 1, 1, tzinfo=timezone.utc)

    first = await make_pipeline().run(data, asset_id="a", created_at=created_at)
    second = await make_pipeline().run(data, asset_id="a", created_at=created_at)

    assert first.tbs_digest == second.tbs_digest
    assert first.manifest.claim_bytes == second.manifest.claim_bytes


async def test_events_follow_state_transitions():
    emitter = ListEmitter()
    result = await make_pipeline().run(make_png(), asset_id="evt", emitter=emitter)

    assert result.succeeded
    assert [e.event_type.value for e in emitter.events] == [
        s.value for s in HAPPY_PATH
    ]
    assert all(e.asset_id == "evt" for e in emitter.events)
    submitted = emitter.events[2]
    assert submitted.details["job_id"] == result.job_id


# ------------------------------------------------------------------
# Failures
# ------------------------------------------------------------------

async def test_unsupported_input_fails_with_format():
    result = await make_pipeline().run(b"GIF89a not supported", asset_id="x")

    assert result.state is PipelineState.FAILED
    assert result.failure_reason is FailureReason.FORMAT
    assert result.history == [PipelineState.FAILED]
    assert result.output is None


async def test_oversized_input_fails_with_format():
    pipeline = make_pipeline(max_asset_size_mb=1)
    result = await pipeline.run(b"\x89PNG\r\n\x1a\n" + b"\x00" * (1024 * 1024), asset_id="big")
    assert result.failure_reason is FailureReason.FORMAT


async def test_unknown_assertion_fails_with_manifest():
    definition = ManifestDefinition(
        assertions=[AssertionDefinition(kind="nonsense", data={"a": 1})]
    )
    authority = FakeSigningAuthority()
    result = await make_pipeline(authority, definition=definition).run(
        make_png(), asset_id="x"
    )

    assert result.failure_reason is FailureReason.MANIFEST
    assert result.history == [PipelineState.LOADED, PipelineState.FAILED]
    assert authority.requests == 0


@pytest.mark.parametrize(
    ("mode", "reason"),
    [
        ("fail", FailureReason.SIGNING_AUTHORITY),
        ("unauthorized", FailureReason.SIGNING_AUTHORITY),
        ("throttled", FailureReason.SIGNING_AUTHORITY),
        ("poll_rejected", FailureReason.SIGNING_AUTHORITY),
        ("no_certificate", FailureReason.SIGNING_AUTHORITY),
        ("not_an_object", FailureReason.SIGNING_AUTHORITY),
    ],
)
async def test_authority_failures(mode, reason):
    authority = FakeSigningAuthority(mode=mode)
    result = await make_pipeline(authority).run(make_png(), asset_id="x")

    assert result.failure_reason is reason
    assert result.output is None


async def test_unreachable_authority_fails_with_transport():
    authority = FakeSigningAuthority(transient_failures=100)
    result = await make_pipeline(authority, signing_max_attempts=2).run(
        make_png(), asset_id="x"
    )
    assert result.failure_reason is FailureReason.SIGNING_TRANSPORT


async def test_pending_job_fails_with_timeout_within_bound():
    authority = FakeSigningAuthority(mode="pending_forever")
    pipeline = make_pipeline(authority, signing_max_wait_seconds=0.3)

    loop = asyncio.get_running_loop()
    started = loop.time()
    result = await pipeline.run(make_png(), asset_id="slow")

    assert result.failure_reason is FailureReason.TIMEOUT
    assert result.history[-2:] == [
        PipelineState.SIGNING_SUBMITTED,
        PipelineState.FAILED,
    ]
    assert loop.time() - started < 2.0


async def test_zero_max_wait_is_honoured():
    authority = FakeSigningAuthority(mode="pending_forever")
    configured = make_pipeline(authority, signing_max_wait_seconds=30.0)
    pipeline = ContentCredentialPipeline(
        builder=configured.builder,
        signer=configured.signer,
        max_wait=0,
    )
    assert pipeline.max_wait == 0

    loop = asyncio.get_running_loop()
    started = loop.time()
    result = await pipeline.run(make_png(), asset_id="impatient")

    assert result.failure_reason is FailureReason.TIMEOUT
    assert authority.polls == 1
    assert loop.time() - started < 2.0


async def test_record_too_large_fails_with_embedding():
    # A JPEG APP11 segment holds at most ~64 KiB
    definition = ManifestDefinition(
        thumbnail=False,
        assertions=[AssertionDefinition(kind="custom", data={"blob": "x" * 70000})],
    )
    data = make_jpeg()
    result = await make_pipeline(definition=definition).run(data, asset_id="x")

    assert result.failure_reason is FailureReason.EMBEDDING
    assert result.history[-2:] == [
        PipelineState.SIGNING_COMPLETED,
        PipelineState.FAILED,
    ]
    assert result.output is None


# ------------------------------------------------------------------
# Cancellation
# ------------------------------------------------------------------

async def test_cancel_event_aborts_the_wait():
    authority = FakeSigningAuthority(mode="pending_forever")
    pipeline = make_pipeline(authority, signing_max_wait_seconds=10.0)
    cancel_event = asyncio.Event()

    asyncio.get_running_loop().call_later(0.1, cancel_event.set)
    result = await pipeline.run(make_png(), asset_id="c", cancel_event=cancel_event)

    assert result.failure_reason is FailureReason.CANCELLED
    assert result.history[-2:] == [
        PipelineState.SIGNING_SUBMITTED,
        PipelineState.FAILED,
    ]
    assert result.job_id is not None


async def test_task_cancellation_is_recorded_and_propagated():
    authority = FakeSigningAuthority(mode="pending_forever")
    pipeline = make_pipeline(authority, signing_max_wait_seconds=10.0)
    emitter = ListEmitter()

    task = asyncio.create_task(
        pipeline.run(make_png(), asset_id="t", emitter=emitter)
    )
    while authority.polls == 0:
        await asyncio.sleep(0.01)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task

    last = emitter.events[-1]
    assert last.event_type is PipelineEventType.FAILED
    assert last.details["reason"] == FailureReason.CANCELLED.value


# ------------------------------------------------------------------
# Idempotency and concurrency
# ------------------------------------------------------------------

async def test_concurrent_runs_of_one_asset_share_one_job():
    authority = FakeSigningAuthority(pending_polls=3)
    pipeline = make_pipeline(authority)
    data = make_png()
    created_at = datetime(2024, 1, 1, tzinfo=timezone.utc)

    first, second = await asyncio.gather(
        pipeline.run(data, asset_id="a", created_at=created_at),
        pipeline.run(data, asset_id="b", created_at=created_at),
    )

    assert first.succeeded and second.succeeded
    assert first.job_id == second.job_id
    assert authority.submissions == 1


async def test_concurrent_runs_are_isolated():
    authority = FakeSigningAuthority(pending_polls=2)
    pipeline = make_pipeline(authority)
    inputs = {
        "red.png": make_png(color=(255, 0, 0)),
        "green.png": make_png(color=(0, 255, 0)),
        "blue.jpg": make_jpeg(color=(0, 0, 255)),
    }

    results = await asyncio.gather(
        *(pipeline.run(data, asset_id=name) for name, data in inputs.items())
    )

    assert all(r.succeeded for r in results)
    assert len({r.job_id for r in results}) == 3
    for result, data in zip(results, inputs.values()):
        r = extract_record(result.output).segment
        assert result.output[:r.start] + result.output[r.end:] == data
        assert verify_asset(result.output).tbs_digest == result.tbs_digest


# ------------------------------------------------------------------
# Ingredients
# ------------------------------------------------------------------

async def test_signing_a_signed_asset_records_a_valid_parent():
    parent = await sign_bytes(make_png())
    result = await make_pipeline().run(parent, asset_id="child")

    assert result.succeeded
    ingredient = result.manifest.claim.ingredient
    assert ingredient.validation_status is IngredientValidation.VALID
    assert ingredient.chain_depth == 1
    assert ingredient.manifest_blob == open_asset(parent).existing_record

    # Exactly one record, replacing the parent's
    assert open_asset(result.output).existing_record is not None
    report = verify_asset(result.output)
    assert report.passed
    assert report.ancestry_depth == 1


async def test_ancestry_depth_grows_across_generations():
    data = make_png()
    for _ in range(3):
        data = await sign_bytes(data)

    report = verify_asset(data)
    assert report.passed
    assert report.claim.ingredient.chain_depth == 2
    assert report.ancestry_depth == 2


async def test_tampered_parent_is_flagged():
    no_thumbnail = ManifestDefinition(thumbnail=False)
    parent = flip_last_byte(await sign_bytes(make_png(), definition=no_thumbnail))

    result = await make_pipeline(definition=no_thumbnail).run(parent, asset_id="c")

    assert result.succeeded
    ingredient = result.manifest.claim.ingredient
    assert ingredient.validation_status is IngredientValidation.FAILED
    assert any("PV-HASH-001" in e for e in ingredient.validation_errors)

    report = verify_asset(result.output)
    assert report.passed
    assert report.has_finding("PV-ING-001")


async def test_tampered_parent_can_be_rejected():
    no_thumbnail = ManifestDefinition(thumbnail=False)
    parent = flip_last_byte(await sign_bytes(make_png(), definition=no_thumbnail))

    authority = FakeSigningAuthority()
    result = await make_pipeline(
        authority,
        definition=no_thumbnail,
        reject_invalid_ingredients=True,
    ).run(parent, asset_id="c")

    assert result.failure_reason is FailureReason.MANIFEST
    assert authority.requests == 0


# ------------------------------------------------------------------
# Files
# ------------------------------------------------------------------

async def test_sign_file_writes_only_validated_output(tmp_path):
    source = tmp_path / "in.png"
    source.write_bytes(make_png())
    target = tmp_path / "out" / "signed.png"

    result = await make_pipeline().sign_file(source, target)

    assert result.succeeded
    assert target.read_bytes() == result.output
    assert verify_asset(target.read_bytes()).passed
    assert sorted(p.name for p in target.parent.iterdir()) == ["signed.png"]


async def test_failed_sign_file_leaves_no_output(tmp_path):
    source = tmp_path / "in.png"
    source.write_bytes(make_png())
    target = tmp_path / "signed.png"

    authority = FakeSigningAuthority(mode="fail")
    result = await make_pipeline(authority).sign_file(source, target)

    assert not result.succeeded
    assert not target.exists()
