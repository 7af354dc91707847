"""
Content-credential pipeline orchestrator.

Drives one asset through the signing state machine:

    LOADED -> MANIFEST_BUILT -> SIGNING_SUBMITTED -> SIGNING_COMPLETED
    -> EMBEDDED -> VALIDATED

When a timestamp authority is configured, the signature is countersigned
between SIGNING_COMPLETED and EMBEDDED.

Any ContentCredentialError moves the asset to FAILED(reason). The
signed output is only released after an independent re-verification of
the embedded record succeeds.

Runs are independent: each run() owns its buffers, claim and job. The
signing client (and its HTTP connection pool) is shared.
"""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Sequence

from cryptography import x509

from provenance.app.assets.accessor import open_asset
from provenance.app.core.config import Settings
from provenance.app.core.errors import (
    ContentCredentialError,
    FailureReason,
    FormatError,
    IntegrityValidationError,
    SigningCancelledError,
    SigningTimeoutError,
)
from provenance.app.events import (
    NullEventEmitter,
    PipelineEvent,
    PipelineEventEmitter,
    PipelineEventType,
)
from provenance.app.manifest.assembler import ManifestAssembler
from provenance.app.manifest.builder import BuiltManifest, ManifestBuilder
from provenance.app.manifest.definition import load_manifest_definition
from provenance.app.schemas.manifest import ManifestDefinition
from provenance.app.schemas.pipeline import PipelineResult, PipelineState
from provenance.app.schemas.signing import SigningJob
from provenance.app.services.azure_api import AzureArtifactSigningClient
from provenance.app.services.certificates import load_trust_anchors
from provenance.app.services.timestamps import RFC3161TimestampClient
from provenance.app.verification.verifier import verify_asset

logger = logging.getLogger("provenance.pipeline")

# Extra time granted beyond max_wait for an in-flight poll request to
# return before the wait is abandoned.
DEADLINE_GRACE_SECONDS = 5.0


class _Run:
    """Request-scoped state for one asset."""

    def __init__(self, asset_id: str, emitter: PipelineEventEmitter) -> None:
        self.asset_id = asset_id
        self.emitter = emitter
        self.history: List[PipelineState] = []
        self.job_id: Optional[str] = None
        self.tbs_digest: Optional[str] = None

    @property
    def state(self) -> Optional[PipelineState]:
        return self.history[-1] if self.history else None

    async def advance(self, state: PipelineState, **details) -> None:
        self.history.append(state)
        logger.info(
            "pipeline_state_transition",
            extra={"asset_id": self.asset_id, "state": state.value, **details},
        )
        await self._emit(PipelineEventType(state.value), details)

    async def fail(self, reason: FailureReason, detail: str) -> PipelineResult:
        failed_in = self.state.value if self.state else None
        self.history.append(PipelineState.FAILED)
        logger.error(
            "pipeline_failed",
            extra={
                "asset_id": self.asset_id,
                "failure_reason": reason.value,
                "failed_in": failed_in,
                "job_id": self.job_id,
                "error": detail,
            },
        )
        await self._emit(
            PipelineEventType.FAILED,
            {"reason": reason.value, "failed_in": failed_in},
        )
        return PipelineResult(
            asset_id=self.asset_id,
            state=PipelineState.FAILED,
            history=list(self.history),
            failure_reason=reason,
            failure_detail=detail,
            tbs_digest=self.tbs_digest,
            job_id=self.job_id,
        )

    async def _emit(self, event_type: PipelineEventType, details: dict) -> None:
        try:
            await self.emitter.emit(
                PipelineEvent(
                    asset_id=self.asset_id,
                    event_type=event_type,
                    details=details or None,
                )
            )
        except Exception:
            # Observability never fails the asset
            logger.warning(
                "pipeline_event_emit_failed",
                extra={"asset_id": self.asset_id},
                exc_info=True,
            )


class ContentCredentialPipeline:
    """
    Orchestrates build, remote signing, embedding and self-validation.

    IMPORTANT:
    - The input buffer is never modified
    - Output bytes are only returned in the VALIDATED state
    - No remote cancel is attempted; an abandoned job expires on the
      authority side
    """

    def __init__(
        self,
        *,
        builder: ManifestBuilder,
        signer: AzureArtifactSigningClient,
        assembler: Optional[ManifestAssembler] = None,
        max_wait: Optional[float] = None,
        max_asset_size: Optional[int] = None,
        emitter: Optional[PipelineEventEmitter] = None,
        timestamper: Optional[RFC3161TimestampClient] = None,
        trust_anchors: Sequence[x509.Certificate] = (),
    ) -> None:
        self.builder = builder
        self.signer = signer
        self.timestamper = timestamper
        self.trust_anchors = list(trust_anchors)
        self.assembler = assembler or ManifestAssembler()
        self.max_wait = (
            signer.settings.signing_max_wait_seconds
            if max_wait is None
            else max_wait
        )
        self.max_asset_size = max_asset_size
        self.emitter = emitter or NullEventEmitter()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        signer: AzureArtifactSigningClient,
        definition: Optional[ManifestDefinition] = None,
        emitter: Optional[PipelineEventEmitter] = None,
    ) -> "ContentCredentialPipeline":
        if definition is None:
            definition = load_manifest_definition(settings.manifest_definition)

        trust_anchors = (
            load_trust_anchors(settings.trust_anchors_path)
            if settings.trust_anchors_path
            else []
        )
        builder = ManifestBuilder(
            definition,
            signing_algorithm=settings.algorithm,
            reject_invalid_ingredients=settings.reject_invalid_ingredients,
            trust_anchors=trust_anchors,
        )
        return cls(
            builder=builder,
            signer=signer,
            max_wait=settings.signing_max_wait_seconds,
            max_asset_size=settings.max_asset_size_mb * 1024 * 1024,
            emitter=emitter,
            # Shares the signing client connection pool
            timestamper=RFC3161TimestampClient.from_settings(
                settings, signer.client
            ),
            trust_anchors=trust_anchors,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(
        self,
        data: bytes,
        *,
        asset_id: str,
        cancel_event: Optional[asyncio.Event] = None,
        created_at: Optional[datetime] = None,
        emitter: Optional[PipelineEventEmitter] = None,
    ) -> PipelineResult:
        """
        Sign one asset end to end.

        Pipeline failures are returned as a FAILED result, never raised.
        Task cancellation is recorded as FAILED(cancelled) and then
        propagated to the caller.
        """
        run = _Run(asset_id, emitter or self.emitter)
        try:
            return await self._execute(run, data, cancel_event, created_at)
        except ContentCredentialError as exc:
            return await run.fail(exc.reason, str(exc))
        except asyncio.CancelledError:
            await run.fail(FailureReason.CANCELLED, "pipeline task cancelled")
            raise

    async def sign_file(
        self,
        input_path: Path,
        output_path: Path,
        *,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> PipelineResult:
        """
        Sign a file on disk.

        The output path is written atomically, and only when the run
        reaches VALIDATED. A failed run leaves no file behind.
        """
        input_path = Path(input_path)
        output_path = Path(output_path)

        data = await asyncio.to_thread(input_path.read_bytes)
        result = await self.run(
            data,
            asset_id=input_path.name,
            cancel_event=cancel_event,
        )
        if result.succeeded:
            await asyncio.to_thread(_atomic_write, output_path, result.output)
            logger.info(
                "signed_asset_written",
                extra={"asset_id": result.asset_id, "path": str(output_path)},
            )
        return result

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    async def _execute(
        self,
        run: _Run,
        data: bytes,
        cancel_event: Optional[asyncio.Event],
        created_at: Optional[datetime],
    ) -> PipelineResult:
        if self.max_asset_size is not None and len(data) > self.max_asset_size:
            raise FormatError(
                f"Asset of {len(data)} bytes exceeds the "
                f"{self.max_asset_size} byte limit"
            )

        asset = open_asset(data)
        await run.advance(
            PipelineState.LOADED,
            container=asset.kind.value,
            has_parent=asset.existing_record is not None,
        )

        # CPU-bound (parent verification, thumbnail rendition)
        built: BuiltManifest = await asyncio.to_thread(
            self.builder.build, asset, created_at=created_at
        )
        run.tbs_digest = built.tbs.digest.hex()
        await run.advance(
            PipelineState.MANIFEST_BUILT,
            assertions=len(built.claim.assertions),
            tbs_digest=run.tbs_digest,
        )

        if cancel_event is not None and cancel_event.is_set():
            raise SigningCancelledError("Cancelled before signing submission")

        run.job_id = await self.signer.submit(
            built.tbs.digest,
            correlation_id=run.asset_id,
        )
        await run.advance(PipelineState.SIGNING_SUBMITTED, job_id=run.job_id)

        job = await self._await_signature(run, cancel_event)
        await run.advance(PipelineState.SIGNING_COMPLETED, job_id=run.job_id)

        timestamp = None
        if self.timestamper is not None:
            timestamp = await self.timestamper.timestamp(
                job.signature, correlation_id=run.asset_id
            )

        signed = self.assembler.assemble(
            built=built, job=job, timestamp=timestamp
        )
        output = self.assembler.embed(
            asset=asset,
            insertion=built.insertion,
            signed=signed,
        )
        await run.advance(
            PipelineState.EMBEDDED,
            record_offset=output.record_range.start,
            record_length=output.record_range.length,
        )

        self._self_validate(output.data, built)
        await run.advance(PipelineState.VALIDATED)

        return PipelineResult(
            asset_id=run.asset_id,
            state=PipelineState.VALIDATED,
            history=list(run.history),
            tbs_digest=run.tbs_digest,
            job_id=run.job_id,
            manifest=signed,
            output=output.data,
        )

    async def _await_signature(
        self,
        run: _Run,
        cancel_event: Optional[asyncio.Event],
    ) -> SigningJob:
        """
        Wait for the signing job, racing an optional cancellation signal
        and a hard deadline.
        """
        waiter = asyncio.create_task(
            self.signer.await_completion(
                run.job_id,
                self.max_wait,
                correlation_id=run.asset_id,
            )
        )
        aws = {waiter}
        canceller = None
        if cancel_event is not None:
            canceller = asyncio.create_task(cancel_event.wait())
            aws.add(canceller)

        try:
            done, _ = await asyncio.wait(
                aws,
                timeout=self.max_wait + DEADLINE_GRACE_SECONDS,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            if canceller is not None:
                canceller.cancel()
            if not waiter.done():
                waiter.cancel()

        if waiter in done:
            return waiter.result()

        if canceller is not None and canceller in done:
            logger.warning(
                "signing_wait_cancelled",
                extra={"asset_id": run.asset_id, "job_id": run.job_id},
            )
            raise SigningCancelledError(
                f"Signing wait for job {run.job_id} was cancelled"
            )

        raise SigningTimeoutError(
            f"Signing job {run.job_id} exceeded the "
            f"{self.max_wait}s wait bound"
        )

    def _self_validate(self, output: bytes, built: BuiltManifest) -> None:
        """
        Re-open the output and verify it independently of pipeline state.

        Any mismatch is an internal defect in assembly or embedding, or a
        signing chain outside the configured trust anchors.
        """
        report = verify_asset(
            output,
            expected_digest=built.tbs.digest,
            trust_anchors=self.trust_anchors,
        )
        if not report.passed or report.tbs_digest != built.tbs.digest.hex():
            logger.critical(
                "self_validation_failed",
                extra={
                    "finding_ids": [f.finding_id for f in report.findings],
                    "tbs_digest": built.tbs.digest.hex(),
                },
            )
            raise IntegrityValidationError(
                "Embedded record failed self-validation: "
                + ", ".join(f.finding_id for f in report.findings)
            )


def _atomic_write(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise
