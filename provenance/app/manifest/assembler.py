"""
Manifest assembly and embedding.

Combines the unsigned claim, the signature, the certificate chain, the
signing time and the optional RFC 3161 token into a SignedManifest,
encodes it as a provenance record, and hands it to the asset accessor
for embedding.

The assembled structure is independently verifiable: the record carries
everything a verifier needs (claim bytes, content hash, algorithm,
signature, chain, time, token) and nothing that depends on pipeline state.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from provenance.app.assets.accessor import (
    InsertionSpec,
    MediaAsset,
    OutputAsset,
    write_with_record,
)
from provenance.app.core.errors import EncodingError, SigningFailedError
from provenance.app.manifest.builder import BuiltManifest
from provenance.app.manifest.record import encode_record
from provenance.app.schemas.manifest import SignedManifest, TimestampSource
from provenance.app.schemas.signing import JobStatus, SigningJob
from provenance.app.services.timestamps import TimestampToken

logger = logging.getLogger("provenance.assembler")


class ManifestAssembler:
    def assemble(
        self,
        *,
        built: BuiltManifest,
        job: SigningJob,
        timestamp: Optional[TimestampToken] = None,
        now: Optional[datetime] = None,
    ) -> SignedManifest:
        """
        Bind claim, signature, chain and timestamp.

        The signing time comes from the RFC 3161 token when one was
        obtained, then from the authority response, and only then from
        the local UTC clock (or the injected `now`).
        """
        if job.status is not JobStatus.SUCCEEDED or not job.signature:
            raise SigningFailedError(
                f"Signing job {job.job_id} has no signature "
                f"(status={job.status.value})"
            )
        if not job.certificate_chain:
            raise SigningFailedError(
                f"Signing job {job.job_id} returned no certificate chain"
            )
        if job.digest and job.digest != built.tbs.digest:
            raise SigningFailedError(
                f"Signing job {job.job_id} signed a different digest"
            )

        if timestamp is not None:
            signed_at = timestamp.gen_time
            source = TimestampSource.TSA
        elif job.authority_timestamp is not None:
            signed_at = job.authority_timestamp
            source = TimestampSource.AUTHORITY
        else:
            signed_at = now or datetime.now(timezone.utc)
            source = TimestampSource.LOCAL

        return SignedManifest(
            claim=built.claim,
            claim_bytes=built.tbs.claim_bytes,
            content_hash=built.tbs.content_hash,
            algorithm=built.tbs.algorithm,
            signature=job.signature,
            certificate_chain=job.certificate_chain,
            signed_at=signed_at,
            timestamp_source=source,
            timestamp_token=timestamp.token if timestamp is not None else None,
        )

    def encode(self, signed: SignedManifest) -> bytes:
        return encode_record(signed)

    def embed(
        self,
        *,
        asset: MediaAsset,
        insertion: InsertionSpec,
        signed: SignedManifest,
    ) -> OutputAsset:
        """
        Embed the encoded record.

        Raises EncodingError, leaving the asset unmodified, when the record
        exceeds the container's addressable record size.
        """
        record = self.encode(signed)
        capacity = asset.handler.max_payload_size
        if len(record) > capacity:
            logger.error(
                "provenance_record_too_large",
                extra={
                    "record_size": len(record),
                    "capacity": capacity,
                    "container": asset.kind.value,
                },
            )
            raise EncodingError(
                f"Provenance record of {len(record)} bytes exceeds the "
                f"{asset.kind.value} record capacity of {capacity} bytes"
            )

        return write_with_record(asset, insertion, record)
