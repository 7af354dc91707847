"""
Independent verification of an embedded provenance record.

Given only the asset bytes, this module:

1. Locates and decodes the provenance record
2. Checks the claim bytes are canonical and the record sits where the
   claim's content binding says it does
3. Recomputes the content hash over every byte outside the record
4. Recomputes the TBS digest and verifies the signature against the
   leaf certificate
5. Checks that the certificate chain links and that the leaf was valid
   at the recorded signing time
6. Verifies the RFC 3161 timestamp token, when the record carries one
7. When trust anchors are supplied, checks the chain leads to one

No pipeline state is consulted. Without trust anchors, a chain that
links is accepted whatever its root.

Exception handling policy:
    Container and record decoding failures are converted into findings.
    Logic errors (TypeError, AttributeError, ...) propagate.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional, Sequence, Tuple

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.asymmetric.utils import Prehashed

from provenance.app.assets.accessor import extract_record, hash_ranges, hashable_ranges
from provenance.app.core.errors import (
    CorruptContainerError,
    RecordFormatError,
    UnsupportedFormatError,
)
from provenance.app.manifest.canonical import build_tbs, encode_claim
from provenance.app.manifest.record import decode_record
from provenance.app.schemas.manifest import (
    MAX_INGREDIENT_DEPTH,
    Claim,
    IngredientValidation,
    SignedManifest,
    TimestampSource,
)
from provenance.app.schemas.verification_report import (
    Finding,
    Severity,
    VerificationReport,
)
from provenance.app.services.certificates import chain_is_anchored
from provenance.app.services.timestamps import (
    TimestampVerificationError,
    verify_timestamp_token,
)
from provenance.app.utils.hashing import cryptography_hash_for

logger = logging.getLogger("provenance.verifier")


def _critical(finding_id: str, description: str) -> Finding:
    return Finding(
        finding_id=finding_id,
        severity=Severity.CRITICAL,
        description=description,
    )


def _failed(finding: Finding, *, record_present: bool = False) -> VerificationReport:
    return VerificationReport(
        passed=False,
        record_present=record_present,
        findings=[finding],
    )


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def verify_asset(
    data: bytes,
    *,
    expected_digest: Optional[bytes] = None,
    trust_anchors: Sequence[x509.Certificate] = (),
    max_ancestry_depth: int = MAX_INGREDIENT_DEPTH,
) -> VerificationReport:
    """
    Verify the provenance record embedded in an asset.

    expected_digest, when given, is the TBS digest computed before
    signing; the recomputed digest must match it exactly.

    trust_anchors, when given, are the only roots a signing chain may
    lead to; report.trusted stays None without them.
    """
    try:
        location = extract_record(data)
    except UnsupportedFormatError as exc:
        return _failed(_critical("PV-FMT-001", str(exc)))
    except CorruptContainerError as exc:
        return _failed(_critical("PV-FMT-002", str(exc)))

    if location is None:
        return _failed(
            _critical("PV-REC-001", "Asset carries no provenance record")
        )

    try:
        signed = decode_record(location.payload)
    except RecordFormatError as exc:
        return _failed(
            _critical("PV-REC-002", str(exc)),
            record_present=True,
        )

    findings: List[Finding] = []
    claim = signed.claim

    # --------------------------------------------------------------
    # Claim form and record placement
    # --------------------------------------------------------------
    if encode_claim(claim) != signed.claim_bytes:
        findings.append(
            _critical(
                "PV-CLM-001",
                "Claim bytes are not in canonical form",
            )
        )

    binding = claim.content_binding
    placement_ok = binding.exclusion_offset == location.segment.start
    if not placement_ok:
        findings.append(
            _critical(
                "PV-HASH-002",
                f"Record found at offset {location.segment.start}, claim "
                f"binds exclusion at {binding.exclusion_offset}",
            )
        )

    # --------------------------------------------------------------
    # Content hash and TBS digest
    # --------------------------------------------------------------
    try:
        recomputed = hash_ranges(
            data,
            hashable_ranges(len(data), location.segment),
            binding.algorithm,
        )
        signed_tbs = build_tbs(
            signed.claim_bytes, signed.content_hash, signed.algorithm
        )
        recomputed_tbs = build_tbs(
            signed.claim_bytes, recomputed, signed.algorithm
        )
    except ValueError as exc:
        findings.append(_critical("PV-REC-002", str(exc)))
        return VerificationReport(
            passed=False,
            record_present=True,
            claim=claim,
            findings=findings,
        )

    hash_ok = placement_ok and recomputed == signed.content_hash
    if recomputed != signed.content_hash:
        findings.append(
            _critical(
                "PV-HASH-001",
                "Content hash mismatch: bytes outside the provenance "
                "record were modified",
            )
        )

    if expected_digest is not None and recomputed_tbs.digest != expected_digest:
        findings.append(
            _critical(
                "PV-TBS-001",
                "Recomputed TBS digest does not match the digest "
                "submitted for signing",
            )
        )

    # --------------------------------------------------------------
    # Signature and chain
    # --------------------------------------------------------------
    certificates, chain_findings = _load_chain(signed)
    findings.extend(chain_findings)

    signature_ok = False
    if certificates:
        signature_ok = _verify_signature(
            certificates[0], signed, signed_tbs.digest
        )
        if not signature_ok:
            findings.append(
                _critical(
                    "PV-SIG-001",
                    "Signature does not verify against the leaf certificate",
                )
            )
        findings.extend(_check_chain(certificates, signed.signed_at))

    chain_ok = bool(certificates) and not any(
        f.finding_id.startswith("PV-CHN") for f in findings
    )

    # --------------------------------------------------------------
    # Timestamp token and trust anchoring
    # --------------------------------------------------------------
    findings.extend(_check_timestamp(signed))

    trusted = None
    if trust_anchors:
        trusted = chain_is_anchored(certificates, trust_anchors)
        if certificates and not trusted:
            findings.append(
                _critical(
                    "PV-TRU-001",
                    "Certificate chain does not lead to a configured "
                    "trust anchor",
                )
            )

    # --------------------------------------------------------------
    # Ancestry (informational)
    # --------------------------------------------------------------
    if (
        claim.ingredient is not None
        and claim.ingredient.validation_status is IngredientValidation.FAILED
    ):
        findings.append(
            Finding(
                finding_id="PV-ING-001",
                severity=Severity.MAJOR,
                description=(
                    "Parent ingredient is recorded as failed validation"
                ),
            )
        )

    passed = not any(f.severity is Severity.CRITICAL for f in findings)
    if not passed:
        logger.info(
            "provenance_verification_failed",
            extra={"finding_ids": [f.finding_id for f in findings]},
        )

    return VerificationReport(
        passed=passed,
        record_present=True,
        hash_ok=hash_ok,
        signature_ok=signature_ok,
        chain_ok=chain_ok,
        trusted=trusted,
        algorithm=signed.algorithm,
        content_hash=recomputed.hex(),
        tbs_digest=recomputed_tbs.digest.hex(),
        signed_at=signed.signed_at,
        timestamp_source=signed.timestamp_source,
        ancestry_depth=len(walk_ingredients(signed, max_ancestry_depth)),
        claim=claim,
        findings=findings,
    )


def walk_ingredients(
    signed: SignedManifest,
    max_depth: int = MAX_INGREDIENT_DEPTH,
) -> List[Claim]:
    """
    Follow prior-manifest blobs, nearest ancestor first.

    Traversal stops at max_depth, at a truncated ancestor, or at a blob
    that cannot be decoded.
    """
    ancestry: List[Claim] = []
    current = signed.claim
    while (
        len(ancestry) < max_depth
        and current.ingredient is not None
        and current.ingredient.manifest_blob is not None
    ):
        try:
            parent = decode_record(current.ingredient.manifest_blob)
        except RecordFormatError:
            break
        ancestry.append(parent.claim)
        current = parent.claim
    return ancestry


# ----------------------------------------------------------------------
# Internal helpers
# ----------------------------------------------------------------------

def _load_chain(
    signed: SignedManifest,
) -> Tuple[List[x509.Certificate], List[Finding]]:
    certificates = []
    for index, der in enumerate(signed.certificate_chain):
        try:
            certificates.append(x509.load_der_x509_certificate(der))
        except ValueError:
            return [], [
                _critical(
                    "PV-CHN-001",
                    f"Certificate {index} in the chain is not valid DER",
                )
            ]
    return certificates, []


def _verify_signature(
    leaf: x509.Certificate,
    signed: SignedManifest,
    digest: bytes,
) -> bool:
    public_key = leaf.public_key()
    if not isinstance(public_key, rsa.RSAPublicKey):
        return False

    hash_algorithm = cryptography_hash_for(signed.algorithm)
    if signed.algorithm.startswith("PS"):
        pad = padding.PSS(
            mgf=padding.MGF1(hash_algorithm),
            salt_length=padding.PSS.AUTO,
        )
    else:
        pad = padding.PKCS1v15()

    try:
        public_key.verify(
            signed.signature,
            digest,
            pad,
            Prehashed(hash_algorithm),
        )
    except InvalidSignature:
        return False
    return True


def _check_chain(
    certificates: List[x509.Certificate],
    signed_at: datetime,
) -> List[Finding]:
    findings = []

    for index, (child, issuer) in enumerate(zip(certificates, certificates[1:])):
        try:
            child.verify_directly_issued_by(issuer)
        except (ValueError, TypeError, InvalidSignature):
            findings.append(
                _critical(
                    "PV-CHN-001",
                    f"Certificate {index} is not issued by certificate "
                    f"{index + 1}",
                )
            )

    if signed_at.tzinfo is None:
        signed_at = signed_at.replace(tzinfo=timezone.utc)

    leaf = certificates[0]
    if not (leaf.not_valid_before_utc <= signed_at <= leaf.not_valid_after_utc):
        findings.append(
            _critical(
                "PV-CHN-002",
                f"Leaf certificate is not valid at signing time "
                f"{signed_at.isoformat()}",
            )
        )

    return findings


def _check_timestamp(signed: SignedManifest) -> List[Finding]:
    if signed.timestamp_token is None:
        if signed.timestamp_source is TimestampSource.TSA:
            return [
                _critical(
                    "PV-TSA-001",
                    "Record claims a timestamp authority time but carries "
                    "no timestamp token",
                )
            ]
        return []

    try:
        token = verify_timestamp_token(signed.timestamp_token, signed.signature)
    except TimestampVerificationError as exc:
        return [_critical("PV-TSA-001", f"Timestamp token is invalid: {exc}")]

    signed_at = signed.signed_at
    if signed_at.tzinfo is None:
        signed_at = signed_at.replace(tzinfo=timezone.utc)
    if token.gen_time != signed_at:
        return [
            _critical(
                "PV-TSA-001",
                f"Recorded signing time {signed_at.isoformat()} differs from "
                f"the timestamp token time {token.gen_time.isoformat()}",
            )
        ]
    return []
