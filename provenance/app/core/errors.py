"""
Error taxonomy for the content-credential signing pipeline.

Every fatal condition raised by the pipeline derives from
ContentCredentialError and carries a FailureReason. The orchestrator
uses the reason to report a structured Failed(reason) result without
inspecting exception types one by one.

Retry policy is expressed by type:
- SigningTransportError is retryable (network-level, bounded)
- SigningAuthorityError is never retried (authority-reported)
- everything else is fatal for the asset being processed
"""

from __future__ import annotations

from enum import Enum


class FailureReason(str, Enum):
    """
    Structured reason reported for a failed asset.
    """

    FORMAT = "format"
    MANIFEST = "manifest"
    SIGNING_TRANSPORT = "signing_transport"
    SIGNING_AUTHORITY = "signing_authority"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    EMBEDDING = "embedding"
    VALIDATION = "validation"


class ContentCredentialError(RuntimeError):
    """Base class for all pipeline failures."""

    reason: FailureReason = FailureReason.VALIDATION


# ----------------------------------------------------------------------
# Container / format
# ----------------------------------------------------------------------

class FormatError(ContentCredentialError):
    """Unsupported or corrupt container. The asset is left untouched."""

    reason = FailureReason.FORMAT


class UnsupportedFormatError(FormatError):
    """The container kind cannot carry a provenance record."""


class CorruptContainerError(FormatError):
    """The container is truncated or structurally invalid."""


class RecordFormatError(FormatError):
    """An embedded provenance record cannot be decoded."""


# ----------------------------------------------------------------------
# Manifest construction
# ----------------------------------------------------------------------

class ManifestError(ContentCredentialError):
    reason = FailureReason.MANIFEST


class MalformedIngredientError(ManifestError):
    """The parent ingredient cannot be established."""


class UnsupportedAssertionError(ManifestError):
    """A configured assertion kind is unknown or malformed."""


class RenditionError(ContentCredentialError):
    """
    Thumbnail generation failed.

    Non-fatal: the builder logs a warning and omits the assertion.
    """

    reason = FailureReason.MANIFEST


# ----------------------------------------------------------------------
# Remote signing
# ----------------------------------------------------------------------

class SigningTransportError(ContentCredentialError):
    """Network-level failure contacting the signing authority."""

    reason = FailureReason.SIGNING_TRANSPORT


class SigningAuthorityError(ContentCredentialError):
    """Authority-reported denial. Never retried."""

    reason = FailureReason.SIGNING_AUTHORITY


class SigningAuthError(SigningAuthorityError):
    pass


class SigningQuotaError(SigningAuthorityError):
    pass


class SigningFailedError(SigningAuthorityError):
    """The signing job reached a terminal failed/expired status."""


class TimestampAuthorityError(SigningAuthorityError):
    """The RFC 3161 timestamp authority refused or returned an unusable token."""


class SigningTimeoutError(ContentCredentialError, TimeoutError):
    """Polling exceeded the configured wait bound."""

    reason = FailureReason.TIMEOUT


class SigningCancelledError(ContentCredentialError):
    """The polling wait was aborted by an external cancellation signal."""

    reason = FailureReason.CANCELLED


# ----------------------------------------------------------------------
# Embedding / validation
# ----------------------------------------------------------------------

class EmbeddingError(ContentCredentialError):
    reason = FailureReason.EMBEDDING


class EncodingError(EmbeddingError):
    """The record exceeds the container's addressable record size."""


class IntegrityValidationError(ContentCredentialError):
    """
    Post-embed self-check mismatch.

    Indicates an internal bug in assembly or embedding. Must be surfaced
    loudly; the output artifact is never written.
    """

    reason = FailureReason.VALIDATION
