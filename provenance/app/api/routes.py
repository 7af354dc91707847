import asyncio
import logging
import uuid
from typing import Annotated, Optional

from fastapi import (
    APIRouter,
    Depends,
    Header,
    HTTPException,
    Request,
    status,
)
from fastapi.responses import ORJSONResponse, Response

from provenance.app.core.config import Settings
from provenance.app.core.errors import FailureReason
from provenance.app.pipeline.orchestrator import ContentCredentialPipeline
from provenance.app.verification.verifier import verify_asset

logger = logging.getLogger("provenance.api")

router = APIRouter(prefix="/api", tags=["Content Credentials"])

SUPPORTED_MEDIA_TYPES = {"image/png", "image/jpeg"}

# Pipeline failure reason -> HTTP status
FAILURE_STATUS = {
    FailureReason.FORMAT: status.HTTP_422_UNPROCESSABLE_ENTITY,
    FailureReason.MANIFEST: status.HTTP_422_UNPROCESSABLE_ENTITY,
    FailureReason.EMBEDDING: status.HTTP_422_UNPROCESSABLE_ENTITY,
    FailureReason.SIGNING_TRANSPORT: status.HTTP_502_BAD_GATEWAY,
    FailureReason.SIGNING_AUTHORITY: status.HTTP_502_BAD_GATEWAY,
    FailureReason.TIMEOUT: status.HTTP_504_GATEWAY_TIMEOUT,
    FailureReason.CANCELLED: status.HTTP_503_SERVICE_UNAVAILABLE,
    FailureReason.VALIDATION: status.HTTP_500_INTERNAL_SERVER_ERROR,
}

# =============================================================================
# Dependency providers
# =============================================================================

def get_correlation_id(
    x_correlation_id: Annotated[
        Optional[str],
        Header(description="Trace ID"),
    ] = None,
) -> str:
    """Extract or generate a correlation ID for end-to-end traceability."""
    if x_correlation_id and len(x_correlation_id) > 128:
        return str(uuid.uuid4())
    return x_correlation_id or str(uuid.uuid4())


def get_pipeline(request: Request) -> ContentCredentialPipeline:
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise RuntimeError("pipeline not initialized")
    return pipeline


async def read_bounded_body(
    request: Request,
    correlation_id: Annotated[str, Depends(get_correlation_id)],
) -> bytes:
    """Read the raw request body, refusing anything over the size limit."""
    settings: Settings = request.app.state.settings
    max_bytes = settings.max_asset_size_mb * 1024 * 1024

    chunks = []
    received = 0
    async for chunk in request.stream():
        received += len(chunk)
        if received > max_bytes:
            raise HTTPException(
                status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                detail=f"Asset exceeds the {settings.max_asset_size_mb}MB limit.",
                headers={"X-Correlation-ID": correlation_id},
            )
        chunks.append(chunk)

    body = b"".join(chunks)
    if not body:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Empty asset payload.",
            headers={"X-Correlation-ID": correlation_id},
        )
    return body


def _media_type(content_type: Optional[str]) -> Optional[str]:
    if not content_type:
        return None
    return content_type.split(";", 1)[0].strip().lower()


# =============================================================================
# POST /api/sign
# =============================================================================

@router.post(
    "/sign",
    summary="Embed a signed content credential into an image",
    response_class=Response,
    responses={
        200: {
            "content": {"image/png": {}, "image/jpeg": {}},
            "description": "Asset with an embedded provenance record",
        },
        413: {"description": "Payload too large"},
        415: {"description": "Unsupported media type"},
        422: {"description": "Invalid asset or manifest"},
        502: {"description": "Signing authority failure"},
        504: {"description": "Signing authority timeout"},
    },
)
async def sign_asset(
    pipeline: Annotated[ContentCredentialPipeline, Depends(get_pipeline)],
    correlation_id: Annotated[str, Depends(get_correlation_id)],
    body: Annotated[bytes, Depends(read_bounded_body)],
    content_type: Annotated[Optional[str], Header()] = None,
) -> Response:
    """
    Sign the request body and return the asset with its credential.

    The response body is only produced after the embedded record passed
    self-validation.
    """
    media_type = _media_type(content_type)
    if media_type not in SUPPORTED_MEDIA_TYPES:
        logger.warning(
            "invalid_media_type",
            extra={"content_type": content_type, "trace_id": correlation_id},
        )
        raise HTTPException(
            status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
            detail=f"Supported media types: {sorted(SUPPORTED_MEDIA_TYPES)}",
            headers={"X-Correlation-ID": correlation_id},
        )

    logger.info(
        "initiating_asset_signing",
        extra={
            "trace_id": correlation_id,
            "content_type": media_type,
            "size": len(body),
        },
    )

    result = await pipeline.run(body, asset_id=correlation_id)

    if not result.succeeded:
        raise HTTPException(
            status_code=FAILURE_STATUS[result.failure_reason],
            detail={
                "reason": result.failure_reason.value,
                "message": result.failure_detail,
            },
            headers={"X-Correlation-ID": correlation_id},
        )

    if result.manifest.claim.mime_type != media_type:
        logger.info(
            "content_type_mismatch",
            extra={
                "trace_id": correlation_id,
                "declared": media_type,
                "detected": result.manifest.claim.mime_type,
            },
        )

    return Response(
        content=result.output,
        media_type=result.manifest.claim.mime_type,
        headers={
            "X-Correlation-ID": correlation_id,
            "X-Signer-Backend": "Azure-Artifact-Signing",
            "X-Provenance-Job-ID": result.job_id,
            "X-Provenance-Digest": result.tbs_digest,
        },
    )


# =============================================================================
# POST /api/verify
# =============================================================================

@router.post(
    "/verify",
    summary="Verify the content credential embedded in an image",
)
async def verify_uploaded_asset(
    request: Request,
    correlation_id: Annotated[str, Depends(get_correlation_id)],
    body: Annotated[bytes, Depends(read_bounded_body)],
) -> ORJSONResponse:
    """
    Verification outcome is reported in the body; a failed verification
    is still a 200 response.

    Hashing and signature checks run in a worker thread so large uploads
    do not stall the event loop.
    """
    report = await asyncio.to_thread(
        verify_asset,
        body,
        trust_anchors=getattr(request.app.state, "trust_anchors", ()),
    )

    logger.info(
        "asset_verified",
        extra={
            "trace_id": correlation_id,
            "passed": report.passed,
            "finding_ids": [f.finding_id for f in report.findings],
        },
    )

    return ORJSONResponse(
        content=report.model_dump(mode="json"),
        headers={"X-Correlation-ID": correlation_id},
    )
