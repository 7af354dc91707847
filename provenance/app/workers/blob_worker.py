"""
Blob storage worker.

Signs every blob on the first page of the input container and writes the
credentialed asset to the output container under the same name. Meant to
be launched repeatedly by an external scaler while the input container is
non-empty.

Per blob:
    lease -> download -> sign -> upload -> release lease -> delete input

The input blob is only deleted after a successful upload, so a failed
blob stays in place and is retried on the next launch. A failure on one
blob never stops the others.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, List

from azure.core.exceptions import AzureError
from azure.storage.blob import ContentSettings
from azure.storage.blob.aio import BlobServiceClient

from provenance.app.core.config import Settings
from provenance.app.core.identity import build_credential
from provenance.app.main import build_http_client
from provenance.app.pipeline.orchestrator import ContentCredentialPipeline
from provenance.app.services.azure_api import AzureArtifactSigningClient

logger = logging.getLogger("provenance.blob_worker")

LEASE_DURATION_SECONDS = 60
DEFAULT_PAGE_SIZE = 100
DEFAULT_CONCURRENCY = 4


@dataclass
class WorkerSummary:
    succeeded: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return len(self.succeeded) + len(self.failed)


class BlobSigningWorker:
    def __init__(
        self,
        pipeline: ContentCredentialPipeline,
        input_container: Any,
        output_container: Any,
        *,
        concurrency: int = DEFAULT_CONCURRENCY,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> None:
        self.pipeline = pipeline
        self.input_container = input_container
        self.output_container = output_container
        self.page_size = page_size
        self._slots = asyncio.Semaphore(concurrency)

    async def process_first_page(self) -> WorkerSummary:
        names = await self._first_page_names()
        logger.info("blob_page_listed", extra={"blob_count": len(names)})

        summary = WorkerSummary()
        outcomes = await asyncio.gather(
            *(self._guarded(name) for name in names)
        )
        for name, ok in zip(names, outcomes):
            (summary.succeeded if ok else summary.failed).append(name)
        return summary

    async def process_blob(self, name: str) -> bool:
        """
        Sign one blob. Returns True when the signed copy was uploaded and
        the input deleted.

        Storage errors propagate; pipeline failures are logged and
        reported as False.
        """
        input_blob = self.input_container.get_blob_client(name)
        output_blob = self.output_container.get_blob_client(name)

        logger.info("processing_blob", extra={"blob": name})
        lease = await input_blob.acquire_lease(
            lease_duration=LEASE_DURATION_SECONDS
        )
        try:
            downloader = await input_blob.download_blob(lease=lease)
            data = await downloader.readall()
            content_type = downloader.properties.content_settings.content_type

            result = await self.pipeline.run(data, asset_id=name)
            if not result.succeeded:
                logger.error(
                    "blob_signing_failed",
                    extra={
                        "blob": name,
                        "failure_reason": result.failure_reason.value,
                        "error": result.failure_detail,
                    },
                )
                return False

            await output_blob.upload_blob(
                result.output,
                overwrite=True,
                content_settings=ContentSettings(
                    content_type=content_type or result.manifest.claim.mime_type
                ),
            )
            logger.info("signed_blob_uploaded", extra={"blob": name})
        finally:
            await lease.release()

        await input_blob.delete_blob()
        return True

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _first_page_names(self) -> List[str]:
        pages = self.input_container.list_blobs(
            results_per_page=self.page_size
        ).by_page()
        async for page in pages:
            return [blob.name async for blob in page]
        return []

    async def _guarded(self, name: str) -> bool:
        async with self._slots:
            try:
                ok = await self.process_blob(name)
            except AzureError as exc:
                logger.error(
                    "blob_storage_error",
                    extra={
                        "blob": name,
                        "error_type": type(exc).__name__,
                        "error": str(exc),
                    },
                )
                return False
            except Exception:
                # One broken blob must not drop the rest of the page
                logger.exception("blob_processing_crashed", extra={"blob": name})
                return False

        if ok:
            logger.info("blob_processed", extra={"blob": name})
        return ok


async def run_worker(settings: Settings) -> WorkerSummary:
    """Process one page of the configured input container."""
    missing = [
        name
        for name in ("storage_account", "input_container", "output_container")
        if not getattr(settings, name)
    ]
    if missing:
        raise ValueError(
            "Blob worker requires " + ", ".join(n.upper() for n in missing)
        )

    account_url = f"https://{settings.storage_account}.blob.core.windows.net"
    credential = build_credential(settings.identity_client_id)

    try:
        async with BlobServiceClient(
            account_url, credential=credential
        ) as service, build_http_client() as http_client:
            signer = AzureArtifactSigningClient(
                credential=credential,
                http_client=http_client,
                settings=settings,
            )
            worker = BlobSigningWorker(
                ContentCredentialPipeline.from_settings(settings, signer=signer),
                service.get_container_client(settings.input_container),
                service.get_container_client(settings.output_container),
            )
            summary = await worker.process_first_page()
    finally:
        await credential.close()

    logger.info(
        "blob_worker_finished",
        extra={
            "succeeded": len(summary.succeeded),
            "failed": len(summary.failed),
        },
    )
    return summary
