import asyncio
import base64
import binascii
import logging
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Annotated, Any, AsyncIterator, Optional

import httpx
from azure.core.exceptions import ClientAuthenticationError
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    stop_before_delay,
    wait_exponential,
    wait_random,
)

from provenance.app.core.config import Settings
from provenance.app.core.errors import (
    SigningAuthError,
    SigningAuthorityError,
    SigningFailedError,
    SigningQuotaError,
    SigningTimeoutError,
    SigningTransportError,
)
from provenance.app.schemas.signing import JobStatus, SigningJob
from provenance.app.services.certificates import parse_certificate_chain

logger = logging.getLogger("provenance.azure_api")


class SigningPending(RuntimeError):
    """
    Internal sentinel exception for Azure async-in-progress states.

    Raised when Azure reports an operation status such as:
    - inProgress
    - running
    - notStarted

    This exception is explicitly retryable.
    """


class _TransientStatus(RuntimeError):
    """Retryable HTTP status (5xx / 408) from the authority."""

    def __init__(self, response: httpx.Response):
        super().__init__(f"transient_status:{response.status_code}")
        self.response = response


_PENDING_STATUSES = {"inprogress", "running", "notstarted", "accepted", ""}
_EXPIRED_STATUSES = {"timedout", "expired", "notfound", "canceled", "cancelled"}

# Azure keeps signing operations for a limited time. A pending job older
# than this is not reused for a new submission of the same digest.
JOB_REUSE_WINDOW = timedelta(minutes=10)


@dataclass
class _JobEntry:
    key: str
    resource_path: str
    job: SigningJob


class AzureArtifactSigningClient:
    """
    Async client for the Azure Artifact Signing *data plane*.

    HARD GUARANTEES:
    - Signs DIGESTS ONLY (never raw data)
    - Delegates all private-key operations to Azure-managed HSMs
    - Pinned to API version 2022-06-15-preview
    - At most one outstanding job per (account, profile, digest)

    The client is re-entrant: concurrent pipeline runs share one instance
    and one HTTP connection pool; all job state is keyed by digest and
    job id, so runs never observe each other's jobs.

    Protocol:
        submit()            POST .../sign          -> operation id
        poll_status()       GET  .../sign/{id}     -> SigningJob (one check)
        await_completion()  poll with exponential backoff + jitter until a
                            terminal status or max_wait
    """

    TOKEN_SCOPE = "https://codesigning.azure.net/.default"

    # API version is pinned for stability and compatibility.
    API_VERSION = "2022-06-15-preview"

    _ALGO_TO_DIGEST_LEN = {
        # Azure API identifiers (NOT JOSE semantics)
        "RS256": 32,
        "PS256": 32,
        "RS384": 48,
        "PS384": 48,
        "RS512": 64,
        "PS512": 64,
    }

    _NAME_RE = re.compile(r"^[a-zA-Z0-9-]{3,64}$")

    def __init__(
        self,
        credential: Any,
        http_client: Annotated[
            httpx.AsyncClient,
            "Persistent HTTP client",
        ],
        settings: Annotated[
            Settings,
            "Application configuration",
        ],
    ):
        self.credential = credential
        self.client = http_client
        self.settings = settings

        self.base_url = str(settings.signing_endpoint).rstrip("/")
        self.algorithm = settings.algorithm

        if settings.algorithm not in self._ALGO_TO_DIGEST_LEN:
            raise ValueError(f"Unsupported algorithm: {settings.algorithm}")

        self._registry_lock = asyncio.Lock()
        self._key_locks: dict[str, asyncio.Lock] = {}
        self._key_users: dict[str, int] = {}
        self._pending_by_key: dict[str, str] = {}
        self._jobs: dict[str, _JobEntry] = {}

    def _backoff(self):
        """Exponential backoff bounded by poll_max_delay_seconds, plus jitter."""
        initial = self.settings.poll_initial_delay_seconds
        return wait_exponential(
            multiplier=initial,
            max=self.settings.poll_max_delay_seconds,
        ) + wait_random(0, initial)

    # ------------------------------------------------------------------
    # Auth helpers
    # ------------------------------------------------------------------

    async def _auth_headers(self, correlation_id: str) -> dict[str, str]:
        try:
            token = await self.credential.get_token(self.TOKEN_SCOPE)
        except ClientAuthenticationError as exc:
            raise SigningAuthError(
                f"Failed to acquire signing token: {exc}"
            ) from exc
        return {
            "Authorization": f"Bearer {token.token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
            # Azure diagnostics
            "X-Correlation-ID": correlation_id,
            "x-ms-client-request-id": correlation_id,
            "x-ms-return-client-request-id": "true",
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def submit(
        self,
        digest: bytes,
        *,
        account: Optional[str] = None,
        certificate_profile: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> str:
        """
        Submit a digest for signing and return the operation id.

        A digest that already has a pending job returns that job's id
        without contacting the authority.
        """
        self._validate_digest(digest)
        resource_path = self._resource_path(account, certificate_profile)
        key = f"{resource_path}:{digest.hex()}"
        correlation_id = correlation_id or digest.hex()[:32]

        async with self._exclusive(key):
            existing = self._reusable_job(key)
            if existing is not None:
                logger.info(
                    "signing_job_reused",
                    extra={"job_id": existing, "trace_id": correlation_id},
                )
                return existing

            digest_b64 = base64.b64encode(digest).decode("ascii")
            response = await self._send(
                "POST",
                f"{self.base_url}{resource_path}/sign?api-version={self.API_VERSION}",
                correlation_id=correlation_id,
                json={
                    "signatureAlgorithm": self.algorithm,
                    "digest": digest_b64,
                },
            )

            job_id = self._operation_id(response)
            job = SigningJob(
                job_id=job_id,
                digest=digest,
                submitted_at=datetime.now(timezone.utc),
            )
            self._jobs[job_id] = _JobEntry(key, resource_path, job)
            self._pending_by_key[key] = job_id

        logger.info(
            "signing_job_submitted",
            extra={
                "job_id": job_id,
                "trace_id": correlation_id,
                "algorithm": self.algorithm,
            },
        )
        return job_id

    async def poll_status(
        self,
        job_id: str,
        *,
        correlation_id: Optional[str] = None,
    ) -> SigningJob:
        """
        Single, non-blocking status check.

        Transport failures are retried; an authority-reported failure is
        returned as a terminal job, not raised.
        """
        entry = self._jobs.get(job_id)
        resource_path = (
            entry.resource_path if entry else self._resource_path(None, None)
        )
        correlation_id = correlation_id or job_id

        response = await self._send(
            "GET",
            f"{self.base_url}{resource_path}/sign/{job_id}"
            f"?api-version={self.API_VERSION}",
            correlation_id=correlation_id,
        )

        try:
            result = response.json()
        except ValueError as exc:
            raise SigningAuthorityError(
                "Azure status response is not JSON"
            ) from exc
        if not isinstance(result, dict):
            raise SigningAuthorityError(
                "Azure status response is not a JSON object"
            )

        status = str(result.get("status") or "").lower()
        previous = entry.job if entry else SigningJob(
            job_id=job_id,
            digest=b"",
            submitted_at=datetime.now(timezone.utc),
        )

        if status == "succeeded":
            job = previous.model_copy(
                update={
                    "status": JobStatus.SUCCEEDED,
                    "signature": self._decode_signature(result),
                    "certificate_chain": self._decode_chain(result),
                    "authority_timestamp": self._authority_time(response),
                }
            )
        elif status == "failed":
            job = previous.model_copy(
                update={
                    "status": JobStatus.FAILED,
                    "error": str(result.get("error") or "signing failed"),
                }
            )
        elif status in _EXPIRED_STATUSES:
            job = previous.model_copy(
                update={"status": JobStatus.EXPIRED, "error": status}
            )
        else:
            if status not in _PENDING_STATUSES:
                logger.warning(
                    "unknown_signing_status",
                    extra={"job_id": job_id, "status": status},
                )
            job = previous.model_copy(update={"status": JobStatus.PENDING})

        if entry is not None:
            entry.job = job
        return job

    async def await_completion(
        self,
        job_id: str,
        max_wait: Optional[float] = None,
        *,
        correlation_id: Optional[str] = None,
    ) -> SigningJob:
        """
        Block the current task until the job reaches a terminal status.

        Raises:
            SigningTimeoutError: still pending when max_wait elapses
            SigningFailedError: the authority reported failed/expired
            SigningTransportError: transport retries exhausted
        """
        if max_wait is None:
            max_wait = self.settings.signing_max_wait_seconds

        retrying = AsyncRetrying(
            stop=stop_before_delay(max_wait),
            wait=self._backoff(),
            retry=retry_if_exception_type(SigningPending),
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    job = await self.poll_status(
                        job_id, correlation_id=correlation_id
                    )
                    if job.status is JobStatus.PENDING:
                        raise SigningPending(f"hsm_pending:{job_id}")
        except SigningAuthorityError:
            # A rejected poll or malformed response ends the job; only
            # transport failures and cancellation keep it for reuse.
            self._retire(job_id)
            raise
        except SigningPending as exc:
            self._retire(job_id)
            logger.error(
                "signing_job_timed_out",
                extra={"job_id": job_id, "max_wait": max_wait},
            )
            raise SigningTimeoutError(
                f"Signing job {job_id} still pending after {max_wait}s"
            ) from exc

        self._retire(job_id)

        if job.status is not JobStatus.SUCCEEDED:
            logger.error(
                "signing_job_failed",
                extra={
                    "job_id": job_id,
                    "status": job.status.value,
                    "error": job.error,
                },
            )
            raise SigningFailedError(
                f"Azure signing {job.status.value}: {job.error}"
            )

        logger.info("signing_job_succeeded", extra={"job_id": job_id})
        return job

    async def sign_digest(
        self,
        digest: bytes,
        *,
        correlation_id: Optional[str] = None,
        max_wait: Optional[float] = None,
    ) -> SigningJob:
        """Submit a digest and wait for its signature."""
        job_id = await self.submit(digest, correlation_id=correlation_id)
        return await self.await_completion(
            job_id, max_wait, correlation_id=correlation_id
        )

    def outstanding_jobs(self) -> list[str]:
        """Job ids currently pending in this client."""
        return list(self._pending_by_key.values())

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _validate_digest(self, digest: bytes) -> None:
        expected_len = self._ALGO_TO_DIGEST_LEN[self.algorithm]
        if len(digest) != expected_len:
            raise ValueError(
                f"Digest length {len(digest)} does not match "
                f"{self.algorithm} requirement ({expected_len} bytes)"
            )

    def _resource_path(
        self,
        account: Optional[str],
        certificate_profile: Optional[str],
    ) -> str:
        account = account or self.settings.signing_account
        certificate_profile = (
            certificate_profile or self.settings.certificate_profile
        )

        if not self._NAME_RE.match(account):
            raise ValueError("Invalid Azure signing account name")

        if not self._NAME_RE.match(certificate_profile):
            raise ValueError("Invalid Azure signing profile name")

        return (
            f"/codesigningaccounts/{account}"
            f"/certificateprofiles/{certificate_profile}"
        )

    @asynccontextmanager
    async def _exclusive(self, key: str) -> AsyncIterator[None]:
        """
        Serialize submissions for one key.

        The per-key lock lives only while some task holds or awaits it,
        so the registry does not grow with every digest ever signed.
        """
        async with self._registry_lock:
            self._prune_stale_jobs()
            lock = self._key_locks.setdefault(key, asyncio.Lock())
            self._key_users[key] = self._key_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._key_users[key] -= 1
            if not self._key_users[key]:
                del self._key_users[key]
                del self._key_locks[key]

    def _prune_stale_jobs(self) -> None:
        """Forget jobs older than the reuse window (abandoned or cancelled)."""
        now = datetime.now(timezone.utc)
        stale = [
            job_id
            for job_id, entry in self._jobs.items()
            if now - entry.job.submitted_at >= JOB_REUSE_WINDOW
        ]
        for job_id in stale:
            self._retire(job_id)
        if stale:
            logger.info("signing_jobs_pruned", extra={"count": len(stale)})

    def _reusable_job(self, key: str) -> Optional[str]:
        job_id = self._pending_by_key.get(key)
        if job_id is None:
            return None
        entry = self._jobs[job_id]
        age = datetime.now(timezone.utc) - entry.job.submitted_at
        if entry.job.status is JobStatus.PENDING and age < JOB_REUSE_WINDOW:
            return job_id
        self._retire(job_id)
        return None

    def _retire(self, job_id: str) -> None:
        entry = self._jobs.pop(job_id, None)
        if entry is None:
            return
        if self._pending_by_key.get(entry.key) == job_id:
            del self._pending_by_key[entry.key]

    async def _send(
        self,
        method: str,
        url: str,
        *,
        correlation_id: str,
        json: Optional[dict] = None,
    ) -> httpx.Response:
        """
        One logical request.

        Transport errors and 5xx/408 responses are retried with bounded
        exponential backoff and jitter. Authority-reported 4xx responses
        are raised immediately and never retried.
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.settings.signing_max_attempts),
            wait=self._backoff(),
            retry=retry_if_exception_type(
                (httpx.TransportError, _TransientStatus)
            ),
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    response = await self.client.request(
                        method,
                        url,
                        headers=await self._auth_headers(correlation_id),
                        json=json,
                        timeout=60.0,
                    )
                    if response.status_code >= 500 or response.status_code == 408:
                        raise _TransientStatus(response)
        except httpx.TransportError as exc:
            logger.error(
                "azure_transport_failed",
                extra={
                    "trace_id": correlation_id,
                    "error_type": type(exc).__name__,
                },
            )
            raise SigningTransportError(
                f"Signing authority unreachable: {type(exc).__name__}: {exc}"
            ) from exc
        except _TransientStatus as exc:
            logger.error(
                "azure_transient_status_exhausted",
                extra={
                    "trace_id": correlation_id,
                    "status_code": exc.response.status_code,
                },
            )
            raise SigningTransportError(
                f"Signing authority returned HTTP {exc.response.status_code}"
            ) from exc

        self._raise_for_authority_status(response, correlation_id)
        return response

    def _raise_for_authority_status(
        self,
        response: httpx.Response,
        correlation_id: str,
    ) -> None:
        if response.status_code < 400:
            return

        logger.error(
            "azure_sign_request_failed",
            extra={
                "status_code": response.status_code,
                "response_body": response.text,
                "trace_id": correlation_id,
                "api_version": self.API_VERSION,
            },
        )

        detail = f"HTTP {response.status_code}: {response.text[:200]}"
        if response.status_code in (401, 403):
            raise SigningAuthError(detail)
        if response.status_code == 429:
            raise SigningQuotaError(detail)
        raise SigningAuthorityError(detail)

    @staticmethod
    def _operation_id(response: httpx.Response) -> str:
        async_op = response.headers.get("Azure-AsyncOperation")
        if async_op:
            # Always extract ONLY the operation ID
            return async_op.rstrip("/").split("/")[-1].split("?")[0]

        try:
            body = response.json()
        except ValueError:
            body = None
        operation_id = body.get("operationId") if isinstance(body, dict) else None
        if not isinstance(operation_id, str) or not operation_id:
            raise SigningAuthorityError(
                "Azure response missing operation id"
            )
        return operation_id

    @staticmethod
    def _string_field(result: dict, name: str) -> str:
        value = result.get(name)
        if not isinstance(value, str) or not value:
            raise SigningAuthorityError(
                f"Azure success response has no {name} string"
            )
        return value

    @classmethod
    def _decode_signature(cls, result: dict) -> bytes:
        try:
            return base64.b64decode(
                cls._string_field(result, "signature"), validate=True
            )
        except (binascii.Error, ValueError) as exc:
            raise SigningAuthorityError(
                "Azure returned invalid base64 signature"
            ) from exc

    @classmethod
    def _decode_chain(cls, result: dict) -> list[bytes]:
        blob = cls._string_field(result, "signingCertificate")
        try:
            raw = blob.encode("ascii")
        except UnicodeEncodeError as exc:
            raise SigningAuthorityError(
                "Azure signingCertificate is not base64 or PEM text"
            ) from exc
        return parse_certificate_chain(raw)

    @staticmethod
    def _authority_time(response: httpx.Response) -> Optional[datetime]:
        raw = response.headers.get("Date")
        if not raw:
            return None
        try:
            return parsedate_to_datetime(raw).astimezone(timezone.utc)
        except (TypeError, ValueError):
            return None
