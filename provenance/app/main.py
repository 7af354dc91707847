import sys
import logging
import httpx

from contextlib import asynccontextmanager
from importlib.metadata import version, PackageNotFoundError
from typing import Any, Optional

from fastapi import FastAPI
from fastapi.responses import ORJSONResponse

from provenance.app.api.routes import router as sign_router
from provenance.app.core.config import Settings, get_settings
from provenance.app.core.identity import build_credential
from provenance.app.pipeline.orchestrator import ContentCredentialPipeline
from provenance.app.services.azure_api import AzureArtifactSigningClient

logger = logging.getLogger("provenance.main")


def get_app_version() -> str:
    """
    Resolve application version deterministically.

    Falls back to the source version when the package is not installed.
    """
    try:
        return version("provenance-signer")
    except PackageNotFoundError:
        return "1.0.0"


def build_http_client() -> httpx.AsyncClient:
    """
    Persistent HTTP client for the signing authority.

    One pool is shared by every concurrent pipeline run.
    """
    return httpx.AsyncClient(
        http2=False,
        timeout=httpx.Timeout(
            timeout=60.0,      # hard upper bound
            connect=10.0,
            read=60.0,
            write=10.0,
        ),
        limits=httpx.Limits(
            max_keepalive_connections=50,
            max_connections=100,
        ),
        headers={
            "User-Agent": f"provenance-signer/{get_app_version()}",
        },
    )


def create_app(
    *,
    settings: Optional[Settings] = None,
    credential: Optional[Any] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """
    Application factory for the content-credential signing service.

    settings, credential and http_client may be injected (tests, embedding
    in a larger host); otherwise they are built from the environment at
    startup. Injected resources are not closed on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Guarantees:
        - Fail-fast startup if configuration or the manifest definition
          is invalid
        - Pre-allocated shared transports
        """
        logger.info(
            "provenance_service_startup_begin",
            extra={
                "service": "provenance-signer",
                "version": get_app_version(),
            },
        )

        # --------------------------------------------------------------
        # Load and validate configuration (FAIL FAST)
        # --------------------------------------------------------------
        try:
            app_settings = settings or get_settings()
        except Exception:
            logger.exception("invalid_signer_configuration")
            raise

        app.state.settings = app_settings
        app.state.http_client = http_client or build_http_client()
        app.state.azure_credential = credential or build_credential(
            app_settings.identity_client_id
        )

        app.state.signing_client = AzureArtifactSigningClient(
            credential=app.state.azure_credential,
            http_client=app.state.http_client,
            settings=app_settings,
        )
        app.state.pipeline = ContentCredentialPipeline.from_settings(
            app_settings,
            signer=app.state.signing_client,
        )
        app.state.trust_anchors = app.state.pipeline.trust_anchors

        logger.info(
            "provenance_service_ready",
            extra={
                "signing_account": app_settings.signing_account,
                "certificate_profile": app_settings.certificate_profile,
                "algorithm": app_settings.algorithm,
                "timestamping": app.state.pipeline.timestamper is not None,
                "trust_anchors": len(app.state.trust_anchors),
            },
        )

        try:
            yield
        finally:
            logger.info("provenance_service_shutdown_begin")

            if http_client is None:
                try:
                    await app.state.http_client.aclose()
                except Exception:
                    logger.warning("http_client_shutdown_failed")

            if credential is None:
                try:
                    await app.state.azure_credential.close()
                except Exception:
                    logger.warning("azure_credential_shutdown_failed")

    app = FastAPI(
        title="Provenance Signer",
        description=(
            "Embeds signed content credentials into media assets "
            "using Azure Artifact Signing."
        ),
        version=get_app_version(),
        docs_url="/docs",
        redoc_url=None,
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )

    app.include_router(sign_router)

    @app.get(
        "/healthz",
        tags=["Monitoring"],
        summary="Liveness and readiness probe",
    )
    async def health_check():
        """
        Verifies that the runtime is alive.

        NOTE:
        - Does NOT perform cryptographic operations
        - Does NOT call Azure
        """
        return ORJSONResponse(
            content={
                "status": "ok",
                "service": "provenance-signer",
                "version": app.version,
                "runtime": f"python {sys.version.split()[0]}",
                "key_boundary": "delegated (Azure Managed HSM)",
            }
        )

    return app


app = create_app()
