"""
Centralized configuration management for the provenance signer.

Every knob of the pipeline (authority coordinates, polling bounds,
timestamping, trust anchors, asset limits, blob worker containers) is
validated once at startup.

Variable names follow the deployment contract of the signing function
and the blob worker (SIGNING_ENDPOINT, SIGNING_ACCOUNT, ...), so no
environment prefix is applied.
"""

from functools import lru_cache
from typing import Annotated, Optional

from pydantic import AnyHttpUrl, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# -------------------------------------------------------------------------
# Reusable Type Aliases
# -------------------------------------------------------------------------

# Strict Azure resource ID validation
AzureResourceID = Annotated[
    str,
    Field(
        pattern=r"^[a-zA-Z0-9-]{3,64}$",
        description=(
            "Strict alphanumeric/hyphen validation "
            "to prevent path injection"
        ),
    ),
]

SigningAlgorithm = Annotated[
    str,
    Field(
        pattern=r"^(RS|PS)(256|384|512)$",
        description="Signature algorithm identifier understood by Azure",
    ),
]


# -------------------------------------------------------------------------
# Settings Model
# -------------------------------------------------------------------------

class Settings(BaseSettings):
    """
    Application settings parsed from the environment.

    Fails fast at startup if required Artifact Signing parameters are
    missing or malformed. Storage settings are only required by the
    blob worker and are validated there.
    """

    # ---------------------------------------------------------------------
    # Azure Artifact Signing Resource Mapping
    # ---------------------------------------------------------------------

    signing_endpoint: Annotated[
        AnyHttpUrl,
        Field(
            description="Azure Artifact Signing data-plane HTTPS endpoint",
        ),
    ]
    signing_account: AzureResourceID
    certificate_profile: AzureResourceID
    algorithm: SigningAlgorithm = "PS384"

    # ---------------------------------------------------------------------
    # Identity
    # ---------------------------------------------------------------------

    identity_client_id: Annotated[
        Optional[str],
        Field(
            default=None,
            description=(
                "Client id of the user-assigned managed identity. "
                "When unset, the default Azure credential chain is used."
            ),
        ),
    ]

    # ---------------------------------------------------------------------
    # Manifest definition
    # ---------------------------------------------------------------------

    manifest_definition: Annotated[
        Optional[str],
        Field(
            default=None,
            description="Path to a manifest definition file or inline JSON",
        ),
    ]

    reject_invalid_ingredients: Annotated[
        bool,
        Field(
            default=False,
            description=(
                "Refuse to sign assets whose embedded parent credential "
                "fails validation instead of flagging the ingredient."
            ),
        ),
    ]

    # ---------------------------------------------------------------------
    # Time stamping and trust
    # ---------------------------------------------------------------------

    time_authority_url: Annotated[
        Optional[AnyHttpUrl],
        Field(
            default=None,
            description=(
                "RFC 3161 timestamp authority countersigning each "
                "signature. When unset, the authority or local time is "
                "recorded instead."
            ),
        ),
    ]

    trust_anchors_path: Annotated[
        Optional[str],
        Field(
            default=None,
            description=(
                "PEM bundle of root certificates. When set, signing "
                "chains that do not lead to one of them fail verification."
            ),
        ),
    ]

    # ---------------------------------------------------------------------
    # Blob trigger wiring
    # ---------------------------------------------------------------------

    storage_account: Optional[str] = None
    input_container: Optional[str] = None
    output_container: Optional[str] = None

    # ---------------------------------------------------------------------
    # Signing job timing
    # ---------------------------------------------------------------------

    signing_max_wait_seconds: Annotated[
        float,
        Field(default=30.0, gt=0, le=600),
    ]
    signing_max_attempts: Annotated[
        int,
        Field(
            default=5,
            ge=1,
            le=10,
            description="Bounded attempts for transport-level failures",
        ),
    ]
    poll_initial_delay_seconds: Annotated[
        float,
        Field(default=0.25, gt=0),
    ]
    poll_max_delay_seconds: Annotated[
        float,
        Field(default=10.0, gt=0),
    ]

    # ---------------------------------------------------------------------
    # Operational Boundaries
    # ---------------------------------------------------------------------

    max_asset_size_mb: Annotated[
        int,
        Field(
            default=50,
            ge=1,
            le=512,
            description="OOM protection limit",
        ),
    ]

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
        frozen=True,
    )


# -------------------------------------------------------------------------
# Settings Dependency Provider
# -------------------------------------------------------------------------

@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Dependency injection provider for application settings.

    Uses an explicit singleton pattern within the process lifecycle.
    """
    return Settings()  # singleton within process
