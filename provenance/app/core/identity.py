"""
Credential construction for the signing authority.

Token acquisition is delegated entirely to azure-identity. The rest of
the pipeline only needs an object exposing ``await get_token(scope)``.
"""

from __future__ import annotations

import logging
from typing import Optional

from azure.core.credentials_async import AsyncTokenCredential
from azure.identity.aio import DefaultAzureCredential, ManagedIdentityCredential

logger = logging.getLogger("provenance.identity")


def build_credential(
    identity_client_id: Optional[str] = None,
) -> AsyncTokenCredential:
    """
    Return the credential used to authenticate to the signing authority.

    - identity_client_id set: user-assigned managed identity (service mode)
    - otherwise: the default credential chain (CLI, environment, MSI)
    """
    if identity_client_id:
        logger.info(
            "using_managed_identity_credential",
            extra={"client_id": identity_client_id},
        )
        return ManagedIdentityCredential(client_id=identity_client_id)

    logger.info("using_default_azure_credential")
    return DefaultAzureCredential()
