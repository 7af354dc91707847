"""
Manifest definition loading.

MANIFEST_DEFINITION may hold either a path to a JSON file or the JSON
document itself. Both are validated into a ManifestDefinition.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from provenance.app.core.errors import UnsupportedAssertionError
from provenance.app.schemas.manifest import ManifestDefinition

logger = logging.getLogger("provenance.manifest_definition")


def load_manifest_definition(source: Optional[str]) -> ManifestDefinition:
    """
    Resolve a manifest definition from a path or inline JSON.

    None yields the default definition (thumbnail only).
    """
    if source is None or not source.strip():
        return ManifestDefinition()

    text = source.strip()
    if not text.startswith("{"):
        path = Path(text)
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise UnsupportedAssertionError(
                f"Cannot read manifest definition '{path}': {exc}"
            ) from exc
        logger.info("manifest_definition_loaded", extra={"path": str(path)})

    try:
        return ManifestDefinition.model_validate_json(text)
    except ValidationError as exc:
        raise UnsupportedAssertionError(
            f"Invalid manifest definition: {exc.error_count()} error(s): "
            f"{exc.errors()[0]['msg']}"
        ) from exc
