"""
Manifest builder.

Assembles the unsigned claim for one asset and produces the exact
to-be-signed payload:

1. Prior credential -> Ingredient (validated, flagged on failure)
2. Optional thumbnail rendition -> binary Assertion
3. Configured assertions, verbatim and in order
4. Canonical claim serialization
5. Content hash over the hashable ranges
6. TBS binding of claim bytes and content hash

Every step is a pure function of the asset, the definition and the
injected timestamp. No network access, no clock reads.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Sequence

from cryptography import x509

from provenance.app.assets.accessor import (
    InsertionSpec,
    MediaAsset,
    content_hash,
    locate_insertion_point,
)
from provenance.app.core.errors import (
    MalformedIngredientError,
    RenditionError,
    UnsupportedAssertionError,
)
from provenance.app.manifest.canonical import (
    build_tbs,
    canonical_json,
    encode_claim,
)
from provenance.app.manifest.thumbnail import (
    THUMBNAIL_CONTENT_TYPE,
    render_thumbnail,
)
from provenance.app.schemas.manifest import (
    MAX_INGREDIENT_DEPTH,
    Assertion,
    AssertionDefinition,
    AssertionKind,
    Claim,
    ContentBinding,
    Ingredient,
    IngredientValidation,
    ManifestDefinition,
    ToBeSigned,
)
from provenance.app.schemas.verification_report import Severity
from provenance.app.utils.hashing import compute_digest, digest_algorithm_for
from provenance.app.verification.verifier import verify_asset

logger = logging.getLogger("provenance.manifest_builder")

THUMBNAIL_LABEL = "c2pa.thumbnail.claim.jpeg"
ACTIONS_LABEL = "c2pa.actions"
CUSTOM_LABEL = "org.provenance.custom"


@dataclass(frozen=True)
class BuiltManifest:
    claim: Claim
    insertion: InsertionSpec
    tbs: ToBeSigned


class ManifestBuilder:
    def __init__(
        self,
        definition: ManifestDefinition,
        *,
        signing_algorithm: str = "PS384",
        hash_algorithm: str = "sha256",
        reject_invalid_ingredients: bool = False,
        max_ingredient_depth: int = MAX_INGREDIENT_DEPTH,
        trust_anchors: Sequence[x509.Certificate] = (),
        renderer: Callable[[MediaAsset], bytes] = render_thumbnail,
    ) -> None:
        # Fail fast on unknown algorithms
        digest_algorithm_for(signing_algorithm)
        compute_digest(b"", hash_algorithm)

        self.definition = definition
        self.signing_algorithm = signing_algorithm
        self.hash_algorithm = hash_algorithm
        self.reject_invalid_ingredients = reject_invalid_ingredients
        self.max_ingredient_depth = max_ingredient_depth
        self.trust_anchors = list(trust_anchors)
        self._renderer = renderer

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def build(
        self,
        asset: MediaAsset,
        *,
        title: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> BuiltManifest:
        ingredient = self.build_ingredient(asset)

        assertions = []
        if self.definition.thumbnail and asset.handler.supports_rendition:
            thumbnail = self._thumbnail_assertion(asset)
            if thumbnail is not None:
                assertions.append(thumbnail)

        for definition in self.definition.assertions:
            assertions.append(self.configured_assertion(definition))

        insertion = locate_insertion_point(asset)

        claim = Claim(
            claim_generator=self.definition.claim_generator,
            title=title or self.definition.title or f"asset.{asset.kind.value}",
            mime_type=asset.mime_type,
            assertions=assertions,
            ingredient=ingredient,
            content_binding=ContentBinding(
                algorithm=self.hash_algorithm,
                exclusion_offset=insertion.offset,
            ),
            created_at=created_at,
        )

        tbs = build_tbs(
            encode_claim(claim),
            content_hash(asset, insertion, self.hash_algorithm),
            self.signing_algorithm,
        )
        return BuiltManifest(claim=claim, insertion=insertion, tbs=tbs)

    def build_ingredient(self, asset: MediaAsset) -> Optional[Ingredient]:
        """
        Turn an embedded prior credential into the parent ingredient.

        A parent that fails validation is still recorded, flagged as
        failed, unless reject_invalid_ingredients is set.
        """
        if asset.existing_record is None:
            return None

        report = verify_asset(asset.data, trust_anchors=self.trust_anchors)
        errors = [
            f"{f.finding_id}: {f.description}"
            for f in report.findings
            if f.severity is Severity.CRITICAL
        ]
        status = (
            IngredientValidation.VALID
            if report.passed
            else IngredientValidation.FAILED
        )

        if status is IngredientValidation.FAILED:
            logger.warning(
                "parent_credential_failed_validation",
                extra={"errors": errors},
            )
            if self.reject_invalid_ingredients:
                raise MalformedIngredientError(
                    "Embedded parent credential failed validation: "
                    + "; ".join(errors)
                )

        parent = report.claim
        parent_depth = (
            parent.ingredient.chain_depth
            if parent is not None and parent.ingredient is not None
            else 0
        )
        chain_depth = parent_depth + 1

        blob = asset.existing_record
        if chain_depth > self.max_ingredient_depth:
            logger.info(
                "ingredient_chain_truncated",
                extra={"chain_depth": chain_depth},
            )
            blob = None

        return Ingredient(
            title=parent.title if parent is not None else "parent",
            format=asset.mime_type,
            hash_algorithm=self.hash_algorithm,
            content_hash=compute_digest(asset.data, self.hash_algorithm).hex(),
            validation_status=status,
            validation_errors=errors,
            chain_depth=chain_depth,
            manifest_blob=blob,
        )

    def configured_assertion(self, definition: AssertionDefinition) -> Assertion:
        """
        Convert one configured assertion verbatim.

        Unknown kinds are fatal; silently dropping a requested claim would
        mislead the caller.
        """
        if definition.kind == AssertionKind.CUSTOM.value:
            if not definition.data:
                raise UnsupportedAssertionError(
                    "Custom assertion requires non-empty data"
                )
            return Assertion(
                label=definition.label or CUSTOM_LABEL,
                kind=AssertionKind.CUSTOM,
                content_type="application/json",
                data=self._json(definition),
            )

        if definition.kind == AssertionKind.ACTIONS.value:
            actions = definition.data.get("actions")
            if (
                not isinstance(actions, list)
                or not actions
                or not all(
                    isinstance(a, dict) and isinstance(a.get("action"), str)
                    for a in actions
                )
            ):
                raise UnsupportedAssertionError(
                    "Actions assertion requires a non-empty 'actions' list "
                    "of objects with an 'action' name"
                )
            return Assertion(
                label=definition.label or ACTIONS_LABEL,
                kind=AssertionKind.ACTIONS,
                content_type="application/json",
                data=self._json(definition),
            )

        raise UnsupportedAssertionError(
            f"Unsupported assertion kind '{definition.kind}'. "
            f"Allowed values: {[AssertionKind.CUSTOM.value, AssertionKind.ACTIONS.value]}"
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _thumbnail_assertion(self, asset: MediaAsset) -> Optional[Assertion]:
        try:
            data = self._renderer(asset)
        except RenditionError as exc:
            logger.warning(
                "thumbnail_rendition_failed",
                extra={"error": str(exc), "container": asset.kind.value},
            )
            return None

        return Assertion(
            label=THUMBNAIL_LABEL,
            kind=AssertionKind.THUMBNAIL,
            content_type=THUMBNAIL_CONTENT_TYPE,
            data=data,
        )

    @staticmethod
    def _json(definition: AssertionDefinition) -> bytes:
        try:
            return canonical_json(definition.data)
        except (TypeError, ValueError) as exc:
            raise UnsupportedAssertionError(
                f"Assertion data is not canonical JSON: {exc}"
            ) from exc
