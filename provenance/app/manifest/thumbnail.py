"""
Thumbnail rendition.

Derives a reduced-resolution JPEG rendering of a still image. The output
depends only on the input pixels and the fixed encoder settings below, so
repeated builds of the same asset produce identical bytes.
"""

from __future__ import annotations

import io

from PIL import Image

from provenance.app.assets.accessor import MediaAsset
from provenance.app.core.errors import RenditionError

THUMBNAIL_MAX_DIMENSION = 256
THUMBNAIL_CONTENT_TYPE = "image/jpeg"
THUMBNAIL_QUALITY = 80


def render_thumbnail(
    asset: MediaAsset,
    max_dimension: int = THUMBNAIL_MAX_DIMENSION,
) -> bytes:
    """
    Render a JPEG thumbnail of the asset content (without any prior record).

    Raises RenditionError when the pixels cannot be decoded.
    """
    try:
        with Image.open(io.BytesIO(asset.base)) as image:
            rendition = image.convert("RGB")
        rendition.thumbnail((max_dimension, max_dimension))

        out = io.BytesIO()
        rendition.save(
            out,
            format="JPEG",
            quality=THUMBNAIL_QUALITY,
            optimize=False,
            progressive=False,
        )
        return out.getvalue()
    except (OSError, SyntaxError, ValueError, Image.DecompressionBombError) as exc:
        raise RenditionError(
            f"Thumbnail rendition failed: {type(exc).__name__}: {exc}"
        ) from exc
