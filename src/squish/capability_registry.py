from __future__ import annotations

"""Capability registry – maps asset types to their transform implementation.

Dispatch is an exhaustive ``match`` over :data:`~squish.asset_types.AssetType`
so a new variant cannot slip through without a transformer.
"""

from functools import lru_cache

from .asset_types import PDF, AssetType, Image, RemoteURL, Unknown, Video, unsupported
from .tool_interfaces import Transformer

#: Operations every transformer supports, plus the video-only ones
OPERATIONS: dict[str, tuple[str, ...]] = {
    "image": ("optimise", "downscale", "crop"),
    "video": ("optimise", "downscale", "crop", "change_speed", "remove_audio"),
    "pdf": ("optimise", "downscale", "crop"),
}


@lru_cache(maxsize=None)
def _instance(kind: str) -> Transformer:
    from .external_engines import ImageTransformer, PDFTransformer, VideoTransformer

    return {"image": ImageTransformer, "video": VideoTransformer, "pdf": PDFTransformer}[kind]()


def transformer_for(asset_type: AssetType) -> Transformer:
    """Return the transformer that handles *asset_type*.

    Raises:
        UnsupportedType: for remote URLs (download first) and unknown files
    """
    match asset_type:
        case Image():
            return _instance("image")
        case Video():
            return _instance("video")
        case PDF():
            return _instance("pdf")
        case RemoteURL() | Unknown():
            unsupported(asset_type)
        case _:
            unsupported(asset_type)


def supports(asset_type: AssetType, operation: str) -> bool:
    match asset_type:
        case Image():
            return operation in OPERATIONS["image"]
        case Video():
            return operation in OPERATIONS["video"]
        case PDF():
            return operation in OPERATIONS["pdf"]
        case _:
            return False

