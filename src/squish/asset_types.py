"""Asset types handled by the engine.

``AssetType`` is a closed union of small frozen dataclasses. Code that needs
per-type behaviour matches on it exhaustively and calls :func:`unsupported`
in the fallback branch, so adding a variant means touching every dispatch.
"""

from __future__ import annotations

import mimetypes
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn, Union

from .errors import UnsupportedType

IMAGE_SUBFORMATS: frozenset[str] = frozenset(
    {"png", "jpeg", "gif", "tiff", "webp", "heic", "heif", "avif", "bmp"}
)
VIDEO_SUBFORMATS: frozenset[str] = frozenset(
    {"mp4", "mov", "m4v", "mkv", "avi", "webm", "flv", "wmv", "mpeg", "mpg"}
)

_EXTENSION_ALIASES: dict[str, str] = {
    "jpg": "jpeg",
    "jpe": "jpeg",
    "tif": "tiff",
    "qt": "mov",
}

_MIME_SUBFORMATS: dict[str, str] = {
    "image/jpeg": "jpeg",
    "image/png": "png",
    "image/gif": "gif",
    "image/tiff": "tiff",
    "image/webp": "webp",
    "image/heic": "heic",
    "image/heif": "heif",
    "image/avif": "avif",
    "image/bmp": "bmp",
    "video/mp4": "mp4",
    "video/quicktime": "mov",
    "video/x-m4v": "m4v",
    "video/x-matroska": "mkv",
    "video/x-msvideo": "avi",
    "video/x-flv": "flv",
    "video/x-ms-wmv": "wmv",
    "video/mpeg": "mpeg",
    "video/x-mpeg": "mpeg",
    "video/webm": "webm",
}


@dataclass(frozen=True, slots=True)
class Image:
    subformat: str

    @property
    def extension(self) -> str:
        return "jpg" if self.subformat == "jpeg" else self.subformat


@dataclass(frozen=True, slots=True)
class Video:
    subformat: str

    @property
    def extension(self) -> str:
        return self.subformat


@dataclass(frozen=True, slots=True)
class PDF:
    @property
    def extension(self) -> str:
        return "pdf"


@dataclass(frozen=True, slots=True)
class RemoteURL:
    url: str = ""


@dataclass(frozen=True, slots=True)
class Unknown:
    pass


AssetType = Union[Image, Video, PDF, RemoteURL, Unknown]


def unsupported(asset_type: object, operation: str = "optimise") -> NoReturn:
    """Fallback branch of every exhaustive ``match`` over :data:`AssetType`."""
    raise UnsupportedType(asset_type, operation)


def normalise_extension(ext: str) -> str:
    """Lower-case *ext*, drop the dot and any ``@2x`` style suffix."""
    ext = ext.lower().lstrip(".")
    if "@" in ext:
        ext = ext.split("@")[0]
    return _EXTENSION_ALIASES.get(ext, ext)


def asset_type_from_path(path: Path | str) -> AssetType:
    """Infer the asset type from the file extension."""
    ext = normalise_extension(Path(path).suffix)
    if ext in IMAGE_SUBFORMATS:
        return Image(ext)
    if ext in VIDEO_SUBFORMATS:
        return Video(ext)
    if ext == "pdf":
        return PDF()
    guessed, _ = mimetypes.guess_type(str(path))
    if guessed:
        return asset_type_from_mime(guessed)
    return Unknown()


def asset_type_from_mime(mime: str) -> AssetType:
    """Map a MIME type (``Content-Type`` header value) to an asset type."""
    mime = mime.split(";")[0].strip().lower()
    if mime in _MIME_SUBFORMATS:
        subformat = _MIME_SUBFORMATS[mime]
        return Image(subformat) if mime.startswith("image/") else Video(subformat)
    if mime == "application/pdf":
        return PDF()
    if mime == "text/html":
        return RemoteURL()
    return Unknown()


def is_remote(item: str) -> bool:
    return item.startswith(("http://", "https://"))


def asset_type_for(item: str | Path) -> AssetType:
    """Classify a CLI/IPC item: URLs become :class:`RemoteURL`, files by extension."""
    if isinstance(item, str) and is_remote(item):
        return RemoteURL(item)
    return asset_type_from_path(item)


def kind_of(asset_type: AssetType) -> str:
    """Queue name for *asset_type*: ``image``, ``video`` or ``pdf``."""
    match asset_type:
        case Image():
            return "image"
        case Video():
            return "video"
        case PDF():
            return "pdf"
        case RemoteURL() | Unknown():
            unsupported(asset_type, "schedule")
        case _:
            unsupported(asset_type, "schedule")


def is_image(asset_type: AssetType) -> bool:
    return isinstance(asset_type, Image)


def is_video(asset_type: AssetType) -> bool:
    return isinstance(asset_type, Video)


def is_pdf(asset_type: AssetType) -> bool:
    return isinstance(asset_type, PDF)


def can_downscale(asset_type: AssetType) -> bool:
    return isinstance(asset_type, (Image, Video, PDF))


def can_crop(asset_type: AssetType) -> bool:
    return isinstance(asset_type, (Image, Video, PDF))


def can_change_speed(asset_type: AssetType) -> bool:
    return isinstance(asset_type, Video)


def describe(asset_type: AssetType) -> str:
    match asset_type:
        case Image(subformat=sub):
            return f"image ({sub})"
        case Video(subformat=sub):
            return f"video ({sub})"
        case PDF():
            return "pdf"
        case RemoteURL(url=url):
            return f"url ({url})" if url else "url"
        case Unknown():
            return "unknown"
        case _:
            unsupported(asset_type, "describe")
