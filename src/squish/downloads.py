"""Fetch remote URLs into the work dir so they can be optimised like files."""

from __future__ import annotations

import logging
import re
import threading
import uuid
from collections.abc import Callable
from pathlib import Path
from urllib.parse import unquote, urlparse

import requests

from .asset_types import AssetType, RemoteURL, Unknown, asset_type_from_mime, asset_type_from_path
from .errors import Cancelled, DownloadFailed
from .progress import Progress

__all__ = ["download", "filename_for"]

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
_DISPOSITION_NAME = re.compile(r'filename\*?=(?:UTF-8\'\')?"?([^";]+)"?', re.IGNORECASE)


def filename_for(url: str, content_disposition: str | None = None) -> str:
    """Pick a file name: ``Content-Disposition`` first, then the URL path."""
    if content_disposition:
        match = _DISPOSITION_NAME.search(content_disposition)
        if match:
            name = Path(unquote(match.group(1))).name
            if name:
                return name
    name = Path(unquote(urlparse(url).path)).name
    return name or "download"


def _resolve_type(url: str, path: Path, content_type: str | None) -> AssetType:
    if content_type:
        asset_type = asset_type_from_mime(content_type)
        if not isinstance(asset_type, (Unknown, RemoteURL)):
            return asset_type
    return asset_type_from_path(path)


def download(
    url: str,
    dest_dir: Path,
    *,
    on_progress: Callable[[Progress], None] | None = None,
    cancelled: threading.Event | None = None,
    timeout: float = 30.0,
    session: requests.Session | None = None,
) -> tuple[Path, AssetType]:
    """Stream *url* into a fresh folder under *dest_dir*.

    Returns:
        The downloaded file and its asset type (``Content-Type`` wins over the
        URL's extension).

    Raises:
        DownloadFailed: on HTTP/network errors or when the payload is not a
            supported image, video or PDF
        Cancelled: when *cancelled* gets set mid-transfer
    """
    http = session or requests
    logger.info("🌐 Downloading %s", url)
    try:
        response = http.get(url, stream=True, timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as e:
        raise DownloadFailed(f"Could not download {url}: {e}") from e

    with response:
        name = filename_for(url, response.headers.get("Content-Disposition"))
        target_dir = dest_dir / uuid.uuid4().hex[:12]
        target_dir.mkdir(parents=True, exist_ok=True)
        target = target_dir / name

        asset_type = _resolve_type(url, target, response.headers.get("Content-Type"))
        if isinstance(asset_type, (Unknown, RemoteURL)):
            raise DownloadFailed(f"{url} is not an image, video or PDF")
        if not target.suffix:
            target = target.with_suffix(f".{asset_type.extension}")

        total = int(response.headers.get("Content-Length") or 0) or None
        received = 0
        try:
            with open(target, "wb") as f:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    if cancelled is not None and cancelled.is_set():
                        raise Cancelled(url)
                    f.write(chunk)
                    received += len(chunk)
                    if on_progress is not None:
                        on_progress(
                            Progress(
                                completed_units=received,
                                total_units=total or 0,
                                indeterminate=total is None,
                                description="Downloading",
                            )
                        )
        except requests.RequestException as e:
            target.unlink(missing_ok=True)
            raise DownloadFailed(f"Download of {url} was interrupted: {e}") from e
        except Cancelled:
            target.unlink(missing_ok=True)
            raise

    logger.info("📥 Downloaded %s (%d bytes)", target.name, received)
    return target, asset_type
