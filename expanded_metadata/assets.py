import os
import asyncio
import tempfile
from urllib.parse import urlparse

import aiohttp

MEDIA_FILE_PREFIX = "civitai_"
VIDEO_EXTENSIONS = (".mp4", ".webm", ".gif")
DEFAULT_EXTENSION = ".jpg"
MEDIA_CONTENT_TYPES = {
    ".mp4": "video/mp4",
    ".webm": "video/webm",
    ".gif": "image/gif",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".webp": "image/webp",
}


class InvalidMediaPath(ValueError):
    """Relative media path is empty, rooted or contains a parent segment."""


class MediaPathForbidden(ValueError):
    """Media path resolves outside the media root."""


def media_extension(url: str) -> str:
    path = urlparse(url).path.lower() if "://" in url else url.lower()
    for ext in VIDEO_EXTENSIONS:
        if path.endswith(ext):
            return ext
    return DEFAULT_EXTENSION


def media_content_type(filename: str) -> str:
    ext = os.path.splitext(filename)[1].lower()
    return MEDIA_CONTENT_TYPES.get(ext, "application/octet-stream")


def resolve_media_path(images_root: str, rel_path: str) -> str:
    """Map a request path onto a file under images_root, refusing anything that escapes it."""
    path = str(rel_path or "").replace("\\", "/").rstrip("/")
    if not path or ".." in path or path.startswith("/") or ":" in path or "\x00" in path:
        raise InvalidMediaPath(rel_path)
    allowed = os.path.realpath(images_root)
    resolved = os.path.realpath(os.path.join(allowed, path))
    if os.path.commonpath([allowed, resolved]) != allowed:
        raise MediaPathForbidden(rel_path)
    return resolved


async def _download_to(session: aiohttp.ClientSession, url: str, dest_path: str, timeout: float):
    async with session.get(url, timeout=aiohttp.ClientTimeout(total=timeout)) as response:
        response.raise_for_status()
        payload = await response.read()

    def _write():
        directory = os.path.dirname(dest_path)
        fd, tmp_path = tempfile.mkstemp(prefix=".part_", dir=directory)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(payload)
            os.replace(tmp_path, dest_path)
        except BaseException:
            try:
                os.remove(tmp_path)
            except FileNotFoundError:
                pass
            raise

    await asyncio.to_thread(_write)


async def download_media(
    session: aiohttp.ClientSession,
    images: list,
    images_root: str,
    identifier: str,
    delay: float = 0.5,
    timeout: float = 120.0,
) -> int:
    """
    Download each media item into images_root/<identifier>/ and set its
    local_path. A failed item keeps no local_path and the batch continues.
    Returns the number of items downloaded.
    """
    if not images or not identifier:
        return 0
    target_dir = os.path.join(images_root, identifier)
    os.makedirs(target_dir, exist_ok=True)

    downloaded = 0
    attempted = 0
    for index, item in enumerate(images):
        if not isinstance(item, dict):
            continue
        url = item.get("url")
        if not isinstance(url, str) or not url.strip():
            continue
        filename = f"{MEDIA_FILE_PREFIX}{index}{media_extension(url)}"
        if attempted and delay > 0:
            await asyncio.sleep(delay)
        attempted += 1
        try:
            await _download_to(session, url, os.path.join(target_dir, filename), timeout)
        except Exception as e:
            print(f"[ExpandedMetadata] [WARN] Failed to download image {index}: {e}")
            continue
        item["local_path"] = f"{identifier}/{filename}"
        downloaded += 1
    print(f"[ExpandedMetadata] [DEBUG] Downloaded {downloaded}/{len(images)} media items for {identifier}")
    return downloaded
