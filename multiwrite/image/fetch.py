"""Source image fetch module.

This module handles:
- Mapping the image URL to a path in the local cache directory
- Reusing an image that is already cached
- Streaming the download into a temporary file and moving it into place

The image is fetched once per process, before any drive is touched. A
cached file is trusted as-is; nothing checks it against the remote copy.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
from pathlib import Path, PurePosixPath

import httpx

from multiwrite.errors import FetchError
from multiwrite.types import ImageSource

logger = logging.getLogger(__name__)

# Timeout for downloads (seconds)
DOWNLOAD_TIMEOUT = 3600

# Chunk size for downloads (bytes)
DOWNLOAD_CHUNK_SIZE = 64 * 1024  # 64 KB


def image_path_for(url: str, data_dir: Path) -> Path:
    """Return the cache path for an image URL.

    Args:
        url: Image URL; query string and fragment are ignored.
        data_dir: Image cache directory.

    Returns:
        data_dir joined with the last path segment of the URL.

    Raises:
        FetchError: The URL has no file name.
    """
    name = PurePosixPath(httpx.URL(url).path).name
    if not name:
        raise FetchError(f"Image URL has no file name: {url}", error_code="invalid_url")
    return data_dir / name


async def download_image(
    client: httpx.AsyncClient,
    url: str,
    dest_path: Path,
    timeout: float = DOWNLOAD_TIMEOUT,
    chunk_size: int = DOWNLOAD_CHUNK_SIZE,
) -> int:
    """Download an image to dest_path.

    The body is streamed into a temporary file next to dest_path, which is
    moved into place only after the transfer completed.

    Args:
        client: HTTPX async client instance.
        url: URL to download from.
        dest_path: Final location of the image.
        timeout: Download timeout in seconds.
        chunk_size: Size of chunks to download.

    Returns:
        Number of bytes downloaded.

    Raises:
        FetchError: If the download fails.
    """
    logger.info("Downloading %s to %s", url, dest_path)

    try:
        dest_path.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            dir=dest_path.parent, suffix=".tmp", delete=False
        ) as tmp_file:
            tmp_path = Path(tmp_file.name)
    except OSError as e:
        raise FetchError(
            f"Cannot write to {dest_path.parent}: {e}", error_code="os_error"
        ) from e

    try:
        total_bytes = 0
        async with client.stream("GET", url, timeout=timeout) as response:
            response.raise_for_status()
            with tmp_path.open("wb") as f:
                async for chunk in response.aiter_bytes(chunk_size):
                    f.write(chunk)
                    total_bytes += len(chunk)

        shutil.move(str(tmp_path), str(dest_path))

    except httpx.HTTPStatusError as e:
        tmp_path.unlink(missing_ok=True)
        raise FetchError(
            f"HTTP error downloading {url}: {e.response.status_code} {e.response.reason_phrase}",
            error_code="http_error",
        ) from e
    except httpx.TimeoutException as e:
        tmp_path.unlink(missing_ok=True)
        raise FetchError(f"Timeout downloading {url}", error_code="timeout") from e
    except httpx.RequestError as e:
        tmp_path.unlink(missing_ok=True)
        raise FetchError(
            f"Network error downloading {url}: {e}", error_code="network_error"
        ) from e
    except OSError as e:
        tmp_path.unlink(missing_ok=True)
        raise FetchError(
            f"OS error saving {url} to {dest_path}: {e}", error_code="os_error"
        ) from e

    logger.info("Downloaded %s (%d bytes)", dest_path.name, total_bytes)
    return total_bytes


async def ensure_image(
    url: str,
    data_dir: Path,
    *,
    client: httpx.AsyncClient | None = None,
    timeout: float = DOWNLOAD_TIMEOUT,
) -> ImageSource:
    """Make the image available locally, downloading it if needed.

    Args:
        url: Image URL.
        data_dir: Image cache directory.
        client: HTTPX async client; a temporary one is created if omitted.
        timeout: Download timeout in seconds.

    Returns:
        ImageSource describing the local file.

    Raises:
        FetchError: If the download fails.
    """
    image_path = image_path_for(url, data_dir)

    if image_path.is_file():
        logger.info("Using cached image %s", image_path)
        return ImageSource.from_file(image_path)

    if client is None:
        async with httpx.AsyncClient(follow_redirects=True) as own_client:
            await download_image(own_client, url, image_path, timeout=timeout)
    else:
        await download_image(client, url, image_path, timeout=timeout)

    return ImageSource.from_file(image_path)


__all__ = [
    "DOWNLOAD_CHUNK_SIZE",
    "DOWNLOAD_TIMEOUT",
    "download_image",
    "ensure_image",
    "image_path_for",
]
