"""Source image acquisition.

The image is resolved to a path in the cache directory and downloaded
only when no file exists there yet.
"""

from multiwrite.image.fetch import (
    DOWNLOAD_CHUNK_SIZE,
    DOWNLOAD_TIMEOUT,
    download_image,
    ensure_image,
    image_path_for,
)

__all__ = [
    "DOWNLOAD_CHUNK_SIZE",
    "DOWNLOAD_TIMEOUT",
    "download_image",
    "ensure_image",
    "image_path_for",
]
