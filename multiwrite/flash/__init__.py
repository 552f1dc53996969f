"""Drive access for flashing.

This module handles:
- Drive enumeration and unmount control
- Boot sector inspection for already-provisioned drives
- Writing and verifying the image with progress reporting
"""

from multiwrite.flash.device import (
    Drive,
    get_mount_points,
    list_drives,
    parse_lsblk_output,
    unmount_disk,
)
from multiwrite.flash.partitions import (
    PartitionEntry,
    count_partitions,
    decode_boot_sector,
    is_provisioned,
    read_boot_sector,
)
from multiwrite.flash.writer import (
    DEFAULT_BLOCK_SIZE,
    ImageWriter,
    ProgressCallback,
    WriteResult,
)

__all__ = [
    # Devices
    "Drive",
    "get_mount_points",
    "list_drives",
    "parse_lsblk_output",
    "unmount_disk",
    # Partitions
    "PartitionEntry",
    "count_partitions",
    "decode_boot_sector",
    "is_provisioned",
    "read_boot_sector",
    # Writer
    "DEFAULT_BLOCK_SIZE",
    "ImageWriter",
    "ProgressCallback",
    "WriteResult",
]
