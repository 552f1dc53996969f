"""Boot sector inspection used to detect already-provisioned drives.

The image this station deploys lays down more than two partitions, so a
drive whose MBR already lists more than two is treated as flashed by an
earlier run and left alone. Anything that cannot be read or decoded is
treated as blank.
"""

import logging
import struct
from dataclasses import dataclass

from multiwrite.errors import PartitionTableError

logger = logging.getLogger(__name__)

BOOT_SECTOR_SIZE = 512
BOOT_SIGNATURE = b"\x55\xaa"

# Primary partition table layout
PARTITION_TABLE_OFFSET = 446
PARTITION_ENTRY_SIZE = 16
PARTITION_ENTRY_COUNT = 4

# status, CHS first (3), type, CHS last (3), first LBA, sector count
_ENTRY_FORMAT = struct.Struct("<B3sB3sII")

# A drive with more used entries than this is considered provisioned
PROVISIONED_PARTITION_THRESHOLD = 2


@dataclass(frozen=True)
class PartitionEntry:
    """One primary partition table entry."""

    status: int
    type: int
    first_lba: int
    sectors: int


def decode_boot_sector(data: bytes) -> list[PartitionEntry]:
    """Decode the primary partition table of an MBR boot sector.

    Args:
        data: The first 512 bytes of a drive.

    Returns:
        The four primary partition entries, used or not.

    Raises:
        PartitionTableError: Wrong length or missing boot signature.
    """
    if len(data) != BOOT_SECTOR_SIZE:
        raise PartitionTableError(
            f"Boot sector must be {BOOT_SECTOR_SIZE} bytes, got {len(data)}"
        )
    if data[-2:] != BOOT_SIGNATURE:
        raise PartitionTableError(
            f"Invalid boot signature: {data[-2:].hex()}"
        )

    entries: list[PartitionEntry] = []
    for index in range(PARTITION_ENTRY_COUNT):
        offset = PARTITION_TABLE_OFFSET + index * PARTITION_ENTRY_SIZE
        status, _, part_type, _, first_lba, sectors = _ENTRY_FORMAT.unpack_from(
            data, offset
        )
        entries.append(
            PartitionEntry(
                status=status, type=part_type, first_lba=first_lba, sectors=sectors
            )
        )
    return entries


def count_partitions(entries: list[PartitionEntry]) -> int:
    """Count entries with a non-zero partition type."""
    return sum(1 for entry in entries if entry.type)


def read_boot_sector(device_path: str, length: int = BOOT_SECTOR_SIZE) -> bytes | None:
    """Read the first bytes of a drive.

    Returns:
        The bytes read, or None if the drive could not be read.
    """
    try:
        with open(device_path, "rb") as f:
            return f.read(length)
    except OSError as e:
        logger.debug("Could not read boot sector of %s: %s", device_path, e)
        return None


def is_provisioned(device_path: str) -> bool:
    """Check whether a drive already carries the deployed partition layout.

    Args:
        device_path: Device to inspect.

    Returns:
        True when more than PROVISIONED_PARTITION_THRESHOLD partitions are
        in use; False when the boot sector is unreadable or undecodable.
    """
    data = read_boot_sector(device_path)
    if data is None:
        return False

    try:
        entries = decode_boot_sector(data)
    except PartitionTableError as e:
        logger.debug("No partition table on %s: %s", device_path, e.message)
        return False

    partitions = count_partitions(entries)
    logger.debug("%s has %d partition(s)", device_path, partitions)
    return partitions > PROVISIONED_PARTITION_THRESHOLD


__all__ = [
    "BOOT_SECTOR_SIZE",
    "PROVISIONED_PARTITION_THRESHOLD",
    "PartitionEntry",
    "count_partitions",
    "decode_boot_sector",
    "is_provisioned",
    "read_boot_sector",
]
