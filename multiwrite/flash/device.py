"""Drive enumeration and unmount control.

This module handles everything that talks to the host about block devices:
- List whole-disk drives with their metadata via lsblk
- Classify drives as system or write-protected
- Find and unmount every mounted filesystem of a drive

Every call that shells out is a coroutine so the discovery loop and the
flashing sessions share one event loop.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from multiwrite.errors import EnumerationError, UnmountError

logger = logging.getLogger(__name__)

# Mountpoints that mark a disk as hosting the running system
ROOT_MOUNTPOINTS = {"/", "/boot", "/boot/firmware", "/boot/efi", "[SWAP]"}

LSBLK_COLUMNS = "NAME,TYPE,SIZE,MODEL,VENDOR,TRAN,RM,RO,HOTPLUG,MOUNTPOINT"


@dataclass(frozen=True)
class Drive:
    """Snapshot of an attached drive taken during one poll.

    Attributes:
        device: Stable device identifier (e.g., '/dev/sdb').
        raw: Path the image is written to.
        description: Human readable vendor/model string.
        size: Size of the drive in bytes.
        system: Whether the drive hosts the running system or is not removable.
        protected: Whether the drive is read-only.
        mountpoints: Mounted filesystems on the drive and its partitions.
    """

    device: str
    raw: str
    description: str
    size: int
    system: bool
    protected: bool
    mountpoints: list[str] = field(default_factory=list)


def _as_bool(value: Any) -> bool:
    """Interpret lsblk flag columns, which are bools or '0'/'1' by version."""
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true")
    return bool(value)


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _collect_mountpoints(node: dict[str, Any]) -> list[str]:
    """Collect mountpoints of a device node and all of its children."""
    mountpoints: list[str] = []
    mountpoint = node.get("mountpoint")
    if mountpoint:
        mountpoints.append(mountpoint)
    for child in node.get("children") or []:
        mountpoints.extend(_collect_mountpoints(child))
    return mountpoints


def _describe(node: dict[str, Any]) -> str:
    parts = [
        str(node.get(key) or "").strip() for key in ("vendor", "model")
    ]
    description = " ".join(part for part in parts if part)
    return description or "Unknown drive"


def drive_from_lsblk(node: dict[str, Any]) -> Drive:
    """Build a Drive from one lsblk 'blockdevices' entry.

    Args:
        node: Parsed JSON object for a disk (lsblk run with -p).

    Returns:
        Drive snapshot.
    """
    device = node["name"]
    mountpoints = _collect_mountpoints(node)
    removable = (
        _as_bool(node.get("rm"))
        or _as_bool(node.get("hotplug"))
        or node.get("tran") == "usb"
    )
    hosts_root = any(mountpoint in ROOT_MOUNTPOINTS for mountpoint in mountpoints)

    return Drive(
        device=device,
        raw=device,
        description=_describe(node),
        size=_as_int(node.get("size")),
        system=hosts_root or not removable,
        protected=_as_bool(node.get("ro")),
        mountpoints=mountpoints,
    )


def parse_lsblk_output(output: str) -> list[Drive]:
    """Parse `lsblk -J` output into drives, keeping whole disks only.

    Args:
        output: JSON text printed by lsblk.

    Returns:
        Drives in the order lsblk listed them.

    Raises:
        EnumerationError: Output is not valid lsblk JSON.
    """
    try:
        data = json.loads(output)
        nodes = data.get("blockdevices", [])
        return [
            drive_from_lsblk(node) for node in nodes if node.get("type") == "disk"
        ]
    except (json.JSONDecodeError, KeyError, TypeError, AttributeError) as e:
        raise EnumerationError(f"Could not parse lsblk output: {e!r}") from e


async def _run(*command: str) -> tuple[int, str, str]:
    """Run a command without a shell and capture its output."""
    logger.debug("Running command: %s", " ".join(command))
    process = await asyncio.create_subprocess_exec(
        *command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout, stderr = await process.communicate()
    return (
        process.returncode if process.returncode is not None else -1,
        stdout.decode(errors="replace"),
        stderr.decode(errors="replace"),
    )


async def list_drives() -> list[Drive]:
    """List the drives currently attached to the host.

    Returns:
        Whole-disk drives with metadata and mountpoints.

    Raises:
        EnumerationError: lsblk is missing, failed, or printed garbage.
    """
    try:
        returncode, stdout, stderr = await _run(
            "lsblk", "-J", "-b", "-p", "-o", LSBLK_COLUMNS
        )
    except OSError as e:
        raise EnumerationError(f"Could not run lsblk: {e}") from e

    if returncode != 0:
        raise EnumerationError(
            f"lsblk exited with code {returncode}: {stderr.strip()}"
        )

    return parse_lsblk_output(stdout)


def get_mount_points(device_path: str) -> list[str]:
    """Get mount points for a device and its partitions.

    Parses /proc/mounts to find any mounted partitions associated
    with the given device.

    Args:
        device_path: Path to the device (e.g., '/dev/sda').

    Returns:
        List of mount points (empty if none mounted).
    """
    mount_points: list[str] = []
    device_name = Path(device_path).name

    try:
        with open("/proc/mounts") as f:
            for line in f:
                parts = line.split()
                if len(parts) < 2:
                    continue
                mounted_name = Path(parts[0]).name
                # Exact match, or a partition such as sda1 / mmcblk0p1
                if mounted_name == device_name or (
                    mounted_name.startswith(device_name)
                    and len(mounted_name) > len(device_name)
                    and (
                        mounted_name[len(device_name)].isdigit()
                        or mounted_name[len(device_name)] == "p"
                    )
                ):
                    # /proc/mounts escapes spaces as \040
                    mount_points.append(parts[1].replace("\\040", " "))
    except OSError:
        logger.warning("Could not read /proc/mounts, skipping mount check")

    return mount_points


async def unmount_disk(device: str) -> None:
    """Unmount every filesystem that lives on a drive.

    Args:
        device: Device identifier (e.g., '/dev/sdb').

    Raises:
        UnmountError: A filesystem could not be unmounted.
    """
    mount_points = get_mount_points(device)
    if not mount_points:
        logger.debug("Nothing mounted on %s", device)
        return

    # Deepest mounts first so nested mounts do not keep parents busy
    for mount_point in sorted(mount_points, key=len, reverse=True):
        try:
            returncode, _, stderr = await _run("umount", mount_point)
        except OSError as e:
            raise UnmountError(device, f"Could not run umount: {e}") from e

        if returncode != 0:
            raise UnmountError(
                device, f"Failed to unmount {mount_point}: {stderr.strip()}"
            )
        logger.info("Unmounted %s from %s", mount_point, device)


__all__ = [
    "Drive",
    "LSBLK_COLUMNS",
    "ROOT_MOUNTPOINTS",
    "drive_from_lsblk",
    "get_mount_points",
    "list_drives",
    "parse_lsblk_output",
    "unmount_disk",
]
