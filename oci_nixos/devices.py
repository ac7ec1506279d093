"""Block device inventory and boot-disk / block-volume classification."""

from __future__ import annotations

from dataclasses import dataclass
import enum
import json
import re
from typing import Any, Iterable, Mapping, Optional, Pattern, Sequence, Tuple

from .commands import CommandRunner, run_checked
from .logging_utils import log_event

__all__ = [
    "BlockDevice",
    "DEFAULT_DISK_PATTERN",
    "DeviceInventory",
    "DeviceRole",
    "ESP_LABEL",
    "LSBLK_COMMAND",
    "classify_device",
    "describe_devices",
    "parse_lsblk",
    "partition_path",
    "scan_devices",
]

ESP_LABEL = "ESP"
DEFAULT_DISK_PATTERN = re.compile(r"^/dev/sd[a-z]$")
LSBLK_COMMAND: Tuple[str, ...] = (
    "lsblk",
    "--json",
    "--paths",
    "--output",
    "NAME,TYPE,LABEL",
)


class DeviceRole(enum.Enum):
    BOOT_DISK = "boot_disk"
    BLOCK_VOLUME = "block_volume"
    UNCLASSIFIED = "unclassified"


@dataclass(frozen=True)
class BlockDevice:
    """A whole disk as observed on the guest.

    ``partition_count`` follows ``lsblk -n -o NAME <disk>``: the disk itself
    counts as one entry, so a bare disk reports ``1``.
    """

    path: str
    partition_count: int = 1
    first_partition_label: Optional[str] = None

    @property
    def has_esp_partition(self) -> bool:
        return self.partition_count > 1 and self.first_partition_label == ESP_LABEL


def classify_device(device: BlockDevice) -> DeviceRole:
    """Return the role *device* plays in the storage bootstrap."""

    if device.partition_count == 1:
        return DeviceRole.BLOCK_VOLUME
    if device.has_esp_partition:
        return DeviceRole.BOOT_DISK
    return DeviceRole.UNCLASSIFIED


@dataclass(frozen=True)
class DeviceInventory:
    """Immutable snapshot of the guest's candidate disks."""

    devices: Tuple[BlockDevice, ...] = ()

    def with_role(self, role: DeviceRole) -> Tuple[BlockDevice, ...]:
        return tuple(device for device in self.devices if classify_device(device) is role)

    def _unique(self, role: DeviceRole) -> Optional[str]:
        matches = self.with_role(role)
        if len(matches) != 1:
            return None
        return matches[0].path

    @property
    def boot_disk(self) -> Optional[str]:
        """Path of the only disk with an ESP-labelled first partition."""

        return self._unique(DeviceRole.BOOT_DISK)

    @property
    def block_volume(self) -> Optional[str]:
        """Path of the only disk without partitions."""

        return self._unique(DeviceRole.BLOCK_VOLUME)


def _count_entries(node: Mapping[str, Any]) -> int:
    children = node.get("children") or []
    return 1 + sum(_count_entries(child) for child in children if isinstance(child, Mapping))


def _device_from_node(node: Mapping[str, Any]) -> BlockDevice:
    children = [child for child in node.get("children") or [] if isinstance(child, Mapping)]
    first_label = None
    if children:
        label = children[0].get("label")
        first_label = label if isinstance(label, str) else None
    return BlockDevice(
        path=str(node.get("name", "")),
        partition_count=_count_entries(node),
        first_partition_label=first_label,
    )


def parse_lsblk(
    text: str, pattern: Pattern[str] = DEFAULT_DISK_PATTERN
) -> DeviceInventory:
    """Build a :class:`DeviceInventory` from ``lsblk --json`` output."""

    if not text.strip():
        return DeviceInventory()
    data = json.loads(text)
    nodes: Iterable[Any] = data.get("blockdevices") or []
    devices = []
    for node in nodes:
        if not isinstance(node, Mapping):
            continue
        if node.get("type") != "disk":
            continue
        name = str(node.get("name", ""))
        if not pattern.match(name):
            continue
        devices.append(_device_from_node(node))
    devices.sort(key=lambda device: device.path)
    return DeviceInventory(devices=tuple(devices))


def scan_devices(
    runner: CommandRunner, pattern: Pattern[str] = DEFAULT_DISK_PATTERN
) -> DeviceInventory:
    """Return a fresh inventory of the guest's disks."""

    result = run_checked(runner, LSBLK_COMMAND)
    inventory = parse_lsblk(result.stdout, pattern)
    log_event(
        "oci_nixos.devices.scan",
        devices=[
            {
                "path": device.path,
                "partition_count": device.partition_count,
                "first_partition_label": device.first_partition_label,
                "role": classify_device(device).value,
            }
            for device in inventory.devices
        ],
        boot_disk=inventory.boot_disk,
        block_volume=inventory.block_volume,
    )
    return inventory


def partition_path(disk: str, number: int) -> str:
    """Return the device path of partition *number* on *disk*."""

    if disk and disk[-1].isdigit():
        return f"{disk}p{number}"
    return f"{disk}{number}"


def describe_devices(devices: Sequence[BlockDevice]) -> str:
    """Return a one-line human summary of *devices*."""

    if not devices:
        return "none"
    return ", ".join(
        f"{device.path} ({classify_device(device).value})" for device in devices
    )
