"""Tests for device inventory parsing and classification."""

import json
import re

import pytest

from oci_nixos.commands import CommandError, CommandOutput
from oci_nixos.devices import (
    LSBLK_COMMAND,
    BlockDevice,
    DeviceInventory,
    DeviceRole,
    classify_device,
    describe_devices,
    parse_lsblk,
    partition_path,
    scan_devices,
)


def _disk(name, *labels):
    node = {"name": name, "type": "disk", "label": None}
    if labels:
        node["children"] = [
            {"name": f"{name}{index}", "type": "part", "label": label}
            for index, label in enumerate(labels, start=1)
        ]
    return node


def _lsblk(*nodes):
    return json.dumps({"blockdevices": list(nodes)})


@pytest.mark.parametrize(
    "device, role",
    [
        (BlockDevice("/dev/sdb"), DeviceRole.BLOCK_VOLUME),
        (BlockDevice("/dev/sda", 4, "ESP"), DeviceRole.BOOT_DISK),
        (BlockDevice("/dev/sdc", 2, "data"), DeviceRole.UNCLASSIFIED),
        (BlockDevice("/dev/sdd", 2, None), DeviceRole.UNCLASSIFIED),
    ],
)
def test_classify_device(device, role) -> None:
    assert classify_device(device) is role


def test_parse_lsblk_end_to_end_inventory() -> None:
    inventory = parse_lsblk(_lsblk(_disk("/dev/sdb"), _disk("/dev/sda", "ESP", None, None)))

    assert [device.path for device in inventory.devices] == ["/dev/sda", "/dev/sdb"]
    assert inventory.devices[0].partition_count == 4
    assert inventory.boot_disk == "/dev/sda"
    assert inventory.block_volume == "/dev/sdb"
    assert partition_path(inventory.boot_disk, 3) == "/dev/sda3"


def test_parse_lsblk_counts_nested_children() -> None:
    node = _disk("/dev/sda", "ESP", None, None)
    node["children"][2]["children"] = [{"name": "/dev/mapper/vg-lv", "type": "lvm"}]

    inventory = parse_lsblk(_lsblk(node))

    assert inventory.devices[0].partition_count == 5


def test_parse_lsblk_ignores_non_matching_devices() -> None:
    inventory = parse_lsblk(
        _lsblk(
            {"name": "/dev/sr0", "type": "rom"},
            {"name": "/dev/loop0", "type": "loop"},
            _disk("/dev/nvme0n1"),
            _disk("/dev/sdb"),
        )
    )

    assert [device.path for device in inventory.devices] == ["/dev/sdb"]


def test_parse_lsblk_with_custom_pattern() -> None:
    inventory = parse_lsblk(_lsblk(_disk("/dev/nvme0n1")), re.compile(r"^/dev/nvme\dn\d$"))
    assert inventory.block_volume == "/dev/nvme0n1"


def test_parse_lsblk_empty_output() -> None:
    assert parse_lsblk("   ") == DeviceInventory()


def test_ambiguous_boot_disks_yield_no_boot_disk() -> None:
    inventory = DeviceInventory(
        devices=(BlockDevice("/dev/sda", 3, "ESP"), BlockDevice("/dev/sdc", 3, "ESP"))
    )
    assert inventory.boot_disk is None


def test_zero_boot_disks_yield_no_boot_disk() -> None:
    inventory = DeviceInventory(devices=(BlockDevice("/dev/sdb"),))
    assert inventory.boot_disk is None
    assert inventory.block_volume == "/dev/sdb"


def test_multiple_bare_disks_yield_no_block_volume() -> None:
    inventory = DeviceInventory(devices=(BlockDevice("/dev/sdb"), BlockDevice("/dev/sdc")))
    assert inventory.block_volume is None
    assert len(inventory.with_role(DeviceRole.BLOCK_VOLUME)) == 2


def test_partition_path_for_nvme() -> None:
    assert partition_path("/dev/nvme0n1", 3) == "/dev/nvme0n1p3"


def test_describe_devices() -> None:
    assert describe_devices(()) == "none"
    assert describe_devices([BlockDevice("/dev/sdb")]) == "/dev/sdb (block_volume)"


def test_scan_devices_runs_lsblk() -> None:
    calls = []

    def runner(cmd, *, input=None):
        calls.append(tuple(cmd))
        return CommandOutput(stdout=_lsblk(_disk("/dev/sda", "ESP", None, None)))

    inventory = scan_devices(runner)

    assert calls == [LSBLK_COMMAND]
    assert inventory.boot_disk == "/dev/sda"


def test_scan_devices_propagates_failure() -> None:
    def runner(cmd, *, input=None):
        return CommandOutput(stdout="", returncode=32, stderr="lsblk: failed")

    with pytest.raises(CommandError):
        scan_devices(runner)
