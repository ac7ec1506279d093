"""Target storage layout and the NixOS mount configuration derived from it."""

from __future__ import annotations

from dataclasses import dataclass, field
import re
from types import MappingProxyType
from typing import Iterable, List, Mapping, Tuple

__all__ = [
    "DEFAULT_PLAN",
    "StorageLayoutPlan",
    "render_mount_fragment",
    "render_mount_instructions",
]

_SAFE_NAME = re.compile(r"^@?[A-Za-z0-9][A-Za-z0-9_.-]*$")


def _ensure(condition: bool, message: str) -> None:
    if not condition:
        raise ValueError(message)


@dataclass(frozen=True)
class StorageLayoutPlan:
    """Target state for the combined boot-partition and block-volume pool."""

    vg_name: str = "datavg"
    lv_name: str = "datalv"
    fs_label: str = "nixos-data"
    subvolumes: Tuple[str, ...] = ("@nix", "@home")
    mount_points: Mapping[str, str] = field(
        default_factory=lambda: {"@nix": "/nix", "@home": "/home"}
    )
    fs_type: str = "btrfs"
    mount_options: Tuple[str, ...] = ("compress=zstd", "noatime")

    def __post_init__(self) -> None:
        object.__setattr__(self, "subvolumes", tuple(self.subvolumes))
        object.__setattr__(self, "mount_options", tuple(self.mount_options))
        object.__setattr__(self, "mount_points", MappingProxyType(dict(self.mount_points)))
        for name in (self.vg_name, self.lv_name, self.fs_label):
            _ensure(bool(_SAFE_NAME.match(name)), f"unsafe name: {name!r}")
        _ensure(bool(self.subvolumes), "layout requires at least one subvolume")
        _ensure(
            len(set(self.subvolumes)) == len(self.subvolumes),
            "subvolume names must be unique",
        )
        for subvolume in self.subvolumes:
            _ensure(bool(_SAFE_NAME.match(subvolume)), f"unsafe subvolume name: {subvolume!r}")
            target = self.mount_points.get(subvolume)
            _ensure(
                isinstance(target, str) and target.startswith("/"),
                f"subvolume {subvolume!r} has no absolute mount point",
            )

    @property
    def lv_device(self) -> str:
        return f"/dev/{self.vg_name}/{self.lv_name}"

    def subvolume_options(self, subvolume: str) -> List[str]:
        """Return the mount options for *subvolume*, ``subvol=`` first."""

        return [f"subvol={subvolume}", *self.mount_options]

    def mounts(self) -> Iterable[Tuple[str, str]]:
        """Yield ``(subvolume, mount point)`` pairs in plan order."""

        for subvolume in self.subvolumes:
            yield subvolume, self.mount_points[subvolume]


DEFAULT_PLAN = StorageLayoutPlan()


def _escape_nix_string(value: str) -> str:
    """Return *value* escaped for inclusion inside a Nix string literal."""

    return value.replace("\\", "\\\\").replace('"', '\\"')


def _format_nix_list(items: Iterable[str]) -> str:
    quoted = [f'"{_escape_nix_string(item)}"' for item in items]
    if not quoted:
        return "[ ]"
    return "[ " + " ".join(quoted) + " ]"


def _filesystem_blocks(plan: StorageLayoutPlan, indent: str) -> List[str]:
    lines: List[str] = []
    for index, (subvolume, mountpoint) in enumerate(plan.mounts()):
        if index:
            lines.append("")
        lines.extend(
            [
                f'{indent}fileSystems."{_escape_nix_string(mountpoint)}" = {{',
                f'{indent}  device = "{_escape_nix_string(plan.lv_device)}";',
                f'{indent}  fsType = "{_escape_nix_string(plan.fs_type)}";',
                f"{indent}  options = {_format_nix_list(plan.subvolume_options(subvolume))};",
                f"{indent}}};",
            ]
        )
    return lines


def render_mount_fragment(plan: StorageLayoutPlan = DEFAULT_PLAN) -> str:
    """Return a NixOS module declaring one mount per subvolume."""

    lines = ["{"] + _filesystem_blocks(plan, "  ") + ["}"]
    return "\n".join(lines) + "\n"


def render_mount_instructions(plan: StorageLayoutPlan = DEFAULT_PLAN) -> List[str]:
    """Return the advisory lines shown after a manual bootstrap."""

    lines = [
        "IMPORTANT: System needs to be reconfigured to use the new mounts.",
        "Add the following to your NixOS configuration and run nixos-rebuild switch:",
        "",
    ]
    lines.extend(_filesystem_blocks(plan, "  "))
    return lines
