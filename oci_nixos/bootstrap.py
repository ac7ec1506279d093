"""First-boot LVM storage assembly and data migration.

The boot volume ships with an ``efi+lvm`` layout whose third partition is
reserved for LVM. On first boot that partition and the attached block volume
are pooled into one volume group carrying a single btrfs logical volume; the
live ``/nix`` and ``/home`` trees are copied into subvolumes on it and the
system is pointed at the new mounts.

Every guest interaction goes through :class:`GuestStorage`, which issues one
command per operation through an injected runner (local or SSH). The
orchestrator itself, :class:`StorageBootstrap`, only sequences those
operations and can be driven against an in-memory guest in tests.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
import os
import posixpath
import socket
import time
import uuid
from typing import Callable, Dict, Iterator, List, Optional, Pattern, Sequence, Tuple

from .commands import CommandError, CommandOutput, CommandRunner
from .config import default_lock_dir, default_marker_path
from .devices import (
    DEFAULT_DISK_PATTERN,
    DeviceInventory,
    describe_devices,
    partition_path,
    scan_devices,
)
from .layout import DEFAULT_PLAN, StorageLayoutPlan, render_mount_fragment, render_mount_instructions
from .logging_utils import log_event
from .nixos_config import FRAGMENT_NAME, inject_lvm_configuration

__all__ = [
    "BootstrapOptions",
    "BootstrapResult",
    "BootstrapStepError",
    "GuestLease",
    "GuestStorage",
    "STATUS_COMPLETED",
    "STATUS_FAILED",
    "STATUS_SKIPPED",
    "StorageBootstrap",
]

STATUS_COMPLETED = "completed"
STATUS_SKIPPED = "skipped"
STATUS_FAILED = "failed"

REASON_ALREADY_DONE = "already done"
REASON_VG_EXISTS = "vg pre-exists"
REASON_NO_BOOT_DISK = "no boot disk"
REASON_NO_LVM_PARTITION = "no lvm partition"
REASON_NO_BLOCK_VOLUME = "no block volume"
REASON_LOCKED = "bootstrap already running"


@dataclass(frozen=True)
class BootstrapResult:
    """Outcome of a :meth:`StorageBootstrap.run` invocation."""

    status: str
    reason: Optional[str] = None
    details: Dict[str, str] = field(default_factory=dict)


class BootstrapStepError(RuntimeError):
    """A guest operation failed while assembling storage."""

    def __init__(
        self,
        step: str,
        message: str,
        *,
        command: Sequence[str] = (),
        output: Optional[CommandOutput] = None,
    ) -> None:
        super().__init__(f"{step}: {message}")
        self.step = step
        self.command = list(command)
        self.output = output


@dataclass
class BootstrapOptions:
    """Tunables for a bootstrap run."""

    auto_rebuild: bool = False
    marker_path: str = field(default_factory=default_marker_path)
    block_volume_attempts: int = 12
    block_volume_interval: float = 5.0
    boot_partition_number: int = 3
    disk_pattern: Pattern[str] = DEFAULT_DISK_PATTERN
    config_dir: str = "/etc/nixos"
    rebuild_command: Tuple[str, ...] = ("nixos-rebuild", "boot")


class GuestStorage:
    """Block device and filesystem operations on the target guest."""

    def __init__(self, runner: CommandRunner) -> None:
        self.runner = runner

    def _check(
        self, step: str, cmd: Sequence[str], *, input: Optional[str] = None
    ) -> CommandOutput:
        result = self.runner(cmd, input=input)
        if result.returncode != 0:
            raise BootstrapStepError(
                step, str(CommandError(cmd, result)), command=cmd, output=result
            )
        return result

    def _probe(self, cmd: Sequence[str]) -> bool:
        return self.runner(cmd).returncode == 0

    def marker_exists(self, path: str) -> bool:
        return self._probe(["test", "-f", path])

    def write_marker(self, path: str) -> None:
        self._check("write-marker", ["mkdir", "-p", posixpath.dirname(path) or "/"])
        self._check("write-marker", ["touch", path])

    def volume_group_exists(self, vg_name: str) -> bool:
        return self._probe(["vgs", vg_name])

    def list_devices(self, pattern: Pattern[str] = DEFAULT_DISK_PATTERN) -> DeviceInventory:
        try:
            return scan_devices(self.runner, pattern)
        except CommandError as exc:
            raise BootstrapStepError(
                "detect-devices", str(exc), command=exc.cmd, output=exc.result
            ) from exc

    def is_block_device(self, path: str) -> bool:
        return self._probe(["test", "-b", path])

    def grow_partition(self, disk: str, number: int) -> bool:
        """Grow partition *number* of *disk*; ``False`` when already at max size."""

        cmd = ["growpart", disk, str(number)]
        result = self.runner(cmd)
        if result.returncode == 0:
            return True
        # growpart reports NOCHANGE with status 1 when there is nothing to grow.
        if result.returncode == 1 and "NOCHANGE" in (result.stdout + result.stderr):
            return False
        raise BootstrapStepError(
            "grow-partition", str(CommandError(cmd, result)), command=cmd, output=result
        )

    def create_physical_volume(self, device: str) -> None:
        self._check("create-physical-volume", ["pvcreate", "-f", device])

    def create_volume_group(self, vg_name: str, devices: Sequence[str]) -> None:
        self._check("create-volume-group", ["vgcreate", vg_name, *devices])

    def create_logical_volume(self, vg_name: str, lv_name: str) -> None:
        self._check(
            "create-logical-volume", ["lvcreate", "-l", "100%FREE", "-n", lv_name, vg_name]
        )

    def format_filesystem(self, device: str, label: str) -> None:
        self._check("format-filesystem", ["mkfs.btrfs", "-L", label, device])

    def make_temp_dir(self) -> str:
        return self._check("mount", ["mktemp", "-d"]).stdout.strip()

    def remove_dir(self, path: str) -> None:
        self._check("unmount", ["rmdir", path])

    def mount(self, device: str, target: str, options: Optional[Sequence[str]] = None) -> None:
        cmd = ["mount"]
        if options:
            cmd.extend(["-o", ",".join(options)])
        cmd.extend([device, target])
        self._check("mount", cmd)

    def unmount(self, target: str) -> None:
        self._check("unmount", ["umount", target])

    def create_subvolume(self, path: str) -> None:
        self._check("create-subvolume", ["btrfs", "subvolume", "create", path])

    def has_content(self, path: str) -> bool:
        """Return ``True`` when *path* is an existing, non-empty directory."""

        result = self.runner(
            ["find", path, "-mindepth", "1", "-maxdepth", "1", "-print", "-quit"]
        )
        return result.returncode == 0 and bool(result.stdout.strip())

    def copy_tree(self, source: str, destination: str, *, mirror: bool = False) -> None:
        cmd = ["rsync", "-aAX"]
        if mirror:
            cmd.append("--delete")
        cmd.extend([source.rstrip("/") + "/", destination.rstrip("/") + "/"])
        self._check("resync" if mirror else "copy-data", cmd)

    def read_file(self, path: str, *, step: str = "write-config") -> str:
        return self._check(step, ["cat", path]).stdout

    def write_file(self, path: str, text: str, *, step: str = "write-config") -> None:
        self._check(step, ["tee", path], input=text)

    def rebuild(self, command: Sequence[str]) -> None:
        self._check("rebuild", command)

    def reboot(self) -> None:
        cmd = ["systemctl", "reboot"]
        result = self.runner(cmd)
        # ssh exits with 255 when the guest drops the session while going down.
        if result.returncode in (0, 255):
            return
        raise BootstrapStepError(
            "reboot", str(CommandError(cmd, result)), command=cmd, output=result
        )

    def collect_diagnostics(self) -> List[Tuple[str, str]]:
        """Return ``(label, output)`` pairs describing the guest's state."""

        probes = (
            ("failed units", ["systemctl", "--failed", "--no-pager"]),
            ("journal", ["journalctl", "-b", "-n", "50", "--no-pager"]),
            ("block devices", ["lsblk"]),
        )
        collected: List[Tuple[str, str]] = []
        for label, cmd in probes:
            result = self.runner(cmd)
            collected.append((label, (result.stdout + result.stderr).strip()))
        return collected


class GuestLease:
    """Exclusive lease on the guest, claimed with an atomic ``mkdir``.

    ``mkdir`` either creates the lease directory or fails because another
    holder already did, which makes acquisition a compare-and-swap on the
    directory's existence. The owner token recorded inside lets
    :meth:`release` remove only a lease this instance holds.
    """

    def __init__(
        self,
        runner: CommandRunner,
        path: Optional[str] = None,
        owner: Optional[str] = None,
    ) -> None:
        self.runner = runner
        self.path = path or default_lock_dir()
        self.owner = owner or f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"
        self.held = False

    @property
    def _owner_file(self) -> str:
        return posixpath.join(self.path, "owner")

    def try_acquire(self) -> bool:
        if self.runner(["mkdir", self.path]).returncode != 0:
            log_event("oci_nixos.bootstrap.lease.busy", path=self.path)
            return False
        result = self.runner(["tee", self._owner_file], input=self.owner + "\n")
        if result.returncode != 0:
            self.runner(["rmdir", self.path])
            log_event(
                "oci_nixos.bootstrap.lease.owner_write_failed",
                path=self.path,
                returncode=result.returncode,
            )
            return False
        self.held = True
        log_event("oci_nixos.bootstrap.lease.acquired", path=self.path, owner=self.owner)
        return True

    def release(self) -> None:
        if not self.held:
            return
        current = self.runner(["cat", self._owner_file])
        if current.returncode != 0 or current.stdout.strip() != self.owner:
            log_event(
                "oci_nixos.bootstrap.lease.owner_mismatch",
                path=self.path,
                owner=self.owner,
                found=current.stdout.strip(),
            )
            self.held = False
            return
        self.runner(["rm", "-rf", self.path])
        self.held = False
        log_event("oci_nixos.bootstrap.lease.released", path=self.path)


def _default_echo(message: str) -> None:
    print(f"[first-boot-lvm] {message}", flush=True)


class StorageBootstrap:
    """Drive a guest from its shipped layout to the pooled btrfs layout."""

    def __init__(
        self,
        guest: GuestStorage,
        options: Optional[BootstrapOptions] = None,
        *,
        lease: Optional[GuestLease] = None,
        sleep: Callable[[float], None] = time.sleep,
        echo: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.guest = guest
        self.options = options or BootstrapOptions()
        self.lease = lease if lease is not None else GuestLease(guest.runner)
        self._sleep = sleep
        self._echo = echo or _default_echo

    def run(self, plan: StorageLayoutPlan = DEFAULT_PLAN) -> BootstrapResult:
        """Assemble storage for *plan*; safe to call again after any outcome."""

        log_event(
            "oci_nixos.bootstrap.start",
            vg=plan.vg_name,
            lv=plan.lv_name,
            subvolumes=plan.subvolumes,
            auto_rebuild=self.options.auto_rebuild,
            marker=self.options.marker_path,
        )
        try:
            result = self._run(plan)
        except BootstrapStepError as exc:
            return self._fail(exc)
        log_event(
            "oci_nixos.bootstrap.result",
            status=result.status,
            reason=result.reason,
            details=result.details,
        )
        return result

    def _skip(self, reason: str, message: str) -> BootstrapResult:
        self._echo(message)
        return BootstrapResult(status=STATUS_SKIPPED, reason=reason)

    def _run(self, plan: StorageLayoutPlan) -> BootstrapResult:
        options = self.options
        guest = self.guest

        if guest.marker_exists(options.marker_path):
            return self._skip(
                REASON_ALREADY_DONE, "LVM setup already completed (marker file exists)"
            )

        if guest.volume_group_exists(plan.vg_name):
            self._echo(f"Volume group {plan.vg_name} already exists, marking as done")
            guest.write_marker(options.marker_path)
            return BootstrapResult(status=STATUS_SKIPPED, reason=REASON_VG_EXISTS)

        self._echo("Detecting devices...")
        inventory = guest.list_devices(options.disk_pattern)
        self._echo(f"Found devices: {describe_devices(inventory.devices)}")

        boot_disk = inventory.boot_disk
        if boot_disk is None:
            return self._skip(
                REASON_NO_BOOT_DISK,
                "Boot disk not found (no disk with ESP partition), skipping setup",
            )

        boot_partition = partition_path(boot_disk, options.boot_partition_number)
        if not guest.is_block_device(boot_partition):
            return self._skip(
                REASON_NO_LVM_PARTITION,
                f"Boot LVM partition {boot_partition} not found, skipping setup",
            )

        block_volume = inventory.block_volume
        if block_volume is None:
            block_volume = self._wait_for_block_volume()
        if block_volume is None:
            total = options.block_volume_attempts * options.block_volume_interval
            return self._skip(
                REASON_NO_BLOCK_VOLUME,
                f"Block volume not found after {total:g}s, skipping LVM setup",
            )

        if not self.lease.try_acquire():
            return self._skip(REASON_LOCKED, "Another LVM setup run holds the lease, skipping")
        try:
            if guest.marker_exists(options.marker_path):
                return self._skip(
                    REASON_ALREADY_DONE, "LVM setup completed by a concurrent run"
                )
            result = self._execute(plan, boot_disk, boot_partition, block_volume)
        finally:
            self.lease.release()

        if options.auto_rebuild and result.status == STATUS_COMPLETED:
            self._echo("Rebooting into the new storage layout...")
            guest.reboot()
        return result

    def _wait_for_block_volume(self) -> Optional[str]:
        options = self.options
        self._echo("Block volume not found, waiting...")
        for attempt in range(1, options.block_volume_attempts + 1):
            self._sleep(options.block_volume_interval)
            inventory = self.guest.list_devices(options.disk_pattern)
            if inventory.block_volume is not None:
                waited = attempt * options.block_volume_interval
                self._echo(
                    f"Block volume appeared after {waited:g} seconds: {inventory.block_volume}"
                )
                log_event(
                    "oci_nixos.bootstrap.block_volume.appeared",
                    attempt=attempt,
                    device=inventory.block_volume,
                )
                return inventory.block_volume
        log_event(
            "oci_nixos.bootstrap.block_volume.timeout",
            attempts=options.block_volume_attempts,
            interval=options.block_volume_interval,
        )
        return None

    @contextmanager
    def _temporary_mount(
        self, device: str, options: Optional[Sequence[str]] = None
    ) -> Iterator[str]:
        mount_point = self.guest.make_temp_dir()
        try:
            self.guest.mount(device, mount_point, options)
        except BootstrapStepError:
            self._discard(lambda: self.guest.remove_dir(mount_point), mount_point)
            raise
        try:
            yield mount_point
        except BaseException:
            self._discard(lambda: self.guest.unmount(mount_point), mount_point)
            self._discard(lambda: self.guest.remove_dir(mount_point), mount_point)
            raise
        self.guest.unmount(mount_point)
        self.guest.remove_dir(mount_point)

    def _discard(self, action: Callable[[], None], mount_point: str) -> None:
        """Run a cleanup *action* while another error is already propagating."""

        try:
            action()
        except BootstrapStepError as exc:
            log_event(
                "oci_nixos.bootstrap.cleanup_failed",
                mount_point=mount_point,
                error=str(exc),
            )

    def _execute(
        self,
        plan: StorageLayoutPlan,
        boot_disk: str,
        boot_partition: str,
        block_volume: str,
    ) -> BootstrapResult:
        options = self.options
        guest = self.guest

        self._echo("Starting LVM setup...")
        self._echo(f"Boot LVM partition: {boot_partition}")
        self._echo(f"Block volume: {block_volume}")

        self._echo("Growing boot LVM partition to fill disk...")
        grown = guest.grow_partition(boot_disk, options.boot_partition_number)
        if not grown:
            self._echo("growpart: partition already at max size")

        self._echo("Creating physical volumes...")
        guest.create_physical_volume(boot_partition)
        guest.create_physical_volume(block_volume)

        self._echo(f"Creating volume group {plan.vg_name}...")
        guest.create_volume_group(plan.vg_name, [boot_partition, block_volume])

        self._echo(f"Creating logical volume {plan.lv_name}...")
        guest.create_logical_volume(plan.vg_name, plan.lv_name)

        self._echo(f"Formatting as {plan.fs_type}...")
        guest.format_filesystem(plan.lv_device, plan.fs_label)

        copied: List[str] = []
        self._echo("Creating btrfs subvolumes...")
        with self._temporary_mount(plan.lv_device) as mount_point:
            for subvolume in plan.subvolumes:
                guest.create_subvolume(posixpath.join(mount_point, subvolume))
            for subvolume, source in plan.mounts():
                if not guest.has_content(source):
                    continue
                self._echo(f"Migrating {source} to LVM (this may take a while)...")
                guest.copy_tree(source, posixpath.join(mount_point, subvolume))
                copied.append(subvolume)

        details = {
            "vg": plan.vg_name,
            "lv_device": plan.lv_device,
            "boot_partition": boot_partition,
            "block_volume": block_volume,
            "grown": "true" if grown else "false",
            "copied": ",".join(copied),
        }

        if not options.auto_rebuild:
            guest.write_marker(options.marker_path)
            self._echo("LVM setup complete!")
            self._echo(f"Volume group: {plan.vg_name}")
            self._echo(f"Logical volume: {plan.lv_device}")
            self._echo("")
            for line in render_mount_instructions(plan):
                self._echo(line)
            return BootstrapResult(status=STATUS_COMPLETED, details=details)

        config_path = posixpath.join(options.config_dir, "configuration.nix")
        existing = guest.read_file(config_path)
        try:
            updated = inject_lvm_configuration(existing, FRAGMENT_NAME)
        except ValueError as exc:
            raise BootstrapStepError("write-config", f"cannot rewrite {config_path}: {exc}") from exc

        fragment_path = posixpath.join(options.config_dir, FRAGMENT_NAME)
        self._echo(f"Writing mount configuration to {fragment_path}...")
        guest.write_file(fragment_path, render_mount_fragment(plan))
        guest.write_file(config_path, updated)

        self._echo("Building the new system generation...")
        guest.rebuild(options.rebuild_command)

        primary, store_root = next(iter(plan.mounts()))
        self._echo(f"Resynchronising {store_root} onto {primary}...")
        with self._temporary_mount(plan.lv_device, [f"subvol={primary}"]) as mount_point:
            guest.copy_tree(store_root, mount_point, mirror=True)

        guest.write_marker(options.marker_path)
        self._echo("LVM setup complete!")
        details["rebooting"] = "true"
        details["fragment"] = fragment_path
        return BootstrapResult(status=STATUS_COMPLETED, details=details)

    def _fail(self, exc: BootstrapStepError) -> BootstrapResult:
        output = exc.output
        log_event(
            "oci_nixos.bootstrap.failed",
            step=exc.step,
            error=str(exc),
            command=exc.command,
            stdout=output.stdout if output else None,
            stderr=output.stderr if output else None,
        )
        self._echo(f"LVM setup failed during {exc.step}: {exc}")
        if output is not None:
            for stream in (output.stdout, output.stderr):
                for line in stream.strip().splitlines()[-20:]:
                    self._echo(f"  {line}")
        for label, text in self.guest.collect_diagnostics():
            self._echo(f"--- {label} ---")
            for line in (text or "<no output>").splitlines():
                self._echo(f"  {line}")
        return BootstrapResult(
            status=STATUS_FAILED,
            reason=exc.step,
            details={"step": exc.step, "error": str(exc)},
        )
