"""CLI entry point for oci-nixos."""

from __future__ import annotations

import argparse
import os
from pathlib import Path
import sys
from typing import Callable, Optional, Sequence

from . import __version__
from .bootstrap import (
    STATUS_FAILED,
    BootstrapOptions,
    GuestLease,
    GuestStorage,
    StorageBootstrap,
)
from .commands import CommandRunner, LocalRunner, SshRunner
from .config import MissingParameterError, OciCredentials, force_requested, load_credentials
from .images import ARCH_TAGS, ImageResolutionError, ImageResolver, NixImageBuilder
from .oci_api import ProvisioningApi, ProvisioningError, WaitTimeoutError
from .provision import BlockVolumeSpec, InstanceSpec
from .readiness import DEFAULT_PROBE_PATH, wait_for_ready
from .retention import DEFAULT_KEEP_COUNT, PruneAborted, prune
from .workflow import DeploymentRequest, deploy

ApiFactory = Callable[[OciCredentials], ProvisioningApi]


def _non_negative_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid count: {value!r}") from None
    if number < 0:
        raise argparse.ArgumentTypeError(f"count must be non-negative: {value}")
    return number


def _add_ssh_arguments(parser: argparse.ArgumentParser, *, host_required: bool) -> None:
    parser.add_argument("--host", required=host_required, help="Guest address")
    parser.add_argument("--user", default="opc", help="SSH login user")
    parser.add_argument("--port", type=int, default=22, help="SSH port")
    parser.add_argument("--identity", type=Path, help="SSH private key")


def _ssh_runner(args: argparse.Namespace) -> SshRunner:
    return SshRunner(host=args.host, user=args.user, port=args.port, private_key=args.identity)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="oci-nixos",
        description="Provision NixOS on Oracle Cloud and assemble its LVM storage",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command", required=True)

    prune_parser = sub.add_parser("prune", help="Delete old NixOS images")
    prune_parser.add_argument(
        "keep_count",
        nargs="?",
        type=_non_negative_int,
        default=DEFAULT_KEEP_COUNT,
        help="Number of most recent images to keep",
    )
    prune_parser.add_argument(
        "--force", action="store_true", help="Delete without asking (also FORCE=1)"
    )

    resolve_parser = sub.add_parser("resolve-image", help="Find or upload the base image")
    resolve_parser.add_argument("--arch", choices=ARCH_TAGS, required=True)
    resolve_parser.add_argument("--flake", default=".", help="Flake providing the image")
    resolve_parser.add_argument("--bucket", default="nixos-images", help="Staging bucket")
    resolve_parser.add_argument(
        "--keep-staged",
        action="store_true",
        help="Keep the uploaded object after the image is registered",
    )

    ready_parser = sub.add_parser("wait-ready", help="Wait for a guest to finish booting")
    _add_ssh_arguments(ready_parser, host_required=True)
    ready_parser.add_argument("--attempts", type=int, default=60)
    ready_parser.add_argument("--interval", type=float, default=5.0)
    ready_parser.add_argument("--probe-path", default=DEFAULT_PROBE_PATH)

    bootstrap_parser = sub.add_parser(
        "bootstrap", help="Pool the boot LVM partition and block volume"
    )
    _add_ssh_arguments(bootstrap_parser, host_required=False)
    bootstrap_parser.add_argument(
        "--auto-rebuild",
        action="store_true",
        help="Write the mount configuration, rebuild and reboot",
    )
    bootstrap_parser.add_argument("--marker-file", help="Completion marker path")

    deploy_parser = sub.add_parser("deploy", help="Run the full provisioning pipeline")
    deploy_parser.add_argument("--arch", choices=ARCH_TAGS, required=True)
    deploy_parser.add_argument("--subnet-id", required=True)
    deploy_parser.add_argument(
        "--ssh-public-key", type=Path, required=True, help="Authorized key file"
    )
    deploy_parser.add_argument("--identity", type=Path, required=True, help="SSH private key")
    deploy_parser.add_argument("--user", default="opc", help="SSH login user")
    deploy_parser.add_argument("--display-name", default="nixos")
    deploy_parser.add_argument("--shape", default="VM.Standard.A1.Flex")
    deploy_parser.add_argument("--ocpus", type=float, default=4)
    deploy_parser.add_argument("--memory-gb", type=float, default=24)
    deploy_parser.add_argument("--boot-volume-gb", type=int, default=50)
    deploy_parser.add_argument("--volume-gb", type=int, default=150)
    deploy_parser.add_argument("--availability-domain")
    deploy_parser.add_argument("--flake", default=".")
    deploy_parser.add_argument("--bucket", default="nixos-images")
    deploy_parser.add_argument(
        "--manual",
        action="store_true",
        help="Only assemble storage; print the mount configuration instead of applying it",
    )
    return parser


def _credentials() -> Optional[OciCredentials]:
    try:
        return load_credentials()
    except MissingParameterError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return None


def _cmd_prune(args: argparse.Namespace, api_factory: ApiFactory) -> int:
    credentials = _credentials()
    if credentials is None:
        return 2
    api = api_factory(credentials)
    force = args.force or force_requested()
    try:
        deleted = prune(api, credentials.compartment_id, args.keep_count, force=force)
    except PruneAborted:
        return 1
    for image_id in deleted:
        print(image_id)
    return 0


def _cmd_resolve_image(args: argparse.Namespace, api_factory: ApiFactory) -> int:
    credentials = _credentials()
    if credentials is None:
        return 2
    api = api_factory(credentials)
    resolver = ImageResolver(
        api,
        NixImageBuilder(flake=args.flake),
        credentials.compartment_id,
        bucket_name=args.bucket,
        delete_staged=not args.keep_staged,
    )
    try:
        artifact = resolver.resolve(args.arch)
    except (ImageResolutionError, ProvisioningError, WaitTimeoutError) as exc:
        print(f"Image resolution failed: {exc}", file=sys.stderr)
        return 1
    print(artifact.remote_image_id)
    return 0


def _cmd_wait_ready(args: argparse.Namespace) -> int:
    result = wait_for_ready(
        _ssh_runner(args),
        probe_path=args.probe_path,
        attempts=args.attempts,
        interval=args.interval,
    )
    if not result.ready:
        print(f"Guest {args.host} not ready after {result.attempts} checks", file=sys.stderr)
        return 1
    print(f"Guest {args.host} ready")
    return 0


def _cmd_bootstrap(args: argparse.Namespace) -> int:
    runner: CommandRunner
    if args.host:
        runner = _ssh_runner(args)
    else:
        if os.geteuid() != 0:
            print("This command must be run as root", file=sys.stderr)
            return 1
        runner = LocalRunner()
    options = BootstrapOptions(auto_rebuild=args.auto_rebuild)
    if args.marker_file:
        options.marker_path = args.marker_file
    orchestrator = StorageBootstrap(GuestStorage(runner), options, lease=GuestLease(runner))
    result = orchestrator.run()
    return 1 if result.status == STATUS_FAILED else 0


def _cmd_deploy(args: argparse.Namespace, api_factory: ApiFactory) -> int:
    credentials = _credentials()
    if credentials is None:
        return 2
    try:
        public_key = args.ssh_public_key.read_text(encoding="utf-8").strip()
    except OSError as exc:
        print(f"Cannot read {args.ssh_public_key}: {exc}", file=sys.stderr)
        return 2
    request = DeploymentRequest(
        arch=args.arch,
        instance=InstanceSpec(
            display_name=args.display_name,
            subnet_id=args.subnet_id,
            ssh_authorized_keys=public_key,
            shape=args.shape,
            ocpus=args.ocpus,
            memory_gb=args.memory_gb,
            boot_volume_gb=args.boot_volume_gb,
            availability_domain=args.availability_domain,
        ),
        volume=BlockVolumeSpec(
            display_name=f"{args.display_name}-data", size_gb=args.volume_gb
        ),
        ssh_user=args.user,
        ssh_private_key=args.identity,
        flake=args.flake,
        bucket_name=args.bucket,
        bootstrap=BootstrapOptions(auto_rebuild=not args.manual),
    )
    api = api_factory(credentials)
    try:
        result = deploy(api, credentials, request)
    except (ImageResolutionError, ProvisioningError, WaitTimeoutError) as exc:
        print(f"Deployment failed: {exc}", file=sys.stderr)
        return 1
    print(f"image: {result.image.remote_image_id}")
    print(f"instance: {result.instance.instance_id}")
    print(f"public ip: {result.instance.public_ip}")
    print(f"volume: {result.attachment.volume_id}")
    print(f"storage: {result.bootstrap.status}")
    return 1 if result.bootstrap.status == STATUS_FAILED else 0


def main(
    argv: Optional[Sequence[str]] = None,
    *,
    api_factory: ApiFactory = ProvisioningApi.from_credentials,
) -> int:
    args = build_parser().parse_args(argv)
    if args.command == "prune":
        return _cmd_prune(args, api_factory)
    if args.command == "resolve-image":
        return _cmd_resolve_image(args, api_factory)
    if args.command == "wait-ready":
        return _cmd_wait_ready(args)
    if args.command == "bootstrap":
        return _cmd_bootstrap(args)
    return _cmd_deploy(args, api_factory)


def run() -> None:
    raise SystemExit(main())


if __name__ == "__main__":
    run()
