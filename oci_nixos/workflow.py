"""End-to-end deployment: image, instance, readiness, volume, storage."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
import time
from typing import Callable, Optional

from .bootstrap import BootstrapOptions, BootstrapResult, GuestStorage, StorageBootstrap
from .commands import CommandRunner, SshRunner
from .config import OciCredentials
from .images import ImageArtifact, ImageResolutionError, ImageResolver, NixImageBuilder
from .layout import DEFAULT_PLAN, StorageLayoutPlan
from .logging_utils import log_event
from .oci_api import ProvisioningApi, ProvisioningError, WaitTimeoutError
from .provision import (
    BlockVolumeSpec,
    InstanceHandle,
    InstanceSpec,
    VolumeAttachmentHandle,
    attach_block_volume,
    provision_instance,
)
from .readiness import DEFAULT_PROBE_PATH, wait_for_ready

__all__ = ["DeploymentRequest", "DeploymentResult", "deploy"]


@dataclass
class DeploymentRequest:
    arch: str
    instance: InstanceSpec
    volume: BlockVolumeSpec
    ssh_user: str = "opc"
    ssh_private_key: Optional[Path] = None
    flake: str = "."
    bucket_name: str = "nixos-images"
    delete_staged: bool = True
    ready_attempts: int = 60
    ready_interval: float = 5.0
    probe_path: str = DEFAULT_PROBE_PATH
    plan: StorageLayoutPlan = DEFAULT_PLAN
    bootstrap: BootstrapOptions = field(
        default_factory=lambda: BootstrapOptions(auto_rebuild=True)
    )


@dataclass(frozen=True)
class DeploymentResult:
    image: ImageArtifact
    instance: InstanceHandle
    attachment: VolumeAttachmentHandle
    bootstrap: BootstrapResult


def _ssh_runner(request: DeploymentRequest, host: str) -> CommandRunner:
    return SshRunner(host=host, user=request.ssh_user, private_key=request.ssh_private_key)


def deploy(
    api: ProvisioningApi,
    credentials: OciCredentials,
    request: DeploymentRequest,
    *,
    resolver: Optional[ImageResolver] = None,
    runner_factory: Callable[[DeploymentRequest, str], CommandRunner] = _ssh_runner,
    sleep: Callable[[float], None] = time.sleep,
    echo: Optional[Callable[[str], None]] = None,
) -> DeploymentResult:
    """Provision one NixOS instance and assemble its pooled storage."""

    compartment_id = credentials.compartment_id
    log_event(
        "oci_nixos.workflow.start",
        arch=request.arch,
        display_name=request.instance.display_name,
        region=credentials.region,
    )

    if resolver is None:
        resolver = ImageResolver(
            api,
            NixImageBuilder(flake=request.flake),
            compartment_id,
            bucket_name=request.bucket_name,
            delete_staged=request.delete_staged,
            sleep=sleep,
        )
    image = resolver.resolve(request.arch)
    if image.remote_image_id is None:
        raise ImageResolutionError(f"no registered image for {request.arch}")

    instance = provision_instance(
        api, compartment_id, image.remote_image_id, request.instance, sleep=sleep
    )
    if instance.public_ip is None:
        raise ProvisioningError(
            f"instance {instance.instance_id} has no public address to bootstrap over"
        )

    runner = runner_factory(request, instance.public_ip)
    readiness = wait_for_ready(
        runner,
        probe_path=request.probe_path,
        attempts=request.ready_attempts,
        interval=request.ready_interval,
        sleep=sleep,
    )
    if not readiness.ready:
        raise WaitTimeoutError(
            f"instance {instance.instance_id} did not become ready after "
            f"{readiness.attempts} checks"
        )

    attachment = attach_block_volume(
        api, compartment_id, instance, request.volume, sleep=sleep
    )

    bootstrap = StorageBootstrap(
        GuestStorage(runner), request.bootstrap, sleep=sleep, echo=echo
    )
    result = bootstrap.run(request.plan)

    log_event(
        "oci_nixos.workflow.finished",
        image_id=image.remote_image_id,
        instance_id=instance.instance_id,
        volume_id=attachment.volume_id,
        bootstrap_status=result.status,
        bootstrap_reason=result.reason,
    )
    return DeploymentResult(
        image=image,
        instance=instance,
        attachment=attachment,
        bootstrap=result,
    )
