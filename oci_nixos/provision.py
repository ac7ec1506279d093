"""Launch instances from a resolved image and attach their data volume."""

from __future__ import annotations

from dataclasses import dataclass
import time
from typing import Callable, Optional, Sequence

import oci

from .logging_utils import log_event
from .oci_api import ProvisioningApi, ProvisioningError, wait_for_state

__all__ = [
    "BlockVolumeSpec",
    "InstanceHandle",
    "InstanceSpec",
    "VolumeAttachmentHandle",
    "attach_block_volume",
    "build_launch_details",
    "provision_instance",
]


@dataclass(frozen=True)
class InstanceSpec:
    display_name: str
    subnet_id: str
    ssh_authorized_keys: str
    shape: str = "VM.Standard.A1.Flex"
    ocpus: float = 4
    memory_gb: float = 24
    boot_volume_gb: int = 50
    availability_domain: Optional[str] = None
    assign_public_ip: bool = True


@dataclass(frozen=True)
class InstanceHandle:
    instance_id: str
    availability_domain: str
    public_ip: Optional[str] = None


@dataclass(frozen=True)
class BlockVolumeSpec:
    display_name: str
    size_gb: int = 150
    vpus_per_gb: int = 10


@dataclass(frozen=True)
class VolumeAttachmentHandle:
    volume_id: str
    attachment_id: str


def build_launch_details(
    compartment_id: str,
    image_id: str,
    spec: InstanceSpec,
    availability_domain: str,
) -> oci.core.models.LaunchInstanceDetails:
    """Translate *spec* into the SDK's launch request."""

    shape_config = None
    if spec.shape.endswith(".Flex"):
        shape_config = oci.core.models.LaunchInstanceShapeConfigDetails(
            ocpus=spec.ocpus,
            memory_in_gbs=spec.memory_gb,
        )
    return oci.core.models.LaunchInstanceDetails(
        compartment_id=compartment_id,
        availability_domain=availability_domain,
        display_name=spec.display_name,
        shape=spec.shape,
        shape_config=shape_config,
        source_details=oci.core.models.InstanceSourceViaImageDetails(
            source_type="image",
            image_id=image_id,
            boot_volume_size_in_gbs=spec.boot_volume_gb,
        ),
        create_vnic_details=oci.core.models.CreateVnicDetails(
            subnet_id=spec.subnet_id,
            assign_public_ip=spec.assign_public_ip,
        ),
        metadata={"ssh_authorized_keys": spec.ssh_authorized_keys},
    )


def _pick_availability_domain(
    api: ProvisioningApi, compartment_id: str, requested: Optional[str]
) -> str:
    if requested:
        return requested
    domains: Sequence[str] = api.list_availability_domains(compartment_id)
    if not domains:
        raise ProvisioningError(f"no availability domains visible in {compartment_id}")
    return domains[0]


def provision_instance(
    api: ProvisioningApi,
    compartment_id: str,
    image_id: str,
    spec: InstanceSpec,
    *,
    attempts: int = 60,
    interval: float = 10.0,
    sleep: Callable[[float], None] = time.sleep,
) -> InstanceHandle:
    """Launch an instance and wait until it is RUNNING."""

    availability_domain = _pick_availability_domain(
        api, compartment_id, spec.availability_domain
    )
    details = build_launch_details(compartment_id, image_id, spec, availability_domain)
    instance = api.launch_instance(details)
    log_event(
        "oci_nixos.provision.instance_requested",
        instance_id=instance.id,
        display_name=spec.display_name,
        shape=spec.shape,
        availability_domain=availability_domain,
    )

    wait_for_state(
        lambda: api.get_instance(instance.id),
        ["RUNNING"],
        failures=["TERMINATING", "TERMINATED"],
        attempts=attempts,
        interval=interval,
        sleep=sleep,
        description=f"instance {instance.id}",
    )

    public_ip = None
    if spec.assign_public_ip:
        public_ip = api.get_public_ip(compartment_id, instance.id)
        if public_ip is None:
            raise ProvisioningError(f"instance {instance.id} has no public address")

    handle = InstanceHandle(
        instance_id=instance.id,
        availability_domain=availability_domain,
        public_ip=public_ip,
    )
    log_event(
        "oci_nixos.provision.instance_running",
        instance_id=handle.instance_id,
        public_ip=handle.public_ip,
    )
    return handle


def attach_block_volume(
    api: ProvisioningApi,
    compartment_id: str,
    instance: InstanceHandle,
    spec: BlockVolumeSpec,
    *,
    attempts: int = 60,
    interval: float = 5.0,
    sleep: Callable[[float], None] = time.sleep,
) -> VolumeAttachmentHandle:
    """Create a block volume in the instance's domain and attach it."""

    volume = api.create_volume(
        compartment_id=compartment_id,
        availability_domain=instance.availability_domain,
        display_name=spec.display_name,
        size_gb=spec.size_gb,
        vpus_per_gb=spec.vpus_per_gb,
    )
    wait_for_state(
        lambda: api.get_volume(volume.id),
        ["AVAILABLE"],
        failures=["FAULTY", "TERMINATING", "TERMINATED"],
        attempts=attempts,
        interval=interval,
        sleep=sleep,
        description=f"volume {volume.id}",
    )

    attachment = api.attach_volume(instance.instance_id, volume.id, spec.display_name)
    wait_for_state(
        lambda: api.get_volume_attachment(attachment.id),
        ["ATTACHED"],
        failures=["DETACHING", "DETACHED"],
        attempts=attempts,
        interval=interval,
        sleep=sleep,
        description=f"attachment {attachment.id}",
    )
    log_event(
        "oci_nixos.provision.volume_attached",
        instance_id=instance.instance_id,
        volume_id=volume.id,
        attachment_id=attachment.id,
    )
    return VolumeAttachmentHandle(volume_id=volume.id, attachment_id=attachment.id)
