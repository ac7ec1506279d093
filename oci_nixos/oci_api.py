"""Thin wrapper over the OCI SDK clients used by the provisioning workflow."""

from __future__ import annotations

import time
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

import oci

from .config import OciCredentials
from .logging_utils import log_event

__all__ = [
    "REQUEST_ERRORS",
    "ProvisioningApi",
    "ProvisioningError",
    "WaitTimeoutError",
    "describe_error",
    "wait_for_state",
]

# One SDK call failed: either the service answered with an error or no answer arrived.
REQUEST_ERRORS = (
    oci.exceptions.ServiceError,
    oci.exceptions.RequestException,
    oci.exceptions.ConnectTimeout,
)


class ProvisioningError(RuntimeError):
    """A provisioning request reached an unusable state."""


class WaitTimeoutError(RuntimeError):
    """A resource did not reach the requested lifecycle state in time."""


def describe_error(exc: BaseException) -> str:
    """Return the service message for *exc*, or its text for transport errors."""

    return getattr(exc, "message", None) or str(exc)


def wait_for_state(
    fetch: Callable[[], Any],
    targets: Iterable[str],
    *,
    failures: Iterable[str] = (),
    attempts: int = 60,
    interval: float = 10.0,
    sleep: Callable[[float], None] = time.sleep,
    description: str = "resource",
) -> Any:
    """Poll ``fetch()`` until its ``lifecycle_state`` is one of *targets*.

    Fixed cadence, bounded by *attempts*. A state listed in *failures* raises
    :class:`ProvisioningError` immediately.
    """

    target_states = set(targets)
    failure_states = set(failures)
    state = None
    for attempt in range(1, attempts + 1):
        resource = fetch()
        state = getattr(resource, "lifecycle_state", None)
        if state in target_states:
            log_event(
                "oci_nixos.oci.wait.reached",
                description=description,
                state=state,
                attempt=attempt,
            )
            return resource
        if state in failure_states:
            raise ProvisioningError(f"{description} entered state {state}")
        if attempt < attempts:
            sleep(interval)
    raise WaitTimeoutError(
        f"{description} still {state} after {attempts} checks at {interval:g}s intervals"
    )


class ProvisioningApi:
    """Compute, storage and identity operations against one OCI region."""

    def __init__(
        self,
        *,
        compute: Any,
        blockstorage: Any,
        network: Any,
        object_storage: Any,
        identity: Any,
    ) -> None:
        self.compute = compute
        self.blockstorage = blockstorage
        self.network = network
        self.object_storage = object_storage
        self.identity = identity
        self._namespace: Optional[str] = None

    @classmethod
    def from_credentials(cls, credentials: OciCredentials) -> "ProvisioningApi":
        config = credentials.to_sdk_config()
        oci.config.validate_config(config)
        return cls(
            compute=oci.core.ComputeClient(config),
            blockstorage=oci.core.BlockstorageClient(config),
            network=oci.core.VirtualNetworkClient(config),
            object_storage=oci.object_storage.ObjectStorageClient(config),
            identity=oci.identity.IdentityClient(config),
        )

    # Identity

    def list_availability_domains(self, compartment_id: str) -> List[str]:
        response = self.identity.list_availability_domains(compartment_id=compartment_id)
        return [ad.name for ad in response.data]

    # Images

    def list_images(self, compartment_id: str) -> List[Any]:
        """Return AVAILABLE images, newest first."""

        response = oci.pagination.list_call_get_all_results(
            self.compute.list_images,
            compartment_id=compartment_id,
            lifecycle_state="AVAILABLE",
            sort_by="TIMECREATED",
            sort_order="DESC",
        )
        return list(response.data)

    def get_image(self, image_id: str) -> Any:
        return self.compute.get_image(image_id).data

    def create_image(
        self,
        *,
        compartment_id: str,
        display_name: str,
        namespace: str,
        bucket_name: str,
        object_name: str,
        freeform_tags: Dict[str, str],
        launch_mode: str = "PARAVIRTUALIZED",
        operating_system: str = "NixOS",
    ) -> Any:
        source = oci.core.models.ImageSourceViaObjectStorageTupleDetails(
            source_type="objectStorageTuple",
            namespace_name=namespace,
            bucket_name=bucket_name,
            object_name=object_name,
            source_image_type="QCOW2",
            operating_system=operating_system,
        )
        details = oci.core.models.CreateImageDetails(
            compartment_id=compartment_id,
            display_name=display_name,
            launch_mode=launch_mode,
            image_source_details=source,
            freeform_tags=dict(freeform_tags),
        )
        image = self.compute.create_image(details).data
        log_event(
            "oci_nixos.oci.image.created",
            image_id=image.id,
            display_name=display_name,
            tags=freeform_tags,
        )
        return image

    def delete_image(self, image_id: str) -> None:
        self.compute.delete_image(image_id)
        log_event("oci_nixos.oci.image.deleted", image_id=image_id)

    def add_shape_compatibility(self, image_id: str, shapes: Sequence[str]) -> None:
        for shape in shapes:
            self.compute.add_image_shape_compatibility_entry(image_id, shape)

    # Object storage

    def get_namespace(self) -> str:
        if self._namespace is None:
            self._namespace = self.object_storage.get_namespace().data
        return self._namespace

    def ensure_bucket(self, compartment_id: str, bucket_name: str) -> None:
        namespace = self.get_namespace()
        try:
            self.object_storage.get_bucket(namespace, bucket_name)
            return
        except oci.exceptions.ServiceError as exc:
            if exc.status != 404:
                raise
        details = oci.object_storage.models.CreateBucketDetails(
            name=bucket_name,
            compartment_id=compartment_id,
        )
        self.object_storage.create_bucket(namespace, details)
        log_event("oci_nixos.oci.bucket.created", bucket=bucket_name)

    def delete_bucket(self, bucket_name: str) -> None:
        self.object_storage.delete_bucket(self.get_namespace(), bucket_name)
        log_event("oci_nixos.oci.bucket.deleted", bucket=bucket_name)

    def put_object(self, bucket_name: str, object_name: str, path: Path) -> None:
        manager = oci.object_storage.UploadManager(
            self.object_storage, allow_parallel_uploads=True
        )
        manager.upload_file(self.get_namespace(), bucket_name, object_name, str(path))
        log_event(
            "oci_nixos.oci.object.uploaded",
            bucket=bucket_name,
            object_name=object_name,
            path=path,
        )

    def delete_object(self, bucket_name: str, object_name: str) -> None:
        self.object_storage.delete_object(self.get_namespace(), bucket_name, object_name)
        log_event("oci_nixos.oci.object.deleted", bucket=bucket_name, object_name=object_name)

    # Instances

    def launch_instance(self, details: Any) -> Any:
        instance = self.compute.launch_instance(details).data
        log_event("oci_nixos.oci.instance.launched", instance_id=instance.id)
        return instance

    def get_instance(self, instance_id: str) -> Any:
        return self.compute.get_instance(instance_id).data

    def terminate_instance(self, instance_id: str) -> None:
        self.compute.terminate_instance(instance_id)
        log_event("oci_nixos.oci.instance.terminated", instance_id=instance_id)

    def get_public_ip(self, compartment_id: str, instance_id: str) -> Optional[str]:
        attachments = self.compute.list_vnic_attachments(
            compartment_id=compartment_id, instance_id=instance_id
        ).data
        for attachment in attachments:
            if attachment.lifecycle_state != "ATTACHED":
                continue
            vnic = self.network.get_vnic(attachment.vnic_id).data
            if vnic.public_ip:
                return vnic.public_ip
        return None

    # Block volumes

    def create_volume(
        self,
        *,
        compartment_id: str,
        availability_domain: str,
        display_name: str,
        size_gb: int,
        vpus_per_gb: int,
    ) -> Any:
        details = oci.core.models.CreateVolumeDetails(
            compartment_id=compartment_id,
            availability_domain=availability_domain,
            display_name=display_name,
            size_in_gbs=size_gb,
            vpus_per_gb=vpus_per_gb,
        )
        volume = self.blockstorage.create_volume(details).data
        log_event("oci_nixos.oci.volume.created", volume_id=volume.id, size_gb=size_gb)
        return volume

    def get_volume(self, volume_id: str) -> Any:
        return self.blockstorage.get_volume(volume_id).data

    def delete_volume(self, volume_id: str) -> None:
        self.blockstorage.delete_volume(volume_id)
        log_event("oci_nixos.oci.volume.deleted", volume_id=volume_id)

    def attach_volume(self, instance_id: str, volume_id: str, display_name: str) -> Any:
        details = oci.core.models.AttachParavirtualizedVolumeDetails(
            type="paravirtualized",
            instance_id=instance_id,
            volume_id=volume_id,
            display_name=display_name,
        )
        attachment = self.compute.attach_volume(details).data
        log_event(
            "oci_nixos.oci.volume.attach_requested",
            attachment_id=attachment.id,
            instance_id=instance_id,
            volume_id=volume_id,
        )
        return attachment

    def get_volume_attachment(self, attachment_id: str) -> Any:
        return self.compute.get_volume_attachment(attachment_id).data

    def detach_volume(self, attachment_id: str) -> None:
        self.compute.detach_volume(attachment_id)
        log_event("oci_nixos.oci.volume.detached", attachment_id=attachment_id)
