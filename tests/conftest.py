from datetime import datetime, timedelta, timezone
from pathlib import Path
import sys
from types import SimpleNamespace
from typing import Dict, List, Optional

import oci
import pytest

# Ensure repository root is importable
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))


def service_error(status: int = 409, message: str = "conflict") -> oci.exceptions.ServiceError:
    return oci.exceptions.ServiceError(status, "Conflict", {}, message)


class FakeApi:
    """In-memory stand-in for :class:`oci_nixos.oci_api.ProvisioningApi`."""

    def __init__(self) -> None:
        self.images: List[SimpleNamespace] = []
        self.calls: List[tuple] = []
        self.states: Dict[str, List[str]] = {}
        self.fail_delete: set = set()
        self.delete_errors: Dict[str, Exception] = {}
        self.fail_delete_object = False
        self.delete_object_error: Optional[Exception] = None
        self.availability_domains = ["Uocm:EU-FRANKFURT-1-AD-1", "Uocm:EU-FRANKFURT-1-AD-2"]
        self.public_ip: Optional[str] = "203.0.113.10"
        self._counter = 0

    def _next_id(self, kind: str) -> str:
        self._counter += 1
        return f"ocid1.{kind}.oc1..{self._counter:04d}"

    def _resource(self, resource_id: str, default: str) -> SimpleNamespace:
        states = self.states.get(resource_id)
        state = default
        if states:
            state = states.pop(0) if len(states) > 1 else states[0]
        return SimpleNamespace(id=resource_id, lifecycle_state=state)

    def add_image(
        self,
        image_id: str,
        *,
        age_days: int = 0,
        tags: Optional[Dict[str, str]] = None,
    ) -> SimpleNamespace:
        image = SimpleNamespace(
            id=image_id,
            freeform_tags=dict(tags or {}),
            time_created=datetime(2026, 1, 31, tzinfo=timezone.utc) - timedelta(days=age_days),
            lifecycle_state="AVAILABLE",
        )
        self.images.append(image)
        return image

    def list_availability_domains(self, compartment_id: str) -> List[str]:
        self.calls.append(("list_availability_domains", compartment_id))
        return list(self.availability_domains)

    def list_images(self, compartment_id: str) -> List[SimpleNamespace]:
        self.calls.append(("list_images", compartment_id))
        return sorted(self.images, key=lambda image: image.time_created, reverse=True)

    def get_image(self, image_id: str) -> SimpleNamespace:
        return self._resource(image_id, "AVAILABLE")

    def create_image(self, **kwargs) -> SimpleNamespace:
        self.calls.append(("create_image", kwargs))
        image = self.add_image(self._next_id("image"), tags=kwargs["freeform_tags"])
        return image

    def delete_image(self, image_id: str) -> None:
        self.calls.append(("delete_image", image_id))
        if image_id in self.delete_errors:
            raise self.delete_errors[image_id]
        if image_id in self.fail_delete:
            raise service_error()
        self.images = [image for image in self.images if image.id != image_id]

    def add_shape_compatibility(self, image_id: str, shapes) -> None:
        self.calls.append(("add_shape_compatibility", image_id, tuple(shapes)))

    def get_namespace(self) -> str:
        return "tenancyns"

    def ensure_bucket(self, compartment_id: str, bucket_name: str) -> None:
        self.calls.append(("ensure_bucket", compartment_id, bucket_name))

    def put_object(self, bucket_name: str, object_name: str, path: Path) -> None:
        self.calls.append(("put_object", bucket_name, object_name, Path(path)))

    def delete_object(self, bucket_name: str, object_name: str) -> None:
        self.calls.append(("delete_object", bucket_name, object_name))
        if self.delete_object_error is not None:
            raise self.delete_object_error
        if self.fail_delete_object:
            raise service_error(404, "object not found")

    def launch_instance(self, details) -> SimpleNamespace:
        self.calls.append(("launch_instance", details))
        return SimpleNamespace(id=self._next_id("instance"))

    def get_instance(self, instance_id: str) -> SimpleNamespace:
        return self._resource(instance_id, "RUNNING")

    def get_public_ip(self, compartment_id: str, instance_id: str) -> Optional[str]:
        return self.public_ip

    def create_volume(self, **kwargs) -> SimpleNamespace:
        self.calls.append(("create_volume", kwargs))
        return SimpleNamespace(id=self._next_id("volume"))

    def get_volume(self, volume_id: str) -> SimpleNamespace:
        return self._resource(volume_id, "AVAILABLE")

    def attach_volume(self, instance_id: str, volume_id: str, display_name: str) -> SimpleNamespace:
        self.calls.append(("attach_volume", instance_id, volume_id, display_name))
        return SimpleNamespace(id=self._next_id("volumeattachment"))

    def get_volume_attachment(self, attachment_id: str) -> SimpleNamespace:
        return self._resource(attachment_id, "ATTACHED")

    def call_names(self) -> List[str]:
        return [call[0] for call in self.calls]


@pytest.fixture
def fake_api() -> FakeApi:
    return FakeApi()


@pytest.fixture
def oci_environment(monkeypatch):
    values = {
        "TF_VAR_oci_tenancy_ocid": "ocid1.tenancy.oc1..tenancy",
        "TF_VAR_oci_user_ocid": "ocid1.user.oc1..user",
        "TF_VAR_oci_fingerprint": "aa:bb",
        "TF_VAR_oci_private_key_path": "/keys/oci.pem",
        "TF_VAR_oci_region": "eu-frankfurt-1",
    }
    for name, value in values.items():
        monkeypatch.setenv(name, value)
    monkeypatch.delenv("TF_VAR_oci_compartment_id", raising=False)
    monkeypatch.delenv("FORCE", raising=False)
    return values
