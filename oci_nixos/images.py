"""Resolve a NixOS base image for an architecture, uploading it on a cache miss."""

from __future__ import annotations

from dataclasses import dataclass, replace
import os
from pathlib import Path
import platform
import time
from typing import Any, Callable, Dict, Iterable, Optional, Sequence, Tuple

from .commands import CommandError, CommandRunner, LocalRunner, run_checked
from .logging_utils import log_event
from .oci_api import REQUEST_ERRORS, ProvisioningApi, describe_error, wait_for_state

__all__ = [
    "ARCH_TAGS",
    "HASH_TAG",
    "ARCH_TAG",
    "ImageArtifact",
    "ImageResolutionError",
    "ImageResolver",
    "NixImageBuilder",
    "content_hash_from_store_path",
    "find_tagged_image",
]

ARCH_TAGS: Tuple[str, ...] = ("aarch64", "x86_64")
HASH_TAG = "nix_hash"
ARCH_TAG = "arch"
_STORE_PREFIX = "/nix/store/"
_DEFAULT_SHAPES: Dict[str, Tuple[str, ...]] = {
    "aarch64": ("VM.Standard.A1.Flex",),
    "x86_64": (),
}
_MACHINE_ALIASES = {
    "arm64": "aarch64",
    "aarch64": "aarch64",
    "x86_64": "x86_64",
    "amd64": "x86_64",
}


class ImageResolutionError(RuntimeError):
    """The base image could not be evaluated, built or registered."""


@dataclass(frozen=True)
class ImageArtifact:
    arch_tag: str
    content_hash: str
    remote_image_id: Optional[str] = None
    store_path: Optional[str] = None

    @property
    def tags(self) -> Dict[str, str]:
        return {HASH_TAG: self.content_hash, ARCH_TAG: self.arch_tag}


def _check_arch(arch: str) -> str:
    if arch not in ARCH_TAGS:
        raise ValueError(
            f"unsupported architecture {arch!r}; expected one of {', '.join(ARCH_TAGS)}"
        )
    return arch


def content_hash_from_store_path(store_path: str) -> str:
    """Return the hash component of a ``/nix/store/<hash>-<name>`` path."""

    path = store_path.strip()
    if not path.startswith(_STORE_PREFIX):
        raise ValueError(f"not a nix store path: {store_path!r}")
    base = path[len(_STORE_PREFIX):].split("/", 1)[0]
    digest, sep, _name = base.partition("-")
    if not sep or not digest:
        raise ValueError(f"not a nix store path: {store_path!r}")
    return digest


def _detect_host_arch() -> str:
    machine = platform.machine().lower()
    try:
        return _MACHINE_ALIASES[machine]
    except KeyError:
        raise ValueError(f"unsupported build host architecture {machine!r}") from None


class NixImageBuilder:
    """Evaluate and build the flake's OCI base image outputs."""

    def __init__(
        self,
        flake: str = ".",
        host_arch: Optional[str] = None,
        runner: Optional[CommandRunner] = None,
        path_exists: Callable[[str], bool] = os.path.exists,
    ) -> None:
        self.flake = flake
        self.host_arch = _check_arch(host_arch) if host_arch else _detect_host_arch()
        self.runner = runner or LocalRunner()
        self._path_exists = path_exists

    def attribute_for(self, arch: str) -> str:
        _check_arch(arch)
        prefix = f"packages.{self.host_arch}-linux"
        if arch == self.host_arch:
            return f"{prefix}.oci-base-image"
        return f"{prefix}.oci-base-image-{arch}-cross"

    def _installable(self, arch: str) -> str:
        return f"{self.flake}#{self.attribute_for(arch)}"

    def evaluate(self, arch: str) -> str:
        """Return the output store path without building it."""

        result = run_checked(
            self.runner, ["nix", "eval", "--raw", f"{self._installable(arch)}.outPath"]
        )
        store_path = result.stdout.strip()
        log_event("oci_nixos.images.evaluated", arch=arch, store_path=store_path)
        return store_path

    def ensure_built(self, arch: str, store_path: str) -> str:
        if self._path_exists(store_path):
            log_event("oci_nixos.images.build_skipped", arch=arch, store_path=store_path)
            return store_path
        log_event("oci_nixos.images.build_start", arch=arch, store_path=store_path)
        result = run_checked(
            self.runner,
            ["nix", "build", "--no-link", "--print-out-paths", self._installable(arch)],
        )
        built = result.stdout.strip().splitlines()
        out_path = built[-1] if built else store_path
        log_event("oci_nixos.images.build_finished", arch=arch, store_path=out_path)
        return out_path

    def image_file(self, store_path: str) -> Path:
        candidates = sorted(Path(store_path).glob("*.qcow2"))
        if not candidates:
            raise ImageResolutionError(f"no qcow2 image found under {store_path}")
        return candidates[0]


def _tag_matches(image: Any, artifact: ImageArtifact) -> bool:
    tags = getattr(image, "freeform_tags", None) or {}
    return tags.get(HASH_TAG) == artifact.content_hash and tags.get(ARCH_TAG) == artifact.arch_tag


def find_tagged_image(images: Iterable[Any], artifact: ImageArtifact) -> Optional[Any]:
    """Return the first image tagged with *artifact*'s hash and architecture."""

    for image in images:
        if _tag_matches(image, artifact):
            return image
    return None


class ImageResolver:
    """Map ``(arch, content hash)`` onto a registered custom image."""

    def __init__(
        self,
        api: ProvisioningApi,
        builder: NixImageBuilder,
        compartment_id: str,
        *,
        bucket_name: str = "nixos-images",
        delete_staged: bool = True,
        compatible_shapes: Optional[Dict[str, Sequence[str]]] = None,
        wait_attempts: int = 120,
        wait_interval: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.api = api
        self.builder = builder
        self.compartment_id = compartment_id
        self.bucket_name = bucket_name
        self.delete_staged = delete_staged
        self.compatible_shapes = dict(
            _DEFAULT_SHAPES if compatible_shapes is None else compatible_shapes
        )
        self.wait_attempts = wait_attempts
        self.wait_interval = wait_interval
        self._sleep = sleep

    def resolve(self, arch: str) -> ImageArtifact:
        _check_arch(arch)
        try:
            store_path = self.builder.evaluate(arch)
        except CommandError as exc:
            raise ImageResolutionError(f"failed to evaluate image for {arch}: {exc}") from exc
        artifact = ImageArtifact(
            arch_tag=arch,
            content_hash=content_hash_from_store_path(store_path),
            store_path=store_path,
        )

        existing = find_tagged_image(self.api.list_images(self.compartment_id), artifact)
        if existing is not None:
            log_event(
                "oci_nixos.images.cache_hit",
                arch=arch,
                content_hash=artifact.content_hash,
                image_id=existing.id,
            )
            return replace(artifact, remote_image_id=existing.id)

        log_event("oci_nixos.images.cache_miss", arch=arch, content_hash=artifact.content_hash)
        return self._register(artifact)

    def object_name(self, artifact: ImageArtifact) -> str:
        return f"nixos-{artifact.arch_tag}-{artifact.content_hash}.qcow2"

    def _register(self, artifact: ImageArtifact) -> ImageArtifact:
        if artifact.store_path is None:
            raise ImageResolutionError(
                f"no store path evaluated for {artifact.arch_tag} image {artifact.content_hash}"
            )
        try:
            store_path = self.builder.ensure_built(artifact.arch_tag, artifact.store_path)
        except CommandError as exc:
            raise ImageResolutionError(
                f"failed to build image for {artifact.arch_tag}: {exc}"
            ) from exc
        image_path = self.builder.image_file(store_path)
        object_name = self.object_name(artifact)

        self.api.ensure_bucket(self.compartment_id, self.bucket_name)
        self.api.put_object(self.bucket_name, object_name, image_path)

        image = self.api.create_image(
            compartment_id=self.compartment_id,
            display_name=f"nixos-{artifact.arch_tag}-{artifact.content_hash[:12]}",
            namespace=self.api.get_namespace(),
            bucket_name=self.bucket_name,
            object_name=object_name,
            freeform_tags=artifact.tags,
        )
        wait_for_state(
            lambda: self.api.get_image(image.id),
            ["AVAILABLE"],
            failures=["DELETED", "DISABLED"],
            attempts=self.wait_attempts,
            interval=self.wait_interval,
            sleep=self._sleep,
            description=f"image {image.id}",
        )
        shapes = self.compatible_shapes.get(artifact.arch_tag, ())
        if shapes:
            self.api.add_shape_compatibility(image.id, shapes)

        if self.delete_staged:
            self._delete_staged(object_name)

        log_event(
            "oci_nixos.images.registered",
            arch=artifact.arch_tag,
            content_hash=artifact.content_hash,
            image_id=image.id,
        )
        return replace(artifact, remote_image_id=image.id, store_path=store_path)

    def _delete_staged(self, object_name: str) -> None:
        try:
            self.api.delete_object(self.bucket_name, object_name)
        except REQUEST_ERRORS as exc:
            log_event(
                "oci_nixos.images.staged_delete_failed",
                bucket=self.bucket_name,
                object_name=object_name,
                error=str(exc),
            )
            print(f"Warning: failed to delete staged object {object_name}: {describe_error(exc)}")
