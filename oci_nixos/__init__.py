"""NixOS on OCI provisioning and first-boot storage package."""

from __future__ import annotations

from importlib import resources
from importlib.metadata import PackageNotFoundError, version as pkg_version

__all__ = [
    "bootstrap",
    "commands",
    "config",
    "devices",
    "images",
    "layout",
    "nixos_config",
    "oci_api",
    "provision",
    "readiness",
    "retention",
    "workflow",
]


def _discover_version() -> str:
    try:
        return pkg_version("oci-nixos")
    except PackageNotFoundError:
        try:
            return resources.files(__package__).joinpath("VERSION").read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return "unknown"


__version__ = _discover_version()
