"""Credential and runtime configuration loaded from the environment."""

from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple

REQUIRED_CREDENTIAL_VARIABLES: Tuple[str, ...] = (
    "TF_VAR_oci_tenancy_ocid",
    "TF_VAR_oci_user_ocid",
    "TF_VAR_oci_fingerprint",
    "TF_VAR_oci_private_key_path",
    "TF_VAR_oci_region",
)
COMPARTMENT_VARIABLE = "TF_VAR_oci_compartment_id"

_DEFAULT_MARKER_FILE = "/var/lib/first-boot-lvm-done"
_DEFAULT_LOCK_DIR = "/run/oci-nixos-bootstrap.lock"


class MissingParameterError(ValueError):
    """Raised when required credential variables are absent."""

    def __init__(self, missing: Tuple[str, ...]) -> None:
        self.missing = missing
        names = ", ".join(missing)
        super().__init__(
            f"missing required environment variables: {names}. Source your .env file first."
        )


@dataclass(frozen=True)
class OciCredentials:
    """API-key credentials for the OCI SDK."""

    tenancy: str
    user: str
    fingerprint: str
    key_file: str
    region: str
    compartment_id: str

    def to_sdk_config(self) -> Dict[str, str]:
        """Return the mapping accepted by ``oci`` client constructors."""

        return {
            "tenancy": self.tenancy,
            "user": self.user,
            "fingerprint": self.fingerprint,
            "key_file": str(Path(self.key_file).expanduser()),
            "region": self.region,
        }


def load_credentials(environ: Optional[Mapping[str, str]] = None) -> OciCredentials:
    """Return :class:`OciCredentials` from ``TF_VAR_*`` variables.

    Every required variable is checked before raising so the caller can
    report all missing names at once. The compartment defaults to the
    tenancy when ``TF_VAR_oci_compartment_id`` is unset or empty.
    """

    env = os.environ if environ is None else environ
    values = {name: (env.get(name) or "").strip() for name in REQUIRED_CREDENTIAL_VARIABLES}
    missing = tuple(name for name, value in values.items() if not value)
    if missing:
        raise MissingParameterError(missing)

    tenancy = values["TF_VAR_oci_tenancy_ocid"]
    compartment = (env.get(COMPARTMENT_VARIABLE) or "").strip() or tenancy
    return OciCredentials(
        tenancy=tenancy,
        user=values["TF_VAR_oci_user_ocid"],
        fingerprint=values["TF_VAR_oci_fingerprint"],
        key_file=values["TF_VAR_oci_private_key_path"],
        region=values["TF_VAR_oci_region"],
        compartment_id=compartment,
    )


def default_marker_path() -> str:
    """Return the guest path of the bootstrap completion marker."""

    override = os.environ.get("OCI_NIXOS_MARKER_FILE")
    if override:
        return override
    return _DEFAULT_MARKER_FILE


def default_lock_dir() -> str:
    """Return the guest path used for the bootstrap lease."""

    override = os.environ.get("OCI_NIXOS_LOCK_DIR")
    if override:
        return override
    return _DEFAULT_LOCK_DIR


def force_requested(environ: Optional[Mapping[str, str]] = None) -> bool:
    """Return ``True`` when ``FORCE=1`` asks to skip confirmation prompts."""

    env = os.environ if environ is None else environ
    return (env.get("FORCE") or "").strip() == "1"
