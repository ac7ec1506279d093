"""Keep the newest tagged NixOS images and delete the rest."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, List, Optional, Sequence

from .images import HASH_TAG
from .logging_utils import log_event
from .oci_api import REQUEST_ERRORS, ProvisioningApi, describe_error

__all__ = [
    "DEFAULT_KEEP_COUNT",
    "PruneAborted",
    "confirm_deletion",
    "prune",
    "select_for_deletion",
    "tagged_images",
]

DEFAULT_KEEP_COUNT = 3
_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


class PruneAborted(RuntimeError):
    """The operator declined the deletion plan."""


def _created_at(image: Any) -> datetime:
    value = getattr(image, "time_created", None)
    if value is None:
        return _EPOCH
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def select_for_deletion(images: Sequence[Any], keep_count: int) -> List[Any]:
    """Return every image past the *keep_count* newest ones."""

    if keep_count < 0:
        raise ValueError(f"keep_count must be non-negative, got {keep_count}")
    ordered = sorted(images, key=_created_at, reverse=True)
    return ordered[keep_count:]


def tagged_images(images: Sequence[Any]) -> List[Any]:
    return [
        image
        for image in images
        if (getattr(image, "freeform_tags", None) or {}).get(HASH_TAG) is not None
    ]


def confirm_deletion() -> bool:
    """Ask the operator whether the listed images may be deleted."""

    while True:
        try:
            response = input("Proceed with deletion? [y/N]: ")
        except EOFError:
            return False
        choice = response.strip().lower()
        if choice in {"y", "yes"}:
            return True
        if choice in {"", "n", "no"}:
            return False
        print("Please respond with 'yes' or 'no'.")


def prune(
    api: ProvisioningApi,
    compartment_id: str,
    keep_count: int = DEFAULT_KEEP_COUNT,
    *,
    force: bool = False,
    confirm: Optional[Callable[[], bool]] = None,
    echo: Callable[[str], None] = print,
) -> List[str]:
    """Delete all but the newest *keep_count* images carrying a ``nix_hash`` tag.

    Returns the ids that were actually deleted. Individual deletion failures
    are reported as warnings and left out of the result.
    """

    if keep_count < 0:
        raise ValueError(f"keep_count must be non-negative, got {keep_count}")

    echo(f"Listing NixOS images with {HASH_TAG} tag (keeping {keep_count} most recent)...")
    images = tagged_images(api.list_images(compartment_id))
    echo(f"Found {len(images)} NixOS image(s) with {HASH_TAG} tag")

    candidates = select_for_deletion(images, keep_count)
    if not candidates:
        echo(f"No cleanup needed (have {len(images)}, keeping {keep_count})")
        log_event("oci_nixos.retention.nothing_to_do", found=len(images), keep=keep_count)
        return []

    echo(f"Will delete {len(candidates)} old image(s):")
    for image in candidates:
        echo(f"  - {image.id}")

    if not force:
        ask = confirm or confirm_deletion
        if not ask():
            echo("Aborted")
            log_event("oci_nixos.retention.aborted", candidates=len(candidates))
            raise PruneAborted("deletion declined")

    deleted: List[str] = []
    for image in candidates:
        echo(f"Deleting {image.id}...")
        try:
            api.delete_image(image.id)
        except REQUEST_ERRORS as exc:
            log_event(
                "oci_nixos.retention.delete_failed",
                image_id=image.id,
                error=describe_error(exc),
                error_type=type(exc).__name__,
            )
            echo(f"  Warning: Failed to delete {image.id}")
            continue
        deleted.append(image.id)

    log_event(
        "oci_nixos.retention.finished",
        deleted=deleted,
        failed=len(candidates) - len(deleted),
    )
    echo("Cleanup complete")
    return deleted
