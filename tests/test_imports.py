"""Basic import tests for the oci_nixos package."""

from pathlib import Path
import sys

# Ensure repository root is on sys.path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))


def test_import_package() -> None:
    import oci_nixos  # noqa: F401


def test_import_modules() -> None:
    from oci_nixos import bootstrap, devices, layout, readiness, retention  # noqa: F401


def test_import_cli_entrypoint() -> None:
    """Ensure the CLI module imports without missing dependencies."""

    __import__("oci_nixos.cli")


def test_version_is_exposed() -> None:
    import oci_nixos

    assert oci_nixos.__version__
