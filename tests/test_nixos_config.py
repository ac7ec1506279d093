"""Tests for the configuration.nix rewrite."""

import pytest

from oci_nixos.nixos_config import FRAGMENT_NAME, inject_lvm_configuration


@pytest.mark.parametrize("existing", ["", "  \n", "# just a comment\n"])
def test_inject_refuses_configuration_without_a_body(existing) -> None:
    with pytest.raises(ValueError):
        inject_lvm_configuration(existing)


def test_inject_adds_imports_to_module_without_one() -> None:
    assert inject_lvm_configuration("{ config, pkgs, ... }:\n{\n  boot.loader.grub.enable = true;\n}\n") == (
        "{ config, pkgs, ... }:\n"
        "{\n"
        "  imports = [\n"
        "    ./oci-nixos-lvm-mounts.nix\n"
        "  ];\n"
        "\n"
        "  boot.loader.grub.enable = true;\n"
        "  # oci-nixos lvm start\n"
        "  boot.initrd.services.lvm.enable = true;\n"
        "  # oci-nixos lvm end\n"
        "}\n"
    )


def test_inject_skips_attribute_sets_bound_in_let() -> None:
    existing = (
        "{ config, pkgs, ... }:\n"
        "let\n"
        "  ports = {\n"
        "    ssh = 22;\n"
        "  };\n"
        "in\n"
        "{\n"
        "  networking.firewall.allowedTCPPorts = [ ports.ssh ];\n"
        "}\n"
    )

    lines = inject_lvm_configuration(existing).splitlines()

    assert lines[:9] == [
        "{ config, pkgs, ... }:",
        "let",
        "  ports = {",
        "    ssh = 22;",
        "  };",
        "in",
        "{",
        "  imports = [",
        f"    ./{FRAGMENT_NAME}",
    ]


def test_inject_handles_let_in_on_one_line() -> None:
    existing = "{ ... }:\nlet\n  hosts = { a = 1; };\nin {\n  time.timeZone = \"UTC\";\n}\n"

    lines = inject_lvm_configuration(existing).splitlines()

    assert lines[3:5] == ["in {", "  imports = ["]


def test_inject_extends_multiline_imports() -> None:
    existing = (
        "{ config, pkgs, ... }:\n"
        "{\n"
        "  imports = [\n"
        "    ./hardware-configuration.nix\n"
        "  ];\n"
        "\n"
        '  networking.hostName = "nixos";\n'
        "}\n"
    )

    updated = inject_lvm_configuration(existing)

    assert (
        "    ./hardware-configuration.nix\n"
        f"    ./{FRAGMENT_NAME}\n"
        "  ];\n"
    ) in updated
    assert updated.count("imports") == 1
    assert updated.rstrip().endswith("# oci-nixos lvm end\n}")
    assert '  networking.hostName = "nixos";' in updated


def test_inject_extends_single_line_imports() -> None:
    existing = "{ ... }:\n{\n  imports = [ ./hw.nix ];\n}\n"

    updated = inject_lvm_configuration(existing)

    assert f"  imports = [ ./hw.nix ./{FRAGMENT_NAME} ];" in updated


def test_inject_is_idempotent() -> None:
    once = inject_lvm_configuration("{ config, ... }:\n{\n  services.openssh.enable = true;\n}\n")
    twice = inject_lvm_configuration(once)

    assert twice == once
    assert twice.count("boot.initrd.services.lvm.enable") == 1
    assert twice.count(FRAGMENT_NAME) == 1
