"""Rewrite ``configuration.nix`` to mount the LVM pool at boot."""

from __future__ import annotations

import re
from typing import List

FRAGMENT_NAME = "oci-nixos-lvm-mounts.nix"
_BLOCK_START = "# oci-nixos lvm start"
_BLOCK_END = "# oci-nixos lvm end"

_ARGUMENTS_END = re.compile(r"\}\s*:\s*$")
_LET_IN = re.compile(r"^\s*in(\s|\{|$)")

_MANAGED_BLOCK = [
    "  " + _BLOCK_START,
    "  boot.initrd.services.lvm.enable = true;",
    "  " + _BLOCK_END,
]


def _strip_managed_block(lines: List[str]) -> List[str]:
    filtered: List[str] = []
    skipping = False
    for line in lines:
        stripped = line.strip()
        if stripped == _BLOCK_START:
            skipping = True
            continue
        if stripped == _BLOCK_END:
            skipping = False
            continue
        if skipping:
            continue
        filtered.append(line)
    return filtered


def _body_opening(lines: List[str]) -> int | None:
    """Return the index of the line opening the module's top-level attribute set.

    The search starts after the ``{ config, ... }:`` argument line and after the
    ``in`` of a ``let ... in`` prelude, so attribute sets bound inside ``let``
    are never mistaken for the module body.
    """

    start = 0
    for index, line in enumerate(lines):
        if _ARGUMENTS_END.search(line):
            start = index + 1
            break
    for index in range(start, len(lines)):
        if _LET_IN.match(lines[index]):
            start = index
            break
    for index in range(start, len(lines)):
        if lines[index].rstrip().endswith("{"):
            return index
    return None


def _ensure_import(lines: List[str], target: str) -> List[str]:
    """Ensure the top-level ``imports`` list contains *target*."""

    in_imports = False
    open_index: int | None = None
    close_index: int | None = None

    for index, line in enumerate(lines):
        stripped = line.strip()
        if stripped.startswith("imports"):
            in_imports = True
        if not in_imports:
            continue
        if "[" in line and open_index is None:
            open_index = index
        if "]" in line:
            close_index = index
            break

    if open_index is not None and close_index is not None:
        block = "\n".join(lines[open_index : close_index + 1])
        if target in block:
            return lines
        if open_index == close_index:
            # Single-line list such as ``imports = [ ./a.nix ];``.
            line = lines[open_index]
            position = line.rindex("]")
            before = line[:position].rstrip()
            updated_line = f"{before} {target} {line[position:]}"
            return lines[:open_index] + [updated_line] + lines[open_index + 1 :]
        indentation_match = re.match(r"(\s*)", lines[close_index])
        indent = indentation_match.group(1) if indentation_match else "  "
        insertion = f"{indent}  {target}"
        return lines[:close_index] + [insertion] + lines[close_index:]

    insertion_block = [
        "  imports = [",
        f"    {target}",
        "  ];",
        "",
    ]
    opening = _body_opening(lines)
    if opening is None:
        raise ValueError("configuration has no top-level attribute set")
    insertion_point = opening + 1
    return lines[:insertion_point] + insertion_block + lines[insertion_point:]


def inject_lvm_configuration(existing: str, fragment_name: str = FRAGMENT_NAME) -> str:
    """Return *existing* with the fragment import and LVM boot settings applied.

    Raises :class:`ValueError` when *existing* is empty or has no module body,
    since writing a fresh file would drop the rest of the system configuration.
    """

    if not existing.strip():
        raise ValueError("configuration is empty")

    lines = _strip_managed_block(existing.splitlines())
    lines = _ensure_import(lines, f"./{fragment_name}")

    terminator_index = None
    for index in range(len(lines) - 1, -1, -1):
        if lines[index].strip() == "}":
            terminator_index = index
            break

    if terminator_index is None:
        raise ValueError("configuration has no closing brace")
    lines = lines[:terminator_index] + _MANAGED_BLOCK + lines[terminator_index:]

    text = "\n".join(lines)
    if not text.endswith("\n"):
        text += "\n"
    return text
