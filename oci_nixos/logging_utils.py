"""Structured logging helpers for oci-nixos components.

Events are emitted both on the workstation driving a deployment and on the
guest running the first-boot bootstrap, so every record names the host it
came from.
"""

from __future__ import annotations

import datetime as _dt
import enum
import json
import os
import platform
import sys
from pathlib import Path
from typing import Any, Mapping, Sequence

_SYSTEM_LOG_FILE = Path("/var/log/oci-nixos/actions.log")
_USER_LOG_FILE = Path("~/.local/state/oci-nixos/actions.log")


def _serialise(value: Any) -> Any:
    """Return a JSON-friendly representation of *value*."""

    if isinstance(value, enum.Enum):
        return _serialise(value.value)
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, (_dt.datetime, _dt.date)):
        return value.isoformat()
    if isinstance(value, Mapping):
        return {str(key): _serialise(item) for key, item in value.items()}
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return [_serialise(item) for item in value]
    return repr(value)


def _logs_enabled() -> bool:
    value = os.environ.get("OCI_NIXOS_LOG_EVENTS")
    if value is None:
        return False
    return value.strip().lower() not in {"", "0", "false", "no"}


def log_event(event: str, **fields: Any) -> None:
    """Emit a structured log entry to ``stderr`` when logging is enabled.

    Each entry carries an ISO-8601 UTC timestamp and the emitting host so
    workstation and guest logs can be merged back into one timeline. Values
    that are not JSON-serialisable are converted via ``repr``.
    """

    if not _logs_enabled():
        return

    record = {
        "timestamp": _dt.datetime.now(_dt.timezone.utc).isoformat(),
        "host": platform.node() or "unknown",
        "event": event,
    }
    for key, value in fields.items():
        record[str(key)] = _serialise(value)

    message = json.dumps(record, sort_keys=True)

    sys.stderr.write(message + "\n")
    sys.stderr.flush()
    _append_to_log_file(message)


def _default_log_file() -> Path:
    """Return the system log on the guest and a per-user log elsewhere."""

    geteuid = getattr(os, "geteuid", None)
    if geteuid is not None and geteuid() == 0:
        return _SYSTEM_LOG_FILE
    return _USER_LOG_FILE.expanduser()


def _log_file_path() -> Path:
    """Return ``OCI_NIXOS_LOG_FILE`` when set, else the default location."""

    value = os.environ.get("OCI_NIXOS_LOG_FILE")
    if value is None or value.strip() == "":
        return _default_log_file()
    return Path(value)


def _append_to_log_file(message: str) -> None:
    log_file = _log_file_path()
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        with log_file.open("a", encoding="utf-8") as handle:
            handle.write(message + "\n")
    except OSError as exc:  # pragma: no cover - best-effort logging path
        sys.stderr.write(f"oci-nixos: failed to write log to {log_file}: {exc}\n")
        sys.stderr.flush()
