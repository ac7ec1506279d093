"""Wait for a freshly launched guest to finish booting."""

from __future__ import annotations

from dataclasses import dataclass
import time
from typing import Callable

from .commands import CommandRunner
from .logging_utils import log_event

DEFAULT_PROBE_PATH = "/run/booted-system"


@dataclass(frozen=True)
class ReadinessResult:
    ready: bool
    attempts: int


def wait_for_ready(
    runner: CommandRunner,
    *,
    probe_path: str = DEFAULT_PROBE_PATH,
    attempts: int = 60,
    interval: float = 5.0,
    sleep: Callable[[float], None] = time.sleep,
) -> ReadinessResult:
    """Poll the guest until *probe_path* exists.

    The probe runs at a fixed *interval* for at most *attempts* tries, so the
    effective deadline is ``attempts * interval``. Connection failures while
    the guest is still booting count as a failed attempt.
    """

    log_event(
        "oci_nixos.readiness.start",
        probe_path=probe_path,
        attempts=attempts,
        interval=interval,
    )

    for attempt in range(1, attempts + 1):
        result = runner(["test", "-e", probe_path])
        if result.returncode == 0:
            log_event("oci_nixos.readiness.ready", attempt=attempt)
            return ReadinessResult(ready=True, attempts=attempt)
        log_event(
            "oci_nixos.readiness.not_ready",
            attempt=attempt,
            returncode=result.returncode,
        )
        if attempt < attempts:
            sleep(interval)

    log_event(
        "oci_nixos.readiness.timeout",
        probe_path=probe_path,
        attempts=attempts,
        interval=interval,
    )
    return ReadinessResult(ready=False, attempts=attempts)
