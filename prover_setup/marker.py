"""
Driver Install Marker
=====================

A tiny JSON file written right before the post-driver-install reboot. On the
next run it lets the driver step tell apart:

  - never installed                    → install
  - installed, reboot still pending    → reboot again, do not reinstall
  - installed, rebooted, still not live → stop and ask the operator
"""

from __future__ import annotations
import json
import logging
import time
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Optional

import psutil  # type: ignore

from .shell import CommandRunner

log = logging.getLogger(__name__)

# btime in /proc/stat is whole seconds; allow for clock adjustments
BOOT_TIME_SLACK_SEC = 5


def current_boot_time() -> float:
    return psutil.boot_time()


@dataclass(frozen=True)
class DriverInstallMarker:
    installed_at: float
    boot_time:    float     # psutil.boot_time() when the driver was installed
    package:      str = "cuda-drivers"

    def rebooted_since(self, boot_time: Optional[float] = None) -> bool:
        now_boot = current_boot_time() if boot_time is None else boot_time
        return now_boot > self.boot_time + BOOT_TIME_SLACK_SEC

    @classmethod
    def now(cls, package: str = "cuda-drivers") -> "DriverInstallMarker":
        return cls(installed_at=time.time(), boot_time=current_boot_time(), package=package)


def load_marker(path: Path) -> Optional[DriverInstallMarker]:
    if not path.exists():
        return None
    try:
        raw = json.loads(path.read_text())
        return DriverInstallMarker(
            installed_at = float(raw["installed_at"]),
            boot_time    = float(raw["boot_time"]),
            package      = str(raw.get("package", "cuda-drivers")),
        )
    except (OSError, ValueError, KeyError, TypeError) as e:
        log.warning(f"[marker] Ignoring unreadable driver marker {path}: {e}")
        return None


def save_marker(runner: CommandRunner, path: Path, marker: DriverInstallMarker) -> None:
    runner.write_file(path, json.dumps(asdict(marker), indent=2) + "\n")
    log.info(f"[marker] Recorded pending driver reboot in {path}")


def clear_marker(runner: CommandRunner, path: Path) -> None:
    runner.remove_file(path)
    log.info(f"[marker] Driver active, removed {path}")
