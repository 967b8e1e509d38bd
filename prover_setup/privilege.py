"""
Privilege Negotiation
=====================

Resolves once, before anything touches the host, how privileged commands
will be issued:

  already-root    euid 0, commands run as-is
  sudo-available  `sudo -n true` works, or `sudo -v` succeeds after a password prompt
  none            PermissionDenied, the run stops
"""

from __future__ import annotations
import enum
import getpass
import logging
import os
import subprocess
from dataclasses import dataclass
from typing import Optional, Sequence

from .errors import PermissionDenied

log = logging.getLogger(__name__)


class PrivilegeMode(enum.Enum):
    ROOT = "already-root"
    SUDO = "sudo-available"
    NONE = "none"


@dataclass(frozen=True)
class PrivilegeContext:
    mode:          PrivilegeMode
    invoking_user: Optional[str]   # The human behind sudo, if any

    def wrap(self, cmd: Sequence[str], preserve_env: Sequence[str] = ()) -> list[str]:
        """Prefix `cmd` so it runs with elevated privileges."""
        if self.mode is PrivilegeMode.ROOT:
            return list(cmd)
        if self.mode is PrivilegeMode.SUDO:
            prefix = ["sudo"]
            if preserve_env:
                prefix.append(f"--preserve-env={','.join(preserve_env)}")
            return [*prefix, *cmd]
        raise PermissionDenied("no privilege elevation path is available")

    @property
    def non_root_user(self) -> Optional[str]:
        if self.invoking_user and self.invoking_user != "root":
            return self.invoking_user
        return None


def invoking_user() -> Optional[str]:
    user = os.environ.get("SUDO_USER")
    if user:
        return user
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return None


def _sudo_succeeds(*flags: str) -> bool:
    try:
        result = subprocess.run(["sudo", *flags], timeout=120)
    except (FileNotFoundError, subprocess.TimeoutExpired):
        return False
    return result.returncode == 0


def negotiate() -> PrivilegeContext:
    user = invoking_user()

    if os.geteuid() == 0:
        log.info("✓ Running as root user")
        return PrivilegeContext(PrivilegeMode.ROOT, user)

    log.info("Not running as root, checking sudo access…")
    if _sudo_succeeds("-n", "true"):
        log.info("✓ Sudo access confirmed")
        return PrivilegeContext(PrivilegeMode.SUDO, user)

    if _sudo_succeeds("-v"):
        log.info("✓ Sudo access granted after password prompt")
        return PrivilegeContext(PrivilegeMode.SUDO, user)

    raise PermissionDenied(
        "This tool requires root privileges. Please run it with: "
        f"sudo succinct-prover-setup (or ensure user '{user or 'unknown'}' has sudo access)"
    )
