"""
Command Runner
==============

Thin wrapper around subprocess.run used by every provisioning step.

  - Privileged commands get the PrivilegeContext prefix (sudo or nothing)
  - DEBIAN_FRONTEND=noninteractive is always exported, and preserved across sudo
  - A non-zero exit raises StepFailed unless check=False
  - Extra environment values (secrets) are passed by name only: the values
    never appear in argv or in log output
"""

from __future__ import annotations
import logging
import os
import subprocess
from pathlib import Path
from typing import Mapping, Optional, Sequence

from .errors import StepFailed
from .privilege import PrivilegeContext

log = logging.getLogger(__name__)

BASE_ENV = {"DEBIAN_FRONTEND": "noninteractive"}


class CommandRunner:
    def __init__(self, privilege: PrivilegeContext, step: str = "setup"):
        self.privilege = privilege
        self.step      = step

    def for_step(self, step: str) -> "CommandRunner":
        """Same privileges, but failures are attributed to `step`."""
        return CommandRunner(self.privilege, step)

    def _argv(self, cmd: Sequence[str], privileged: bool, env: Mapping[str, str]) -> list[str]:
        if not privileged:
            return list(cmd)
        return self.privilege.wrap(cmd, preserve_env=[*BASE_ENV, *env])

    def run(
        self,
        cmd:        Sequence[str],
        *,
        privileged: bool = True,
        check:      bool = True,
        capture:    bool = False,
        env:        Optional[Mapping[str, str]] = None,
        input:      Optional[bytes] = None,
        timeout:    Optional[float] = None,
    ) -> subprocess.CompletedProcess:
        extra = dict(env or {})
        argv  = self._argv(cmd, privileged, extra)
        log.debug(f"[shell] {' '.join(argv)}")

        try:
            result = subprocess.run(
                argv,
                input          = input,
                capture_output = capture,
                env            = {**os.environ, **BASE_ENV, **extra},
                timeout        = timeout,
            )
        except FileNotFoundError:
            raise StepFailed(self.step, f"{cmd[0]} not found", command=cmd)
        except subprocess.TimeoutExpired:
            raise StepFailed(self.step, f"timed out after {timeout}s", command=cmd)

        if check and result.returncode != 0:
            stderr = (result.stderr or b"").decode(errors="replace").strip() if capture else ""
            raise StepFailed(
                self.step,
                stderr[-300:] or "command returned non-zero exit status",
                command    = cmd,
                returncode = result.returncode,
            )
        return result

    def output(self, cmd: Sequence[str], *, privileged: bool = True, **kwargs) -> str:
        result = self.run(cmd, privileged=privileged, capture=True, **kwargs)
        return (result.stdout or b"").decode(errors="replace").strip()

    def write_file(self, path: Path | str, content: bytes | str) -> None:
        """Write a root-owned file through `tee`, creating its directory first."""
        data = content.encode() if isinstance(content, str) else content
        path = Path(path)
        self.run(["mkdir", "-p", str(path.parent)])
        self.run(["tee", str(path)], input=data, capture=True)

    def remove_file(self, path: Path | str) -> None:
        self.run(["rm", "-f", str(path)])
