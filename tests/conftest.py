from __future__ import annotations

import subprocess
from dataclasses import replace
from pathlib import Path

import pytest

from prover_setup import shell
from prover_setup.config import SetupConfig
from prover_setup.privilege import PrivilegeContext, PrivilegeMode
from prover_setup.probe import HostCapabilities
from prover_setup.shell import CommandRunner


def strip_sudo(argv: list[str]) -> list[str]:
    if argv and argv[0] == "sudo":
        argv = argv[1:]
        while argv and argv[0].startswith("--preserve-env"):
            argv = argv[1:]
    return argv


class FakeProcesses:
    """Stands in for subprocess.run; records every argv and answers with canned results."""

    def __init__(self) -> None:
        self.calls: list[dict] = []
        self.returncodes: dict[tuple, int] = {}
        self.stdout: dict[tuple, bytes] = {}

    def fail(self, *prefix: str, returncode: int = 1) -> None:
        self.returncodes[prefix] = returncode

    def answer(self, *prefix: str, stdout: bytes) -> None:
        self.stdout[prefix] = stdout

    @staticmethod
    def _lookup(table: dict, cmd: list[str], default):
        for prefix, value in table.items():
            if tuple(cmd[: len(prefix)]) == prefix:
                return value
        return default

    def __call__(self, argv, **kwargs) -> subprocess.CompletedProcess:
        argv = list(argv)
        self.calls.append({"argv": argv, **kwargs})
        cmd = strip_sudo(argv)
        rc = self._lookup(self.returncodes, cmd, 0)
        out = self._lookup(self.stdout, cmd, b"")
        return subprocess.CompletedProcess(argv, rc, stdout=out, stderr=b"boom" if rc else b"")

    @property
    def commands(self) -> list[list[str]]:
        return [strip_sudo(call["argv"]) for call in self.calls]

    def ran(self, *prefix: str) -> bool:
        return any(tuple(cmd[: len(prefix)]) == prefix for cmd in self.commands)


@pytest.fixture
def fake_procs(monkeypatch) -> FakeProcesses:
    procs = FakeProcesses()
    monkeypatch.setattr(shell.subprocess, "run", procs)
    return procs


@pytest.fixture
def root_runner() -> CommandRunner:
    return CommandRunner(PrivilegeContext(PrivilegeMode.ROOT, "alice"))


@pytest.fixture
def sudo_runner() -> CommandRunner:
    return CommandRunner(PrivilegeContext(PrivilegeMode.SUDO, "alice"))


@pytest.fixture
def config(tmp_path: Path) -> SetupConfig:
    return SetupConfig(
        log_file     = tmp_path / "setup.log",
        state_dir    = tmp_path / "state",
        reboot_delay = 0,
    )


READY = HostCapabilities(
    driver_version           = 560,
    driver_version_full      = "560.35.03",
    min_driver_version       = 555,
    container_engine_present = True,
    container_engine_running = True,
    gpu_toolkit_present      = True,
    user_in_engine_group     = True,
)


@pytest.fixture
def make_caps():
    def _make(**overrides) -> HostCapabilities:
        return replace(READY, **overrides)
    return _make
