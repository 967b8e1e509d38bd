"""
Provisioning Steps
==================

The ordered, idempotent installation pipeline:

  1. system-update        apt-get update && upgrade (skipped when everything is ready)
  2. container-engine     Docker CE from download.docker.com
  3. engine-service       start + enable dockerd if it is installed but stopped
  4. engine-group         add the invoking user to the docker group (advisory)
  5. engine-verify        `docker ps -a` liveness check
  6. gpu-toolkit          NVIDIA Container Toolkit, all four packages pinned to one version
  7. gpu-driver           cuda-drivers from the CUDA repo, then RebootRequired
  8. driver-marker        drop the pending-reboot marker once the driver is live (advisory)

Each step is skipped when its precondition already holds on the probed host.
A FATAL step that fails raises StepFailed and the run stops there, with no
rollback. An ADVISORY step that fails is logged and the run continues.
"""

from __future__ import annotations
import enum
import logging
import platform
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Sequence

from .config import SetupConfig
from .errors import RebootRequired, StepFailed
from .marker import DriverInstallMarker, clear_marker, save_marker
from .privilege import PrivilegeContext
from .probe import ENGINE_GROUP, HostCapabilities
from .repos import add_docker_repository, add_toolkit_repository, install_cuda_keyring, os_release
from .shell import CommandRunner

log = logging.getLogger(__name__)

DOCKER_PREREQUISITES = [
    "apt-transport-https", "ca-certificates", "curl",
    "software-properties-common", "gnupg", "lsb-release",
]
DOCKER_PACKAGES = ["docker-ce", "docker-ce-cli", "containerd.io", "docker-compose-plugin"]
TOOLKIT_PACKAGES = [
    "nvidia-container-toolkit",
    "nvidia-container-toolkit-base",
    "libnvidia-container-tools",
    "libnvidia-container1",
]
DRIVER_PACKAGE = "cuda-drivers"

# Driver packages only: a bare `nvidia-*` would also purge the container toolkit
DRIVER_PURGE_PATTERNS = ["nvidia-driver-*", "nvidia-dkms-*", "nvidia-kernel-*", "nvidia-utils-*"]


class FailurePolicy(enum.Enum):
    FATAL    = "fatal"
    ADVISORY = "advisory"


@dataclass(frozen=True)
class ProvisioningStep:
    name:         str
    description:  str
    is_satisfied: Callable[[HostCapabilities], bool]
    action:       Callable[[HostCapabilities], None]
    on_failure:   FailurePolicy = FailurePolicy.FATAL


# ─── Sequencer ────────────────────────────────────────────────────────────────

def run_steps(steps: Sequence[ProvisioningStep], caps: HostCapabilities) -> None:
    total = len(steps)
    for i, step in enumerate(steps, 1):
        if step.is_satisfied(caps):
            log.info(f"[steps] {i}/{total} {step.name}: already satisfied, skipping")
            continue

        log.info(f"[steps] {i}/{total} {step.name}: {step.description}")
        try:
            step.action(caps)
        except StepFailed as e:
            if step.on_failure is FailurePolicy.ADVISORY:
                log.warning(f"[steps] {step.name} did not complete: {e}; continuing")
                continue
            raise
        log.info(f"[steps] ✓ {step.name} complete")


def reboot_host(runner: CommandRunner, delay: int, sleep: Callable[[float], None] = time.sleep) -> None:
    log.warning("NVIDIA drivers installed. System needs to reboot.")
    log.warning("Please run this tool again after the reboot to complete the setup.")
    log.warning(f"Rebooting in {delay}s (Ctrl+C to cancel)…")
    sleep(delay)
    runner.for_step("reboot").run(["reboot"])


# ─── Steps ────────────────────────────────────────────────────────────────────

@dataclass
class Provisioner:
    config:    SetupConfig
    runner:    CommandRunner
    privilege: PrivilegeContext
    release:   dict = field(default_factory=os_release)
    machine:   str  = field(default_factory=platform.machine)
    kernel:    str  = field(default_factory=platform.release)

    def steps(self) -> list[ProvisioningStep]:
        return [
            ProvisioningStep(
                "system-update", "Updating and upgrading system packages",
                lambda caps: caps.all_ready,
                self._update_system,
            ),
            ProvisioningStep(
                "container-engine", "Docker not found, installing Docker",
                lambda caps: caps.container_engine_present,
                self._install_docker,
            ),
            ProvisioningStep(
                "engine-service", "Docker daemon not running, starting it",
                # A fresh install starts the service itself
                lambda caps: caps.container_engine_running or not caps.container_engine_present,
                self._start_docker,
            ),
            ProvisioningStep(
                "engine-group", f"Adding user to the {ENGINE_GROUP} group",
                lambda caps: caps.user_in_engine_group or self.privilege.non_root_user is None,
                self._add_user_to_group,
                on_failure=FailurePolicy.ADVISORY,
            ),
            ProvisioningStep(
                "engine-verify", "Verifying Docker installation",
                lambda caps: False,
                self._verify_docker,
            ),
            ProvisioningStep(
                "gpu-toolkit", "Installing NVIDIA Container Toolkit",
                lambda caps: caps.gpu_toolkit_present,
                self._install_toolkit,
            ),
            ProvisioningStep(
                "gpu-driver", "Installing/Updating NVIDIA drivers to get CUDA 12.5 or higher",
                lambda caps: caps.driver_ready,
                self._install_driver,
            ),
            ProvisioningStep(
                "driver-marker", "Clearing pending driver reboot marker",
                lambda caps: caps.driver_marker is None,
                self._clear_marker,
                on_failure=FailurePolicy.ADVISORY,
            ),
        ]

    def _update_system(self, caps: HostCapabilities) -> None:
        r = self.runner.for_step("system-update")
        r.run(["apt-get", "update"])
        r.run(["apt-get", "upgrade", "-y"])

    def _install_docker(self, caps: HostCapabilities) -> None:
        r = self.runner.for_step("container-engine")
        r.run(["apt-get", "install", "-y", *DOCKER_PREREQUISITES])
        add_docker_repository(r, self.release, self.machine)
        r.run(["apt-get", "update"])
        r.run(["apt-get", "install", "-y", *DOCKER_PACKAGES])
        log.info("[steps] ✓ Docker packages installed")
        self._start_docker(caps)

    def _start_docker(self, caps: HostCapabilities) -> None:
        r = self.runner.for_step("engine-service")
        r.run(["systemctl", "start", "docker"])
        r.run(["systemctl", "enable", "docker"])

    def _add_user_to_group(self, caps: HostCapabilities) -> None:
        user = self.privilege.non_root_user
        self.runner.for_step("engine-group").run(["usermod", "-aG", ENGINE_GROUP, user])
        log.info(f"[steps] Added user '{user}' to {ENGINE_GROUP} group")
        log.warning("Docker group changes take effect after the next login or reboot")

    def _verify_docker(self, caps: HostCapabilities) -> None:
        self.runner.for_step("engine-verify").run(["docker", "ps", "-a"], capture=True)

    def _install_toolkit(self, caps: HostCapabilities) -> None:
        r = self.runner.for_step("gpu-toolkit")
        add_toolkit_repository(r)
        r.run(["apt-get", "update"])

        version = self.config.toolkit_version
        r.run(["apt-get", "install", "-y", *(f"{pkg}={version}" for pkg in TOOLKIT_PACKAGES)])
        log.info(f"[steps] ✓ NVIDIA Container Toolkit {version} installed")

        log.info("[steps] Configuring Docker to use the NVIDIA Container Runtime…")
        r.run(["nvidia-ctk", "runtime", "configure", "--runtime=docker"])
        r.run(["systemctl", "restart", "docker"])

        log.info(f"[steps] Pulling prover image {self.config.image}…")
        r.run(["docker", "pull", self.config.image])

    def _install_driver(self, caps: HostCapabilities) -> None:
        marker = caps.driver_marker
        if marker is not None:
            self._resume_driver_install(caps, marker)

        r = self.runner.for_step("gpu-driver")
        r.run(["apt-get", "update"])
        r.run(["apt-get", "install", "-y", "build-essential", f"linux-headers-{self.kernel}", "dkms"])

        log.info("[steps] Removing existing NVIDIA driver installations…")
        self._best_effort(r, ["apt-get", "remove", "-y", "--purge", *DRIVER_PURGE_PATTERNS])
        self._best_effort(r, ["apt-get", "autoremove", "-y"])

        install_cuda_keyring(r, self.release, self.machine)
        r.run(["apt-get", "update"])
        r.run(["apt-get", "install", "-y", DRIVER_PACKAGE])
        log.info(f"[steps] ✓ {DRIVER_PACKAGE} installed")

        try:
            save_marker(r, self.config.marker_path, DriverInstallMarker.now(DRIVER_PACKAGE))
        except StepFailed as e:
            log.warning(f"[steps] Could not record pending reboot: {e}; rebooting anyway")
        raise RebootRequired(f"{DRIVER_PACKAGE} installed; reboot required to load the new driver")

    def _resume_driver_install(self, caps: HostCapabilities, marker: DriverInstallMarker) -> None:
        installed = datetime.fromtimestamp(marker.installed_at).strftime("%Y-%m-%d %H:%M:%S")
        if not marker.rebooted_since():
            log.warning(f"[steps] {marker.package} was installed at {installed} but the host has not rebooted yet")
            raise RebootRequired(f"{marker.package} installed at {installed}; reboot still pending")
        raise StepFailed(
            "gpu-driver",
            f"{marker.package} was installed at {installed} and the host has rebooted, but the "
            f"driver is still not active (detected: {caps.driver_version_full or 'none'}). "
            f"Check `nvidia-smi` and `dmesg`, then delete {self.config.marker_path} to force a reinstall",
        )

    def _clear_marker(self, caps: HostCapabilities) -> None:
        clear_marker(self.runner.for_step("driver-marker"), self.config.marker_path)

    @staticmethod
    def _best_effort(runner: CommandRunner, cmd: list[str]) -> None:
        result = runner.run(cmd, check=False)
        if result.returncode != 0:
            log.warning(f"[steps] `{' '.join(cmd)}` exited {result.returncode}; continuing")
