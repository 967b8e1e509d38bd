"""
Environment Prober
==================

Snapshots host readiness without changing anything:

  - NVIDIA driver version: pynvml first, `nvidia-smi` as fallback, absent if neither works
  - Docker CLI on PATH, dockerd process running (psutil)
  - nvidia-container-toolkit installed according to dpkg
  - Invoking user's membership of the docker group
  - Pending driver-install marker from a previous run

Calling probe() twice with no change to the host yields equal results.
"""

from __future__ import annotations
import grp
import logging
import platform
import pwd
import shutil
import subprocess
from dataclasses import dataclass
from typing import Optional

import psutil  # type: ignore

from .config import SetupConfig
from .marker import DriverInstallMarker, load_marker
from .repos import os_release

log = logging.getLogger(__name__)

ENGINE_GROUP    = "docker"
TOOLKIT_PACKAGE = "nvidia-container-toolkit"


# ─── Host Capabilities ────────────────────────────────────────────────────────

@dataclass(frozen=True)
class HostCapabilities:
    driver_version:           Optional[int]   # Major version, e.g. 555
    driver_version_full:      Optional[str]   # e.g. "555.42.06"
    min_driver_version:       int
    container_engine_present: bool
    container_engine_running: bool
    gpu_toolkit_present:      bool
    user_in_engine_group:     bool
    driver_marker:            Optional[DriverInstallMarker] = None

    @property
    def driver_ready(self) -> bool:
        return self.driver_version is not None and self.driver_version >= self.min_driver_version

    @property
    def all_ready(self) -> bool:
        return self.container_engine_present and self.gpu_toolkit_present and self.driver_ready


# ─── Driver ───────────────────────────────────────────────────────────────────

def parse_major_version(version: Optional[str]) -> Optional[int]:
    if not version:
        return None
    head = version.strip().split(".", 1)[0]
    return int(head) if head.isdigit() else None


def _driver_version_via_pynvml() -> str:
    import pynvml  # type: ignore
    pynvml.nvmlInit()
    try:
        version = pynvml.nvmlSystemGetDriverVersion()
    finally:
        pynvml.nvmlShutdown()
    return version.decode() if isinstance(version, bytes) else version


def _driver_version_via_nvidiasmi() -> str:
    exe = shutil.which("nvidia-smi")
    if not exe:
        raise FileNotFoundError("nvidia-smi not found")
    result = subprocess.run(
        [exe, "--query-gpu=driver_version", "--format=csv,noheader"],
        capture_output=True, text=True, timeout=15,
    )
    if result.returncode != 0:
        raise RuntimeError(f"nvidia-smi exit {result.returncode}: {result.stderr.strip()}")
    lines = result.stdout.strip().splitlines()
    if not lines:
        raise RuntimeError("nvidia-smi reported no GPUs")
    return lines[0].strip()


def detect_driver_version() -> Optional[str]:
    """Full driver version string, or None when no driver is loaded."""
    try:
        return _driver_version_via_pynvml()
    except Exception as e:
        log.debug(f"[probe] pynvml query failed: {e}, trying nvidia-smi")

    try:
        return _driver_version_via_nvidiasmi()
    except Exception as e:
        log.info(f"[probe] No NVIDIA driver detected ({e})")
    return None


# ─── Container engine / toolkit ───────────────────────────────────────────────

def docker_installed() -> bool:
    return shutil.which("docker") is not None


def dockerd_running() -> bool:
    for proc in psutil.process_iter(["name"]):
        if proc.info.get("name") == "dockerd":
            return True
    return False


def package_installed(package: str) -> bool:
    try:
        result = subprocess.run(
            ["dpkg-query", "-W", "-f=${Status}", package],
            capture_output=True, text=True, timeout=15,
        )
    except (FileNotFoundError, subprocess.TimeoutExpired):
        return False
    return result.returncode == 0 and "install ok installed" in result.stdout


def user_in_group(user: Optional[str], group: str = ENGINE_GROUP) -> bool:
    """True when no group change is needed: member already, or root/unknown user."""
    if not user or user == "root":
        return True
    try:
        entry = grp.getgrnam(group)
    except KeyError:
        return False
    if user in entry.gr_mem:
        return True
    try:
        return pwd.getpwnam(user).pw_gid == entry.gr_gid
    except KeyError:
        return False


# ─── Probe ────────────────────────────────────────────────────────────────────

def probe(config: SetupConfig, invoking_user: Optional[str] = None) -> HostCapabilities:
    full  = detect_driver_version()
    major = parse_major_version(full)

    caps = HostCapabilities(
        driver_version           = major,
        driver_version_full      = full,
        min_driver_version       = config.min_driver_version,
        container_engine_present = docker_installed(),
        container_engine_running = dockerd_running(),
        gpu_toolkit_present      = package_installed(TOOLKIT_PACKAGE),
        user_in_engine_group     = user_in_group(invoking_user),
        driver_marker            = load_marker(config.marker_path),
    )

    if major is None:
        log.info("[probe] NVIDIA driver: not found")
    elif caps.driver_ready:
        log.info(f"[probe] NVIDIA driver {full} meets requirements (>= {config.min_driver_version}, CUDA 12.5+)")
    else:
        log.info(f"[probe] NVIDIA driver {full} is below required {config.min_driver_version} (CUDA 12.5)")
    log.info(
        f"[probe] docker: {'yes' if caps.container_engine_present else 'no'}"
        f" (daemon {'running' if caps.container_engine_running else 'stopped'}),"
        f" nvidia-container-toolkit: {'yes' if caps.gpu_toolkit_present else 'no'}"
    )
    return caps


def describe_host() -> dict:
    release = os_release()
    return {
        "os":     release.get("PRETTY_NAME", "Unknown"),
        "kernel": platform.release(),
        "arch":   platform.machine(),
    }
