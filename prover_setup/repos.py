"""
Vendor Repositories
===================

Signing keys, apt source lists and the CUDA keyring package for the three
vendor repositories the setup depends on:

  - Docker CE                 download.docker.com
  - NVIDIA Container Toolkit  nvidia.github.io/libnvidia-container
  - CUDA / NVIDIA drivers     developer.download.nvidia.com/compute/cuda/repos

Downloads go through requests; anything that lands under /etc or /usr is
written through the privileged CommandRunner.
"""

from __future__ import annotations
import logging
import platform
import tempfile
from pathlib import Path
from typing import Optional

import requests

from .errors import StepFailed
from .shell import CommandRunner

log = logging.getLogger(__name__)

DOCKER_GPG_URL      = "https://download.docker.com/linux/ubuntu/gpg"
DOCKER_REPO_URL     = "https://download.docker.com/linux/ubuntu"
DOCKER_KEYRING      = "/usr/share/keyrings/docker-archive-keyring.gpg"
DOCKER_LIST         = "/etc/apt/sources.list.d/docker.list"

NVIDIA_CTK_GPG_URL  = "https://nvidia.github.io/libnvidia-container/gpgkey"
NVIDIA_CTK_LIST_URL = "https://nvidia.github.io/libnvidia-container/stable/deb/nvidia-container-toolkit.list"
NVIDIA_CTK_KEYRING  = "/usr/share/keyrings/nvidia-container-toolkit-keyring.gpg"
NVIDIA_CTK_LIST     = "/etc/apt/sources.list.d/nvidia-container-toolkit.list"

CUDA_KEYRING_DEB    = "cuda-keyring_1.1-1_all.deb"
CUDA_REPO_BASE      = "https://developer.download.nvidia.com/compute/cuda/repos"

DEB_ARCH  = {"x86_64": "amd64", "amd64": "amd64", "aarch64": "arm64", "arm64": "arm64"}
CUDA_ARCH = {"x86_64": "x86_64", "amd64": "x86_64", "aarch64": "sbsa", "arm64": "sbsa"}


# ─── Host facts ───────────────────────────────────────────────────────────────

def os_release() -> dict:
    try:
        return platform.freedesktop_os_release()
    except OSError:
        return {}


def deb_architecture(machine: Optional[str] = None) -> str:
    return DEB_ARCH.get((machine or platform.machine()).lower(), "amd64")


def distro_codename(release: dict) -> str:
    return release.get("UBUNTU_CODENAME") or release.get("VERSION_CODENAME") or "jammy"


def cuda_repo_path(release: dict, machine: Optional[str] = None) -> str:
    """e.g. 'ubuntu2204/x86_64'"""
    distro  = release.get("ID", "ubuntu")
    version = release.get("VERSION_ID", "22.04").replace(".", "")
    arch    = CUDA_ARCH.get((machine or platform.machine()).lower(), "x86_64")
    return f"{distro}{version}/{arch}"


# ─── Sources ──────────────────────────────────────────────────────────────────

def docker_source_line(arch: str, codename: str) -> str:
    return f"deb [arch={arch} signed-by={DOCKER_KEYRING}] {DOCKER_REPO_URL} {codename} stable\n"


def sign_source_list(raw: str, keyring: str) -> str:
    """Pin every `deb https://` entry of a vendor list to `keyring`."""
    return raw.replace("deb https://", f"deb [signed-by={keyring}] https://")


def fetch(url: str, step: str, timeout: float = 30) -> bytes:
    log.debug(f"[repos] GET {url}")
    try:
        resp = requests.get(url, timeout=timeout)
        resp.raise_for_status()
    except requests.RequestException as e:
        raise StepFailed(step, f"download of {url} failed: {e}")
    return resp.content


def install_signing_key(runner: CommandRunner, url: str, keyring: str) -> None:
    key = fetch(url, runner.step)
    runner.run(["gpg", "--batch", "--yes", "--dearmor", "-o", keyring], input=key, capture=True)
    log.info(f"[repos] ✓ Signing key installed at {keyring}")


def add_docker_repository(runner: CommandRunner, release: dict, machine: Optional[str] = None) -> None:
    install_signing_key(runner, DOCKER_GPG_URL, DOCKER_KEYRING)
    line = docker_source_line(deb_architecture(machine), distro_codename(release))
    runner.write_file(DOCKER_LIST, line)
    log.info(f"[repos] ✓ Docker repository added ({DOCKER_LIST})")


def add_toolkit_repository(runner: CommandRunner) -> None:
    install_signing_key(runner, NVIDIA_CTK_GPG_URL, NVIDIA_CTK_KEYRING)
    raw = fetch(NVIDIA_CTK_LIST_URL, runner.step).decode()
    runner.write_file(NVIDIA_CTK_LIST, sign_source_list(raw, NVIDIA_CTK_KEYRING))
    log.info(f"[repos] ✓ NVIDIA Container Toolkit repository added ({NVIDIA_CTK_LIST})")


def install_cuda_keyring(runner: CommandRunner, release: dict, machine: Optional[str] = None) -> None:
    url = f"{CUDA_REPO_BASE}/{cuda_repo_path(release, machine)}/{CUDA_KEYRING_DEB}"
    data = fetch(url, runner.step)
    with tempfile.TemporaryDirectory(prefix="succinct-setup-") as workdir:
        deb = Path(workdir) / CUDA_KEYRING_DEB
        deb.write_bytes(data)
        runner.run(["dpkg", "-i", str(deb)])
    log.info(f"[repos] ✓ CUDA keyring installed from {url}")
