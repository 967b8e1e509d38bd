from __future__ import annotations

import json
import logging

import pytest

from prover_setup import marker as marker_mod
from prover_setup import repos
from prover_setup.errors import RebootRequired, StepFailed
from prover_setup.marker import DriverInstallMarker
from prover_setup.steps import (
    TOOLKIT_PACKAGES,
    FailurePolicy,
    ProvisioningStep,
    Provisioner,
    reboot_host,
    run_steps,
)

RELEASE = {"ID": "ubuntu", "VERSION_ID": "22.04", "VERSION_CODENAME": "jammy", "UBUNTU_CODENAME": "jammy"}
KERNEL  = "6.8.0-45-generic"


@pytest.fixture(autouse=True)
def offline(monkeypatch) -> list[str]:
    fetched: list[str] = []

    def fake_fetch(url: str, step: str, timeout: float = 30) -> bytes:
        fetched.append(url)
        if url == repos.NVIDIA_CTK_LIST_URL:
            return b"deb https://nvidia.github.io/libnvidia-container/stable/deb/$(ARCH) /\n"
        return b"-----BEGIN PGP PUBLIC KEY BLOCK-----"

    monkeypatch.setattr(repos, "fetch", fake_fetch)
    monkeypatch.setattr(marker_mod, "current_boot_time", lambda: 1_000.0)
    return fetched


@pytest.fixture
def provisioner(config, root_runner) -> Provisioner:
    return Provisioner(config, root_runner, root_runner.privilege, release=RELEASE, machine="x86_64", kernel=KERNEL)


def _fresh_host(make_caps):
    return make_caps(
        driver_version           = None,
        driver_version_full      = None,
        container_engine_present = False,
        container_engine_running = False,
        gpu_toolkit_present      = False,
        user_in_engine_group     = False,
    )


def test_ready_host_runs_no_mutating_commands(fake_procs, provisioner, make_caps, offline) -> None:
    run_steps(provisioner.steps(), make_caps())

    assert fake_procs.commands == [["docker", "ps", "-a"]]
    assert not offline


def test_fresh_host_installs_everything_then_requires_reboot(fake_procs, provisioner, make_caps, config) -> None:
    with pytest.raises(RebootRequired):
        run_steps(provisioner.steps(), _fresh_host(make_caps))

    cmds = fake_procs.commands
    order = [
        ["apt-get", "upgrade", "-y"],
        ["apt-get", "install", "-y", "docker-ce", "docker-ce-cli", "containerd.io", "docker-compose-plugin"],
        ["systemctl", "start", "docker"],
        ["usermod", "-aG", "docker", "alice"],
        ["docker", "ps", "-a"],
        ["nvidia-ctk", "runtime", "configure", "--runtime=docker"],
        ["docker", "pull", config.image],
        ["apt-get", "install", "-y", "build-essential", f"linux-headers-{KERNEL}", "dkms"],
        ["apt-get", "install", "-y", "cuda-drivers"],
        ["tee", str(config.marker_path)],
    ]
    positions = [cmds.index(cmd) for cmd in order]
    assert positions == sorted(positions)

    # A fresh install starts dockerd itself; the separate service step stays skipped
    assert cmds.count(["systemctl", "start", "docker"]) == 1


def test_toolkit_packages_share_one_pinned_version(fake_procs, provisioner, make_caps) -> None:
    run_steps(provisioner.steps(), make_caps(gpu_toolkit_present=False))

    install = next(c for c in fake_procs.commands if c[:3] == ["apt-get", "install", "-y"])
    assert install[3:] == [f"{pkg}=1.17.8-1" for pkg in TOOLKIT_PACKAGES]


def test_toolkit_list_is_pinned_to_keyring(fake_procs, provisioner, make_caps) -> None:
    run_steps(provisioner.steps(), make_caps(gpu_toolkit_present=False))

    tee = next(c for c in fake_procs.calls if c["argv"] == ["tee", repos.NVIDIA_CTK_LIST])
    assert f"deb [signed-by={repos.NVIDIA_CTK_KEYRING}] https://" in tee["input"].decode()


def test_fatal_failure_stops_the_sequence(fake_procs, provisioner, make_caps) -> None:
    fake_procs.fail("apt-get", "install", "-y", "docker-ce", returncode=100)

    with pytest.raises(StepFailed) as info:
        run_steps(provisioner.steps(), make_caps(container_engine_present=False, container_engine_running=False))

    assert info.value.step == "container-engine"
    assert info.value.returncode == 100
    assert not fake_procs.ran("docker", "ps")


def test_advisory_failure_continues(fake_procs, provisioner, make_caps, caplog) -> None:
    fake_procs.fail("usermod")

    with caplog.at_level(logging.WARNING):
        run_steps(provisioner.steps(), make_caps(user_in_engine_group=False))

    assert fake_procs.ran("docker", "ps", "-a")
    assert "engine-group did not complete" in caplog.text


def test_group_step_skipped_for_root_session(fake_procs, config, make_caps) -> None:
    from prover_setup.privilege import PrivilegeContext, PrivilegeMode
    from prover_setup.shell import CommandRunner

    runner = CommandRunner(PrivilegeContext(PrivilegeMode.ROOT, "root"))
    provisioner = Provisioner(config, runner, runner.privilege, release=RELEASE, machine="x86_64", kernel=KERNEL)

    run_steps(provisioner.steps(), make_caps(user_in_engine_group=False))

    assert not fake_procs.ran("usermod")


def test_stopped_daemon_is_started(fake_procs, provisioner, make_caps) -> None:
    run_steps(provisioner.steps(), make_caps(container_engine_running=False))

    assert fake_procs.commands[:2] == [["systemctl", "start", "docker"], ["systemctl", "enable", "docker"]]


def test_driver_purge_is_best_effort(fake_procs, provisioner, make_caps) -> None:
    fake_procs.fail("apt-get", "remove")
    fake_procs.fail("apt-get", "autoremove")

    with pytest.raises(RebootRequired):
        run_steps(provisioner.steps(), make_caps(driver_version=535, driver_version_full="535.183.01"))

    assert fake_procs.ran("dpkg", "-i")
    assert fake_procs.ran("apt-get", "install", "-y", "cuda-drivers")


def test_driver_install_writes_marker(fake_procs, provisioner, make_caps, config, offline) -> None:
    with pytest.raises(RebootRequired):
        run_steps(provisioner.steps(), make_caps(driver_version=None, driver_version_full=None))

    tee = next(c for c in fake_procs.calls if c["argv"] == ["tee", str(config.marker_path)])
    written = json.loads(tee["input"])
    assert written["boot_time"] == 1_000.0
    assert written["package"] == "cuda-drivers"
    assert offline == [f"{repos.CUDA_REPO_BASE}/ubuntu2204/x86_64/{repos.CUDA_KEYRING_DEB}"]


def test_marker_write_failure_still_requires_reboot(fake_procs, provisioner, make_caps, caplog) -> None:
    fake_procs.fail("tee")

    with caplog.at_level(logging.WARNING), pytest.raises(RebootRequired):
        run_steps(provisioner.steps(), make_caps(driver_version=None, driver_version_full=None))

    assert fake_procs.ran("apt-get", "install", "-y", "cuda-drivers")
    assert fake_procs.ran("tee")
    assert "Could not record pending reboot" in caplog.text


def test_pending_marker_skips_reinstall(fake_procs, provisioner, make_caps) -> None:
    pending = DriverInstallMarker(installed_at=900.0, boot_time=1_000.0)

    with pytest.raises(RebootRequired):
        run_steps(provisioner.steps(), make_caps(driver_version=None, driver_marker=pending))

    assert not fake_procs.ran("apt-get", "install")
    assert not fake_procs.ran("dpkg")


def test_marker_after_reboot_without_driver_is_fatal(fake_procs, provisioner, make_caps, config) -> None:
    stale = DriverInstallMarker(installed_at=100.0, boot_time=50.0)

    with pytest.raises(StepFailed) as info:
        run_steps(provisioner.steps(), make_caps(driver_version=None, driver_marker=stale))

    assert info.value.step == "gpu-driver"
    assert str(config.marker_path) in str(info.value)
    assert not fake_procs.ran("apt-get", "install")


def test_marker_cleared_once_driver_is_live(fake_procs, provisioner, make_caps, config) -> None:
    done = DriverInstallMarker(installed_at=100.0, boot_time=50.0)

    run_steps(provisioner.steps(), make_caps(driver_marker=done))

    assert fake_procs.commands[-1] == ["rm", "-f", str(config.marker_path)]


def test_run_steps_executes_each_unsatisfied_step_once(make_caps) -> None:
    seen: list[str] = []
    steps = [
        ProvisioningStep("a", "first", lambda caps: False, lambda caps: seen.append("a")),
        ProvisioningStep("b", "second", lambda caps: True, lambda caps: seen.append("b")),
        ProvisioningStep("c", "third", lambda caps: False, lambda caps: seen.append("c"),
                         on_failure=FailurePolicy.ADVISORY),
    ]

    run_steps(steps, make_caps())

    assert seen == ["a", "c"]


def test_reboot_host_waits_then_reboots(fake_procs, root_runner) -> None:
    waited: list[float] = []

    reboot_host(root_runner, 10, sleep=waited.append)

    assert waited == [10]
    assert fake_procs.commands == [["reboot"]]
