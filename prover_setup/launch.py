"""
Prover Launch
=============

Builds and starts the single long-running prover container:

  - --gpus all:          every GPU on the host
  - --network host:      the node talks to the Succinct network directly
  - --restart unless-stopped
  - docker.sock mounted: the node orchestrates its own sibling containers
  - NETWORK_PRIVATE_KEY: passed through the environment by name only, so the
                         value never shows up in argv, `ps` or the activity log

A redacted summary and an explicit Enter keypress gate the launch: a
misconfigured prover puts staked funds at risk.
"""

from __future__ import annotations
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .config import SetupConfig
from .credentials import ProverCredentials
from .errors import CollectionAborted
from .shell import CommandRunner

log = logging.getLogger(__name__)

PRIVATE_KEY_ENV = "NETWORK_PRIVATE_KEY"
DOCKER_SOCKET   = "/var/run/docker.sock"
REDACTED        = "[PROTECTED]"


@dataclass(frozen=True)
class LaunchSpec:
    image:          str
    rpc_url:        str
    throughput:     int
    bid:            str
    credentials:    ProverCredentials
    container_name: str
    network_mode:   str = "host"
    gpus:           str = "all"
    restart_policy: str = "unless-stopped"
    docker_socket:  str = DOCKER_SOCKET

    def environment(self) -> dict[str, str]:
        return {PRIVATE_KEY_ENV: self.credentials.private_key}

    def docker_run_args(self) -> list[str]:
        return [
            "docker", "run",
            "--detach",
            "--gpus",    self.gpus,
            "--network", self.network_mode,
            "--restart", self.restart_policy,
            "--name",    self.container_name,
            "--env",     PRIVATE_KEY_ENV,                       # Value comes from our environment
            "--volume",  f"{self.docker_socket}:{self.docker_socket}",
            self.image,
            "prove",
            "--rpc-url",    self.rpc_url,
            "--throughput", str(self.throughput),
            "--bid",        self.bid,
            "--prover",     self.credentials.address,
        ]

    def summary_lines(self) -> list[str]:
        return [
            f"Prover Address:     {self.credentials.address}",
            f"Private Key:        {REDACTED}",
            f"Prove per BPGU:     {self.bid}",
            f"PGUs per Second:    {self.throughput}",
            f"RPC URL:            {self.rpc_url}",
            f"Docker Image:       {self.image}",
            f"Container Name:     {self.container_name}",
        ]


def build_launch_spec(
    config:      SetupConfig,
    credentials: ProverCredentials,
    now:         Optional[float] = None,
) -> LaunchSpec:
    stamp = int(time.time() if now is None else now)
    return LaunchSpec(
        image          = config.image,
        rpc_url        = config.rpc_url,
        throughput     = config.throughput,
        bid            = config.bid,
        credentials    = credentials,
        container_name = f"succinct-prover-{stamp}",
    )


def print_summary(spec: LaunchSpec) -> None:
    rule = "=" * 60
    print()
    print(rule)
    print("              Configuration Summary")
    print(rule)
    for line in spec.summary_lines():
        print(line)
    print(rule)
    print()


def confirm_launch(prompt: Callable[[str], str] = input) -> None:
    try:
        prompt("Ready to start the prover. Press Enter to continue or Ctrl+C to abort...")
    except (EOFError, KeyboardInterrupt):
        print()
        raise CollectionAborted("launch cancelled at confirmation")


def launch(spec: LaunchSpec, runner: CommandRunner) -> str:
    """Start the prover container. Returns the container id."""
    r = runner.for_step("launch")
    log.info(f"[launch] Pulling prover image {spec.image}…")
    r.run(["docker", "pull", spec.image])

    log.info(f"[launch] Launching Succinct prover container {spec.container_name}…")
    container_id = r.output(
        spec.docker_run_args(),
        env = spec.environment(),
    )
    log.info(f"[launch] ✓ Prover started: {spec.container_name} ({container_id[:12]})")
    print(f"Follow the prover logs with: docker logs -f {spec.container_name}")
    return container_id
