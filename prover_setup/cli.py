"""
Succinct Prover Setup - Entry Point
===================================

Run sequence:
  1. Parse config (flags → env → defaults), set up logging
  2. Negotiate privileges (root / sudo), abort if neither is available
  3. Probe the host
  4. Run the provisioning steps; a driver install ends the run with a reboot
  5. Collect and validate prover credentials
  6. Show the redacted summary, wait for Enter, launch the container

Exit codes: 0 launched (or reboot issued), 1 fatal failure, 130 aborted by the operator.
"""

from __future__ import annotations
import getpass
import logging
import time
from typing import Optional, Sequence

from .config import SCRIPT_VERSION, SetupConfig, parse_config
from .credentials import collect_credentials
from .errors import CollectionAborted, PermissionDenied, RebootRequired, StepFailed
from .launch import build_launch_spec, confirm_launch, launch, print_summary
from .log_setup import configure_logging
from .privilege import negotiate
from .probe import describe_host, probe
from .shell import CommandRunner
from .steps import Provisioner, reboot_host, run_steps

log = logging.getLogger("prover_setup")

EXIT_OK      = 0
EXIT_FAILED  = 1
EXIT_ABORTED = 130


def _banner() -> None:
    host = describe_host()
    log.info(f"Succinct Prover Setup v{SCRIPT_VERSION} - session started {time.strftime('%Y-%m-%d %H:%M:%S')}")
    log.info("=" * 62)
    log.info(f"Detected OS:  {host['os']}")
    log.info(f"Kernel:       {host['kernel']}")
    log.info(f"Architecture: {host['arch']}")


def _print_intro(config: SetupConfig) -> None:
    rule = "=" * 60
    print()
    print(rule)
    print("            Succinct Prover Configuration Setup")
    print(rule)
    print()
    print("Before proceeding, please ensure you have:")
    print(f"  1. Created a prover at: {config.staking_url}")
    print("  2. Obtained your Prover Address (EVM address from 'My Prover' page)")
    print("  3. Private key of the wallet used for staking (with 1000 testPROVE tokens)")
    print()
    print("SECURITY NOTE: Please use a dedicated wallet for this prover!")
    print()


def provision(config: SetupConfig, runner: CommandRunner) -> None:
    """Bring the host to a ready state. Raises RebootRequired after a driver install."""
    caps = probe(config, runner.privilege.invoking_user)
    if caps.all_ready:
        log.info("All requirements already installed, skipping system updates")
    run_steps(Provisioner(config, runner, runner.privilege).steps(), caps)
    log.info("✓ All system requirements are installed!")


def start_prover(config: SetupConfig, runner: CommandRunner) -> str:
    _print_intro(config)
    credentials = collect_credentials(
        prompt        = input,
        secret_prompt = getpass.getpass,
        max_attempts  = config.max_attempts,
    )
    spec = build_launch_spec(config, credentials)
    log.info("✓ Configuration complete")
    print_summary(spec)
    confirm_launch(prompt=input)
    return launch(spec, runner)


def main(argv: Optional[Sequence[str]] = None) -> int:
    config = parse_config(argv)
    configure_logging(config.log_file, config.verbose)
    _banner()

    try:
        runner = CommandRunner(negotiate())
        try:
            provision(config, runner)
        except RebootRequired as e:
            log.warning(str(e))
            reboot_host(runner, config.reboot_delay)
            return EXIT_OK
        start_prover(config, runner)
    except (PermissionDenied, StepFailed) as e:
        log.error(str(e))
        return EXIT_FAILED
    except (CollectionAborted, KeyboardInterrupt) as e:
        log.warning(f"Aborted by operator{f': {e}' if str(e) else ''}")
        return EXIT_ABORTED

    return EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
