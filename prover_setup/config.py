"""
Setup Configuration
===================

Every tunable lives in one frozen SetupConfig built at startup and passed
explicitly to the sequencer and the launcher.

Each CLI flag falls back to an environment variable, then to the built-in
default, so `succinct-prover-setup` with no flags behaves exactly like the
original interactive installer.
"""

from __future__ import annotations
import argparse
import math
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from . import __version__

# ─── Defaults ─────────────────────────────────────────────────────────────────

SCRIPT_VERSION          = __version__

DEFAULT_IMAGE           = "public.ecr.aws/succinct-labs/spn-node:latest-gpu"
DEFAULT_RPC_URL         = "https://rpc.sepolia.succinct.xyz"
DEFAULT_STAKING_URL     = "https://staking.sepolia.succinct.xyz/prover"
DEFAULT_PROVE_PER_BPGU  = "1.1"
DEFAULT_PGUS_PER_SECOND = 17_500_000
DEFAULT_MIN_DRIVER      = 555          # first driver branch shipping CUDA 12.5
DEFAULT_TOOLKIT_VERSION = "1.17.8-1"
DEFAULT_LOG_FILE        = Path("/var/log/succinct-prover-setup.log")
DEFAULT_STATE_DIR       = Path("/var/lib/succinct-prover")
DEFAULT_REBOOT_DELAY    = 10


@dataclass(frozen=True)
class SetupConfig:
    image:              str  = DEFAULT_IMAGE
    rpc_url:            str  = DEFAULT_RPC_URL
    staking_url:        str  = DEFAULT_STAKING_URL
    bid:                str  = DEFAULT_PROVE_PER_BPGU   # PROVE per BPGU, passed through verbatim
    throughput:         int  = DEFAULT_PGUS_PER_SECOND  # PGUs per second
    min_driver_version: int  = DEFAULT_MIN_DRIVER
    toolkit_version:    str  = DEFAULT_TOOLKIT_VERSION
    log_file:           Path = DEFAULT_LOG_FILE
    state_dir:          Path = DEFAULT_STATE_DIR
    max_attempts:       int  = 0                        # 0 = re-prompt forever
    reboot_delay:       int  = DEFAULT_REBOOT_DELAY
    verbose:            bool = False

    @property
    def marker_path(self) -> Path:
        return self.state_dir / "driver-install.json"


# ─── CLI ──────────────────────────────────────────────────────────────────────

def _non_negative_int(raw: str) -> int:
    try:
        value = int(raw)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected an integer, got {raw!r}")
    if value < 0:
        raise argparse.ArgumentTypeError(f"must be >= 0, got {value}")
    return value


def _bid(raw: str) -> str:
    try:
        value = float(raw)
    except ValueError:
        value = -1.0
    if not math.isfinite(value) or value <= 0:
        raise argparse.ArgumentTypeError(f"bid must be a positive number, got {raw!r}")
    return raw


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog        = "succinct-prover-setup",
        description = "Provision Docker, the NVIDIA Container Toolkit and an NVIDIA "
                      "driver, then launch the Succinct prover node.",
    )
    parser.add_argument("--image",      default=os.getenv("SUCCINCT_IMAGE", DEFAULT_IMAGE),
                        help="Prover container image")
    parser.add_argument("--rpc-url",    default=os.getenv("SUCCINCT_RPC_URL", DEFAULT_RPC_URL),
                        help="Succinct network RPC endpoint")
    parser.add_argument("--bid",        type=_bid,
                        default=os.getenv("PROVE_PER_BPGU", DEFAULT_PROVE_PER_BPGU),
                        help="Bid in PROVE per BPGU (default: 1.1)")
    parser.add_argument("--throughput", type=_non_negative_int,
                        default=os.getenv("PGUS_PER_SECOND", str(DEFAULT_PGUS_PER_SECOND)),
                        help="Throughput target in PGUs per second (default: 17500000)")
    parser.add_argument("--min-driver", type=_non_negative_int,
                        default=os.getenv("SUCCINCT_MIN_DRIVER", str(DEFAULT_MIN_DRIVER)),
                        help="Minimum NVIDIA driver major version (default: 555)")
    parser.add_argument("--log-file",   type=Path,
                        default=Path(os.getenv("SUCCINCT_SETUP_LOG", str(DEFAULT_LOG_FILE))),
                        help="Append-only activity log")
    parser.add_argument("--state-dir",  type=Path,
                        default=Path(os.getenv("SUCCINCT_STATE_DIR", str(DEFAULT_STATE_DIR))),
                        help="Directory for the driver-install marker")
    parser.add_argument("--max-attempts", type=_non_negative_int,
                        default=os.getenv("SUCCINCT_MAX_ATTEMPTS", "0"),
                        help="Max prompts per credential before giving up (0: unlimited)")
    parser.add_argument("--reboot-delay", type=_non_negative_int, default=str(DEFAULT_REBOOT_DELAY),
                        help="Seconds to wait before rebooting after a driver install")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Log every external command")
    parser.add_argument("--version", action="version", version=f"%(prog)s {SCRIPT_VERSION}")
    return parser


def parse_config(argv: Optional[Sequence[str]] = None) -> SetupConfig:
    args = build_parser().parse_args(argv)
    return SetupConfig(
        image              = args.image,
        rpc_url            = args.rpc_url,
        bid                = args.bid,
        throughput         = args.throughput,
        min_driver_version = args.min_driver,
        log_file           = args.log_file,
        state_dir          = args.state_dir,
        max_attempts       = args.max_attempts,
        reboot_delay       = args.reboot_delay,
        verbose            = args.verbose,
    )
