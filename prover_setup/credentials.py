"""
Prover Credentials
==================

Validation and interactive collection of the prover identity:

  - Prover address: exactly `0x` + 40 hex characters (any case)
  - Private key:    64 hex characters, optionally prefixed with one `0x`

Malformed input raises ValidationError, which the collector logs and answers
with a fresh prompt. Only Ctrl+C, EOF or an exhausted attempt budget end
collection (CollectionAborted).

The private key is read without echo and never logged.
"""

from __future__ import annotations
import getpass
import logging
import re
from dataclasses import dataclass, field
from typing import Callable

from .errors import CollectionAborted, ValidationError

log = logging.getLogger(__name__)

ADDRESS_PATTERN     = re.compile(r"0x[0-9a-fA-F]{40}")
PRIVATE_KEY_PATTERN = re.compile(r"[0-9a-fA-F]{64}")

Prompt = Callable[[str], str]


@dataclass(frozen=True)
class ProverCredentials:
    address:     str
    private_key: str = field(repr=False)   # Normalized, no 0x prefix


def validate_address(value: str) -> str:
    if not ADDRESS_PATTERN.fullmatch(value):
        raise ValidationError(
            "Invalid prover address format. Expected: 0x followed by 40 hexadecimal characters"
        )
    return value


def validate_private_key(value: str) -> str:
    """Returns the key without its `0x` prefix."""
    if not value:
        raise ValidationError("Private key cannot be empty")
    key = value[2:] if value.startswith("0x") else value
    if not PRIVATE_KEY_PATTERN.fullmatch(key):
        raise ValidationError(
            "Invalid private key format. Expected: 64 hexadecimal characters (with or without 0x prefix)"
        )
    return key


def _prompt_until_valid(
    ask:          Prompt,
    message:      str,
    validate:     Callable[[str], str],
    label:        str,
    max_attempts: int,
) -> str:
    attempt = 0
    while True:
        attempt += 1
        try:
            raw = ask(message)
        except (EOFError, KeyboardInterrupt):
            print()
            raise CollectionAborted(f"{label} entry cancelled")

        try:
            value = validate(raw.strip())
        except ValidationError as e:
            log.warning(f"[credentials] {e}")
            if max_attempts and attempt >= max_attempts:
                raise CollectionAborted(f"no valid {label} after {max_attempts} attempt(s)")
            print(f"Please enter a valid {label}")
            continue

        log.info(f"[credentials] ✓ {label.capitalize()} format validated")
        return value


def collect_credentials(
    prompt:        Prompt = input,
    secret_prompt: Prompt = getpass.getpass,
    max_attempts:  int = 0,
) -> ProverCredentials:
    """
    Ask for the prover address, then the private key, until each one is valid.
    `max_attempts=0` keeps asking forever.
    """
    address = _prompt_until_valid(
        prompt, "Enter your Prover Address (0x...): ",
        validate_address, "prover address", max_attempts,
    )
    key = _prompt_until_valid(
        secret_prompt, "Enter your Private Key (input hidden): ",
        validate_private_key, "private key", max_attempts,
    )
    return ProverCredentials(address=address, private_key=key)
