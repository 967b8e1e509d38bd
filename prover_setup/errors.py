"""
Errors
======

Two tiers:
  - Fatal:       SetupError and its subclasses. The CLI logs them at ERROR
                 and exits non-zero. Nothing is rolled back.
  - Recoverable: ValidationError. Raised for malformed operator input and
                 handled by re-prompting.
"""

from __future__ import annotations
from typing import Optional, Sequence


class SetupError(RuntimeError):
    """Base class for everything that ends a setup run."""


class PermissionDenied(SetupError):
    """No path to elevated privileges exists."""


class StepFailed(SetupError):
    def __init__(
        self,
        step:       str,
        message:    str,
        command:    Optional[Sequence[str]] = None,
        returncode: Optional[int] = None,
    ):
        self.step       = step
        self.command    = list(command) if command else None
        self.returncode = returncode
        detail = message
        if self.command:
            detail += f" (command: {' '.join(self.command)}"
            if returncode is not None:
                detail += f", exit {returncode}"
            detail += ")"
        super().__init__(f"{step} failed: {detail}")


class RebootRequired(SetupError):
    """A newly installed driver is not live until the host reboots."""


class CollectionAborted(SetupError):
    """The operator cancelled credential collection or the launch confirmation."""


class ValidationError(ValueError):
    """Malformed prover address or private key."""
