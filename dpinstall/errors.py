"""Project-specific exception types."""

from __future__ import annotations


class DPInstallError(RuntimeError):
    """Base error for domain-level installer failures."""


class PreconditionMissing(DPInstallError):
    """Raised by a step when required config values or files are absent."""


class StepDeclined(DPInstallError):
    """Raised when the operator cancels a prompt inside a step."""


class RebootAlreadyPerformed(DPInstallError):
    """Raised when the host restart primitive is asked to fire twice."""
