"""
Error taxonomy shared by the readiness pipeline.

Probe and remediation failures are converted into results at their origin;
only :class:`UserCancellation`, :class:`InterruptSignal` and
:class:`FatalPrerequisiteError` travel up to the orchestrator.
"""

from __future__ import annotations

from typing import Optional


class ReadinessError(RuntimeError):
    """Base class for every error raised by the readiness pipeline."""


class ProbeError(ReadinessError):
    """A check could not determine a definitive status."""


class RemediationError(ReadinessError):
    """An automated fix attempt failed.

    ``applied`` lists the changes that took effect before the failure and
    ``step`` is the step that failed, when the strategy knows it.
    """

    def __init__(self, message: str, applied: Optional[list] = None, step=None):
        super().__init__(message)
        self.applied = list(applied or [])
        self.step = step


class ExternalCallError(ReadinessError):
    """A PowerShell, network, API or service-control call failed."""

    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(message)
        self.operation = operation


class FatalPrerequisiteError(ReadinessError):
    """A critical check is still unresolved, onboarding cannot proceed."""

    def __init__(self, message: str, checks: Optional[list] = None):
        super().__init__(message)
        self.checks = list(checks or [])


class UserCancellation(ReadinessError):
    """The operator declined a confirmation gate."""


class InterruptSignal(ReadinessError):
    """An external interruption (Ctrl+C, termination request) was received."""

    def __init__(self, message: str = "Interrupted", mid_operation: bool = False):
        super().__init__(message)
        self.mid_operation = mid_operation
