"""
Session state and the append-only recorder that mutates it.

A :class:`SessionSummary` is created once per run and owned by the
orchestrator.  Components never touch it directly; they receive a
:class:`SessionRecorder` for the duration of a call and record through it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from .models import ActionRecord, CheckResult, ConfigurationChange, OnboardingStatus, Phase

logger = logging.getLogger(__name__)


class SessionStateError(RuntimeError):
    """Raised when the session would be mutated in an illegal way."""


@dataclass
class SessionSummary:
    start_time: datetime = field(default_factory=datetime.now)
    end_time: Optional[datetime] = None
    current_phase: Phase = Phase.STARTUP
    onboarding_status: OnboardingStatus = OnboardingStatus.NOT_STARTED
    actions_performed: List[ActionRecord] = field(default_factory=list)
    checks_completed: List[CheckResult] = field(default_factory=list)
    configuration_changes: List[ConfigurationChange] = field(default_factory=list)
    updates_installed: List[str] = field(default_factory=list)
    reboot_required: bool = False
    status_reason: str = ""

    @property
    def duration_seconds(self) -> float:
        end = self.end_time or datetime.now()
        return max((end - self.start_time).total_seconds(), 0.0)

    def latest_results(self) -> Dict[str, CheckResult]:
        """Most recent result per check, in first-seen order."""
        latest: Dict[str, CheckResult] = {}
        for result in self.checks_completed:
            latest[result.check_name] = result
        return latest

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start_time": self.start_time.isoformat(timespec="seconds"),
            "end_time": self.end_time.isoformat(timespec="seconds") if self.end_time else None,
            "phase": self.current_phase.value,
            "onboarding_status": self.onboarding_status.value,
            "status_reason": self.status_reason,
            "actions": [action.format() for action in self.actions_performed],
            "checks": [result.to_dict() for result in self.latest_results().values()],
            "configuration_changes": [change.to_dict() for change in self.configuration_changes],
            "updates_installed": list(self.updates_installed),
            "reboot_required": self.reboot_required,
        }


class SessionRecorder:
    """Append-only façade over a :class:`SessionSummary`."""

    def __init__(self, summary: Optional[SessionSummary] = None):
        self.summary = summary or SessionSummary()

    def record_action(self, category: str, description: str) -> ActionRecord:
        record = ActionRecord(category=category, description=description)
        self.summary.actions_performed.append(record)
        logger.info("%s: %s", category, description)
        return record

    def record_check(self, result: CheckResult) -> None:
        self.summary.checks_completed.append(result)
        log = logger.info if result.passed else logger.warning
        log("Check '%s' %s: %s", result.check_name, result.status.value, result.detail)

    def record_change(self, change: ConfigurationChange) -> None:
        self.summary.configuration_changes.append(change)
        logger.info(
            "Configuration change (%s) %s at %s: %s",
            change.kind.value,
            "succeeded" if change.success else "failed",
            change.location,
            change.description,
        )

    def set_phase(self, phase: Phase) -> None:
        if self.summary.current_phase is not phase:
            logger.debug("Phase %s -> %s", self.summary.current_phase.value, phase.value)
        self.summary.current_phase = phase

    def record_update(self, title: str) -> None:
        self.summary.updates_installed.append(title)

    def require_reboot(self) -> None:
        self.summary.reboot_required = True

    def set_status(self, status: OnboardingStatus, reason: str = "") -> bool:
        """Set the terminal status once. Later calls are ignored and return False."""
        if not status.terminal:
            raise SessionStateError("Only terminal statuses can be assigned")
        if self.summary.onboarding_status.terminal:
            logger.debug(
                "Ignoring status %s, session already ended as %s",
                status.value,
                self.summary.onboarding_status.value,
            )
            return False
        self.summary.onboarding_status = status
        self.summary.status_reason = reason
        self.summary.end_time = datetime.now()
        return True
