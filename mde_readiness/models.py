"""
Data model for a readiness session.

Everything the orchestrator records is expressed with the dataclasses in this
module so the reporter and the MCP layer can serialise it without reaching
into component internals.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class Severity(str, Enum):
    CRITICAL = "critical"
    ADVISORY = "advisory"


class CheckKind(str, Enum):
    """Every check the probe set knows about, in declared order."""

    ADMIN_PRIVILEGES = "admin_privileges"
    OS_VERSION = "os_version"
    DISK_SPACE = "disk_space"
    PENDING_REBOOT = "pending_reboot"
    DEFENDER_FEATURES = "defender_features"
    DEFENDER_SERVICES = "defender_services"
    SIGNATURES = "signatures"
    REAL_TIME_PROTECTION = "real_time_protection"
    PASSIVE_MODE = "passive_mode"
    WINDOWS_UPDATES = "windows_updates"
    NETWORK_CONNECTIVITY = "network_connectivity"
    GROUP_POLICY = "group_policy"
    EXISTING_ONBOARDING = "existing_onboarding"


class CheckStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    WARNING = "warning"


class OnboardingStatus(str, Enum):
    NOT_STARTED = "NotStarted"
    CANCELLED = "Cancelled"
    PREREQUISITES_FAILED = "PrerequisitesFailed"
    COMPLETED = "Completed"
    FAILED = "Failed"
    INTERRUPTED = "Interrupted"
    OFFBOARDED = "Offboarded"
    ALREADY_ONBOARDED = "AlreadyOnboarded"

    @property
    def terminal(self) -> bool:
        return self is not OnboardingStatus.NOT_STARTED


class Phase(str, Enum):
    STARTUP = "Startup"
    PREREQUISITE_CHECKS = "PrerequisiteChecks"
    REMEDIATION_OFFER = "RemediationOffer"
    REMEDIATION = "Remediation"
    REVERIFICATION = "Reverification"
    OFFBOARDING = "Offboarding"
    PRE_ONBOARDING = "PreOnboarding"
    FINAL_CONFIRMATION = "FinalConfirmation"
    ONBOARDING = "Onboarding"
    VERIFICATION = "Verification"


class ChangeKind(str, Enum):
    REGISTRY = "registry"
    SERVICE = "service"
    UPDATE = "update"
    FEATURE = "feature"
    OTHER = "other"


class RemediationOutcome(str, Enum):
    SUCCESS = "success"
    UNRESOLVED = "unresolved"


@dataclass(frozen=True)
class CheckResult:
    """Outcome of a single probe during one executor pass."""

    check_name: str
    status: CheckStatus
    detail: str
    remediation_hint: Optional[str] = None
    kind: Optional[CheckKind] = None
    severity: Severity = Severity.CRITICAL
    sub_issues: tuple = ()
    data: Dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def passed(self) -> bool:
        return self.status is CheckStatus.PASSED

    @property
    def failed(self) -> bool:
        return self.status is CheckStatus.FAILED

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "check": self.check_name,
            "status": self.status.value,
            "passed": self.passed,
            "severity": self.severity.value,
            "detail": self.detail,
        }
        if self.remediation_hint:
            data["remediation_hint"] = self.remediation_hint
        if self.sub_issues:
            data["sub_issues"] = list(self.sub_issues)
        return data


@dataclass(frozen=True)
class ConfigurationChange:
    """A change applied to the endpoint. Never mutated after creation."""

    kind: ChangeKind
    description: str
    location: str
    success: bool
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "description": self.description,
            "location": self.location,
            "success": self.success,
            "timestamp": self.timestamp.isoformat(timespec="seconds"),
        }


@dataclass(frozen=True)
class ChangePreview:
    """What an automated fix is about to change."""

    location: str
    key: str
    before: str
    after: str
    effect: str


@dataclass
class RemediationStep:
    description: str
    preview: Optional[ChangePreview] = None
    change_kind: ChangeKind = ChangeKind.OTHER


@dataclass
class RemediationAction:
    """A remediation template produced by the advisor for one failed check."""

    target_check_name: str
    kind: CheckKind
    automatable: bool
    steps: List[RemediationStep] = field(default_factory=list)
    guidance: str = ""
    default_confirm: bool = False
    outcome: RemediationOutcome = RemediationOutcome.UNRESOLVED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "check": self.target_check_name,
            "automatable": self.automatable,
            "steps": [step.description for step in self.steps],
            "guidance": self.guidance,
            "outcome": self.outcome.value,
        }


@dataclass(frozen=True)
class ActionRecord:
    category: str
    description: str
    timestamp: datetime = field(default_factory=datetime.now)

    def format(self) -> str:
        return f"[{self.timestamp:%H:%M:%S}] {self.category}: {self.description}"
