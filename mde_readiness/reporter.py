"""
Session summary rendering.

:class:`Reporter` turns a finished :class:`SessionSummary` into the text shown
on screen and persisted as ``MDE-Readiness-Report_<timestamp>.txt``.  Rendering
is idempotent: the first call freezes the text and writes the file, later calls
return the same text without touching the filesystem again.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from .models import CheckStatus, ConfigurationChange, OnboardingStatus
from .session import SessionSummary

logger = logging.getLogger(__name__)

REPORT_PREFIX = "MDE-Readiness-Report"

NEXT_STEPS: Dict[OnboardingStatus, List[str]] = {
    OnboardingStatus.NOT_STARTED: [
        "The session ended before the workflow started. Run the tool again.",
    ],
    OnboardingStatus.CANCELLED: [
        "No onboarding was performed. Run the tool again when ready.",
    ],
    OnboardingStatus.PREREQUISITES_FAILED: [
        "Resolve the failed checks listed above (see the remediation hints).",
        "Run the tool again to re-verify before onboarding.",
    ],
    OnboardingStatus.COMPLETED: [
        "The device should appear in the Microsoft Defender portal within 5-30 minutes.",
        "Run a detection test from the portal to confirm sensor telemetry.",
    ],
    OnboardingStatus.FAILED: [
        "Review the run log and the onboarding package output.",
        "Check the Sense service and the 'Windows Advanced Threat Protection' event log.",
    ],
    OnboardingStatus.INTERRUPTED: [
        "The session was interrupted. Review the actions above; changes already applied remain in place.",
        "Run the tool again to continue.",
    ],
    OnboardingStatus.OFFBOARDED: [
        "The device was offboarded. It will show as inactive in the portal after 7 days.",
    ],
    OnboardingStatus.ALREADY_ONBOARDED: [
        "No action needed. The device is already reporting to Microsoft Defender for Endpoint.",
    ],
}


def _format_duration(seconds: float) -> str:
    minutes, secs = divmod(int(round(seconds)), 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h {minutes:02d}m {secs:02d}s"
    return f"{minutes}m {secs:02d}s"


def group_changes(changes: List[ConfigurationChange]) -> "OrderedDict[str, List[ConfigurationChange]]":
    grouped: "OrderedDict[str, List[ConfigurationChange]]" = OrderedDict()
    for change in changes:
        grouped.setdefault(change.kind.value, []).append(change)
    return grouped


def format_summary(summary: SessionSummary, recent_actions: int = 15) -> str:
    """Render the session summary in a stable text layout."""
    lines: List[str] = []
    results = list(summary.latest_results().values())
    passed = sum(1 for result in results if result.passed)
    failed = [result for result in results if result.status is CheckStatus.FAILED]
    warnings = [result for result in results if result.status is CheckStatus.WARNING]

    lines.append("=" * 80)
    lines.append("MDE READINESS SESSION SUMMARY")
    lines.append("=" * 80)
    lines.append(f"Status: {summary.onboarding_status.value}")
    if summary.status_reason:
        lines.append(f"Reason: {summary.status_reason}")
    lines.append(f"Last phase: {summary.current_phase.value}")
    lines.append(f"Started: {summary.start_time:%Y-%m-%d %H:%M:%S}")
    if summary.end_time:
        lines.append(f"Ended: {summary.end_time:%Y-%m-%d %H:%M:%S}")
    lines.append(f"Duration: {_format_duration(summary.duration_seconds)}")
    lines.append("")

    lines.append("-" * 80)
    lines.append("Checks")
    lines.append("-" * 80)
    if not results:
        lines.append("No checks were run.")
    else:
        lines.append(f"Total: {len(results)}  Passed: {passed}  Failed: {len(failed)}  Warnings: {len(warnings)}")
        for idx, result in enumerate(failed + warnings, start=1):
            lines.append(f"  {idx}. [{result.status.value.upper()}] [{result.severity.value}] {result.check_name}")
            lines.append(f"     {result.detail}")
            if result.remediation_hint:
                lines.append(f"     Hint: {result.remediation_hint}")
    lines.append("")

    lines.append("-" * 80)
    lines.append("Configuration changes")
    lines.append("-" * 80)
    if not summary.configuration_changes:
        lines.append("No configuration changes were made.")
    for kind, changes in group_changes(summary.configuration_changes).items():
        lines.append(f"{kind.upper()} ({len(changes)}):")
        for change in changes:
            outcome = "OK" if change.success else "FAILED"
            lines.append(f"  - [{outcome}] {change.timestamp:%H:%M:%S} {change.description} ({change.location})")
    if summary.updates_installed:
        lines.append("Updates installed:")
        for title in summary.updates_installed:
            lines.append(f"  - {title}")
    if summary.reboot_required:
        lines.append("A restart is required to complete the changes.")
    lines.append("")

    lines.append("-" * 80)
    lines.append(f"Recent actions (last {recent_actions})")
    lines.append("-" * 80)
    actions = summary.actions_performed[-recent_actions:]
    if not actions:
        lines.append("No actions recorded.")
    for action in actions:
        lines.append(f"  {action.format()}")
    lines.append("")

    lines.append("-" * 80)
    lines.append("Next steps")
    lines.append("-" * 80)
    for step in NEXT_STEPS[summary.onboarding_status]:
        lines.append(f"  * {step}")
    for result in failed:
        if result.remediation_hint:
            lines.append(f"  * {result.check_name}: {result.remediation_hint}")

    return "\n".join(lines)


class Reporter:
    def __init__(self, report_dir: Path, recent_actions: int = 15):
        self.report_dir = Path(report_dir)
        self.recent_actions = recent_actions
        self.report_path: Optional[Path] = None
        self._rendered: Optional[str] = None

    @property
    def rendered(self) -> bool:
        return self._rendered is not None

    def render(self, summary: SessionSummary) -> str:
        if self._rendered is not None:
            logger.debug("Summary already rendered, returning cached report")
            return self._rendered
        text = format_summary(summary, self.recent_actions)
        self._rendered = text
        self.report_path = self._persist(text, summary.end_time or datetime.now())
        return text

    def _persist(self, text: str, when: datetime) -> Optional[Path]:
        path = self.report_dir / f"{REPORT_PREFIX}_{when:%Y%m%d_%H%M%S}.txt"
        try:
            self.report_dir.mkdir(parents=True, exist_ok=True)
            path.write_text(text + "\n", encoding="utf-8")
        except OSError as exc:
            logger.error("Could not write report file %s: %s", path, exc)
            return None
        logger.info("Readiness report written to %s", path)
        return path
