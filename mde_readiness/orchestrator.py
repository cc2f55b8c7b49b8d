"""
Readiness and onboarding orchestrator.

The orchestrator owns the session: it walks the state machine

    Startup -> PrerequisiteChecks -> [RemediationOffer -> Remediation ->
    Reverification] -> PreOnboarding -> FinalConfirmation -> Onboarding ->
    Verification

short-circuiting to offboarding when the device is already registered, and
renders the session summary exactly once whichever way the run ends.
"""

from __future__ import annotations

import logging
from typing import Callable, List, Optional, Sequence

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .cancellation import CancellationToken, countdown
from .checks import Check, CheckContext, build_probe_set
from .config import Settings
from .errors import ExternalCallError, FatalPrerequisiteError, InterruptSignal, UserCancellation
from .executor import CheckExecutor, CheckPass
from .host import Host
from .models import ChangeKind, CheckKind, ConfigurationChange, OnboardingStatus, Phase
from .packages import OFFBOARDING, ONBOARDING, PackageArtifact, PackageError, PackageRunResult, locate_package, run_package
from .prompts import parse_existing_path
from .remediation import RemediationAdvisor, RemediationRunner
from .reporter import Reporter
from .session import SessionRecorder, SessionSummary

logger = logging.getLogger(__name__)

SUCCESSFUL_EXITS = {
    OnboardingStatus.COMPLETED,
    OnboardingStatus.CANCELLED,
    OnboardingStatus.ALREADY_ONBOARDED,
    OnboardingStatus.OFFBOARDED,
}

STATUS_STYLES = {
    OnboardingStatus.COMPLETED: "bold green",
    OnboardingStatus.OFFBOARDED: "bold green",
    OnboardingStatus.ALREADY_ONBOARDED: "green",
    OnboardingStatus.CANCELLED: "yellow",
    OnboardingStatus.INTERRUPTED: "yellow",
}


class Orchestrator:
    def __init__(
        self,
        settings: Settings,
        host: Host,
        prompter,
        console: Console,
        token: Optional[CancellationToken] = None,
        checks: Optional[Sequence[Check]] = None,
        reporter: Optional[Reporter] = None,
        locate: Callable[..., PackageArtifact] = locate_package,
        execute: Callable[[PackageArtifact], PackageRunResult] = run_package,
        reboot_countdown: Callable[..., bool] = countdown,
    ):
        self.settings = settings
        self.host = host
        self.prompter = prompter
        self.console = console
        self.token = token or getattr(prompter, "token", None) or CancellationToken()
        self.executor = CheckExecutor(checks if checks is not None else build_probe_set(settings))
        self.runner = RemediationRunner(RemediationAdvisor(), self.executor, console, reprobe_wait=settings.reprobe_wait)
        self.reporter = reporter or Reporter(settings.report_dir, settings.recent_actions)
        self.locate = locate
        self.execute = execute
        self.reboot_countdown = reboot_countdown
        self.recorder = SessionRecorder(SessionSummary())
        self.history: List[Phase] = []
        self._interrupt: Optional[InterruptSignal] = None

    @property
    def summary(self) -> SessionSummary:
        return self.recorder.summary

    @property
    def context(self) -> CheckContext:
        return CheckContext(host=self.host, settings=self.settings, recorder=self.recorder)

    # --- entrypoint ----------------------------------------------------

    def run(self) -> int:
        try:
            self._drive()
        except UserCancellation as exc:
            self.recorder.record_action("Session", f"Cancelled: {exc}")
            self.recorder.set_status(OnboardingStatus.CANCELLED, str(exc))
        except FatalPrerequisiteError as exc:
            self.recorder.set_status(OnboardingStatus.PREREQUISITES_FAILED, str(exc))
        except InterruptSignal as exc:
            self._interrupted(exc)
        except KeyboardInterrupt:
            self._interrupted(InterruptSignal("Keyboard interrupt", mid_operation=True))
        except Exception as exc:
            logger.exception("Unexpected error during %s", self.summary.current_phase.value)
            self.recorder.record_action("Error", f"Unexpected error: {exc}")
            self.recorder.set_status(OnboardingStatus.FAILED, f"Unexpected error: {exc}")
        finally:
            if not self.summary.onboarding_status.terminal:
                self.recorder.set_status(OnboardingStatus.FAILED, "Session ended without an outcome")
            self._render()
        self._offer_reboot()
        return self.exit_code()

    def exit_code(self) -> int:
        status = self.summary.onboarding_status
        if status in SUCCESSFUL_EXITS:
            return 0
        if status is OnboardingStatus.INTERRUPTED:
            return 1 if self._interrupt is None or self._interrupt.mid_operation else 0
        return 1

    # --- state machine -------------------------------------------------

    def _drive(self) -> None:
        self._enter(Phase.STARTUP)
        self.recorder.record_action("Session", "Readiness session started")
        if not self.prompter.confirm("Start the readiness checks and onboarding workflow?", True):
            raise UserCancellation("Operator declined to start the workflow")

        self._enter(Phase.PREREQUISITE_CHECKS)
        check_pass = self.executor.run(self.context, self.token)
        self._show_results(check_pass, "Prerequisite checks")

        existing = self._result_of_kind(check_pass, CheckKind.EXISTING_ONBOARDING)
        if existing is not None and existing.data.get("onboarded"):
            self._handle_existing_registration()
            return

        if not check_pass.all_passed:
            check_pass = self._remediate(check_pass)

        self._onboard()

    def _remediate(self, check_pass: CheckPass) -> CheckPass:
        self._enter(Phase.REMEDIATION_OFFER)
        failed = check_pass.failed
        self.console.print(f"[yellow]{len(failed)} check(s) failed:[/] " + ", ".join(r.check_name for r in failed))
        if not self.prompter.confirm("Attempt to remediate the failed checks?", True):
            self.recorder.record_action("Remediation", "Operator declined remediation")
            raise FatalPrerequisiteError(
                "Prerequisite checks failed and remediation was declined", [r.check_name for r in failed]
            )

        self._enter(Phase.REMEDIATION)
        report = self.runner.remediate(failed, self.context, self.prompter, self.token)
        self.recorder.record_action(
            "Remediation",
            f"Resolved: {', '.join(report.resolved) or 'none'}; unresolved: {', '.join(report.unresolved) or 'none'}",
        )
        self.token.raise_if_cancelled()

        self._enter(Phase.REVERIFICATION)
        check_pass = self.executor.run(self.context, self.token)
        self._show_results(check_pass, "Re-verification")
        blocking = check_pass.critical_failures
        if blocking:
            names = [r.check_name for r in blocking]
            raise FatalPrerequisiteError("Critical checks still failing: " + ", ".join(names), names)
        if check_pass.failed:
            self.recorder.record_action(
                "Reverification",
                "Continuing with advisory issues: " + ", ".join(r.check_name for r in check_pass.failed),
            )
        return check_pass

    def _onboard(self) -> None:
        self._enter(Phase.PRE_ONBOARDING)
        artifact = self._ask_package(ONBOARDING)

        self._enter(Phase.FINAL_CONFIRMATION)
        self.console.print(Panel(
            f"Onboarding registers this device with Microsoft Defender for Endpoint using\n{artifact.path}",
            title="Final confirmation",
            border_style="red",
        ))
        if not self.prompter.confirm("Proceed with onboarding?", False):
            raise UserCancellation("Operator declined the final onboarding confirmation")
        self.token.raise_if_cancelled()

        self._enter(Phase.ONBOARDING)
        result = self._run_artifact(artifact, "Onboarded device")
        self.token.raise_if_cancelled()
        if result is None or not result.succeeded:
            code = "n/a" if result is None else result.exit_code
            self.recorder.set_status(OnboardingStatus.FAILED, f"Onboarding script failed (exit code {code})")
            return

        self._enter(Phase.VERIFICATION)
        if self._verify_registration():
            self.recorder.record_action("Verification", "Device reports as onboarded")
            self.recorder.set_status(OnboardingStatus.COMPLETED, "Device onboarded")
        else:
            self.recorder.record_action("Verification", "Onboarding state not confirmed")
            self.recorder.set_status(OnboardingStatus.FAILED, "Onboarding script succeeded but the device is not registered")

    def _handle_existing_registration(self) -> None:
        self.console.print("[yellow]This device is already onboarded to Microsoft Defender for Endpoint.[/]")
        if not self.prompter.confirm("Offboard this device now?", False):
            self.recorder.record_action("Session", "Device already onboarded, no changes made")
            self.recorder.set_status(OnboardingStatus.ALREADY_ONBOARDED, "Device already onboarded")
            return

        self._enter(Phase.OFFBOARDING)
        artifact = self._ask_package(OFFBOARDING)
        if not self.prompter.confirm("Offboarding stops this device reporting to your tenant. Proceed?", False):
            raise UserCancellation("Operator declined the offboarding confirmation")
        self.token.raise_if_cancelled()

        result = self._run_artifact(artifact, "Offboarded device")
        self.token.raise_if_cancelled()
        if result is not None and result.succeeded:
            self.recorder.set_status(OnboardingStatus.OFFBOARDED, f"Offboarded with {artifact.name}")
        else:
            code = "n/a" if result is None else result.exit_code
            self.recorder.set_status(OnboardingStatus.FAILED, f"Offboarding script failed (exit code {code})")

    # --- helpers -------------------------------------------------------

    def _enter(self, phase: Phase) -> None:
        self.token.raise_if_cancelled()
        self.history.append(phase)
        self.recorder.set_phase(phase)

    def _ask_package(self, purpose: str) -> PackageArtifact:
        message = f"Path to the {purpose} package (script, folder or .zip; q to quit):"
        while True:
            location = self.prompter.ask(message, parse_existing_path)
            try:
                artifact = self.locate(location, purpose)
            except PackageError as exc:
                self.console.print(f"[red]{exc}[/]")
                self.recorder.record_action("Package", str(exc))
                continue
            self.recorder.record_action("Package", f"Using {purpose} package {artifact.path}")
            return artifact

    def _run_artifact(self, artifact: PackageArtifact, description: str) -> Optional[PackageRunResult]:
        self.recorder.record_action(artifact.purpose.capitalize(), f"Running {artifact.name}")
        try:
            result = self.execute(artifact)
        except PackageError as exc:
            logger.error("%s package failed: %s", artifact.purpose, exc)
            self.recorder.record_change(
                ConfigurationChange(ChangeKind.OTHER, f"{description} failed: {exc}", str(artifact.path), False)
            )
            return None
        self.recorder.record_change(
            ConfigurationChange(
                ChangeKind.OTHER,
                f"{description} via {artifact.name} (exit code {result.exit_code})",
                str(artifact.path),
                result.succeeded,
            )
        )
        return result

    def _verify_registration(self) -> bool:
        check = next((c for c in self.executor.checks if c.kind is CheckKind.EXISTING_ONBOARDING), None)
        if check is None:
            return True
        for attempt in range(2):
            self.token.sleep(self.settings.reprobe_wait)
            result = self.executor.evaluate(check, self.context)
            logger.debug("Registration probe %d: %s", attempt + 1, result.detail)
            if result.data.get("onboarded"):
                return True
        return False

    @staticmethod
    def _result_of_kind(check_pass: CheckPass, kind: CheckKind):
        return next((r for r in check_pass.results if r.kind is kind), None)

    def _show_results(self, check_pass: CheckPass, title: str) -> None:
        table = Table(title=title, show_header=True, header_style="bold magenta")
        for column in ("Check", "Severity", "Status", "Detail"):
            table.add_column(column)
        styles = {"passed": "green", "failed": "red", "warning": "yellow"}
        for result in check_pass.results:
            status = result.status.value
            table.add_row(result.check_name, result.severity.value, f"[{styles[status]}]{status.upper()}[/]", result.detail)
        self.console.print(table)
        counts = check_pass.counts()
        self.recorder.record_action(
            title,
            f"{counts['passed']}/{counts['total']} passed, {counts['failed']} failed, {counts['warnings']} warning(s)",
        )

    def _interrupted(self, exc: InterruptSignal) -> None:
        if self._interrupt is None:
            self._interrupt = exc
        self.recorder.record_action("Session", f"Interrupted during {self.summary.current_phase.value}: {exc}")
        self.recorder.set_status(OnboardingStatus.INTERRUPTED, str(exc))

    def _render(self) -> None:
        if self.reporter.rendered:
            return
        self.recorder.record_action("Session", f"Session ended: {self.summary.onboarding_status.value}")
        text = self.reporter.render(self.summary)
        style = STATUS_STYLES.get(self.summary.onboarding_status, "bold red")
        self.console.print(text, style=style, highlight=False, markup=False)
        if self.reporter.report_path:
            self.console.print(f"Report saved to {self.reporter.report_path}")

    def _offer_reboot(self) -> None:
        if not self.summary.reboot_required or self.summary.onboarding_status is OnboardingStatus.INTERRUPTED:
            return
        try:
            if not self.prompter.confirm("A restart is required to finish the changes. Restart now?", False):
                return
            seconds = self.settings.reboot_countdown
            proceed = self.reboot_countdown(
                seconds,
                lambda remaining: self.console.print(f"Restarting in {remaining}s, press any key to cancel..."),
                token=self.token,
            )
            if not proceed or self.token.cancelled:
                self.console.print("Restart cancelled.")
                logger.info("Restart cancelled: %s", self.token.reason or "key press")
                return
            logger.info("Restarting the device")
            self.host.system.restart()
        except (UserCancellation, InterruptSignal):
            logger.info("Restart skipped")
        except ExternalCallError as exc:
            logger.error("Restart failed: %s", exc)
