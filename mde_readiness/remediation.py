"""
Remediation advisor and runner.

The advisor maps every :class:`CheckKind` to exactly one strategy object.
Automatable strategies describe the change they will make and know how to
apply it; advisory strategies only return guidance and always leave their
check unresolved.  The runner previews each automatable fix, asks for
confirmation, applies it and re-probes the check to confirm it took effect.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from rich.console import Console
from rich.table import Table

from .cancellation import CancellationToken
from .checks import DEFENDER_FEATURE, DEFENDER_SERVICE, SENSE_SERVICE, CheckContext
from .errors import ExternalCallError, RemediationError
from .executor import CheckExecutor
from .host import ATP_POLICY_KEY
from .models import (
    ChangeKind,
    ChangePreview,
    CheckKind,
    CheckResult,
    ConfigurationChange,
    RemediationAction,
    RemediationOutcome,
    RemediationStep,
    Severity,
)

logger = logging.getLogger(__name__)

Applied = Tuple[ChangeKind, str, str]


class RemediationStrategy:
    """Base strategy: advisory guidance only."""

    automatable = False
    default_confirm = False

    def plan(self, result: CheckResult, ctx: CheckContext) -> RemediationAction:
        return RemediationAction(
            target_check_name=result.check_name,
            kind=result.kind,
            automatable=False,
            guidance=result.remediation_hint or "",
        )

    def apply(self, action: RemediationAction, result: CheckResult, ctx: CheckContext) -> List[Applied]:
        raise RemediationError(f"No automated fix for '{result.check_name}'")

    def _action(self, result: CheckResult, steps: List[RemediationStep]) -> RemediationAction:
        return RemediationAction(
            target_check_name=result.check_name,
            kind=result.kind,
            automatable=True,
            steps=steps,
            guidance=result.remediation_hint or "",
            default_confirm=self.default_confirm,
        )


class AdvisoryStrategy(RemediationStrategy):
    def __init__(self, guidance: str):
        self.guidance = guidance

    def plan(self, result: CheckResult, ctx: CheckContext) -> RemediationAction:
        action = super().plan(result, ctx)
        action.guidance = self.guidance + (f" {result.remediation_hint}" if result.remediation_hint else "")
        return action


class ServiceStrategy(RemediationStrategy):
    automatable = True
    default_confirm = True

    def plan(self, result: CheckResult, ctx: CheckContext) -> RemediationAction:
        steps: List[RemediationStep] = []
        issues = set(result.sub_issues)
        states = result.data or {}
        defender = states.get(DEFENDER_SERVICE, {})
        sense = states.get(SENSE_SERVICE, {})
        if f"{DEFENDER_SERVICE}:StartupType" in issues:
            steps.append(RemediationStep(
                f"Set {DEFENDER_SERVICE} startup type to Automatic",
                ChangePreview(f"Service:{DEFENDER_SERVICE}", "StartupType", defender.get("start_type", "?"), "Automatic",
                              "Antivirus service starts with Windows"),
                ChangeKind.SERVICE,
            ))
        if f"{DEFENDER_SERVICE}:Stopped" in issues:
            steps.append(RemediationStep(
                f"Start {DEFENDER_SERVICE}",
                ChangePreview(f"Service:{DEFENDER_SERVICE}", "Status", defender.get("status", "Stopped"), "Running",
                              "Microsoft Defender Antivirus becomes active"),
                ChangeKind.SERVICE,
            ))
        if f"{SENSE_SERVICE}:Disabled" in issues:
            steps.append(RemediationStep(
                f"Set {SENSE_SERVICE} startup type to Manual",
                ChangePreview(f"Service:{SENSE_SERVICE}", "StartupType", sense.get("start_type", "Disabled"), "Manual",
                              "Onboarding can start the EDR sensor"),
                ChangeKind.SERVICE,
            ))
        if not steps:
            return super().plan(result, ctx)
        return self._action(result, steps)

    def apply(self, action: RemediationAction, result: CheckResult, ctx: CheckContext) -> List[Applied]:
        services = ctx.host.services
        applied: List[Applied] = []
        for step in action.steps:
            location = step.preview.location
            name = location.split(":", 1)[1]
            try:
                if step.preview.key == "StartupType":
                    state = services.set_start_type(name, step.preview.after)
                    if state.start_type != step.preview.after:
                        raise RemediationError(f"{name} startup type is still {state.start_type}")
                else:
                    state = services.start(name)
                    if not state.running:
                        raise RemediationError(f"{name} is {state.status} after start")
            except (RemediationError, ExternalCallError) as exc:
                raise RemediationError(str(exc), applied=applied, step=step) from exc
            applied.append((ChangeKind.SERVICE, step.description, location))
        return applied


class FeatureStrategy(RemediationStrategy):
    automatable = True

    def plan(self, result: CheckResult, ctx: CheckContext) -> RemediationAction:
        before = (result.data or {}).get("state", "Available")
        return self._action(result, [RemediationStep(
            f"Install the {DEFENDER_FEATURE} feature",
            ChangePreview(f"Feature:{DEFENDER_FEATURE}", "InstallState", before, "Installed",
                          "Adds Microsoft Defender Antivirus; may require a restart"),
            ChangeKind.FEATURE,
        )])

    def apply(self, action: RemediationAction, result: CheckResult, ctx: CheckContext) -> List[Applied]:
        restart = ctx.host.system.install_feature(DEFENDER_FEATURE)
        if restart:
            ctx.recorder.require_reboot()
        step = action.steps[0]
        return [(ChangeKind.FEATURE, step.description, step.preview.location)]


class SignatureStrategy(RemediationStrategy):
    automatable = True
    default_confirm = True

    def plan(self, result: CheckResult, ctx: CheckContext) -> RemediationAction:
        data = result.data or {}
        return self._action(result, [RemediationStep(
            "Update security intelligence",
            ChangePreview("Defender:Signatures", "AntivirusSignatureVersion", str(data.get("version") or "?"), "latest",
                          "Downloads current definitions from Microsoft Update"),
            ChangeKind.UPDATE,
        )])

    def apply(self, action: RemediationAction, result: CheckResult, ctx: CheckContext) -> List[Applied]:
        status = ctx.host.engine.update_signatures()
        ctx.recorder.record_update(f"Security intelligence {status.signature_version}")
        return [(ChangeKind.UPDATE, action.steps[0].description, action.steps[0].preview.location)]


class RealTimeProtectionStrategy(RemediationStrategy):
    automatable = True
    default_confirm = True

    def plan(self, result: CheckResult, ctx: CheckContext) -> RemediationAction:
        return self._action(result, [RemediationStep(
            "Enable real-time protection",
            ChangePreview("Defender:Preferences", "DisableRealtimeMonitoring", "True", "False",
                          "Files are scanned on access"),
            ChangeKind.OTHER,
        )])

    def apply(self, action: RemediationAction, result: CheckResult, ctx: CheckContext) -> List[Applied]:
        status = ctx.host.engine.set_real_time_protection(True)
        if not status.real_time_protection:
            raise RemediationError("Real-time protection is still disabled (tamper protection or policy?)")
        return [(ChangeKind.OTHER, action.steps[0].description, action.steps[0].preview.location)]


class PassiveModeStrategy(RemediationStrategy):
    automatable = True

    def plan(self, result: CheckResult, ctx: CheckContext) -> RemediationAction:
        data = result.data or {}
        desired = bool(data.get("desired"))
        effect = (
            "Defender defers real-time enforcement to the third-party product and keeps reporting"
            if desired
            else "Defender enforces real-time protection itself"
        )
        return self._action(result, [RemediationStep(
            f"Switch Defender to {'passive' if desired else 'active'} mode",
            ChangePreview(ATP_POLICY_KEY, "ForceDefenderPassiveMode", "1" if data.get("current") else "0",
                          "1" if desired else "0", effect),
            ChangeKind.REGISTRY,
        )])

    def apply(self, action: RemediationAction, result: CheckResult, ctx: CheckContext) -> List[Applied]:
        step = action.steps[0]
        ctx.host.system.write_registry(step.preview.location, step.preview.key, int(step.preview.after))
        return [(ChangeKind.REGISTRY, step.description, f"{step.preview.location}\\{step.preview.key}")]


class UpdateStrategy(RemediationStrategy):
    automatable = True

    def plan(self, result: CheckResult, ctx: CheckContext) -> RemediationAction:
        titles = (result.data or {}).get("titles", [])
        return self._action(result, [RemediationStep(
            f"Download and install {len(titles)} update(s)",
            ChangePreview("WindowsUpdate", "PendingUpdates", str(len(titles)), "0",
                          "Installs: " + ", ".join(titles[:5]) + (" ..." if len(titles) > 5 else "")),
            ChangeKind.UPDATE,
        )])

    def apply(self, action: RemediationAction, result: CheckResult, ctx: CheckContext) -> List[Applied]:
        update_ids = (result.data or {}).get("update_ids", [])
        outcome = ctx.host.updates.install(update_ids)
        for title in outcome.installed:
            ctx.recorder.record_update(title)
        if outcome.reboot_required:
            ctx.recorder.require_reboot()
        applied = [(ChangeKind.UPDATE, f"Installed {len(outcome.installed)} update(s)", "WindowsUpdate")]
        if outcome.failed:
            raise RemediationError(
                "Failed to install: " + ", ".join(outcome.failed),
                applied=applied if outcome.installed else [],
                step=action.steps[0],
            )
        return applied


STRATEGIES: Dict[CheckKind, RemediationStrategy] = {
    CheckKind.ADMIN_PRIVILEGES: AdvisoryStrategy("Close this window and start an elevated session."),
    CheckKind.OS_VERSION: AdvisoryStrategy("Operating system upgrade required."),
    CheckKind.DISK_SPACE: AdvisoryStrategy("Disk cleanup required."),
    CheckKind.PENDING_REBOOT: AdvisoryStrategy("Restart required."),
    CheckKind.DEFENDER_FEATURES: FeatureStrategy(),
    CheckKind.DEFENDER_SERVICES: ServiceStrategy(),
    CheckKind.SIGNATURES: SignatureStrategy(),
    CheckKind.REAL_TIME_PROTECTION: RealTimeProtectionStrategy(),
    CheckKind.PASSIVE_MODE: PassiveModeStrategy(),
    CheckKind.WINDOWS_UPDATES: UpdateStrategy(),
    CheckKind.NETWORK_CONNECTIVITY: AdvisoryStrategy("Network change required."),
    CheckKind.GROUP_POLICY: AdvisoryStrategy("Group Policy change required."),
    CheckKind.EXISTING_ONBOARDING: AdvisoryStrategy("Offboarding required."),
}

_unmapped = set(CheckKind) - set(STRATEGIES)
if _unmapped:
    raise RuntimeError(f"No remediation strategy for: {sorted(kind.value for kind in _unmapped)}")


class RemediationAdvisor:
    def __init__(self, strategies: Optional[Dict[CheckKind, RemediationStrategy]] = None):
        self.strategies = strategies or STRATEGIES

    def strategy_for(self, kind: CheckKind) -> RemediationStrategy:
        return self.strategies[kind]

    def advise(self, result: CheckResult, ctx: CheckContext) -> RemediationAction:
        return self.strategy_for(result.kind).plan(result, ctx)


@dataclass
class RemediationReport:
    actions: List[RemediationAction] = field(default_factory=list)
    critical_unresolved: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.critical_unresolved

    @property
    def resolved(self) -> List[str]:
        return [a.target_check_name for a in self.actions if a.outcome is RemediationOutcome.SUCCESS]

    @property
    def unresolved(self) -> List[str]:
        return [a.target_check_name for a in self.actions if a.outcome is RemediationOutcome.UNRESOLVED]


class RemediationRunner:
    def __init__(
        self,
        advisor: RemediationAdvisor,
        executor: CheckExecutor,
        console: Console,
        reprobe_wait: float = 3.0,
        reprobe_retries: int = 1,
    ):
        self.advisor = advisor
        self.executor = executor
        self.console = console
        self.reprobe_wait = reprobe_wait
        self.reprobe_retries = reprobe_retries

    def remediate(
        self,
        failed: Sequence[CheckResult],
        ctx: CheckContext,
        prompter,
        token: CancellationToken,
    ) -> RemediationReport:
        report = RemediationReport()
        for result in failed:
            token.raise_if_cancelled()
            action = self.advisor.advise(result, ctx)
            report.actions.append(action)
            self._run_action(action, result, ctx, prompter, token)
            if result.severity is Severity.CRITICAL and action.outcome is not RemediationOutcome.SUCCESS:
                report.critical_unresolved.append(result.check_name)
        return report

    def _run_action(self, action: RemediationAction, result: CheckResult, ctx: CheckContext, prompter, token) -> None:
        recorder = ctx.recorder
        if not action.automatable:
            self.console.print(f"[yellow]{result.check_name}[/]: manual action needed. {action.guidance}")
            recorder.record_action("Remediation", f"{result.check_name}: advisory only, unresolved")
            return

        self._preview(action)
        if not prompter.confirm(f"Apply the fix for '{result.check_name}'?", action.default_confirm):
            recorder.record_action("Remediation", f"{result.check_name}: fix declined by operator")
            return

        recorder.record_action("Remediation", f"{result.check_name}: applying {len(action.steps)} step(s)")
        strategy = self.advisor.strategy_for(action.kind)
        try:
            applied = strategy.apply(action, result, ctx)
        except (RemediationError, ExternalCallError) as exc:
            logger.error("Remediation for '%s' failed: %s", result.check_name, exc)
            done = getattr(exc, "applied", [])
            for kind, description, location in done:
                recorder.record_change(ConfigurationChange(kind, description, location, True))
            step = getattr(exc, "step", None) or action.steps[min(len(done), len(action.steps) - 1)]
            location = step.preview.location if step.preview else result.check_name
            recorder.record_change(ConfigurationChange(step.change_kind, f"{step.description} failed: {exc}", location, False))
            self.console.print(f"[red]Fix for {result.check_name} failed:[/] {exc}")
            return

        verified = self.verify(result.check_name, ctx, token)
        for kind, description, location in applied:
            recorder.record_change(ConfigurationChange(kind, description, location, verified))
        if verified:
            action.outcome = RemediationOutcome.SUCCESS
            recorder.record_action("Remediation", f"{result.check_name}: resolved")
            self.console.print(f"[green]{result.check_name} resolved.[/]")
        else:
            recorder.record_action("Remediation", f"{result.check_name}: fix applied but check still failing")
            self.console.print(f"[yellow]{result.check_name} still failing after the fix.[/]")

    def verify(self, check_name: str, ctx: CheckContext, token: CancellationToken) -> bool:
        """Bounded re-probe: fixed wait, then at most ``reprobe_retries`` further attempts."""
        check = self.executor.find(check_name)
        for attempt in range(1 + self.reprobe_retries):
            token.sleep(self.reprobe_wait)
            outcome = self.executor.evaluate(check, ctx)
            logger.debug("Re-probe %d of '%s': %s", attempt + 1, check_name, outcome.status.value)
            if outcome.passed:
                return True
        return False

    def _preview(self, action: RemediationAction) -> None:
        table = Table(title=f"Planned fix: {action.target_check_name}", show_header=True, header_style="bold magenta")
        for column in ("Location", "Key", "Before", "After", "Expected effect"):
            table.add_column(column)
        for step in action.steps:
            preview = step.preview
            if preview is None:
                table.add_row(step.description, "", "", "", "")
                continue
            table.add_row(preview.location, preview.key, preview.before, preview.after, preview.effect)
        self.console.print(table)
