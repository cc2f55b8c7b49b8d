#!/usr/bin/env python3
"""End-to-end orchestrator scenarios with a scripted operator."""

from __future__ import annotations

from dataclasses import replace
from functools import partial

from conftest import FakePackageRunner

from mde_readiness.cancellation import CancellationToken, countdown
from mde_readiness.errors import UserCancellation
from mde_readiness.host import ServiceState
from mde_readiness.models import OnboardingStatus, Phase
from mde_readiness.orchestrator import Orchestrator
from mde_readiness.packages import PackageRunResult
from mde_readiness.prompts import ScriptedPrompter
from mde_readiness.reporter import REPORT_PREFIX


def _orchestrator(settings, host, console, answers, **kwargs):
    token = kwargs.pop("token", None) or CancellationToken()
    prompter = kwargs.pop("prompter", None) or ScriptedPrompter(answers, token)
    execute = kwargs.pop("execute", None) or FakePackageRunner(host)
    return Orchestrator(settings, host, prompter, console, token=token, execute=execute, **kwargs)


def _reports(settings):
    return sorted(settings.report_dir.glob(f"{REPORT_PREFIX}_*.txt"))


def test_all_checks_pass_skips_remediation(settings, host, console, onboarding_script) -> None:
    orchestrator = _orchestrator(settings, host, console, ["y", str(onboarding_script), "y"])

    code = orchestrator.run()

    assert code == 0
    assert orchestrator.summary.onboarding_status is OnboardingStatus.COMPLETED
    assert Phase.REMEDIATION not in orchestrator.history
    assert orchestrator.history == [
        Phase.STARTUP,
        Phase.PREREQUISITE_CHECKS,
        Phase.PRE_ONBOARDING,
        Phase.FINAL_CONFIRMATION,
        Phase.ONBOARDING,
        Phase.VERIFICATION,
    ]
    assert len(orchestrator.summary.checks_completed) == 13
    assert len(_reports(settings)) == 1


def test_stopped_service_is_remediated_then_onboarded(settings, host, console, onboarding_script) -> None:
    settings = replace(settings, self_heal_services=False)
    host.services.states["WinDefend"] = ServiceState("WinDefend", "Stopped", "Automatic")
    answers = ["y", "y", "y", str(onboarding_script), "y"]
    orchestrator = _orchestrator(settings, host, console, answers)

    code = orchestrator.run()

    assert code == 0
    summary = orchestrator.summary
    assert summary.onboarding_status is OnboardingStatus.COMPLETED
    assert Phase.REMEDIATION in orchestrator.history
    assert Phase.REVERIFICATION in orchestrator.history
    assert summary.latest_results()["Windows Defender Services"].passed
    service_changes = [c for c in summary.configuration_changes if c.location == "Service:WinDefend"]
    assert [c.success for c in service_changes] == [True]


def test_declining_start_cancels(settings, host, console) -> None:
    orchestrator = _orchestrator(settings, host, console, ["n"])

    code = orchestrator.run()

    assert code == 0
    assert orchestrator.summary.onboarding_status is OnboardingStatus.CANCELLED
    assert orchestrator.summary.checks_completed == []
    assert orchestrator.reporter.rendered
    report = _reports(settings)
    assert len(report) == 1
    assert "Status: Cancelled" in report[0].read_text()


def test_unresolvable_os_version_fails_prerequisites(settings, host, console) -> None:
    host.system.os = replace(host.system.os, build=14393)
    orchestrator = _orchestrator(settings, host, console, ["y", "y"])

    code = orchestrator.run()

    assert code == 1
    summary = orchestrator.summary
    assert summary.onboarding_status is OnboardingStatus.PREREQUISITES_FAILED
    assert "Operating System Version" in summary.status_reason
    assert Phase.ONBOARDING not in orchestrator.history


def test_declining_remediation_fails_prerequisites(settings, host, console) -> None:
    host.system.reboot_reasons = ["Windows Update"]
    orchestrator = _orchestrator(settings, host, console, ["y", "n"])

    assert orchestrator.run() == 1
    assert orchestrator.summary.onboarding_status is OnboardingStatus.PREREQUISITES_FAILED
    assert orchestrator.history[-1] is Phase.REMEDIATION_OFFER


def test_advisory_failures_do_not_block_onboarding(settings, host, console, onboarding_script) -> None:
    host.system.reboot_reasons = ["Windows Update"]
    orchestrator = _orchestrator(settings, host, console, ["y", "y", str(onboarding_script), "y"])

    assert orchestrator.run() == 0
    assert orchestrator.summary.onboarding_status is OnboardingStatus.COMPLETED


def test_declining_final_confirmation_cancels(settings, host, console, onboarding_script) -> None:
    runner = FakePackageRunner(host)
    orchestrator = _orchestrator(settings, host, console, ["y", str(onboarding_script), "n"], execute=runner)

    assert orchestrator.run() == 0
    assert orchestrator.summary.onboarding_status is OnboardingStatus.CANCELLED
    assert runner.calls == []


def test_package_prompt_reasks_until_a_script_is_found(settings, host, console, onboarding_script, tmp_path) -> None:
    empty = tmp_path / "empty"
    empty.mkdir()
    answers = ["y", str(tmp_path / "missing"), str(empty), str(onboarding_script.parent), "y"]
    orchestrator = _orchestrator(settings, host, console, answers)

    assert orchestrator.run() == 0
    assert orchestrator.summary.onboarding_status is OnboardingStatus.COMPLETED


def test_quit_at_package_prompt_cancels(settings, host, console) -> None:
    orchestrator = _orchestrator(settings, host, console, ["y", "q"])

    assert orchestrator.run() == 0
    assert orchestrator.summary.onboarding_status is OnboardingStatus.CANCELLED


def test_onboarding_script_failure(settings, host, console, onboarding_script) -> None:
    runner = FakePackageRunner(host, exit_code=5)
    orchestrator = _orchestrator(settings, host, console, ["y", str(onboarding_script), "y"], execute=runner)

    assert orchestrator.run() == 1
    summary = orchestrator.summary
    assert summary.onboarding_status is OnboardingStatus.FAILED
    assert "exit code 5" in summary.status_reason
    assert not summary.configuration_changes[-1].success


def test_registration_not_confirmed(settings, host, console, onboarding_script) -> None:
    runner = FakePackageRunner(host, registers=False)
    orchestrator = _orchestrator(settings, host, console, ["y", str(onboarding_script), "y"], execute=runner)

    assert orchestrator.run() == 1
    assert orchestrator.summary.onboarding_status is OnboardingStatus.FAILED
    assert orchestrator.history[-1] is Phase.VERIFICATION


def test_already_onboarded_short_circuits(settings, host, console) -> None:
    host.system.mark_onboarded()
    orchestrator = _orchestrator(settings, host, console, ["y", "n"])

    assert orchestrator.run() == 0
    assert orchestrator.summary.onboarding_status is OnboardingStatus.ALREADY_ONBOARDED
    assert Phase.REMEDIATION_OFFER not in orchestrator.history


def test_offboarding_existing_registration(settings, host, console, tmp_path) -> None:
    host.system.mark_onboarded()
    script = tmp_path / "WindowsDefenderATPOffboardingScript_valid_until_2026-12-01.cmd"
    script.write_text("exit /b 0\r\n")
    runner = FakePackageRunner(host, registers=False)
    orchestrator = _orchestrator(settings, host, console, ["y", "y", str(script), "y"], execute=runner)

    assert orchestrator.run() == 0
    assert orchestrator.summary.onboarding_status is OnboardingStatus.OFFBOARDED
    assert Phase.OFFBOARDING in orchestrator.history
    assert runner.calls[0].purpose == "offboarding"


def test_unexpected_error_fails_with_single_render(settings, host, console) -> None:
    host.system.os_error = RuntimeError("WMI repository is corrupt")
    orchestrator = _orchestrator(settings, host, console, ["y"])

    assert orchestrator.run() == 1
    summary = orchestrator.summary
    assert summary.onboarding_status is OnboardingStatus.FAILED
    assert "WMI repository is corrupt" in summary.status_reason
    assert len(_reports(settings)) == 1


def test_interrupt_mid_operation_exits_one(settings, host, console) -> None:
    token = CancellationToken()

    class CancellingSystem(type(host.system)):
        def free_disk_gb(self, path=None):
            token.cancel("Received SIGINT")
            return super().free_disk_gb(path)

    system = CancellingSystem()
    host.system = system
    orchestrator = _orchestrator(settings, host, console, ["y"], token=token)

    assert orchestrator.run() == 1
    summary = orchestrator.summary
    assert summary.onboarding_status is OnboardingStatus.INTERRUPTED
    # the running probe finishes, nothing after it starts
    assert [r.check_name for r in summary.checks_completed][-1] == "Disk Space"
    assert len(_reports(settings)) == 1


def test_interrupt_at_prompt_exits_zero(settings, host, console) -> None:
    token = CancellationToken()

    class InterruptedPrompter(ScriptedPrompter):
        def confirm(self, message, default):
            if message.startswith("Attempt to remediate"):
                with self.token.safe_point():
                    self.token.cancel("Received SIGINT")
                    self.token.raise_if_cancelled()
            return super().confirm(message, default)

    host.system.free_gb = 0.5
    prompter = InterruptedPrompter(["y"], token)
    orchestrator = _orchestrator(settings, host, console, [], token=token, prompter=prompter)

    assert orchestrator.run() == 0
    assert orchestrator.summary.onboarding_status is OnboardingStatus.INTERRUPTED


def test_render_happens_once(settings, host, console) -> None:
    orchestrator = _orchestrator(settings, host, console, ["n"])
    orchestrator.run()
    first = orchestrator.reporter.render(orchestrator.summary)
    orchestrator._render()

    assert orchestrator.reporter.render(orchestrator.summary) == first
    assert len(_reports(settings)) == 1
    assert console.file.getvalue().count("MDE READINESS SESSION SUMMARY") == 1


def test_status_is_set_once(settings, host, console) -> None:
    orchestrator = _orchestrator(settings, host, console, ["n"])
    orchestrator.run()

    assert orchestrator.recorder.set_status(OnboardingStatus.COMPLETED) is False
    assert orchestrator.summary.onboarding_status is OnboardingStatus.CANCELLED


def test_reboot_offered_after_feature_install(settings, host, console, onboarding_script) -> None:
    host.system.feature = "Available"
    host.system.feature_restart = True
    ticks = []

    def instant_countdown(seconds, on_tick, token=None):
        ticks.append(seconds)
        return True

    answers = ["y", "y", "y", str(onboarding_script), "y", "y"]
    orchestrator = _orchestrator(settings, host, console, answers, reboot_countdown=instant_countdown)

    assert orchestrator.run() == 0
    assert orchestrator.summary.reboot_required
    assert ticks == [settings.reboot_countdown]
    assert host.system.restarted


def test_reboot_declined_keeps_device_running(settings, host, console, onboarding_script) -> None:
    host.system.feature = "Available"
    host.system.feature_restart = True
    answers = ["y", "y", "y", str(onboarding_script), "y", "n"]
    orchestrator = _orchestrator(settings, host, console, answers)

    assert orchestrator.run() == 0
    assert not host.system.restarted


def test_scripted_prompter_runs_out_of_answers() -> None:
    prompter = ScriptedPrompter([])
    try:
        prompter.confirm("Anything?", True)
    except UserCancellation:
        pass
    else:
        raise AssertionError("expected UserCancellation")


def test_unreadable_disk_is_a_warning_not_a_failure(settings, host, console, onboarding_script) -> None:
    def missing_volume(path=None):
        raise FileNotFoundError(2, "No such file or directory", "C:\\")

    host.system.free_disk_gb = missing_volume
    orchestrator = _orchestrator(settings, host, console, ["y", str(onboarding_script), "y"])

    code = orchestrator.run()

    assert code == 0
    assert orchestrator.summary.onboarding_status is OnboardingStatus.COMPLETED
    assert len(orchestrator.summary.checks_completed) == 13
    disk = orchestrator.summary.latest_results()["Disk Space"]
    assert disk.status.value == "warning"
    assert "Could not read system state" in disk.detail


def test_interrupt_during_reboot_countdown_skips_restart(settings, host, console, onboarding_script) -> None:
    host.system.feature = "Available"
    host.system.feature_restart = True
    token = CancellationToken()

    def signal_arrives(timeout):
        token.cancel("Received SIGINT")
        return False

    answers = ["y", "y", "y", str(onboarding_script), "y", "y"]
    orchestrator = _orchestrator(
        settings, host, console, answers, token=token,
        reboot_countdown=partial(countdown, key_pressed=signal_arrives),
    )

    orchestrator.run()

    assert token.cancelled
    assert not host.system.restarted
    output = console.file.getvalue()
    assert output.count("Restarting in") == 1
    assert "Restart cancelled." in output


def test_interrupt_while_script_runs_is_interrupted_not_failed(settings, host, console, onboarding_script) -> None:
    token = CancellationToken()

    def killed_by_ctrl_c(artifact):
        token.cancel("Received SIGINT")
        return PackageRunResult(artifact=artifact, exit_code=-2)

    orchestrator = _orchestrator(
        settings, host, console, ["y", str(onboarding_script), "y"], token=token, execute=killed_by_ctrl_c
    )

    assert orchestrator.run() == 1
    summary = orchestrator.summary
    assert summary.onboarding_status is OnboardingStatus.INTERRUPTED
    assert Phase.VERIFICATION not in orchestrator.history
    # the script's exit is still on record
    assert "exit code -2" in summary.configuration_changes[-1].description


def test_interrupt_while_offboarding_is_interrupted(settings, host, console, tmp_path) -> None:
    host.system.mark_onboarded()
    script = tmp_path / "WindowsDefenderATPOffboardingScript_valid_until_2026-12-01.cmd"
    script.write_text("exit /b 0\r\n")
    token = CancellationToken()

    def killed_by_ctrl_c(artifact):
        token.cancel("Received SIGTERM")
        return PackageRunResult(artifact=artifact, exit_code=1)

    orchestrator = _orchestrator(
        settings, host, console, ["y", "y", str(script), "y"], token=token, execute=killed_by_ctrl_c
    )

    assert orchestrator.run() == 1
    assert orchestrator.summary.onboarding_status is OnboardingStatus.INTERRUPTED
