#!/usr/bin/env python3
"""Remediation advisor, strategies and the bounded re-probe."""

from __future__ import annotations

from mde_readiness.cancellation import CancellationToken
from mde_readiness.checks import Check, CheckContext, Finding, build_probe_set
from mde_readiness.executor import CheckExecutor
from mde_readiness.host import ATP_POLICY_KEY, ServiceState, UpdateItem
from mde_readiness.models import CheckKind, RemediationOutcome, Severity
from mde_readiness.prompts import ScriptedPrompter
from mde_readiness.remediation import (
    STRATEGIES,
    AdvisoryStrategy,
    RemediationAdvisor,
    RemediationRunner,
    ServiceStrategy,
)
from mde_readiness.session import SessionRecorder


def _setup(host, settings, console):
    recorder = SessionRecorder()
    ctx = CheckContext(host=host, settings=settings, recorder=recorder)
    executor = CheckExecutor(build_probe_set(settings))
    runner = RemediationRunner(RemediationAdvisor(), executor, console, reprobe_wait=0)
    return ctx, executor, runner


def test_every_check_kind_has_a_strategy() -> None:
    assert set(STRATEGIES) == set(CheckKind)
    assert isinstance(STRATEGIES[CheckKind.OS_VERSION], AdvisoryStrategy)
    assert isinstance(STRATEGIES[CheckKind.DEFENDER_SERVICES], ServiceStrategy)


def test_service_plan_previews_each_change(host, settings, console) -> None:
    host.services.states["WinDefend"] = ServiceState("WinDefend", "Stopped", "Manual")
    ctx, executor, _ = _setup(host, settings, console)
    result = executor.evaluate(executor.find("Windows Defender Services"), ctx)

    action = RemediationAdvisor().advise(result, ctx)
    assert action.automatable
    assert action.default_confirm is True
    previews = [(step.preview.key, step.preview.before, step.preview.after) for step in action.steps]
    assert previews == [("StartupType", "Manual", "Automatic"), ("Status", "Stopped", "Running")]


def test_confirmed_fix_is_verified_and_recorded(host, settings, console) -> None:
    host.services.states["WinDefend"] = ServiceState("WinDefend", "Stopped", "Manual")
    ctx, executor, runner = _setup(host, settings, console)
    failed = [executor.evaluate(executor.find("Windows Defender Services"), ctx)]

    report = runner.remediate(failed, ctx, ScriptedPrompter(["y"]), CancellationToken())

    assert report.success
    assert report.resolved == ["Windows Defender Services"]
    assert report.actions[0].outcome is RemediationOutcome.SUCCESS
    changes = ctx.recorder.summary.configuration_changes
    assert [c.description for c in changes] == ["Set WinDefend startup type to Automatic", "Start WinDefend"]
    assert all(c.success for c in changes)
    assert executor.evaluate(executor.find("Windows Defender Services"), ctx).passed


def test_declined_fix_leaves_check_unresolved(host, settings, console) -> None:
    host.system.feature = "Available"
    ctx, executor, runner = _setup(host, settings, console)
    failed = [executor.evaluate(executor.find("Windows Defender Features"), ctx)]

    report = runner.remediate(failed, ctx, ScriptedPrompter(["n"]), CancellationToken())

    assert report.critical_unresolved == ["Windows Defender Features"]
    assert host.system.feature == "Available"
    assert ctx.recorder.summary.configuration_changes == []


def test_default_answer_follows_strategy(host, settings, console) -> None:
    host.system.feature = "Available"
    ctx, executor, runner = _setup(host, settings, console)
    failed = [executor.evaluate(executor.find("Windows Defender Features"), ctx)]

    # an empty answer takes the default, which is "no" for feature installs
    report = runner.remediate(failed, ctx, ScriptedPrompter([""]), CancellationToken())
    assert report.unresolved == ["Windows Defender Features"]


def test_advisory_failure_never_prompts(host, settings, console) -> None:
    host.system.free_gb = 0.5
    ctx, executor, runner = _setup(host, settings, console)
    failed = [executor.evaluate(executor.find("Disk Space"), ctx)]
    prompter = ScriptedPrompter([])

    report = runner.remediate(failed, ctx, prompter, CancellationToken())

    assert prompter.asked == []
    assert report.critical_unresolved == ["Disk Space"]
    assert not report.actions[0].automatable
    assert "Disk cleanup required." in report.actions[0].guidance


def test_failed_apply_records_failed_change(host, settings, console) -> None:
    host.services.states["WinDefend"] = ServiceState("WinDefend", "Stopped", "Automatic")
    host.services.fail_start = True
    ctx, executor, runner = _setup(host, settings, console)
    failed = [executor.evaluate(executor.find("Windows Defender Services"), ctx)]
    ctx.recorder.summary.configuration_changes.clear()

    report = runner.remediate(failed, ctx, ScriptedPrompter(["y"]), CancellationToken())

    assert report.critical_unresolved == ["Windows Defender Services"]
    changes = ctx.recorder.summary.configuration_changes
    assert len(changes) == 1
    assert not changes[0].success
    assert "Cannot start WinDefend" in changes[0].description


def test_partial_service_fix_logs_each_step(host, settings, console) -> None:
    host.services.states["WinDefend"] = ServiceState("WinDefend", "Stopped", "Manual")
    host.services.fail_start = True
    ctx, executor, runner = _setup(host, settings, console)
    failed = [executor.evaluate(executor.find("Windows Defender Services"), ctx)]
    ctx.recorder.summary.configuration_changes.clear()

    report = runner.remediate(failed, ctx, ScriptedPrompter(["y"]), CancellationToken())

    assert report.critical_unresolved == ["Windows Defender Services"]
    assert host.services.states["WinDefend"].start_type == "Automatic"
    changes = [(c.description, c.success) for c in ctx.recorder.summary.configuration_changes]
    assert changes == [
        ("Set WinDefend startup type to Automatic", True),
        ("Start WinDefend failed: Cannot start WinDefend", False),
    ]


def test_passive_mode_fix_writes_policy(host, settings, console) -> None:
    host.system.av_products = ["Contoso Endpoint Shield"]
    ctx, executor, runner = _setup(host, settings, console)
    failed = [executor.evaluate(executor.find("Passive Mode Configuration"), ctx)]

    report = runner.remediate(failed, ctx, ScriptedPrompter(["y"]), CancellationToken())

    assert report.resolved == ["Passive Mode Configuration"]
    assert host.system.registry[(ATP_POLICY_KEY, "ForceDefenderPassiveMode")] == 1


def test_update_install_records_titles_and_reboot(host, settings, console) -> None:
    host.updates.pending = [UpdateItem("u1", "Servicing Stack Update"), UpdateItem("u2", "Cumulative Update")]
    host.updates.reboot_required = True
    ctx, executor, runner = _setup(host, settings, console)
    failed = [executor.evaluate(executor.find("Windows Updates"), ctx)]

    report = runner.remediate(failed, ctx, ScriptedPrompter(["y"]), CancellationToken())

    assert report.resolved == ["Windows Updates"]
    assert ctx.recorder.summary.updates_installed == ["Servicing Stack Update", "Cumulative Update"]
    assert ctx.recorder.summary.reboot_required


def test_partial_update_failure_is_unresolved(host, settings, console) -> None:
    host.updates.pending = [UpdateItem("u1", "Servicing Stack Update"), UpdateItem("u2", "Cumulative Update")]
    host.updates.fail = ["Cumulative Update"]
    ctx, executor, runner = _setup(host, settings, console)
    failed = [executor.evaluate(executor.find("Windows Updates"), ctx)]

    report = runner.remediate(failed, ctx, ScriptedPrompter(["y"]), CancellationToken())

    assert report.unresolved == ["Windows Updates"]
    # advisory check, so the session is not blocked
    assert report.success
    assert ctx.recorder.summary.updates_installed == ["Servicing Stack Update"]


def test_reprobe_is_bounded(host, settings, console) -> None:
    calls = []

    def stubborn(ctx):
        calls.append(1)
        return Finding(False, "still broken")

    check = Check("Stubborn", CheckKind.DISK_SPACE, stubborn, Severity.CRITICAL, "")
    executor = CheckExecutor([check])
    runner = RemediationRunner(RemediationAdvisor(), executor, console, reprobe_wait=0, reprobe_retries=1)
    ctx = CheckContext(host=host, settings=settings, recorder=SessionRecorder())

    assert runner.verify("Stubborn", ctx, CancellationToken()) is False
    assert len(calls) == 2
