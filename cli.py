"""
CLI entrypoints.

- ``mde-readiness``: interactive readiness checks, remediation and onboarding
- ``mde-devices``: device-management console (list, tag, offboard)
- ``mde-fleet``: Linux fleet onboarding through Ansible
- ``mde-mcp-stdio`` / ``mde-mcp-http``: the MCP server over STDIO or HTTP
"""

from __future__ import annotations

import logging
import sys

import anyio
import typer
import uvicorn

from mde_readiness.cancellation import CancellationToken, interrupt_handler
from mde_readiness.config import configure_settings
from mde_readiness.console import console, setup_logging
from mde_readiness.device_console import DeviceConsole
from mde_readiness.devices import DeviceApiError, DeviceManagementClient, DeviceSession
from mde_readiness.fleet import CHANNELS, FleetError, offboard_fleet, onboard_fleet
from mde_readiness.host import Host
from mde_readiness.inventory import InventoryError
from mde_readiness.orchestrator import Orchestrator
from mde_readiness.prompts import ConsolePrompter

logger = logging.getLogger(__name__)


def onboard_main() -> None:
    """Entrypoint for the interactive readiness and onboarding workflow."""
    typer.run(_onboard_command)


def devices_main() -> None:
    """Entrypoint for the device-management console."""
    typer.run(_devices_command)


def fleet_main() -> None:
    """Entrypoint for Linux fleet onboarding."""
    typer.run(_fleet_command)


def stdio_main() -> None:
    """Entrypoint for STDIO mode."""
    typer.run(_stdio_command)


def http_main() -> None:
    """Entrypoint for HTTP mode (streamable-http and SSE)."""
    typer.run(_http_command)


def _level(verbose: bool) -> int:
    return logging.DEBUG if verbose else logging.INFO


def _onboard_command(
    report_dir: str = typer.Option(None, help="Directory for the run log and report"),
    project_root: str = typer.Option(None, help="Project root"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
) -> None:
    """Check readiness, remediate, and onboard this device."""
    settings = configure_settings(project_root=project_root, report_dir=report_dir)
    log_path = setup_logging(settings.report_dir, _level(verbose))
    logger.info("Run log: %s", log_path)

    token = CancellationToken()
    orchestrator = Orchestrator(
        settings,
        Host.local(settings.network_timeout),
        ConsolePrompter(console, token),
        console,
        token=token,
    )
    with interrupt_handler(token):
        code = orchestrator.run()
    sys.exit(code)


def _devices_command(
    report_dir: str = typer.Option(None, help="Directory for the run log"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
) -> None:
    """List, tag and offboard devices through the device-management API."""
    settings = configure_settings(report_dir=report_dir)
    setup_logging(settings.report_dir, _level(verbose))
    if not settings.api.configured:
        console.print(
            "[red]Device API is not configured.[/] Set MDE_READINESS_TENANT_ID, MDE_READINESS_CLIENT_ID and "
            "either MDE_READINESS_KEYVAULT_NAME/MDE_READINESS_SECRET_NAME or MDE_READINESS_CLIENT_SECRET."
        )
        sys.exit(1)
    try:
        session = DeviceSession(DeviceManagementClient.from_settings(settings.api))
    except DeviceApiError as exc:
        console.print(f"[red]{exc}[/]")
        sys.exit(1)
    sys.exit(DeviceConsole(session, ConsolePrompter(console), console).run())


def _fleet_command(
    package: str = typer.Argument(..., help="Onboarding (or offboarding) file from the Defender portal"),
    hosts: str = typer.Option("servers", help="Host selector, e.g. servers or web*,!web03"),
    channel: str = typer.Option("prod", help=f"Package channel: {', '.join(CHANNELS)}"),
    group_tag: str = typer.Option("MDE-Management", help="Value for the GROUP device tag"),
    inventory: str = typer.Option(None, help="Path to the inventory file"),
    check: bool = typer.Option(False, "--check", help="Dry-run (Ansible check mode)"),
    offboard: bool = typer.Option(False, "--offboard", help="Offboard and remove mdatp instead"),
    project_root: str = typer.Option(None, help="Project root"),
) -> None:
    """Onboard Linux servers with the bundled Ansible playbooks."""
    configure_settings(project_root=project_root, inventory=inventory)
    setup_logging()
    try:
        if offboard:
            run = offboard_fleet(package, hosts=hosts, inventory=inventory, check_mode=check)
        else:
            run = onboard_fleet(package, hosts=hosts, channel=channel, group_tag=group_tag, inventory=inventory, check_mode=check)
    except (FleetError, InventoryError) as exc:
        console.print(f"[red]{exc}[/]")
        sys.exit(1)
    console.print(run.summary(), highlight=False, markup=False)
    sys.exit(0 if run.status == "completed" else 1)


def _stdio_command(
    inventory: str = typer.Option(None, help="Path to the inventory file"),
    runner_dir: str = typer.Option(None, help="Directory for runner artifacts"),
    project_root: str = typer.Option(None, help="Project root"),
) -> None:
    """Run the MCP server in STDIO mode."""
    from mcp_app import mcp

    configure_settings(project_root=project_root, inventory=inventory, runner_dir=runner_dir)
    anyio.run(mcp.run_stdio_async)


def _http_command(
    inventory: str = typer.Option(None, help="Path to the inventory file"),
    runner_dir: str = typer.Option(None, help="Directory for runner artifacts"),
    project_root: str = typer.Option(None, help="Project root"),
    host: str = typer.Option("0.0.0.0", help="HTTP host"),
    port: int = typer.Option(8080, help="HTTP port"),
) -> None:
    """Run the MCP server in HTTP mode (streamable-http and SSE endpoints)."""
    from http_app import app

    configure_settings(project_root=project_root, inventory=inventory, runner_dir=runner_dir)
    uvicorn.run(app, host=host, port=port, log_level="info")


if __name__ == "__main__":
    onboard_main()
