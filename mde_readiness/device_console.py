"""
Interactive device-management console (list, tag, offboard).
"""

from __future__ import annotations

import logging
from typing import List

from rich.console import Console
from rich.table import Table

from .devices import DeviceApiError, DeviceSession, OperationResult, SelectionError
from .errors import UserCancellation
from .prompts import parse_menu_choice, parse_selection, parse_tag, parse_tag_action, ValidationError

logger = logging.getLogger(__name__)

MENU = (
    ("1", "List devices"),
    ("2", "Tag devices"),
    ("3", "Offboard devices"),
    ("4", "Exit"),
)


def _parse_comment(raw: str) -> str:
    comment = raw.strip()
    if not comment:
        raise ValidationError("A comment is required for offboarding.")
    return comment


class DeviceConsole:
    def __init__(self, session: DeviceSession, prompter, console: Console):
        self.session = session
        self.prompter = prompter
        self.console = console

    def run(self) -> int:
        while True:
            self.console.print()
            for key, label in MENU:
                self.console.print(f"  [bold]{key}[/]. {label}")
            try:
                choice = self.prompter.ask("Select an option:", lambda raw: parse_menu_choice(raw, [k for k, _ in MENU]))
            except UserCancellation:
                return 0
            if choice == "4":
                return 0
            try:
                if choice == "1":
                    self.list_devices()
                elif choice == "2":
                    self.tag_devices()
                else:
                    self.offboard_devices()
            except DeviceApiError as exc:
                logger.error("Device API call failed: %s", exc)
                self.console.print(f"[red]{exc}[/]")
            except (SelectionError, UserCancellation) as exc:
                self.console.print(f"[yellow]{exc}[/]")

    def list_devices(self) -> None:
        devices = self.session.refresh()
        self._print_devices()
        if not devices:
            self.console.print("No devices returned by the API.")

    def _print_devices(self) -> None:
        table = Table(title="Devices", show_header=True, header_style="bold magenta")
        for column in ("#", "Name", "Id", "OS", "Health", "Last seen", "Tags"):
            table.add_column(column)
        for idx, device in enumerate(self.session.devices, start=1):
            table.add_row(
                str(idx), device.name, device.device_id, device.os_platform,
                device.health_status, device.last_seen, ", ".join(device.tags),
            )
        self.console.print(table)

    def _select(self) -> List[str]:
        if not self.session.retrieved:
            self.session.refresh()
        self._print_devices()
        ids = self.session.device_ids
        return self.prompter.ask("Devices (e.g. 1,3 or 2-4 or all):", lambda raw: parse_selection(raw, ids))

    def tag_devices(self) -> List[OperationResult]:
        selected = self._select()
        tag = self.prompter.ask("Tag value:", parse_tag)
        action = self.prompter.ask("Action (Add/Remove):", parse_tag_action)
        if not self.prompter.confirm(f"{action} tag '{tag}' on {len(selected)} device(s)?", True):
            self.console.print("Tagging cancelled.")
            return []
        results = self.session.tag(selected, tag, action)
        self._print_results(results)
        return results

    def offboard_devices(self) -> List[OperationResult]:
        selected = self._select()
        comment = self.prompter.ask("Offboarding comment:", _parse_comment)
        names = ", ".join(self.session.get(device_id).name for device_id in selected)
        self.console.print(f"[red]Offboarding removes these devices from protection reporting:[/] {names}")
        if not self.prompter.confirm(f"Offboard {len(selected)} device(s)?", False):
            self.console.print("Offboarding cancelled.")
            return []
        results = self.session.offboard(selected, comment)
        self._print_results(results)
        return results

    def _print_results(self, results: List[OperationResult]) -> None:
        for result in results:
            style = "green" if result.success else "red"
            self.console.print(f"[{style}]{result.device_id}[/]: {result.message}")
