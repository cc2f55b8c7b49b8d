"""
Operator prompts.

Validation is done by pure functions that turn raw text into a value or raise
:class:`ValidationError`.  :class:`ConsolePrompter` is the thin interactive
adapter that keeps asking until a validator accepts the answer;
:class:`ScriptedPrompter` replays canned answers for tests and unattended use.
"""

from __future__ import annotations

import string
from collections import deque
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Sequence, TypeVar

from rich.console import Console

from .cancellation import CancellationToken
from .errors import UserCancellation

T = TypeVar("T")

QUIT_WORDS = {"q", "quit", "exit"}
TAG_ACTIONS = ("Add", "Remove")
MAX_TAG_LENGTH = 200


class ValidationError(ValueError):
    """Raised by a validator when the raw answer is not acceptable."""


def parse_yes_no(raw: str, default: bool) -> bool:
    answer = raw.strip().lower()
    if not answer:
        return default
    if answer in {"y", "yes"}:
        return True
    if answer in {"n", "no"}:
        return False
    raise ValidationError("Please answer 'y' or 'n'.")


def parse_existing_path(raw: str) -> Path:
    value = raw.strip().strip('"').strip("'")
    if not value:
        raise ValidationError("A path is required.")
    if value.lower() in QUIT_WORDS:
        raise UserCancellation("Operator quit at the package prompt")
    path = Path(value).expanduser()
    if not path.exists():
        raise ValidationError(f"Path not found: {path}")
    return path


def parse_menu_choice(raw: str, choices: Sequence[str]) -> str:
    answer = raw.strip()
    if answer in choices:
        return answer
    raise ValidationError(f"Choose one of: {', '.join(choices)}")


def parse_tag(raw: str) -> str:
    tag = raw.strip()
    if not tag:
        raise ValidationError("Tag cannot be empty.")
    if len(tag) > MAX_TAG_LENGTH:
        raise ValidationError(f"Tag must be at most {MAX_TAG_LENGTH} characters.")
    if any(ch not in string.printable or ch in "\r\n\t\x0b\x0c" for ch in tag):
        raise ValidationError("Tag contains unsupported characters.")
    return tag


def parse_tag_action(raw: str) -> str:
    answer = raw.strip().lower()
    for action in TAG_ACTIONS:
        if answer in {action.lower(), action[0].lower()}:
            return action
    raise ValidationError("Action must be Add or Remove.")


def parse_selection(raw: str, available_ids: Sequence[str]) -> List[str]:
    """
    Turn ``1,3`` / ``1-3`` / ``all`` / raw device ids into a list of device ids.

    Numbers are 1-based positions in ``available_ids``.  Anything that does not
    resolve to an id from ``available_ids`` is rejected.
    """
    answer = raw.strip()
    if not answer:
        raise ValidationError("Select at least one device.")
    if answer.lower() == "all":
        if not available_ids:
            raise ValidationError("No devices available.")
        return list(available_ids)

    selected: List[str] = []
    for token in (part.strip() for part in answer.split(",")):
        if not token:
            continue
        if token in available_ids:
            picks = [token]
        elif "-" in token and all(piece.strip().isdigit() for piece in token.split("-", 1)):
            start, end = (int(piece) for piece in token.split("-", 1))
            if start > end:
                raise ValidationError(f"Invalid range: {token}")
            picks = [_index_to_id(idx, available_ids) for idx in range(start, end + 1)]
        elif token.isdigit():
            picks = [_index_to_id(int(token), available_ids)]
        else:
            raise ValidationError(f"Unknown device: {token}")
        for device_id in picks:
            if device_id not in selected:
                selected.append(device_id)

    if not selected:
        raise ValidationError("Select at least one device.")
    return selected


def _index_to_id(index: int, available_ids: Sequence[str]) -> str:
    if index < 1 or index > len(available_ids):
        raise ValidationError(f"No device at position {index}.")
    return available_ids[index - 1]


class ConsolePrompter:
    """Interactive adapter over a rich console."""

    def __init__(self, console: Console, token: Optional[CancellationToken] = None):
        self.console = console
        self.token = token or CancellationToken()

    def _read(self, message: str) -> str:
        with self.token.safe_point():
            try:
                return self.console.input(f"[bold cyan]{message}[/] ")
            except EOFError as exc:
                raise UserCancellation("Input stream closed") from exc

    def ask(self, message: str, validator: Callable[[str], T]) -> T:
        while True:
            raw = self._read(message)
            try:
                return validator(raw)
            except ValidationError as exc:
                self.console.print(f"[yellow]{exc}[/]")

    def confirm(self, message: str, default: bool) -> bool:
        suffix = "[Y/n]" if default else "[y/N]"
        return self.ask(f"{message} {suffix}", lambda raw: parse_yes_no(raw, default))


class ScriptedPrompter:
    """Replays a fixed list of answers; used by tests and unattended drivers."""

    def __init__(self, answers: Iterable[str] = (), token: Optional[CancellationToken] = None):
        self.answers = deque(answers)
        self.token = token or CancellationToken()
        self.asked: List[str] = []

    def ask(self, message: str, validator: Callable[[str], T]) -> T:
        while True:
            self.token.raise_if_cancelled()
            self.asked.append(message)
            if not self.answers:
                raise UserCancellation(f"No scripted answer for prompt: {message}")
            try:
                return validator(self.answers.popleft())
            except ValidationError:
                continue

    def confirm(self, message: str, default: bool) -> bool:
        return self.ask(message, lambda raw: parse_yes_no(raw, default))
