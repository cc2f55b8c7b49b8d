"""
Onboarding/offboarding package helpers.

The operator may point at the script itself, at the directory it was unpacked
to, or at the zip archive downloaded from the Defender portal.  All three are
resolved to a single executable artifact which is then invoked; its exit code
is the onboarding (or offboarding) result.
"""

from __future__ import annotations

import logging
import subprocess
import sys
import tempfile
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import List

logger = logging.getLogger(__name__)

SCRIPT_SUFFIXES = (".cmd", ".bat", ".ps1", ".py", ".sh")
ONBOARDING = "onboarding"
OFFBOARDING = "offboarding"


class PackageError(RuntimeError):
    """Raised when a package cannot be resolved or executed."""


@dataclass
class PackageArtifact:
    path: Path
    purpose: str
    source: Path

    @property
    def name(self) -> str:
        return self.path.name


@dataclass
class PackageRunResult:
    artifact: PackageArtifact
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


def _matches(path: Path, purpose: str) -> bool:
    name = path.name.lower()
    if path.suffix.lower() not in SCRIPT_SUFFIXES:
        return False
    if purpose == OFFBOARDING:
        return OFFBOARDING in name
    return ONBOARDING in name and OFFBOARDING not in name


def _extract_archive(archive: Path) -> Path:
    target = Path(tempfile.mkdtemp(prefix="mde-package-"))
    try:
        with zipfile.ZipFile(archive) as bundle:
            for member in bundle.namelist():
                destination = (target / member).resolve()
                if target.resolve() not in destination.parents and destination != target.resolve():
                    raise PackageError(f"Archive entry escapes extraction directory: {member}")
            bundle.extractall(target)
    except zipfile.BadZipFile as exc:
        raise PackageError(f"Not a valid zip archive: {archive}") from exc
    logger.info("Extracted %s to %s", archive, target)
    return target


def locate_package(location: str | Path, purpose: str = ONBOARDING) -> PackageArtifact:
    """Resolve ``location`` to exactly one onboarding/offboarding script."""
    if purpose not in (ONBOARDING, OFFBOARDING):
        raise ValueError(f"Unknown package purpose: {purpose}")

    source = Path(location).expanduser()
    if not source.exists():
        raise PackageError(f"Package not found: {source}")

    if source.is_file() and source.suffix.lower() == ".zip":
        search_root = _extract_archive(source)
    elif source.is_file():
        if not _matches(source, purpose):
            raise PackageError(f"{source.name} is not an {purpose} script")
        return PackageArtifact(path=source.resolve(), purpose=purpose, source=source)
    else:
        search_root = source

    candidates: List[Path] = sorted(p for p in search_root.rglob("*") if p.is_file() and _matches(p, purpose))
    if not candidates:
        raise PackageError(f"No {purpose} script found in {source}")
    if len(candidates) > 1:
        names = ", ".join(p.name for p in candidates[:5])
        raise PackageError(f"Multiple {purpose} scripts found in {source}: {names}")
    return PackageArtifact(path=candidates[0].resolve(), purpose=purpose, source=source)


def build_command(artifact: PackageArtifact) -> List[str]:
    suffix = artifact.path.suffix.lower()
    path = str(artifact.path)
    if suffix in (".cmd", ".bat"):
        return ["cmd.exe", "/c", path]
    if suffix == ".ps1":
        return ["powershell.exe", "-NoProfile", "-ExecutionPolicy", "Bypass", "-File", path]
    if suffix == ".py":
        return [sys.executable, path]
    return ["bash", path]


def run_package(artifact: PackageArtifact, timeout: float = 600.0) -> PackageRunResult:
    """Execute the artifact, answering its confirmation prompt, and capture the exit code."""
    cmd = build_command(artifact)
    logger.info("Running %s package: %s", artifact.purpose, " ".join(cmd))
    try:
        proc = subprocess.run(
            cmd,
            input="Y\n",
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            timeout=timeout,
            cwd=str(artifact.path.parent),
            check=False,
        )
    except FileNotFoundError as exc:
        raise PackageError(f"Interpreter not available for {artifact.name}: {cmd[0]}") from exc
    except subprocess.TimeoutExpired as exc:
        raise PackageError(f"{artifact.name} did not finish within {timeout:.0f}s") from exc

    result = PackageRunResult(artifact=artifact, exit_code=proc.returncode, stdout=proc.stdout, stderr=proc.stderr)
    log = logger.info if result.succeeded else logger.error
    log("%s exited with code %d", artifact.name, proc.returncode)
    return result
