"""
Check executor: runs the probe set in order and records one result per check.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from .cancellation import CancellationToken
from .checks import Check, CheckContext
from .errors import ExternalCallError, ProbeError
from .models import CheckResult, CheckStatus, Severity

logger = logging.getLogger(__name__)


@dataclass
class CheckPass:
    """Results of one executor pass, in declared order."""

    results: List[CheckResult] = field(default_factory=list)

    @property
    def failed(self) -> List[CheckResult]:
        return [result for result in self.results if result.failed]

    @property
    def critical_failures(self) -> List[CheckResult]:
        return [result for result in self.failed if result.severity is Severity.CRITICAL]

    @property
    def warnings(self) -> List[CheckResult]:
        return [result for result in self.results if result.status is CheckStatus.WARNING]

    @property
    def all_passed(self) -> bool:
        return not self.failed

    def get(self, name: str) -> Optional[CheckResult]:
        for result in self.results:
            if result.check_name == name:
                return result
        return None

    def counts(self) -> Dict[str, int]:
        return {
            "total": len(self.results),
            "passed": sum(1 for result in self.results if result.passed),
            "failed": len(self.failed),
            "warnings": len(self.warnings),
        }


class CheckExecutor:
    def __init__(self, checks: Sequence[Check]):
        names = [check.name for check in checks]
        if len(names) != len(set(names)):
            raise ValueError("Check names must be unique")
        self.checks = list(checks)

    def find(self, name: str) -> Check:
        for check in self.checks:
            if check.name == name:
                return check
        raise KeyError(name)

    def evaluate(self, check: Check, ctx: CheckContext) -> CheckResult:
        """Run a single probe and fold probe/external errors into a result."""
        try:
            return check.run(ctx)
        except ProbeError as exc:
            logger.warning("Check '%s' could not determine status: %s", check.name, exc)
            return self._degraded(check, CheckStatus.WARNING, f"Undetermined: {exc}")
        except ExternalCallError as exc:
            logger.warning("Check '%s' external call failed: %s", check.name, exc)
            status = CheckStatus.FAILED if check.critical else CheckStatus.WARNING
            return self._degraded(check, status, f"External call failed: {exc}")

    def run(self, ctx: CheckContext, token: Optional[CancellationToken] = None) -> CheckPass:
        check_pass = CheckPass()
        for check in self.checks:
            if token is not None:
                token.raise_if_cancelled()
            result = self.evaluate(check, ctx)
            ctx.recorder.record_check(result)
            check_pass.results.append(result)
        return check_pass

    @staticmethod
    def _degraded(check: Check, status: CheckStatus, detail: str) -> CheckResult:
        return CheckResult(
            check_name=check.name,
            kind=check.kind,
            severity=check.severity,
            status=status,
            detail=detail,
            remediation_hint=check.hint,
        )
