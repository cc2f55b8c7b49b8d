"""
Core package for the Microsoft Defender for Endpoint readiness tooling.

The modules cover the readiness probe set, remediation, the onboarding
orchestrator and its session report, the device-management API client and
Linux fleet onboarding through Ansible.  Each returns structured data so the
CLI and MCP layers only marshal results.
"""

from .config import get_settings, Settings  # noqa: F401
from .errors import ReadinessError, UserCancellation, InterruptSignal  # noqa: F401
from .models import CheckKind, CheckResult, CheckStatus, OnboardingStatus, Phase, Severity  # noqa: F401
from .orchestrator import Orchestrator  # noqa: F401
from .session import SessionRecorder, SessionSummary  # noqa: F401
