"""Verification checklist and retry governance."""

from .checklist import (
    DEFAULT_TEMPLATE,
    CheckCategory,
    Checklist,
    ChecklistItem,
    ChecklistResult,
    CheckMode,
    ItemStatus,
)
from .checks import CheckOutcome, CommandCheck, CoverageCheck, default_checks, run_checks
from .governance import GovernanceOutcome, Verdict, VerificationGovernor
from .retry import EscalationInfo, Recommendation, RetryCheck, RetryLimiter
from .stability import StabilityTimer

__all__ = [
    "DEFAULT_TEMPLATE",
    "CheckCategory",
    "CheckMode",
    "CheckOutcome",
    "Checklist",
    "ChecklistItem",
    "ChecklistResult",
    "CommandCheck",
    "CoverageCheck",
    "EscalationInfo",
    "GovernanceOutcome",
    "ItemStatus",
    "Recommendation",
    "RetryCheck",
    "RetryLimiter",
    "StabilityTimer",
    "Verdict",
    "VerificationGovernor",
    "default_checks",
    "run_checks",
]
