"""Verification checklist: required and optional quality gates for one task.

A Checklist is built fresh for every verification attempt from the
default template plus any caller-supplied items. It passes only when no
required item failed and nothing is still pending.
"""

from __future__ import annotations

import copy
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum


class CheckCategory(StrEnum):
    TESTS = "tests"
    LINT = "lint"
    BUILD = "build"
    COVERAGE = "coverage"
    TYPES = "types"
    SECURITY = "security"
    PERFORMANCE = "performance"
    ACCESSIBILITY = "accessibility"
    DOCUMENTATION = "documentation"
    REVIEW = "review"


class ItemStatus(StrEnum):
    PENDING = "pending"
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"
    NOT_APPLICABLE = "n/a"


class CheckMode(StrEnum):
    AUTOMATIC = "automatic"
    MANUAL = "manual"


@dataclass
class ChecklistItem:
    id: str
    category: CheckCategory
    description: str
    required: bool = False
    check_type: CheckMode = CheckMode.AUTOMATIC
    status: ItemStatus = ItemStatus.PENDING
    evidence: str | None = None
    checked_at: datetime | None = None


DEFAULT_TEMPLATE: tuple[ChecklistItem, ...] = (
    ChecklistItem("tests-pass", CheckCategory.TESTS, "All unit tests pass", required=True),
    ChecklistItem("tests-new", CheckCategory.TESTS, "New tests added for new functionality"),
    ChecklistItem("build-success", CheckCategory.BUILD, "Build succeeds", required=True),
    ChecklistItem("lint-pass", CheckCategory.LINT, "No lint errors", required=True),
    ChecklistItem(
        "lint-warnings",
        CheckCategory.LINT,
        "Lint warnings reviewed",
        check_type=CheckMode.MANUAL,
    ),
    ChecklistItem("types-strict", CheckCategory.TYPES, "No type errors", required=True),
    ChecklistItem("coverage-threshold", CheckCategory.COVERAGE, "Coverage meets threshold"),
    ChecklistItem(
        "docs-updated",
        CheckCategory.DOCUMENTATION,
        "Documentation updated",
        check_type=CheckMode.MANUAL,
    ),
    ChecklistItem(
        "docstrings-added",
        CheckCategory.DOCUMENTATION,
        "Docstrings on public functions",
    ),
)

STATUS_SYMBOLS = {
    ItemStatus.PENDING: "[ ]",
    ItemStatus.PASSED: "[x]",
    ItemStatus.FAILED: "[!]",
    ItemStatus.SKIPPED: "[-]",
    ItemStatus.NOT_APPLICABLE: "[~]",
}


@dataclass
class CategoryCount:
    total: int = 0
    passed: int = 0


@dataclass
class ChecklistResult:
    """Computed view of a checklist at one point in time."""

    task_id: str
    passed: bool
    by_status: dict[ItemStatus, int]
    by_category: dict[CheckCategory, CategoryCount]
    failed_required: list[ChecklistItem] = field(default_factory=list)
    pending_items: list[ChecklistItem] = field(default_factory=list)
    pass_percent: int = 100
    summary: str = ""

    @property
    def failed_required_ids(self) -> list[str]:
        return [item.id for item in self.failed_required]


class Checklist:
    """Pass/fail ledger for one verification attempt."""

    def __init__(
        self,
        task_id: str,
        custom_items: Iterable[ChecklistItem] = (),
        *,
        use_defaults: bool = True,
    ):
        self.task_id = task_id
        self._items: dict[str, ChecklistItem] = {}
        if use_defaults:
            for item in DEFAULT_TEMPLATE:
                self.add_item(copy.copy(item))
        for item in custom_items:
            self.add_item(copy.copy(item))

    def add_item(self, item: ChecklistItem) -> None:
        """Add or replace an item by id."""
        self._items[item.id] = item

    def get_item(self, item_id: str) -> ChecklistItem | None:
        return self._items.get(item_id)

    @property
    def items(self) -> list[ChecklistItem]:
        return list(self._items.values())

    def _mark(self, item_id: str, status: ItemStatus, evidence: str | None) -> bool:
        item = self._items.get(item_id)
        if item is None:
            return False
        item.status = status
        item.evidence = evidence
        item.checked_at = datetime.now(timezone.utc)
        return True

    def mark_passed(self, item_id: str, evidence: str | None = None) -> bool:
        return self._mark(item_id, ItemStatus.PASSED, evidence)

    def mark_failed(self, item_id: str, evidence: str | None = None) -> bool:
        return self._mark(item_id, ItemStatus.FAILED, evidence)

    def mark_skipped(self, item_id: str, evidence: str | None = None) -> bool:
        return self._mark(item_id, ItemStatus.SKIPPED, evidence)

    def mark_not_applicable(self, item_id: str, evidence: str | None = None) -> bool:
        return self._mark(item_id, ItemStatus.NOT_APPLICABLE, evidence)

    def get_result(self) -> ChecklistResult:
        items = self.items
        by_status = {status: 0 for status in ItemStatus}
        by_category: dict[CheckCategory, CategoryCount] = {}

        for item in items:
            by_status[item.status] += 1
            if item.status == ItemStatus.NOT_APPLICABLE:
                continue
            counts = by_category.setdefault(item.category, CategoryCount())
            counts.total += 1
            if item.status == ItemStatus.PASSED:
                counts.passed += 1

        failed_required = [i for i in items if i.required and i.status == ItemStatus.FAILED]
        pending_items = [i for i in items if i.status == ItemStatus.PENDING]

        applicable = len(items) - by_status[ItemStatus.NOT_APPLICABLE] - by_status[ItemStatus.SKIPPED]
        pass_percent = (
            round(by_status[ItemStatus.PASSED] / applicable * 100) if applicable else 100
        )
        passed = not failed_required and not pending_items

        if passed:
            summary = f"All {by_status[ItemStatus.PASSED]} checks passed"
        elif failed_required:
            ids = ", ".join(i.id for i in failed_required)
            summary = f"{len(failed_required)} required check(s) failed: {ids}"
        else:
            summary = f"{len(pending_items)} check(s) pending"

        return ChecklistResult(
            task_id=self.task_id,
            passed=passed,
            by_status=by_status,
            by_category=by_category,
            failed_required=failed_required,
            pending_items=pending_items,
            pass_percent=pass_percent,
            summary=summary,
        )

    def format(self) -> str:
        """Plain-text report grouped by category."""
        result = self.get_result()
        lines = [f"Verification checklist for {self.task_id}", ""]
        for category in CheckCategory:
            group = [i for i in self.items if i.category == category]
            if not group:
                continue
            lines.append(f"{category.value.title()}:")
            for item in group:
                marker = " (required)" if item.required else ""
                lines.append(f"  {STATUS_SYMBOLS[item.status]} {item.description}{marker}")
                if item.evidence:
                    lines.append(f"      {item.evidence}")
            lines.append("")
        lines.append(f"{result.summary} ({result.pass_percent}%)")
        return "\n".join(lines)
