"""Automated checks that fill a verification checklist.

Each check runs a shell command in the task's working directory and marks
one checklist item. A check with no command configured marks its item n/a.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from ..core.cancel import CancelToken
from ..core.config import VerificationConfig
from .checklist import Checklist, ItemStatus

logger = logging.getLogger(__name__)

# Last N characters of command output kept as evidence
EVIDENCE_TAIL = 500

COVERAGE_PATTERN = re.compile(r"(\d+(?:\.\d+)?)\s*%")
TOTAL_LINE = re.compile(r"^\s*TOTAL\b.*?(\d+(?:\.\d+)?)\s*%\s*$", re.MULTILINE)


@dataclass
class CheckOutcome:
    """Result of running one check."""

    item_id: str
    status: ItemStatus
    evidence: str = ""


@dataclass
class CommandCheck:
    """Pass when ``command`` exits 0."""

    item_id: str
    command: str
    cwd: Path | None = None
    timeout: float = 600.0

    async def run(self) -> CheckOutcome:
        if not self.command.strip():
            return CheckOutcome(self.item_id, ItemStatus.NOT_APPLICABLE, "No command configured")

        exit_code, output = await self._execute()
        if exit_code is None:
            return CheckOutcome(self.item_id, ItemStatus.FAILED, output)
        return self.evaluate(exit_code, output)

    def evaluate(self, exit_code: int, output: str) -> CheckOutcome:
        status = ItemStatus.PASSED if exit_code == 0 else ItemStatus.FAILED
        evidence = f"`{self.command}` exited {exit_code}\n{output[-EVIDENCE_TAIL:]}".rstrip()
        return CheckOutcome(self.item_id, status, evidence)

    async def _execute(self) -> tuple[int | None, str]:
        """Run the command. Returns (exit_code, output); exit_code None on launch failure."""
        try:
            proc = await asyncio.create_subprocess_shell(
                self.command,
                cwd=str(self.cwd) if self.cwd else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            return None, f"Could not run `{self.command}`: {e}"

        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except TimeoutError:
            proc.kill()
            await proc.wait()
            return None, f"`{self.command}` timed out after {self.timeout:.0f}s"
        except asyncio.CancelledError:
            proc.kill()
            await proc.wait()
            raise

        return proc.returncode or 0, stdout.decode(errors="replace")


@dataclass
class CoverageCheck(CommandCheck):
    """Pass when the reported total coverage meets the threshold.

    Reads the percentage on the report's ``TOTAL`` line, falling back to the
    last percentage in the output for tools that print a bare summary.
    """

    threshold: int = 80

    def evaluate(self, exit_code: int, output: str) -> CheckOutcome:
        total = TOTAL_LINE.findall(output)
        matches = total or COVERAGE_PATTERN.findall(output)
        if exit_code != 0 or not matches:
            return CheckOutcome(
                self.item_id,
                ItemStatus.FAILED,
                f"No coverage figure found (exit {exit_code})\n{output[-EVIDENCE_TAIL:]}".rstrip(),
            )
        percent = float(matches[-1])
        status = ItemStatus.PASSED if percent >= self.threshold else ItemStatus.FAILED
        return CheckOutcome(
            self.item_id,
            status,
            f"Coverage {percent:.1f}% (threshold {self.threshold}%)",
        )


def default_checks(config: VerificationConfig) -> list[CommandCheck]:
    """Build the standard test/build/lint/types/coverage checks from config."""
    cwd = config.working_dir
    timeout = config.check_timeout
    return [
        CommandCheck("tests-pass", config.test_command, cwd, timeout),
        CommandCheck("build-success", config.build_command, cwd, timeout),
        CommandCheck("lint-pass", config.lint_command, cwd, timeout),
        CommandCheck("types-strict", config.type_check_command, cwd, timeout),
        CoverageCheck(
            "coverage-threshold",
            config.coverage_command if config.coverage_threshold > 0 else "",
            cwd,
            timeout,
            threshold=config.coverage_threshold,
        ),
    ]


async def run_checks(
    checklist: Checklist,
    checks: Sequence[CommandCheck],
    *,
    token: CancelToken | None = None,
) -> list[CheckOutcome]:
    """Run checks in order and mark their checklist items.

    Stops early (leaving remaining items pending) if the token is cancelled.
    """
    outcomes: list[CheckOutcome] = []
    for check in checks:
        if token is not None and token.cancelled:
            logger.info("Checks for %s cancelled: %s", checklist.task_id, token.reason)
            break
        outcome = await check.run()
        if token is not None:
            token.touch()
        apply_outcome(checklist, outcome)
        outcomes.append(outcome)
    return outcomes


def apply_outcome(checklist: Checklist, outcome: CheckOutcome) -> bool:
    marks = {
        ItemStatus.PASSED: checklist.mark_passed,
        ItemStatus.FAILED: checklist.mark_failed,
        ItemStatus.SKIPPED: checklist.mark_skipped,
        ItemStatus.NOT_APPLICABLE: checklist.mark_not_applicable,
    }
    mark = marks.get(outcome.status)
    if mark is None or not mark(outcome.item_id, outcome.evidence or None):
        logger.warning("Check result for unknown item %s ignored", outcome.item_id)
        return False
    return True

