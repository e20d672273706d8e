"""Tests for verification governance, retry limits, stability and checks."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

import pytest

from coe.core.cancel import CancelToken
from coe.core.config import VerificationConfig
from coe.events import VERIFICATION_CHANNEL, EventManager, EventType
from coe.orchestrator.status import StatusStateMachine, TaskStatus, Trigger
from coe.tickets import TicketStatus
from coe.verification import (
    CheckOutcome,
    Checklist,
    CommandCheck,
    CoverageCheck,
    ItemStatus,
    Recommendation,
    RetryLimiter,
    StabilityTimer,
    Verdict,
    VerificationGovernor,
    default_checks,
    run_checks,
)


@dataclass
class StubCheck:
    item_id: str
    status: ItemStatus
    evidence: str = ""

    async def run(self) -> CheckOutcome:
        return CheckOutcome(self.item_id, self.status, self.evidence)


def _checks(tests: ItemStatus = ItemStatus.PASSED):
    def factory(task_id: str):
        return [
            StubCheck("tests-pass", tests, "2 failed" if tests == ItemStatus.FAILED else ""),
            StubCheck("build-success", ItemStatus.PASSED),
            StubCheck("lint-pass", ItemStatus.PASSED),
            StubCheck("types-strict", ItemStatus.PASSED),
        ]

    return factory


def _machine_in_verification(task_id: str = "T1", events=None) -> StatusStateMachine:
    sm = StatusStateMachine(events)
    assert sm.initialize(task_id, has_dependencies=False) == TaskStatus.READY
    assert sm.transition(task_id, Trigger.ASSIGNED) == TaskStatus.IN_PROGRESS
    assert sm.transition(task_id, Trigger.CODING_COMPLETE) == TaskStatus.VERIFICATION
    return sm


def _governor(sm, store=None, *, tests=ItemStatus.PASSED, max_retries=3, events=None):
    config = VerificationConfig(stability_delay=0, max_retry_cycles=max_retries)
    return VerificationGovernor(sm, store, config, checks_factory=_checks(tests), events=events)


class TestGovernor:
    @pytest.mark.asyncio
    async def test_pass_moves_to_done(self, store):
        sm = _machine_in_verification()
        governor = _governor(sm, store)

        outcome = await governor.verify("T1")

        assert outcome.verdict == Verdict.PASSED
        assert outcome.status == TaskStatus.DONE
        assert sm.get_status("T1") == TaskStatus.DONE
        assert outcome.result.passed
        assert await store.list() == []

    @pytest.mark.asyncio
    async def test_failed_required_item_drives_revision(self, store):
        sm = _machine_in_verification()
        governor = _governor(sm, store, tests=ItemStatus.FAILED)

        outcome = await governor.verify("T1")

        assert outcome.verdict == Verdict.RETRYING
        assert outcome.retry_count == 1
        assert governor.limiter.get_count("T1") == 1
        triggers = [(e.trigger, e.to_status) for e in sm.get_history("T1")[-2:]]
        assert triggers == [
            ("verification-failed", TaskStatus.NEEDS_REVISION),
            ("revision-started", TaskStatus.IN_PROGRESS),
        ]
        assert sm.get_status("T1") == TaskStatus.IN_PROGRESS
        assert outcome.result.failed_required_ids == ["tests-pass"]
        assert await store.list() == []

    @pytest.mark.asyncio
    async def test_exhausted_retries_fail_and_escalate_once(self, store):
        sm = _machine_in_verification()
        governor = _governor(sm, store, tests=ItemStatus.FAILED, max_retries=2)

        outcome = await governor.verify("T1")
        assert outcome.verdict == Verdict.RETRYING
        assert outcome.retry_count == 1
        sm.transition("T1", Trigger.CODING_COMPLETE)

        outcome = await governor.verify("T1")

        assert outcome.verdict == Verdict.FAILED
        assert outcome.status == TaskStatus.FAILED
        assert outcome.retry_count == 2
        assert "tests-pass" in outcome.message
        tickets = await store.list(TicketStatus.ESCALATED)
        assert len(tickets) == 1
        assert tickets[0].title == "Manual Intervention Required: T1"
        assert tickets[0].priority == 1
        assert tickets[0].id == outcome.ticket_id
        assert "Failed criteria: tests-pass" in tickets[0].description

    @pytest.mark.asyncio
    async def test_counter_survives_pass_until_reset(self, store):
        sm = _machine_in_verification()
        governor = _governor(sm, store, tests=ItemStatus.FAILED)
        await governor.verify("T1")
        sm.transition("T1", Trigger.CODING_COMPLETE)

        governor._checks_factory = _checks(ItemStatus.PASSED)
        outcome = await governor.verify("T1")

        assert outcome.verdict == Verdict.PASSED
        assert outcome.retry_count == 1
        governor.reset_retries("T1")
        assert governor.limiter.get_count("T1") == 0

    @pytest.mark.asyncio
    async def test_verdict_agrees_with_limiter(self, store):
        sm = _machine_in_verification()
        governor = _governor(sm, store, tests=ItemStatus.FAILED, max_retries=2)

        outcome = await governor.verify("T1")
        check = governor.limiter.check("T1")
        assert outcome.verdict == Verdict.RETRYING
        assert check.can_retry
        assert not check.should_escalate

        sm.transition("T1", Trigger.CODING_COMPLETE)
        outcome = await governor.verify("T1")
        assert outcome.verdict == Verdict.FAILED
        assert not governor.limiter.check("T1").can_retry
        assert governor.limiter.is_escalated("T1")

    @pytest.mark.asyncio
    async def test_single_cycle_limit_fails_first_time(self, store):
        sm = _machine_in_verification()
        governor = _governor(sm, store, tests=ItemStatus.FAILED, max_retries=1)

        outcome = await governor.verify("T1")

        assert outcome.verdict == Verdict.FAILED
        assert sm.get_status("T1") == TaskStatus.FAILED

    @pytest.mark.asyncio
    async def test_not_in_verification_is_skipped(self):
        sm = StatusStateMachine()
        sm.initialize("T1")
        governor = _governor(sm)

        outcome = await governor.verify("T1")

        assert outcome.verdict == Verdict.SKIPPED
        assert sm.get_status("T1") == TaskStatus.READY

    @pytest.mark.asyncio
    async def test_prefill_marks_items_before_checks(self):
        sm = _machine_in_verification()
        governor = _governor(sm)

        def prefill(checklist: Checklist) -> None:
            checklist.mark_passed("docs-updated", "README touched")

        outcome = await governor.verify("T1", prefill=prefill)

        assert outcome.verdict == Verdict.PASSED
        assert outcome.result.by_status[ItemStatus.PASSED] == 5

    @pytest.mark.asyncio
    async def test_cancelled_token_leaves_status(self):
        sm = _machine_in_verification()
        governor = _governor(sm)
        token = CancelToken()
        token.cancel("shutdown")

        outcome = await governor.verify("T1", token=token)

        assert outcome.verdict == Verdict.CANCELLED
        assert sm.get_status("T1") == TaskStatus.VERIFICATION

    @pytest.mark.asyncio
    async def test_publishes_verification_events(self):
        events = EventManager()
        sub = events.subscribe(VERIFICATION_CHANNEL)
        sm = _machine_in_verification()
        governor = _governor(sm, tests=ItemStatus.FAILED, events=events)

        await governor.verify("T1")

        received = sub.drain()
        assert [e.event_type for e in received] == [EventType.VERIFICATION_FAILED]
        assert received[0].data["failed_required"] == ["tests-pass"]
        assert received[0].data["retry_count"] == 1


class TestRetryLimiter:
    def test_counts_and_check(self):
        limiter = RetryLimiter(max_retries=2)
        assert limiter.record_failure("t", "tests failed") == 1
        check = limiter.check("t")
        assert check.can_retry
        assert check.remaining == 1
        assert not check.should_escalate

        limiter.record_failure("t", "tests failed")
        check = limiter.check("t")
        assert not check.can_retry
        assert check.should_escalate
        assert check.escalation.attempts == 2

    def test_escalated_task_is_not_escalated_again(self):
        limiter = RetryLimiter(max_retries=1)
        limiter.record_failure("t", "x")
        limiter.mark_escalated("t")
        assert not limiter.check("t").should_escalate

    def test_recommendations(self):
        limiter = RetryLimiter()
        limiter.record_failure("same", "lint")
        limiter.record_failure("same", "lint")
        limiter.record_failure("varied", "lint")
        limiter.record_failure("varied", "tests")
        limiter.record_failure("optional", "coverage", required_failed=False)

        assert limiter.escalation_info("same").recommendation == Recommendation.MANUAL_FIX
        assert limiter.escalation_info("varied").recommendation == Recommendation.CHANGE_APPROACH
        assert limiter.escalation_info("optional").recommendation == Recommendation.SKIP

    def test_to_context(self):
        limiter = RetryLimiter()
        limiter.record_failure("t", "tests failed", ["tests-pass"], ["test_login"])
        text = limiter.escalation_info("t").to_context()
        assert "Task t failed verification 1 time(s)." in text
        assert "  1. tests failed" in text
        assert "Failed tests: test_login" in text

    def test_reset_and_clamp(self):
        limiter = RetryLimiter(max_retries=0)
        assert limiter.max_retries == 1
        limiter.record_failure("t", "x")
        limiter.mark_escalated("t")
        limiter.reset("t")
        assert limiter.get_count("t") == 0
        assert not limiter.is_escalated("t")
        limiter.set_max_retries(5)
        assert limiter.max_retries == 5


class TestStabilityTimer:
    @pytest.mark.asyncio
    async def test_zero_delay_returns_immediately(self):
        assert await StabilityTimer(delay=0).wait_for_stability("t") is True

    @pytest.mark.asyncio
    async def test_waits_for_quiet_period(self):
        timer = StabilityTimer(delay=0.2, max_wait=5)
        loop = asyncio.get_running_loop()
        started = loop.time()

        waiter = asyncio.create_task(timer.wait_for_stability("t"))
        await asyncio.sleep(0.1)
        timer.report_file_change("t")

        assert await waiter is True
        assert loop.time() - started >= 0.25
        assert timer.active_count == 0

    @pytest.mark.asyncio
    async def test_changes_without_waiter_leave_no_state(self):
        timer = StabilityTimer(delay=0.05, max_wait=5)
        for task_id in ("a", "b", "c"):
            timer.report_file_change(task_id)
        assert timer._last_change == {}

        assert await timer.wait_for_stability("a") is True
        assert timer._last_change == {}
        assert timer.active_count == 0

    @pytest.mark.asyncio
    async def test_max_wait_caps_the_delay(self):
        timer = StabilityTimer(delay=10, max_wait=0.1)
        assert await asyncio.wait_for(timer.wait_for_stability("t"), timeout=2) is True

    @pytest.mark.asyncio
    async def test_cancel(self):
        timer = StabilityTimer(delay=10, max_wait=60)
        waiter = asyncio.create_task(timer.wait_for_stability("t"))
        await asyncio.sleep(0.01)

        assert timer.cancel("t") is True
        assert await asyncio.wait_for(waiter, timeout=1) is False
        assert timer.cancel("t") is False


class TestChecks:
    @pytest.mark.asyncio
    async def test_command_exit_codes(self, tmp_path):
        passed = await CommandCheck("tests-pass", "echo ok", tmp_path).run()
        failed = await CommandCheck("tests-pass", "echo boom; exit 3", tmp_path).run()

        assert passed.status == ItemStatus.PASSED
        assert failed.status == ItemStatus.FAILED
        assert "exited 3" in failed.evidence
        assert "boom" in failed.evidence

    @pytest.mark.asyncio
    async def test_empty_command_is_not_applicable(self):
        outcome = await CommandCheck("lint-pass", "").run()
        assert outcome.status == ItemStatus.NOT_APPLICABLE

    @pytest.mark.asyncio
    async def test_command_timeout_fails(self, tmp_path):
        outcome = await CommandCheck("build-success", "sleep 5", tmp_path, timeout=0.2).run()
        assert outcome.status == ItemStatus.FAILED
        assert "timed out" in outcome.evidence

    def test_coverage_threshold(self):
        check = CoverageCheck("coverage-threshold", "cov", threshold=80)
        assert check.evaluate(0, "TOTAL 120 10 91%").status == ItemStatus.PASSED
        assert check.evaluate(0, "TOTAL 120 60 50%").status == ItemStatus.FAILED
        assert check.evaluate(0, "no numbers").status == ItemStatus.FAILED

    def test_coverage_reads_total_line(self):
        check = CoverageCheck("coverage-threshold", "cov", threshold=85)
        output = "app.py 40 2 95%\nTOTAL 100 10 90%\nRequired test coverage of 80% reached."
        outcome = check.evaluate(0, output)
        assert outcome.status == ItemStatus.PASSED
        assert outcome.evidence == "Coverage 90.0% (threshold 85%)"

    def test_default_checks_follow_config(self):
        config = VerificationConfig(test_command="pytest", coverage_threshold=0)
        checks = {c.item_id: c for c in default_checks(config)}
        assert checks["tests-pass"].command == "pytest"
        assert checks["lint-pass"].command == ""
        assert checks["coverage-threshold"].command == ""

    def test_coverage_has_its_own_command(self):
        config = VerificationConfig(test_command="pytest -q", coverage_command="pytest --cov -q")
        checks = {c.item_id: c for c in default_checks(config)}
        assert checks["coverage-threshold"].command == "pytest --cov -q"
        assert checks["tests-pass"].command == "pytest -q"

        checks = {c.item_id: c for c in default_checks(VerificationConfig(test_command="pytest"))}
        assert checks["coverage-threshold"].command == ""

    @pytest.mark.asyncio
    async def test_run_checks_marks_items(self):
        checklist = Checklist("t")
        outcomes = await run_checks(
            checklist,
            [StubCheck("tests-pass", ItemStatus.PASSED), StubCheck("unknown", ItemStatus.PASSED)],
        )
        assert len(outcomes) == 2
        assert checklist.get_item("tests-pass").status == ItemStatus.PASSED

    @pytest.mark.asyncio
    async def test_run_checks_stops_when_cancelled(self):
        checklist = Checklist("t")
        token = CancelToken()
        token.cancel("stop")
        checks = [StubCheck("tests-pass", ItemStatus.PASSED)]
        assert await run_checks(checklist, checks, token=token) == []
        assert checklist.get_item("tests-pass").status == ItemStatus.PENDING
