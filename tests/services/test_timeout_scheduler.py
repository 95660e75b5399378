"""
Tests for TimeoutScheduler -- polling driver for step timeouts.

Covers:
- scan_and_dispatch handles each overdue step once
- a failing dispatch is logged and the scan continues
- optional stale-request expiry after dispatch
- background thread start/stop
"""

import time
from contextlib import contextmanager

import pytest

from approval_kernel.domain.approval import ApprovalStatus, NotificationKind
from approval_kernel.domain.workflow import EscalationAction
from approval_kernel.services.timeout_scheduler import TimeoutScheduler
from tests.factories import make_document, make_step


@pytest.fixture
def memory_scope(approval_service):
    """A service_scope over the shared in-memory service."""

    @contextmanager
    def _scope():
        yield approval_service

    return _scope


@pytest.fixture
def timed_workflow(create_workflow):
    return create_workflow([
        make_step(1, ["a"], timeout_hours=4, escalation_action=EscalationAction.AUTO_APPROVE),
        make_step(2, ["b"], timeout_hours=4, escalation_action=EscalationAction.NOTIFY),
    ])


class TestScanAndDispatch:

    def test_nothing_due(self, timed_workflow, submit, memory_scope, deterministic_clock):
        submit()
        scheduler = TimeoutScheduler(memory_scope, deterministic_clock)

        assert scheduler.scan_and_dispatch() == 0

    def test_dispatches_each_overdue_step(
        self, timed_workflow, submit, memory_scope, deterministic_clock, approval_service,
    ):
        first = submit(make_document("doc-1"))
        second = submit(make_document("doc-2"))
        deterministic_clock.advance_hours(5)
        scheduler = TimeoutScheduler(memory_scope, deterministic_clock)

        assert scheduler.scan_and_dispatch() == 2

        for request in (first, second):
            assert approval_service.get_approval(request.id).current_step_order == 2

    def test_rescan_is_idempotent(
        self, timed_workflow, submit, memory_scope, deterministic_clock, approval_service, notifier,
    ):
        submit()
        scheduler = TimeoutScheduler(memory_scope, deterministic_clock)
        deterministic_clock.advance_hours(5)
        scheduler.scan_and_dispatch()

        deterministic_clock.advance_hours(5)
        assert scheduler.scan_and_dispatch() == 1
        assert scheduler.scan_and_dispatch() == 0

        assert notifier.kinds_for("b").count(NotificationKind.APPROVAL_TIMEOUT) == 1

    def test_failed_dispatch_does_not_stop_the_scan(
        self, timed_workflow, submit, deterministic_clock, approval_service, captured_logs,
    ):
        first = submit(make_document("doc-1"))
        second = submit(make_document("doc-2"))
        deterministic_clock.advance_hours(5)

        class Exploding:
            def __init__(self, service):
                self._service = service

            def list_overdue_steps(self):
                return self._service.list_overdue_steps()

            def handle_timeout(self, approval_id, step_order):
                if approval_id == first.id:
                    raise RuntimeError("boom")
                return self._service.handle_timeout(approval_id, step_order)

        @contextmanager
        def scope():
            yield Exploding(approval_service)

        scheduler = TimeoutScheduler(scope, deterministic_clock)

        assert scheduler.scan_and_dispatch() == 1
        assert approval_service.get_approval(second.id).current_step_order == 2
        failures = [r for r in captured_logs() if r["message"] == "timeout_dispatch_failed"]
        assert failures[0]["approval_id"] == str(first.id)

    def test_expires_stale_requests(
        self, create_workflow, submit, memory_scope, deterministic_clock, approval_service,
    ):
        create_workflow()
        request = submit()
        deterministic_clock.advance_hours(73)
        scheduler = TimeoutScheduler(memory_scope, deterministic_clock, max_pending_hours=72)

        scheduler.scan_and_dispatch()

        assert approval_service.get_approval(request.id).status == ApprovalStatus.EXPIRED

    def test_each_stale_request_expires_in_its_own_scope(
        self, create_workflow, submit, deterministic_clock, approval_service, captured_logs,
    ):
        create_workflow()
        first = submit(make_document("doc-1"))
        second = submit(make_document("doc-2"))
        deterministic_clock.advance_hours(73)
        scopes = []

        class Exploding:
            def __init__(self, service):
                self._service = service

            def list_overdue_steps(self):
                return self._service.list_overdue_steps()

            def list_stale_approvals(self, max_pending_hours):
                return self._service.list_stale_approvals(max_pending_hours)

            def expire(self, approval_id, max_pending_hours):
                if approval_id == first.id:
                    raise RuntimeError("boom")
                return self._service.expire(approval_id, max_pending_hours)

        @contextmanager
        def scope():
            scopes.append(1)
            yield Exploding(approval_service)

        scheduler = TimeoutScheduler(scope, deterministic_clock, max_pending_hours=72)
        scheduler.scan_and_dispatch()

        assert approval_service.get_approval(first.id).status == ApprovalStatus.PENDING
        assert approval_service.get_approval(second.id).status == ApprovalStatus.EXPIRED
        # overdue scan + stale listing + one per candidate
        assert len(scopes) == 4
        failures = [r for r in captured_logs() if r["message"] == "expire_stale_failed"]
        assert [r["approval_id"] for r in failures] == [str(first.id)]

    def test_tick_never_raises(self, deterministic_clock, captured_logs):
        @contextmanager
        def broken_scope():
            raise RuntimeError("database unavailable")
            yield

        scheduler = TimeoutScheduler(broken_scope, deterministic_clock)

        assert scheduler.tick() == 0
        assert any(r["message"] == "timeout_scan_failed" for r in captured_logs())


@pytest.mark.slow
class TestBackgroundThread:

    def test_start_and_stop(self, timed_workflow, submit, memory_scope, deterministic_clock, approval_service):
        request = submit()
        deterministic_clock.advance_hours(5)
        scheduler = TimeoutScheduler(memory_scope, deterministic_clock, tick_interval_seconds=0.01)

        scheduler.start()
        try:
            deadline = time.monotonic() + 5
            while time.monotonic() < deadline:
                if approval_service.get_approval(request.id).current_step_order == 2:
                    break
                time.sleep(0.01)
        finally:
            scheduler.stop(timeout=5)

        assert not scheduler.is_running
        assert approval_service.get_approval(request.id).current_step_order == 2

    def test_start_is_idempotent(self, memory_scope, deterministic_clock):
        scheduler = TimeoutScheduler(memory_scope, deterministic_clock, tick_interval_seconds=0.01)

        scheduler.start()
        thread = scheduler._thread
        scheduler.start()

        assert scheduler._thread is thread
        scheduler.stop(timeout=5)
