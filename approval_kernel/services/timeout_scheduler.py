"""
TimeoutScheduler -- In-process polling driver for step timeouts.

Contract:
    Scans PENDING approvals on a configurable interval and dispatches
    ``ApprovalService.handle_timeout`` for each overdue step, then
    optionally expires stale requests.  The approval engine itself stays
    passive; this is the only component that acts on the clock.

Architecture: approval_kernel/services.  Store-agnostic: it only sees a
    ``service_scope`` factory yielding an ApprovalService bound to a fresh
    unit of work (commit on success, rollback on error).

Invariants enforced:
    - All timestamps from the injected Clock.
    - Each dispatch runs in its own unit of work; one failure is logged
      and the scan continues.
    - Idempotent: handle_timeout re-checks status, step and deadline under
      the per-approval lock, and NOTIFY steps are marked once notified.
    - Graceful shutdown: the stop signal is honoured between dispatches.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from contextlib import AbstractContextManager
from decimal import Decimal

from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.logging_config import get_logger
from approval_kernel.services.approval_service import ApprovalService

logger = get_logger("services.timeout_scheduler")

ServiceScope = Callable[[], AbstractContextManager[ApprovalService]]


class TimeoutScheduler:
    """Polling scheduler for approval step timeouts.

    Contract:
        - ``scan_and_dispatch()`` handles every currently overdue step once.
        - ``start()`` / ``stop()`` for background thread operation.

    Non-goals:
        - NOT a distributed scheduler (no leader election).  Running two
          schedulers is safe but wasteful; the optimistic version check
          makes duplicate dispatches no-ops.
    """

    def __init__(
        self,
        service_scope: ServiceScope,
        clock: Clock | None = None,
        tick_interval_seconds: float = 300,
        max_pending_hours: Decimal | int | float | None = None,
    ):
        self._service_scope = service_scope
        self._clock = clock or SystemClock()
        self._tick_interval = tick_interval_seconds
        self._max_pending_hours = max_pending_hours
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def scan_and_dispatch(self) -> int:
        """Dispatch every overdue step (public for testing).

        Returns the number of successful dispatches.
        """
        with self._service_scope() as service:
            due = service.list_overdue_steps()

        logger.debug(
            "timeout_scan_started",
            extra={"due_count": len(due), "as_of": self._clock.now()},
        )

        dispatched = 0
        for approval_id, step_order in due:
            if self._stop_event.is_set():
                break
            try:
                with self._service_scope() as service:
                    service.handle_timeout(approval_id, step_order)
                dispatched += 1
            except Exception:
                logger.exception(
                    "timeout_dispatch_failed",
                    extra={"approval_id": str(approval_id), "step_order": step_order},
                )

        if self._max_pending_hours is not None and not self._stop_event.is_set():
            self._expire_stale()

        if due:
            logger.info(
                "timeout_scan_completed",
                extra={"due_count": len(due), "dispatched": dispatched},
            )
        return dispatched

    def tick(self) -> int:
        """One scan that never raises (used by the background loop)."""
        try:
            return self.scan_and_dispatch()
        except Exception:
            logger.exception("timeout_scan_failed")
            return 0

    def start(self) -> None:
        """Start the scheduler in a background thread."""
        if self._thread is not None and self._thread.is_alive():
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="approval-timeout-scheduler",
            daemon=True,
        )
        self._thread.start()
        logger.info("scheduler_started", extra={"tick_interval": self._tick_interval})

    def stop(self, timeout: float = 30.0) -> None:
        """Signal stop and wait for the scheduler to finish.

        Args:
            timeout: Max seconds to wait for the thread to finish.
        """
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info("scheduler_stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _expire_stale(self) -> int:
        with self._service_scope() as service:
            stale = service.list_stale_approvals(self._max_pending_hours)

        expired = 0
        for approval_id in stale:
            if self._stop_event.is_set():
                break
            try:
                with self._service_scope() as service:
                    if service.expire(approval_id, self._max_pending_hours) is not None:
                        expired += 1
            except Exception:
                logger.exception(
                    "expire_stale_failed",
                    extra={"approval_id": str(approval_id)},
                )
        if stale:
            logger.info(
                "stale_scan_completed",
                extra={"stale_count": len(stale), "expired_count": expired},
            )
        return expired

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            self.tick()
            self._stop_event.wait(timeout=self._tick_interval)
