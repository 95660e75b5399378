"""
approval_kernel.services.approval_service -- Approval lifecycle management.

Responsibility:
    Imperative shell around the pure approval state machine: submission,
    approve/reject decisions, delegation, escalation, timeout handling,
    stale-request expiry, and the read-side queries.  Loads state through
    ApprovalStore, authorizes the actor, applies the pure transition,
    persists the new snapshot, then emits audit entries and notifications.

Architecture position:
    Kernel > Services.  May import from domain/, exceptions, logging_config
    and approval_engines.  Never commits; the caller owns the transaction.

Invariants enforced:
    - Every mutating operation on an approval runs under its per-approval
      lock (ApprovalLockRegistry) and persists with a compare-and-swap on
      ``ApprovalRequest.version``; retryable conflicts are re-applied from
      a fresh load up to ``max_attempts`` times.
    - Decisions are idempotent on ``record_id``: a record already in the
      log is never appended twice.
    - The reserved system actor never passes human authorization; timeout
      actions use a dedicated path.
    - Audit and notification delivery are fire-and-forget: failures are
      logged and never fail the operation.  Store failures propagate.

Failure modes:
    - ApprovalNotFoundError, StepNotFoundError, WorkflowNotFoundError.
    - ApprovalNotPendingError on decisions/delegations for terminal requests.
    - UnauthorizedApproverError / UnauthorizedDelegatorError.
    - InvalidDelegationError on self-delegation or non-positive expiry.
    - DuplicatePendingApprovalError on a second PENDING request per document.
    - NoMatchingWorkflowError when no template routes the document.
    - OptimisticLockError when retries are exhausted or not possible.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, TypeVar
from uuid import UUID, uuid4

from approval_engines.progress import (
    approved_principals,
    count_approvals,
    find_effective_delegation,
    is_direct_approver,
    is_past,
    is_step_overdue,
    step_deadline,
)
from approval_engines.state_machine import (
    Transition,
    TransitionKind,
    apply_decision,
    apply_escalation,
    current_step,
    expire,
    mark_timeout_notified,
    open_request,
    replayed_outcome,
)
from approval_kernel.domain.approval import (
    SYSTEM_ACTOR_ID,
    ActionOutcome,
    ApprovalAction,
    ApprovalHistoryEntry,
    ApprovalRecord,
    ApprovalRequest,
    AuditAction,
    AuditEntry,
    Delegation,
    Escalation,
    NotificationKind,
    QuorumCounting,
    StepConditionMode,
)
from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.domain.collaborators import (
    ApprovalStore,
    AuditSink,
    NotificationSink,
)
from approval_kernel.domain.workflow import (
    Document,
    EscalationAction,
    Step,
    WorkflowTemplate,
)
from approval_kernel.exceptions import (
    ApprovalEngineError,
    ApprovalNotFoundError,
    ApprovalNotPendingError,
    DuplicatePendingApprovalError,
    InvalidDelegationError,
    NoMatchingWorkflowError,
    OptimisticLockError,
    StepNotFoundError,
    UnauthorizedApproverError,
    UnauthorizedDelegatorError,
    WorkflowNotFoundError,
)
from approval_kernel.logging_config import LogContext, get_logger
from approval_kernel.services.locks import ApprovalLockRegistry
from approval_kernel.services.workflow_service import WorkflowService

logger = get_logger("services.approval")

T = TypeVar("T")

TIMEOUT_ESCALATION_REASON = "Automatic escalation due to timeout"
AUTO_APPROVE_COMMENT = "Auto-approved due to timeout"
AUTO_REJECT_COMMENT = "Auto-rejected due to timeout"


class ApprovalService:
    """Runs the approval state machine against the collaborators.

    Args:
        store: Persistence for templates, requests and side relations.
        notifier: Outbound notification sink.
        auditor: Approval audit log sink.
        clock: Time source (SystemClock by default).
        locks: Per-approval lock registry.  Share one registry between
            every service instance in the process.
        quorum_counting: How APPROVED records count toward a quorum.
        step_condition_mode: Whether step conditions gate applicability.
        max_attempts: Attempts per operation on retryable version conflicts.
        workflows: Workflow service used for template selection; built
            over ``store`` when omitted.
    """

    def __init__(
        self,
        store: ApprovalStore,
        notifier: NotificationSink,
        auditor: AuditSink,
        clock: Clock | None = None,
        *,
        locks: ApprovalLockRegistry | None = None,
        quorum_counting: QuorumCounting = QuorumCounting.DISTINCT_APPROVERS,
        step_condition_mode: StepConditionMode = StepConditionMode.IGNORE,
        max_attempts: int = 3,
        workflows: WorkflowService | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._store = store
        self._notifier = notifier
        self._auditor = auditor
        self._clock = clock or SystemClock()
        self._locks = locks or ApprovalLockRegistry()
        self._counting = quorum_counting
        self._mode = step_condition_mode
        self._max_attempts = max_attempts
        self._workflows = workflows or WorkflowService(store, self._clock)

    @property
    def clock(self) -> Clock:
        return self._clock

    # ==================================================================
    # Submit
    # ==================================================================

    def submit(
        self,
        document: Document,
        submitted_by: str,
        *,
        notes: str | None = None,
        workflow_id: UUID | None = None,
        owner_id: str | None = None,
    ) -> ApprovalRequest:
        """Open an approval request for ``document``.

        The template is ``workflow_id`` when given (it must belong to the
        owner), otherwise the owner's selected template.  The owner is
        ``owner_id`` or, by default, the submitter.
        """
        owner = owner_id or submitted_by
        with LogContext.bind(document_id=document.document_id, actor_id=submitted_by):
            existing = self._store.find_pending_approval_for_document(document.document_id)
            if existing is not None:
                logger.info(
                    "approval_submit_conflict",
                    extra={"existing_approval_id": str(existing.id)},
                )
                raise DuplicatePendingApprovalError(document.document_id, str(existing.id))

            template = self._resolve_template(owner, document, workflow_id)
            now = self._clock.now()
            transition = open_request(
                uuid4(), template, document, submitted_by, now,
                notes=notes, mode=self._mode,
            )
            saved = self._store.save(transition.request)

            with LogContext.bind(approval_id=str(saved.id), workflow_id=str(template.id)):
                self._audit(saved.id, submitted_by, AuditAction.SUBMITTED, notes)
                self._audit_skipped(saved.id, transition.skipped_steps)
                if transition.entered_step is not None:
                    self._notify_step_approvers(saved, transition.entered_step)
                else:
                    self._audit(saved.id, SYSTEM_ACTOR_ID, AuditAction.APPROVED,
                                "No applicable steps")
                    self._notify_complete(saved)

                logger.info(
                    "approval_submitted",
                    extra={
                        "workflow_name": template.name,
                        "workflow_version": template.version,
                        "status": saved.status.value,
                        "current_step_order": saved.current_step_order,
                    },
                )
            return saved

    def _resolve_template(
        self,
        owner_id: str,
        document: Document,
        workflow_id: UUID | None,
    ) -> WorkflowTemplate:
        if workflow_id is not None:
            template = self._workflows.get_workflow(owner_id, workflow_id)
            if template.is_active:
                return template
        else:
            template = self._workflows.select_workflow(owner_id, document)
            if template is not None:
                return template

        logger.error(
            "no_matching_workflow",
            extra={"owner_id": owner_id, "requested_workflow_id": str(workflow_id)},
        )
        raise NoMatchingWorkflowError(owner_id, document.document_id)

    # ==================================================================
    # Act
    # ==================================================================

    def act(
        self,
        approval_id: UUID,
        acting_user_id: str,
        action: ApprovalAction | str,
        comment: str | None = None,
        conditions: Iterable[str] = (),
        *,
        record_id: UUID | None = None,
    ) -> ActionOutcome:
        """Record an approve/reject decision on the current step.

        ``record_id`` is the idempotency key for this decision; callers
        that retry a request should pass the same value.
        """
        action = ApprovalAction(action)
        record_id = record_id or uuid4()
        conditions = tuple(conditions)

        with self._locks.hold(approval_id), LogContext.bind(
            approval_id=str(approval_id), actor_id=acting_user_id,
        ):
            return self._with_retry(
                "act",
                approval_id,
                lambda: self._act_once(
                    approval_id, acting_user_id, action, comment, conditions,
                    record_id,
                ),
            )

    def _act_once(
        self,
        approval_id: UUID,
        acting_user_id: str,
        action: ApprovalAction,
        comment: str | None,
        conditions: tuple[str, ...],
        record_id: UUID,
        *,
        system: bool = False,
    ) -> ActionOutcome:
        request = self._load(approval_id)
        if request.has_record(record_id):
            logger.info("approval_decision_replayed", extra={"record_id": str(record_id)})
            return replayed_outcome(request, record_id)

        self._require_pending(request)
        template = self._template_for(request)
        step = self._current_step(request, template)
        now = self._clock.now()

        delegated_from = None
        if not system:
            delegated_from = self._authorize(request, step, acting_user_id, now)

        record = ApprovalRecord(
            record_id=record_id,
            step_order=step.order,
            approver_id=acting_user_id,
            status=action.record_status,
            timestamp=now,
            comment=comment,
            conditions=conditions,
            delegated_from=delegated_from,
        )
        transition = apply_decision(
            request, template, record,
            counting=self._counting,
            mode=self._mode,
            satisfies_quorum=system,
        )
        saved = self._store.save(transition.request)
        self._emit_decision(saved, step, transition, acting_user_id, comment)
        return transition.outcome

    def _authorize(
        self,
        request: ApprovalRequest,
        step: Step,
        user_id: str,
        now: datetime,
    ) -> str | None:
        """Return the delegator acted for (None for a direct approver)."""
        if is_direct_approver(step, user_id):
            return None
        delegation = find_effective_delegation(
            self._store.list_delegations(request.id), step.order, user_id, now,
            approved_principals(request.records, step.order),
        )
        if delegation is not None:
            return delegation.delegated_by
        logger.warning(
            "approval_unauthorized",
            extra={"step_order": step.order, "approver_ids": list(step.approver_ids)},
        )
        raise UnauthorizedApproverError(str(request.id), user_id, step.order)

    def _emit_decision(
        self,
        request: ApprovalRequest,
        step: Step,
        transition: Transition,
        actor_id: str,
        comment: str | None,
    ) -> None:
        kind = transition.kind

        if kind == TransitionKind.REJECTED:
            self._audit(request.id, actor_id, AuditAction.REJECTED, comment)
            self._notify(
                [request.submitted_by],
                NotificationKind.APPROVAL_REJECTED,
                "Proposal Rejected",
                "Your proposal approval request has been rejected.",
                self._context(request, step_order=step.order),
            )
        elif kind == TransitionKind.PARTIAL:
            self._audit(request.id, actor_id, AuditAction.PARTIAL_APPROVAL, comment)
        elif kind == TransitionKind.ADVANCED:
            self._audit(request.id, actor_id, AuditAction.STEP_APPROVED, comment)
            self._audit_skipped(request.id, transition.skipped_steps)
            self._notify_step_approvers(request, transition.entered_step)
        elif kind == TransitionKind.APPROVED:
            self._audit(request.id, actor_id, AuditAction.APPROVED, comment)
            self._audit_skipped(request.id, transition.skipped_steps)
            self._notify_complete(request)

        logger.info(
            "approval_decision_recorded",
            extra={
                "transition": kind.value,
                "step_order": step.order,
                "status": request.status.value,
                "current_step_order": request.current_step_order,
                "approvals_on_step": count_approvals(
                    request.records_for_step(step.order), self._counting,
                ),
                "quorum": step.quorum,
            },
        )

    # ==================================================================
    # Delegate
    # ==================================================================

    def delegate(
        self,
        approval_id: UUID,
        delegator_id: str,
        delegate_id: str,
        reason: str | None = None,
        expires_in_hours: Decimal | int | float | None = None,
    ) -> Delegation:
        """Grant ``delegate_id`` the delegator's rights on the current step."""
        with self._locks.hold(approval_id), LogContext.bind(
            approval_id=str(approval_id), actor_id=delegator_id,
        ):
            request = self._load(approval_id)
            self._require_pending(request)
            template = self._template_for(request)
            step = self._current_step(request, template)

            if not is_direct_approver(step, delegator_id):
                logger.warning(
                    "delegation_unauthorized",
                    extra={"step_order": step.order},
                )
                raise UnauthorizedDelegatorError(str(approval_id), delegator_id, step.order)
            if delegate_id == delegator_id:
                raise InvalidDelegationError(str(approval_id), "cannot delegate to yourself")
            if delegate_id == SYSTEM_ACTOR_ID:
                raise InvalidDelegationError(
                    str(approval_id), "cannot delegate to the system actor",
                )
            if expires_in_hours is not None and expires_in_hours <= 0:
                raise InvalidDelegationError(
                    str(approval_id), "expires_in_hours must be positive",
                )

            now = self._clock.now()
            expires_at = None
            if expires_in_hours is not None:
                expires_at = now + timedelta(seconds=float(expires_in_hours) * 3600)

            delegation = self._store.create_delegation(
                Delegation(
                    id=uuid4(),
                    approval_id=approval_id,
                    step_order=step.order,
                    delegated_by=delegator_id,
                    delegated_to=delegate_id,
                    reason=reason,
                    created_at=now,
                    expires_at=expires_at,
                )
            )

            details = f"Delegated to {delegate_id}"
            if reason:
                details = f"{details}: {reason}"
            self._audit(approval_id, delegator_id, AuditAction.DELEGATED, details)
            self._notify(
                [delegate_id],
                NotificationKind.APPROVAL_DELEGATED,
                "Approval Delegated to You",
                "An approval request has been delegated to you.",
                self._context(request, step_order=step.order, delegated_by=delegator_id),
            )
            logger.info(
                "approval_delegated",
                extra={
                    "delegate_id": delegate_id,
                    "step_order": step.order,
                    "expires_at": expires_at,
                },
            )
            return delegation

    # ==================================================================
    # Escalate
    # ==================================================================

    def escalate(
        self,
        approval_id: UUID,
        escalator_id: str,
        escalate_to_id: str,
        reason: str,
    ) -> ApprovalRequest:
        """Force the request to ESCALATED and hand it to ``escalate_to_id``.

        Allowed from any status; no step-ownership check.
        """
        with self._locks.hold(approval_id), LogContext.bind(
            approval_id=str(approval_id), actor_id=escalator_id,
        ):
            return self._with_retry(
                "escalate",
                approval_id,
                lambda: self._escalate_once(
                    approval_id, escalator_id, escalate_to_id, reason,
                ),
            )

    def _escalate_once(
        self,
        approval_id: UUID,
        escalator_id: str,
        escalate_to_id: str,
        reason: str,
    ) -> ApprovalRequest:
        request = self._load(approval_id)
        previous_status = request.status
        saved = self._store.save(apply_escalation(request).request)

        self._store.create_escalation(
            Escalation(
                id=uuid4(),
                approval_id=approval_id,
                escalated_by=escalator_id,
                escalated_to=escalate_to_id,
                reason=reason,
                created_at=self._clock.now(),
            )
        )
        self._audit(approval_id, escalator_id, AuditAction.ESCALATED, reason)
        self._notify(
            [escalate_to_id],
            NotificationKind.APPROVAL_ESCALATED,
            "Approval Escalated",
            f"An approval has been escalated to you: {reason}",
            self._context(saved, escalated_by=escalator_id),
        )
        logger.info(
            "approval_escalated",
            extra={
                "escalated_to": escalate_to_id,
                "previous_status": previous_status.value,
            },
        )
        return saved

    # ==================================================================
    # Timeouts
    # ==================================================================

    def handle_timeout(
        self,
        approval_id: UUID,
        expected_step_order: int | None = None,
    ) -> ApprovalRequest | None:
        """Apply the current step's escalation action if it is overdue.

        Re-checks under the lock that the request is still PENDING, still
        on ``expected_step_order`` (when given) and past its deadline.

        Returns:
            The updated request, or None when nothing was done.
        """
        record_id = uuid4()
        with self._locks.hold(approval_id), LogContext.bind(
            approval_id=str(approval_id), actor_id=SYSTEM_ACTOR_ID,
        ):
            return self._with_retry(
                "handle_timeout",
                approval_id,
                lambda: self._handle_timeout_once(
                    approval_id, expected_step_order, record_id,
                ),
            )

    def _handle_timeout_once(
        self,
        approval_id: UUID,
        expected_step_order: int | None,
        record_id: UUID,
    ) -> ApprovalRequest | None:
        request = self._load(approval_id)
        if request.has_record(record_id):
            return request
        if not request.is_pending:
            logger.debug("timeout_skipped_not_pending", extra={"status": request.status.value})
            return None
        if expected_step_order is not None and request.current_step_order != expected_step_order:
            logger.debug(
                "timeout_skipped_step_moved",
                extra={
                    "expected_step_order": expected_step_order,
                    "current_step_order": request.current_step_order,
                },
            )
            return None

        template = self._template_for(request)
        step = self._current_step(request, template)
        now = self._clock.now()
        if not is_step_overdue(step, request, now):
            logger.debug("timeout_skipped_not_due", extra={"step_order": step.order})
            return None

        action = step.escalation_action
        logger.info(
            "approval_step_timed_out",
            extra={
                "step_order": step.order,
                "escalation_action": action.value if action else None,
                "deadline": step_deadline(step, request),
            },
        )

        if action == EscalationAction.NOTIFY:
            if request.timeout_notified_step == step.order:
                return None
            saved = self._store.save(mark_timeout_notified(request).request)
            self._audit(
                approval_id, SYSTEM_ACTOR_ID, AuditAction.TIMEOUT_NOTIFIED,
                f"Step {step.order} ({step.name}) timed out",
            )
            self._notify(
                step.approver_ids,
                NotificationKind.APPROVAL_TIMEOUT,
                "Approval Timeout Warning",
                f"The approval request for step {step.order} has timed out.",
                self._context(saved, step_order=step.order),
            )
            return saved

        if action == EscalationAction.REASSIGN:
            return self._escalate_once(
                approval_id, SYSTEM_ACTOR_ID, step.escalation_to_user_id,
                TIMEOUT_ESCALATION_REASON,
            )

        if action in (EscalationAction.AUTO_APPROVE, EscalationAction.AUTO_REJECT):
            decision = (
                ApprovalAction.APPROVE
                if action == EscalationAction.AUTO_APPROVE
                else ApprovalAction.REJECT
            )
            comment = (
                AUTO_APPROVE_COMMENT
                if decision == ApprovalAction.APPROVE
                else AUTO_REJECT_COMMENT
            )
            self._act_once(
                approval_id, SYSTEM_ACTOR_ID, decision, comment, (), record_id,
                system=True,
            )
            return self._load(approval_id)

        logger.warning("timeout_without_escalation_action", extra={"step_order": step.order})
        return None

    # ==================================================================
    # Expiry
    # ==================================================================

    def list_stale_approvals(self, max_pending_hours: Decimal | int | float) -> list[UUID]:
        """PENDING requests submitted more than ``max_pending_hours`` ago."""
        now = self._clock.now()
        return [
            candidate.id
            for candidate in self._store.list_pending_approvals()
            if is_past(candidate.submitted_at, max_pending_hours, now)
        ]

    def expire(
        self,
        approval_id: UUID,
        max_pending_hours: Decimal | int | float,
    ) -> ApprovalRequest | None:
        """Expire one request if it is still PENDING and past the limit.

        Returns:
            The expired request, or None when nothing was done.
        """
        with self._locks.hold(approval_id), LogContext.bind(
            approval_id=str(approval_id), actor_id=SYSTEM_ACTOR_ID,
        ):
            return self._with_retry(
                "expire",
                approval_id,
                lambda: self._expire_once(approval_id, max_pending_hours),
            )

    def expire_stale(self, max_pending_hours: Decimal | int | float) -> list[UUID]:
        """Expire every stale PENDING request.

        A request that fails to expire is logged and skipped; the rest of
        the batch still runs.
        """
        expired: list[UUID] = []
        failed = 0
        for approval_id in self.list_stale_approvals(max_pending_hours):
            try:
                saved = self.expire(approval_id, max_pending_hours)
            except ApprovalEngineError:
                failed += 1
                logger.exception(
                    "approval_expire_failed",
                    extra={"approval_id": str(approval_id)},
                )
                continue
            if saved is not None:
                expired.append(saved.id)

        if expired or failed:
            logger.info(
                "approvals_expired",
                extra={
                    "count": len(expired),
                    "failed_count": failed,
                    "max_pending_hours": max_pending_hours,
                },
            )
        return expired

    def _expire_once(
        self,
        approval_id: UUID,
        max_pending_hours: Decimal | int | float,
    ) -> ApprovalRequest | None:
        request = self._load(approval_id)
        now = self._clock.now()
        if not request.is_pending or not is_past(request.submitted_at, max_pending_hours, now):
            return None
        saved = self._store.save(expire(request, now).request)
        self._audit(
            approval_id, SYSTEM_ACTOR_ID, AuditAction.EXPIRED,
            f"Expired after {max_pending_hours} hours pending",
        )
        self._notify(
            [saved.submitted_by],
            NotificationKind.APPROVAL_EXPIRED,
            "Approval Expired",
            "Your proposal approval request expired before a decision was made.",
            self._context(saved),
        )
        return saved

    # ==================================================================
    # Queries
    # ==================================================================

    def get_approval(self, approval_id: UUID) -> ApprovalRequest:
        return self._load(approval_id)

    def list_pending_for_approver(self, user_id: str) -> list[ApprovalRequest]:
        """PENDING requests the user can act on now (directly or by delegation)."""
        return self._store.list_pending_approvals_for_approver(user_id, self._clock.now())

    def get_approval_history(self, document_id: str) -> list[ApprovalHistoryEntry]:
        """Every request for the document, newest first, with side relations."""
        return [
            ApprovalHistoryEntry(
                request=request,
                delegations=tuple(self._store.list_delegations(request.id)),
                escalations=tuple(self._store.list_escalations(request.id)),
            )
            for request in self._store.list_approvals_for_document(document_id)
        ]

    def get_audit_trail(self, approval_id: UUID) -> list[AuditEntry]:
        self._load(approval_id)
        return list(self._auditor.entries_for(approval_id))

    def list_overdue_steps(self) -> list[tuple[UUID, int]]:
        """``(approval_id, step_order)`` for PENDING requests whose current
        step is past its deadline and still needs a timeout action.

        NOTIFY steps already notified for the current step are excluded.
        """
        now = self._clock.now()
        templates: dict[UUID, WorkflowTemplate | None] = {}
        due: list[tuple[UUID, int]] = []
        for request in self._store.list_pending_approvals():
            if request.workflow_id not in templates:
                templates[request.workflow_id] = self._store.get_template(request.workflow_id)
            template = templates[request.workflow_id]
            step = template.step(request.current_step_order) if template else None
            if step is None or step.timeout_hours is None:
                continue
            if (
                step.escalation_action == EscalationAction.NOTIFY
                and request.timeout_notified_step == step.order
            ):
                continue
            if is_step_overdue(step, request, now):
                due.append((request.id, step.order))
        return due

    # ==================================================================
    # Internals
    # ==================================================================

    def _with_retry(self, operation: str, approval_id: UUID, fn: Callable[[], T]) -> T:
        for attempt in range(1, self._max_attempts + 1):
            try:
                return fn()
            except OptimisticLockError as exc:
                if not exc.retryable or attempt == self._max_attempts:
                    logger.warning(
                        "approval_conflict_unresolved",
                        extra={
                            "operation": operation,
                            "attempt": attempt,
                            "retryable": exc.retryable,
                        },
                    )
                    raise
                logger.info(
                    "approval_conflict_retry",
                    extra={
                        "operation": operation,
                        "attempt": attempt,
                        "expected_version": exc.expected_version,
                        "actual_version": exc.actual_version,
                    },
                )
        raise AssertionError("unreachable")

    def _load(self, approval_id: UUID) -> ApprovalRequest:
        request = self._store.get_approval(approval_id)
        if request is None:
            raise ApprovalNotFoundError(str(approval_id))
        return request

    def _require_pending(self, request: ApprovalRequest) -> None:
        if not request.is_pending:
            logger.info("approval_not_pending", extra={"status": request.status.value})
            raise ApprovalNotPendingError(str(request.id), request.status.value)

    def _template_for(self, request: ApprovalRequest) -> WorkflowTemplate:
        template = self._store.get_template(request.workflow_id)
        if template is None:
            logger.error(
                "approval_workflow_missing",
                extra={"missing_workflow_id": str(request.workflow_id)},
            )
            raise WorkflowNotFoundError(str(request.workflow_id))
        return template

    def _current_step(self, request: ApprovalRequest, template: WorkflowTemplate) -> Step:
        try:
            return current_step(request, template)
        except StepNotFoundError:
            logger.error(
                "approval_step_missing",
                extra={
                    "current_step_order": request.current_step_order,
                    "step_orders": [s.order for s in template.steps],
                },
            )
            raise

    def _audit_skipped(self, approval_id: UUID, steps: Iterable[Step]) -> None:
        for step in steps:
            self._audit(
                approval_id, SYSTEM_ACTOR_ID, AuditAction.STEP_SKIPPED,
                f"Step {step.order} ({step.name}) conditions not met",
            )

    def _notify_step_approvers(self, request: ApprovalRequest, step: Step | None) -> None:
        if step is None:
            return
        self._notify(
            step.approver_ids,
            NotificationKind.APPROVAL_REQUEST,
            "Approval Required",
            f"You have a proposal pending your approval "
            f"(Step {step.order}: {step.name})",
            self._context(request, step_order=step.order),
        )

    def _notify_complete(self, request: ApprovalRequest) -> None:
        self._notify(
            [request.submitted_by],
            NotificationKind.APPROVAL_COMPLETE,
            "Proposal Approved",
            "Your proposal has been fully approved!",
            self._context(request),
        )

    @staticmethod
    def _context(request: ApprovalRequest, **extra: Any) -> dict[str, Any]:
        context: dict[str, Any] = {
            "approval_id": str(request.id),
            "document_id": request.document_id,
        }
        context.update(extra)
        return context

    def _notify(
        self,
        user_ids: Iterable[str],
        kind: str,
        title: str,
        message: str,
        context: Mapping[str, Any] | None = None,
    ) -> None:
        for user_id in user_ids:
            try:
                self._notifier.notify(user_id, kind, title, message, context)
            except Exception:
                logger.exception(
                    "notification_failed",
                    extra={"recipient_id": user_id, "kind": kind},
                )

    def _audit(
        self,
        approval_id: UUID,
        actor_id: str,
        action: str,
        details: str | None = None,
    ) -> None:
        try:
            self._auditor.record(approval_id, actor_id, action, details)
        except Exception:
            logger.exception(
                "audit_write_failed",
                extra={"audit_action": action},
            )
