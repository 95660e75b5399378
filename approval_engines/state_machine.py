"""
approval_engines.state_machine -- Pure approval request transitions.

Responsibility:
    Compute the next ``ApprovalRequest`` snapshot for each lifecycle
    event (open, approve/reject decision, escalation, timeout notice,
    expiry) together with a ``Transition`` describing what happened, so
    the service layer can persist the snapshot and emit audit entries
    and notifications without re-deriving state.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import approval_kernel/domain/ types and
    approval_kernel.exceptions.

Invariants enforced:
    - PENDING is the only state that accepts decisions; every other
      status is terminal.
    - The decision record is appended before branching, so a rejection
      keeps every earlier record and the rejecting one.
    - First rejection wins: REJECT moves straight to REJECTED.
    - ``completed_at`` is set only for APPROVED, REJECTED and EXPIRED.
    - A synthetic timeout decision satisfies any quorum.

Failure modes:
    - ApprovalNotPendingError when deciding on a terminal request.
    - StepNotFoundError when the current step is missing from the
      template.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from uuid import UUID

from approval_engines.progress import (
    count_approvals,
    document_snapshot,
    next_applicable_step,
)
from approval_kernel.domain.approval import (
    ActionOutcome,
    ApprovalRecord,
    ApprovalRequest,
    ApprovalStatus,
    QuorumCounting,
    StepConditionMode,
)
from approval_kernel.domain.workflow import Document, Step, WorkflowTemplate
from approval_kernel.exceptions import ApprovalNotPendingError, StepNotFoundError


class TransitionKind(str, Enum):
    """What a transition did to the request."""

    OPENED = "OPENED"
    PARTIAL = "PARTIAL"
    ADVANCED = "ADVANCED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    ESCALATED = "ESCALATED"
    TIMEOUT_NOTIFIED = "TIMEOUT_NOTIFIED"
    EXPIRED = "EXPIRED"


@dataclass(frozen=True)
class Transition:
    """Result of a pure transition.

    ``entered_step`` is the step whose approvers must now be notified
    (None when the request left PENDING); ``skipped_steps`` lists steps
    passed over in SKIP mode; ``completed_step`` is the step that met
    its quorum, if any.
    """

    kind: TransitionKind
    request: ApprovalRequest
    outcome: ActionOutcome | None = None
    entered_step: Step | None = None
    completed_step: Step | None = None
    skipped_steps: tuple[Step, ...] = ()


def current_step(request: ApprovalRequest, template: WorkflowTemplate) -> Step:
    """Resolve the request's current step or raise StepNotFoundError."""
    step = template.step(request.current_step_order)
    if step is None:
        raise StepNotFoundError(
            str(request.id), str(template.id), request.current_step_order,
        )
    return step


def _require_pending(request: ApprovalRequest) -> None:
    if not request.is_pending:
        raise ApprovalNotPendingError(str(request.id), request.status.value)


def open_request(
    approval_id: UUID,
    template: WorkflowTemplate,
    document: Document,
    submitted_by: str,
    now: datetime,
    *,
    notes: str | None = None,
    mode: StepConditionMode = StepConditionMode.IGNORE,
) -> Transition:
    """Create a new request positioned on its first applicable step.

    With IGNORE mode that is always step 1.  With SKIP mode, when no step
    applies the request is born APPROVED.
    """
    first, skipped = next_applicable_step(template, 0, document, mode)

    request = ApprovalRequest(
        id=approval_id,
        document_id=document.document_id,
        workflow_id=template.id,
        workflow_version=template.version,
        submitted_by=submitted_by,
        submitted_at=now,
        notes=notes,
        document_value=document.value,
        document_attributes=dict(document.attributes or {}),
    )

    if first is None:
        last_order = template.ordered_steps[-1].order if template.steps else 1
        request = replace(
            request,
            current_step_order=last_order,
            status=ApprovalStatus.APPROVED,
            completed_at=now,
        )
        return Transition(
            kind=TransitionKind.APPROVED,
            request=request,
            skipped_steps=skipped,
        )

    request = replace(request, current_step_order=first.order)
    return Transition(
        kind=TransitionKind.OPENED,
        request=request,
        entered_step=first,
        skipped_steps=skipped,
    )


def apply_decision(
    request: ApprovalRequest,
    template: WorkflowTemplate,
    record: ApprovalRecord,
    *,
    counting: QuorumCounting = QuorumCounting.DISTINCT_APPROVERS,
    mode: StepConditionMode = StepConditionMode.IGNORE,
    satisfies_quorum: bool = False,
) -> Transition:
    """Append ``record`` and move the request accordingly.

    Args:
        request: The PENDING request.
        template: The workflow the request runs under.
        record: The decision, already attributed and timestamped, for
            the current step.
        counting: Quorum counting mode.
        mode: Step condition mode used when advancing.
        satisfies_quorum: Treat an APPROVED record as completing the
            step regardless of quorum (timeout auto-approval).
    """
    _require_pending(request)
    step = current_step(request, template)

    records = request.records + (record,)
    request = replace(request, records=records)

    if record.status == ApprovalStatus.REJECTED:
        request = replace(
            request,
            status=ApprovalStatus.REJECTED,
            completed_at=record.timestamp,
        )
        return Transition(
            kind=TransitionKind.REJECTED,
            request=request,
            outcome=_outcome(request, record),
        )

    approved = count_approvals(request.records_for_step(step.order), counting)
    if not satisfies_quorum and approved < step.quorum:
        return Transition(
            kind=TransitionKind.PARTIAL,
            request=request,
            outcome=_outcome(request, record, waiting=True),
        )

    following, skipped = next_applicable_step(
        template, step.order, document_snapshot(request), mode,
    )

    if following is None:
        request = replace(
            request,
            status=ApprovalStatus.APPROVED,
            completed_at=record.timestamp,
        )
        return Transition(
            kind=TransitionKind.APPROVED,
            request=request,
            outcome=_outcome(request, record),
            completed_step=step,
            skipped_steps=skipped,
        )

    request = replace(
        request,
        current_step_order=following.order,
        timeout_notified_step=None,
    )
    return Transition(
        kind=TransitionKind.ADVANCED,
        request=request,
        outcome=_outcome(request, record),
        entered_step=following,
        completed_step=step,
        skipped_steps=skipped,
    )


def apply_escalation(request: ApprovalRequest) -> Transition:
    """Force ESCALATED from any status.  ``completed_at`` is untouched."""
    request = replace(request, status=ApprovalStatus.ESCALATED)
    return Transition(kind=TransitionKind.ESCALATED, request=request)


def mark_timeout_notified(request: ApprovalRequest) -> Transition:
    """Record that the current step's timeout notice has been sent."""
    _require_pending(request)
    request = replace(request, timeout_notified_step=request.current_step_order)
    return Transition(kind=TransitionKind.TIMEOUT_NOTIFIED, request=request)


def expire(request: ApprovalRequest, now: datetime) -> Transition:
    """Move a stale PENDING request to EXPIRED."""
    _require_pending(request)
    request = replace(request, status=ApprovalStatus.EXPIRED, completed_at=now)
    return Transition(kind=TransitionKind.EXPIRED, request=request)


def replayed_outcome(request: ApprovalRequest, record_id: UUID) -> ActionOutcome:
    """Outcome for a decision already in the log (idempotent retry).

    The request is reported as it stands now; ``waiting_for_more_approvals``
    holds when the request is still PENDING on the recorded step.
    """
    record = next(r for r in request.records if r.record_id == record_id)
    waiting = request.is_pending and record.step_order == request.current_step_order
    return _outcome(request, record, waiting=waiting)


def _outcome(
    request: ApprovalRequest,
    record: ApprovalRecord,
    *,
    waiting: bool = False,
) -> ActionOutcome:
    return ActionOutcome(
        approval_id=request.id,
        status=request.status,
        current_step_order=request.current_step_order,
        waiting_for_more_approvals=waiting,
        record=record,
    )
