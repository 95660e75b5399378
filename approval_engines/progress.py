"""
approval_engines.progress -- Step progress, quorum, deadline and authority math.

Responsibility:
    Recompute everything about the current step from the append-only
    record log: how many approvals count toward the quorum, whether the
    step is complete, which step comes next, when the step's timeout
    clock started, and whether an actor may decide on the step.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import approval_kernel/domain/ types.

Invariants enforced:
    - Step completion is derived from records, never stored.
    - Quorum counting mode is explicit: DISTINCT_APPROVERS counts each
      principal (the approver, or the delegator a delegate acted for)
      once; RAW_RECORDS counts every APPROVED record.
    - Purity: ``now`` / ``as_of`` are always passed in.
"""

from __future__ import annotations

from collections.abc import Collection, Iterable
from datetime import datetime, timedelta
from decimal import Decimal

from approval_engines.conditions import evaluate_conditions
from approval_kernel.domain.approval import (
    SYSTEM_ACTOR_ID,
    ApprovalRecord,
    ApprovalRequest,
    ApprovalStatus,
    Delegation,
    QuorumCounting,
    StepConditionMode,
)
from approval_kernel.domain.workflow import Document, Step, WorkflowTemplate


def count_approvals(
    records: Iterable[ApprovalRecord],
    counting: QuorumCounting = QuorumCounting.DISTINCT_APPROVERS,
) -> int:
    """Number of approvals that count toward a step's quorum."""
    approved = [r for r in records if r.status == ApprovalStatus.APPROVED]
    if counting == QuorumCounting.RAW_RECORDS:
        return len(approved)
    return len({r.principal_id for r in approved})


def is_step_complete(
    step: Step,
    records: Iterable[ApprovalRecord],
    counting: QuorumCounting = QuorumCounting.DISTINCT_APPROVERS,
) -> bool:
    """True when the step's APPROVED records meet its quorum.

    ``records`` may be the whole log; only records for ``step.order``
    are counted.
    """
    step_records = [r for r in records if r.step_order == step.order]
    return count_approvals(step_records, counting) >= step.quorum


def document_snapshot(request: ApprovalRequest) -> Document:
    """Rebuild the routed document from the request's stored snapshot."""
    return Document(
        document_id=request.document_id,
        value=request.document_value,
        attributes=dict(request.document_attributes or {}),
    )


def is_step_applicable(
    step: Step,
    document: Document,
    mode: StepConditionMode = StepConditionMode.IGNORE,
) -> bool:
    """Whether a step participates for this document.

    In IGNORE mode step conditions are inert and every step applies.
    """
    if mode == StepConditionMode.IGNORE or not step.conditions:
        return True
    return evaluate_conditions(step.conditions, document)


def next_applicable_step(
    template: WorkflowTemplate,
    after_order: int,
    document: Document,
    mode: StepConditionMode = StepConditionMode.IGNORE,
) -> tuple[Step | None, tuple[Step, ...]]:
    """Find the first applicable step with ``order > after_order``.

    Returns:
        ``(step, skipped)`` where ``step`` is None when the workflow has
        no further applicable steps, and ``skipped`` lists the steps
        passed over because their conditions did not hold.
    """
    skipped: list[Step] = []
    for step in template.ordered_steps:
        if step.order <= after_order:
            continue
        if is_step_applicable(step, document, mode):
            return step, tuple(skipped)
        skipped.append(step)
    return None, tuple(skipped)


# =========================================================================
# Timeouts
# =========================================================================


def step_started_at(request: ApprovalRequest) -> datetime:
    """When the current step's timeout clock started.

    The latest record in the log (the step N-1 completion, or the most
    recent partial approval on step N), else ``submitted_at``.
    """
    if not request.records:
        return request.submitted_at
    return max(r.timestamp for r in request.records)


def _hours(hours: Decimal) -> timedelta:
    return timedelta(seconds=float(hours * 3600))


def step_deadline(step: Step, request: ApprovalRequest) -> datetime | None:
    """Deadline for the current step, or None when it has no timeout."""
    if step.timeout_hours is None:
        return None
    return step_started_at(request) + _hours(step.timeout_hours)


def is_step_overdue(step: Step, request: ApprovalRequest, now: datetime) -> bool:
    """Strictly past the deadline."""
    deadline = step_deadline(step, request)
    return deadline is not None and now > deadline


def is_past(started: datetime, hours: Decimal | int | float, now: datetime) -> bool:
    """True when more than ``hours`` have elapsed since ``started``."""
    return now > started + _hours(Decimal(str(hours)))


# =========================================================================
# Authority
# =========================================================================


def is_direct_approver(step: Step, user_id: str) -> bool:
    if user_id == SYSTEM_ACTOR_ID:
        return False
    return user_id in step.approver_ids


def find_effective_delegation(
    delegations: Iterable[Delegation],
    step_order: int,
    user_id: str,
    as_of: datetime,
    already_approved: Collection[str] = (),
) -> Delegation | None:
    """The delegation that lets ``user_id`` act on ``step_order``, if any.

    When several grants are effective, the delegate acts for a delegator
    who has not approved the step yet (``already_approved``), so one
    delegate can fill several seats in turn.  Among those the newest
    grant wins; if every delegator has approved, the newest grant overall.
    """
    if user_id == SYSTEM_ACTOR_ID:
        return None
    candidates = [
        d for d in delegations
        if d.delegated_to == user_id
        and d.step_order == step_order
        and d.is_effective(as_of)
    ]
    if not candidates:
        return None
    open_seats = [d for d in candidates if d.delegated_by not in already_approved]
    return max(open_seats or candidates, key=lambda d: d.created_at)


def approved_principals(records: Iterable[ApprovalRecord], step_order: int) -> set[str]:
    """Principals with an APPROVED record on ``step_order``."""
    return {
        r.principal_id for r in records
        if r.step_order == step_order and r.status == ApprovalStatus.APPROVED
    }
