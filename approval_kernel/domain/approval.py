"""
Approval domain types (``approval_kernel.domain.approval``).

Responsibility
--------------
Pure value objects for the approval state machine: lifecycle status,
approver actions, the append-only ``ApprovalRecord`` log, the
``ApprovalRequest`` aggregate root, delegation/escalation side
relations, action outcomes, and the audit/notification vocabularies.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.

Invariants enforced
-------------------
* Lifecycle: PENDING is the only non-terminal status.  DELEGATED is not
  a status -- delegation is a side relation.
* Records are append-only; step completion is recomputed from the log.
* ``ApprovalRequest.version`` is the optimistic-concurrency counter
  (0 = never saved).
* ``SYSTEM_ACTOR_ID`` is reserved for automated timeout actions and is
  never accepted as a human approver.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID


SYSTEM_ACTOR_ID = "system"


# =========================================================================
# Lifecycle
# =========================================================================


class ApprovalStatus(str, Enum):
    """Approval request lifecycle states."""

    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    ESCALATED = "ESCALATED"
    EXPIRED = "EXPIRED"


TERMINAL_APPROVAL_STATUSES: frozenset[ApprovalStatus] = frozenset({
    ApprovalStatus.APPROVED,
    ApprovalStatus.REJECTED,
    ApprovalStatus.ESCALATED,
    ApprovalStatus.EXPIRED,
})


class ApprovalAction(str, Enum):
    """Decisions an approver can submit."""

    APPROVE = "APPROVE"
    REJECT = "REJECT"

    @property
    def record_status(self) -> ApprovalStatus:
        if self is ApprovalAction.APPROVE:
            return ApprovalStatus.APPROVED
        return ApprovalStatus.REJECTED


class QuorumCounting(str, Enum):
    """How APPROVED records count toward a step's quorum."""

    DISTINCT_APPROVERS = "DISTINCT_APPROVERS"
    RAW_RECORDS = "RAW_RECORDS"


class StepConditionMode(str, Enum):
    """Whether step-level conditions gate step applicability."""

    IGNORE = "IGNORE"
    SKIP = "SKIP"


class AuditAction:
    """Audit action names written to the audit sink."""

    SUBMITTED = "SUBMITTED"
    STEP_APPROVED = "STEP_APPROVED"
    PARTIAL_APPROVAL = "PARTIAL_APPROVAL"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    DELEGATED = "DELEGATED"
    ESCALATED = "ESCALATED"
    STEP_SKIPPED = "STEP_SKIPPED"
    TIMEOUT_NOTIFIED = "TIMEOUT_NOTIFIED"
    EXPIRED = "EXPIRED"


class NotificationKind:
    """Notification kinds sent through the notification sink."""

    APPROVAL_REQUEST = "approval_request"
    APPROVAL_REJECTED = "approval_rejected"
    APPROVAL_COMPLETE = "approval_complete"
    APPROVAL_DELEGATED = "approval_delegated"
    APPROVAL_ESCALATED = "approval_escalated"
    APPROVAL_TIMEOUT = "approval_timeout"
    APPROVAL_EXPIRED = "approval_expired"


# =========================================================================
# Records
# =========================================================================


@dataclass(frozen=True)
class ApprovalRecord:
    """One approver decision. Immutable, append-only.

    ``approver_id`` is the acting user; when they act through a
    delegation, ``delegated_from`` names the delegator.  ``record_id`` is
    the idempotency key checked before re-appending on retry.
    """

    record_id: UUID
    step_order: int
    approver_id: str
    status: ApprovalStatus
    timestamp: datetime
    comment: str | None = None
    conditions: tuple[str, ...] = ()
    delegated_from: str | None = None

    @property
    def principal_id(self) -> str:
        """The approver whose rights were exercised."""
        return self.delegated_from or self.approver_id


@dataclass(frozen=True)
class ApprovalRequest:
    """Immutable snapshot of one approval process.

    Transitions produce new snapshots via ``dataclasses.replace``; the
    store persists them with a compare-and-swap on ``version``.
    """

    id: UUID
    document_id: str
    workflow_id: UUID
    submitted_by: str
    submitted_at: datetime
    workflow_version: int = 1
    current_step_order: int = 1
    status: ApprovalStatus = ApprovalStatus.PENDING
    notes: str | None = None
    records: tuple[ApprovalRecord, ...] = ()
    completed_at: datetime | None = None
    document_value: Decimal | None = None
    document_attributes: Mapping[str, Any] = field(default_factory=dict)
    timeout_notified_step: int | None = None
    version: int = 0

    @property
    def is_pending(self) -> bool:
        return self.status == ApprovalStatus.PENDING

    def has_record(self, record_id: UUID) -> bool:
        return any(r.record_id == record_id for r in self.records)

    def records_for_step(self, step_order: int) -> tuple[ApprovalRecord, ...]:
        return tuple(r for r in self.records if r.step_order == step_order)


@dataclass(frozen=True)
class Delegation:
    """Grant of one approver's acting rights for one step of one approval."""

    id: UUID
    approval_id: UUID
    step_order: int
    delegated_by: str
    delegated_to: str
    created_at: datetime
    reason: str | None = None
    expires_at: datetime | None = None
    is_active: bool = True

    def is_effective(self, as_of: datetime) -> bool:
        """Active and not yet expired at ``as_of``."""
        if not self.is_active:
            return False
        return self.expires_at is None or self.expires_at > as_of


@dataclass(frozen=True)
class Escalation:
    """Audit record of a manual or automatic escalation."""

    id: UUID
    approval_id: UUID
    escalated_by: str
    escalated_to: str
    reason: str
    created_at: datetime


@dataclass(frozen=True)
class AuditEntry:
    """One row of an approval's audit trail."""

    approval_id: UUID
    actor_id: str
    action: str
    recorded_at: datetime
    details: str | None = None


# =========================================================================
# Results
# =========================================================================


@dataclass(frozen=True)
class ActionOutcome:
    """Result of an approve/reject action."""

    approval_id: UUID
    status: ApprovalStatus
    current_step_order: int
    waiting_for_more_approvals: bool = False
    record: ApprovalRecord | None = None


@dataclass(frozen=True)
class ApprovalHistoryEntry:
    """An approval request with its delegation and escalation relations."""

    request: ApprovalRequest
    delegations: tuple[Delegation, ...] = ()
    escalations: tuple[Escalation, ...] = ()
