"""
Pure domain layer.

This module contains pure value objects and collaborator protocols
with NO dependencies on:
- ORM (SQLAlchemy)
- Database
- Time/clock (other than the injectable Clock abstraction)
- I/O

All domain objects are immutable and deterministic.
"""

from approval_kernel.domain.approval import (
    SYSTEM_ACTOR_ID,
    TERMINAL_APPROVAL_STATUSES,
    ActionOutcome,
    ApprovalAction,
    ApprovalHistoryEntry,
    ApprovalRecord,
    ApprovalRequest,
    ApprovalStatus,
    AuditAction,
    AuditEntry,
    Delegation,
    Escalation,
    NotificationKind,
    QuorumCounting,
    StepConditionMode,
)
from approval_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from approval_kernel.domain.collaborators import (
    ApprovalStore,
    AuditSink,
    NotificationSink,
)
from approval_kernel.domain.workflow import (
    Condition,
    ConditionType,
    Document,
    EscalationAction,
    Step,
    WorkflowTemplate,
)

__all__ = [
    "SYSTEM_ACTOR_ID",
    "TERMINAL_APPROVAL_STATUSES",
    "ActionOutcome",
    "ApprovalAction",
    "ApprovalHistoryEntry",
    "ApprovalRecord",
    "ApprovalRequest",
    "ApprovalStatus",
    "ApprovalStore",
    "AuditAction",
    "AuditEntry",
    "AuditSink",
    "Clock",
    "Condition",
    "ConditionType",
    "Delegation",
    "DeterministicClock",
    "Document",
    "Escalation",
    "EscalationAction",
    "NotificationKind",
    "NotificationSink",
    "QuorumCounting",
    "Step",
    "StepConditionMode",
    "SystemClock",
    "WorkflowTemplate",
]
