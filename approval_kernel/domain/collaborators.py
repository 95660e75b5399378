"""
Collaborator protocols (``approval_kernel.domain.collaborators``).

The approval services depend only on these interfaces.  Persistence,
audit and notification delivery are pluggable: the kernel ships an
in-memory implementation (``approval_kernel.stores.memory``) and a
SQLAlchemy implementation (``approval_kernel.stores.sql``).
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import datetime
from typing import Any, Protocol
from uuid import UUID

from approval_kernel.domain.approval import (
    ApprovalRequest,
    AuditEntry,
    Delegation,
    Escalation,
)
from approval_kernel.domain.workflow import WorkflowTemplate


class ApprovalStore(Protocol):
    """Workflow/approval persistence.

    ``save`` is the authoritative write: it inserts when
    ``request.version == 0`` and otherwise performs a compare-and-swap on
    ``version``, returning the stored snapshot with the new version.
    """

    # Templates

    def get_templates_for_owner(
        self, owner_id: str, *, active_only: bool = True,
    ) -> list[WorkflowTemplate]:
        ...

    def get_template(self, template_id: UUID) -> WorkflowTemplate | None:
        ...

    def create_template(self, template: WorkflowTemplate) -> WorkflowTemplate:
        ...

    def update_template(self, template: WorkflowTemplate) -> WorkflowTemplate:
        ...

    def delete_template(self, template_id: UUID) -> None:
        ...

    def count_pending_for_template(self, template_id: UUID) -> int:
        ...

    # Approval requests

    def get_approval(self, approval_id: UUID) -> ApprovalRequest | None:
        ...

    def find_pending_approval_for_document(
        self, document_id: str,
    ) -> ApprovalRequest | None:
        ...

    def list_approvals_for_document(self, document_id: str) -> list[ApprovalRequest]:
        ...

    def list_pending_approvals(self) -> list[ApprovalRequest]:
        ...

    def save(self, request: ApprovalRequest) -> ApprovalRequest:
        ...

    # Side relations

    def create_delegation(self, delegation: Delegation) -> Delegation:
        ...

    def list_delegations(self, approval_id: UUID) -> list[Delegation]:
        ...

    def create_escalation(self, escalation: Escalation) -> Escalation:
        ...

    def list_escalations(self, approval_id: UUID) -> list[Escalation]:
        ...

    def list_pending_approvals_for_approver(
        self, user_id: str, as_of: datetime,
    ) -> list[ApprovalRequest]:
        """PENDING requests where ``user_id`` is on the current step or
        holds an effective delegation for it."""
        ...


class NotificationSink(Protocol):
    """Outbound notification delivery (fire-and-forget)."""

    def notify(
        self,
        user_id: str,
        kind: str,
        title: str,
        message: str,
        context: Mapping[str, Any] | None = None,
    ) -> None:
        ...


class AuditSink(Protocol):
    """Append-only approval audit log."""

    def record(
        self,
        approval_id: UUID,
        actor_id: str,
        action: str,
        details: str | None = None,
    ) -> None:
        ...

    def entries_for(self, approval_id: UUID) -> Sequence[AuditEntry]:
        ...
