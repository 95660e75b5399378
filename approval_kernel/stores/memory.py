"""
Module: approval_kernel.stores.memory
Responsibility: Thread-safe in-memory implementations of the collaborator
    protocols (ApprovalStore, AuditSink, NotificationSink).

Architecture position: Kernel > Stores.  Used by the test suite and by
    embedders that do not need durable storage.

Invariants enforced:
    - save() is a compare-and-swap on ``ApprovalRequest.version`` under a
      single lock; a mismatch raises a retryable OptimisticLockError and
      writes nothing.
    - At most one PENDING request per document (DuplicatePendingApprovalError).
"""

from __future__ import annotations

import threading
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any
from uuid import UUID

from approval_kernel.domain.approval import (
    ApprovalRequest,
    ApprovalStatus,
    AuditEntry,
    Delegation,
    Escalation,
)
from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.domain.workflow import WorkflowTemplate
from approval_kernel.exceptions import (
    ApprovalNotFoundError,
    DuplicatePendingApprovalError,
    OptimisticLockError,
    WorkflowNotFoundError,
)


class InMemoryApprovalStore:
    """Dictionary-backed ApprovalStore guarded by one re-entrant lock."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._templates: dict[UUID, WorkflowTemplate] = {}
        self._requests: dict[UUID, ApprovalRequest] = {}
        self._delegations: list[Delegation] = []
        self._escalations: list[Escalation] = []
        self.save_count = 0

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    def get_templates_for_owner(
        self, owner_id: str, *, active_only: bool = True,
    ) -> list[WorkflowTemplate]:
        with self._lock:
            templates = [
                t for t in self._templates.values()
                if t.owner_id == owner_id and (t.is_active or not active_only)
            ]
        return sorted(templates, key=lambda t: (t.created_at is None, t.created_at))

    def get_template(self, template_id: UUID) -> WorkflowTemplate | None:
        with self._lock:
            return self._templates.get(template_id)

    def create_template(self, template: WorkflowTemplate) -> WorkflowTemplate:
        with self._lock:
            self._templates[template.id] = template
        return template

    def update_template(self, template: WorkflowTemplate) -> WorkflowTemplate:
        with self._lock:
            if template.id not in self._templates:
                raise WorkflowNotFoundError(str(template.id))
            self._templates[template.id] = template
        return template

    def delete_template(self, template_id: UUID) -> None:
        with self._lock:
            self._templates.pop(template_id, None)

    def count_pending_for_template(self, template_id: UUID) -> int:
        with self._lock:
            return sum(
                1 for r in self._requests.values()
                if r.workflow_id == template_id and r.is_pending
            )

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def get_approval(self, approval_id: UUID) -> ApprovalRequest | None:
        with self._lock:
            return self._requests.get(approval_id)

    def find_pending_approval_for_document(
        self, document_id: str,
    ) -> ApprovalRequest | None:
        with self._lock:
            for request in self._requests.values():
                if request.document_id == document_id and request.is_pending:
                    return request
        return None

    def list_approvals_for_document(self, document_id: str) -> list[ApprovalRequest]:
        with self._lock:
            found = [r for r in self._requests.values() if r.document_id == document_id]
        return sorted(found, key=lambda r: r.submitted_at, reverse=True)

    def list_pending_approvals(self) -> list[ApprovalRequest]:
        with self._lock:
            pending = [r for r in self._requests.values() if r.is_pending]
        return sorted(pending, key=lambda r: r.submitted_at)

    def save(self, request: ApprovalRequest) -> ApprovalRequest:
        with self._lock:
            stored = self._requests.get(request.id)

            if request.version == 0:
                if stored is not None:
                    raise OptimisticLockError(
                        "ApprovalRequest", str(request.id),
                        expected_version=0, actual_version=stored.version,
                    )
                if request.status == ApprovalStatus.PENDING:
                    existing = self.find_pending_approval_for_document(
                        request.document_id,
                    )
                    if existing is not None:
                        raise DuplicatePendingApprovalError(
                            request.document_id, str(existing.id),
                        )
            else:
                if stored is None:
                    raise ApprovalNotFoundError(str(request.id))
                if stored.version != request.version:
                    raise OptimisticLockError(
                        "ApprovalRequest", str(request.id),
                        expected_version=request.version,
                        actual_version=stored.version,
                    )

            saved = replace(request, version=request.version + 1)
            self._requests[saved.id] = saved
            self.save_count += 1
            return saved

    # ------------------------------------------------------------------
    # Side relations
    # ------------------------------------------------------------------

    def create_delegation(self, delegation: Delegation) -> Delegation:
        with self._lock:
            self._delegations.append(delegation)
        return delegation

    def list_delegations(self, approval_id: UUID) -> list[Delegation]:
        with self._lock:
            return [d for d in self._delegations if d.approval_id == approval_id]

    def create_escalation(self, escalation: Escalation) -> Escalation:
        with self._lock:
            self._escalations.append(escalation)
        return escalation

    def list_escalations(self, approval_id: UUID) -> list[Escalation]:
        with self._lock:
            return [e for e in self._escalations if e.approval_id == approval_id]

    def list_pending_approvals_for_approver(
        self, user_id: str, as_of: datetime,
    ) -> list[ApprovalRequest]:
        with self._lock:
            result = []
            for request in self._requests.values():
                if not request.is_pending:
                    continue
                template = self._templates.get(request.workflow_id)
                step = template.step(request.current_step_order) if template else None
                if step is not None and user_id in step.approver_ids:
                    result.append(request)
                    continue
                if any(
                    d.approval_id == request.id
                    and d.step_order == request.current_step_order
                    and d.delegated_to == user_id
                    and d.is_effective(as_of)
                    for d in self._delegations
                ):
                    result.append(request)
        return sorted(result, key=lambda r: r.submitted_at)


class InMemoryAuditSink:
    """Append-only audit log held in a list."""

    def __init__(self, clock: Clock | None = None) -> None:
        self._clock = clock or SystemClock()
        self._lock = threading.Lock()
        self.entries: list[AuditEntry] = []

    def record(
        self,
        approval_id: UUID,
        actor_id: str,
        action: str,
        details: str | None = None,
    ) -> None:
        entry = AuditEntry(
            approval_id=approval_id,
            actor_id=actor_id,
            action=action,
            details=details,
            recorded_at=self._clock.now(),
        )
        with self._lock:
            self.entries.append(entry)

    def entries_for(self, approval_id: UUID) -> Sequence[AuditEntry]:
        with self._lock:
            return [e for e in self.entries if e.approval_id == approval_id]

    def actions_for(self, approval_id: UUID) -> list[str]:
        return [e.action for e in self.entries_for(approval_id)]


@dataclass(frozen=True)
class SentNotification:
    user_id: str
    kind: str
    title: str
    message: str
    context: Mapping[str, Any] = field(default_factory=dict)


class InMemoryNotificationSink:
    """Collects notifications for inspection."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.sent: list[SentNotification] = []

    def notify(
        self,
        user_id: str,
        kind: str,
        title: str,
        message: str,
        context: Mapping[str, Any] | None = None,
    ) -> None:
        with self._lock:
            self.sent.append(
                SentNotification(user_id, kind, title, message, dict(context or {}))
            )

    def for_user(self, user_id: str) -> list[SentNotification]:
        with self._lock:
            return [n for n in self.sent if n.user_id == user_id]

    def kinds_for(self, user_id: str) -> list[str]:
        return [n.kind for n in self.for_user(user_id)]
