"""
Module: approval_kernel.stores.sql
Responsibility: SQLAlchemy implementations of the collaborator protocols.
    All three adapters work inside the caller's Session; none of them
    commits.  The caller (session_scope, sql_service_scope) owns the
    transaction.

Architecture position: Kernel > Stores.  May import db/, models/, domain/
    and exceptions.

Invariants enforced:
    - save() is a compare-and-swap on ``approval_requests.version``.  The
      row is re-read with SELECT ... FOR UPDATE (populate_existing) and
      compared before anything is written -- a mismatch there is
      retryable.  The row lock makes a concurrent writer wait for the
      other transaction to finish, so it sees the committed version
      instead of missing at flush.  The UPDATE itself still carries
      ``WHERE version = <expected>``; a miss at flush time (StaleDataError)
      leaves the session unusable and is NOT retryable.
    - The pending-per-document partial unique index is surfaced as
      DuplicatePendingApprovalError.
    - Audit and notification rows are flushed inside a SAVEPOINT.  They
      commit with the operation that produced them, but a failed insert
      only rolls back its own savepoint and raises from the sink call.
      The sinks run after the operation's own write, so on SQLite the
      savepoint is nested in the already-open transaction.

Failure modes:
    - OptimisticLockError (retryable or not, see above).
    - DuplicatePendingApprovalError on IntegrityError during insert.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

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
from approval_kernel.logging_config import get_logger
from approval_kernel.models.approval import (
    ApprovalRequestModel,
    DelegationModel,
    EscalationModel,
)
from approval_kernel.models.audit import AuditLogModel, NotificationModel
from approval_kernel.models.workflow import WorkflowTemplateModel

logger = get_logger("stores.sql")

_PENDING = ApprovalStatus.PENDING.value


class SqlApprovalStore:
    """ApprovalStore over SQLAlchemy ORM models."""

    def __init__(self, session: Session):
        self._session = session

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    def get_templates_for_owner(
        self, owner_id: str, *, active_only: bool = True,
    ) -> list[WorkflowTemplate]:
        stmt = select(WorkflowTemplateModel).where(
            WorkflowTemplateModel.owner_id == owner_id,
        )
        if active_only:
            stmt = stmt.where(WorkflowTemplateModel.is_active.is_(True))
        stmt = stmt.order_by(WorkflowTemplateModel.created_at, WorkflowTemplateModel.name)
        return [m.to_dto() for m in self._session.scalars(stmt)]

    def get_template(self, template_id: UUID) -> WorkflowTemplate | None:
        model = self._session.get(WorkflowTemplateModel, template_id)
        return model.to_dto() if model is not None else None

    def create_template(self, template: WorkflowTemplate) -> WorkflowTemplate:
        model = WorkflowTemplateModel.from_dto(template)
        self._session.add(model)
        self._session.flush()
        return model.to_dto()

    def update_template(self, template: WorkflowTemplate) -> WorkflowTemplate:
        model = self._session.get(WorkflowTemplateModel, template.id)
        if model is None:
            raise WorkflowNotFoundError(str(template.id))
        model.apply_dto(template)
        self._session.flush()
        return model.to_dto()

    def delete_template(self, template_id: UUID) -> None:
        model = self._session.get(WorkflowTemplateModel, template_id)
        if model is not None:
            self._session.delete(model)
            self._session.flush()

    def count_pending_for_template(self, template_id: UUID) -> int:
        stmt = select(func.count()).select_from(ApprovalRequestModel).where(
            ApprovalRequestModel.workflow_id == template_id,
            ApprovalRequestModel.status == _PENDING,
        )
        return int(self._session.scalar(stmt) or 0)

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def _load(
        self, approval_id: UUID, *, for_update: bool = False,
    ) -> ApprovalRequestModel | None:
        stmt = select(ApprovalRequestModel).where(ApprovalRequestModel.id == approval_id)
        if for_update:
            stmt = stmt.with_for_update()  # Row-level lock
        return self._session.execute(
            stmt.execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def get_approval(self, approval_id: UUID) -> ApprovalRequest | None:
        model = self._load(approval_id)
        return model.to_dto() if model is not None else None

    def find_pending_approval_for_document(
        self, document_id: str,
    ) -> ApprovalRequest | None:
        stmt = select(ApprovalRequestModel).where(
            ApprovalRequestModel.document_id == document_id,
            ApprovalRequestModel.status == _PENDING,
        )
        model = self._session.scalars(stmt).first()
        return model.to_dto() if model is not None else None

    def list_approvals_for_document(self, document_id: str) -> list[ApprovalRequest]:
        stmt = (
            select(ApprovalRequestModel)
            .where(ApprovalRequestModel.document_id == document_id)
            .order_by(ApprovalRequestModel.submitted_at.desc())
        )
        return [m.to_dto() for m in self._session.scalars(stmt)]

    def list_pending_approvals(self) -> list[ApprovalRequest]:
        stmt = (
            select(ApprovalRequestModel)
            .where(ApprovalRequestModel.status == _PENDING)
            .order_by(ApprovalRequestModel.submitted_at)
        )
        return [m.to_dto() for m in self._session.scalars(stmt)]

    def save(self, request: ApprovalRequest) -> ApprovalRequest:
        if request.version == 0:
            return self._insert(request)

        model = self._load(request.id, for_update=True)
        if model is None:
            raise ApprovalNotFoundError(str(request.id))
        if model.version != request.version:
            raise OptimisticLockError(
                "ApprovalRequest", str(request.id),
                expected_version=request.version,
                actual_version=model.version,
            )

        model.apply_dto(request)
        model.version = request.version + 1
        try:
            self._session.flush()
        except StaleDataError as exc:
            logger.warning(
                "approval_save_stale",
                extra={"approval_id": str(request.id), "expected_version": request.version},
            )
            raise OptimisticLockError(
                "ApprovalRequest", str(request.id),
                expected_version=request.version,
                retryable=False,
            ) from exc
        return model.to_dto()

    def _insert(self, request: ApprovalRequest) -> ApprovalRequest:
        model = ApprovalRequestModel.from_dto(request)
        self._session.add(model)
        try:
            self._session.flush()
        except IntegrityError as exc:
            logger.warning(
                "approval_insert_conflict",
                extra={"document_id": request.document_id},
            )
            raise DuplicatePendingApprovalError(request.document_id) from exc
        return model.to_dto()

    # ------------------------------------------------------------------
    # Side relations
    # ------------------------------------------------------------------

    def create_delegation(self, delegation: Delegation) -> Delegation:
        model = DelegationModel.from_dto(delegation)
        self._session.add(model)
        self._session.flush()
        return model.to_dto()

    def list_delegations(self, approval_id: UUID) -> list[Delegation]:
        stmt = (
            select(DelegationModel)
            .where(DelegationModel.approval_id == approval_id)
            .order_by(DelegationModel.created_at)
        )
        return [m.to_dto() for m in self._session.scalars(stmt)]

    def create_escalation(self, escalation: Escalation) -> Escalation:
        model = EscalationModel.from_dto(escalation)
        self._session.add(model)
        self._session.flush()
        return model.to_dto()

    def list_escalations(self, approval_id: UUID) -> list[Escalation]:
        stmt = (
            select(EscalationModel)
            .where(EscalationModel.approval_id == approval_id)
            .order_by(EscalationModel.created_at)
        )
        return [m.to_dto() for m in self._session.scalars(stmt)]

    def list_pending_approvals_for_approver(
        self, user_id: str, as_of: datetime,
    ) -> list[ApprovalRequest]:
        # Step approvers live in the template JSON, so the approver side is
        # filtered in Python; the delegation side is a join.
        delegated_ids = set(
            self._session.scalars(
                select(DelegationModel.approval_id)
                .join(
                    ApprovalRequestModel,
                    ApprovalRequestModel.id == DelegationModel.approval_id,
                )
                .where(
                    DelegationModel.delegated_to == user_id,
                    DelegationModel.is_active.is_(True),
                    DelegationModel.step_order == ApprovalRequestModel.current_step_order,
                    or_(
                        DelegationModel.expires_at.is_(None),
                        DelegationModel.expires_at > as_of,
                    ),
                )
            )
        )

        templates: dict[UUID, WorkflowTemplate | None] = {}
        result = []
        for request in self.list_pending_approvals():
            if request.id in delegated_ids:
                result.append(request)
                continue
            if request.workflow_id not in templates:
                templates[request.workflow_id] = self.get_template(request.workflow_id)
            template = templates[request.workflow_id]
            step = template.step(request.current_step_order) if template else None
            if step is not None and user_id in step.approver_ids:
                result.append(request)
        return result


class SqlAuditSink:
    """AuditSink writing ``approval_audit_log`` rows in the caller's session."""

    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()

    def record(
        self,
        approval_id: UUID,
        actor_id: str,
        action: str,
        details: str | None = None,
    ) -> None:
        with self._session.begin_nested():
            self._session.add(
                AuditLogModel(
                    approval_id=approval_id,
                    actor_id=actor_id,
                    action=action,
                    details=details,
                    recorded_at=self._clock.now(),
                )
            )
            self._session.flush()

    def entries_for(self, approval_id: UUID) -> Sequence[AuditEntry]:
        stmt = (
            select(AuditLogModel)
            .where(AuditLogModel.approval_id == approval_id)
            .order_by(AuditLogModel.recorded_at)
        )
        return [m.to_dto() for m in self._session.scalars(stmt)]


class SqlNotificationSink:
    """NotificationSink writing ``notifications`` outbox rows."""

    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()

    def notify(
        self,
        user_id: str,
        kind: str,
        title: str,
        message: str,
        context: Mapping[str, Any] | None = None,
    ) -> None:
        with self._session.begin_nested():
            self._session.add(
                NotificationModel(
                    user_id=user_id,
                    kind=kind,
                    title=title,
                    message=message,
                    context={k: str(v) for k, v in (context or {}).items()},
                    created_at=self._clock.now(),
                )
            )
            self._session.flush()
