"""
Module: approval_kernel.models.approval
Responsibility: ORM persistence for approval requests, their append-only
    record log, and the delegation / escalation side relations.

Architecture position: Kernel > Models.  May import from db/base.py,
    domain/ (for DTO conversion) and exceptions only.

Invariants enforced:
    - At most one PENDING request per document: partial unique index on
      ``document_id`` WHERE status = 'PENDING' (PostgreSQL and SQLite).
    - Optimistic concurrency: ``version`` is the mapper's version_id_col.
      The store sets it explicitly (version_id_generator=False) so every
      save issues ``UPDATE ... WHERE version = <expected>``, even when only
      records were appended.
    - Records are append-only: ORM listeners reject UPDATE and DELETE.

Failure modes:
    - IntegrityError on a second PENDING request for the same document.
    - StaleDataError when the compare-and-swap on ``version`` misses.
    - ImmutabilityViolationError on record UPDATE/DELETE.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    event,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from approval_kernel.db.base import Base, UTCDateTime, UUIDString
from approval_kernel.exceptions import ImmutabilityViolationError

if TYPE_CHECKING:
    from approval_kernel.domain.approval import (
        ApprovalRecord,
        ApprovalRequest,
        Delegation,
        Escalation,
    )

_PENDING_ONLY = text("status = 'PENDING'")


class ApprovalRequestModel(Base):
    """Persistent approval request (aggregate root).

    Contract:
        Never deleted.  Terminal statuses are never left (enforced by the
        state machine, which refuses to transition a non-PENDING request).
    """

    __tablename__ = "approval_requests"

    __table_args__ = (
        CheckConstraint(
            "status IN ('PENDING', 'APPROVED', 'REJECTED', 'ESCALATED', 'EXPIRED')",
            name="ck_approval_requests_valid_status",
        ),
        Index(
            "uq_approval_requests_pending_document",
            "document_id",
            unique=True,
            postgresql_where=_PENDING_ONLY,
            sqlite_where=_PENDING_ONLY,
        ),
        Index("ix_approval_requests_status_submitted", "status", "submitted_at"),
        Index("ix_approval_requests_workflow_status", "workflow_id", "status"),
    )

    document_id: Mapped[str] = mapped_column(String(200), nullable=False)
    workflow_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    workflow_version: Mapped[int] = mapped_column(nullable=False, default=1)
    submitted_by: Mapped[str] = mapped_column(String(100), nullable=False)
    submitted_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    current_step_order: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="PENDING")
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    document_value: Mapped[Decimal | None] = mapped_column(
        Numeric(38, 9), nullable=True,
    )
    document_attributes: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, default=dict,
    )
    timeout_notified_step: Mapped[int | None] = mapped_column(Integer, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    records: Mapped[list["ApprovalRecordModel"]] = relationship(
        "ApprovalRecordModel",
        back_populates="request",
        order_by="ApprovalRecordModel.sequence",
        lazy="selectin",
    )

    __mapper_args__ = {
        "version_id_col": version,
        "version_id_generator": False,
    }

    def __repr__(self) -> str:
        return (
            f"<ApprovalRequest {self.id} document={self.document_id} "
            f"status={self.status} step={self.current_step_order} v{self.version}>"
        )

    def to_dto(self) -> ApprovalRequest:
        """Convert ORM model to frozen domain DTO."""
        from approval_kernel.domain.approval import (
            ApprovalRequest as ApprovalRequestDTO,
            ApprovalStatus,
        )

        return ApprovalRequestDTO(
            id=self.id,
            document_id=self.document_id,
            workflow_id=self.workflow_id,
            workflow_version=self.workflow_version,
            submitted_by=self.submitted_by,
            submitted_at=self.submitted_at,
            notes=self.notes,
            current_step_order=self.current_step_order,
            status=ApprovalStatus(self.status),
            records=tuple(r.to_dto() for r in self.records),
            completed_at=self.completed_at,
            document_value=self.document_value,
            document_attributes=dict(self.document_attributes or {}),
            timeout_notified_step=self.timeout_notified_step,
            version=self.version,
        )

    @classmethod
    def from_dto(cls, dto: ApprovalRequest) -> ApprovalRequestModel:
        """Create ORM model (version 1) from an unsaved domain DTO."""
        model = cls(
            id=dto.id,
            document_id=dto.document_id,
            workflow_id=dto.workflow_id,
            workflow_version=dto.workflow_version,
            submitted_by=dto.submitted_by,
            submitted_at=dto.submitted_at,
            version=1,
        )
        model.apply_dto(dto)
        return model

    def apply_dto(self, dto: ApprovalRequest) -> None:
        """Copy mutable state and append records not yet persisted."""
        self.notes = dto.notes
        self.current_step_order = dto.current_step_order
        self.status = dto.status.value
        self.completed_at = dto.completed_at
        self.document_value = dto.document_value
        self.document_attributes = dict(dto.document_attributes or {})
        self.timeout_notified_step = dto.timeout_notified_step

        known = {r.id for r in self.records}
        sequence = len(self.records)
        for record in dto.records:
            if record.record_id in known:
                continue
            sequence += 1
            self.records.append(ApprovalRecordModel.from_dto(record, sequence))


class ApprovalRecordModel(Base):
    """Persistent approval record. Append-only.

    ``id`` is the record's idempotency key (``ApprovalRecord.record_id``);
    ``sequence`` is its 1-based position in the request's log.
    """

    __tablename__ = "approval_records"

    __table_args__ = (
        Index("ix_approval_records_approval_sequence", "approval_id", "sequence"),
    )

    approval_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("approval_requests.id"),
        nullable=False,
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    step_order: Mapped[int] = mapped_column(Integer, nullable=False)
    approver_id: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    conditions: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    delegated_from: Mapped[str | None] = mapped_column(String(100), nullable=True)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    request: Mapped["ApprovalRequestModel"] = relationship(
        "ApprovalRequestModel",
        back_populates="records",
    )

    def __repr__(self) -> str:
        return (
            f"<ApprovalRecord {self.id} approval={self.approval_id} "
            f"step={self.step_order} {self.status} by {self.approver_id}>"
        )

    def to_dto(self) -> ApprovalRecord:
        """Convert ORM model to frozen domain DTO."""
        from approval_kernel.domain.approval import (
            ApprovalRecord as ApprovalRecordDTO,
            ApprovalStatus,
        )

        return ApprovalRecordDTO(
            record_id=self.id,
            step_order=self.step_order,
            approver_id=self.approver_id,
            status=ApprovalStatus(self.status),
            timestamp=self.timestamp,
            comment=self.comment,
            conditions=tuple(self.conditions or ()),
            delegated_from=self.delegated_from,
        )

    @classmethod
    def from_dto(cls, dto: ApprovalRecord, sequence: int) -> ApprovalRecordModel:
        """Create ORM model from domain DTO."""
        return cls(
            id=dto.record_id,
            sequence=sequence,
            step_order=dto.step_order,
            approver_id=dto.approver_id,
            status=dto.status.value,
            comment=dto.comment,
            conditions=list(dto.conditions),
            delegated_from=dto.delegated_from,
            timestamp=dto.timestamp,
        )


class DelegationModel(Base):
    """Persistent delegation grant, scoped to one step of one approval."""

    __tablename__ = "approval_delegations"

    __table_args__ = (
        Index("ix_approval_delegations_delegate", "delegated_to", "is_active"),
        Index("ix_approval_delegations_approval", "approval_id"),
    )

    approval_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("approval_requests.id"),
        nullable=False,
    )
    step_order: Mapped[int] = mapped_column(Integer, nullable=False)
    delegated_by: Mapped[str] = mapped_column(String(100), nullable=False)
    delegated_to: Mapped[str] = mapped_column(String(100), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def to_dto(self) -> Delegation:
        from approval_kernel.domain.approval import Delegation as DelegationDTO

        return DelegationDTO(
            id=self.id,
            approval_id=self.approval_id,
            step_order=self.step_order,
            delegated_by=self.delegated_by,
            delegated_to=self.delegated_to,
            reason=self.reason,
            created_at=self.created_at,
            expires_at=self.expires_at,
            is_active=self.is_active,
        )

    @classmethod
    def from_dto(cls, dto: Delegation) -> DelegationModel:
        return cls(
            id=dto.id,
            approval_id=dto.approval_id,
            step_order=dto.step_order,
            delegated_by=dto.delegated_by,
            delegated_to=dto.delegated_to,
            reason=dto.reason,
            created_at=dto.created_at,
            expires_at=dto.expires_at,
            is_active=dto.is_active,
        )


class EscalationModel(Base):
    """Persistent escalation audit row."""

    __tablename__ = "approval_escalations"

    __table_args__ = (
        Index("ix_approval_escalations_approval", "approval_id"),
    )

    approval_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("approval_requests.id"),
        nullable=False,
    )
    escalated_by: Mapped[str] = mapped_column(String(100), nullable=False)
    escalated_to: Mapped[str] = mapped_column(String(100), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    def to_dto(self) -> Escalation:
        from approval_kernel.domain.approval import Escalation as EscalationDTO

        return EscalationDTO(
            id=self.id,
            approval_id=self.approval_id,
            escalated_by=self.escalated_by,
            escalated_to=self.escalated_to,
            reason=self.reason,
            created_at=self.created_at,
        )

    @classmethod
    def from_dto(cls, dto: Escalation) -> EscalationModel:
        return cls(
            id=dto.id,
            approval_id=dto.approval_id,
            escalated_by=dto.escalated_by,
            escalated_to=dto.escalated_to,
            reason=dto.reason,
            created_at=dto.created_at,
        )


# =============================================================================
# ORM-Level Immutability for Records (Append-Only)
# =============================================================================


@event.listens_for(ApprovalRecordModel, "before_update")
def prevent_record_update(mapper, connection, target):
    """Prevent updates to approval records."""
    raise ImmutabilityViolationError(
        entity_type="ApprovalRecord",
        entity_id=str(target.id),
        reason="Approval records are immutable -- cannot modify",
    )


@event.listens_for(ApprovalRecordModel, "before_delete")
def prevent_record_delete(mapper, connection, target):
    """Prevent deletion of approval records."""
    raise ImmutabilityViolationError(
        entity_type="ApprovalRecord",
        entity_id=str(target.id),
        reason="Approval records are immutable -- cannot delete",
    )


@event.listens_for(ApprovalRequestModel, "before_delete")
def prevent_request_delete(mapper, connection, target):
    """Approval requests are never deleted."""
    raise ImmutabilityViolationError(
        entity_type="ApprovalRequest",
        entity_id=str(target.id),
        reason="Approval requests are never deleted",
    )
