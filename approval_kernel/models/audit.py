"""
Module: approval_kernel.models.audit
Responsibility: ORM persistence for the approval audit log and outbound
    notifications.

Architecture position: Kernel > Models.  May import from db/base.py,
    domain/ and exceptions only.

Invariants enforced:
    - Audit log rows are append-only (ORM listeners reject UPDATE/DELETE).
    - Notifications are plain outbox rows; delivery is out of scope.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import JSON, Boolean, Index, String, Text, event
from sqlalchemy.orm import Mapped, mapped_column

from approval_kernel.db.base import Base, UTCDateTime, UUIDString
from approval_kernel.exceptions import ImmutabilityViolationError

if TYPE_CHECKING:
    from approval_kernel.domain.approval import AuditEntry


class AuditLogModel(Base):
    """One approval audit entry."""

    __tablename__ = "approval_audit_log"

    __table_args__ = (
        Index("ix_approval_audit_log_approval", "approval_id", "recorded_at"),
    )

    approval_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    actor_id: Mapped[str] = mapped_column(String(100), nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    def __repr__(self) -> str:
        return f"<AuditLog {self.approval_id} {self.action} by {self.actor_id}>"

    def to_dto(self) -> AuditEntry:
        from approval_kernel.domain.approval import AuditEntry as AuditEntryDTO

        return AuditEntryDTO(
            approval_id=self.approval_id,
            actor_id=self.actor_id,
            action=self.action,
            details=self.details,
            recorded_at=self.recorded_at,
        )


class NotificationModel(Base):
    """Outbound in-app notification."""

    __tablename__ = "notifications"

    __table_args__ = (
        Index("ix_notifications_user_read", "user_id", "is_read"),
    )

    user_id: Mapped[str] = mapped_column(String(100), nullable=False)
    kind: Mapped[str] = mapped_column(String(50), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    context: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    def __repr__(self) -> str:
        return f"<Notification {self.kind} -> {self.user_id}>"


@event.listens_for(AuditLogModel, "before_update")
def prevent_audit_update(mapper, connection, target):
    """Prevent updates to audit entries."""
    raise ImmutabilityViolationError(
        entity_type="AuditLog",
        entity_id=str(target.id),
        reason="Audit entries are immutable -- cannot modify",
    )


@event.listens_for(AuditLogModel, "before_delete")
def prevent_audit_delete(mapper, connection, target):
    """Prevent deletion of audit entries."""
    raise ImmutabilityViolationError(
        entity_type="AuditLog",
        entity_id=str(target.id),
        reason="Audit entries are immutable -- cannot delete",
    )
