"""SQLAlchemy ORM models for the approval engine."""

from approval_kernel.models.approval import (
    ApprovalRecordModel,
    ApprovalRequestModel,
    DelegationModel,
    EscalationModel,
)
from approval_kernel.models.audit import AuditLogModel, NotificationModel
from approval_kernel.models.workflow import WorkflowTemplateModel

__all__ = [
    "ApprovalRecordModel",
    "ApprovalRequestModel",
    "AuditLogModel",
    "DelegationModel",
    "EscalationModel",
    "NotificationModel",
    "WorkflowTemplateModel",
    "import_all_models",
]


def import_all_models() -> list[type]:
    """Return every model class so Base.metadata knows all tables."""
    return [
        WorkflowTemplateModel,
        ApprovalRequestModel,
        ApprovalRecordModel,
        DelegationModel,
        EscalationModel,
        AuditLogModel,
        NotificationModel,
    ]
