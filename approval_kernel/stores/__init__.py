"""Collaborator implementations: in-memory and SQLAlchemy."""

from approval_kernel.stores.memory import (
    InMemoryApprovalStore,
    InMemoryAuditSink,
    InMemoryNotificationSink,
    SentNotification,
)
from approval_kernel.stores.sql import (
    SqlApprovalStore,
    SqlAuditSink,
    SqlNotificationSink,
)

__all__ = [
    "InMemoryApprovalStore",
    "InMemoryAuditSink",
    "InMemoryNotificationSink",
    "SentNotification",
    "SqlApprovalStore",
    "SqlAuditSink",
    "SqlNotificationSink",
]
