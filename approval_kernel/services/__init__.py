"""Kernel services: approval lifecycle, workflow management, locks, scheduler."""

from approval_kernel.services.approval_service import ApprovalService
from approval_kernel.services.locks import ApprovalLockRegistry
from approval_kernel.services.timeout_scheduler import TimeoutScheduler
from approval_kernel.services.workflow_service import WorkflowService

__all__ = [
    "ApprovalLockRegistry",
    "ApprovalService",
    "TimeoutScheduler",
    "WorkflowService",
]
