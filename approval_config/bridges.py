"""
Config -> Kernel Bridges.

Functions that wire kernel services from ``EngineSettings``.  These live
in approval_config because the kernel must NEVER import approval_config.

Usage:
    from approval_config import get_settings
    from approval_config.bridges import build_approval_service, sql_service_scope

    settings = get_settings()
    with session_scope() as session:
        service = build_approval_service(session, settings)
        service.act(approval_id, "alice", "APPROVE")
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from functools import partial

from sqlalchemy.orm import Session

from approval_config.settings import EngineSettings
from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.domain.workflow import WorkflowTemplate
from approval_kernel.logging_config import get_logger
from approval_kernel.services.approval_service import ApprovalService
from approval_kernel.services.locks import ApprovalLockRegistry
from approval_kernel.services.timeout_scheduler import TimeoutScheduler
from approval_kernel.services.workflow_service import WorkflowService
from approval_kernel.stores.sql import (
    SqlApprovalStore,
    SqlAuditSink,
    SqlNotificationSink,
)

logger = get_logger("config.bridges")

# One lock registry per process, shared by every service built here.
_DEFAULT_LOCKS = ApprovalLockRegistry()


def build_workflow_service(session: Session, clock: Clock | None = None) -> WorkflowService:
    """WorkflowService over the caller's session."""
    return WorkflowService(SqlApprovalStore(session), clock or SystemClock())


def build_approval_service(
    session: Session,
    settings: EngineSettings,
    clock: Clock | None = None,
    locks: ApprovalLockRegistry | None = None,
) -> ApprovalService:
    """ApprovalService over SQL adapters bound to the caller's session."""
    clock = clock or SystemClock()
    store = SqlApprovalStore(session)
    return ApprovalService(
        store,
        SqlNotificationSink(session, clock),
        SqlAuditSink(session, clock),
        clock,
        locks=locks or _DEFAULT_LOCKS,
        quorum_counting=settings.quorum_counting,
        step_condition_mode=settings.step_condition_mode,
        max_attempts=settings.max_attempts,
        workflows=WorkflowService(store, clock),
    )


@contextmanager
def sql_service_scope(
    session_factory: Callable[[], Session],
    settings: EngineSettings,
    clock: Clock | None = None,
    locks: ApprovalLockRegistry | None = None,
) -> Iterator[ApprovalService]:
    """Yield an ApprovalService in a fresh unit of work.

    Commits on normal exit; rolls back and re-raises on error.
    """
    session = session_factory()
    try:
        yield build_approval_service(session, settings, clock, locks)
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def build_timeout_scheduler(
    session_factory: Callable[[], Session],
    settings: EngineSettings,
    clock: Clock | None = None,
    locks: ApprovalLockRegistry | None = None,
) -> TimeoutScheduler:
    """TimeoutScheduler whose dispatches each run in their own transaction."""
    clock = clock or SystemClock()
    return TimeoutScheduler(
        partial(sql_service_scope, session_factory, settings, clock, locks),
        clock=clock,
        tick_interval_seconds=settings.scan_interval_seconds,
        max_pending_hours=settings.max_pending_hours,
    )


@dataclass(frozen=True)
class TemplateInstallResult:
    created: int = 0
    updated: int = 0


def install_templates(
    session: Session,
    templates: Iterable[WorkflowTemplate],
    clock: Clock | None = None,
) -> TemplateInstallResult:
    """Create or update parsed templates through WorkflowService.

    Templates are matched by id (see ``loader.template_id_for``).  An
    update bumps the template's version.
    """
    service = build_workflow_service(session, clock)
    store = SqlApprovalStore(session)
    created = updated = 0
    for template in templates:
        common = dict(
            description=template.description,
            is_default=template.is_default,
            is_active=template.is_active,
            trigger_conditions=template.trigger_conditions,
            min_value=template.min_value,
            max_value=template.max_value,
        )
        if store.get_template(template.id) is None:
            service.create_workflow(
                template.owner_id, template.name, template.steps,
                workflow_id=template.id, **common,
            )
            created += 1
        else:
            service.update_workflow(
                template.owner_id, template.id,
                name=template.name, steps=template.steps, **common,
            )
            updated += 1
    logger.info(
        "templates_installed",
        extra={"created_count": created, "updated_count": updated},
    )
    return TemplateInstallResult(created=created, updated=updated)
