"""
Module: approval_engines
Responsibility:
    Package entrypoint that re-exports the public symbols of the pure
    approval engines.  This is the canonical import surface for the
    service layer (approval_kernel.services) and the config layer.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import approval_kernel.domain and approval_kernel.exceptions.
    MUST NOT import approval_kernel services, stores, or db.

Invariants enforced:
    - Purity: engines NEVER read the clock.  ``now`` / ``as_of`` values
      are passed in by the services.
    - Decimal-only arithmetic for document values and thresholds.
    - Determinism: identical inputs always produce identical outputs.

Usage:
    from approval_engines import select_workflow, apply_decision
    from approval_engines.validation import validate_template
"""

from approval_kernel.logging_config import get_logger

logger = get_logger("engines")

from approval_engines.conditions import (
    evaluate_condition,
    evaluate_conditions,
    matches_template,
)
from approval_engines.progress import (
    approved_principals,
    count_approvals,
    document_snapshot,
    find_effective_delegation,
    is_direct_approver,
    is_step_applicable,
    is_step_complete,
    is_step_overdue,
    next_applicable_step,
    step_deadline,
    step_started_at,
)
from approval_engines.selection import select_workflow
from approval_engines.state_machine import (
    Transition,
    TransitionKind,
    apply_decision,
    apply_escalation,
    current_step,
    expire,
    mark_timeout_notified,
    open_request,
    replayed_outcome,
)
from approval_engines.validation import template_errors, validate_template

__all__ = [
    "Transition",
    "TransitionKind",
    "apply_decision",
    "apply_escalation",
    "approved_principals",
    "count_approvals",
    "current_step",
    "document_snapshot",
    "evaluate_condition",
    "evaluate_conditions",
    "expire",
    "find_effective_delegation",
    "is_direct_approver",
    "is_step_applicable",
    "is_step_complete",
    "is_step_overdue",
    "mark_timeout_notified",
    "matches_template",
    "next_applicable_step",
    "open_request",
    "replayed_outcome",
    "select_workflow",
    "step_deadline",
    "step_started_at",
    "template_errors",
    "validate_template",
]
