"""
approval_engines.validation -- Workflow template validation.

Responsibility:
    Collect every structural problem in a ``WorkflowTemplate`` and raise
    a single ``InvalidWorkflowDefinitionError`` listing them all.  Runs on
    write (create, update, YAML load), never on read.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  Logs the failure at
    ERROR since an invalid definition is a configuration bug.
"""

from __future__ import annotations

import logging

from approval_engines.tracer import traced_engine
from approval_kernel.domain.workflow import (
    Condition,
    ConditionType,
    EscalationAction,
    Step,
    WorkflowTemplate,
)
from approval_kernel.exceptions import InvalidWorkflowDefinitionError

_logger = logging.getLogger("approval_kernel.engines.validation")

_THRESHOLD_TYPES = (
    ConditionType.VALUE_ABOVE,
    ConditionType.VALUE_BELOW,
    ConditionType.DISCOUNT_ABOVE,
)


def condition_errors(condition: Condition, where: str) -> list[str]:
    """Problems with one condition; ``where`` prefixes each message."""
    errors: list[str] = []
    if condition.type in _THRESHOLD_TYPES and condition.value is None:
        errors.append(f"{where}: {condition.type.value} requires a value")
    if condition.type == ConditionType.VALUE_BETWEEN:
        if condition.min_value is None or condition.max_value is None:
            errors.append(f"{where}: VALUE_BETWEEN requires min_value and max_value")
        elif condition.min_value > condition.max_value:
            errors.append(
                f"{where}: VALUE_BETWEEN min_value {condition.min_value} "
                f"exceeds max_value {condition.max_value}"
            )
    if condition.type == ConditionType.CUSTOM_FIELD and not condition.field:
        errors.append(f"{where}: CUSTOM_FIELD requires a field name")
    return errors


def step_errors(step: Step) -> list[str]:
    """Problems with one step definition."""
    where = f"step {step.order} ({step.name})"
    errors: list[str] = []

    if not step.approver_ids:
        errors.append(f"{where}: approver_ids must not be empty")
    distinct = set(step.approver_ids)
    if len(distinct) != len(step.approver_ids):
        errors.append(f"{where}: approver_ids must not contain duplicates")
    # Quorums count distinct approvers, so a larger one can never be met.
    if step.required_approvals is not None and step.required_approvals > len(distinct):
        errors.append(
            f"{where}: required_approvals {step.required_approvals} exceeds "
            f"the {len(distinct)} distinct approver(s)"
        )
    if step.require_all_approvers and step.required_approvals is not None:
        errors.append(
            f"{where}: require_all_approvers and required_approvals "
            "are mutually exclusive"
        )
    if step.required_approvals is not None and step.required_approvals < 1:
        errors.append(f"{where}: required_approvals must be at least 1")
    if step.timeout_hours is not None:
        if step.timeout_hours < 0:
            errors.append(f"{where}: timeout_hours must not be negative")
        if step.escalation_action is None:
            errors.append(f"{where}: timeout_hours requires an escalation_action")
    if (
        step.escalation_action == EscalationAction.REASSIGN
        and not step.escalation_to_user_id
    ):
        errors.append(f"{where}: REASSIGN requires escalation_to_user_id")

    for index, condition in enumerate(step.conditions, start=1):
        errors.extend(condition_errors(condition, f"{where} condition {index}"))
    return errors


def template_errors(template: WorkflowTemplate) -> list[str]:
    """Every problem with a template, in a stable order."""
    errors: list[str] = []

    if not template.steps:
        errors.append("workflow must define at least one step")
    else:
        orders = [s.order for s in template.steps]
        expected = list(range(1, len(orders) + 1))
        if sorted(orders) != expected:
            errors.append(
                f"step orders must be exactly 1..{len(orders)} "
                f"without gaps or duplicates, got {sorted(orders)}"
            )
        for step in template.ordered_steps:
            errors.extend(step_errors(step))

    if (
        template.min_value is not None
        and template.max_value is not None
        and template.min_value > template.max_value
    ):
        errors.append(
            f"min_value {template.min_value} exceeds max_value {template.max_value}"
        )

    for index, condition in enumerate(template.trigger_conditions, start=1):
        errors.extend(condition_errors(condition, f"trigger condition {index}"))

    return errors


@traced_engine("validation", "1.0", fingerprint_fields=("template",))
def validate_template(template: WorkflowTemplate) -> None:
    """Raise InvalidWorkflowDefinitionError if the template is malformed."""
    errors = template_errors(template)
    if errors:
        _logger.error(
            "workflow_definition_invalid",
            extra={
                "workflow_name": template.name,
                "workflow_id": str(template.id),
                "errors": errors,
            },
        )
        raise InvalidWorkflowDefinitionError(template.name, errors)
