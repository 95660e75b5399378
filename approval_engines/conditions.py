"""
approval_engines.conditions -- Pure condition evaluator.

Responsibility:
    Decide whether a document satisfies a single ``Condition``, a
    conjunction of conditions, or a workflow template's trigger block
    (value bounds plus trigger conditions).

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import approval_kernel/domain/ types.

Invariants enforced:
    - Totality: every (condition, document) pair yields a bool; nothing
      raises for missing data.
    - VALUE_ABOVE and VALUE_BELOW are inclusive; VALUE_BETWEEN is
      inclusive on both ends.
    - A document without a value never satisfies a VALUE_* condition.

Failure modes:
    - Fail-open for categorical conditions: when the document does not
      carry the attribute (or the condition type is unknown) the
      condition evaluates to True.
"""

from __future__ import annotations

from collections.abc import Iterable
from decimal import Decimal, InvalidOperation
from typing import Any

from approval_kernel.domain.workflow import (
    Condition,
    ConditionType,
    Document,
    WorkflowTemplate,
)

CLIENT_TYPE_ATTRIBUTE = "client_type"
CATEGORY_ATTRIBUTE = "category"
DISCOUNT_ATTRIBUTE = "discount"


def _as_decimal(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def _value_condition(condition: Condition, value: Decimal | None) -> bool:
    if value is None:
        return False

    if condition.type == ConditionType.VALUE_ABOVE:
        threshold = _as_decimal(condition.value)
        return threshold is not None and value >= threshold

    if condition.type == ConditionType.VALUE_BELOW:
        threshold = _as_decimal(condition.value)
        return threshold is not None and value <= threshold

    # VALUE_BETWEEN
    low = _as_decimal(condition.min_value)
    high = _as_decimal(condition.max_value)
    if low is None or high is None:
        return False
    return low <= value <= high


def evaluate_condition(condition: Condition, document: Document) -> bool:
    """Evaluate one condition against a document.

    Args:
        condition: The trigger or step condition.
        document: The document being routed.

    Returns:
        True if the condition holds (or cannot be evaluated for a
        categorical type), False otherwise.
    """
    if condition.type in (
        ConditionType.VALUE_ABOVE,
        ConditionType.VALUE_BELOW,
        ConditionType.VALUE_BETWEEN,
    ):
        return _value_condition(condition, _as_decimal(document.value))

    attributes = document.attributes or {}

    if condition.type == ConditionType.CLIENT_TYPE:
        if CLIENT_TYPE_ATTRIBUTE not in attributes:
            return True
        return attributes[CLIENT_TYPE_ATTRIBUTE] == condition.value

    if condition.type == ConditionType.CATEGORY:
        if CATEGORY_ATTRIBUTE not in attributes:
            return True
        return attributes[CATEGORY_ATTRIBUTE] == condition.value

    if condition.type == ConditionType.DISCOUNT_ABOVE:
        discount = _as_decimal(attributes.get(DISCOUNT_ATTRIBUTE))
        threshold = _as_decimal(condition.value)
        if discount is None or threshold is None:
            return True
        return discount >= threshold

    if condition.type == ConditionType.CUSTOM_FIELD:
        if not condition.field or condition.field not in attributes:
            return True
        return attributes[condition.field] == condition.value

    return True


def evaluate_conditions(
    conditions: Iterable[Condition],
    document: Document,
) -> bool:
    """Conjunction of ``evaluate_condition`` over every condition."""
    return all(evaluate_condition(c, document) for c in conditions)


def matches_template(template: WorkflowTemplate, document: Document) -> bool:
    """Check whether a template's trigger block matches the document.

    A template with no trigger conditions matches unconditionally, even
    when ``min_value``/``max_value`` are set.  Otherwise the document
    value must lie within whichever bounds are set (bounds are skipped
    for a value-less document) and every trigger condition must hold.
    """
    if not template.trigger_conditions:
        return True

    value = _as_decimal(document.value)
    if value is not None:
        if template.min_value is not None and value < template.min_value:
            return False
        if template.max_value is not None and value > template.max_value:
            return False

    return evaluate_conditions(template.trigger_conditions, document)
