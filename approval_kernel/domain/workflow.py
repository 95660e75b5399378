"""
Workflow definition types (``approval_kernel.domain.workflow``).

Responsibility
--------------
Pure value objects for approval workflow templates: the closed
``Condition`` tagged union, ordered ``Step`` definitions with their
quorum and escalation policy, the ``WorkflowTemplate`` aggregate, and
the ``Document`` being routed.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports
from ``db/``, ``services/``, ``stores/``, or outer layers.

Invariants enforced
-------------------
* Steps are strongly typed records; templates are validated on write
  (``approval_engines.validation``), never on read.
* ``Step.required_approvals`` and ``Step.require_all_approvers`` are
  mutually exclusive completion rules.
* Numeric document values are ``Decimal`` -- never float.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any
from uuid import UUID


class ConditionType(str, Enum):
    """Closed set of trigger/step condition types."""

    VALUE_ABOVE = "VALUE_ABOVE"
    VALUE_BELOW = "VALUE_BELOW"
    VALUE_BETWEEN = "VALUE_BETWEEN"
    CLIENT_TYPE = "CLIENT_TYPE"
    CATEGORY = "CATEGORY"
    DISCOUNT_ABOVE = "DISCOUNT_ABOVE"
    CUSTOM_FIELD = "CUSTOM_FIELD"


NUMERIC_CONDITION_TYPES: frozenset[ConditionType] = frozenset({
    ConditionType.VALUE_ABOVE,
    ConditionType.VALUE_BELOW,
    ConditionType.VALUE_BETWEEN,
    ConditionType.DISCOUNT_ABOVE,
})


class EscalationAction(str, Enum):
    """What happens when a step's timeout elapses."""

    NOTIFY = "NOTIFY"
    REASSIGN = "REASSIGN"
    AUTO_APPROVE = "AUTO_APPROVE"
    AUTO_REJECT = "AUTO_REJECT"


def to_decimal(value: Any) -> Decimal | None:
    """Coerce a YAML/JSON scalar to Decimal (None passes through).

    Floats are routed through ``str`` so 0.1 stays 0.1.
    """
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValueError(f"Cannot interpret boolean {value!r} as a number")
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"Cannot interpret {value!r} as a number") from exc


def _scalar_to_json(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    return value


@dataclass(frozen=True)
class Condition:
    """A single trigger or step condition.

    ``value`` is a number for VALUE_ABOVE / VALUE_BELOW / DISCOUNT_ABOVE
    and a string (or any scalar) for the equality types.  VALUE_BETWEEN
    uses ``min_value`` / ``max_value``; CUSTOM_FIELD names its attribute
    in ``field``.
    """

    type: ConditionType
    value: Any = None
    min_value: Decimal | None = None
    max_value: Decimal | None = None
    field: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type.value}
        if self.value is not None:
            data["value"] = _scalar_to_json(self.value)
        if self.min_value is not None:
            data["min_value"] = str(self.min_value)
        if self.max_value is not None:
            data["max_value"] = str(self.max_value)
        if self.field is not None:
            data["field"] = self.field
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Condition:
        condition_type = ConditionType(data["type"])
        value = data.get("value")
        if condition_type in NUMERIC_CONDITION_TYPES:
            value = to_decimal(value)
        return cls(
            type=condition_type,
            value=value,
            min_value=to_decimal(data.get("min_value")),
            max_value=to_decimal(data.get("max_value")),
            field=data.get("field"),
        )


@dataclass(frozen=True)
class Step:
    """One ordered step of an approval workflow.

    Contract: frozen.  ``order`` is 1-based and unique within a template.
    Completion rule is ``require_all_approvers`` OR ``required_approvals``
    (quorum, treated as 1 when unset).  ``escalation_action`` only has an
    effect when ``timeout_hours`` is set.
    """

    order: int
    name: str
    approver_ids: tuple[str, ...]
    require_all_approvers: bool = False
    required_approvals: int | None = None
    timeout_hours: Decimal | None = None
    escalation_action: EscalationAction | None = None
    escalation_to_user_id: str | None = None
    conditions: tuple[Condition, ...] = ()
    description: str | None = None

    @property
    def quorum(self) -> int:
        """Approvals needed to complete this step."""
        if self.require_all_approvers:
            return len(self.approver_ids)
        return self.required_approvals or 1

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "order": self.order,
            "name": self.name,
            "approver_ids": list(self.approver_ids),
            "require_all_approvers": self.require_all_approvers,
        }
        if self.required_approvals is not None:
            data["required_approvals"] = self.required_approvals
        if self.timeout_hours is not None:
            data["timeout_hours"] = str(self.timeout_hours)
        if self.escalation_action is not None:
            data["escalation_action"] = self.escalation_action.value
        if self.escalation_to_user_id is not None:
            data["escalation_to_user_id"] = self.escalation_to_user_id
        if self.conditions:
            data["conditions"] = [c.to_dict() for c in self.conditions]
        if self.description is not None:
            data["description"] = self.description
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Step:
        action = data.get("escalation_action")
        required = data.get("required_approvals")
        return cls(
            order=int(data["order"]),
            name=str(data["name"]),
            approver_ids=tuple(str(a) for a in data.get("approver_ids") or ()),
            require_all_approvers=bool(data.get("require_all_approvers", False)),
            required_approvals=int(required) if required is not None else None,
            timeout_hours=to_decimal(data.get("timeout_hours")),
            escalation_action=EscalationAction(action) if action else None,
            escalation_to_user_id=data.get("escalation_to_user_id"),
            conditions=tuple(
                Condition.from_dict(c) for c in data.get("conditions") or ()
            ),
            description=data.get("description"),
        )


@dataclass(frozen=True)
class WorkflowTemplate:
    """A named, versioned approval workflow owned by a user or team.

    Contract: frozen per version.  Updates produce a new value with
    ``version`` incremented; approval requests snapshot the version they
    were submitted under.
    """

    id: UUID
    owner_id: str
    name: str
    steps: tuple[Step, ...]
    is_default: bool = False
    is_active: bool = True
    trigger_conditions: tuple[Condition, ...] = ()
    min_value: Decimal | None = None
    max_value: Decimal | None = None
    description: str | None = None
    version: int = 1
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def step(self, order: int) -> Step | None:
        """Return the step with the given order, or None."""
        for step in self.steps:
            if step.order == order:
                return step
        return None

    @property
    def ordered_steps(self) -> tuple[Step, ...]:
        return tuple(sorted(self.steps, key=lambda s: s.order))


@dataclass(frozen=True)
class Document:
    """The business artifact (a proposal) being routed for approval.

    Only ``value`` and the categorical ``attributes`` (``client_type``,
    ``category``, ``discount``, custom fields) matter to the engine.
    """

    document_id: str
    value: Decimal | None = None
    attributes: Mapping[str, Any] = field(default_factory=dict)
