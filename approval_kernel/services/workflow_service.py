"""
approval_kernel.services.workflow_service -- Workflow template management.

Responsibility:
    Create, read, update and delete workflow templates for an owner, and
    select the template that routes a given document.  Validation and
    selection are delegated to the pure engines.

Architecture position:
    Kernel > Services.  Talks to persistence only through ApprovalStore.
    Never commits; the caller owns the transaction.

Invariants enforced:
    - Templates are validated on every write (validate_template).
    - At most one default template per owner: setting ``is_default``
      clears the flag on the owner's other templates.
    - ``version`` increments on every update.
    - A template referenced by a PENDING request cannot be deleted.

Failure modes:
    - WorkflowNotFoundError, WorkflowAccessDeniedError,
      InvalidWorkflowDefinitionError, WorkflowInUseError.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import replace
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from approval_engines.selection import select_workflow
from approval_engines.validation import validate_template
from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.domain.collaborators import ApprovalStore
from approval_kernel.domain.workflow import (
    Condition,
    Document,
    Step,
    WorkflowTemplate,
    to_decimal,
)
from approval_kernel.exceptions import (
    WorkflowAccessDeniedError,
    WorkflowInUseError,
    WorkflowNotFoundError,
)
from approval_kernel.logging_config import LogContext, get_logger

logger = get_logger("services.workflow")

_UPDATABLE_FIELDS = frozenset({
    "name",
    "description",
    "steps",
    "is_default",
    "is_active",
    "trigger_conditions",
    "min_value",
    "max_value",
})


def _as_steps(steps: Iterable[Step | Mapping[str, Any]]) -> tuple[Step, ...]:
    return tuple(s if isinstance(s, Step) else Step.from_dict(s) for s in steps)


def _as_conditions(
    conditions: Iterable[Condition | Mapping[str, Any]],
) -> tuple[Condition, ...]:
    return tuple(
        c if isinstance(c, Condition) else Condition.from_dict(c) for c in conditions
    )


class WorkflowService:
    """Owner-scoped CRUD and selection over workflow templates."""

    def __init__(self, store: ApprovalStore, clock: Clock | None = None) -> None:
        self._store = store
        self._clock = clock or SystemClock()

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def select_workflow(self, owner_id: str, document: Document) -> WorkflowTemplate | None:
        """Pick the owner's template for ``document`` (None if nothing fits)."""
        templates = self._store.get_templates_for_owner(owner_id, active_only=True)
        selected = select_workflow(templates, document)
        logger.debug(
            "workflow_selected",
            extra={
                "owner_id": owner_id,
                "document_id": document.document_id,
                "candidates": len(templates),
                "selected_workflow_id": str(selected.id) if selected else None,
            },
        )
        return selected

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def create_workflow(
        self,
        owner_id: str,
        name: str,
        steps: Iterable[Step | Mapping[str, Any]],
        *,
        description: str | None = None,
        is_default: bool = False,
        is_active: bool = True,
        trigger_conditions: Iterable[Condition | Mapping[str, Any]] = (),
        min_value: Decimal | int | str | None = None,
        max_value: Decimal | int | str | None = None,
        workflow_id: UUID | None = None,
    ) -> WorkflowTemplate:
        """Validate and store a new template (version 1)."""
        now = self._clock.now()
        template = WorkflowTemplate(
            id=workflow_id or uuid4(),
            owner_id=owner_id,
            name=name,
            description=description,
            steps=_as_steps(steps),
            is_default=is_default,
            is_active=is_active,
            trigger_conditions=_as_conditions(trigger_conditions),
            min_value=to_decimal(min_value),
            max_value=to_decimal(max_value),
            version=1,
            created_at=now,
            updated_at=now,
        )
        validate_template(template)

        if template.is_default:
            self._clear_other_defaults(owner_id, template.id)
        created = self._store.create_template(template)

        logger.info(
            "workflow_created",
            extra={
                "workflow_id": str(created.id),
                "owner_id": owner_id,
                "workflow_name": name,
                "step_count": len(created.steps),
                "is_default": created.is_default,
            },
        )
        return created

    def list_workflows(self, owner_id: str) -> list[WorkflowTemplate]:
        """All of the owner's templates, active or not."""
        return self._store.get_templates_for_owner(owner_id, active_only=False)

    def get_workflow(self, owner_id: str, workflow_id: UUID) -> WorkflowTemplate:
        template = self._store.get_template(workflow_id)
        if template is None:
            raise WorkflowNotFoundError(str(workflow_id))
        if template.owner_id != owner_id:
            logger.warning(
                "workflow_access_denied",
                extra={"workflow_id": str(workflow_id), "owner_id": owner_id},
            )
            raise WorkflowAccessDeniedError(str(workflow_id), owner_id)
        return template

    def update_workflow(
        self,
        owner_id: str,
        workflow_id: UUID,
        **changes: Any,
    ) -> WorkflowTemplate:
        """Apply ``changes`` (None means unchanged), re-validate, bump version."""
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise TypeError(f"Unknown workflow fields: {sorted(unknown)}")

        current = self.get_workflow(owner_id, workflow_id)
        updates: dict[str, Any] = {}
        for key, value in changes.items():
            if value is None:
                continue
            if key == "steps":
                value = _as_steps(value)
            elif key == "trigger_conditions":
                value = _as_conditions(value)
            elif key in ("min_value", "max_value"):
                value = to_decimal(value)
            updates[key] = value

        updated = replace(
            current,
            **updates,
            version=current.version + 1,
            updated_at=self._clock.now(),
        )
        validate_template(updated)

        if updated.is_default and not current.is_default:
            self._clear_other_defaults(owner_id, workflow_id)
        saved = self._store.update_template(updated)

        with LogContext.bind(workflow_id=str(workflow_id)):
            logger.info(
                "workflow_updated",
                extra={
                    "owner_id": owner_id,
                    "changed_fields": sorted(updates),
                    "version": saved.version,
                },
            )
        return saved

    def delete_workflow(self, owner_id: str, workflow_id: UUID) -> None:
        """Delete a template that no PENDING request references."""
        self.get_workflow(owner_id, workflow_id)
        pending = self._store.count_pending_for_template(workflow_id)
        if pending:
            logger.info(
                "workflow_delete_blocked",
                extra={"workflow_id": str(workflow_id), "pending_count": pending},
            )
            raise WorkflowInUseError(str(workflow_id), pending)
        self._store.delete_template(workflow_id)
        logger.info(
            "workflow_deleted",
            extra={"workflow_id": str(workflow_id), "owner_id": owner_id},
        )

    def _clear_other_defaults(self, owner_id: str, keep_id: UUID) -> None:
        now = self._clock.now()
        for other in self._store.get_templates_for_owner(owner_id, active_only=False):
            if other.id != keep_id and other.is_default:
                self._store.update_template(
                    replace(other, is_default=False, updated_at=now)
                )
                logger.info(
                    "workflow_default_cleared",
                    extra={"workflow_id": str(other.id), "owner_id": owner_id},
                )
