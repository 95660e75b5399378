"""
Module: approval_kernel.models.workflow
Responsibility: ORM persistence for workflow templates.

Architecture position: Kernel > Models.  May import from db/base.py and
    domain/ (for DTO conversion) only.

Invariants enforced:
    - Steps and trigger conditions are stored as JSON documents in the
      shape produced by ``Step.to_dict`` / ``Condition.to_dict`` and are
      re-hydrated into typed domain records on read.
    - ``version`` increments on every update; approval requests snapshot
      the version they were submitted under.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import JSON, Boolean, Index, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from approval_kernel.db.base import Base, UTCDateTime

if TYPE_CHECKING:
    from approval_kernel.domain.workflow import WorkflowTemplate


class WorkflowTemplateModel(Base):
    """Persistent workflow template.

    Contract:
        At most one ``is_default`` template per owner (enforced by
        WorkflowService, which clears the flag on the owner's other
        templates).
    """

    __tablename__ = "workflow_templates"

    __table_args__ = (
        Index("ix_workflow_templates_owner_active", "owner_id", "is_active"),
    )

    owner_id: Mapped[str] = mapped_column(String(100), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    steps: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False)
    trigger_conditions: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON, nullable=False, default=list,
    )
    min_value: Mapped[Decimal | None] = mapped_column(Numeric(38, 9), nullable=True)
    max_value: Mapped[Decimal | None] = mapped_column(Numeric(38, 9), nullable=True)
    version: Mapped[int] = mapped_column(nullable=False, default=1)
    created_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<WorkflowTemplate {self.id} owner={self.owner_id} "
            f"name={self.name!r} v{self.version}>"
        )

    def to_dto(self) -> WorkflowTemplate:
        """Convert ORM model to frozen domain DTO."""
        from approval_kernel.domain.workflow import (
            Condition,
            Step,
            WorkflowTemplate as WorkflowTemplateDTO,
        )

        return WorkflowTemplateDTO(
            id=self.id,
            owner_id=self.owner_id,
            name=self.name,
            description=self.description,
            is_default=self.is_default,
            is_active=self.is_active,
            steps=tuple(Step.from_dict(s) for s in self.steps or ()),
            trigger_conditions=tuple(
                Condition.from_dict(c) for c in self.trigger_conditions or ()
            ),
            min_value=self.min_value,
            max_value=self.max_value,
            version=self.version,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    @classmethod
    def from_dto(cls, dto: WorkflowTemplate) -> WorkflowTemplateModel:
        """Create ORM model from domain DTO."""
        model = cls(id=dto.id)
        model.apply_dto(dto)
        return model

    def apply_dto(self, dto: WorkflowTemplate) -> None:
        """Overwrite every mutable column from the DTO."""
        self.owner_id = dto.owner_id
        self.name = dto.name
        self.description = dto.description
        self.is_default = dto.is_default
        self.is_active = dto.is_active
        self.steps = [s.to_dict() for s in dto.steps]
        self.trigger_conditions = [c.to_dict() for c in dto.trigger_conditions]
        self.min_value = dto.min_value
        self.max_value = dto.max_value
        self.version = dto.version
        self.created_at = dto.created_at
        self.updated_at = dto.updated_at
