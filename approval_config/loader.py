"""
Workflow Template Loader (``approval_config.loader``).

Responsibility
--------------
Loads YAML workflow-template files and parses them into validated
``WorkflowTemplate`` domain objects.  Used by the ``load-templates`` CLI
and by tests; services never read files.

Architecture position
---------------------
**Config layer** -- infrastructure tooling.  Imports kernel domain types
and the validation engine; the kernel never imports this module.

Invariants enforced
-------------------
* Every parsed template passes ``validate_template`` before it is
  returned.
* A template without an explicit ``id`` gets a deterministic UUID5 from
  its owner and name, so re-loading a file updates the same template
  instead of creating a duplicate.
* ``compute_checksum`` is a deterministic SHA-256 over the parsed data.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing ``name`` / ``steps`` / owner  -> ``ValueError``.
* Structural problems  -> ``InvalidWorkflowDefinitionError``.

File format
-----------
Either a single template mapping, a list of them, or a mapping with a
``workflows:`` list::

    owner_id: sales-team
    workflows:
      - name: Large deals
        trigger_conditions:
          - {type: VALUE_ABOVE, value: 50000}
        steps:
          - order: 1
            name: Sales manager
            approver_ids: [alice, bob]
            timeout_hours: 24
            escalation_action: NOTIFY
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any
from uuid import UUID, uuid5

import yaml

from approval_engines.validation import validate_template
from approval_kernel.domain.workflow import (
    Condition,
    Step,
    WorkflowTemplate,
    to_decimal,
)

# Namespace for deterministic template ids derived from owner + name.
_TEMPLATE_UUID_NAMESPACE = UUID("5b0e3c52-7d0a-4f4e-9c61-2f1f0f7a9a11")

_TEMPLATE_SUFFIXES = (".yaml", ".yml")


def load_yaml_file(path: Path) -> Any:
    """
    Load a single YAML file and return its contents.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def template_id_for(owner_id: str, name: str) -> UUID:
    """Deterministic template id for an (owner, name) pair."""
    return uuid5(_TEMPLATE_UUID_NAMESPACE, f"{owner_id}/{name}")


def parse_template(data: dict[str, Any], owner_id: str | None = None) -> WorkflowTemplate:
    """
    Parse and validate a ``WorkflowTemplate`` from a dict.

    ``owner_id`` in the data wins over the argument.

    Raises:
        ValueError: if required keys are missing.
        InvalidWorkflowDefinitionError: if the template is malformed.
    """
    if not isinstance(data, dict):
        raise ValueError(f"Workflow template must be a mapping, got {type(data).__name__}")
    owner = data.get("owner_id") or owner_id
    if not owner:
        raise ValueError("Workflow template has no owner_id")
    if not data.get("name"):
        raise ValueError("Workflow template has no name")
    if "steps" not in data:
        raise ValueError(f"Workflow template {data['name']!r} has no steps")

    raw_id = data.get("id")
    template = WorkflowTemplate(
        id=UUID(str(raw_id)) if raw_id else template_id_for(owner, data["name"]),
        owner_id=str(owner),
        name=str(data["name"]),
        description=data.get("description"),
        steps=tuple(Step.from_dict(s) for s in data.get("steps") or ()),
        is_default=bool(data.get("is_default", False)),
        is_active=bool(data.get("is_active", True)),
        trigger_conditions=tuple(
            Condition.from_dict(c) for c in data.get("trigger_conditions") or ()
        ),
        min_value=to_decimal(data.get("min_value")),
        max_value=to_decimal(data.get("max_value")),
    )
    validate_template(template)
    return template


def load_templates_file(path: Path, owner_id: str | None = None) -> list[WorkflowTemplate]:
    """Load every template in one YAML file.

    A top-level ``owner_id`` applies to each entry that lacks its own.
    """
    data = load_yaml_file(Path(path))
    if isinstance(data, list):
        entries, file_owner = data, None
    elif isinstance(data, dict) and "workflows" in data:
        entries, file_owner = data["workflows"] or [], data.get("owner_id")
    elif isinstance(data, dict) and data:
        entries, file_owner = [data], None
    else:
        return []

    default_owner = file_owner or owner_id
    return [parse_template(entry, default_owner) for entry in entries]


def load_templates_dir(path: Path, owner_id: str | None = None) -> list[WorkflowTemplate]:
    """Load every ``*.yaml`` / ``*.yml`` file under ``path`` (sorted, recursive)."""
    root = Path(path)
    files = sorted(p for p in root.rglob("*") if p.suffix in _TEMPLATE_SUFFIXES)
    templates: list[WorkflowTemplate] = []
    for file in files:
        templates.extend(load_templates_file(file, owner_id))
    return templates


def load_templates(path: Path, owner_id: str | None = None) -> list[WorkflowTemplate]:
    """Load a single file or a whole directory."""
    path = Path(path)
    if path.is_dir():
        return load_templates_dir(path, owner_id)
    return load_templates_file(path, owner_id)


def compute_checksum(templates: list[WorkflowTemplate]) -> str:
    """
    Deterministic SHA-256 over the parsed templates.

    Used for change detection when templates are re-loaded.
    """
    payload = [
        {
            "id": str(t.id),
            "owner_id": t.owner_id,
            "name": t.name,
            "is_default": t.is_default,
            "is_active": t.is_active,
            "steps": [s.to_dict() for s in t.steps],
            "trigger_conditions": [c.to_dict() for c in t.trigger_conditions],
            "min_value": str(t.min_value) if t.min_value is not None else None,
            "max_value": str(t.max_value) if t.max_value is not None else None,
        }
        for t in sorted(templates, key=lambda t: str(t.id))
    ]
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
