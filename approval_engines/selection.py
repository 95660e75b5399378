"""
approval_engines.selection -- Pure workflow selector.

Responsibility:
    Pick the workflow template that should route a document, given the
    owner's templates.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - Only active templates are considered.
    - Deterministic ordering: templates keep their given order except
      that defaults are moved last (stable sort), so a conditioned
      template always wins over the default.  First match wins.
"""

from __future__ import annotations

from collections.abc import Iterable

from approval_engines.conditions import matches_template
from approval_engines.tracer import traced_engine
from approval_kernel.domain.workflow import Document, WorkflowTemplate


@traced_engine("selection", "1.0", fingerprint_fields=("document",))
def select_workflow(
    templates: Iterable[WorkflowTemplate],
    document: Document,
) -> WorkflowTemplate | None:
    """Select the template for a document.

    Returns:
        The first active non-default template whose trigger block
        matches, else the active default template, else None.
    """
    active = [t for t in templates if t.is_active]
    ordered = sorted(active, key=lambda t: t.is_default)

    for template in ordered:
        if template.is_default:
            continue
        if matches_template(template, document):
            return template

    for template in ordered:
        if template.is_default:
            return template

    return None
