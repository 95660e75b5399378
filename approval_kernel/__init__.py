"""
Approval Kernel

Multi-step approval workflow engine for proposals:
- Configurable ordered approval steps with quorum rules
- Delegation scoped to the current step
- Manual and timeout-driven escalation
- Append-only approval record log as the single source of truth
- Per-approval serialization with optimistic concurrency
"""

__version__ = "0.1.0"
