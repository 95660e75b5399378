"""
approval_config -- settings, workflow-template loading, and kernel wiring.

Responsibility:
    Provides the runtime settings (``get_settings()``), the YAML template
    loader, and the bridges that build kernel services from settings.

Architecture position:
    Configuration -- sits above ``approval_kernel`` and ``approval_engines``.
    The kernel MUST NEVER import from ``approval_config``.
"""

from approval_config.settings import EngineSettings, get_settings

__all__ = ["EngineSettings", "get_settings"]
