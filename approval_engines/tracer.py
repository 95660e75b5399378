"""
approval_engines.tracer -- Engine invocation tracer emitting APPROVAL_ENGINE_TRACE.

Responsibility:
    Provide a lightweight decorator (``@traced_engine``) that wraps pure
    engine invocations with structured trace logging.  The trace captures
    engine_name, engine_version, input_fingerprint (deterministic SHA-256
    hash of selected arguments), and duration_ms.

Architecture position:
    Engines -- infrastructure support for the pure calculation layer.
    Does NOT introduce I/O into engines; emits a DEBUG log record only.
    Uses its own logger namespace (``approval_kernel.engines.tracer``)
    so engines need not import kernel logging infrastructure.

Invariants enforced:
    - Fingerprints are deterministic: mappings are key-sorted, dataclasses
      are reduced to their identifying fields, and the hash is SHA-256
      truncated to 16 hex chars.
    - The decorator never mutates inputs and never alters the result.

Usage:
    from approval_engines.tracer import traced_engine

    @traced_engine("selection", "1.0", fingerprint_fields=("document",))
    def select_workflow(templates, document):
        ...
"""

from __future__ import annotations

import functools
import hashlib
import inspect
import logging
import time
from collections.abc import Callable, Mapping
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

_logger = logging.getLogger("approval_kernel.engines.tracer")


def _canonicalize(value: Any) -> str:
    """Produce a stable string representation of a value for fingerprinting."""
    if value is None:
        return "null"
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, (bool, int, Decimal, UUID)):
        return str(value)
    if isinstance(value, str):
        return value
    if isinstance(value, Mapping):
        items = sorted(value.items(), key=lambda kv: str(kv[0]))
        return "{" + ",".join(f"{k}:{_canonicalize(v)}" for k, v in items) + "}"
    if isinstance(value, (list, tuple, frozenset, set)):
        return "[" + ",".join(_canonicalize(v) for v in value) + "]"
    # Domain objects: identify by id/version or document id when present.
    for attr in ("id", "document_id"):
        ident = getattr(value, attr, None)
        if ident is not None:
            version = getattr(value, "version", None)
            return f"{type(value).__name__}:{ident}:{_canonicalize(version)}"
    return str(value)


def compute_input_fingerprint(
    fingerprint_fields: tuple[str, ...],
    arguments: Mapping[str, Any],
) -> str:
    """Deterministic SHA-256 prefix of the selected bound arguments.

    Missing fields are recorded as "null".
    """
    parts = [
        f"{name}={_canonicalize(arguments.get(name))}"
        for name in fingerprint_fields
    ]
    canonical = "|".join(parts)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]


def traced_engine(
    engine_name: str,
    engine_version: str,
    fingerprint_fields: tuple[str, ...] = (),
) -> Callable:
    """Decorator that emits APPROVAL_ENGINE_TRACE for pure engine invocations.

    Unlike a kwargs-only tracer, positional arguments are bound to their
    parameter names so ``fingerprint_fields`` works for either call style.
    """

    def decorator(func: Callable) -> Callable:
        signature = inspect.signature(func)

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            fp = ""
            if fingerprint_fields and _logger.isEnabledFor(logging.DEBUG):
                bound = signature.bind_partial(*args, **kwargs)
                fp = compute_input_fingerprint(fingerprint_fields, bound.arguments)

            t0 = time.monotonic()
            result = func(*args, **kwargs)
            duration_ms = round((time.monotonic() - t0) * 1000, 2)

            _logger.debug(
                "APPROVAL_ENGINE_TRACE",
                extra={
                    "trace_type": "APPROVAL_ENGINE_TRACE",
                    "engine_name": engine_name,
                    "engine_version": engine_version,
                    "input_fingerprint": fp,
                    "duration_ms": duration_ms,
                    "function": func.__qualname__,
                },
            )
            return result

        return wrapper

    return decorator
