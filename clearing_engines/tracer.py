"""
clearing_engines.tracer -- engine invocation tracer emitting CLEARING_ENGINE_TRACE.

Responsibility:
    ``@traced_engine`` wraps a pure engine function with one structured
    log record per call: engine name and version, a fingerprint of the
    selected keyword inputs, and the wall-clock duration.

Architecture position:
    Engines -- infrastructure for the pure calculation layer.  Emits a log
    record only and uses its own logger (``clearing_kernel.engines.tracer``)
    so engines never import the kernel logging module.

Invariants enforced:
    - The fingerprint is deterministic: mappings are key-sorted, Decimals
      are normalized, sequences keep their order.
    - The decorator never mutates inputs or results.

Failure modes:
    - Fields named in ``fingerprint_fields`` but not passed by keyword are
      fingerprinted as ``null``.

Audit relevance:
    Re-running reconciliation or netting on identical inputs yields an
    identical ``input_fingerprint``; a different fingerprint for the same
    period means the inputs moved.
"""

from __future__ import annotations

import functools
import hashlib
import logging
import time
from collections.abc import Callable, Mapping
from decimal import Decimal
from typing import Any

_logger = logging.getLogger("clearing_kernel.engines.tracer")


def _canonicalize(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, Decimal):
        return format(value.normalize(), "f")
    if isinstance(value, (bool, int, float)):
        return str(value)
    if isinstance(value, str):
        return value
    if isinstance(value, Mapping):
        items = sorted(value.items(), key=lambda kv: str(kv[0]))
        return "{" + ",".join(f"{k}:{_canonicalize(v)}" for k, v in items) + "}"
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(_canonicalize(v) for v in value) + "]"
    return repr(value)


def compute_input_fingerprint(
    fingerprint_fields: tuple[str, ...],
    kwargs: dict[str, Any],
) -> str:
    """16-hex-char SHA-256 prefix over the named keyword inputs."""
    canonical = "|".join(
        f"{field}={_canonicalize(kwargs.get(field))}" for field in fingerprint_fields
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]


def traced_engine(
    engine_name: str,
    engine_version: str,
    fingerprint_fields: tuple[str, ...] = (),
) -> Callable:
    """Decorator that emits CLEARING_ENGINE_TRACE for pure engine invocations.

    Args:
        engine_name: Engine identifier (e.g. ``"netting"``).
        engine_version: Engine version (e.g. ``"1.0"``).
        fingerprint_fields: Keyword argument names included in the
            input fingerprint.
    """

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            fp = ""
            if fingerprint_fields:
                fp = compute_input_fingerprint(fingerprint_fields, kwargs)

            t0 = time.monotonic()
            result = func(*args, **kwargs)
            duration_ms = round((time.monotonic() - t0) * 1000, 2)

            _logger.info(
                "CLEARING_ENGINE_TRACE",
                extra={
                    "trace_type": "CLEARING_ENGINE_TRACE",
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
