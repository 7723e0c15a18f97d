"""
billing_engines.tracer -- ``@traced_engine`` decorator.

Every decorated engine call emits one DEBUG record with message
``BILLING_ENGINE_TRACE`` carrying the engine name and version, how long the
call took, and a short fingerprint of the keyword arguments named in
``fingerprint_fields``.  Two calls with equal inputs (Decimal trailing
zeros and dict ordering ignored) share a fingerprint, so a trace can be
matched to the invoice state that produced it.

The decorator reads kwargs and logs; it never alters arguments or results.
A call that raises is traced with ``outcome="error"`` and the exception
propagates unchanged.
"""

from __future__ import annotations

import functools
import time
from collections.abc import Callable, Iterable
from typing import Any, TypeVar

from billing_kernel.logging_config import get_logger
from billing_kernel.utils.hashing import hash_payload

logger = get_logger("engines.tracer")

TRACE_MESSAGE = "BILLING_ENGINE_TRACE"
FINGERPRINT_LENGTH = 16

F = TypeVar("F", bound=Callable[..., Any])


def input_fingerprint(fields: Iterable[str], kwargs: dict[str, Any]) -> str:
    """Truncated payload hash of the named kwargs; absent ones count as None."""
    selected = {name: kwargs.get(name) for name in fields}
    if not selected:
        return ""
    return hash_payload(selected)[:FINGERPRINT_LENGTH]


def traced_engine(
    engine_name: str,
    engine_version: str,
    fingerprint_fields: tuple[str, ...] = (),
) -> Callable[[F], F]:
    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            fingerprint = input_fingerprint(fingerprint_fields, kwargs)
            started = time.perf_counter()
            outcome = "ok"
            try:
                return func(*args, **kwargs)
            except Exception:
                outcome = "error"
                raise
            finally:
                logger.debug(
                    TRACE_MESSAGE,
                    extra={
                        "engine_name": engine_name,
                        "engine_version": engine_version,
                        "function": func.__qualname__,
                        "input_fingerprint": fingerprint,
                        "duration_ms": round((time.perf_counter() - started) * 1000, 3),
                        "outcome": outcome,
                    },
                )

        return wrapper  # type: ignore[return-value]

    return decorator
