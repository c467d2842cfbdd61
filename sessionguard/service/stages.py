from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from sessionguard.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class StageResult:
    """Outcome of one best-effort pipeline stage."""

    stage: str
    ok: bool
    value: Any = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    duration_ms: float = 0.0


async def run_best_effort(
    stage: str,
    func: Callable[..., Awaitable[Any]],
    *args: Any,
    log: Any = None,
    **kwargs: Any,
) -> StageResult:
    """Await ``func`` and turn any exception into a failed StageResult.

    Every stage of the login flow goes through here so isolation is identical
    at each call site: the failure is logged and never propagated.
    """
    log = log or logger
    started = time.perf_counter()
    try:
        value = await func(*args, **kwargs)
    except Exception as exc:
        elapsed = (time.perf_counter() - started) * 1000
        log.warning(
            "login_stage_failed",
            stage=stage,
            error_type=type(exc).__name__,
            error=str(exc),
            duration_ms=round(elapsed, 2),
        )
        return StageResult(
            stage=stage,
            ok=False,
            error=str(exc),
            error_type=type(exc).__name__,
            duration_ms=elapsed,
        )
    elapsed = (time.perf_counter() - started) * 1000
    log.debug("login_stage_completed", stage=stage, duration_ms=round(elapsed, 2))
    return StageResult(stage=stage, ok=True, value=value, duration_ms=elapsed)
