"""
Request-scoped tracing for location-insight generation.

A thread-local TraceContext collects:
  - one StageRecord per category search (timing, api calls, error)
  - one ProviderCallRecord per outbound Google Maps request
  - a single summary line at the end of the request

Usage:
    from li_trace import TraceContext, get_trace, set_trace, clear_trace

    ctx = TraceContext(trace_id=request_id)
    set_trace(ctx)
    ...
    ctx.log_summary()
    clear_trace()

Fan-out threads do not inherit thread-locals, so the engine calls
set_trace(parent) at the top of every pooled task.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class ProviderCallRecord:
    """One outbound provider request."""
    service: str          # "google_maps"
    endpoint: str         # "geocode" | "reverse_geocode" | "places_nearby"
    elapsed_ms: int
    status_code: int
    provider_status: str = ""   # Google "OK", "ZERO_RESULTS", ...
    stage: str = ""


@dataclass
class StageRecord:
    """One unit of generation work, normally a single category search."""
    stage_name: str
    elapsed_ms: int = 0
    api_calls_made: int = 0
    error_class: str = ""
    error_message: str = ""


@dataclass
class TraceContext:
    """Accumulates timing for one generate/update request."""
    trace_id: str
    request_start: float = field(default_factory=time.time)
    stages: List[StageRecord] = field(default_factory=list)
    calls: List[ProviderCallRecord] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    # Pooled category searches write to the same context concurrently.

    def record_stage(self, stage_name: str, start_ts: float, end_ts: float,
                     error_class: str = "", error_message: str = ""):
        with self._lock:
            api_in_stage = sum(1 for c in self.calls if c.stage == stage_name)
            rec = StageRecord(
                stage_name=stage_name,
                elapsed_ms=int((end_ts - start_ts) * 1000),
                api_calls_made=api_in_stage,
                error_class=error_class,
                error_message=error_message,
            )
            self.stages.append(rec)

        status = "ERR" if error_class else "OK"
        err_info = f" err={error_class}: {error_message}" if error_class else ""
        logger.info(
            "  [stage] trace=%s %s %s %dms api_calls=%d%s",
            self.trace_id, stage_name, status, rec.elapsed_ms,
            api_in_stage, err_info,
        )

    def record_api_call(self, service: str, endpoint: str, elapsed_ms: int,
                        status_code: int, provider_status: str = "",
                        stage: str = ""):
        rec = ProviderCallRecord(
            service=service,
            endpoint=endpoint,
            elapsed_ms=elapsed_ms,
            status_code=status_code,
            provider_status=provider_status,
            stage=stage or _current_stage(),
        )
        with self._lock:
            self.calls.append(rec)
        logger.info(
            "  [api] trace=%s stage=%s svc=%s ep=%s ms=%d http=%d provider=%s",
            self.trace_id, rec.stage or "-", service, endpoint,
            elapsed_ms, status_code, provider_status,
        )

    def summary_dict(self) -> Dict[str, Any]:
        total_elapsed = int((time.time() - self.request_start) * 1000)
        with self._lock:
            ok = [s for s in self.stages if not s.error_class]
            errored = [s for s in self.stages if s.error_class]
            n_calls = len(self.calls)

        if errored and not ok:
            outcome = "error"
        elif not ok:
            outcome = "empty"
        elif errored:
            outcome = "partial"
        else:
            outcome = "success"

        return {
            "trace_id": self.trace_id,
            "total_elapsed_ms": total_elapsed,
            "total_api_calls": n_calls,
            "stages_completed": len(ok),
            "stages_errored": len(errored),
            "final_outcome": outcome,
        }

    def log_summary(self):
        s = self.summary_dict()
        logger.info(
            "[trace-summary] trace=%s total_ms=%d api_calls=%d "
            "completed=%d errored=%d outcome=%s",
            s["trace_id"], s["total_elapsed_ms"], s["total_api_calls"],
            s["stages_completed"], s["stages_errored"], s["final_outcome"],
        )

    def full_trace_dict(self) -> Dict[str, Any]:
        """Summary plus per-stage and per-call detail, for admin debug output."""
        summary = self.summary_dict()
        with self._lock:
            summary["stages"] = [
                {
                    "stage": s.stage_name,
                    "elapsed_ms": s.elapsed_ms,
                    "api_calls": s.api_calls_made,
                    "error": (
                        f"{s.error_class}: {s.error_message}"
                        if s.error_class else None
                    ),
                }
                for s in self.stages
            ]
            summary["api_calls"] = [
                {
                    "service": c.service,
                    "endpoint": c.endpoint,
                    "elapsed_ms": c.elapsed_ms,
                    "status_code": c.status_code,
                    "provider_status": c.provider_status,
                    "stage": c.stage,
                }
                for c in self.calls
            ]
        return summary


# =============================================================================
# Thread-local storage
# =============================================================================

_trace_local = threading.local()


def get_trace() -> Optional[TraceContext]:
    """Current thread's trace context, or None."""
    return getattr(_trace_local, "ctx", None)


def set_trace(ctx: Optional[TraceContext]):
    _trace_local.ctx = ctx


def clear_trace():
    _trace_local.ctx = None
    _trace_local.stage = ""


def _current_stage() -> str:
    return getattr(_trace_local, "stage", "")


def timed_stage(stage_name: str, fn: Callable, *args, **kwargs):
    """Run *fn* as a named stage on the current trace. Re-raises on failure."""
    trace = get_trace()
    _trace_local.stage = stage_name
    t0 = time.time()
    try:
        result = fn(*args, **kwargs)
    except Exception as exc:
        t1 = time.time()
        if trace:
            trace.record_stage(
                stage_name, t0, t1,
                error_class=type(exc).__name__,
                error_message=str(exc)[:200],
            )
        else:
            logger.warning("  [stage] %s FAILED (%.1fs)", stage_name, t1 - t0)
        raise
    finally:
        _trace_local.stage = ""
    t1 = time.time()
    if trace:
        trace.record_stage(stage_name, t0, t1)
    else:
        logger.info("  [stage] %s OK (%.1fs)", stage_name, t1 - t0)
    return result
