"""
Request-scoped tracing for LibraryFinder search debugging.

Provides a thread-local TraceContext that records:
  - Per-stage timing (stage_name, start/end, elapsed_ms, api_calls, errors)
  - Per-outbound-call timing (endpoint, elapsed_ms, HTTP status, provider status)
  - End-of-request summary (total_elapsed, total_api_calls, outcome)

Usage:
    from lf_trace import TraceContext, get_trace, set_trace, clear_trace

    # In the request handler (app.py):
    ctx = TraceContext(trace_id=request_id)
    set_trace(ctx)
    ...
    ctx.log_summary()
    clear_trace()

    # In GoogleMapsClient._traced_get:
    trace = get_trace()
    if trace:
        trace.record_api_call(...)

Detail fetches run on worker threads; the search engine calls
set_trace(parent) on each worker so their calls land on the same context.
"""

import time
import threading
import logging
from dataclasses import dataclass, field
from typing import List, Dict, Optional, Any

logger = logging.getLogger(__name__)


# =============================================================================
# Data classes for trace records
# =============================================================================

@dataclass
class APICallRecord:
    """One outbound Google Maps call."""
    endpoint: str         # "geocode", "places_nearby", "text_search", "place_details"
    elapsed_ms: int
    status_code: int
    provider_status: str = ""   # e.g. Google "OK", "ZERO_RESULTS"
    service: str = "google_maps"
    stage: str = ""             # which search stage was running


@dataclass
class StageRecord:
    """One search stage (geocode, nearby_search, place_details, select)."""
    stage_name: str
    start_ts: float = 0.0
    end_ts: float = 0.0
    elapsed_ms: int = 0
    api_calls_made: int = 0
    error_class: str = ""
    error_message: str = ""


# =============================================================================
# Trace context
# =============================================================================

@dataclass
class TraceContext:
    """Accumulates timing data for a single search request."""
    trace_id: str
    query: str = ""
    request_start: float = field(default_factory=time.time)
    stages: List[StageRecord] = field(default_factory=list)
    api_calls: List[APICallRecord] = field(default_factory=list)
    outcome_message: str = ""
    _current_stage: str = ""
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    # ------------------------------------------------------------------
    # Stage lifecycle
    # ------------------------------------------------------------------

    def start_stage(self, name: str):
        self._current_stage = name

    def end_stage(self):
        self._current_stage = ""

    def record_stage(
        self,
        stage_name: str,
        start_ts: float,
        end_ts: float,
        error_class: str = "",
        error_message: str = "",
    ):
        with self._lock:
            api_in_stage = sum(1 for c in self.api_calls if c.stage == stage_name)
            rec = StageRecord(
                stage_name=stage_name,
                start_ts=start_ts,
                end_ts=end_ts,
                elapsed_ms=int((end_ts - start_ts) * 1000),
                api_calls_made=api_in_stage,
                error_class=error_class,
                error_message=error_message,
            )
            self.stages.append(rec)
        self.end_stage()

        status = "ERR" if error_class else "OK"
        err_info = f" err={error_class}: {error_message}" if error_class else ""
        logger.info(
            "  [stage] trace=%s %s %s %dms api_calls=%d%s",
            self.trace_id,
            stage_name,
            status,
            rec.elapsed_ms,
            api_in_stage,
            err_info,
        )

    # ------------------------------------------------------------------
    # API call recording
    # ------------------------------------------------------------------

    def record_api_call(
        self,
        endpoint: str,
        elapsed_ms: int,
        status_code: int,
        provider_status: str = "",
    ):
        rec = APICallRecord(
            endpoint=endpoint,
            elapsed_ms=elapsed_ms,
            status_code=status_code,
            provider_status=provider_status,
            stage=self._current_stage,
        )
        # Worker threads append concurrently during the detail fan-out
        with self._lock:
            self.api_calls.append(rec)
        logger.debug(
            "  [api] trace=%s stage=%s ep=%s ms=%d http=%d provider=%s",
            self.trace_id,
            rec.stage or "-",
            endpoint,
            elapsed_ms,
            status_code,
            provider_status,
        )

    # ------------------------------------------------------------------
    # Summary
    # ------------------------------------------------------------------

    def summary_dict(self) -> Dict[str, Any]:
        """Return a summary dict suitable for logging and JSON responses."""
        total_elapsed = int((time.time() - self.request_start) * 1000)
        errored = [s for s in self.stages if s.error_class]
        skipped_details = sum(
            1 for c in self.api_calls
            if c.endpoint == "place_details" and c.provider_status != "OK"
        )

        # A failed geocode stage is still a domain outcome once the engine
        # has turned it into a message.
        if self.outcome_message:
            outcome = "not_found"
        elif errored:
            outcome = "error"
        elif not self.stages:
            outcome = "empty"
        else:
            outcome = "success"

        result = {
            "trace_id": self.trace_id,
            "query": self.query,
            "total_elapsed_ms": total_elapsed,
            "total_api_calls": len(self.api_calls),
            "stages_completed": len(self.stages) - len(errored),
            "stages_errored": len(errored),
            "details_skipped": skipped_details,
            "final_outcome": outcome,
        }
        if self.outcome_message:
            result["message"] = self.outcome_message
        return result

    def log_summary(self):
        """Emit a single structured summary log line."""
        s = self.summary_dict()
        logger.info(
            "[trace-summary] trace=%s q=%r total_ms=%d api_calls=%d "
            "completed=%d errored=%d skipped_details=%d outcome=%s",
            s["trace_id"],
            s["query"],
            s["total_elapsed_ms"],
            s["total_api_calls"],
            s["stages_completed"],
            s["stages_errored"],
            s["details_skipped"],
            s["final_outcome"],
        )

    # ------------------------------------------------------------------
    # Serialisation helpers (for /debug endpoint)
    # ------------------------------------------------------------------

    def stages_to_list(self) -> List[Dict[str, Any]]:
        return [
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

    def api_calls_to_list(self) -> List[Dict[str, Any]]:
        return [
            {
                "service": c.service,
                "endpoint": c.endpoint,
                "elapsed_ms": c.elapsed_ms,
                "status_code": c.status_code,
                "provider_status": c.provider_status,
                "stage": c.stage,
            }
            for c in self.api_calls
        ]

    def full_trace_dict(self) -> Dict[str, Any]:
        """Complete trace data for debug output."""
        summary = self.summary_dict()
        summary["stages"] = self.stages_to_list()
        summary["api_calls"] = self.api_calls_to_list()
        return summary


# =============================================================================
# Thread-local storage
# =============================================================================

_trace_local = threading.local()


def get_trace() -> Optional[TraceContext]:
    """Get the current request's trace context, or None."""
    return getattr(_trace_local, "ctx", None)


def set_trace(ctx: Optional[TraceContext]):
    """Set the trace context for the current thread."""
    _trace_local.ctx = ctx


def clear_trace():
    """Clear the current trace context."""
    _trace_local.ctx = None
