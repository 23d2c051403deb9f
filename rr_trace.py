"""
Per-request tracing for RentRoute searches.

Each request gets a TraceContext stored in a thread-local. It collects how
long each pipeline stage took (fetch_listings, commute, score), every call
made to Google Maps or RentCast, and the commute cache hit / miss / backoff
counts, then logs one summary line at teardown.

    ctx = TraceContext(trace_id=g.request_id)
    set_trace(ctx)
    with ctx.stage("commute"):
        engine.resolve(...)
    ctx.log_summary()
    clear_trace()

Thread pools do not see the caller's thread-local. Code that fans out
captures get_trace() first and calls set_trace() at the top of each task
(google_maps.py, commute.py).
"""

import logging
import threading
import time
from collections import Counter
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderCall:
    service: str                # google_maps | rentcast
    endpoint: str
    elapsed_ms: int
    status_code: int            # 0 when no HTTP response arrived
    provider_status: str = ""   # Google "OK"/"ZERO_RESULTS", or the exception name
    stage: str = ""


@dataclass
class StageTiming:
    stage_name: str
    elapsed_ms: int
    api_calls_made: int = 0
    error_class: str = ""
    error_message: str = ""

    @property
    def failed(self) -> bool:
        return bool(self.error_class)


@dataclass
class TraceContext:
    trace_id: str
    request_start: float = field(default_factory=time.time)
    stages: List[StageTiming] = field(default_factory=list)
    api_calls: List[ProviderCall] = field(default_factory=list)
    cache_hits: int = 0
    cache_misses: int = 0
    backoff_skips: int = 0
    _current_stage: str = ""
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @contextmanager
    def stage(self, name: str) -> Iterator[None]:
        """Attribute calls made inside the block to ``name`` and time it.

        An exception escaping the block is noted on the stage record and
        re-raised unchanged.
        """
        outer, self._current_stage = self._current_stage, name
        started = time.time()
        failure: Optional[BaseException] = None
        try:
            yield
        except Exception as e:
            failure = e
            raise
        finally:
            self._current_stage = outer
            self.record_stage(
                name, started, time.time(),
                type(failure).__name__ if failure else "",
                str(failure) if failure else "",
            )

    def record_stage(self, stage_name: str, start_ts: float, end_ts: float,
                     error_class: str = "", error_message: str = "") -> StageTiming:
        with self._lock:
            calls = self._calls_by_stage()[stage_name]
        timing = StageTiming(stage_name, int((end_ts - start_ts) * 1000), calls,
                             error_class, error_message)
        self.stages.append(timing)
        if timing.failed:
            logger.warning("[trace %s] stage %s failed after %dms (%d calls): %s: %s",
                           self.trace_id, stage_name, timing.elapsed_ms, calls,
                           error_class, error_message)
        else:
            logger.info("[trace %s] stage %s done in %dms (%d calls)",
                        self.trace_id, stage_name, timing.elapsed_ms, calls)
        return timing

    def record_api_call(self, service: str, endpoint: str, elapsed_ms: int,
                        status_code: int, provider_status: str = "") -> None:
        call = ProviderCall(service, endpoint, elapsed_ms, status_code,
                            provider_status, self._current_stage)
        with self._lock:
            self.api_calls.append(call)
        logger.debug("[trace %s] %s.%s http=%s status=%s %dms",
                     self.trace_id, service, endpoint, status_code,
                     provider_status or "-", elapsed_ms)

    def record_cache(self, hits: int = 0, misses: int = 0, backoff_skips: int = 0) -> None:
        with self._lock:
            self.cache_hits += hits
            self.cache_misses += misses
            self.backoff_skips += backoff_skips

    def _calls_by_stage(self) -> Counter:
        return Counter(call.stage for call in self.api_calls)

    def summary_dict(self) -> Dict[str, Any]:
        with self._lock:
            per_service = Counter(call.service for call in self.api_calls)
            total_calls = len(self.api_calls)
        return {
            "trace_id": self.trace_id,
            "total_elapsed_ms": int((time.time() - self.request_start) * 1000),
            "total_api_calls": total_calls,
            "api_calls_by_service": dict(per_service),
            "cache_hits": self.cache_hits,
            "cache_misses": self.cache_misses,
            "backoff_skips": self.backoff_skips,
            "stages": [
                {
                    "stage": t.stage_name,
                    "elapsed_ms": t.elapsed_ms,
                    "api_calls": t.api_calls_made,
                    "error": f"{t.error_class}: {t.error_message}" if t.failed else None,
                }
                for t in self.stages
            ],
            "final_outcome": "error" if any(t.failed for t in self.stages) else "success",
        }

    def log_summary(self) -> None:
        summary = self.summary_dict()
        logger.info(
            "[trace %s] %s in %dms; calls=%s; cache hit/miss/backoff=%d/%d/%d",
            summary["trace_id"],
            summary["final_outcome"],
            summary["total_elapsed_ms"],
            summary["api_calls_by_service"] or "{}",
            summary["cache_hits"],
            summary["cache_misses"],
            summary["backoff_skips"],
        )


_local = threading.local()


def get_trace() -> Optional[TraceContext]:
    return getattr(_local, "trace", None)


def set_trace(ctx: Optional[TraceContext]) -> None:
    _local.trace = ctx


def clear_trace() -> None:
    set_trace(None)
