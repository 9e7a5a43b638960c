# observability.py
# Bounded ring buffer of finished run traces plus aggregate counters.

import threading
from collections import deque

from pydantic import BaseModel

from agent_kernel.models import RunTrace


class Metrics(BaseModel):
    total_runs: int = 0
    tool_calls: int = 0
    safety_blocks: int = 0
    avg_memory_hits: float = 0.0
    tool_loop_runs: int = 0
    extractions_ok: int = 0
    extractions_failed: int = 0


class Observability:
    """Newest trace first. Oldest traces fall off once `capacity` is reached."""

    def __init__(self, capacity: int = 200) -> None:
        self._lock = threading.Lock()
        self._traces: deque[RunTrace] = deque(maxlen=capacity)

    def push(self, trace: RunTrace) -> None:
        with self._lock:
            self._traces.appendleft(trace)

    def last(self) -> RunTrace | None:
        with self._lock:
            return self._traces[0] if self._traces else None

    def recent(self, limit: int = 20) -> list[RunTrace]:
        with self._lock:
            return list(self._traces)[:limit]

    def __len__(self) -> int:
        with self._lock:
            return len(self._traces)

    def clear(self) -> None:
        with self._lock:
            self._traces.clear()

    def metrics(self) -> Metrics:
        with self._lock:
            traces = list(self._traces)

        total = len(traces)
        if total == 0:
            return Metrics()

        outcomes = [outcome for trace in traces for outcome in trace.web_extractions]
        return Metrics(
            total_runs=total,
            tool_calls=sum(trace.tool_calls for trace in traces),
            safety_blocks=sum(1 for trace in traces if trace.safety_blocked),
            avg_memory_hits=sum(trace.memory_hits for trace in traces) / total,
            tool_loop_runs=sum(1 for trace in traces if trace.tool_loop_used),
            extractions_ok=sum(1 for outcome in outcomes if outcome.ok),
            extractions_failed=sum(1 for outcome in outcomes if not outcome.ok),
        )
