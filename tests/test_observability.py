import pytest
from rich.console import Console

from agent_kernel import display
from agent_kernel.models import RunTrace, WebExtractionOutcome
from agent_kernel.observability import Metrics, Observability


def _trace(run_id: str, **fields) -> RunTrace:
    return RunTrace(run_id=run_id, started_at=0.0, ended_at=0.5, stage=7, **fields)

# ---------------------------------------------------------------------------
# Ring buffer
# ---------------------------------------------------------------------------

def test_last_and_recent_are_newest_first():
    obs = Observability()
    for n in range(3):
        obs.push(_trace(f"run-{n}"))

    assert obs.last().run_id == "run-2"
    assert [t.run_id for t in obs.recent(2)] == ["run-2", "run-1"]
    assert len(obs) == 3

def test_capacity_drops_oldest():
    obs = Observability(capacity=2)
    for n in range(3):
        obs.push(_trace(f"run-{n}"))

    assert [t.run_id for t in obs.recent()] == ["run-2", "run-1"]

def test_empty_buffer():
    obs = Observability()
    assert obs.last() is None
    assert obs.recent() == []
    assert obs.metrics() == Metrics()

def test_clear():
    obs = Observability()
    obs.push(_trace("run-0"))
    obs.clear()
    assert len(obs) == 0

# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------

def test_metrics_aggregate_over_buffer():
    obs = Observability()
    obs.push(_trace("a", tool_calls=2, memory_hits=3, tool_loop_used=True,
                    web_extractions=[
                        WebExtractionOutcome(url="https://a.example.org/", ok=True, mode="static", text_length=10),
                        WebExtractionOutcome(url="http://localhost/", ok=False, error_code="BLOCKED_URL"),
                    ]))
    obs.push(_trace("b", safety_blocked=True))

    metrics = obs.metrics()
    assert metrics.total_runs == 2
    assert metrics.tool_calls == 2
    assert metrics.safety_blocks == 1
    assert metrics.avg_memory_hits == pytest.approx(1.5)
    assert metrics.tool_loop_runs == 1
    assert (metrics.extractions_ok, metrics.extractions_failed) == (1, 1)

# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

def test_trace_tree_and_table_render_untrusted_text():
    trace = _trace(
        "run-[x]",
        tool_loop_used=True,
        tool_call_raw='<tool_call>{"name":"web.extract","arguments":{"url":"[bold]x[/bold]"}}</tool_call>',
        web_extractions=[WebExtractionOutcome(url="https://a.example.org/[red]", ok=False, error_code="NETWORK")],
    )
    console = Console(width=200)
    with console.capture() as capture:
        console.print(display.trace_tree(trace))
        console.print(display.traces_table([trace]))
    output = capture.get()

    assert "run-[x]" in output
    assert "[bold]x[/bold]" in output
    assert "NETWORK" in output
