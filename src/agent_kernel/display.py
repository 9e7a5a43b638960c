# display.py
# All terminal output for the agent kernel.
#
# This module owns presentation entirely. kernel.py never formats strings:
# it calls named functions here. Swap this file to change the entire UI.
#
# Colour language:
#   cyan    : kernel routing / stage gates
#   blue    : model calls and responses
#   yellow  : injected context
#   green   : success / confirmed
#   red     : failures, safety blocks
#   magenta : tool-call protocol

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text
from rich.tree import Tree

from agent_kernel.models import Perception, RunTrace, WebExtractionOutcome

console = Console()


def set_enabled(enabled: bool) -> None:
    """Silence or restore every display call."""
    console.quiet = not enabled


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _label(tag: str, color: str) -> Text:
    t = Text()
    t.append(f" {tag} ", style=f"bold white on {color}")
    return t


def _mono(value: str, max_len: int = 120) -> str:
    value = value.replace("\n", " ")
    if len(value) > max_len:
        return escape(value[:max_len]) + "…"
    return escape(value)


def _outcome_label(outcome: WebExtractionOutcome) -> str:
    if outcome.ok:
        return f"[bold green]OK[/bold green] [dim]({outcome.mode}, len={outcome.text_length})[/dim]"
    return f"[bold red]FAIL[/bold red] [dim]({outcome.error_code or 'UNKNOWN'})[/dim]"


# ---------------------------------------------------------------------------
# Run lifecycle
# ---------------------------------------------------------------------------


def run_started(run_id: str, stage: int, message: str) -> None:
    console.print()
    console.print(Rule(f"[cyan]RUN {escape(run_id)} · stage {stage}[/cyan]", style="cyan"))
    console.print(
        Panel(
            f"[white]{_mono(message, 400)}[/white]",
            title=_label("USER MESSAGE", "cyan"),
            border_style="cyan",
            padding=(0, 2),
        )
    )


def kernel_disabled() -> None:
    console.print(_label("KERNEL", "cyan"), "[cyan] Disabled: forwarding request unmodified.[/cyan]")


def perception(result: Perception, mode: str) -> None:
    console.print(
        _label("PERCEPTION", "cyan"),
        f"[cyan] intent=[/cyan][white]{result.intent}[/white]"
        f"[cyan] complexity=[/cyan][white]{result.complexity}[/white]"
        f"[cyan] mode=[/cyan][white]{mode}[/white]",
    )


def safety_blocked(reason: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold red]Prompt injection pattern detected.[/bold red]\n\n[white]{escape(reason)}[/white]",
            title=_label("SAFETY: BLOCKED ✗", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )


def context_injected(kind: str, preview: str) -> None:
    console.print(
        f"  [yellow]↳ {escape(kind)}[/yellow]  [dim]{_mono(preview, 100)}[/dim]"
    )


def extraction_outcome(outcome: WebExtractionOutcome) -> None:
    detail = f"  [dim]{_mono(outcome.message, 80)}[/dim]" if outcome.message else ""
    console.print(f"  [yellow]↳ web[/yellow] {_mono(outcome.url, 80)}  {_outcome_label(outcome)}{detail}")


# ---------------------------------------------------------------------------
# Model + tool loop
# ---------------------------------------------------------------------------


def model_invoked(call_number: int, message_count: int) -> None:
    console.print()
    console.print(
        _label("MODEL", "blue"),
        f"[blue] → Invocation {call_number} with {message_count} message(s)…[/blue]",
    )


def tool_call_detected(raw: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold white]{_mono(raw, 300)}[/bold white]\n"
            "[dim]Resolving once, then re-invoking the model a single time.[/dim]",
            title=_label("TOOL CALL", "magenta"),
            border_style="magenta",
            padding=(0, 2),
        )
    )


def tool_call_resolution(kind: str) -> None:
    console.print(f"  [magenta]Resolution[/magenta]  [white]{escape(kind)}[/white]")


def run_finished(trace: RunTrace, content: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[white]{_mono(content, 600)}[/white]",
            title=_label("RESULT", "red" if trace.safety_blocked else "green"),
            border_style="red" if trace.safety_blocked else "green",
            padding=(1, 2),
        )
    )
    console.print(trace_tree(trace))
    console.print()


# ---------------------------------------------------------------------------
# Trace rendering
# ---------------------------------------------------------------------------


def trace_tree(trace: RunTrace) -> Tree:
    """Render a finished RunTrace as a rich Tree."""
    duration = ""
    if trace.ended_at is not None:
        duration = f" · {(trace.ended_at - trace.started_at) * 1000:.0f} ms"

    root = Tree(f"[bold green]Run {escape(trace.run_id)}[/bold green] [dim]stage {trace.stage}{duration}[/dim]")

    gate = "[bold red]BLOCKED ✗[/bold red]" if trace.safety_blocked else "[bold green]PASS ✓[/bold green]"
    root.add(f"Safety: {gate}")

    perception_node = root.add(f"Perception: [white]{trace.perception.intent}[/white] / {trace.perception.complexity}")
    if trace.perception.entities:
        perception_node.add(f"[dim]Entities:[/dim] {_mono(' '.join(trace.perception.entities), 80)}")

    root.add(f"Mode: [cyan]{trace.mode}[/cyan]")
    root.add(
        f"Counts: memory={trace.memory_hits} plan={trace.plan_steps} tools={trace.tool_calls}"
    )

    if trace.web_extractions:
        web_node = root.add("Web extractions")
        for outcome in trace.web_extractions:
            web_node.add(f"{_mono(outcome.url, 80)}  {_outcome_label(outcome)}")

    if trace.tool_loop_used:
        loop_node = root.add("[magenta]Tool loop used[/magenta]")
        if trace.tool_call_raw:
            loop_node.add(f"[dim]{_mono(trace.tool_call_raw, 120)}[/dim]")

    return root


def traces_table(traces: list[RunTrace]) -> Table:
    table = Table(
        box=box.SIMPLE_HEAVY,
        border_style="dim",
        show_header=True,
        header_style="bold dim",
        padding=(0, 1),
    )
    table.add_column("Run", width=14)
    table.add_column("Stage", justify="center", width=6)
    table.add_column("Mode", width=12)
    table.add_column("Tools", justify="center", width=6)
    table.add_column("Web", style="dim white")

    for trace in traces:
        web = ", ".join(
            "OK" if outcome.ok else (outcome.error_code or "FAIL") for outcome in trace.web_extractions
        )
        table.add_row(escape(trace.run_id[:12]), str(trace.stage), trace.mode, str(trace.tool_calls), web or "-")
    return table
