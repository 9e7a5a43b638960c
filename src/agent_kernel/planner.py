# planner.py
# Punctuation-driven task decomposition. Output only feeds prompt text.

import re

from agent_kernel.models import PlanStep

# Commas, periods, semicolons and newlines, ASCII and CJK.
_SEGMENT_SPLIT = re.compile(r"[,.，。;；\n]")

FALLBACK_STEPS = ("Clarify requirements", "Implement and validate")


def build_plan(task: str, max_steps: int = 6) -> list[PlanStep]:
    segments = [segment.strip() for segment in _SEGMENT_SPLIT.split(task or "")]
    segments = [segment for segment in segments if segment][: max(max_steps, 0)]

    if not segments:
        segments = list(FALLBACK_STEPS)

    return [
        PlanStep(id=f"step-{index + 1}", title=title)
        for index, title in enumerate(segments)
    ]


def format_plan(steps: list[PlanStep]) -> str:
    return "\n".join(f"{index + 1}. {step.title}" for index, step in enumerate(steps))
