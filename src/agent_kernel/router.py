# router.py
# Multi-agent mode selection and the critic / reviewer annotations.

from agent_kernel.models import AgentMode, Complexity, PlanStep

SHORT_PROMPT_CHARS = 12


def route(complexity: Complexity) -> AgentMode:
    if complexity == "high":
        return "multi-agent"
    if complexity == "medium":
        return "planner"
    return "single"


def select_mode(stage: int, complexity: Complexity) -> AgentMode:
    """Router from stage 5, fixed planner mode from stage 3, single below."""
    if stage >= 5:
        return route(complexity)
    if stage >= 3:
        return "planner"
    return "single"


def planner_review(steps: list[PlanStep]) -> str:
    return f"Planner generated {len(steps)} steps."


def critic(prompt: str) -> str:
    if len(prompt) < SHORT_PROMPT_CHARS:
        return "Critic: request is short, ask clarifying details if needed."
    return "Critic: plan is acceptable."
