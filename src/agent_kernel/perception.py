# perception.py
# Cheap intent / complexity classifier over the latest user message.

from agent_kernel.models import Complexity, Intent, Perception

PLANNING_MARKERS = ("plan", "规划", "步骤")
MEMORY_MARKERS = ("memory", "记忆")

HIGH_COMPLEXITY_CHARS = 300
MEDIUM_COMPLEXITY_CHARS = 100
MAX_ENTITIES = 5


def detect_intent(text: str) -> Intent:
    lowered = text.lower()
    if any(marker in lowered for marker in PLANNING_MARKERS):
        return "planning"
    if any(marker in lowered for marker in MEMORY_MARKERS):
        return "memory"
    return "chat"


def detect_complexity(text: str) -> Complexity:
    if len(text) > HIGH_COMPLEXITY_CHARS:
        return "high"
    if len(text) > MEDIUM_COMPLEXITY_CHARS:
        return "medium"
    return "low"


def perceive(text: str) -> Perception:
    """Intent, complexity and the first few whitespace-delimited tokens."""
    return Perception(
        intent=detect_intent(text),
        complexity=detect_complexity(text),
        entities=text.split()[:MAX_ENTITIES],
    )
