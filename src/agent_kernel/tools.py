# tools.py
# Tool registry for kernel-side tools.
# The kernel dispatches by name and never calls handlers directly.

from typing import Any, Awaitable, Callable

from agent_kernel.memory import AgentMemory
from agent_kernel.models import ToolResult

MEMORY_SEARCH_TOOL = "memory.search"

ToolHandler = Callable[[dict[str, Any]], Awaitable[ToolResult]]


class ToolRegistry:
    def __init__(self) -> None:
        self._handlers: dict[str, ToolHandler] = {}

    def register(self, name: str, handler: ToolHandler) -> None:
        self._handlers[name] = handler

    def names(self) -> list[str]:
        return sorted(self._handlers)

    async def run(self, name: str, payload: dict[str, Any]) -> ToolResult:
        handler = self._handlers.get(name)
        if handler is None:
            return ToolResult(ok=False, error=f"Tool not found: {name}")
        try:
            return await handler(payload)
        except Exception as exc:
            return ToolResult(ok=False, error=f"Tool '{name}' failed: {exc}")


def memory_search_tool(memory: AgentMemory, limit: int = 5) -> ToolHandler:
    async def _handler(payload: dict[str, Any]) -> ToolResult:
        conversation_id = str(payload.get("conversation_id") or "global")
        query = str(payload.get("query") or "")
        items = await memory.retrieve(conversation_id, query, limit)
        content = "\n".join(f"{index + 1}. {item.content}" for index, item in enumerate(items))
        return ToolResult(ok=True, data=content or "No relevant memory found.")

    return _handler


def default_registry(memory: AgentMemory) -> ToolRegistry:
    registry = ToolRegistry()
    registry.register(MEMORY_SEARCH_TOOL, memory_search_tool(memory))
    return registry
