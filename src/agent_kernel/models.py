# models.py
# Data contracts for the agent kernel.
# No business logic lives here: pure schema and validation.

from typing import Any, Awaitable, Callable, Literal

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["system", "user", "assistant", "tool"]
Intent = Literal["chat", "planning", "memory"]
Complexity = Literal["low", "medium", "high"]
AgentMode = Literal["single", "planner", "multi-agent"]
ExtractMode = Literal["static", "dynamic"]
MemoryLayer = Literal["working", "episodic", "semantic"]
SearchStrategy = Literal["keyword", "semantic", "hybrid"]
SearchSource = Literal["keyword", "semantic"]
ErrorCode = Literal["INVALID_URL", "BLOCKED_URL", "NETWORK", "TIMEOUT", "EMPTY_CONTENT", "UNKNOWN"]


# ---------------------------------------------------------------------------
# Model I/O
# ---------------------------------------------------------------------------


class ChatMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Role
    content: str


class ModelRequest(BaseModel):
    """One model call: target model plus the ordered message list."""

    model_config = ConfigDict(frozen=True)

    model: str
    messages: list[ChatMessage] = Field(default_factory=list)

    def with_system_message(self, content: str) -> "ModelRequest":
        """Return a copy with a system message prepended. The original is untouched."""
        message = ChatMessage(role="system", content=content)
        return self.model_copy(update={"messages": [message, *self.messages]})

    def last_user_text(self) -> str:
        if not self.messages:
            return ""
        return self.messages[-1].content or ""


class ModelResponse(BaseModel):
    content: str = ""
    tokens: int | None = None
    latency: float | None = Field(default=None, description="Milliseconds.")


ModelExecutor = Callable[[ModelRequest], Awaitable[ModelResponse]]


# ---------------------------------------------------------------------------
# Trace
# ---------------------------------------------------------------------------


class Perception(BaseModel):
    intent: Intent = "chat"
    complexity: Complexity = "low"
    entities: list[str] = Field(default_factory=list)


class WebExtractionOutcome(BaseModel):
    """What happened to one URL during a run. Never mutated once recorded."""

    model_config = ConfigDict(frozen=True)

    url: str
    ok: bool
    mode: ExtractMode | None = None
    text_length: int = 0
    final_url: str | None = None
    error_code: ErrorCode | None = None
    message: str | None = None


class RunTrace(BaseModel):
    """Observable record of one kernel run."""

    run_id: str
    started_at: float
    ended_at: float | None = None
    stage: int
    mode: AgentMode = "single"
    perception: Perception = Field(default_factory=Perception)
    memory_hits: int = 0
    plan_steps: int = 0
    tool_calls: int = 0
    safety_blocked: bool = False
    web_extractions: list[WebExtractionOutcome] = Field(default_factory=list)
    tool_loop_used: bool = False
    tool_call_raw: str | None = None


class RunResult(BaseModel):
    response: ModelResponse
    trace: RunTrace


class AgentRunInput(BaseModel):
    """
    One orchestration invocation.

    `dynamic_extractor` is any object exposing
    `async extract(DynamicExtractRequest) -> DynamicExtractResult`.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    request: ModelRequest
    execute_model: Callable[[ModelRequest], Awaitable[ModelResponse]]
    conversation_id: str | None = None
    dynamic_extractor: Any | None = None


# ---------------------------------------------------------------------------
# Memory
# ---------------------------------------------------------------------------


class MemoryRecord(BaseModel):
    id: str
    content: str
    timestamp: float
    layer: MemoryLayer = "working"


class SearchResult(BaseModel):
    id: str
    content: str
    score: float
    source: SearchSource
    metadata: dict[str, Any] = Field(default_factory=dict)


class MemoryStats(BaseModel):
    total_memories: int
    keyword_count: int
    important_count: int


# ---------------------------------------------------------------------------
# Planning / tools
# ---------------------------------------------------------------------------


class PlanStep(BaseModel):
    """A single decomposed sub-task. Only used to build prompt text."""

    id: str = Field(..., description="'step-N', 1-based.")
    title: str
    done: bool = False


class ToolCall(BaseModel):
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)

    @property
    def url(self) -> str:
        value = self.arguments.get("url")
        return value.strip() if isinstance(value, str) else ""


class ToolCallParse(BaseModel):
    """Tagged parse outcome. Only `valid` counts as a tool call."""

    status: Literal["no_match", "malformed", "unsupported", "valid"]
    call: ToolCall | None = None
    raw: str = ""
    reason: str | None = None

    @property
    def is_valid(self) -> bool:
        return self.status == "valid" and self.call is not None


class ToolResult(BaseModel):
    ok: bool
    data: str | None = None
    error: str | None = None


# ---------------------------------------------------------------------------
# Web extraction
# ---------------------------------------------------------------------------


class DynamicExtractRequest(BaseModel):
    url: str
    timeout: float = Field(..., gt=0, description="Seconds.")
    max_chars: int = Field(..., ge=1)


class DynamicExtractResult(BaseModel):
    title: str = ""
    text: str = ""
    final_url: str | None = None


class ExtractionResult(BaseModel):
    ok: bool
    source_url: str = ""
    final_url: str | None = None
    mode: ExtractMode = "static"
    title: str = ""
    text: str = ""
    excerpt: str = ""
    error_code: ErrorCode | None = None
    message: str | None = None
