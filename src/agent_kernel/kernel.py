# kernel.py
# Staged orchestration kernel.
#
# The kernel owns all control flow. The model is a passive responder: it
# receives an enriched request and may, once, ask for a web extraction via
# the tool-call wire format. Neither the model nor the extraction pipeline
# decides what happens next.
#
# Control flow:
#   stage snapshot → perception → safety gate → memory → plan
#   → memory tool → tool prompt + web context → critic
#   → model → tool loop (≤ 1 extra call) → sanitize → memory write → trace
#
# All terminal output is delegated to display.py.

import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from agent_kernel import display
from agent_kernel.config import KernelSettings, StageConfig, StageConfigStore
from agent_kernel.extraction import WebContentService
from agent_kernel.memory import AgentMemory
from agent_kernel.models import (
    AgentRunInput,
    ExtractionResult,
    ModelRequest,
    ModelResponse,
    RunResult,
    RunTrace,
    WebExtractionOutcome,
)
from agent_kernel.observability import Observability
from agent_kernel.perception import perceive
from agent_kernel.planner import build_plan, format_plan
from agent_kernel.protocol import TOOL_CALL_PROMPT, WEB_EXTRACT_TOOL, parse_tool_call
from agent_kernel.router import critic, planner_review, select_mode
from agent_kernel.safety import BLOCKED_RESPONSE, is_prompt_injection, sanitize_output
from agent_kernel.tools import MEMORY_SEARCH_TOOL, ToolRegistry, default_registry
from agent_kernel.urls import (
    clean_raw_url,
    extract_urls,
    is_placeholder_url,
    prefers_dynamic,
    try_normalize_http_url,
)

DEFAULT_CONVERSATION = "global"
SAFETY_STAGE = 6


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

WEB_SELF_TEST_TOKEN = "/web-self-test"
SELF_TEST_URL = "mock://self-test/article-1"
SELF_TEST_TITLE = "Self-test article: the Pomodoro technique in practice"
SELF_TEST_TEXT = (
    "The core of the Pomodoro technique is 25 minutes of focus followed by a 5 minute break. "
    "The article suggests picking a single task first, turning off notifications, and logging "
    "how much got done at the end of each round. The author compares multitasking with "
    "single-tasking and argues the latter sharply reduces context-switching cost. For teams, "
    "shared focus windows are recommended to cut down on ad-hoc interruptions. Finally, a "
    "weekly review of focus time and output quality is advised."
)

SELF_TEST_NOTICE = (
    "Web extraction self-test mode is enabled. The following context is synthetic and does "
    "not come from the internet. Prioritize summarizing this context for the user request."
)
WEB_CONTEXT_HEADER = (
    "Web page context extracted from user links. Use this as primary evidence when answering:"
)
WEB_CONTEXT_REMINDER = (
    "Important: web content is already provided above. Do not claim you cannot access links. "
    "Answer from the extracted content."
)
WEB_FAILURE_HEADER = (
    "User provided links but extraction failed. Tell the user extraction failed for these links "
    "and ask for pasted content if needed. Do not claim you are generally unable to open links."
)
ALREADY_EXTRACTED_NOTICE = (
    "Web content has already been extracted from the user-provided link(s). "
    "Use existing context and answer directly."
)
PLACEHOLDER_NOTICE = (
    "Tool call URL is invalid placeholder. Do not emit tool_call. "
    "Ask user for a concrete URL or answer from available context."
)
FINAL_ANSWER_NOTICE = (
    "Tool result is available above. Now provide the final answer to user directly, "
    "do not emit tool_call again."
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _new_run_id() -> str:
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}"


def format_web_block(index: int, url: str, title: str, mode: str, text: str, max_chars: int) -> str:
    return "\n".join(
        [
            f"[Web {index}]",
            f"url: {url}",
            f"title: {title or '(untitled)'}",
            f"mode: {mode}",
            "content:",
            text[:max_chars],
        ]
    )


def format_failures(failures: list[WebExtractionOutcome]) -> str:
    return "\n".join(
        f"{index + 1}. {item.url} | {item.error_code or 'UNKNOWN'} | {item.message or 'extract failed'}"
        for index, item in enumerate(failures)
    )


def self_test_context(max_chars: int) -> str:
    return format_web_block(1, SELF_TEST_URL, SELF_TEST_TITLE, "dynamic", SELF_TEST_TEXT, max_chars)


def _coerce_response(raw: Any) -> ModelResponse:
    if isinstance(raw, ModelResponse):
        return raw
    if isinstance(raw, str):
        return ModelResponse(content=raw)
    return ModelResponse.model_validate(raw)


@dataclass
class _RunState:
    """Mutable bookkeeping for one run. The request itself is copy-on-append."""

    request: ModelRequest
    memory_hits: int = 0
    plan_steps: int = 0
    tool_calls: int = 0
    model_calls: int = 0
    web_extractions: list[WebExtractionOutcome] = field(default_factory=list)
    tool_loop_used: bool = False
    tool_call_raw: str | None = None

    def prepend(self, content: str, kind: str) -> None:
        self.request = self.request.with_system_message(content)
        display.context_injected(kind, content)

    def record(self, outcome: WebExtractionOutcome) -> None:
        self.web_extractions.append(outcome)
        display.extraction_outcome(outcome)

    @property
    def has_successful_extraction(self) -> bool:
        return any(outcome.ok for outcome in self.web_extractions)


# ---------------------------------------------------------------------------
# Kernel
# ---------------------------------------------------------------------------


class AgentKernel:
    """
    Staged orchestrator. Construct once and share; all collaborators are
    explicit service objects so tests can swap any of them.

    Example:
        kernel = AgentKernel()
        result = await kernel.run(
            AgentRunInput(request=request, execute_model=executor, conversation_id="c-1")
        )
    """

    def __init__(
        self,
        settings: KernelSettings | None = None,
        config: StageConfigStore | None = None,
        memory: AgentMemory | None = None,
        observability: Observability | None = None,
        web: WebContentService | None = None,
        tools: ToolRegistry | None = None,
    ) -> None:
        self.settings = settings or KernelSettings()
        self.config = config if config is not None else StageConfigStore(self.settings.stage)
        self.memory = memory if memory is not None else AgentMemory(working_cap=self.settings.working_memory_cap)
        self.observability = (
            observability if observability is not None else Observability(self.settings.trace_capacity)
        )
        self.web = web if web is not None else WebContentService(self.settings.extraction)
        self.tools = tools if tools is not None else default_registry(self.memory)
        display.set_enabled(self.settings.display)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(self, run_input: AgentRunInput) -> RunResult:
        """
        Full pipeline entry point.

        Soft failures (extraction, memory tool) degrade into trace entries and
        injected context. Only exceptions from `execute_model` propagate; in
        that case the run is not recorded.
        """
        cfg = self.config.get()
        run_id = _new_run_id()
        started_at = time.time()
        user_message = run_input.request.last_user_text()
        display.run_started(run_id, cfg.stage, user_message)

        if not cfg.enabled:
            display.kernel_disabled()
            state = _RunState(request=run_input.request)
            response = await self._invoke(run_input, state)
            trace = RunTrace(run_id=run_id, started_at=started_at, stage=cfg.stage, mode="single")
            return self._finish(trace, response)

        perception = perceive(user_message)
        mode = select_mode(cfg.stage, perception.complexity)
        display.perception(perception, mode)

        safety_active = self._safety_active(cfg)
        if safety_active and is_prompt_injection(user_message):
            display.safety_blocked(user_message)
            trace = RunTrace(
                run_id=run_id,
                started_at=started_at,
                stage=cfg.stage,
                mode=mode,
                perception=perception,
                safety_blocked=True,
            )
            blocked = ModelResponse(content=BLOCKED_RESPONSE, latency=(time.time() - started_at) * 1000)
            return self._finish(trace, blocked)

        state = _RunState(request=run_input.request)
        conversation_id = run_input.conversation_id or DEFAULT_CONVERSATION
        plan_text = ""

        if cfg.stage >= 2:
            await self._inject_memory(state, conversation_id, user_message)

        if cfg.stage >= 3 and (perception.intent == "planning" or mode != "single"):
            plan_text = self._inject_plan(state, user_message, cfg.max_plan_steps)

        if cfg.stage >= 4 and perception.intent == "memory":
            await self._inject_memory_tool(state, conversation_id, user_message)

        if cfg.stage >= 1:
            state.prepend(TOOL_CALL_PROMPT, "tool-call instructions")
            await self._inject_web_context(state, user_message, run_input.dynamic_extractor)

        if cfg.stage >= 5 and mode == "multi-agent":
            annotation = critic(user_message)
            if plan_text:
                annotation = f"{plan_text}\n{annotation}"
            state.prepend(annotation, "critic")

        response = await self._invoke(run_input, state)

        if cfg.stage >= 1:
            response = await self._tool_loop(state, response, run_input)

        content = sanitize_output(response.content) if safety_active else response.content

        if cfg.stage >= 2:
            await self.memory.write(conversation_id, f"USER: {user_message}")
            await self.memory.write(conversation_id, f"ASSISTANT: {content}")

        trace = RunTrace(
            run_id=run_id,
            started_at=started_at,
            stage=cfg.stage,
            mode=mode,
            perception=perception,
            memory_hits=state.memory_hits,
            plan_steps=state.plan_steps,
            tool_calls=state.tool_calls,
            web_extractions=list(state.web_extractions),
            tool_loop_used=state.tool_loop_used,
            tool_call_raw=state.tool_call_raw,
        )
        return self._finish(trace, response.model_copy(update={"content": content}))

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    @staticmethod
    def _safety_active(cfg: StageConfig) -> bool:
        if cfg.stage >= SAFETY_STAGE:
            return True
        return cfg.safety_mode == "strict" and cfg.stage >= 1

    async def _inject_memory(self, state: _RunState, conversation_id: str, query: str) -> None:
        memories = await self.memory.retrieve(conversation_id, query, self.settings.memory_retrieve_limit)
        state.memory_hits = len(memories)
        if memories:
            lines = "\n".join(f"- {item.content}" for item in memories)
            state.prepend(f"Relevant memory:\n{lines}", "memory")

    def _inject_plan(self, state: _RunState, task: str, max_steps: int) -> str:
        steps = build_plan(task, max_steps)
        state.plan_steps = len(steps)
        state.prepend(f"Execution plan:\n{format_plan(steps)}", "plan")
        return planner_review(steps)

    async def _inject_memory_tool(self, state: _RunState, conversation_id: str, query: str) -> None:
        result = await self.tools.run(
            MEMORY_SEARCH_TOOL,
            {"conversation_id": conversation_id, "query": query},
        )
        state.tool_calls += 1
        if result.ok and result.data:
            state.prepend(f"Tool output ({MEMORY_SEARCH_TOOL}):\n{result.data}", MEMORY_SEARCH_TOOL)

    async def _inject_web_context(self, state: _RunState, user_message: str, dynamic_extractor: Any) -> None:
        limits = self.settings.extraction

        if WEB_SELF_TEST_TOKEN in user_message.lower():
            context = self_test_context(limits.max_chars_per_link)
            state.tool_calls += 1
            state.record(
                WebExtractionOutcome(
                    url=SELF_TEST_URL,
                    ok=True,
                    mode="dynamic",
                    text_length=len(context),
                    final_url=SELF_TEST_URL,
                )
            )
            state.prepend(f"{SELF_TEST_NOTICE}\n{context}", "self-test web context")

        blocks: list[str] = []
        failures: list[WebExtractionOutcome] = []
        for url in extract_urls(user_message, limits.max_links):
            normalized = try_normalize_http_url(clean_raw_url(url))
            if not normalized:
                outcome = WebExtractionOutcome(
                    url=url,
                    ok=False,
                    error_code="INVALID_URL",
                    message="Invalid URL after normalization",
                )
                state.record(outcome)
                failures.append(outcome)
                continue

            result = await self._extract(state, normalized, dynamic_extractor)
            if result.ok and result.text:
                blocks.append(
                    format_web_block(
                        len(blocks) + 1,
                        result.final_url or result.source_url or normalized,
                        result.title,
                        result.mode,
                        result.text,
                        limits.max_chars_per_link,
                    )
                )
            else:
                failures.append(state.web_extractions[-1])

        if blocks:
            context = f"{WEB_CONTEXT_HEADER}\n" + "\n\n".join(blocks)
            if failures:
                context += f"\n\nThese links could not be extracted:\n{format_failures(failures)}"
            state.prepend(context, "web context")
            state.prepend(WEB_CONTEXT_REMINDER, "web reminder")
        elif failures:
            state.prepend(f"{WEB_FAILURE_HEADER}\n{format_failures(failures)}", "web failure notice")

    async def _extract(self, state: _RunState, url: str, dynamic_extractor: Any) -> ExtractionResult:
        """One extraction attempt, counted as a tool call and recorded in the trace."""
        limits = self.settings.extraction
        dynamic_host = prefers_dynamic(url)
        result = await self.web.extract(
            url,
            prefer_dynamic=dynamic_host,
            timeout=limits.dynamic_host_timeout if dynamic_host else limits.static_timeout,
            max_chars=limits.max_chars_per_link,
            min_chars_for_static_success=limits.min_chars_for_static_success,
            dynamic_extractor=dynamic_extractor,
        )
        state.tool_calls += 1

        ok = bool(result.ok and result.text)
        state.record(
            WebExtractionOutcome(
                url=url,
                ok=ok,
                mode=result.mode,
                text_length=len(result.text) if ok else 0,
                final_url=result.final_url,
                error_code=None if ok else (result.error_code or "EMPTY_CONTENT"),
                message=None if ok else result.message,
            )
        )
        return result

    # ------------------------------------------------------------------
    # Model + tool loop
    # ------------------------------------------------------------------

    async def _invoke(self, run_input: AgentRunInput, state: _RunState) -> ModelResponse:
        state.model_calls += 1
        display.model_invoked(state.model_calls, len(state.request.messages))
        return _coerce_response(await run_input.execute_model(state.request))

    async def _tool_loop(self, state: _RunState, response: ModelResponse, run_input: AgentRunInput) -> ModelResponse:
        """
        Resolve at most one model-initiated tool call, then re-invoke once.

        There is no retry past this single round-trip regardless of what the
        second response contains.
        """
        parsed = parse_tool_call(response.content)
        if not parsed.is_valid:
            return response

        state.tool_loop_used = True
        state.tool_call_raw = response.content
        display.tool_call_detected(response.content)

        if state.has_successful_extraction:
            display.tool_call_resolution("reuse existing extraction")
            state.prepend(ALREADY_EXTRACTED_NOTICE, "tool loop")
            return await self._invoke(run_input, state)

        tool_url = parsed.call.url
        discovered = extract_urls(tool_url, 1)
        normalized = try_normalize_http_url(clean_raw_url(discovered[0] if discovered else tool_url))
        if not normalized or is_placeholder_url(tool_url) or is_placeholder_url(normalized):
            display.tool_call_resolution("placeholder URL rejected")
            state.prepend(PLACEHOLDER_NOTICE, "tool loop")
            return await self._invoke(run_input, state)

        display.tool_call_resolution(f"extract {normalized}")
        result = await self._extract(state, normalized, run_input.dynamic_extractor)
        if result.ok and result.text:
            block = format_web_block(
                1,
                result.final_url or result.source_url or normalized,
                result.title,
                result.mode,
                result.text,
                self.settings.extraction.max_chars_per_link,
            )
            state.prepend(f"Tool output ({WEB_EXTRACT_TOOL}):\n{block}", "tool output")
        else:
            failure = state.web_extractions[-1]
            state.prepend(
                f"Tool output ({WEB_EXTRACT_TOOL}) failed:\n"
                f"{normalized} | {failure.error_code or 'UNKNOWN'} | {failure.message or 'extract failed'}",
                "tool output",
            )

        state.prepend(FINAL_ANSWER_NOTICE, "tool loop")
        return await self._invoke(run_input, state)

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _finish(self, trace: RunTrace, response: ModelResponse) -> RunResult:
        trace = trace.model_copy(update={"ended_at": time.time()})
        self.observability.push(trace)
        display.run_finished(trace, response.content)
        return RunResult(response=response, trace=trace)
