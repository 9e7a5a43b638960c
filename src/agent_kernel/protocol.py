# protocol.py
# Tool-call wire format the model may emit to request web extraction.
#
# Exactly one tool exists. The parser never raises: every non-valid input
# maps to a tagged ToolCallParse the kernel treats as "no tool call".

import json
import re

from agent_kernel.models import ToolCall, ToolCallParse

WEB_EXTRACT_TOOL = "web.extract"

_TOOL_CALL_TAG = re.compile(r"<tool_call>(.*?)</tool_call>", re.IGNORECASE | re.DOTALL)

TOOL_CALL_PROMPT = "\n".join(
    [
        "You can call tools when needed.",
        f"Available tool: {WEB_EXTRACT_TOOL}",
        "Tool schema:",
        '{"name":"web.extract","arguments":{"url":"https://..."}}',
        "If you need to use the tool, respond with EXACTLY one line in this format:",
        '<tool_call>{"name":"web.extract","arguments":{"url":"https://..."}}</tool_call>',
        "Do not include any extra text when emitting tool call.",
    ]
)


def format_tool_call(url: str) -> str:
    """Render the single-line wire form for a URL."""
    payload = json.dumps({"name": WEB_EXTRACT_TOOL, "arguments": {"url": url}}, separators=(",", ":"))
    return f"<tool_call>{payload}</tool_call>"


def parse_tool_call(content: str) -> ToolCallParse:
    match = _TOOL_CALL_TAG.search(content or "")
    if not match:
        return ToolCallParse(status="no_match")

    raw = match.group(0)
    body = match.group(1).strip()
    try:
        payload = json.loads(body)
    except json.JSONDecodeError as exc:
        return ToolCallParse(status="malformed", raw=raw, reason=f"Invalid JSON: {exc.msg}")

    if not isinstance(payload, dict):
        return ToolCallParse(status="malformed", raw=raw, reason="Payload is not an object.")
    name = payload.get("name")
    arguments = payload.get("arguments")
    if not isinstance(name, str) or not isinstance(arguments, dict):
        return ToolCallParse(status="malformed", raw=raw, reason="Expected string 'name' and object 'arguments'.")

    call = ToolCall(name=name, arguments=arguments)
    if name != WEB_EXTRACT_TOOL:
        return ToolCallParse(status="unsupported", call=call, raw=raw, reason=f"Unknown tool '{name}'.")
    return ToolCallParse(status="valid", call=call, raw=raw)
