# safety.py
# Pattern-based prompt-injection detector and output sanitizer.
#
# Pure functions: no state, no I/O. The kernel decides when they run.

import re

INJECTION_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"ignore\s+all\s+previous\s+instructions", re.IGNORECASE),
    re.compile(r"reveal\s+(?:the\s+)?system\s+prompt", re.IGNORECASE),
    re.compile(r"developer\s+message", re.IGNORECASE),
    re.compile(r"bypass\s+safety", re.IGNORECASE),
)

SECRET_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"sk-[a-zA-Z0-9]{16,}"),
    re.compile(r"api[_-]?key\s*[:=]\s*[a-zA-Z0-9\-_]+", re.IGNORECASE),
    re.compile(r"(?:secret|password|access[_-]?token)\s*[:=]\s*[^\s,;]+", re.IGNORECASE),
)

REDACTION_MARKER = "[REDACTED]"

BLOCKED_RESPONSE = (
    "Request blocked by safety policy. "
    "Please rephrase without system-instruction manipulation."
)


def is_prompt_injection(text: str) -> bool:
    return any(pattern.search(text or "") for pattern in INJECTION_PATTERNS)


def sanitize_output(text: str) -> str:
    """Replace secret-looking substrings with the redaction marker."""
    sanitized = text or ""
    for pattern in SECRET_PATTERNS:
        sanitized = pattern.sub(REDACTION_MARKER, sanitized)
    return sanitized
