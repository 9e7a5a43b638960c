# extraction.py
# Web content extraction: static fetch first, dynamic render as fallback.
#
# Every failure becomes an ExtractionResult with ok=False and an error code.
# Nothing here raises to the caller. Blocked URLs never reach the network.

import asyncio
import re

import httpx

from agent_kernel.config import ExtractionSettings
from agent_kernel.dynamic import DynamicExtractor
from agent_kernel.models import DynamicExtractRequest, ErrorCode, ExtractionResult, ExtractMode
from agent_kernel.urls import clean_raw_url, is_blocked_url, try_normalize_http_url

_TITLE = re.compile(r"<title[^>]*>(.*?)</title>", re.IGNORECASE | re.DOTALL)
_BODY = re.compile(r"<body[^>]*>(.*?)</body>", re.IGNORECASE | re.DOTALL)
_NON_CONTENT = re.compile(r"<(script|style|noscript|svg|canvas)\b[^>]*>.*?</\1\s*>", re.IGNORECASE | re.DOTALL)
_COMMENT = re.compile(r"<!--.*?-->", re.DOTALL)
_CHROME = re.compile(
    r"<(header|footer|nav|aside|form|button|input|select|textarea)\b[^>]*>.*?</\1\s*>",
    re.IGNORECASE | re.DOTALL,
)
_LINE_BREAK = re.compile(r"<br\s*/?>", re.IGNORECASE)
_BLOCK_CLOSE = re.compile(r"</(p|div|li|h1|h2|h3|h4|h5|h6|article|section)\s*>", re.IGNORECASE)
_ANY_TAG = re.compile(r"<[^>]+>")

ENTITIES = {
    "&nbsp;": " ",
    "&amp;": "&",
    "&lt;": "<",
    "&gt;": ">",
    "&quot;": '"',
    "&#39;": "'",
}
_ENTITY = re.compile("|".join(re.escape(entity) for entity in ENTITIES))

JAVASCRIPT_WALL_MARKERS = ("enable javascript", "please turn javascript on")


# ---------------------------------------------------------------------------
# HTML helpers
# ---------------------------------------------------------------------------


def decode_entities(text: str) -> str:
    return _ENTITY.sub(lambda match: ENTITIES[match.group(0)], text)


def normalize_text(text: str, max_chars: int) -> str:
    text = text.replace("\u00a0", " ")
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()[:max_chars]


def html_to_text(html: str, max_chars: int) -> tuple[str, str]:
    """Return (title, readable text) without executing anything."""
    title_match = _TITLE.search(html)
    title = decode_entities(title_match.group(1).strip()) if title_match else ""

    body_match = _BODY.search(html)
    cleaned = body_match.group(1) if body_match else html

    cleaned = _NON_CONTENT.sub(" ", cleaned)
    cleaned = _COMMENT.sub(" ", cleaned)
    cleaned = _CHROME.sub(" ", cleaned)
    cleaned = _LINE_BREAK.sub("\n", cleaned)
    cleaned = _BLOCK_CLOSE.sub("\n", cleaned)
    cleaned = _ANY_TAG.sub(" ", cleaned)

    return title, normalize_text(decode_entities(cleaned), max_chars)


def is_good_enough(text: str, min_chars: int) -> bool:
    """Quality gate: long enough and not a 'please enable JavaScript' wall."""
    if len(text) < min_chars:
        return False
    lowered = text.lower()
    return not any(marker in lowered for marker in JAVASCRIPT_WALL_MARKERS)


def _failure(
    code: ErrorCode,
    message: str,
    source_url: str = "",
    mode: ExtractMode = "static",
) -> ExtractionResult:
    return ExtractionResult(ok=False, source_url=source_url, mode=mode, error_code=code, message=message)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class WebContentService:
    """
    Static-then-dynamic extraction strategy.

    Pass `client` to share a connection pool or to inject a mock transport;
    otherwise a short-lived client is created per fetch.
    """

    def __init__(self, settings: ExtractionSettings | None = None, client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings or ExtractionSettings()
        self._client = client

    @property
    def settings(self) -> ExtractionSettings:
        return self._settings

    async def extract(
        self,
        url: str,
        prefer_dynamic: bool = False,
        timeout: float | None = None,
        max_chars: int | None = None,
        min_chars_for_static_success: int | None = None,
        dynamic_extractor: DynamicExtractor | None = None,
    ) -> ExtractionResult:
        source_url = try_normalize_http_url(clean_raw_url(url))
        if not source_url:
            return _failure("INVALID_URL", "Malformed URL.")
        if is_blocked_url(source_url):
            return _failure("BLOCKED_URL", "URL points at a loopback or private address.", source_url)

        settings = self._settings
        timeout = timeout if timeout is not None else settings.default_timeout
        max_chars = max_chars if max_chars is not None else settings.default_max_chars
        min_chars = (
            min_chars_for_static_success
            if min_chars_for_static_success is not None
            else settings.default_min_chars_for_static_success
        )

        if prefer_dynamic and dynamic_extractor is not None:
            dynamic_first = await self._try_dynamic(source_url, dynamic_extractor, timeout, max_chars)
            if dynamic_first.ok:
                return dynamic_first

        static_result = await self._try_static(source_url, timeout, max_chars)
        if static_result.ok and is_good_enough(static_result.text, min_chars):
            return static_result

        if dynamic_extractor is None:
            return static_result

        dynamic_result = await self._try_dynamic(source_url, dynamic_extractor, timeout, max_chars)
        if dynamic_result.ok:
            return dynamic_result
        if static_result.ok:
            return static_result
        return dynamic_result

    # ------------------------------------------------------------------
    # Static
    # ------------------------------------------------------------------

    async def _fetch(self, client: httpx.AsyncClient, url: str, timeout: float) -> httpx.Response:
        return await client.get(
            url,
            timeout=timeout,
            follow_redirects=True,
            headers={
                "Accept": "text/html,application/xhtml+xml",
                "User-Agent": self._settings.user_agent,
            },
        )

    async def _try_static(self, url: str, timeout: float, max_chars: int) -> ExtractionResult:
        try:
            if self._client is not None:
                response = await self._fetch(self._client, url, timeout)
            else:
                async with httpx.AsyncClient() as client:
                    response = await self._fetch(client, url, timeout)
        except httpx.TimeoutException:
            return _failure("TIMEOUT", "Static fetch timed out.", url, "static")
        except httpx.HTTPError as exc:
            return _failure("NETWORK", f"Static fetch failed: {exc}", url, "static")

        if not response.is_success:
            return _failure("NETWORK", f"Page request failed: HTTP {response.status_code}", url, "static")

        title, text = html_to_text(response.text, max_chars)
        if not text:
            return _failure("EMPTY_CONTENT", "No readable text in the static page.", url, "static")

        return ExtractionResult(
            ok=True,
            source_url=url,
            final_url=str(response.url) or url,
            mode="static",
            title=title,
            text=text,
            excerpt=text[: self._settings.excerpt_chars],
        )

    # ------------------------------------------------------------------
    # Dynamic
    # ------------------------------------------------------------------

    async def _try_dynamic(
        self,
        url: str,
        extractor: DynamicExtractor,
        timeout: float,
        max_chars: int,
    ) -> ExtractionResult:
        request = DynamicExtractRequest(url=url, timeout=timeout, max_chars=max_chars)
        try:
            result = await extractor.extract(request)
        except (asyncio.TimeoutError, TimeoutError) as exc:
            return _failure("TIMEOUT", f"Dynamic extraction timed out: {exc}", url, "dynamic")
        except Exception as exc:
            # The capability is host code; any failure degrades to an outcome.
            message = str(exc) or type(exc).__name__
            if "timeout" in message.lower():
                return _failure("TIMEOUT", f"Dynamic extraction timed out: {message}", url, "dynamic")
            return _failure("UNKNOWN", f"Dynamic extraction failed: {message}", url, "dynamic")

        text = normalize_text(result.text or "", max_chars)
        if not text:
            return _failure("EMPTY_CONTENT", "Rendered page had no readable text.", url, "dynamic")

        return ExtractionResult(
            ok=True,
            source_url=url,
            final_url=result.final_url or url,
            mode="dynamic",
            title=result.title or "",
            text=text,
            excerpt=text[: self._settings.excerpt_chars],
        )
