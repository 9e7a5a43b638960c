# dynamic.py
# Dynamic (script-rendered) extraction capability.
#
# Three layers:
#   DynamicExtractor        : the interface the web service consumes.
#   DynamicExtractionQueue  : single-worker FIFO actor around one extractor.
#                             Each caller has its own timeout; expiry rejects
#                             that caller only and never aborts the render
#                             currently in flight.
#   RenderedPageExtractor   : drives a host-provided page: load, expand
#                             "read more" affordances, wait for the text to
#                             stabilize, pick the main content node.

import asyncio
import re
import time
from typing import Protocol, runtime_checkable
from urllib.parse import urlsplit

from agent_kernel.config import ExtractionSettings
from agent_kernel.models import DynamicExtractRequest, DynamicExtractResult


class DynamicExtractionTimeout(TimeoutError):
    """Raised to a caller whose own deadline passed before its render finished."""


class DynamicExtractionClosed(RuntimeError):
    """Raised when the queue has been shut down."""


@runtime_checkable
class DynamicExtractor(Protocol):
    async def extract(self, request: DynamicExtractRequest) -> DynamicExtractResult: ...


@runtime_checkable
class RenderedPage(Protocol):
    """
    Minimal page surface a host exposes (a hidden web view, a headless
    browser tab). One page is reused for every request; the queue
    guarantees it is never driven by two requests at once.
    """

    async def goto(self, url: str, timeout: float) -> None: ...

    async def title(self) -> str: ...

    async def current_url(self) -> str: ...

    async def inner_text(self, selector: str) -> str | None: ...

    async def click(self, selector: str) -> bool: ...


# ---------------------------------------------------------------------------
# Queue actor
# ---------------------------------------------------------------------------


class DynamicExtractionQueue:
    """
    Serializes access to one extractor.

    Requests are served strictly one at a time in arrival order. A caller's
    timeout starts when it enqueues, independent of its queue position.
    """

    def __init__(self, extractor: DynamicExtractor, grace: float = 1.5) -> None:
        self._extractor = extractor
        self._grace = grace
        self._queue: asyncio.Queue[tuple[DynamicExtractRequest, asyncio.Future]] = asyncio.Queue()
        self._worker: asyncio.Task | None = None
        self._closed = False
        self._active: DynamicExtractRequest | None = None

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def active(self) -> DynamicExtractRequest | None:
        return self._active

    async def extract(self, request: DynamicExtractRequest) -> DynamicExtractResult:
        if self._closed:
            raise DynamicExtractionClosed("Dynamic extraction queue is closed.")

        self._ensure_worker()
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        await self._queue.put((request, future))

        try:
            return await asyncio.wait_for(asyncio.shield(future), timeout=request.timeout + self._grace)
        except asyncio.TimeoutError:
            # A queued request is skipped by the worker; an in-flight one
            # keeps rendering and its result is discarded.
            future.cancel()
            raise DynamicExtractionTimeout(f"Dynamic extraction timeout for {request.url}") from None

    async def aclose(self) -> None:
        self._closed = True
        while not self._queue.empty():
            _, future = self._queue.get_nowait()
            if not future.done():
                future.set_exception(DynamicExtractionClosed("Dynamic extraction queue is closed."))
            self._queue.task_done()
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        while True:
            request, future = await self._queue.get()
            try:
                if future.done():
                    continue
                self._active = request
                try:
                    result = await self._extractor.extract(request)
                except asyncio.CancelledError:
                    if not future.done():
                        future.set_exception(DynamicExtractionClosed("Dynamic extraction queue is closed."))
                    raise
                except Exception as exc:
                    if not future.done():
                        future.set_exception(exc)
                else:
                    if not future.done():
                        future.set_result(result)
            finally:
                self._active = None
                self._queue.task_done()


# ---------------------------------------------------------------------------
# Page renderer
# ---------------------------------------------------------------------------

_EXPANDABLE_HOST = re.compile(r"(^|\.)mp\.weixin\.qq\.com$", re.IGNORECASE)

EXPAND_SELECTORS = (
    "#js_read_area3",
    ".js_show_more_link",
    ".weui-loadmore",
    ".more_read",
    '[class*="more"]',
)

MAIN_NODE_SELECTORS = (
    "#js_content",
    ".rich_media_content",
    "#img-content",
    "article",
    "main",
    '[role="main"]',
    "body",
)


def clean_rendered_text(raw: str) -> str:
    text = (raw or "").replace("\u00a0", " ")
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


class RenderedPageExtractor:
    """
    Reads visible article text from a rendered page.

    Polls the main-node text length every `poll_interval` seconds. The page
    is considered stable after `stable_polls` consecutive unchanged polls
    once at least `min_stable_chars` are present, or when the request
    timeout elapses, whichever comes first. The timeout covers navigation
    too, so a slow load leaves less time for polling.
    """

    def __init__(self, page: RenderedPage, settings: ExtractionSettings | None = None) -> None:
        self._page = page
        self._settings = settings or ExtractionSettings()

    async def extract(self, request: DynamicExtractRequest) -> DynamicExtractResult:
        deadline = time.monotonic() + request.timeout
        await self._page.goto(request.url, timeout=request.timeout)
        expandable = await self._is_expandable_host()
        text = await self._wait_for_stable_text(deadline, expandable)

        return DynamicExtractResult(
            title=(await self._page.title()) or "",
            text=text[: request.max_chars],
            final_url=(await self._page.current_url()) or request.url,
        )

    async def _is_expandable_host(self) -> bool:
        host = urlsplit(await self._page.current_url() or "").hostname or ""
        return bool(_EXPANDABLE_HOST.search(host))

    async def _main_text(self) -> str:
        best = ""
        for selector in MAIN_NODE_SELECTORS:
            text = clean_rendered_text(await self._page.inner_text(selector) or "")
            if len(text) > len(best):
                best = text
        return best

    async def _expand(self) -> None:
        for selector in EXPAND_SELECTORS:
            try:
                await self._page.click(selector)
            except Exception:
                # Missing or detached affordances are expected on most pages.
                continue

    async def _wait_for_stable_text(self, deadline: float, expandable: bool) -> str:
        settings = self._settings
        stable = 0
        last_length = -1
        text = ""

        while True:
            if expandable:
                await self._expand()
            text = await self._main_text()
            if len(text) == last_length:
                stable += 1
            else:
                stable = 0
            last_length = len(text)

            if len(text) > settings.min_stable_chars and stable >= settings.stable_polls:
                return text
            if time.monotonic() >= deadline:
                return text
            await asyncio.sleep(settings.poll_interval)
