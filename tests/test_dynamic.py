import asyncio

import pytest

from agent_kernel.config import ExtractionSettings
from agent_kernel.dynamic import (
    EXPAND_SELECTORS,
    DynamicExtractionClosed,
    DynamicExtractionQueue,
    DynamicExtractionTimeout,
    DynamicExtractor,
    RenderedPageExtractor,
    clean_rendered_text,
)
from agent_kernel.models import DynamicExtractRequest, DynamicExtractResult


class SlowExtractor:
    """Records call order and concurrency; each render takes `delay` seconds."""

    def __init__(self, delay: float) -> None:
        self.delay = delay
        self.started: list[str] = []
        self.finished: list[str] = []
        self.concurrent = 0
        self.max_concurrent = 0

    async def extract(self, request: DynamicExtractRequest) -> DynamicExtractResult:
        self.concurrent += 1
        self.max_concurrent = max(self.max_concurrent, self.concurrent)
        self.started.append(request.url)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.concurrent -= 1
        self.finished.append(request.url)
        return DynamicExtractResult(title=request.url, text="rendered body", final_url=request.url)


class FakePage:
    """Scripted page: each poll of the main selector returns the next text."""

    def __init__(
        self,
        url: str,
        texts: list[str],
        main_selector: str = "article",
        title: str = "Page",
        load_delay: float = 0.0,
    ) -> None:
        self.url = url
        self.load_delay = load_delay
        self.texts = list(texts)
        self.main_selector = main_selector
        self._title = title
        self.polls = 0
        self.clicks: list[str] = []
        self.goto_calls: list[tuple[str, float]] = []

    async def goto(self, url: str, timeout: float) -> None:
        self.goto_calls.append((url, timeout))
        if self.load_delay:
            await asyncio.sleep(self.load_delay)

    async def title(self) -> str:
        return self._title

    async def current_url(self) -> str:
        return self.url

    async def inner_text(self, selector: str) -> str | None:
        if selector != self.main_selector:
            return None
        index = min(self.polls, len(self.texts) - 1)
        self.polls += 1
        return self.texts[index]

    async def click(self, selector: str) -> bool:
        self.clicks.append(selector)
        if selector == ".weui-loadmore":
            raise RuntimeError("element is detached")
        return True


def _request(url: str, timeout: float = 1.0, max_chars: int = 1000) -> DynamicExtractRequest:
    return DynamicExtractRequest(url=url, timeout=timeout, max_chars=max_chars)


FAST = ExtractionSettings(poll_interval=0.01, stable_polls=2, min_stable_chars=10)

# ---------------------------------------------------------------------------
# Queue actor
# ---------------------------------------------------------------------------

def test_queue_satisfies_extractor_protocol():
    assert isinstance(DynamicExtractionQueue(SlowExtractor(0)), DynamicExtractor)

@pytest.mark.asyncio
async def test_queue_serves_requests_one_at_a_time_in_order():
    extractor = SlowExtractor(delay=0.02)
    queue = DynamicExtractionQueue(extractor, grace=0)
    urls = [f"https://example.org/{n}" for n in range(4)]

    results = await asyncio.gather(*(queue.extract(_request(url)) for url in urls))

    assert [result.title for result in results] == urls
    assert extractor.started == urls
    assert extractor.max_concurrent == 1
    await queue.aclose()

@pytest.mark.asyncio
async def test_caller_timeout_does_not_abort_inflight_render():
    extractor = SlowExtractor(delay=0.2)
    queue = DynamicExtractionQueue(extractor, grace=0)

    with pytest.raises(DynamicExtractionTimeout):
        await queue.extract(_request("https://example.org/slow", timeout=0.05))

    await asyncio.sleep(0.3)
    assert extractor.finished == ["https://example.org/slow"]

    result = await queue.extract(_request("https://example.org/next"))
    assert result.title == "https://example.org/next"
    await queue.aclose()

@pytest.mark.asyncio
async def test_expired_queued_request_is_skipped():
    extractor = SlowExtractor(delay=0.15)
    queue = DynamicExtractionQueue(extractor, grace=0)

    first = asyncio.ensure_future(queue.extract(_request("https://example.org/first")))
    await asyncio.sleep(0)
    with pytest.raises(DynamicExtractionTimeout):
        await queue.extract(_request("https://example.org/impatient", timeout=0.05))

    assert (await first).title == "https://example.org/first"
    await asyncio.sleep(0.05)
    assert extractor.started == ["https://example.org/first"]
    assert queue.pending == 0
    await queue.aclose()

@pytest.mark.asyncio
async def test_grace_extends_caller_deadline():
    extractor = SlowExtractor(delay=0.1)
    queue = DynamicExtractionQueue(extractor, grace=0.5)

    result = await queue.extract(_request("https://example.org/a", timeout=0.05))
    assert result.text == "rendered body"
    await queue.aclose()

@pytest.mark.asyncio
async def test_extractor_errors_reach_only_their_caller():
    class Flaky(SlowExtractor):
        async def extract(self, request):
            if request.url.endswith("/bad"):
                raise RuntimeError("render failed")
            return await super().extract(request)

    queue = DynamicExtractionQueue(Flaky(delay=0), grace=0)
    bad, good = await asyncio.gather(
        queue.extract(_request("https://example.org/bad")),
        queue.extract(_request("https://example.org/good")),
        return_exceptions=True,
    )
    assert isinstance(bad, RuntimeError)
    assert good.title == "https://example.org/good"
    await queue.aclose()

@pytest.mark.asyncio
async def test_closed_queue_rejects_new_requests():
    queue = DynamicExtractionQueue(SlowExtractor(0), grace=0)
    await queue.aclose()
    with pytest.raises(DynamicExtractionClosed):
        await queue.extract(_request("https://example.org/a"))

# ---------------------------------------------------------------------------
# Rendered page extractor
# ---------------------------------------------------------------------------

def test_clean_rendered_text_collapses_whitespace():
    assert clean_rendered_text("  a \tb\n\n\n\nc  ") == "a b\n\nc"

@pytest.mark.asyncio
async def test_renderer_waits_for_text_to_stabilize():
    final = "The complete article body, fully loaded."
    page = FakePage("https://blog.example.org/a", ["Loading", "The complete", final])
    extractor = RenderedPageExtractor(page, FAST)

    result = await extractor.extract(_request("https://blog.example.org/a", timeout=2.0))

    assert result.text == final
    assert result.title == "Page"
    assert result.final_url == "https://blog.example.org/a"
    assert page.polls >= 5
    assert page.clicks == []
    assert page.goto_calls == [("https://blog.example.org/a", 2.0)]

@pytest.mark.asyncio
async def test_renderer_returns_at_ceiling_when_text_stays_short():
    page = FakePage("https://blog.example.org/a", ["tiny"])
    extractor = RenderedPageExtractor(page, FAST)

    result = await extractor.extract(_request("https://blog.example.org/a", timeout=0.05))
    assert result.text == "tiny"

@pytest.mark.asyncio
async def test_slow_load_counts_against_render_ceiling():
    page = FakePage("https://blog.example.org/a", ["tiny"], load_delay=0.4)
    queue = DynamicExtractionQueue(RenderedPageExtractor(page, FAST), grace=0.3)

    result = await queue.extract(_request("https://blog.example.org/a", timeout=0.5))

    assert result.text == "tiny"
    await queue.aclose()

@pytest.mark.asyncio
async def test_renderer_expands_platform_articles_and_truncates():
    page = FakePage(
        "https://mp.weixin.qq.com/s/abc",
        ["A long enough platform article body."],
        main_selector="#js_content",
    )
    extractor = RenderedPageExtractor(page, FAST)

    result = await extractor.extract(_request("https://mp.weixin.qq.com/s/abc", max_chars=6))

    assert result.text == "A long"
    assert set(EXPAND_SELECTORS) <= set(page.clicks)
