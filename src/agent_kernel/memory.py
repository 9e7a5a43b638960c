# memory.py
# Working memory ring buffers plus the hybrid (keyword + TF-IDF) index.
#
# Concurrency:
#   - HybridMemoryIndex is one critical section. The keyword map, the
#     document-frequency table and the document count are only touched
#     under its lock, because TF-IDF scoring reads all three together.
#   - WorkingMemory is sharded: one lock per conversation id.

import asyncio
import math
import re
import time
import uuid
from collections import Counter, defaultdict, deque
from dataclasses import dataclass, field
from typing import Any

from agent_kernel.models import MemoryRecord, MemoryStats, SearchResult, SearchStrategy

IMPORTANCE_BOOST = 1.5
SEMANTIC_CANDIDATES = 20
WORKING_RECALL_CAP = 3

_CJK = r"\u4e00-\u9fa5"
_NON_WORD = re.compile(rf"[^{_CJK}a-zA-Z0-9]")
_LATIN_WORD = re.compile(r"[a-zA-Z0-9]+")
_CJK_RUN = re.compile(rf"[{_CJK}]+")

STOP_WORDS = frozenset(
    {
        "的", "了", "在", "是", "我", "有", "和", "就", "不", "人", "都", "一", "一个",
        "上", "也", "很", "到", "说", "要", "去", "你", "会", "着", "没有", "看", "好",
        "自己", "这",
        "the", "a", "an", "is", "are", "was", "were", "be", "have", "has", "had",
        "do", "does", "did", "will", "would", "could", "should", "may", "might", "must",
    }
)


# ---------------------------------------------------------------------------
# Tokenization
# ---------------------------------------------------------------------------


def tokenize(text: str) -> list[str]:
    """
    Latin/digit words lowercased; CJK runs emitted as unigrams then bigrams.

    Duplicates are kept (term frequency needs them); stop words are dropped.
    """
    cleaned = _NON_WORD.sub(" ", text or "")
    tokens = [word.lower() for word in _LATIN_WORD.findall(cleaned)]
    for run in _CJK_RUN.findall(cleaned):
        tokens.extend(run)
        tokens.extend(run[i : i + 2] for i in range(len(run) - 1))
    return [token for token in tokens if token and token not in STOP_WORDS]


def _cosine(a: dict[str, float], b: dict[str, float]) -> float:
    dot = sum(value * b.get(term, 0.0) for term, value in a.items())
    norm_a = math.sqrt(sum(value * value for value in a.values()))
    norm_b = math.sqrt(sum(value * value for value in b.values()))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


# ---------------------------------------------------------------------------
# Hybrid index
# ---------------------------------------------------------------------------


@dataclass
class _Document:
    id: str
    content: str
    timestamp: float
    term_counts: Counter
    length: int
    metadata: dict[str, Any] = field(default_factory=dict)


class HybridMemoryIndex:
    """
    Process-wide retrieval index shared by every conversation.

    All mutation goes through add_memory / delete_memory / clear_all.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._documents: dict[str, _Document] = {}
        self._keyword_index: dict[str, set[str]] = defaultdict(set)
        self._document_frequency: Counter = Counter()
        self._time_index: dict[str, float] = {}
        self._important: set[str] = set()

    async def add_memory(self, id: str, content: str, metadata: dict[str, Any] | None = None) -> None:
        metadata = dict(metadata or {})
        tokens = tokenize(content)
        now = time.time()

        async with self._lock:
            if id in self._documents:
                self._remove_locked(id)

            counts = Counter(tokens)
            self._documents[id] = _Document(
                id=id,
                content=content,
                timestamp=now,
                term_counts=counts,
                length=len(tokens),
                metadata=metadata,
            )
            for term in counts:
                self._keyword_index[term].add(id)
                self._document_frequency[term] += 1
            self._time_index[id] = now
            if metadata.get("important"):
                self._important.add(id)

    async def delete_memory(self, id: str) -> None:
        async with self._lock:
            self._remove_locked(id)

    async def clear_all(self) -> None:
        async with self._lock:
            self._documents.clear()
            self._keyword_index.clear()
            self._document_frequency.clear()
            self._time_index.clear()
            self._important.clear()

    async def stats(self) -> MemoryStats:
        async with self._lock:
            return MemoryStats(
                total_memories=len(self._documents),
                keyword_count=len(self._keyword_index),
                important_count=len(self._important),
            )

    async def search(
        self,
        query: str,
        limit: int = 10,
        strategy: SearchStrategy = "hybrid",
        include_important: bool = True,
        time_range: tuple[float, float] | None = None,
    ) -> list[SearchResult]:
        if limit <= 0:
            return []

        async with self._lock:
            results: list[SearchResult] = []
            if strategy in ("keyword", "hybrid"):
                results.extend(self._keyword_search_locked(query))
            if strategy in ("semantic", "hybrid"):
                results.extend(self._semantic_search_locked(query))

            if time_range is not None:
                start, end = time_range
                results = [r for r in results if start <= self._time_index.get(r.id, 0.0) <= end]

            if include_important:
                results = [
                    r.model_copy(update={"score": r.score * IMPORTANCE_BOOST}) if r.id in self._important else r
                    for r in results
                ]

        best: dict[str, SearchResult] = {}
        for result in results:
            current = best.get(result.id)
            if current is None or result.score > current.score:
                best[result.id] = result

        ranked = sorted(best.values(), key=lambda r: r.score, reverse=True)
        return ranked[:limit]

    # ------------------------------------------------------------------
    # Internals (caller holds the lock)
    # ------------------------------------------------------------------

    def _remove_locked(self, id: str) -> None:
        document = self._documents.pop(id, None)
        if document is None:
            return
        for term in document.term_counts:
            ids = self._keyword_index.get(term)
            if ids is not None:
                ids.discard(id)
                if not ids:
                    del self._keyword_index[term]
            self._document_frequency[term] -= 1
            if self._document_frequency[term] <= 0:
                del self._document_frequency[term]
        self._time_index.pop(id, None)
        self._important.discard(id)

    def _keyword_search_locked(self, query: str) -> list[SearchResult]:
        keywords = list(dict.fromkeys(tokenize(query)))
        if not keywords:
            return []

        hits: Counter = Counter()
        for keyword in keywords:
            for id in self._keyword_index.get(keyword, ()):
                hits[id] += 1

        return [
            SearchResult(
                id=id,
                content=self._documents[id].content,
                score=count / len(keywords),
                source="keyword",
                metadata=self._documents[id].metadata,
            )
            for id, count in hits.items()
        ]

    def _tfidf(self, counts: Counter, length: int) -> dict[str, float]:
        if length == 0:
            return {}
        total = len(self._documents)
        vector: dict[str, float] = {}
        for term, freq in counts.items():
            df = self._document_frequency.get(term) or 1
            vector[term] = (freq / length) * math.log(total / df) if total else 0.0
        return vector

    def _semantic_search_locked(self, query: str) -> list[SearchResult]:
        tokens = tokenize(query)
        query_vector = self._tfidf(Counter(tokens), len(tokens))
        if not query_vector:
            return []

        scored: list[SearchResult] = []
        for document in self._documents.values():
            similarity = _cosine(query_vector, self._tfidf(document.term_counts, document.length))
            if similarity <= 0:
                continue
            scored.append(
                SearchResult(
                    id=document.id,
                    content=document.content,
                    score=similarity,
                    source="semantic",
                    metadata=document.metadata,
                )
            )
        scored.sort(key=lambda r: r.score, reverse=True)
        return scored[:SEMANTIC_CANDIDATES]


# ---------------------------------------------------------------------------
# Working memory
# ---------------------------------------------------------------------------


class WorkingMemory:
    """Per-conversation FIFO of the most recent writes, oldest evicted first."""

    def __init__(self, cap: int = 8) -> None:
        self._cap = cap
        self._buffers: dict[str, deque[MemoryRecord]] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @property
    def cap(self) -> int:
        return self._cap

    async def append(self, conversation_id: str, record: MemoryRecord) -> None:
        async with self._locks[conversation_id]:
            buffer = self._buffers.setdefault(conversation_id, deque(maxlen=self._cap))
            buffer.append(record)

    async def recall(self, conversation_id: str, query: str, limit: int) -> list[MemoryRecord]:
        """Newest-first substring matches against the query."""
        if conversation_id not in self._buffers:
            return []
        needle = (query or "").lower()
        async with self._locks[conversation_id]:
            records = list(reversed(self._buffers.get(conversation_id, ())))
        return [record for record in records if needle in record.content.lower()][: max(limit, 0)]

    async def snapshot(self, conversation_id: str) -> list[MemoryRecord]:
        if conversation_id not in self._buffers:
            return []
        async with self._locks[conversation_id]:
            return list(self._buffers.get(conversation_id, ()))

    async def clear(self, conversation_id: str | None = None) -> None:
        """Drop one conversation (or all of them) together with its lock."""
        if conversation_id is None:
            self._buffers.clear()
            self._locks.clear()
            return
        lock = self._locks.get(conversation_id)
        if lock is None:
            return
        async with lock:
            self._buffers.pop(conversation_id, None)
        if conversation_id not in self._buffers:
            self._locks.pop(conversation_id, None)


# ---------------------------------------------------------------------------
# Facade
# ---------------------------------------------------------------------------


class AgentMemory:
    """Working memory first, then the shared hybrid index."""

    def __init__(self, index: HybridMemoryIndex | None = None, working_cap: int = 8) -> None:
        self.index = index or HybridMemoryIndex()
        self.working = WorkingMemory(cap=working_cap)

    async def write(self, conversation_id: str, content: str, important: bool = False) -> MemoryRecord:
        record = MemoryRecord(
            id=f"{conversation_id}:{uuid.uuid4().hex[:12]}",
            content=content,
            timestamp=time.time(),
            layer="working",
        )
        await self.working.append(conversation_id, record)
        await self.index.add_memory(
            record.id,
            content,
            {"important": important, "conversation_id": conversation_id},
        )
        return record

    async def retrieve(self, conversation_id: str, query: str, limit: int = 5) -> list[MemoryRecord]:
        if limit <= 0:
            return []

        working = await self.working.recall(conversation_id, query, min(limit, WORKING_RECALL_CAP))
        seen = {record.id for record in working}

        # Working hits are also indexed; ask for a full page so deduplication
        # does not starve the result.
        semantic = await self.index.search(query, limit=limit, strategy="hybrid", include_important=True)
        now = time.time()
        semantic_records = [
            MemoryRecord(id=result.id, content=result.content, timestamp=now, layer="semantic")
            for result in semantic
            if result.id not in seen
        ]
        return (working + semantic_records)[:limit]

    async def clear(self, conversation_id: str | None = None) -> None:
        """Drop working memory; with no conversation id also wipe the index."""
        await self.working.clear(conversation_id)
        if conversation_id is None:
            await self.index.clear_all()
