"""Tests for question handling, fusion and prompt construction."""

import asyncio

import pytest

from docsage import (
    RagEngine,
    build_prompt,
    classify_question,
    diversify_results,
    extract_keywords,
    extract_sources,
    normalize_question,
    reciprocal_rank_fusion,
)
from conftest import FakeLLM, make_chunk


def hit(path, index, similarity=1.0, content=None):
    chunk = make_chunk(content or f"{path}#{index}", path, index)
    chunk["similarity"] = similarity
    return chunk


class TestQuestionClassification:
    """Test greeting and small-talk detection."""

    @pytest.mark.parametrize(
        "question",
        ["안녕하세요", "hi", "Hello there!", "thanks a lot", "Thank you so much", "좋은 아침이에요", "good morning"],
    )
    def test_greetings(self, question):
        assert classify_question(question) == "greeting"

    @pytest.mark.parametrize("question", ["ok", "cool!", "음...", "ㅋㅋㅋ"])
    def test_short_small_talk(self, question):
        assert classify_question(question) == "small_talk"

    @pytest.mark.parametrize(
        "question",
        ["파일 알려줘", "where?", "when is the report due", "history of the project", "highlights from 2024"],
    )
    def test_document_questions(self, question):
        """Short questions with a document hint still go to retrieval."""
        assert classify_question(question) == "document"


class TestQuestionNormalization:
    """Test punctuation stripping and date canonicalisation."""

    def test_strips_terminal_punctuation_only(self):
        assert normalize_question("What is v2.0 about?!") == "What is v2.0 about"
        assert normalize_question("예산은?") == "예산은"

    def test_korean_year_month(self):
        assert normalize_question("2025년 3월 예산") == "2025.03 예산"
        assert normalize_question("2024년12월 보고서") == "2024.12 보고서"

    def test_korean_month_only(self):
        assert normalize_question("3월 회의록") == "03 회의록"

    def test_english_month_year(self):
        assert normalize_question("budget for March 2025") == "budget for 2025.03"
        assert normalize_question("Sept 2024 report") == "2024.09 report"

    def test_keywords_drop_stop_words_and_single_chars(self):
        assert extract_keywords("when is the report due?") == ["report", "due"]
        assert extract_keywords("2025년 3월 예산 관련 문서 알려줘") == ["2025.03", "예산"]
        assert extract_keywords("a b c") == []

    def test_keywords_are_lowercased_and_unique(self):
        assert extract_keywords("Budget BUDGET budget-plan") == ["budget", "plan"]


class TestReciprocalRankFusion:
    """Test RRF scoring."""

    def test_documented_example(self):
        """Keyword [A, B] and vector [B, C] fuse to B > A > C."""
        a, b, c = hit("/a.txt", 0), hit("/b.txt", 0), hit("/c.txt", 0)
        b_vec, c_vec = hit("/b.txt", 0, 0.9), hit("/c.txt", 0, 0.8)

        fused = reciprocal_rank_fusion([a, b], [b_vec, c_vec])

        assert [r["metadata"]["filePath"] for r in fused] == ["/b.txt", "/a.txt", "/c.txt"]
        scores = {r["metadata"]["filePath"]: r["score"] for r in fused}
        assert scores["/a.txt"] == pytest.approx(1.2 / 61)
        assert scores["/b.txt"] == pytest.approx(1.2 / 62 + 1.0 / 61)
        assert scores["/c.txt"] == pytest.approx(1.0 / 62)

    def test_vector_floor_excludes_weak_hits(self):
        fused = reciprocal_rank_fusion([], [hit("/a.txt", 0, 0.44), hit("/b.txt", 0, 0.45)])

        assert [r["metadata"]["filePath"] for r in fused] == ["/b.txt"]

    def test_nan_similarity_excluded(self):
        fused = reciprocal_rank_fusion([], [hit("/a.txt", 0, float("nan"))])

        assert fused == []

    def test_same_file_different_chunks_stay_separate(self):
        fused = reciprocal_rank_fusion([hit("/a.txt", 0), hit("/a.txt", 1)], [])

        assert len(fused) == 2

    def test_keyword_hits_have_no_floor(self):
        fused = reciprocal_rank_fusion([hit("/a.txt", 0, 0.01)], [])

        assert len(fused) == 1


class TestDiversity:
    """Test per-file capping and citation extraction."""

    def test_caps_chunks_per_file(self):
        results = [hit("/a.txt", i) for i in range(5)] + [hit("/b.txt", 0), hit("/c.txt", 0)]

        selected = diversify_results(results, max_per_file=3, top_n=5)

        paths = [r["metadata"]["filePath"] for r in selected]
        assert paths == ["/a.txt", "/a.txt", "/a.txt", "/b.txt", "/c.txt"]

    def test_truncates_to_top_n(self):
        results = [hit(f"/{i}.txt", 0) for i in range(10)]

        assert len(diversify_results(results, top_n=5)) == 5

    def test_sources_one_per_file(self):
        results = [hit("/docs/a.txt", 2, 0.9), hit("/docs/a.txt", 0, 0.8), hit("/docs/b.txt", 1, 0.5)]
        results[0]["score"] = 0.03

        sources = extract_sources(results)

        assert sources == [
            {"filePath": "/docs/a.txt", "fileName": "a.txt", "chunkIndex": 2, "relevance": 0.9, "score": 0.03},
            {"filePath": "/docs/b.txt", "fileName": "b.txt", "chunkIndex": 1, "relevance": 0.5, "score": 0.5},
        ]


class TestPromptConstruction:
    """Test the three prompt variants."""

    def test_greeting_prompt(self):
        prompt = build_prompt("hello", [], "greeting")

        assert "greeting" in prompt
        assert "=== DOCUMENTS START ===" not in prompt

    def test_no_context_prompt_admits_ignorance(self):
        prompt = build_prompt("what is the budget", [], "document")

        assert "could not find related documents" in prompt
        assert "Do not invent" in prompt

    def test_grounded_prompt_tags_sources(self):
        results = [hit("/docs/a.txt", 0, content="Alpha text"), hit("/docs/b.txt", 0, content="Beta text")]

        prompt = build_prompt("what?", results, "document")

        assert "=== DOCUMENTS START ===" in prompt
        assert "[Source: a.txt]\nAlpha text\n\n---\n\n[Source: b.txt]\nBeta text" in prompt
        assert "Answer only from the documents above" in prompt


class TestRagEngine:
    """Test retrieval and generation against a real in-memory store."""

    @pytest.fixture
    def engine(self, memory_store, fake_embeddings, fake_llm):
        return RagEngine(memory_store, fake_embeddings, fake_llm)

    async def _index(self, engine, chunks):
        await engine.store.add_documents(chunks, engine.embeddings.embed_one, should_persist=False)

    @pytest.mark.asyncio
    async def test_retrieve_finds_keyword_match(self, engine):
        await self._index(
            engine,
            [
                make_chunk("The quarterly report is due March 15", "/docs/notes.txt"),
                make_chunk("Lunch menu: pasta and salad", "/docs/menu.txt"),
            ],
        )

        results = await engine.retrieve("when is the report due")

        assert results[0]["metadata"]["fileName"] == "notes.txt"

    @pytest.mark.asyncio
    async def test_retrieve_falls_back_to_keywords_on_dimension_mismatch(self, engine):
        engine.store.insert_records(
            [
                {
                    "id": "1",
                    "content": "report due soon",
                    "embedding": [1.0, 0.0],
                    "metadata": {"filePath": "/docs/r.txt", "fileName": "r.txt", "chunkIndex": 0},
                }
            ]
        )

        results = await engine.retrieve("when is the report due")

        assert [r["metadata"]["fileName"] for r in results] == ["r.txt"]

    @pytest.mark.asyncio
    async def test_greeting_skips_retrieval(self, engine, fake_llm):
        await self._index(engine, [make_chunk("hello world document", "/docs/hello.txt")])

        result = await engine.query("hello")

        assert result["sources"] == []
        assert "greeting" in fake_llm.prompts[-1]

    @pytest.mark.asyncio
    async def test_query_returns_answer_and_sources(self, engine, fake_llm):
        await self._index(engine, [make_chunk("The quarterly report is due March 15", "/docs/notes.txt")])

        result = await engine.query("when is the report due")

        assert result["answer"] == fake_llm.reply
        assert [s["fileName"] for s in result["sources"]] == ["notes.txt"]
        assert "The quarterly report is due March 15" in fake_llm.prompts[-1]

    @pytest.mark.asyncio
    async def test_query_with_empty_store_degrades(self, engine, fake_llm):
        result = await engine.query("what does the contract say about renewal")

        assert result["sources"] == []
        assert "could not find related documents" in fake_llm.prompts[-1]

    @pytest.mark.asyncio
    async def test_stream_emits_sources_before_chunks(self, engine):
        await self._index(engine, [make_chunk("The quarterly report is due March 15", "/docs/notes.txt")])

        events = [event async for event in engine.query_stream("when is the report due")]

        assert events[0]["type"] == "sources"
        assert events[0]["content"][0]["fileName"] == "notes.txt"
        assert all(e["type"] == "chunk" for e in events[1:])
        assert "".join(e["content"] for e in events[1:]).strip() == engine.llm.reply

    @pytest.mark.asyncio
    async def test_stream_failure_ends_with_error_event(self, memory_store, fake_embeddings):
        engine = RagEngine(memory_store, fake_embeddings, FakeLLM(fail=True))

        events = [event async for event in engine.query_stream("when is the report due")]

        assert [e["type"] for e in events] == ["sources", "error"]
        assert "Cannot reach fake" in events[1]["content"]

    @pytest.mark.asyncio
    async def test_stream_cancellation(self, engine):
        cancel = asyncio.Event()
        events = []

        async for event in engine.query_stream("hello", cancel):
            events.append(event)
            if event["type"] == "chunk":
                cancel.set()

        assert [e["type"] for e in events] == ["sources", "chunk"]

    @pytest.mark.asyncio
    async def test_non_streaming_failure_propagates(self, memory_store, fake_embeddings):
        engine = RagEngine(memory_store, fake_embeddings, FakeLLM(fail=True))

        with pytest.raises(Exception, match="Cannot reach fake"):
            await engine.query("when is the report due")
