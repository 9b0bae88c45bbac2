"""Tests for text chunking functionality in docsage."""

import pytest
from docsage import TextChunker


class TestTextChunking:
    """Test recursive chunking."""

    @pytest.fixture
    def chunker(self):
        return TextChunker(chunk_size=100, chunk_overlap=30)

    def test_empty_and_whitespace_text(self, chunker):
        """Empty input yields no chunks rather than an error."""
        assert chunker.chunk("", {"filePath": "/a.txt"}) == []
        assert chunker.chunk("   \n\n\t ", {"filePath": "/a.txt"}) == []

    def test_short_text_single_chunk(self, chunker):
        """Text under the size limit stays in one chunk."""
        text = "This is a short text that fits in one chunk."

        chunks = chunker.chunk(text, {"filePath": "/docs/a.txt", "fileName": "a.txt"})

        assert len(chunks) == 1
        assert chunks[0]["content"] == text
        assert chunks[0]["metadata"] == {
            "filePath": "/docs/a.txt",
            "fileName": "a.txt",
            "chunkIndex": 0,
        }

    def test_chunks_respect_size_bound(self, chunker):
        """No chunk is longer than chunk_size."""
        text = "\n\n".join(
            " ".join(f"word{i}_{j}" for j in range(40)) for i in range(6)
        )

        chunks = chunker.chunk(text)

        assert len(chunks) > 1
        assert all(len(chunk["content"]) <= 100 for chunk in chunks)

    def test_unbroken_text_falls_back_to_characters(self):
        """A single token longer than chunk_size is split by characters."""
        chunker = TextChunker(chunk_size=10, chunk_overlap=0)

        chunks = chunker.split_text("x" * 35)

        assert chunks == ["x" * 10, "x" * 10, "x" * 10, "x" * 5]

    def test_chunk_index_is_sequential(self, chunker):
        """chunkIndex counts up from zero in document order."""
        text = ". ".join(f"Sentence number {i}" for i in range(60))

        chunks = chunker.chunk(text, {"filePath": "/docs/long.txt"})

        assert [c["metadata"]["chunkIndex"] for c in chunks] == list(range(len(chunks)))
        assert all(c["metadata"]["filePath"] == "/docs/long.txt" for c in chunks)

    def test_base_metadata_not_mutated(self, chunker):
        """Each chunk gets its own metadata copy."""
        base = {"filePath": "/docs/a.txt"}

        chunks = chunker.chunk("one two three " * 30, base)

        assert base == {"filePath": "/docs/a.txt"}
        assert chunks[0]["metadata"] is not chunks[1]["metadata"]

    def test_adjacent_chunks_overlap(self, chunker):
        """Consecutive chunks share text carried from the previous tail."""
        text = " ".join(f"token{i}" for i in range(120))

        chunks = [c["content"] for c in chunker.chunk(text)]

        assert len(chunks) > 2
        for current, following in zip(chunks, chunks[1:]):
            first_word = following.split()[0]
            assert first_word in current.split()
            shared = current[current.index(first_word):]
            assert following.startswith(shared)
            assert 0 < len(shared) <= 30

    def test_long_paragraphs_still_overlap(self, chunker):
        """Paragraphs longer than the overlap carry their trailing words forward."""
        text = "\n\n".join(
            f"Paragraph {i} " + " ".join(f"w{i}_{j}" for j in range(12)) for i in range(4)
        )

        chunks = chunker.split_text(text)

        assert len(chunks) == 4
        assert all(len(chunk) <= 100 for chunk in chunks)
        for current, following in zip(chunks, chunks[1:]):
            shared = [k for k in range(1, 31) if current.endswith(following[:k])]
            assert shared
            assert not following[0].isspace()
            assert following.split()[0] in current.split()

    def test_round_trip_without_overlap(self):
        """Joined chunks reproduce the text modulo whitespace."""
        chunker = TextChunker(chunk_size=80, chunk_overlap=0)
        text = (
            "First paragraph talks about budgets. It has two sentences!\n\n"
            "Second paragraph\nspans lines? Yes it does.\n\n"
            + "Long tail " * 30
        )

        chunks = chunker.chunk(text)

        rebuilt = "".join(c["content"] for c in chunks)
        assert "".join(rebuilt.split()) == "".join(text.split())

    def test_prefers_paragraph_boundaries(self):
        """Paragraphs that fit are kept whole."""
        chunker = TextChunker(chunk_size=60, chunk_overlap=0)
        paragraphs = ["Alpha paragraph with a few words.", "Beta paragraph, also short.", "Gamma closes."]

        chunks = chunker.split_text("\n\n".join(paragraphs))

        for paragraph in paragraphs:
            assert any(paragraph in chunk for chunk in chunks)

    def test_deterministic(self, chunker):
        """Same input, same output."""
        text = "Lorem ipsum dolor sit amet. " * 40

        assert chunker.chunk(text) == chunker.chunk(text)

    @pytest.mark.parametrize("size, overlap", [(0, 0), (100, 100), (100, 150), (100, -1)])
    def test_invalid_settings_rejected(self, size, overlap):
        """Overlap must be smaller than the chunk size."""
        with pytest.raises(ValueError):
            TextChunker(chunk_size=size, chunk_overlap=overlap)
