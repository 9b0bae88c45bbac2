"""Shared test fixtures for docsage testing."""

import pytest
import tempfile
import shutil
import re
import zlib
from pathlib import Path
from typing import Dict, Any, Generator, List, Optional
import sys

import numpy as np

# Add parent directory to path so we can import docsage
sys.path.insert(0, str(Path(__file__).parent.parent))

import docsage


class FakeEmbeddings(docsage.EmbeddingsProvider):
    """Bag-of-words hashing embeddings: same text, same vector."""

    name = "fake"

    def __init__(self, dimension: int = 64, fail_on: Optional[str] = None) -> None:
        super().__init__("fake-embedding", retries=1, backoff=0)
        self.dimension = dimension
        self.fail_on = fail_on
        self.calls = 0

    async def _embed(self, text: str) -> List[float]:
        self.calls += 1
        if self.fail_on and self.fail_on in text:
            raise docsage.ProviderError("refused to embed", retryable=False)
        vector = np.zeros(self.dimension)
        for token in re.findall(r"\w+", text.lower()):
            vector[zlib.crc32(token.encode("utf-8")) % self.dimension] += 1.0
        return vector.tolist()


class FakeLLM(docsage.LLMProvider):
    """Records prompts and answers with a canned reply."""

    name = "fake"

    def __init__(self, reply: str = "The report is due March 15 (notes.txt).", fail: bool = False) -> None:
        super().__init__("fake-llm", retries=1, backoff=0)
        self.reply = reply
        self.fail = fail
        self.prompts: List[str] = []

    async def _complete(self, prompt: str, options: Dict[str, Any]) -> str:
        self.prompts.append(prompt)
        if self.fail:
            raise docsage.ProviderUnavailableError("fake", "http://localhost:9")
        return self.reply

    async def _stream(self, prompt: str, options: Dict[str, Any]):
        self.prompts.append(prompt)
        if self.fail:
            raise docsage.ProviderUnavailableError("fake", "http://localhost:9")
        for word in self.reply.split(" "):
            yield word + " "


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    temp_path = Path(tempfile.mkdtemp())
    yield temp_path
    shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def docs_dir(temp_dir: Path) -> Path:
    """Create a temporary docs directory."""
    path = temp_dir / "docs"
    path.mkdir()
    return path


@pytest.fixture
def notes_folder(docs_dir: Path) -> Path:
    """Folder holding a single notes.txt."""
    (docs_dir / "notes.txt").write_text("The quarterly report is due March 15", encoding="utf-8")
    return docs_dir


@pytest.fixture
def sample_documents(docs_dir: Path) -> Path:
    """A small tree of supported, unsupported, hidden and ignored files."""
    (docs_dir / "guide.md").write_text(
        "# Setup Guide\n\nInstall the package.\n\nConfigure the data directory.", encoding="utf-8"
    )
    (docs_dir / "budget.txt").write_text("Marketing budget for 2025.03 is 40,000.", encoding="utf-8")
    (docs_dir / "image.png").write_bytes(b"\x89PNG")
    (docs_dir / ".secret.txt").write_text("hidden", encoding="utf-8")

    nested = docs_dir / "projects" / "alpha"
    nested.mkdir(parents=True)
    (nested / "plan.txt").write_text("Alpha launch plan: ship in June.", encoding="utf-8")

    ignored = docs_dir / "node_modules" / "pkg"
    ignored.mkdir(parents=True)
    (ignored / "readme.md").write_text("should never be indexed", encoding="utf-8")

    hidden_dir = docs_dir / ".git"
    hidden_dir.mkdir()
    (hidden_dir / "notes.txt").write_text("git internals", encoding="utf-8")
    return docs_dir


@pytest.fixture
def test_config(temp_dir: Path) -> Dict[str, Any]:
    """Default configuration with fast timings and a temp data dir."""
    config = docsage.load_config(str(temp_dir / "missing_config.yaml"))
    config["data_dir"] = str(temp_dir / "data")
    config["chunking"].update({"chunk_size": 200, "chunk_overlap": 40})
    config["vector_store"]["save_debounce_seconds"] = 0.05
    config["indexing"].update(
        {
            "file_pause_poll_seconds": 0.01,
            "chunk_pause_poll_seconds": 0.01,
            "small_run_yield_seconds": 0,
            "large_run_yield_seconds": 0,
        }
    )
    return config


@pytest.fixture
def fake_embeddings() -> FakeEmbeddings:
    return FakeEmbeddings()


@pytest.fixture
def fake_llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def memory_store(temp_dir: Path) -> docsage.InMemoryVectorStore:
    """In-memory store writing its snapshot under the temp dir."""
    return docsage.InMemoryVectorStore(temp_dir / "data", debounce_seconds=0.05)


@pytest.fixture
def orchestrator(memory_store, fake_embeddings, test_config) -> docsage.IndexingOrchestrator:
    return docsage.IndexingOrchestrator(
        memory_store,
        fake_embeddings,
        docsage.DocumentParser(),
        docsage.TextChunker(200, 40),
        docsage.EventBus(),
        test_config["indexing"],
    )


@pytest.fixture
def assistant(test_config, fake_embeddings, fake_llm) -> docsage.DocumentAssistant:
    """Assistant wired with fake providers; call ``initialize`` in the test."""
    return docsage.DocumentAssistant(test_config, embeddings=fake_embeddings, llm=fake_llm)


def make_chunk(content: str, file_path: str, index: int = 0) -> Dict[str, Any]:
    """Chunk dict as produced by the chunker."""
    return {
        "content": content,
        "metadata": {
            "filePath": file_path,
            "fileName": Path(file_path).name,
            "chunkIndex": index,
            "fileType": Path(file_path).suffix.lstrip("."),
        },
    }


def vector_embedder(vectors: Dict[str, List[float]]):
    """embed_fn returning a fixed vector per content string."""
    async def embed(text: str) -> List[float]:
        return vectors[text]

    return embed
