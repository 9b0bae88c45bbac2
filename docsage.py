#!/usr/bin/env python3
"""DocSage v1.0.0 - personal document question answering.

Point it at your folders and ask questions about what is inside them:
  docsage index --folder ~/Documents          # Index every supported file
  docsage ask "when is the report due"         # Grounded answer with sources
  docsage chat                                 # Interactive chat (supports /commands)
  docsage search "quarterly report" --json     # Hybrid retrieval without the LLM
  docsage status                               # Index size and indexing state
  docsage watch --folder ~/Documents           # Keep the index in sync with disk
  docsage clear                                # Drop every indexed chunk

Key Features:
• Hybrid Retrieval: keyword + semantic search fused with Reciprocal Rank Fusion
• Recursive Chunking: paragraph, line, sentence and word aware splitting
• Cooperative Indexing: chat queries pause background indexing until answered
• Debounced Snapshots: the in-memory index persists to a single JSON file
• Pluggable Providers: sentence-transformers, Ollama or OpenAI-compatible APIs
• Config Support: optional docsage_config.yaml for customization
• Bilingual: Korean and English greetings, stop words and date expressions
"""

# Standard library imports
import argparse
import asyncio
import inspect
import json
import logging
import math
import os
import re
import sys
import tempfile
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Tuple,
)

# Third-party imports
import httpx
import numpy as np
import yaml
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

# Version information
__version__ = "1.0.0"

logger = logging.getLogger("docsage")

# Constants
DEFAULT_CHUNK_SIZE = 1000
DEFAULT_CHUNK_OVERLAP = 200
CHUNK_SEPARATORS = ["\n\n", "\n", ". ", "! ", "? ", " ", ""]
MAX_FILE_SIZE_MB = 100  # Maximum file size in MB
SNAPSHOT_FILENAME = "vector-store.json"
HISTORY_FILENAME = "chat-history.json"
SAVE_DEBOUNCE_SECONDS = 3.0
DEFAULT_DATA_DIR = "./data"
DEFAULT_COLLECTION = "docsage"

# Indexing
MAX_FILES_PER_SCAN = 1000
FILE_PAUSE_POLL_SECONDS = 2.0
CHUNK_PAUSE_POLL_SECONDS = 0.5
SMALL_RUN_YIELD_SECONDS = 0.2
LARGE_RUN_YIELD_SECONDS = 0.05
LARGE_RUN_THRESHOLD = 500
WATCH_DEBOUNCE_SECONDS = 1.0
IGNORED_DIRS = frozenset(
    {
        "node_modules",
        ".git",
        ".next",
        "dist",
        "build",
        "out",
        "target",
        "vendor",
        ".venv",
        "venv",
        "env",
        "__pycache__",
    }
)

# File type constants
SUPPORTED_EXTENSIONS = [
    ".txt",
    ".md",
    ".xml",
    ".csv",
    ".json",
    ".pdf",
    ".docx",
    ".xlsx",
    ".pptx",
]

# Retrieval
RRF_K = 60
KEYWORD_WEIGHT = 1.2
VECTOR_WEIGHT = 1.0
VECTOR_SIMILARITY_FLOOR = 0.45
KEYWORD_TOP_K = 8
VECTOR_TOP_K = 8
MAX_CHUNKS_PER_FILE = 3
FINAL_TOP_N = 5
SHORT_QUESTION_LENGTH = 10

# Keyword scoring weights
FILENAME_MATCH_WEIGHT = 10.0
FOLDER_MATCH_WEIGHT = 5.0
CONTENT_MATCH_WEIGHT = 3.0
JOINED_KEYWORD_BONUS = 8.0

# Providers
DEFAULT_EMBEDDING_PROVIDER = "sentence-transformers"
DEFAULT_EMBEDDING_MODEL = "sentence-transformers/paraphrase-multilingual-MiniLM-L12-v2"
DEFAULT_OLLAMA_URL = "http://localhost:11434"
DEFAULT_OLLAMA_EMBEDDING_MODEL = "nomic-embed-text"
DEFAULT_OPENAI_EMBEDDING_MODEL = "text-embedding-3-small"
DEFAULT_LLM_PROVIDER = "ollama"
DEFAULT_LLM_MODEL = "llama3.1"
DEFAULT_OPENAI_URL = "https://api.openai.com/v1"
EMBED_TIMEOUT_SECONDS = 30.0
LLM_TIMEOUT_SECONDS = 120.0
PROVIDER_RETRIES = 3
PROVIDER_BACKOFF_SECONDS = 1.0
DEFAULT_TEMPERATURE = 0.3
DEFAULT_MAX_TOKENS = 2048

# Chat
COMMAND_PREFIX = "/"
MAX_CONVERSATIONS = 100
TITLE_LENGTH = 20
ASSISTANT_NAME = "DocSage"

# Pre-compiled regex patterns for performance
GREETING_PATTERN = re.compile(
    r"^(?:안녕|하이|반가워|좋은\s*(?:아침|저녁|오후)|잘\s*지내|감사합니다|고마워|수고|잘\s*자|바이"
    r"|(?:hi|hello|hey|bye|goodbye|thanks|thank\s+you|good\s+(?:morning|afternoon|evening))\b)",
    re.IGNORECASE,
)
DOCUMENT_HINT_PATTERN = re.compile(
    r"문서|파일|검색|찾아|알려|뭐야|어때|무엇|어디|언제|누구|방법|절차|규정"
    r"|\b(?:doc\w*|file\w*|find|search|what|where|when|who|how|why|which|show|explain)\b",
    re.IGNORECASE,
)
TRAILING_PUNCTUATION_PATTERN = re.compile(r"[?？!！.。~…\s]+$")
KOREAN_YEAR_MONTH_PATTERN = re.compile(r"(\d{4})\s*년\s*(\d{1,2})\s*월")
KOREAN_MONTH_PATTERN = re.compile(r"(?<![\d.])(\d{1,2})\s*월")
ENGLISH_MONTH_YEAR_PATTERN = re.compile(
    r"\b(january|february|march|april|may|june|july|august|september|october|november|december"
    r"|jan|feb|mar|apr|jun|jul|aug|sep|sept|oct|nov|dec)\.?\s+(\d{4})\b",
    re.IGNORECASE,
)
KEYWORD_SPLIT_PATTERN = re.compile(r"[^\w.]+")
WINDOWS_PATH_PATTERN = re.compile(r'[A-Za-z]:[\\\/][^\\\/\s]*[\\\/]')
UNIX_PATH_PATTERN = re.compile(r'\/[^\/\s]*\/')
FILE_URL_PATTERN = re.compile(r'\bfile:\/\/[^\s]*')

MONTH_NUMBERS = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}

STOP_WORDS = frozenset(
    {
        # Korean request phrasing and particles
        "내용", "알려줘", "뭐야", "있어", "대한", "관련", "주세요", "해줘", "찾아줘",
        "폴더에서", "폴더", "파일", "문서", "에서", "대해", "대해서", "어떤", "무슨",
        "보여줘", "검색", "안에", "속에", "폴더의", "폴더에", "것", "거", "좀", "하나",
        "뭔가", "무엇", "어떻게", "왜",
        # English
        "a", "an", "the", "is", "are", "was", "were", "be", "been", "do", "does", "did",
        "what", "when", "where", "who", "whom", "which", "why", "how", "of", "in", "on",
        "at", "to", "for", "from", "by", "with", "about", "and", "or", "me", "my", "i",
        "you", "your", "it", "its", "this", "that", "these", "those", "please", "tell",
        "show", "find", "search", "file", "files", "document", "documents", "folder",
        "can", "could", "would", "should", "there", "any", "some",
    }
)


class DocSageError(Exception):
    """Base class for errors surfaced to DocSage users."""


class ProviderError(DocSageError):
    """An embedding or LLM provider call failed."""

    def __init__(self, message: str, *, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class ProviderUnavailableError(ProviderError):
    """The provider endpoint refused the connection."""

    def __init__(self, provider: str, endpoint: str) -> None:
        super().__init__(
            f"Cannot reach {provider} at {endpoint}. "
            f"Make sure the {provider} service is running and the endpoint is correct."
        )
        self.provider = provider
        self.endpoint = endpoint


class UnsupportedFormatError(DocSageError):
    """No parser is registered for the file extension."""

    def __init__(self, file_name: str) -> None:
        supported = ", ".join(SUPPORTED_EXTENSIONS)
        super().__init__(f"Unsupported file type: {file_name} (supported: {supported})")
        self.file_name = file_name


class ParseError(DocSageError):
    """Text extraction failed for a supported file."""

    def __init__(self, file_name: str, error: Optional[Exception] = None) -> None:
        detail = f": {sanitize_error_message(str(error))}" if error else ""
        super().__init__(f"Could not extract text from {file_name}{detail}")
        self.file_name = file_name


class DimensionMismatchError(DocSageError, ValueError):
    """Two vectors of different lengths were compared."""

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(
            f"Embedding dimension mismatch: expected {expected}, got {actual}. "
            "Rebuild the index after changing the embedding model."
        )
        self.expected = expected
        self.actual = actual


def sanitize_error_message(error_msg: str) -> str:
    """Sanitize error messages to prevent information leakage."""
    sanitized = WINDOWS_PATH_PATTERN.sub('', error_msg)
    sanitized = UNIX_PATH_PATTERN.sub('/', sanitized)
    sanitized = FILE_URL_PATTERN.sub('[FILE_PATH]', sanitized)
    return sanitized


def log_error(message: str, error: Optional[Exception] = None, *, quiet: bool = False) -> None:
    """Centralized error logging with consistent formatting."""
    if quiet:
        return

    if error:
        logger.error("%s: %s", message, sanitize_error_message(str(error)))
    else:
        logger.error("%s", message)


def log_warning(message: str, error: Optional[Exception] = None, *, quiet: bool = False) -> None:
    """Centralized warning logging with consistent formatting."""
    if quiet:
        return

    if error:
        logger.warning("%s: %s", message, sanitize_error_message(str(error)))
    else:
        logger.warning("%s", message)


def handle_file_error(file_path: Path, operation: str, error: Exception, *, quiet: bool = False) -> None:
    """Standardized file operation error handling."""
    if isinstance(error, (FileNotFoundError, PermissionError)):
        log_error(f"Cannot {operation} {file_path.name} - {type(error).__name__}", quiet=quiet)
    elif isinstance(error, UnicodeDecodeError):
        log_error(f"Cannot {operation} {file_path.name} - encoding issue", quiet=quiet)
    else:
        log_error(f"Cannot {operation} {file_path.name}", error, quiet=quiet)


def configure_logging(quiet: bool = False, verbose: bool = False) -> None:
    """Attach a stderr handler to the docsage logger once."""
    level = logging.DEBUG if verbose else logging.WARNING if quiet else logging.INFO
    logger.setLevel(level)
    if not any(getattr(h, "_docsage", False) for h in logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s", "%H:%M:%S"))
        handler._docsage = True
        logger.addHandler(handler)
    logger.propagate = False


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Load optional configuration file."""
    ollama_url = os.environ.get("OLLAMA_HOST", DEFAULT_OLLAMA_URL)
    default_config = {
        "folders": [],
        "data_dir": DEFAULT_DATA_DIR,
        "chunking": {
            "chunk_size": DEFAULT_CHUNK_SIZE,
            "chunk_overlap": DEFAULT_CHUNK_OVERLAP,
        },
        "embeddings": {
            "provider": DEFAULT_EMBEDDING_PROVIDER,
            "model": DEFAULT_EMBEDDING_MODEL,
            "ollama_url": ollama_url,
            "openai_base_url": None,
            "api_key": None,
            "timeout": EMBED_TIMEOUT_SECONDS,
            "retries": PROVIDER_RETRIES,  # attempts per call, first one included
            "backoff": PROVIDER_BACKOFF_SECONDS,
        },
        "llm": {
            "provider": DEFAULT_LLM_PROVIDER,
            "model": DEFAULT_LLM_MODEL,
            "ollama_url": ollama_url,
            "openai_base_url": None,
            "api_key": None,
            "temperature": DEFAULT_TEMPERATURE,
            "max_tokens": DEFAULT_MAX_TOKENS,
            "timeout": LLM_TIMEOUT_SECONDS,
            "retries": PROVIDER_RETRIES,  # attempts per call, first one included
            "backoff": PROVIDER_BACKOFF_SECONDS,
        },
        "vector_store": {
            "backend": "memory",  # memory | chroma
            "snapshot_file": SNAPSHOT_FILENAME,
            "save_debounce_seconds": SAVE_DEBOUNCE_SECONDS,
            "collection": DEFAULT_COLLECTION,
        },
        "indexing": {
            "max_files": MAX_FILES_PER_SCAN,
            "max_file_size_mb": MAX_FILE_SIZE_MB,
            "file_pause_poll_seconds": FILE_PAUSE_POLL_SECONDS,
            "chunk_pause_poll_seconds": CHUNK_PAUSE_POLL_SECONDS,
            "small_run_yield_seconds": SMALL_RUN_YIELD_SECONDS,
            "large_run_yield_seconds": LARGE_RUN_YIELD_SECONDS,
            "large_run_threshold": LARGE_RUN_THRESHOLD,
        },
        "retrieval": {
            "keyword_top_k": KEYWORD_TOP_K,
            "vector_top_k": VECTOR_TOP_K,
            "rrf_k": RRF_K,
            "keyword_weight": KEYWORD_WEIGHT,
            "vector_weight": VECTOR_WEIGHT,
            "vector_similarity_floor": VECTOR_SIMILARITY_FLOOR,
            "max_chunks_per_file": MAX_CHUNKS_PER_FILE,
            "final_top_n": FINAL_TOP_N,
        },
        "watcher": {
            "enabled": False,
            "debounce_seconds": WATCH_DEBOUNCE_SECONDS,
        },
        "chat": {
            "history_file": HISTORY_FILENAME,
            "max_conversations": MAX_CONVERSATIONS,
            "command_prefix": COMMAND_PREFIX,
        },
    }

    config_file = Path(config_path or "docsage_config.yaml")
    if config_file.exists():
        try:
            with open(config_file, "r", encoding="utf-8") as f:
                user_config = yaml.safe_load(f)

            if isinstance(user_config, dict):
                _merge_configs(default_config, user_config)
            elif user_config is not None:
                log_warning(f"Ignoring {config_file.name}: top level must be a mapping")
        except (FileNotFoundError, PermissionError) as e:
            log_warning(f"Could not access config file {config_file}", e)
        except yaml.YAMLError as yaml_error:
            log_warning(f"Invalid YAML format in {config_file}", yaml_error)

    for section in ("embeddings", "llm"):
        if not default_config[section].get("api_key"):
            default_config[section]["api_key"] = os.environ.get("OPENAI_API_KEY")

    return default_config


def _merge_configs(default: Dict[str, Any], user: Dict[str, Any]) -> None:
    """Recursively merge user config into default config."""
    for key, value in user.items():
        if (
            key in default
            and isinstance(default[key], dict)
            and isinstance(value, dict)
        ):
            _merge_configs(default[key], value)
        else:
            default[key] = value


class TextChunker:
    """Recursive character splitter with overlap.

    Text is split on the coarsest separator present; pieces still longer than
    ``chunk_size`` are split again with the next separator. Separators stay
    attached to the piece before them, so joining the pieces gives back the
    original text. Pieces are then packed greedily into chunks of at most
    ``chunk_size`` characters. Each new chunk starts with the trailing pieces
    of the previous one that fit within ``chunk_overlap``; when even the last
    piece is too long, the overlap is the trailing words of the previous chunk
    instead.
    """

    def __init__(
        self,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        chunk_overlap: int = DEFAULT_CHUNK_OVERLAP,
        separators: Optional[List[str]] = None,
    ) -> None:
        if chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")
        if chunk_overlap < 0 or chunk_overlap >= chunk_size:
            raise ValueError(
                f"chunk_overlap must be in [0, chunk_size), got {chunk_overlap} for size {chunk_size}"
            )
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.separators = list(separators or CHUNK_SEPARATORS)

    def chunk(
        self, text: str, base_metadata: Optional[Dict[str, Any]] = None
    ) -> List[Dict[str, Any]]:
        """Split text into chunks carrying a sequential chunkIndex."""
        if not text or not text.strip():
            return []

        chunks = []
        for content in self.split_text(text):
            metadata = dict(base_metadata or {})
            metadata["chunkIndex"] = len(chunks)
            chunks.append({"content": content, "metadata": metadata})
        return chunks

    def split_text(self, text: str) -> List[str]:
        chunks = [chunk.strip() for chunk in self._merge(self._split(text, self.separators))]
        return [chunk for chunk in chunks if chunk]

    def _split(self, text: str, separators: List[str]) -> List[str]:
        """Break text into pieces no longer than chunk_size."""
        separator = separators[-1]
        finer: List[str] = []
        for i, candidate in enumerate(separators):
            if candidate == "" or candidate in text:
                separator = candidate
                finer = separators[i + 1:]
                break

        pieces = []
        for piece in _split_keeping_separator(text, separator):
            if len(piece) <= self.chunk_size or not finer:
                pieces.append(piece)
            else:
                pieces.extend(self._split(piece, finer))
        return pieces

    def _merge(self, pieces: List[str]) -> List[str]:
        chunks = []
        window: List[str] = []
        total = 0
        for piece in pieces:
            if window and total + len(piece) > self.chunk_size:
                emitted = "".join(window)
                chunks.append(emitted)
                while window and (
                    total > self.chunk_overlap or total + len(piece) > self.chunk_size
                ):
                    total -= len(window.pop(0))
                if not window:
                    tail = self._overlap_tail(emitted, self.chunk_size - len(piece))
                    if tail:
                        window.append(tail)
                        total = len(tail)
            window.append(piece)
            total += len(piece)
        if window:
            chunks.append("".join(window))
        return chunks

    def _overlap_tail(self, text: str, room: int) -> str:
        """Trailing words of ``text`` that fit in the overlap and in ``room``."""
        limit = min(self.chunk_overlap, room)
        if limit <= 0:
            return ""
        if len(text) <= limit:
            return text
        tail = text[-limit:]
        if not text[-limit - 1].isspace():
            # drop the partial word at the cut
            match = re.search(r"\s", tail)
            if match is None:
                return ""
            tail = tail[match.end():]
        return tail if tail.strip() else ""


def _split_keeping_separator(text: str, separator: str) -> List[str]:
    if separator == "":
        return list(text)
    parts = text.split(separator)
    pieces = [part + separator for part in parts[:-1]]
    pieces.append(parts[-1])
    return [piece for piece in pieces if piece]


def cosine_similarity(a: Iterable[float], b: Iterable[float]) -> float:
    """Cosine similarity of two vectors; NaN when either is all zeros."""
    first = np.asarray(list(a), dtype=np.float64)
    second = np.asarray(list(b), dtype=np.float64)
    if first.shape != second.shape:
        raise DimensionMismatchError(first.shape[0], second.shape[0])
    denominator = np.linalg.norm(first) * np.linalg.norm(second)
    if denominator == 0:
        return float("nan")
    return float(np.dot(first, second) / denominator)


def _cosine_scores(matrix: np.ndarray, query: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
    with np.errstate(divide="ignore", invalid="ignore"):
        return (matrix @ query) / norms


def _rank_descending(scores: np.ndarray) -> np.ndarray:
    """Indices by descending score, NaN last, ties in original order."""
    keys = np.where(np.isnan(scores), np.inf, -scores)
    return np.argsort(keys, kind="stable")


def score_keyword_match(
    keywords: List[str], content: str, file_name: str, file_path: str
) -> float:
    """Raw keyword relevance of one chunk.

    File name hits outweigh folder hits, which outweigh content hits. Content
    frequency is log damped. When several keywords are given, their
    concatenation is also looked for in the file name and path so that
    "quarterly report" finds ``quarterlyreport.txt``.
    """
    name = file_name.lower()
    path = file_path.lower()
    folder = str(Path(file_path).parent).lower()
    text = content.lower()

    score = 0.0
    for keyword in keywords:
        if keyword in name:
            score += FILENAME_MATCH_WEIGHT
        elif keyword in folder:
            score += FOLDER_MATCH_WEIGHT
        frequency = text.count(keyword)
        if frequency:
            score += CONTENT_MATCH_WEIGHT * (1 + math.log(frequency))

    if len(keywords) > 1:
        joined = "".join(keywords)
        if joined in name or joined in path:
            score += JOINED_KEYWORD_BONUS
    return score


def _normalize_keywords(keywords: Iterable[str]) -> List[str]:
    normalized = []
    for keyword in keywords:
        keyword = keyword.strip().lower()
        if keyword and keyword not in normalized:
            normalized.append(keyword)
    return normalized


def _rank_keyword_matches(
    keywords: Iterable[str], records: Iterable[Dict[str, Any]], k: int
) -> List[Dict[str, Any]]:
    terms = _normalize_keywords(keywords)
    if not terms or k <= 0:
        return []

    scored = []
    for record in records:
        metadata = record.get("metadata") or {}
        score = score_keyword_match(
            terms,
            record.get("content", ""),
            str(metadata.get("fileName", "")),
            str(metadata.get("filePath", "")),
        )
        if score > 0:
            scored.append((score, record))
    if not scored:
        return []

    top_score = max(score for score, _ in scored)
    scored.sort(key=lambda item: item[0], reverse=True)
    return [
        {
            "content": record["content"],
            "metadata": dict(record["metadata"]),
            "similarity": score / top_score,
        }
        for score, record in scored[:k]
    ]


def _atomic_write(path: Path, payload: str) -> None:
    """Write text to ``path`` through a temp file and rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_file:
            tmp_file.write(payload)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


EmbedFn = Callable[[str], Awaitable[List[float]]]
YieldHook = Callable[[], Awaitable[None]]


class VectorStore:
    """Chunk storage with semantic and keyword search.

    Subclasses provide storage; embedding, per-item failure handling and the
    delete-then-insert swap used for reindexing live here.
    """

    async def initialize(self) -> None:
        raise NotImplementedError

    async def add_documents(
        self,
        chunks: List[Dict[str, Any]],
        embed_fn: EmbedFn,
        should_persist: bool = True,
        cooperative_yield: Optional[YieldHook] = None,
    ) -> int:
        """Embed and insert chunks; returns how many were stored."""
        records = await self._embed_records(chunks, embed_fn, cooperative_yield)
        if records:
            await self._insert(records)
            if should_persist:
                await self.save()
        return len(records)

    async def replace_documents(
        self,
        file_path: str,
        chunks: List[Dict[str, Any]],
        embed_fn: EmbedFn,
        should_persist: bool = True,
        cooperative_yield: Optional[YieldHook] = None,
    ) -> int:
        """Swap every chunk of ``file_path`` for freshly embedded ones.

        Embedding happens before anything is removed, so searches running
        meanwhile see either the old chunks or the new ones, never both.
        """
        records = await self._embed_records(
            chunks, embed_fn, cooperative_yield, exclude_path=file_path
        )
        removed = await self._swap(file_path, records)
        if (records or removed) and should_persist:
            await self.save()
        return len(records)

    async def _embed_records(
        self,
        chunks: List[Dict[str, Any]],
        embed_fn: EmbedFn,
        cooperative_yield: Optional[YieldHook] = None,
        exclude_path: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        dimension = await self.dimension(exclude_path=exclude_path)
        records = []
        for chunk in chunks:
            if cooperative_yield is not None:
                await cooperative_yield()

            metadata = dict(chunk.get("metadata") or {})
            label = f"chunk {metadata.get('chunkIndex', '?')} of {metadata.get('fileName', 'input')}"
            try:
                embedding = await embed_fn(chunk["content"])
            except ProviderUnavailableError:
                raise
            except Exception as error:
                log_warning(f"Skipping {label}: embedding failed", error)
                continue

            vector = [float(value) for value in embedding]
            if dimension is None:
                dimension = len(vector)
            elif len(vector) != dimension:
                log_warning(f"Skipping {label}", DimensionMismatchError(dimension, len(vector)))
                continue

            records.append(
                {
                    "id": uuid.uuid4().hex,
                    "content": chunk["content"],
                    "embedding": vector,
                    "metadata": metadata,
                }
            )
        return records

    async def dimension(self, exclude_path: Optional[str] = None) -> Optional[int]:
        raise NotImplementedError

    async def _insert(self, records: List[Dict[str, Any]]) -> None:
        raise NotImplementedError

    async def _swap(self, file_path: str, records: List[Dict[str, Any]]) -> int:
        raise NotImplementedError

    async def search(self, query_embedding: List[float], k: int = 5) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def search_by_keyword(self, keywords: List[str], k: int = 5) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def delete_by_file_path(self, file_path: str) -> int:
        raise NotImplementedError

    async def clear(self) -> None:
        raise NotImplementedError

    async def count(self) -> int:
        raise NotImplementedError

    async def indexed_files(self) -> Dict[str, int]:
        """Chunk counts per source file."""
        raise NotImplementedError

    async def save(self, force: bool = False) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        await self.save(force=True)


class InMemoryVectorStore(VectorStore):
    """Dict-backed store persisted as a JSON list of ``[id, record]`` pairs."""

    def __init__(
        self,
        data_dir: Path,
        snapshot_file: str = SNAPSHOT_FILENAME,
        debounce_seconds: float = SAVE_DEBOUNCE_SECONDS,
    ) -> None:
        self.snapshot_path = Path(data_dir) / snapshot_file
        self.debounce_seconds = debounce_seconds
        self._records: Dict[str, Dict[str, Any]] = {}
        self._dirty = False
        self._save_handle: Optional[asyncio.TimerHandle] = None
        self._save_lock = asyncio.Lock()
        self._flush_tasks: set = set()
        self._matrix_cache: Optional[Tuple[List[str], np.ndarray]] = None

    async def initialize(self) -> None:
        """Load the snapshot; a missing or unreadable one means an empty store."""
        self._records = {}
        self._invalidate()
        if not self.snapshot_path.exists():
            return

        try:
            with open(self.snapshot_path, "r", encoding="utf-8") as snapshot:
                entries = json.load(snapshot)
            if not isinstance(entries, list):
                raise ValueError("snapshot must be a list of [id, record] pairs")
            records = {}
            for record_id, record in entries:
                if not isinstance(record, dict) or "content" not in record:
                    raise ValueError(f"malformed record {record_id!r}")
                record.setdefault("metadata", {})
                record.setdefault("embedding", None)
                record["id"] = record_id
                records[record_id] = record
        except (OSError, ValueError, TypeError) as err:
            log_warning(
                f"Could not read snapshot {self.snapshot_path.name}; starting empty", err
            )
            return

        self._records = records
        logger.info("Loaded %d chunks from %s", len(records), self.snapshot_path.name)

    async def dimension(self, exclude_path: Optional[str] = None) -> Optional[int]:
        for record in self._records.values():
            if exclude_path is not None and record["metadata"].get("filePath") == exclude_path:
                continue
            if record.get("embedding"):
                return len(record["embedding"])
        return None

    async def _insert(self, records: List[Dict[str, Any]]) -> None:
        self.insert_records(records)

    async def _swap(self, file_path: str, records: List[Dict[str, Any]]) -> int:
        removed = self._remove_path(file_path)
        self.insert_records(records)
        return removed

    def insert_records(self, records: List[Dict[str, Any]]) -> None:
        for record in records:
            self._records[record["id"]] = record
        if records:
            self._mark_dirty()

    def _remove_path(self, file_path: str) -> int:
        doomed = [
            record_id
            for record_id, record in self._records.items()
            if record["metadata"].get("filePath") == file_path
        ]
        for record_id in doomed:
            del self._records[record_id]
        if doomed:
            self._mark_dirty()
        return len(doomed)

    def _mark_dirty(self) -> None:
        self._dirty = True
        self._invalidate()

    def _invalidate(self) -> None:
        self._matrix_cache = None

    def _embedding_matrix(self) -> Tuple[List[str], np.ndarray]:
        if self._matrix_cache is None:
            ids = []
            rows = []
            width = None
            for record_id, record in self._records.items():
                embedding = record.get("embedding")
                if not embedding:
                    continue
                if width is None:
                    width = len(embedding)
                elif len(embedding) != width:
                    continue
                ids.append(record_id)
                rows.append(embedding)
            matrix = np.asarray(rows, dtype=np.float64) if rows else np.empty((0, 0))
            self._matrix_cache = (ids, matrix)
        return self._matrix_cache

    async def search(self, query_embedding: List[float], k: int = 5) -> List[Dict[str, Any]]:
        """Top-k chunks by cosine similarity to the query vector."""
        ids, matrix = self._embedding_matrix()
        if not ids or k <= 0:
            return []

        query = np.asarray(query_embedding, dtype=np.float64)
        if query.shape[0] != matrix.shape[1]:
            raise DimensionMismatchError(matrix.shape[1], query.shape[0])

        scores = _cosine_scores(matrix, query)
        results = []
        for index in _rank_descending(scores)[:k]:
            record = self._records[ids[index]]
            similarity = float(scores[index])
            results.append(
                {
                    "content": record["content"],
                    "metadata": dict(record["metadata"]),
                    "similarity": 0.0 if math.isnan(similarity) else similarity,
                }
            )
        return results

    async def search_by_keyword(self, keywords: List[str], k: int = 5) -> List[Dict[str, Any]]:
        return _rank_keyword_matches(keywords, self._records.values(), k)

    async def delete_by_file_path(self, file_path: str) -> int:
        return self._remove_path(file_path)

    async def clear(self) -> None:
        if self._records:
            self._records = {}
            self._mark_dirty()

    async def count(self) -> int:
        return len(self._records)

    async def indexed_files(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for record in self._records.values():
            path = record["metadata"].get("filePath", "")
            counts[path] = counts.get(path, 0) + 1
        return counts

    def records(self) -> List[Dict[str, Any]]:
        return list(self._records.values())

    async def save(self, force: bool = False) -> None:
        """Persist the store, coalescing calls inside the debounce window."""
        if force:
            self._cancel_pending_save()
            await self._flush()
            return

        if self._save_handle is None:
            loop = asyncio.get_running_loop()
            self._save_handle = loop.call_later(self.debounce_seconds, self._start_flush)

    def _cancel_pending_save(self) -> None:
        if self._save_handle is not None:
            self._save_handle.cancel()
            self._save_handle = None

    def _start_flush(self) -> None:
        self._save_handle = None
        task = asyncio.ensure_future(self._flush())
        self._flush_tasks.add(task)
        task.add_done_callback(self._flush_done)

    def _flush_done(self, task: "asyncio.Future[None]") -> None:
        self._flush_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log_error("Failed to save vector store snapshot", task.exception())

    async def _flush(self) -> None:
        async with self._save_lock:
            if not self._dirty and self.snapshot_path.exists():
                return
            payload = json.dumps(
                [[record_id, record] for record_id, record in self._records.items()],
                ensure_ascii=False,
            )
            self._dirty = False
            try:
                await asyncio.to_thread(_atomic_write, self.snapshot_path, payload)
            except OSError:
                self._dirty = True
                raise
            logger.debug("Saved %d chunks to %s", len(self._records), self.snapshot_path.name)

    async def close(self) -> None:
        """Flush pending writes."""
        self._cancel_pending_save()
        if self._flush_tasks:
            await asyncio.gather(*self._flush_tasks, return_exceptions=True)
        if self._dirty:
            await self._flush()


class ChromaVectorStore(VectorStore):
    """Store backed by a persistent ChromaDB collection."""

    def __init__(self, data_dir: Path, collection_name: str = DEFAULT_COLLECTION) -> None:
        self.db_dir = Path(data_dir) / "chroma"
        self.collection_name = collection_name
        self._client = None
        self._collection = None

    @property
    def client(self):
        """Lazy-load ChromaDB client."""
        if self._client is None:
            import chromadb

            self._client = chromadb.PersistentClient(path=str(self.db_dir))
        return self._client

    def _open_collection(self):
        return self.client.get_or_create_collection(
            name=self.collection_name,
            metadata={"hnsw:space": "cosine", "description": "DocSage document chunks"},
        )

    @property
    def collection(self):
        if self._collection is None:
            self._collection = self._open_collection()
        return self._collection

    async def initialize(self) -> None:
        await asyncio.to_thread(lambda: self.collection)

    async def dimension(self, exclude_path: Optional[str] = None) -> Optional[int]:
        def peek():
            where = {"filePath": {"$ne": exclude_path}} if exclude_path else None
            data = self.collection.get(where=where, limit=1, include=["embeddings"])
            embeddings = data.get("embeddings")
            if embeddings is None or len(embeddings) == 0:
                return None
            return len(embeddings[0])

        return await asyncio.to_thread(peek)

    @staticmethod
    def _clean_metadata(metadata: Dict[str, Any]) -> Dict[str, Any]:
        return {
            key: value
            for key, value in metadata.items()
            if isinstance(value, (str, int, float, bool))
        }

    def _add(self, records: List[Dict[str, Any]]) -> None:
        if not records:
            return
        self.collection.add(
            ids=[record["id"] for record in records],
            embeddings=[record["embedding"] for record in records],
            documents=[record["content"] for record in records],
            metadatas=[self._clean_metadata(record["metadata"]) for record in records],
        )

    def _delete_path(self, file_path: str) -> int:
        existing = self.collection.get(where={"filePath": file_path}, include=[])
        ids = existing.get("ids") or []
        batch_size = 500
        for start in range(0, len(ids), batch_size):
            self.collection.delete(ids=ids[start : start + batch_size])
        return len(ids)

    async def _insert(self, records: List[Dict[str, Any]]) -> None:
        await asyncio.to_thread(self._add, records)

    async def _swap(self, file_path: str, records: List[Dict[str, Any]]) -> int:
        def swap():
            removed = self._delete_path(file_path)
            self._add(records)
            return removed

        return await asyncio.to_thread(swap)

    async def search(self, query_embedding: List[float], k: int = 5) -> List[Dict[str, Any]]:
        total = await self.count()
        if total == 0 or k <= 0:
            return []
        expected = await self.dimension()
        if expected is not None and expected != len(query_embedding):
            raise DimensionMismatchError(expected, len(query_embedding))

        data = await asyncio.to_thread(
            self.collection.query,
            query_embeddings=[list(query_embedding)],
            n_results=min(k, total),
            include=["documents", "metadatas", "distances"],
        )
        results = []
        for content, metadata, distance in zip(
            data["documents"][0], data["metadatas"][0], data["distances"][0]
        ):
            results.append(
                {
                    "content": content,
                    "metadata": dict(metadata or {}),
                    "similarity": 1.0 - float(distance),
                }
            )
        return results

    def _all_records(self) -> List[Dict[str, Any]]:
        data = self.collection.get(include=["documents", "metadatas"])
        return [
            {"id": record_id, "content": content or "", "metadata": dict(metadata or {})}
            for record_id, content, metadata in zip(
                data["ids"], data["documents"], data["metadatas"]
            )
        ]

    async def search_by_keyword(self, keywords: List[str], k: int = 5) -> List[Dict[str, Any]]:
        if not _normalize_keywords(keywords):
            return []
        records = await asyncio.to_thread(self._all_records)
        return _rank_keyword_matches(keywords, records, k)

    async def delete_by_file_path(self, file_path: str) -> int:
        return await asyncio.to_thread(self._delete_path, file_path)

    async def clear(self) -> None:
        def reset():
            self._open_collection()
            self.client.delete_collection(self.collection_name)
            self._collection = self._open_collection()

        await asyncio.to_thread(reset)

    async def count(self) -> int:
        return await asyncio.to_thread(self.collection.count)

    async def indexed_files(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for record in await asyncio.to_thread(self._all_records):
            path = record["metadata"].get("filePath", "")
            counts[path] = counts.get(path, 0) + 1
        return counts

    async def save(self, force: bool = False) -> None:
        """Chroma persists on every write."""

    async def close(self) -> None:
        self._collection = None


def create_vector_store(config: Dict[str, Any]) -> VectorStore:
    settings = config["vector_store"]
    data_dir = Path(config["data_dir"]).expanduser().resolve()
    backend = settings.get("backend", "memory")
    if backend == "memory":
        return InMemoryVectorStore(
            data_dir,
            snapshot_file=settings.get("snapshot_file", SNAPSHOT_FILENAME),
            debounce_seconds=settings.get("save_debounce_seconds", SAVE_DEBOUNCE_SECONDS),
        )
    if backend == "chroma":
        return ChromaVectorStore(data_dir, settings.get("collection", DEFAULT_COLLECTION))
    raise ValueError(f"Unknown vector store backend: {backend}")


async def with_retries(
    operation: Callable[[], Awaitable[Any]],
    *,
    attempts: int = PROVIDER_RETRIES,
    backoff: float = PROVIDER_BACKOFF_SECONDS,
    description: str = "provider call",
) -> Any:
    """Run ``operation`` retrying retryable provider errors with fixed backoff.

    ``attempts`` counts every call, the first one included; values below 1
    still make one call.
    """
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except ProviderError as error:
            if not error.retryable or attempt >= attempts:
                raise
            log_warning(f"{description} failed (attempt {attempt}/{attempts}), retrying", error)
            await asyncio.sleep(backoff)


def _http_error(provider: str, endpoint: str, error: httpx.HTTPError, timeout: float) -> ProviderError:
    if isinstance(error, httpx.ConnectError):
        return ProviderUnavailableError(provider, endpoint)
    if isinstance(error, httpx.TimeoutException):
        return ProviderError(f"{provider} request timed out after {timeout:.0f}s")
    return ProviderError(f"{provider} request failed: {sanitize_error_message(str(error))}")


def _status_error(provider: str, status_code: int, body: str = "") -> ProviderError:
    retryable = status_code >= 500 or status_code == 429
    detail = f": {body[:200]}" if body else ""
    return ProviderError(f"{provider} returned HTTP {status_code}{detail}", retryable=retryable)


class EmbeddingsProvider:
    """Maps text to a fixed-length vector."""

    name = "base"

    def __init__(self, model: str, *, retries: int = PROVIDER_RETRIES, backoff: float = PROVIDER_BACKOFF_SECONDS) -> None:
        self.model = model
        self.retries = retries
        self.backoff = backoff

    async def embed_one(self, text: str) -> List[float]:
        return await with_retries(
            lambda: self._embed(text),
            attempts=self.retries,
            backoff=self.backoff,
            description=f"{self.name} embedding",
        )

    async def embed_many(
        self, texts: List[str], on_progress: Optional[Callable[[int, int], None]] = None
    ) -> List[List[float]]:
        """Embed texts in order, reporting ``(done, total)`` after each one."""
        vectors = []
        for done, text in enumerate(texts, 1):
            vectors.append(await self.embed_one(text))
            if on_progress is not None:
                on_progress(done, len(texts))
        return vectors

    async def _embed(self, text: str) -> List[float]:
        raise NotImplementedError

    async def aclose(self) -> None:
        pass


class SentenceTransformerEmbeddings(EmbeddingsProvider):
    """Local sentence-transformers model, loaded on first use."""

    name = "sentence-transformers"

    def __init__(self, model: str = DEFAULT_EMBEDDING_MODEL, **kwargs: Any) -> None:
        super().__init__(model, **kwargs)
        self._model = None

    @classmethod
    def from_config(cls, settings: Dict[str, Any]) -> "SentenceTransformerEmbeddings":
        return cls(settings.get("model") or DEFAULT_EMBEDDING_MODEL, retries=1)

    @property
    def embedding_model(self):
        """Lazy-load embedding model."""
        if self._model is None:
            from sentence_transformers import SentenceTransformer

            logger.info("Loading embedding model (%s)...", self.model)
            try:
                self._model = SentenceTransformer(self.model)
            except OSError as error:
                raise ProviderUnavailableError(self.name, self.model) from error
        return self._model

    def _encode(self, texts: List[str]) -> List[List[float]]:
        vectors = self.embedding_model.encode(texts, show_progress_bar=False)
        return [[float(value) for value in vector] for vector in vectors]

    async def _embed(self, text: str) -> List[float]:
        return (await asyncio.to_thread(self._encode, [text]))[0]

    async def embed_many(
        self, texts: List[str], on_progress: Optional[Callable[[int, int], None]] = None
    ) -> List[List[float]]:
        if not texts:
            return []
        vectors = await asyncio.to_thread(self._encode, list(texts))
        if on_progress is not None:
            on_progress(len(texts), len(texts))
        return vectors


class OllamaEmbeddings(EmbeddingsProvider):
    """Embeddings from a local Ollama server (``POST /api/embeddings``)."""

    name = "ollama"

    def __init__(
        self,
        model: str = DEFAULT_OLLAMA_EMBEDDING_MODEL,
        base_url: str = DEFAULT_OLLAMA_URL,
        timeout: float = EMBED_TIMEOUT_SECONDS,
        client: Optional[httpx.AsyncClient] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(model, **kwargs)
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    @classmethod
    def from_config(cls, settings: Dict[str, Any]) -> "OllamaEmbeddings":
        model = settings.get("model")
        if not model or model == DEFAULT_EMBEDDING_MODEL:
            model = DEFAULT_OLLAMA_EMBEDDING_MODEL
        return cls(
            model,
            base_url=settings.get("ollama_url") or DEFAULT_OLLAMA_URL,
            timeout=settings.get("timeout", EMBED_TIMEOUT_SECONDS),
            retries=settings.get("retries", PROVIDER_RETRIES),
            backoff=settings.get("backoff", PROVIDER_BACKOFF_SECONDS),
        )

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout))
        return self._client

    async def _embed(self, text: str) -> List[float]:
        try:
            response = await self.client.post(
                f"{self.base_url}/api/embeddings",
                json={"model": self.model, "prompt": text},
            )
        except httpx.HTTPError as error:
            raise _http_error(self.name, self.base_url, error, self.timeout) from error

        if response.status_code >= 400:
            raise _status_error(self.name, response.status_code, response.text)
        embedding = response.json().get("embedding")
        if not embedding:
            raise ProviderError(f"{self.name} returned an empty embedding", retryable=False)
        return [float(value) for value in embedding]

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class OpenAIEmbeddings(EmbeddingsProvider):
    """Embeddings from any OpenAI-compatible endpoint."""

    name = "openai"

    def __init__(
        self,
        model: str = DEFAULT_OPENAI_EMBEDDING_MODEL,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = EMBED_TIMEOUT_SECONDS,
        **kwargs: Any,
    ) -> None:
        super().__init__(model, **kwargs)
        self.api_key = api_key
        self.base_url = base_url
        self.timeout = timeout
        self._client = None

    @classmethod
    def from_config(cls, settings: Dict[str, Any]) -> "OpenAIEmbeddings":
        model = settings.get("model")
        if not model or model == DEFAULT_EMBEDDING_MODEL:
            model = DEFAULT_OPENAI_EMBEDDING_MODEL
        return cls(
            model,
            api_key=settings.get("api_key"),
            base_url=settings.get("openai_base_url"),
            timeout=settings.get("timeout", EMBED_TIMEOUT_SECONDS),
            retries=settings.get("retries", PROVIDER_RETRIES),
            backoff=settings.get("backoff", PROVIDER_BACKOFF_SECONDS),
        )

    @property
    def endpoint(self) -> str:
        return self.base_url or DEFAULT_OPENAI_URL

    @property
    def client(self):
        if self._client is None:
            from openai import AsyncOpenAI

            self._client = AsyncOpenAI(
                api_key=self.api_key,
                base_url=self.base_url,
                timeout=self.timeout,
                max_retries=0,
            )
        return self._client

    async def _embed(self, text: str) -> List[float]:
        import openai

        try:
            response = await self.client.embeddings.create(model=self.model, input=text)
        except openai.APITimeoutError as error:
            raise ProviderError(f"{self.name} request timed out after {self.timeout:.0f}s") from error
        except openai.APIConnectionError as error:
            raise ProviderUnavailableError(self.name, self.endpoint) from error
        except openai.APIStatusError as error:
            raise _status_error(self.name, error.status_code, error.message) from error
        return [float(value) for value in response.data[0].embedding]

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None


class LLMProvider:
    """Maps a prompt to a completion, whole or as streamed fragments."""

    name = "base"

    def __init__(
        self,
        model: str,
        *,
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        timeout: float = LLM_TIMEOUT_SECONDS,
        retries: int = PROVIDER_RETRIES,
        backoff: float = PROVIDER_BACKOFF_SECONDS,
    ) -> None:
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout
        self.retries = retries
        self.backoff = backoff

    def _options(self, options: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        merged = {"temperature": self.temperature, "max_tokens": self.max_tokens}
        merged.update({key: value for key, value in (options or {}).items() if value is not None})
        return merged

    async def complete(self, prompt: str, options: Optional[Dict[str, Any]] = None) -> str:
        return await with_retries(
            lambda: self._complete(prompt, self._options(options)),
            attempts=self.retries,
            backoff=self.backoff,
            description=f"{self.name} completion",
        )

    async def stream_complete(
        self, prompt: str, options: Optional[Dict[str, Any]] = None
    ) -> AsyncIterator[str]:
        """Yield text fragments; retries only happen before the first one."""
        settings = self._options(options)
        attempts = max(1, self.retries)
        for attempt in range(1, attempts + 1):
            emitted = False
            try:
                async for fragment in self._stream(prompt, settings):
                    emitted = True
                    yield fragment
                return
            except ProviderError as error:
                if emitted or not error.retryable or attempt >= attempts:
                    raise
                log_warning(
                    f"{self.name} stream failed (attempt {attempt}/{attempts}), retrying", error
                )
                await asyncio.sleep(self.backoff)

    async def _complete(self, prompt: str, options: Dict[str, Any]) -> str:
        raise NotImplementedError

    def _stream(self, prompt: str, options: Dict[str, Any]) -> AsyncIterator[str]:
        raise NotImplementedError

    async def aclose(self) -> None:
        pass


class OllamaLLM(LLMProvider):
    """Generation through Ollama's ``/api/generate``."""

    name = "ollama"

    def __init__(
        self,
        model: str = DEFAULT_LLM_MODEL,
        base_url: str = DEFAULT_OLLAMA_URL,
        client: Optional[httpx.AsyncClient] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(model, **kwargs)
        self.base_url = base_url.rstrip("/")
        self._client = client

    @classmethod
    def from_config(cls, settings: Dict[str, Any]) -> "OllamaLLM":
        return cls(
            settings.get("model") or DEFAULT_LLM_MODEL,
            base_url=settings.get("ollama_url") or DEFAULT_OLLAMA_URL,
            **_llm_kwargs(settings),
        )

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout))
        return self._client

    def _payload(self, prompt: str, options: Dict[str, Any], stream: bool) -> Dict[str, Any]:
        return {
            "model": self.model,
            "prompt": prompt,
            "stream": stream,
            "options": {
                "temperature": options["temperature"],
                "num_predict": options["max_tokens"],
            },
        }

    async def _complete(self, prompt: str, options: Dict[str, Any]) -> str:
        try:
            response = await self.client.post(
                f"{self.base_url}/api/generate", json=self._payload(prompt, options, False)
            )
        except httpx.HTTPError as error:
            raise _http_error(self.name, self.base_url, error, self.timeout) from error
        if response.status_code >= 400:
            raise _status_error(self.name, response.status_code, response.text)
        return response.json().get("response", "")

    async def _stream(self, prompt: str, options: Dict[str, Any]) -> AsyncIterator[str]:
        try:
            async with self.client.stream(
                "POST", f"{self.base_url}/api/generate", json=self._payload(prompt, options, True)
            ) as response:
                if response.status_code >= 400:
                    body = (await response.aread()).decode("utf-8", "replace")
                    raise _status_error(self.name, response.status_code, body)
                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    data = json.loads(line)
                    if data.get("error"):
                        raise ProviderError(f"{self.name}: {data['error']}", retryable=False)
                    if data.get("response"):
                        yield data["response"]
                    if data.get("done"):
                        break
        except httpx.HTTPError as error:
            raise _http_error(self.name, self.base_url, error, self.timeout) from error

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class OpenAILLM(LLMProvider):
    """Chat completions from any OpenAI-compatible endpoint."""

    name = "openai"

    def __init__(
        self,
        model: str = "gpt-4o-mini",
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(model, **kwargs)
        self.api_key = api_key
        self.base_url = base_url
        self._client = None

    @classmethod
    def from_config(cls, settings: Dict[str, Any]) -> "OpenAILLM":
        model = settings.get("model")
        if not model or model == DEFAULT_LLM_MODEL:
            model = "gpt-4o-mini"
        return cls(
            model,
            api_key=settings.get("api_key"),
            base_url=settings.get("openai_base_url"),
            **_llm_kwargs(settings),
        )

    @property
    def endpoint(self) -> str:
        return self.base_url or DEFAULT_OPENAI_URL

    @property
    def client(self):
        if self._client is None:
            from openai import AsyncOpenAI

            self._client = AsyncOpenAI(
                api_key=self.api_key,
                base_url=self.base_url,
                timeout=self.timeout,
                max_retries=0,
            )
        return self._client

    def _request(self, prompt: str, options: Dict[str, Any], stream: bool) -> Dict[str, Any]:
        return {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": options["temperature"],
            "max_tokens": options["max_tokens"],
            "stream": stream,
        }

    def _translate(self, error: Exception) -> ProviderError:
        import openai

        if isinstance(error, openai.APITimeoutError):
            return ProviderError(f"{self.name} request timed out after {self.timeout:.0f}s")
        if isinstance(error, openai.APIConnectionError):
            return ProviderUnavailableError(self.name, self.endpoint)
        if isinstance(error, openai.APIStatusError):
            return _status_error(self.name, error.status_code, error.message)
        return ProviderError(f"{self.name} request failed: {sanitize_error_message(str(error))}")

    async def _complete(self, prompt: str, options: Dict[str, Any]) -> str:
        import openai

        try:
            response = await self.client.chat.completions.create(**self._request(prompt, options, False))
        except openai.OpenAIError as error:
            raise self._translate(error) from error
        return response.choices[0].message.content or ""

    async def _stream(self, prompt: str, options: Dict[str, Any]) -> AsyncIterator[str]:
        import openai

        try:
            stream = await self.client.chat.completions.create(**self._request(prompt, options, True))
            async for event in stream:
                if not event.choices:
                    continue
                text = event.choices[0].delta.content
                if text:
                    yield text
        except openai.OpenAIError as error:
            raise self._translate(error) from error

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None


def _llm_kwargs(settings: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "temperature": settings.get("temperature", DEFAULT_TEMPERATURE),
        "max_tokens": settings.get("max_tokens", DEFAULT_MAX_TOKENS),
        "timeout": settings.get("timeout", LLM_TIMEOUT_SECONDS),
        "retries": settings.get("retries", PROVIDER_RETRIES),
        "backoff": settings.get("backoff", PROVIDER_BACKOFF_SECONDS),
    }


class EmbeddingsFactory:
    """Factory for creating embedding providers."""

    _providers = {
        "sentence-transformers": SentenceTransformerEmbeddings,
        "ollama": OllamaEmbeddings,
        "openai": OpenAIEmbeddings,
    }

    @classmethod
    def create(cls, config: Dict[str, Any]) -> EmbeddingsProvider:
        settings = config["embeddings"]
        provider_class = cls._providers.get(settings.get("provider"))
        if provider_class is None:
            raise ValueError(f"Unknown embeddings provider: {settings.get('provider')}")
        return provider_class.from_config(settings)


class LLMFactory:
    """Factory for creating LLM providers."""

    _providers = {
        "ollama": OllamaLLM,
        "openai": OpenAILLM,
    }

    @classmethod
    def create(cls, config: Dict[str, Any]) -> LLMProvider:
        settings = config["llm"]
        provider_class = cls._providers.get(settings.get("provider"))
        if provider_class is None:
            raise ValueError(f"Unknown LLM provider: {settings.get('provider')}")
        return provider_class.from_config(settings)


class DocumentParser:
    """Extracts plain text from supported file formats."""

    def __init__(self, max_file_size_mb: float = MAX_FILE_SIZE_MB) -> None:
        self.max_file_size_mb = max_file_size_mb

        # File type handlers (Strategy pattern)
        self._file_handlers = {
            ".txt": self._extract_txt_content,
            ".md": self._extract_txt_content,
            ".xml": self._extract_txt_content,
            ".csv": self._extract_txt_content,
            ".json": self._extract_json_content,
            ".pdf": self._extract_pdf_content,
            ".docx": self._extract_docx_content,
            ".xlsx": self._extract_xlsx_content,
            ".pptx": self._extract_pptx_content,
        }

    @property
    def supported_extensions(self) -> List[str]:
        return list(self._file_handlers)

    def supports(self, file_path: Path) -> bool:
        return file_path.suffix.lower() in self._file_handlers

    def parse(self, file_path: Path) -> str:
        """Return the text of ``file_path``; empty text is a valid result."""
        file_path = Path(file_path)
        handler = self._file_handlers.get(file_path.suffix.lower())
        if handler is None:
            raise UnsupportedFormatError(file_path.name)

        try:
            file_size = file_path.stat().st_size
        except OSError as error:
            raise ParseError(file_path.name, error) from error
        if file_size > self.max_file_size_mb * 1024 * 1024:
            log_warning(f"Skipping large file (>{self.max_file_size_mb}MB): {file_path.name}")
            return ""

        try:
            result = handler(file_path)
        except DocSageError:
            raise
        except Exception as error:
            raise ParseError(file_path.name, error) from error
        return result.strip() if result else ""

    def _extract_txt_content(self, file_path: Path) -> str:
        """Extract content from plain text file with encoding fallback."""
        try:
            with open(file_path, "r", encoding="utf-8") as file:
                return file.read()
        except UnicodeDecodeError:
            with open(file_path, "r", encoding="latin-1") as file:
                return file.read()

    def _extract_json_content(self, file_path: Path) -> str:
        with open(file_path, "r", encoding="utf-8") as file:
            data = json.load(file)
        return "\n".join(_flatten_json(data))

    def _extract_pdf_content(self, file_path: Path) -> str:
        """Extract content from PDF file."""
        import PyPDF2

        with open(file_path, "rb") as file:
            reader = PyPDF2.PdfReader(file)
            text_parts = []
            for page in reader.pages:
                page_text = page.extract_text() or ""
                if page_text.strip():
                    text_parts.append(page_text)
            return "\n".join(text_parts)

    def _extract_docx_content(self, file_path: Path) -> str:
        """Extract content from Word document."""
        from docx import Document

        doc = Document(str(file_path))
        text_parts = []

        for paragraph in doc.paragraphs:
            if paragraph.text.strip():
                text_parts.append(paragraph.text.strip())

        for table in doc.tables:
            for row in table.rows:
                row_text = [cell.text.strip() for cell in row.cells if cell.text.strip()]
                if row_text:
                    text_parts.append(" | ".join(row_text))

        return "\n\n".join(text_parts)

    def _extract_xlsx_content(self, file_path: Path) -> str:
        """Extract every non-empty row, sheet by sheet."""
        from openpyxl import load_workbook

        workbook = load_workbook(str(file_path), read_only=True, data_only=True)
        try:
            sections = []
            for sheet in workbook.worksheets:
                rows = []
                for row in sheet.iter_rows(values_only=True):
                    cells = [str(value).strip() for value in row if value is not None and str(value).strip()]
                    if cells:
                        rows.append(" | ".join(cells))
                if rows:
                    sections.append(f"[Sheet: {sheet.title}]\n" + "\n".join(rows))
            return "\n\n".join(sections)
        finally:
            workbook.close()

    def _extract_pptx_content(self, file_path: Path) -> str:
        from pptx import Presentation

        presentation = Presentation(str(file_path))
        slides = []
        for number, slide in enumerate(presentation.slides, 1):
            texts = [
                shape.text_frame.text.strip()
                for shape in slide.shapes
                if shape.has_text_frame and shape.text_frame.text.strip()
            ]
            if texts:
                slides.append(f"[Slide {number}]\n" + "\n".join(texts))
        return "\n\n".join(slides)


def _flatten_json(value: Any, indent: int = 0) -> List[str]:
    """Render parsed JSON as indented ``key: value`` lines."""
    pad = "  " * indent
    if isinstance(value, dict):
        lines = []
        for key, item in value.items():
            if isinstance(item, (dict, list)):
                lines.append(f"{pad}{key}:")
                lines.extend(_flatten_json(item, indent + 1))
            else:
                lines.append(f"{pad}{key}: {item}")
        return lines
    if isinstance(value, list):
        lines = []
        for item in value:
            if isinstance(item, (dict, list)):
                lines.append(f"{pad}-")
                lines.extend(_flatten_json(item, indent + 1))
            else:
                lines.append(f"{pad}- {item}")
        return lines
    return [f"{pad}{value}"]


class EventBus:
    """Best-effort, timestamped notifications for UI listeners.

    Delivery never blocks the emitter: coroutine subscribers are scheduled as
    tasks and failures are logged.
    """

    def __init__(self) -> None:
        self._subscribers: List[Callable[[Dict[str, Any]], Any]] = []
        self._pending: set = set()

    def subscribe(self, callback: Callable[[Dict[str, Any]], Any]) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def emit(self, event_type: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        event = {"type": event_type, "data": data or {}, "timestamp": utc_now()}
        for callback in list(self._subscribers):
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._pending.add(task)
                    task.add_done_callback(self._delivered)
            except Exception as error:
                log_warning(f"Event subscriber failed for {event_type}", error)
        return event

    def _delivered(self, task: "asyncio.Future[Any]") -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log_warning("Event subscriber failed", task.exception())


class IndexingOrchestrator:
    """Drives parse, chunk, embed and insert for whole folders or single files.

    One run at a time. ``pause``/``resume`` nest, so several concurrent chat
    requests can each hold indexing back; the run only continues once every
    one of them has resumed. ``stop`` ends a run between files.
    """

    def __init__(
        self,
        store: VectorStore,
        embeddings: EmbeddingsProvider,
        parser: DocumentParser,
        chunker: TextChunker,
        events: Optional[EventBus] = None,
        settings: Optional[Dict[str, Any]] = None,
        exclude_dirs: Optional[List[Any]] = None,
    ) -> None:
        settings = settings or {}
        self.store = store
        self.embeddings = embeddings
        self.parser = parser
        self.chunker = chunker
        self.events = events or EventBus()
        self.max_files = settings.get("max_files", MAX_FILES_PER_SCAN)
        self.file_pause_poll = settings.get("file_pause_poll_seconds", FILE_PAUSE_POLL_SECONDS)
        self.chunk_pause_poll = settings.get("chunk_pause_poll_seconds", CHUNK_PAUSE_POLL_SECONDS)
        self.small_run_yield = settings.get("small_run_yield_seconds", SMALL_RUN_YIELD_SECONDS)
        self.large_run_yield = settings.get("large_run_yield_seconds", LARGE_RUN_YIELD_SECONDS)
        self.large_run_threshold = settings.get("large_run_threshold", LARGE_RUN_THRESHOLD)
        self.excluded_dirs = {Path(path).expanduser().resolve() for path in exclude_dirs or []}

        self._status = "idle"
        self._current = 0
        self._total = 0
        self._current_file: Optional[str] = None
        self._errors: List[Dict[str, str]] = []
        self._pause_depth = 0
        self._stop_requested = False
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._status == "indexing"

    @property
    def is_paused(self) -> bool:
        return self._pause_depth > 0

    def pause(self) -> None:
        self._pause_depth += 1

    def resume(self) -> None:
        self._pause_depth = max(0, self._pause_depth - 1)

    def stop(self) -> None:
        """Ask the active run to finish its current file and exit."""
        if self.is_running:
            self._stop_requested = True

    def get_status(self) -> Dict[str, Any]:
        return {
            "status": self._status,
            "progress": {"current": self._current, "total": self._total},
            "currentFile": self._current_file,
            "errors": list(self._errors),
            "paused": self.is_paused,
        }

    def start(self, folders: List[str]) -> Dict[str, Any]:
        """Launch a background run unless one is already active."""
        if self.is_running:
            return {
                "started": False,
                "message": "Indexing already in progress",
                **self.get_status(),
            }
        self._begin()
        self._task = asyncio.ensure_future(self._run(list(folders)))
        return {"started": True, "message": "Indexing started", **self.get_status()}

    async def wait(self) -> Dict[str, Any]:
        if self._task is not None:
            await self._task
        return self.get_status()

    async def index_folders(self, folders: List[str]) -> Dict[str, Any]:
        if self.is_running:
            log_warning("Indexing already in progress; ignoring new request")
            return self.get_status()
        self._begin()
        return await self._run(list(folders))

    def _begin(self) -> None:
        self._status = "indexing"
        self._stop_requested = False
        self._current = 0
        self._total = 0
        self._errors = []

    async def _run(self, folders: List[str]) -> Dict[str, Any]:
        started = time.time()
        try:
            files = await asyncio.to_thread(self.discover_files, folders)
            self._total = len(files)
            pause_between = (
                self.small_run_yield
                if self._total <= self.large_run_threshold
                else self.large_run_yield
            )
            logger.info("Indexing %d files from %d folder(s)", self._total, len(folders))

            for file_path in files:
                if self._stop_requested:
                    break
                await self._wait_while_paused(self.file_pause_poll)
                if self._stop_requested:
                    break

                self._current_file = str(file_path)
                try:
                    await self.index_file(file_path, persist=False)
                except ProviderUnavailableError:
                    raise
                except Exception as error:
                    handle_file_error(file_path, "index", error)
                    self._errors.append(
                        {"filePath": str(file_path), "error": sanitize_error_message(str(error))}
                    )

                self._current += 1
                self.events.emit(
                    "index_progress",
                    {
                        "current": self._current,
                        "total": self._total,
                        "filePath": str(file_path),
                        "fileName": file_path.name,
                    },
                )
                await asyncio.sleep(pause_between)

            await self.store.save(force=True)
            stopped = self._stop_requested
            self._status = "idle"
            self.events.emit(
                "index_complete",
                {
                    "indexed": self._current,
                    "total": self._total,
                    "errors": len(self._errors),
                    "stopped": stopped,
                    "elapsed": round(time.time() - started, 2),
                },
            )
        except Exception as error:
            self._status = "error"
            log_error("Indexing run failed", error)
            self.events.emit("error", {"message": sanitize_error_message(str(error))})
        finally:
            self._current_file = None
            self._stop_requested = False
        return self.get_status()

    async def _wait_while_paused(self, poll_seconds: float) -> None:
        while self._pause_depth > 0 and not self._stop_requested:
            await asyncio.sleep(poll_seconds)

    async def _chunk_yield(self) -> None:
        await asyncio.sleep(0)
        await self._wait_while_paused(self.chunk_pause_poll)

    async def index_file(self, file_path: Any, persist: bool = True) -> int:
        """Index one file, replacing any chunks it already has.

        A file that no longer exists is skipped silently. Unsupported formats
        and parse failures propagate to the caller.
        """
        path = Path(file_path).expanduser().resolve()
        if not path.is_file():
            logger.debug("Skipping missing file %s", path.name)
            return 0

        text = await asyncio.to_thread(self.parser.parse, path)
        base_metadata = {
            "filePath": str(path),
            "fileName": path.name,
            "fileType": path.suffix.lower().lstrip("."),
            "indexedAt": utc_now(),
        }
        chunks = self.chunker.chunk(text, base_metadata)
        stored = await self.store.replace_documents(
            str(path),
            chunks,
            self.embeddings.embed_one,
            should_persist=persist,
            cooperative_yield=self._chunk_yield,
        )
        logger.debug("Indexed %s: %d/%d chunks", path.name, stored, len(chunks))
        return stored

    async def reindex_file(self, file_path: Any) -> int:
        return await self.index_file(file_path, persist=True)

    def is_excluded(self, path: Path) -> bool:
        return any(path == excluded or excluded in path.parents for excluded in self.excluded_dirs)

    async def remove_file(self, file_path: Any) -> int:
        path = str(Path(file_path).expanduser().resolve())
        removed = await self.store.delete_by_file_path(path)
        if removed:
            await self.store.save()
        return removed

    def discover_files(self, folders: List[str]) -> List[Path]:
        """Supported files under ``folders``, skipping hidden, ignored and excluded directories."""
        files: List[Path] = []
        seen = set()
        for folder in folders:
            root = Path(folder).expanduser().resolve()
            if not root.is_dir():
                log_warning(f"Folder not found, skipping: {root}")
                continue

            for dirpath, dirnames, filenames in os.walk(root):
                dirnames[:] = sorted(
                    name for name in dirnames
                    if not name.startswith(".")
                    and name not in IGNORED_DIRS
                    and not self.is_excluded(Path(dirpath) / name)
                )
                for name in sorted(filenames):
                    path = Path(dirpath) / name
                    if name.startswith(".") or path in seen or not self.parser.supports(path):
                        continue
                    seen.add(path)
                    files.append(path)
                    if len(files) >= self.max_files:
                        log_warning(f"File limit reached ({self.max_files}); remaining files skipped")
                        return files
        return files


class _FolderEventHandler(FileSystemEventHandler):
    """Forwards watchdog callbacks (observer thread) to a FolderWatcher."""

    def __init__(self, watcher: "FolderWatcher") -> None:
        super().__init__()
        self.watcher = watcher

    def on_created(self, event) -> None:
        if not event.is_directory:
            self.watcher.notify(event.src_path, "added")

    def on_modified(self, event) -> None:
        if not event.is_directory:
            self.watcher.notify(event.src_path, "modified")

    def on_deleted(self, event) -> None:
        if not event.is_directory:
            self.watcher.notify(event.src_path, "deleted")

    def on_moved(self, event) -> None:
        if not event.is_directory:
            self.watcher.notify(event.src_path, "deleted")
            self.watcher.notify(event.dest_path, "added")


class FolderWatcher:
    """Keeps the index in sync with file changes under the watched folders."""

    def __init__(
        self,
        indexer: IndexingOrchestrator,
        events: EventBus,
        debounce_seconds: float = WATCH_DEBOUNCE_SECONDS,
    ) -> None:
        self.indexer = indexer
        self.events = events
        self.debounce_seconds = debounce_seconds
        self._roots: List[Path] = []
        self._observer = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._pending: Dict[str, asyncio.TimerHandle] = {}
        self._tasks: set = set()

    @property
    def is_running(self) -> bool:
        return self._observer is not None

    def start(self, folders: List[str]) -> None:
        self._loop = asyncio.get_running_loop()
        observer = Observer()
        handler = _FolderEventHandler(self)
        for folder in folders:
            root = Path(folder).expanduser().resolve()
            if not root.is_dir():
                log_warning(f"Cannot watch missing folder: {root}")
                continue
            observer.schedule(handler, str(root), recursive=True)
            self._roots.append(root)
        observer.start()
        self._observer = observer
        logger.info("Watching %d folder(s) for changes", len(self._roots))

    async def stop(self) -> None:
        if self._observer is not None:
            self._observer.stop()
            await asyncio.to_thread(self._observer.join, 5)
            self._observer = None
        for handle in self._pending.values():
            handle.cancel()
        self._pending.clear()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    def should_track(self, file_path: Path) -> bool:
        if not self.indexer.parser.supports(file_path) or self.indexer.is_excluded(file_path):
            return False
        for root in self._roots:
            try:
                relative = file_path.relative_to(root)
            except ValueError:
                continue
            return not any(
                part.startswith(".") or part in IGNORED_DIRS for part in relative.parts
            )
        return False

    def notify(self, src_path: str, change: str) -> None:
        """Called from the observer thread."""
        path = Path(os.fsdecode(src_path))
        if self._loop is None or not self.should_track(path):
            return
        self._loop.call_soon_threadsafe(self._schedule, str(path), change)

    def _schedule(self, path: str, change: str) -> None:
        handle = self._pending.pop(path, None)
        if handle is not None:
            handle.cancel()
        self._pending[path] = self._loop.call_later(
            self.debounce_seconds, self._dispatch, path, change
        )

    def _dispatch(self, path: str, change: str) -> None:
        self._pending.pop(path, None)
        task = asyncio.ensure_future(self.apply(path, change))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def apply(self, path: str, change: str) -> None:
        """Reindex or drop ``path`` and announce the change."""
        try:
            if change == "deleted" or not Path(path).exists():
                change = "deleted"
                chunks = await self.indexer.remove_file(path)
            else:
                chunks = await self.indexer.reindex_file(path)
        except Exception as error:
            handle_file_error(Path(path), "reindex", error)
            self.events.emit(
                "error", {"filePath": path, "message": sanitize_error_message(str(error))}
            )
            return
        self.events.emit(
            "file_changed",
            {"filePath": path, "fileName": Path(path).name, "change": change, "chunks": chunks},
        )


class ChatHistoryStore:
    """Conversations persisted as one JSON file, newest first on read."""

    def __init__(self, path: Path, max_conversations: int = MAX_CONVERSATIONS) -> None:
        self.path = Path(path)
        self.max_conversations = max_conversations
        self._conversations: List[Dict[str, Any]] = []

    async def initialize(self) -> None:
        if not self.path.exists():
            self._conversations = []
            return
        try:
            with open(self.path, "r", encoding="utf-8") as history_file:
                data = json.load(history_file)
            if not isinstance(data, list):
                raise ValueError("history must be a list of conversations")
            self._conversations = data
        except (OSError, ValueError) as err:
            log_warning(f"Could not read chat history {self.path.name}; starting fresh", err)
            self._conversations = []

    def get_history(self) -> List[Dict[str, Any]]:
        return sorted(self._conversations, key=lambda c: c["updatedAt"], reverse=True)

    def get_conversation(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        for conversation in self._conversations:
            if conversation["id"] == conversation_id:
                return conversation
        return None

    async def add_message(
        self,
        conversation_id: Optional[str],
        role: str,
        content: str,
        sources: Optional[List[Dict[str, Any]]] = None,
    ) -> str:
        """Append a message, creating the conversation if needed; returns its id."""
        now = utc_now()
        conversation = self.get_conversation(conversation_id) if conversation_id else None
        if conversation is None:
            title = content.strip().replace("\n", " ")
            if len(title) > TITLE_LENGTH:
                title = title[:TITLE_LENGTH] + "..."
            conversation = {
                "id": conversation_id or uuid.uuid4().hex,
                "title": title or "New conversation",
                "messages": [],
                "createdAt": now,
                "updatedAt": now,
            }
            self._conversations.append(conversation)

        message = {"role": role, "content": content, "timestamp": now}
        if sources:
            message["sources"] = sources
        conversation["messages"].append(message)
        conversation["updatedAt"] = now

        if len(self._conversations) > self.max_conversations:
            self._conversations = self.get_history()[: self.max_conversations]
        await self._save()
        return conversation["id"]

    async def delete_conversation(self, conversation_id: str) -> bool:
        conversation = self.get_conversation(conversation_id)
        if conversation is None:
            return False
        self._conversations.remove(conversation)
        await self._save()
        return True

    async def clear(self) -> None:
        self._conversations = []
        await self._save()

    async def _save(self) -> None:
        payload = json.dumps(self._conversations, ensure_ascii=False, indent=2)
        await asyncio.to_thread(_atomic_write, self.path, payload)


def classify_question(question: str) -> str:
    """Return ``greeting``, ``small_talk`` or ``document``."""
    text = question.strip()
    if GREETING_PATTERN.match(text):
        return "greeting"
    if len(text) < SHORT_QUESTION_LENGTH and not DOCUMENT_HINT_PATTERN.search(text):
        return "small_talk"
    return "document"


def normalize_question(question: str) -> str:
    """Strip trailing punctuation and rewrite month expressions as ``YYYY.MM``."""
    text = TRAILING_PUNCTUATION_PATTERN.sub("", question.strip())
    text = KOREAN_YEAR_MONTH_PATTERN.sub(
        lambda m: f"{m.group(1)}.{int(m.group(2)):02d}", text
    )
    text = KOREAN_MONTH_PATTERN.sub(lambda m: f"{int(m.group(1)):02d}", text)
    text = ENGLISH_MONTH_YEAR_PATTERN.sub(
        lambda m: f"{m.group(2)}.{MONTH_NUMBERS[m.group(1)[:3].lower()]:02d}", text
    )
    return text


def extract_keywords(question: str) -> List[str]:
    """Lowercased search terms minus stop words and single characters."""
    keywords = []
    for token in KEYWORD_SPLIT_PATTERN.split(normalize_question(question).lower()):
        token = token.strip("._")
        if len(token) < 2 or token in STOP_WORDS or token in keywords:
            continue
        keywords.append(token)
    return keywords


def _result_key(result: Dict[str, Any]) -> Tuple[str, Any]:
    metadata = result["metadata"]
    return metadata.get("filePath", ""), metadata.get("chunkIndex")


def reciprocal_rank_fusion(
    keyword_results: List[Dict[str, Any]],
    vector_results: List[Dict[str, Any]],
    k: int = RRF_K,
    keyword_weight: float = KEYWORD_WEIGHT,
    vector_weight: float = VECTOR_WEIGHT,
    similarity_floor: float = VECTOR_SIMILARITY_FLOOR,
) -> List[Dict[str, Any]]:
    """Merge two ranked lists; each hit adds ``weight / (k + rank + 1)``.

    Vector hits under ``similarity_floor`` contribute nothing. Hits are keyed
    by ``(filePath, chunkIndex)`` so a chunk found by both searches collects
    both contributions.
    """
    fused: Dict[Tuple[str, Any], Dict[str, Any]] = {}

    def accumulate(results: List[Dict[str, Any]], weight: float, floor: Optional[float]) -> None:
        for rank, result in enumerate(results):
            similarity = result.get("similarity", 0.0)
            if floor is not None and not similarity >= floor:
                continue
            key = _result_key(result)
            entry = fused.get(key)
            if entry is None:
                entry = {
                    "content": result["content"],
                    "metadata": dict(result["metadata"]),
                    "similarity": similarity,
                    "score": 0.0,
                }
                fused[key] = entry
            else:
                entry["similarity"] = max(entry["similarity"], similarity)
            entry["score"] += weight / (k + rank + 1)

    accumulate(keyword_results, keyword_weight, None)
    accumulate(vector_results, vector_weight, similarity_floor)
    return sorted(fused.values(), key=lambda entry: entry["score"], reverse=True)


def diversify_results(
    results: List[Dict[str, Any]],
    max_per_file: int = MAX_CHUNKS_PER_FILE,
    top_n: int = FINAL_TOP_N,
) -> List[Dict[str, Any]]:
    """Keep ranking order but take at most ``max_per_file`` chunks per file."""
    selected = []
    per_file: Dict[str, int] = {}
    for result in results:
        path = result["metadata"].get("filePath", "")
        if per_file.get(path, 0) >= max_per_file:
            continue
        per_file[path] = per_file.get(path, 0) + 1
        selected.append(result)
        if len(selected) >= top_n:
            break
    return selected


def extract_sources(results: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """One citation per file, from the first chunk seen for it."""
    sources = []
    seen = set()
    for result in results:
        metadata = result["metadata"]
        path = metadata.get("filePath", "")
        if path in seen:
            continue
        seen.add(path)
        sources.append(
            {
                "filePath": path,
                "fileName": metadata.get("fileName") or Path(path).name,
                "chunkIndex": metadata.get("chunkIndex"),
                "relevance": round(float(result.get("similarity", 0.0)), 4),
                "score": round(float(result.get("score", result.get("similarity", 0.0))), 6),
            }
        )
    return sources


def build_context(results: List[Dict[str, Any]]) -> str:
    blocks = [
        f"[Source: {result['metadata'].get('fileName', 'unknown')}]\n{result['content']}"
        for result in results
    ]
    return "\n\n---\n\n".join(blocks)


def build_prompt(question: str, results: List[Dict[str, Any]], kind: str = "document") -> str:
    if kind == "greeting":
        return (
            f"You are {ASSISTANT_NAME}, a friendly assistant for the user's personal documents.\n"
            "The user is greeting you or thanking you. Reply briefly and warmly in the same "
            "language the user wrote in, and offer to help find information in their documents.\n\n"
            f"User: {question}\n"
            "Assistant:"
        )

    context = build_context(results)
    if not context.strip():
        return (
            f"You are {ASSISTANT_NAME}, an assistant that answers questions about the user's "
            "personal documents.\n"
            "No document related to this question was found.\n"
            "Rules:\n"
            "1. Say plainly that you could not find related documents.\n"
            "2. Only add general knowledge if you are confident it is correct, and label it as such.\n"
            "3. If you do not know, say so. Do not invent file names or facts.\n"
            "4. Answer in the same language as the question.\n\n"
            f"Question: {question}\n"
            "Answer:"
        )

    return (
        f"You are {ASSISTANT_NAME}, an assistant that answers questions using only the "
        "documents provided below.\n\n"
        "=== DOCUMENTS START ===\n"
        f"{context}\n"
        "=== DOCUMENTS END ===\n\n"
        "Rules:\n"
        "1. Answer only from the documents above. Do not add facts they do not contain.\n"
        "2. Mention the file name(s) your answer comes from.\n"
        "3. If the documents do not contain the answer, say that the information was not found.\n"
        "4. Answer in the same language as the question.\n\n"
        f"Question: {question}\n"
        "Answer:"
    )


class RagEngine:
    """Hybrid retrieval plus grounded generation."""

    def __init__(
        self,
        store: VectorStore,
        embeddings: EmbeddingsProvider,
        llm: LLMProvider,
        settings: Optional[Dict[str, Any]] = None,
    ) -> None:
        settings = settings or {}
        self.store = store
        self.embeddings = embeddings
        self.llm = llm
        self.keyword_top_k = settings.get("keyword_top_k", KEYWORD_TOP_K)
        self.vector_top_k = settings.get("vector_top_k", VECTOR_TOP_K)
        self.rrf_k = settings.get("rrf_k", RRF_K)
        self.keyword_weight = settings.get("keyword_weight", KEYWORD_WEIGHT)
        self.vector_weight = settings.get("vector_weight", VECTOR_WEIGHT)
        self.similarity_floor = settings.get("vector_similarity_floor", VECTOR_SIMILARITY_FLOOR)
        self.max_per_file = settings.get("max_chunks_per_file", MAX_CHUNKS_PER_FILE)
        self.top_n = settings.get("final_top_n", FINAL_TOP_N)

    async def retrieve(self, question: str) -> List[Dict[str, Any]]:
        """Keyword and vector search fused with RRF, capped per file.

        When the query cannot be embedded the keyword results are used alone.
        """
        keywords = extract_keywords(question)
        keyword_results = await self.store.search_by_keyword(keywords, self.keyword_top_k)

        vector_results: List[Dict[str, Any]] = []
        try:
            query_embedding = await self.embeddings.embed_one(normalize_question(question))
            vector_results = await self.store.search(query_embedding, self.vector_top_k)
        except (ProviderError, DimensionMismatchError) as error:
            log_warning("Semantic search unavailable; using keyword matches only", error)

        fused = reciprocal_rank_fusion(
            keyword_results,
            vector_results,
            k=self.rrf_k,
            keyword_weight=self.keyword_weight,
            vector_weight=self.vector_weight,
            similarity_floor=self.similarity_floor,
        )
        results = diversify_results(fused, self.max_per_file, self.top_n)
        logger.debug(
            "Retrieved %d chunks (keywords=%s, keyword hits=%d, vector hits=%d)",
            len(results), keywords, len(keyword_results), len(vector_results),
        )
        return results

    async def prepare(self, question: str) -> Tuple[str, List[Dict[str, Any]]]:
        kind = classify_question(question)
        results = await self.retrieve(question) if kind == "document" else []
        return build_prompt(question, results, kind), results

    async def query(self, question: str) -> Dict[str, Any]:
        prompt, results = await self.prepare(question)
        answer = await self.llm.complete(prompt)
        return {"answer": answer.strip(), "sources": extract_sources(results)}

    async def query_stream(
        self, question: str, cancel_event: Optional[asyncio.Event] = None
    ) -> AsyncIterator[Dict[str, Any]]:
        """Yield ``sources`` once, then ``chunk`` fragments.

        Failures end the stream with a single ``error`` event. Setting
        ``cancel_event`` stops generation before the next fragment.
        """
        try:
            prompt, results = await self.prepare(question)
        except Exception as error:
            log_error("Retrieval failed; answering without documents", error)
            prompt, results = build_prompt(question, [], classify_question(question)), []

        yield {"type": "sources", "content": extract_sources(results)}

        fragments = self.llm.stream_complete(prompt)
        try:
            async for fragment in fragments:
                if cancel_event is not None and cancel_event.is_set():
                    break
                yield {"type": "chunk", "content": fragment}
        except Exception as error:
            log_error("Answer generation failed", error)
            yield {"type": "error", "content": sanitize_error_message(str(error))}
        finally:
            await fragments.aclose()


class ChatCommand:
    """A ``/`` command typed into the chat box."""

    name = ""
    aliases: Tuple[str, ...] = ()
    description = ""

    async def run(self, assistant: "DocumentAssistant", argument: str) -> str:
        raise NotImplementedError


class ReindexChatCommand(ChatCommand):
    name = "reindex"
    aliases = ("재학습",)
    description = "Re-index every configured folder"

    async def run(self, assistant: "DocumentAssistant", argument: str) -> str:
        folders = [argument] if argument else assistant.folders
        if not folders:
            return "No folders are configured. Add folders to docsage_config.yaml first."
        result = assistant.start_indexing(folders)
        progress = result["progress"]
        if not result["started"]:
            return (
                "Indexing is already in progress "
                f"({progress['current']}/{progress['total']} files)."
            )
        return f"Re-indexing started for {len(folders)} folder(s)."


class StatusChatCommand(ChatCommand):
    name = "status"
    aliases = ("상태",)
    description = "Show index size and indexing progress"

    async def run(self, assistant: "DocumentAssistant", argument: str) -> str:
        status = assistant.indexer.get_status()
        files = await assistant.store.indexed_files()
        lines = [
            f"Indexed chunks: {await assistant.store.count()}",
            f"Indexed files: {len(files)}",
            f"Indexing: {status['status']}"
            + (" (paused)" if status["paused"] and status["status"] == "indexing" else ""),
        ]
        if status["status"] == "indexing":
            progress = status["progress"]
            lines.append(f"Progress: {progress['current']}/{progress['total']} files")
        if status["errors"]:
            lines.append(f"Files with errors: {len(status['errors'])}")
        return "\n".join(lines)


class ClearChatCommand(ChatCommand):
    name = "clear"
    aliases = ("초기화",)
    description = "Remove every indexed chunk"

    async def run(self, assistant: "DocumentAssistant", argument: str) -> str:
        removed = await assistant.clear_index()
        return f"Index cleared ({removed} chunks removed)."


class StopChatCommand(ChatCommand):
    name = "stop"
    aliases = ("중지",)
    description = "Stop the running indexing job"

    async def run(self, assistant: "DocumentAssistant", argument: str) -> str:
        if not assistant.indexer.is_running:
            return "No indexing job is running."
        assistant.indexer.stop()
        return "Indexing will stop after the current file."


class HelpChatCommand(ChatCommand):
    name = "help"
    aliases = ("도움말",)
    description = "List available commands"

    async def run(self, assistant: "DocumentAssistant", argument: str) -> str:
        prefix = assistant.commands.prefix
        lines = ["Available commands:"]
        for command in assistant.commands.commands():
            names = ", ".join(f"{prefix}{name}" for name in (command.name,) + command.aliases)
            lines.append(f"  {names} - {command.description}")
        return "\n".join(lines)


class CommandRegistry:
    """Maps command names and aliases to chat commands."""

    def __init__(self, prefix: str = COMMAND_PREFIX) -> None:
        self.prefix = prefix
        self._commands: Dict[str, ChatCommand] = {}

    def register(self, command: ChatCommand) -> None:
        for name in (command.name,) + tuple(command.aliases):
            self._commands[name.lower()] = command

    def commands(self) -> List[ChatCommand]:
        unique = []
        for command in self._commands.values():
            if command not in unique:
                unique.append(command)
        return unique

    def is_command(self, text: str) -> bool:
        return text.strip().startswith(self.prefix)

    def parse(self, text: str) -> Tuple[str, str]:
        body = text.strip()[len(self.prefix):].strip()
        name, _, argument = body.partition(" ")
        return name.lower(), argument.strip()

    async def execute(self, text: str, assistant: "DocumentAssistant") -> str:
        name, argument = self.parse(text)
        command = self._commands.get(name)
        if command is None:
            return (
                f"Unknown command: {self.prefix}{name}. "
                f"Type {self.prefix}help to see available commands."
            )
        return await command.run(assistant, argument)


def default_command_registry(prefix: str = COMMAND_PREFIX) -> CommandRegistry:
    registry = CommandRegistry(prefix)
    for command_class in (
        ReindexChatCommand,
        StatusChatCommand,
        ClearChatCommand,
        StopChatCommand,
        HelpChatCommand,
    ):
        registry.register(command_class())
    return registry


class DocumentAssistant:
    """Owns every long-lived component and wires them together.

    Construct one per process. Collaborators can be passed in to replace the
    ones built from configuration.
    """

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        *,
        store: Optional[VectorStore] = None,
        embeddings: Optional[EmbeddingsProvider] = None,
        llm: Optional[LLMProvider] = None,
        parser: Optional[DocumentParser] = None,
        events: Optional[EventBus] = None,
    ) -> None:
        self.config = config or load_config()
        self.data_dir = Path(self.config["data_dir"]).expanduser().resolve()
        self.events = events or EventBus()
        self.store = store or create_vector_store(self.config)
        self.embeddings = embeddings or EmbeddingsFactory.create(self.config)
        self.llm = llm or LLMFactory.create(self.config)
        self.parser = parser or DocumentParser(self.config["indexing"]["max_file_size_mb"])
        self.chunker = TextChunker(
            self.config["chunking"]["chunk_size"], self.config["chunking"]["chunk_overlap"]
        )
        self.indexer = IndexingOrchestrator(
            self.store,
            self.embeddings,
            self.parser,
            self.chunker,
            self.events,
            self.config["indexing"],
            exclude_dirs=[self.data_dir],
        )
        self.engine = RagEngine(self.store, self.embeddings, self.llm, self.config["retrieval"])
        self.history = ChatHistoryStore(
            self.data_dir / self.config["chat"]["history_file"],
            self.config["chat"]["max_conversations"],
        )
        self.commands = default_command_registry(self.config["chat"]["command_prefix"])
        self.watcher: Optional[FolderWatcher] = None

    @property
    def folders(self) -> List[str]:
        return [str(folder) for folder in self.config.get("folders") or []]

    async def initialize(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        await self.store.initialize()
        await self.history.initialize()

    def start_indexing(self, folders: Optional[List[str]] = None) -> Dict[str, Any]:
        return self.indexer.start(folders or self.folders)

    async def clear_index(self) -> int:
        removed = await self.store.count()
        await self.store.clear()
        await self.store.save(force=True)
        return removed

    async def reconfigure(self, config: Dict[str, Any]) -> None:
        """Switch providers and chunking to a new configuration."""
        old_embeddings, old_llm = self.embeddings, self.llm
        self.embeddings = EmbeddingsFactory.create(config)
        self.llm = LLMFactory.create(config)
        self.chunker = TextChunker(
            config["chunking"]["chunk_size"], config["chunking"]["chunk_overlap"]
        )
        self.indexer.embeddings = self.embeddings
        self.indexer.chunker = self.chunker
        self.engine = RagEngine(self.store, self.embeddings, self.llm, config["retrieval"])
        self.config = config
        await old_embeddings.aclose()
        await old_llm.aclose()

    async def start_watching(self) -> FolderWatcher:
        if self.watcher is None:
            self.watcher = FolderWatcher(
                self.indexer, self.events, self.config["watcher"]["debounce_seconds"]
            )
            self.watcher.start(self.folders)
        return self.watcher

    async def chat(self, message: str, conversation_id: Optional[str] = None) -> Dict[str, Any]:
        """Answer one message; failures come back as a structured error."""
        self.indexer.pause()
        try:
            if self.commands.is_command(message):
                answer, sources = await self.commands.execute(message, self), []
            else:
                result = await self.engine.query(message)
                answer, sources = result["answer"], result["sources"]
            conversation_id = await self._record(conversation_id, message, answer, sources)
            return {
                "success": True,
                "data": {"answer": answer, "sources": sources, "conversationId": conversation_id},
            }
        except Exception as error:
            log_error("Chat request failed", error)
            return {"success": False, "error": {"message": sanitize_error_message(str(error))}}
        finally:
            self.indexer.resume()

    async def chat_stream(
        self,
        message: str,
        conversation_id: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[Dict[str, Any]]:
        """Stream ``sources``, ``chunk`` and ``error`` events, then ``done``.

        Every stream ends with ``done``. Only answers that finished without an
        ``error`` event are written to the history.
        """
        self.indexer.pause()
        try:
            sources: List[Dict[str, Any]] = []
            parts: List[str] = []
            failed = False
            if self.commands.is_command(message):
                yield {"type": "sources", "content": []}
                try:
                    reply = await self.commands.execute(message, self)
                except Exception as error:
                    log_error("Command failed", error)
                    failed = True
                    yield {"type": "error", "content": sanitize_error_message(str(error))}
                else:
                    parts.append(reply)
                    yield {"type": "chunk", "content": reply}
            else:
                async for event in self.engine.query_stream(message, cancel_event):
                    if event["type"] == "sources":
                        sources = event["content"]
                    elif event["type"] == "chunk":
                        parts.append(event["content"])
                    elif event["type"] == "error":
                        failed = True
                    yield event

            answer = "".join(parts)
            if answer and not failed:
                conversation_id = await self._record(conversation_id, message, answer, sources)
            yield {"type": "done", "content": {"conversationId": conversation_id}}
        finally:
            self.indexer.resume()

    async def _record(
        self,
        conversation_id: Optional[str],
        message: str,
        answer: str,
        sources: List[Dict[str, Any]],
    ) -> str:
        conversation_id = await self.history.add_message(conversation_id, "user", message)
        return await self.history.add_message(conversation_id, "assistant", answer, sources)

    async def close(self) -> None:
        if self.watcher is not None:
            await self.watcher.stop()
            self.watcher = None
        if self.indexer.is_running:
            self.indexer.stop()
            await self.indexer.wait()
        await self.store.close()
        await self.embeddings.aclose()
        await self.llm.aclose()


def parse_args(argv: Optional[List[str]] = None) -> Any:
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        description=f"DocSage v{__version__} - ask questions about your own documents",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  Indexing:
    %(prog)s index --folder ~/Documents        # Index a folder (repeat --folder for more)
    %(prog)s watch                             # Index configured folders and follow changes
    %(prog)s clear                             # Drop the whole index

  Asking:
    %(prog)s ask "when is the report due"      # Streamed answer with sources
    %(prog)s ask "budget 2025년 3월" --json     # JSON answer payload
    %(prog)s chat                              # Interactive chat, /help for commands

  Inspecting:
    %(prog)s search "quarterly report"         # Retrieval only, no LLM call
    %(prog)s status                            # Index size and indexing state
        """,
    )

    parser.add_argument(
        "command",
        choices=["index", "ask", "chat", "search", "status", "clear", "watch"],
        help="Command to execute",
    )
    parser.add_argument("query", nargs="*", help="Question or search terms")

    parser.add_argument(
        "--folder",
        action="append",
        dest="folders",
        help="Folder to index or watch (overrides config; may be repeated)",
    )
    parser.add_argument("--data-dir", help="Where the index and chat history live (default: ./data)")
    parser.add_argument(
        "--results", type=int, help="Number of retrieved chunks to keep (default: 5)"
    )
    parser.add_argument("--json", action="store_true", help="Output results as JSON")
    parser.add_argument("--quiet", "-q", action="store_true", help="Minimal output")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    parser.add_argument(
        "--config", help="Path to config file (default: docsage_config.yaml)"
    )
    parser.add_argument("--version", action="version", version=f"docsage {__version__}")

    return parser.parse_args(argv)


def apply_cli_overrides(config: Dict[str, Any], args: Any) -> Dict[str, Any]:
    if args.folders:
        config["folders"] = args.folders
    if args.data_dir:
        config["data_dir"] = args.data_dir
    if args.results:
        config["retrieval"]["final_top_n"] = args.results
    return config


def _print_sources(sources: List[Dict[str, Any]]) -> None:
    if not sources:
        return
    print("\nSources:")
    for i, source in enumerate(sources, 1):
        print(f"  {i}. {source['fileName']} (chunk {source['chunkIndex']}, relevance {source['relevance']:.2f})")


# Command Pattern Implementation
class Command:
    """Base command interface."""

    async def execute(self, args: Any, assistant: DocumentAssistant) -> None:
        """Execute the command."""
        raise NotImplementedError


class IndexCommand(Command):
    """Index the configured folders in the foreground."""

    async def execute(self, args: Any, assistant: DocumentAssistant) -> None:
        if not assistant.folders:
            log_error("No folders to index. Pass --folder or set 'folders' in the config")
            return

        def report(event: Dict[str, Any]) -> None:
            if event["type"] == "index_progress" and not args.quiet:
                data = event["data"]
                print(f"[{data['current']}/{data['total']}] {data['fileName']}")

        unsubscribe = assistant.events.subscribe(report)
        try:
            status = await assistant.indexer.index_folders(assistant.folders)
        finally:
            unsubscribe()

        if args.json:
            print(json.dumps(status, indent=2))
            return
        progress = status["progress"]
        print(f"Indexed {progress['current']}/{progress['total']} files "
              f"({await assistant.store.count()} chunks in the index)")
        for failure in status["errors"]:
            print(f"  failed: {Path(failure['filePath']).name}: {failure['error']}")
        if status["status"] == "error":
            sys.exit(1)


class AskCommand(Command):
    """Answer a single question."""

    async def execute(self, args: Any, assistant: DocumentAssistant) -> None:
        if not args.query:
            log_error("Please provide a question", quiet=args.quiet)
            return

        question = " ".join(args.query)
        if args.json:
            print(json.dumps(await assistant.chat(question), indent=2, ensure_ascii=False))
            return

        sources: List[Dict[str, Any]] = []
        async for event in assistant.chat_stream(question):
            if event["type"] == "sources":
                sources = event["content"]
            elif event["type"] == "chunk":
                print(event["content"], end="", flush=True)
            elif event["type"] == "error":
                print(f"\nERROR: {event['content']}")
        print()
        _print_sources(sources)


class InteractiveChatCommand(Command):
    """Interactive chat mode."""

    async def execute(self, args: Any, assistant: DocumentAssistant) -> None:
        print(f"\n{ASSISTANT_NAME} chat - type a question, /help for commands, 'quit' to exit")
        print("-" * 50)
        conversation_id = None

        while True:
            try:
                message = (await asyncio.to_thread(input, "\nYou: ")).strip()
            except (EOFError, KeyboardInterrupt):
                break
            if message.lower() in ["quit", "exit", "q"]:
                break
            if not message:
                continue

            print(f"{ASSISTANT_NAME}: ", end="", flush=True)
            sources: List[Dict[str, Any]] = []
            async for event in assistant.chat_stream(message, conversation_id):
                if event["type"] == "sources":
                    sources = event["content"]
                elif event["type"] == "chunk":
                    print(event["content"], end="", flush=True)
                elif event["type"] == "error":
                    print(f"\nERROR: {event['content']}")
                elif event["type"] == "done":
                    conversation_id = event["content"]["conversationId"] or conversation_id
            print()
            _print_sources(sources)

        print("\nGoodbye!")


class SearchCommand(Command):
    """Show retrieved chunks without calling the LLM."""

    async def execute(self, args: Any, assistant: DocumentAssistant) -> None:
        if not args.query:
            log_error("Please provide a search query", quiet=args.quiet)
            return

        query = " ".join(args.query)
        results = await assistant.engine.retrieve(query)
        if args.json:
            print(
                json.dumps(
                    [
                        {
                            "content": r["content"],
                            "filePath": r["metadata"].get("filePath"),
                            "chunkIndex": r["metadata"].get("chunkIndex"),
                            "similarity": r["similarity"],
                            "score": r["score"],
                        }
                        for r in results
                    ],
                    indent=2,
                    ensure_ascii=False,
                )
            )
            return

        if not results:
            print("No results found.")
            return

        print(f"\nSearch results for: '{query}'")
        print(f"Keywords: {', '.join(extract_keywords(query)) or '(none)'}")
        print("=" * 50)
        for i, result in enumerate(results, 1):
            metadata = result["metadata"]
            print(
                f"\n{i}. {metadata.get('fileName')} (chunk {metadata.get('chunkIndex')}) "
                f"score {result['score']:.4f}, similarity {result['similarity']:.3f}"
            )
            text = result["content"]
            print(f"   {text[:300] + '...' if len(text) > 300 else text}")


class StatusCommand(Command):
    """Show index statistics."""

    async def execute(self, args: Any, assistant: DocumentAssistant) -> None:
        files = await assistant.store.indexed_files()
        stats = {
            "chunks": await assistant.store.count(),
            "files": files,
            "dataDir": str(assistant.data_dir),
            "backend": assistant.config["vector_store"]["backend"],
            "embeddings": assistant.config["embeddings"]["provider"],
            "llm": assistant.config["llm"]["provider"],
            "folders": assistant.folders,
        }
        if args.json:
            print(json.dumps(stats, indent=2, ensure_ascii=False))
            return

        print("Index Statistics:")
        print(f"  Total chunks: {stats['chunks']}")
        print(f"  Indexed files: {len(files)}")
        print(f"  Data directory: {stats['dataDir']}")
        print(f"  Store backend: {stats['backend']}")
        print(f"  Embeddings: {stats['embeddings']} ({assistant.embeddings.model})")
        print(f"  LLM: {stats['llm']} ({assistant.llm.model})")
        print(f"  Config: {'Custom' if args.config else 'Default'}")
        if files:
            print("  Files:")
            for path, count in sorted(files.items()):
                print(f"    {Path(path).name}: {count} chunks")


class ClearCommand(Command):
    """Remove everything from the index."""

    async def execute(self, args: Any, assistant: DocumentAssistant) -> None:
        removed = await assistant.clear_index()
        if not args.quiet:
            print(f"Index cleared ({removed} chunks removed).")


class WatchCommand(Command):
    """Index the configured folders, then follow file changes until interrupted."""

    async def execute(self, args: Any, assistant: DocumentAssistant) -> None:
        if not assistant.folders:
            log_error("No folders to watch. Pass --folder or set 'folders' in the config")
            return

        def report(event: Dict[str, Any]) -> None:
            data = event["data"]
            if event["type"] == "file_changed":
                print(f"{data['change']}: {data['fileName']} ({data['chunks']} chunks)")
            elif event["type"] == "index_complete":
                print(f"Initial index complete: {data['indexed']}/{data['total']} files")

        if not args.quiet:
            assistant.events.subscribe(report)
        assistant.start_indexing()
        await assistant.start_watching()
        print("Watching for changes (Ctrl+C to stop)...")
        await asyncio.Event().wait()


class CommandFactory:
    """Factory for creating command instances."""

    _commands = {
        "index": IndexCommand,
        "ask": AskCommand,
        "chat": InteractiveChatCommand,
        "search": SearchCommand,
        "status": StatusCommand,
        "clear": ClearCommand,
        "watch": WatchCommand,
    }

    @classmethod
    def create_command(cls, command_name: str) -> Command:
        """Create a command instance."""
        command_class = cls._commands.get(command_name)
        if command_class is None:
            raise ValueError(f"Unknown command: {command_name}")
        return command_class()


async def run_command(command: Command, args: Any, config: Dict[str, Any]) -> None:
    assistant = DocumentAssistant(config)
    await assistant.initialize()
    try:
        await command.execute(args, assistant)
    finally:
        await assistant.close()


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point using Command pattern."""
    args = parse_args(argv)
    configure_logging(quiet=args.quiet, verbose=args.verbose)

    try:
        command = CommandFactory.create_command(args.command)
        config = apply_cli_overrides(load_config(args.config), args)
        asyncio.run(run_command(command, args, config))
    except KeyboardInterrupt:
        print("\nGoodbye!")
    except (ValueError, DocSageError) as e:
        log_error(str(e))
        sys.exit(1)
    except Exception as e:
        log_error(f"Unexpected error executing command '{args.command}'", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
