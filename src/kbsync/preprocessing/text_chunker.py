"""
Token-aware Text Chunker

Splits flat or sectioned text into token-bounded chunks for embedding.

Flat text:
1. Normalize whitespace and markup
2. Slide a character window sized from the token budget
3. Split at the best boundary inside the window
   (paragraph > sentence > word > hard cut)
4. Prefix every chunk after the first with a word-aligned suffix of the
   previous chunk

Structured text:
Sections are rendered as "Label: value" and packed greedily, priority
sections first. A section too large for one chunk is split as flat text.
"""
import copy
import hashlib
import math
import re
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Mapping, Optional, Tuple

from kbsync.core.errors import ChunkValidationError, EmptyContentError
from kbsync.core.logging import get_logger
from kbsync.preprocessing.tokens import TOKENS_PER_CHAR, count_words, estimate_token_count

logger = get_logger(__name__)

MIN_CHUNK_SIZE = 50
MAX_CHUNK_SIZE = 2000
DEFAULT_CHUNK_SIZE = 1000
DEFAULT_OVERLAP_SIZE = 100

_BLOCK_CLOSE_RE = re.compile(r"</(?:p|div|h[1-6]|li)\s*>|<br\s*/?>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")
_SENTENCE_RE = re.compile(r"[.!?]+")
_WHITESPACE_RE = re.compile(r"\s")

TERMINAL_PUNCTUATION = (".", "!", "?", ":")


@dataclass
class ChunkConfig:
    """Chunking parameters for one content category (sizes in tokens)."""
    chunk_size: int = DEFAULT_CHUNK_SIZE
    overlap_size: int = DEFAULT_OVERLAP_SIZE
    preserve_structure: bool = False
    priority_sections: List[str] = field(default_factory=list)

    def validate(self):
        validate_chunk_parameters(self.chunk_size, self.overlap_size)


@dataclass(frozen=True)
class Chunk:
    """A bounded text segment ready for embedding."""
    text: str
    index: int
    total_chunks: int
    token_count: int
    word_count: int
    char_count: int
    content_type: str
    hash: str
    quality_score: float
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def overlap_text(self) -> str:
        return self.metadata.get("overlap_text", "")

    @property
    def body(self) -> str:
        """Chunk text without the overlap carried over from the previous chunk."""
        overlap = self.overlap_text
        if overlap and self.text.startswith(overlap):
            return self.text[len(overlap):].lstrip()
        return self.text


DEFAULT_CONTENT_TYPE_CONFIGS: Dict[str, ChunkConfig] = {
    "product": ChunkConfig(800, 80, True, ["title", "description", "attributes", "categories"]),
    "page": ChunkConfig(1000, 100, True, ["title", "content", "metadata"]),
    "post": ChunkConfig(1200, 120, False, ["title", "content", "tags", "categories"]),
    "woocommerce_settings": ChunkConfig(600, 60, True, ["title", "content"]),
    "product_cat": ChunkConfig(400, 40, False, ["title", "content"]),
    "product_tag": ChunkConfig(300, 30, False, ["title", "content"]),
}


def validate_chunk_parameters(chunk_size: int, overlap_size: int):
    """Raise ChunkValidationError unless the sizes describe a usable window."""
    if chunk_size < MIN_CHUNK_SIZE or chunk_size > MAX_CHUNK_SIZE:
        raise ChunkValidationError(
            f"Chunk size must be between {MIN_CHUNK_SIZE} and {MAX_CHUNK_SIZE} tokens"
        )
    if overlap_size < 0 or overlap_size >= chunk_size:
        raise ChunkValidationError("Overlap size must be between 0 and chunk size")
    if overlap_size > chunk_size * 0.5:
        raise ChunkValidationError("Overlap size should not exceed 50% of chunk size")


def normalize_text(content: str, preserve_markup: bool = False) -> str:
    """
    Normalize line endings and whitespace.

    Block-level closing tags become paragraph breaks. Other markup is kept
    when ``preserve_markup`` is set and stripped otherwise. Paragraph breaks
    survive as a single blank line; every other whitespace run becomes a space.
    """
    text = content.replace("\r\n", "\n").replace("\r", "\n")
    text = _BLOCK_CLOSE_RE.sub("\n\n", text)
    if not preserve_markup:
        text = _TAG_RE.sub("", text)

    text = re.sub(r"[ \t\f\v]+", " ", text)
    text = re.sub(r" *\n *", "\n", text)
    text = re.sub(r"\n{2,}", "\n\n", text)
    text = re.sub(r"(?<!\n)\n(?!\n)", " ", text)
    text = re.sub(r" {2,}", " ", text)
    return text.strip()


def format_section(key: str, value: Any) -> str:
    label = key.replace("_", " ").strip()
    label = label[:1].upper() + label[1:]

    if isinstance(value, Mapping):
        content = ", ".join(f"{k}: {v}" for k, v in value.items() if v not in (None, ""))
    elif isinstance(value, (list, tuple, set)):
        content = ", ".join(str(v) for v in value if v not in (None, ""))
    else:
        content = "" if value is None else str(value)

    content = content.strip()
    if not content:
        return ""
    return f"{label}: {content}"


def score_chunk_quality(text: str) -> float:
    """
    Heuristic quality score in [0, 1].

    Short chunks (<100 chars) are scaled by 0.6, chunks not ending on
    terminal punctuation by 0.8, and chunks holding at least one sentence
    get a 1.1 boost (capped at 1.0).
    """
    score = 1.0
    if len(text) < 100:
        score *= 0.6
    if not text.rstrip().endswith(TERMINAL_PUNCTUATION):
        score *= 0.8
    if _SENTENCE_RE.search(text):
        score *= 1.1
    return min(1.0, score)


def chunk_hash(text: str, index: int, content_type: str) -> str:
    return hashlib.sha256(f"{text}{index}{content_type}".encode("utf-8")).hexdigest()


class TextChunker:
    """
    Splits content into overlapping, token-bounded chunks.

    Stateless per call. Per content type configuration lives on the
    instance and can be tuned with ``update_content_type_config``.

    Usage:
        chunker = TextChunker()
        chunks = chunker.chunk_content(text, "post")
    """

    def __init__(
        self,
        content_type_configs: Optional[Dict[str, ChunkConfig]] = None,
        default_config: Optional[ChunkConfig] = None,
        tokens_per_char: float = TOKENS_PER_CHAR,
    ):
        self.tokens_per_char = tokens_per_char
        self.default_config = default_config or ChunkConfig()
        self.default_config.validate()

        self.content_type_configs = copy.deepcopy(DEFAULT_CONTENT_TYPE_CONFIGS)
        for content_type, config in (content_type_configs or {}).items():
            config.validate()
            self.content_type_configs[content_type] = copy.deepcopy(config)

        logger.debug(
            "text_chunker_initialized",
            default_chunk_size=self.default_config.chunk_size,
            default_overlap_size=self.default_config.overlap_size,
            content_types=len(self.content_type_configs),
        )

    # ========================================================================
    # PUBLIC API
    # ========================================================================

    def get_config(self, content_type: str) -> ChunkConfig:
        """Config for ``content_type``, falling back to the default."""
        return copy.deepcopy(self.content_type_configs.get(content_type, self.default_config))

    def estimate_tokens(self, text: str) -> int:
        return estimate_token_count(text, self.tokens_per_char)

    def chunk_content(
        self,
        content: str,
        content_type: str,
        chunk_size: Optional[int] = None,
        overlap_size: Optional[int] = None,
        preserve_markup: bool = False,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> List[Chunk]:
        """
        Chunk flat text.

        Raises:
            EmptyContentError: nothing to chunk after normalization.
            ChunkValidationError: invalid sizes. Nothing is
                produced in that case.
        """
        if not content or not content.strip():
            raise EmptyContentError("Content cannot be empty")

        config = self.get_config(content_type)
        chunk_size = config.chunk_size if chunk_size is None else chunk_size
        overlap_size = config.overlap_size if overlap_size is None else overlap_size
        validate_chunk_parameters(chunk_size, overlap_size)

        text = normalize_text(content, preserve_markup=preserve_markup)
        if not text:
            raise EmptyContentError("Content cannot be empty")

        pieces = self._split_text(text, chunk_size, overlap_size)
        drafts = [
            (self._join(overlap, body), {"overlap_text": overlap})
            for overlap, body in pieces
        ]
        chunks = self._build_chunks(drafts, content_type, "intelligent_boundary", metadata)

        logger.info(
            "content_chunked",
            content_type=content_type,
            original_length=len(content),
            chunks_created=len(chunks),
            chunk_size=chunk_size,
            overlap_size=overlap_size,
        )
        return chunks

    def chunk_structured_content(
        self,
        sections: Mapping[str, Any],
        content_type: str,
        chunk_size: Optional[int] = None,
        overlap_size: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> List[Chunk]:
        """
        Chunk named sections, keeping each section whole where it fits.

        Priority sections from the content-type config are packed first in
        their configured order, remaining sections follow in input order.
        """
        if not sections:
            raise EmptyContentError("Structured content cannot be empty")

        config = self.get_config(content_type)
        chunk_size = config.chunk_size if chunk_size is None else chunk_size
        overlap_size = config.overlap_size if overlap_size is None else overlap_size
        validate_chunk_parameters(chunk_size, overlap_size)

        remaining = dict(sections)
        ordered: List[Tuple[str, Any]] = []
        for key in config.priority_sections:
            if key in remaining:
                ordered.append((key, remaining.pop(key)))
        ordered.extend(remaining.items())

        drafts: List[Tuple[str, Dict[str, Any]]] = []
        current = ""
        current_overlap = ""
        current_keys: List[str] = []

        def flush():
            drafts.append((current, {"overlap_text": current_overlap, "sections": list(current_keys)}))

        for key, value in ordered:
            section_text = normalize_text(format_section(key, value))
            if not section_text:
                continue

            if self.estimate_tokens(section_text) > chunk_size:
                if current_keys:
                    flush()
                current, current_overlap, current_keys = "", "", []

                pieces = self._split_text(section_text, chunk_size, overlap_size)
                for overlap, body in pieces:
                    drafts.append((
                        self._join(overlap, body),
                        {
                            "overlap_text": overlap,
                            "sections": [key],
                            "primary_section": key,
                            "is_section_fragment": len(pieces) > 1,
                        },
                    ))
                continue

            candidate = self._join(current, section_text)
            if current_keys and self.estimate_tokens(candidate) > chunk_size:
                flush()
                overlap = self._extract_overlap(current, overlap_size)
                candidate = self._join(overlap, section_text)
                if self.estimate_tokens(candidate) > chunk_size:
                    overlap = ""
                    candidate = section_text
                current_overlap = overlap
                current_keys = []

            current = candidate
            current_keys.append(key)

        if current_keys:
            flush()

        if not drafts:
            raise EmptyContentError("Structured content cannot be empty")

        chunks = self._build_chunks(drafts, content_type, "structured", metadata)

        logger.info(
            "structured_content_chunked",
            content_type=content_type,
            sections=len(sections),
            chunks_created=len(chunks),
        )
        return chunks

    def calculate_optimal_chunk_size(self, content: str, content_type: str) -> int:
        """Suggest a chunk size for ``content`` based on its length and structure."""
        base_size = self.get_config(content_type).chunk_size
        length = len(content)

        if length < 500:
            recommended = min(base_size, 300)
        elif length > 10000:
            recommended = min(MAX_CHUNK_SIZE, base_size * 1.5)
        else:
            recommended = base_size

        paragraph_count = content.count("\n\n") + content.lower().count("</p>")
        if paragraph_count > 10:
            recommended *= 1.2

        recommended = max(MIN_CHUNK_SIZE, min(MAX_CHUNK_SIZE, recommended))

        logger.debug(
            "optimal_chunk_size_calculated",
            content_type=content_type,
            content_length=length,
            paragraph_count=paragraph_count,
            base_chunk_size=base_size,
            recommended_size=int(recommended),
        )
        return int(recommended)

    def update_content_type_config(self, content_type: str, config: Dict[str, Any]):
        """
        Merge ``config`` into the configuration for ``content_type``.

        ``chunk_size`` and ``overlap_size`` are required and validated before
        anything changes.
        """
        for key in ("chunk_size", "overlap_size"):
            if key not in config:
                raise ChunkValidationError(f"Missing required configuration key: {key}")

        validate_chunk_parameters(config["chunk_size"], config["overlap_size"])

        allowed = {"chunk_size", "overlap_size", "preserve_structure", "priority_sections"}
        unknown = set(config) - allowed
        if unknown:
            raise ChunkValidationError(f"Unknown configuration keys: {sorted(unknown)}")

        self.content_type_configs[content_type] = replace(self.get_config(content_type), **config)
        logger.info("content_type_config_updated", content_type=content_type, new_config=config)

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "default_chunk_size": self.default_config.chunk_size,
            "default_overlap_size": self.default_config.overlap_size,
            "min_chunk_size": MIN_CHUNK_SIZE,
            "max_chunk_size": MAX_CHUNK_SIZE,
            "tokens_per_char_ratio": self.tokens_per_char,
            "supported_content_types": list(self.content_type_configs),
            "content_type_configs": {
                name: {
                    "chunk_size": config.chunk_size,
                    "overlap_size": config.overlap_size,
                    "preserve_structure": config.preserve_structure,
                    "priority_sections": list(config.priority_sections),
                }
                for name, config in self.content_type_configs.items()
            },
        }

    # ========================================================================
    # SPLITTING
    # ========================================================================

    def _split_text(self, text: str, chunk_size: int, overlap_size: int) -> List[Tuple[str, str]]:
        """
        Split normalized text into ``(overlap, body)`` pairs.

        Bodies are consecutive, non-overlapping spans of ``text``; joining them
        in order gives back the text modulo whitespace.
        """
        if self.estimate_tokens(text) <= chunk_size:
            return [("", text)]

        window_chars = max(1, int(chunk_size / self.tokens_per_char))
        length = len(text)
        pieces: List[Tuple[str, str]] = []
        position = 0
        overlap = ""

        while position < length:
            while position < length and text[position].isspace():
                position += 1
            if position >= length:
                break

            budget = max(1, window_chars - (len(overlap) + 1 if overlap else 0))
            while True:
                end = min(position + budget, length)
                boundary = self._find_boundary(text, position, end)
                body = text[position:boundary].strip()
                chunk_text = self._join(overlap, body)
                span = boundary - position
                if span <= 1 or self.estimate_tokens(chunk_text) <= chunk_size:
                    break
                # Heuristic adjustments pushed the estimate over budget
                budget = max(1, int(span * 0.9))

            if body:
                pieces.append((overlap, body))
                overlap = self._extract_overlap(chunk_text, overlap_size)
            position = boundary

        return pieces

    def _find_boundary(self, text: str, start: int, end: int) -> int:
        """Best split position in ``(start, end]``."""
        if end >= len(text):
            return len(text)

        paragraph = text.rfind("\n\n", start + 1, end + 2)
        if paragraph != -1:
            return paragraph

        for i in range(end, start, -1):
            if text[i] in ".!?" and i + 1 < len(text) and text[i + 1].isspace():
                return i + 1

        space = text.rfind(" ", start + 1, end + 1)
        if space != -1:
            return space

        return end

    def _extract_overlap(self, chunk_text: str, overlap_size: int) -> str:
        """Word-aligned suffix of ``chunk_text`` within ``overlap_size`` tokens."""
        if overlap_size <= 0 or not chunk_text:
            return ""

        overlap_chars = math.ceil(overlap_size / self.tokens_per_char)
        if len(chunk_text) <= overlap_chars:
            overlap = chunk_text
        else:
            cut = len(chunk_text) - overlap_chars
            overlap = chunk_text[cut:]
            if not chunk_text[cut - 1].isspace():
                # Started mid-word, move forward to the next word
                match = _WHITESPACE_RE.search(overlap)
                overlap = overlap[match.end():] if match else ""

        overlap = overlap.strip()
        while overlap and self.estimate_tokens(overlap) > overlap_size:
            match = _WHITESPACE_RE.search(overlap)
            overlap = overlap[match.end():].lstrip() if match else ""
        return overlap

    @staticmethod
    def _join(prefix: str, text: str) -> str:
        return f"{prefix} {text}" if prefix else text

    # ========================================================================
    # CHUNK OBJECTS
    # ========================================================================

    def _build_chunks(
        self,
        drafts: List[Tuple[str, Dict[str, Any]]],
        content_type: str,
        strategy: str,
        metadata: Optional[Dict[str, Any]],
    ) -> List[Chunk]:
        drafts = [(text.strip(), extra) for text, extra in drafts if text and text.strip()]
        total = len(drafts)

        chunks = []
        for index, (text, extra) in enumerate(drafts):
            chunk_metadata = {"chunking_strategy": strategy}
            chunk_metadata.update(extra)
            chunk_metadata.update(metadata or {})

            chunks.append(Chunk(
                text=text,
                index=index,
                total_chunks=total,
                token_count=self.estimate_tokens(text),
                word_count=count_words(text),
                char_count=len(text),
                content_type=content_type,
                hash=chunk_hash(text, index, content_type),
                quality_score=score_chunk_quality(text),
                metadata=chunk_metadata,
            ))
        return chunks
