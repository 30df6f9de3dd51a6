"""
Tests for TextChunker.

Tests:
- Parameter validation
- Token bound, overlap and round-trip properties of flat chunking
- Markup handling
- Structured (sectioned) chunking
- Content-type configuration
"""
import pytest

from kbsync.core.errors import ChunkValidationError, EmptyContentError
from kbsync.preprocessing import (
    ChunkConfig,
    TextChunker,
    normalize_text,
    validate_chunk_parameters,
)
from kbsync.preprocessing.text_chunker import format_section, score_chunk_quality


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def chunker():
    return TextChunker()


@pytest.fixture
def long_text():
    """Sixty sentences in paragraphs of five."""
    paragraphs = []
    for p in range(12):
        sentences = [
            f"Sentence {p * 5 + s} explains how order {p * 5 + s} moves through the warehouse."
            for s in range(5)
        ]
        paragraphs.append(" ".join(sentences))
    return "\n\n".join(paragraphs)


# ============================================================================
# Validation
# ============================================================================

class TestValidation:
    """Invalid sizes fail before any splitting."""

    @pytest.mark.parametrize("chunk_size,overlap_size", [
        (49, 0),
        (2001, 100),
        (100, 100),
        (100, 150),
        (100, 51),
        (100, -1),
    ])
    def test_invalid_parameters_rejected(self, chunker, chunk_size, overlap_size):
        with pytest.raises(ChunkValidationError) as exc_info:
            chunker.chunk_content("Some content.", "post", chunk_size=chunk_size, overlap_size=overlap_size)

        assert not isinstance(exc_info.value, EmptyContentError)

    def test_bounds_are_inclusive(self):
        validate_chunk_parameters(50, 0)
        validate_chunk_parameters(2000, 1000)

    def test_small_chunk_with_default_overlap_fails(self, chunker):
        """Post overlap (120) is not below a 50 token chunk."""
        with pytest.raises(ChunkValidationError):
            chunker.chunk_content("Some content.", "post", chunk_size=50)

    @pytest.mark.parametrize("content", ["", "   \n\n  "])
    def test_empty_content_rejected(self, chunker, content):
        with pytest.raises(EmptyContentError):
            chunker.chunk_content(content, "post")

    def test_markup_only_content_rejected(self, chunker):
        with pytest.raises(EmptyContentError):
            chunker.chunk_content("<p></p><div> </div>", "post")

    def test_invalid_default_config_rejected(self):
        with pytest.raises(ChunkValidationError):
            TextChunker(default_config=ChunkConfig(chunk_size=10, overlap_size=0))

    def test_validation_error_is_value_error(self):
        with pytest.raises(ValueError):
            validate_chunk_parameters(10, 0)


# ============================================================================
# Flat Chunking
# ============================================================================

class TestChunkContent:
    """Flat text chunking."""

    def test_short_text_single_chunk(self, chunker):
        """Two sentences fit in one chunk; the score is scaled for length and boosted for sentences."""
        chunks = chunker.chunk_content("Sentence one. Sentence two. ", "post")

        assert len(chunks) == 1
        chunk = chunks[0]
        assert chunk.text == "Sentence one. Sentence two."
        assert chunk.index == 0
        assert chunk.total_chunks == 1
        assert chunk.content_type == "post"
        assert chunk.char_count == 27
        assert chunk.word_count == 4
        assert chunk.token_count == 7
        assert chunk.quality_score == pytest.approx(0.66)
        assert chunk.overlap_text == ""
        assert chunk.metadata["chunking_strategy"] == "intelligent_boundary"

    def test_token_bound_respected(self, chunker, long_text):
        chunks = chunker.chunk_content(long_text, "post", chunk_size=100, overlap_size=20)

        assert len(chunks) > 1
        assert all(chunk.token_count <= 100 for chunk in chunks)
        assert all(chunker.estimate_tokens(chunk.text) == chunk.token_count for chunk in chunks)

    def test_overlap_is_word_aligned_suffix_of_previous(self, chunker, long_text):
        chunks = chunker.chunk_content(long_text, "post", chunk_size=100, overlap_size=20)

        for previous, chunk in zip(chunks, chunks[1:]):
            overlap = chunk.overlap_text
            assert overlap
            assert chunk.text.startswith(overlap)
            assert previous.text.endswith(overlap)
            assert chunker.estimate_tokens(overlap) <= 20

            before = previous.text[: len(previous.text) - len(overlap)]
            assert before == "" or before[-1].isspace()

    def test_bodies_reconstruct_normalized_text(self, chunker, long_text):
        chunks = chunker.chunk_content(long_text, "post", chunk_size=100, overlap_size=20)

        rebuilt = " ".join(chunk.body for chunk in chunks)
        assert rebuilt.split() == normalize_text(long_text).split()

    def test_prefers_sentence_and_paragraph_boundaries(self, chunker, long_text):
        chunks = chunker.chunk_content(long_text, "post", chunk_size=100, overlap_size=20)

        assert all(chunk.text.endswith(".") for chunk in chunks)

    def test_indexes_and_totals(self, chunker, long_text):
        chunks = chunker.chunk_content(long_text, "post", chunk_size=100, overlap_size=20)

        assert [chunk.index for chunk in chunks] == list(range(len(chunks)))
        assert {chunk.total_chunks for chunk in chunks} == {len(chunks)}

    def test_deterministic_hashes(self, chunker, long_text):
        first = chunker.chunk_content(long_text, "post", chunk_size=100, overlap_size=20)
        second = TextChunker().chunk_content(long_text, "post", chunk_size=100, overlap_size=20)

        assert [c.hash for c in first] == [c.hash for c in second]
        assert len({c.hash for c in first}) == len(first)

    def test_hash_depends_on_content_type(self, chunker):
        post = chunker.chunk_content("Same words here.", "post")[0]
        page = chunker.chunk_content("Same words here.", "page")[0]

        assert post.hash != page.hash

    def test_hard_cut_without_whitespace(self, chunker):
        text = "x" * 1000
        chunks = chunker.chunk_content(text, "post", chunk_size=50, overlap_size=0)

        assert len(chunks) == 5
        assert all(chunk.token_count <= 50 for chunk in chunks)
        assert "".join(chunk.text for chunk in chunks) == text

    def test_zero_overlap(self, chunker, long_text):
        chunks = chunker.chunk_content(long_text, "post", chunk_size=100, overlap_size=0)

        assert all(chunk.overlap_text == "" for chunk in chunks)
        assert " ".join(c.text for c in chunks).split() == normalize_text(long_text).split()

    def test_caller_metadata_merged(self, chunker):
        chunks = chunker.chunk_content("Hello there.", "post", metadata={"source_id": "7"})

        assert chunks[0].metadata["source_id"] == "7"
        assert chunks[0].metadata["chunking_strategy"] == "intelligent_boundary"

    def test_uses_content_type_config(self, chunker, long_text):
        """product_tag chunks at 300 tokens, post at 1200."""
        tag_chunks = chunker.chunk_content(long_text, "product_tag")
        post_chunks = chunker.chunk_content(long_text, "post")

        assert len(tag_chunks) > len(post_chunks)
        assert all(chunk.token_count <= 300 for chunk in tag_chunks)


class TestMarkup:
    """Markup normalization."""

    def test_markup_stripped_by_default(self, chunker):
        html = "<p>First paragraph.</p><p>Second <b>bold</b> paragraph.</p>"
        chunks = chunker.chunk_content(html, "post")

        assert len(chunks) == 1
        assert "<" not in chunks[0].text
        assert chunks[0].text == "First paragraph.\n\nSecond bold paragraph."

    def test_markup_preserved_on_request(self, chunker):
        html = "<p>First paragraph.</p><p>Second <b>bold</b> paragraph.</p>"
        chunks = chunker.chunk_content(html, "post", preserve_markup=True)

        assert "<b>bold</b>" in chunks[0].text

    def test_normalize_collapses_whitespace(self):
        text = "Line one\r\nstill line one.\n\n\n\nNext   paragraph\there."

        assert normalize_text(text) == "Line one still line one.\n\nNext paragraph here."


class TestQualityScore:
    """Heuristic chunk quality."""

    def test_short_without_punctuation(self):
        assert score_chunk_quality("short text") == pytest.approx(0.48)

    def test_long_complete_sentence_capped(self):
        text = "This sentence is long enough to avoid the short chunk penalty and it ends properly with a period."
        text = text + " " + text

        assert score_chunk_quality(text) == 1.0

    def test_long_without_punctuation(self):
        text = "word " * 30

        assert score_chunk_quality(text) == pytest.approx(0.8)

    def test_question_mid_chunk(self):
        assert score_chunk_quality("Is this a question? maybe not") == pytest.approx(0.528)


# ============================================================================
# Structured Chunking
# ============================================================================

class TestStructuredChunking:
    """Section packing."""

    def test_priority_sections_first(self, chunker):
        sections = {
            "price": "$120",
            "categories": ["Shoes", "Running"],
            "title": "Trail Shoe",
            "description": "A lightweight shoe.",
        }
        chunks = chunker.chunk_structured_content(sections, "product")

        assert len(chunks) == 1
        text = chunks[0].text
        assert text.index("Title:") < text.index("Description:") < text.index("Categories:") < text.index("Price:")
        assert chunks[0].metadata["sections"] == ["title", "description", "categories", "price"]
        assert chunks[0].metadata["chunking_strategy"] == "structured"

    def test_section_formatting(self, chunker):
        chunks = chunker.chunk_structured_content(
            {"title": "Shoe", "attributes": {"color": "blue", "size": "42"}, "notes": ""},
            "product",
        )

        assert "Attributes: color: blue, size: 42" in chunks[0].text
        assert "Notes" not in chunks[0].text

    def test_format_section_empty_value(self):
        assert format_section("notes", None) == ""
        assert format_section("tags", []) == ""
        assert format_section("short_description", "Hi") == "Short description: Hi"

    def test_sections_packed_within_budget(self, chunker):
        sentence = "Alpha bravo charlie delta echo foxtrot golf hotel india juliet kilo lima."
        sections = {f"part_{i}": sentence for i in range(8)}

        chunks = chunker.chunk_structured_content(sections, "page", chunk_size=50, overlap_size=10)

        assert len(chunks) > 1
        assert all(chunk.token_count <= 50 for chunk in chunks)
        packed = [key for chunk in chunks for key in chunk.metadata["sections"]]
        assert packed == list(sections)

    def test_oversize_section_split(self, chunker, long_text):
        chunks = chunker.chunk_structured_content(
            {"title": "Warehouse notes", "content": long_text},
            "page",
            chunk_size=100,
            overlap_size=20,
        )

        fragments = [c for c in chunks if c.metadata.get("primary_section") == "content"]
        assert len(fragments) > 1
        assert all(c.metadata["is_section_fragment"] for c in fragments)
        assert all(c.token_count <= 100 for c in chunks)
        assert chunks[0].metadata["sections"] == ["title"]

    def test_empty_sections_rejected(self, chunker):
        with pytest.raises(EmptyContentError):
            chunker.chunk_structured_content({}, "product")

        with pytest.raises(EmptyContentError):
            chunker.chunk_structured_content({"title": "", "description": None}, "product")


# ============================================================================
# Configuration
# ============================================================================

class TestConfiguration:
    """Content-type configuration and sizing helpers."""

    def test_unknown_type_uses_default(self, chunker):
        config = chunker.get_config("newsletter")

        assert config.chunk_size == 1000
        assert config.overlap_size == 100

    def test_get_config_returns_copy(self, chunker):
        config = chunker.get_config("product")
        config.priority_sections.append("mutated")

        assert "mutated" not in chunker.get_config("product").priority_sections

    def test_update_content_type_config(self, chunker):
        chunker.update_content_type_config("post", {"chunk_size": 500, "overlap_size": 50})

        config = chunker.get_config("post")
        assert config.chunk_size == 500
        assert config.overlap_size == 50
        assert config.priority_sections == ["title", "content", "tags", "categories"]

    def test_update_adds_new_type(self, chunker):
        chunker.update_content_type_config("faq", {"chunk_size": 400, "overlap_size": 40})

        assert "faq" in chunker.get_statistics()["supported_content_types"]

    @pytest.mark.parametrize("config", [
        {"chunk_size": 500},
        {"chunk_size": 500, "overlap_size": 300},
        {"chunk_size": 500, "overlap_size": 50, "strategy": "semantic"},
    ])
    def test_invalid_update_leaves_config_unchanged(self, chunker, config):
        with pytest.raises(ChunkValidationError):
            chunker.update_content_type_config("post", config)

        assert chunker.get_config("post").chunk_size == 1200

    def test_optimal_chunk_size(self, chunker):
        assert chunker.calculate_optimal_chunk_size("short", "post") == 300
        assert chunker.calculate_optimal_chunk_size("a" * 1000, "post") == 1200
        assert chunker.calculate_optimal_chunk_size("a" * 12000, "post") == 1800
        assert chunker.calculate_optimal_chunk_size("para.\n\n" * 11, "post") == 360

    def test_optimal_chunk_size_capped(self, chunker):
        content = ("x" * 1000 + "\n\n") * 12

        assert chunker.calculate_optimal_chunk_size(content, "post") == 2000

    def test_statistics(self, chunker):
        stats = chunker.get_statistics()

        assert stats["min_chunk_size"] == 50
        assert stats["max_chunk_size"] == 2000
        assert stats["tokens_per_char_ratio"] == 0.25
        assert stats["content_type_configs"]["product"]["preserve_structure"] is True
