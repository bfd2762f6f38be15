"""Tests for word-window chunking and chunk planning."""
import math

import pytest

from ragdesk.chunking import ImageCaption, build_chunks, chunk_words, validate_chunking, words_for_tokens


def words(n: int) -> str:
    return " ".join(f"w{i}" for i in range(n))


class TestWordBudget:
    def test_token_to_word_conversion(self):
        assert words_for_tokens(800) == 600
        assert words_for_tokens(100) == 75
        assert words_for_tokens(1) == 0


class TestChunkWords:
    def test_default_budget_on_1000_words(self):
        chunks = chunk_words(words(1000), 800, 100)
        assert len(chunks) == 2
        first, second = chunks[0].split(), chunks[1].split()
        assert len(first) == 600
        # consecutive windows share exactly the overlap
        assert first[-75:] == second[:75]
        covered = set(first) | set(second)
        assert covered == set(words(1000).split())

    @pytest.mark.parametrize("n", [601, 700, 1000, 1125, 1126, 5000])
    def test_chunk_count_formula(self, n):
        size, overlap = 600, 75
        expected = math.ceil((n - overlap) / (size - overlap))
        assert len(chunk_words(words(n), 800, 100)) == expected

    @pytest.mark.parametrize("n", [1, 10, 600])
    def test_short_text_is_one_chunk(self, n):
        chunks = chunk_words(words(n), 800, 100)
        assert chunks == [words(n)]

    def test_empty_text_has_no_chunks(self):
        assert chunk_words("   ", 800, 100) == []

    def test_whitespace_is_normalized(self):
        assert chunk_words("a\n\nb\t c", 800, 100) == ["a b c"]


class TestValidation:
    @pytest.mark.parametrize(
        "size,overlap",
        [(100, 100), (100, 150), (0, 0), (-5, 0), (100, -1), (1, 0), (10, 9)],
    )
    def test_rejects_configs_that_cannot_advance(self, size, overlap):
        with pytest.raises(ValueError):
            validate_chunking(size, overlap)
        with pytest.raises(ValueError):
            chunk_words(words(50), size, overlap)

    def test_accepts_defaults(self):
        validate_chunking(800, 100)
        validate_chunking(800, 0)


class TestBuildChunks:
    def test_image_chunks_follow_text_chunks(self):
        captions = [
            ImageCaption(index=0, path="u/d/image_0.png", caption="A bar chart"),
            ImageCaption(index=2, path="u/d/image_2.png", caption="A logo"),
        ]
        planned = build_chunks(words(1000), 800, 100, captions)
        assert [c.chunk_index for c in planned] == list(range(4))
        assert [c.has_image for c in planned] == [False, False, True, True]
        assert planned[2].content == "[IMAGE 1] A bar chart"
        assert planned[3].content == "[IMAGE 3] A logo"
        assert planned[3].image_path == "u/d/image_2.png"
        assert planned[3].image_caption == "A logo"
        assert planned[3].image_index == 2

    def test_without_captions(self):
        planned = build_chunks("just a few words", 800, 100)
        assert len(planned) == 1
        assert planned[0].chunk_index == 0
        assert planned[0].image_path is None
