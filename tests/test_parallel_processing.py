"""
Tests for gridder/parallel_processing.py.

Chunked evaluation must return results in input order regardless of
which worker finishes first, and failed chunks must either re-raise or be
converted by the caller's error handler.
"""

import pytest

from gridder.parallel_processing import parallel_map_chunks, partition


class TestPartition:

    def test_disjoint_and_ordered(self):
        chunks = partition(range(10), 3)
        assert [i for c in chunks for i in c] == list(range(10))
        assert len(chunks) == 3

    def test_more_chunks_than_items(self):
        assert partition([1, 2], 8) == [[1], [2]]

    def test_empty(self):
        assert partition([], 4) == []


class TestParallelMapChunks:

    def test_sequential(self):
        assert parallel_map_chunks(sorted, [3, 1, 2], max_workers=1) == [1, 2, 3]

    def test_parallel_preserves_chunk_order(self):
        items = list(range(50))
        out = parallel_map_chunks(sorted, items, max_workers=2)
        assert out == items

    def test_error_reraised_without_handler(self):
        with pytest.raises(TypeError):
            parallel_map_chunks(int, [1, 2], max_workers=1)

    def test_error_handler_converts_chunk(self):
        out = parallel_map_chunks(int, [1, 2], max_workers=1,
                                  on_error=lambda chunk, exc: [type(exc).__name__] * len(chunk))
        assert out == ["TypeError", "TypeError"]

    def test_parallel_error_handler(self):
        # The second chunk mixes str and int, which sorted() rejects.
        out = parallel_map_chunks(sorted, [1, 0, "a", 2], max_workers=2,
                                  chunks_per_worker=1,
                                  on_error=lambda chunk, exc: [None] * len(chunk))
        assert out == [0, 1, None, None]

    def test_empty_items(self):
        assert parallel_map_chunks(sorted, [], max_workers=2) == []
