from __future__ import annotations

import math

from ragrelay.core.config import get_settings
from ragrelay.domain.models import DocumentVector
from ragrelay.services.ingestion.callbacks import dimension_reject_reason, partition_vectors
from ragrelay.tests.utils.fakes import embedding


DIM = 4


def _chunk(index: int, dim: int = DIM, **overrides) -> dict:
    item = {"chunk_index": index, "chunk_text": f"chunk {index}", "embedding": embedding(dim), "metadata": {"page": index}}
    item.update(overrides)
    return item


def test_mixed_batch_keeps_valid_rows_and_counts_rejects() -> None:
    items = [_chunk(0), _chunk(1, dim=3), _chunk(2), _chunk(3, dim=5), _chunk(4)]

    rows, rejected = partition_vectors(items, dimension=DIM)

    assert [row["chunk_index"] for row in rows] == [0, 2, 4]
    assert [position for position, _ in rejected] == [1, 3]
    assert all("finite numbers" in reason for _, reason in rejected)


def test_non_numeric_and_non_finite_embeddings_are_rejected() -> None:
    items = [
        _chunk(0, embedding=[0.1, "x", 0.2, 0.3]),
        _chunk(1, embedding=[0.1, math.nan, 0.2, 0.3]),
        _chunk(2, embedding=[True, 0.1, 0.2, 0.3]),
        _chunk(3, embedding=None),
    ]

    rows, rejected = partition_vectors(items, dimension=DIM)

    assert rows == []
    assert len(rejected) == 4


def test_text_and_index_are_validated() -> None:
    items = [
        "not-a-dict",
        _chunk(1, chunk_text="  "),
        _chunk(-1),
        {"content": "legacy text key", "embedding": embedding(DIM)},
    ]

    rows, rejected = partition_vectors(items, dimension=DIM)

    assert [position for position, _ in rejected] == [0, 1, 2]
    # Missing chunk_index falls back to the position in the batch.
    assert rows == [{"chunk_index": 3, "chunk_text": "legacy text key", "embedding": embedding(DIM), "metadata": {}}]


def test_repeated_chunk_index_keeps_last_occurrence() -> None:
    items = [_chunk(0, chunk_text="first"), _chunk(0, chunk_text="second")]

    rows, rejected = partition_vectors(items, dimension=DIM)

    assert [row["chunk_text"] for row in rows] == ["second"]
    assert rejected == [(1, "duplicate chunk_index")]


def test_wrong_length_and_bad_values_have_distinct_reasons() -> None:
    items = [_chunk(0, dim=3), _chunk(1, embedding=[0.1, math.inf, 0.2, 0.3])]

    _, rejected = partition_vectors(items, dimension=DIM)

    assert rejected == [
        (0, dimension_reject_reason(DIM)),
        (1, "embedding values must be finite numbers"),
    ]


def test_vector_column_matches_configured_dimension() -> None:
    column = DocumentVector.__table__.c.embedding
    assert column.type.dim == get_settings().vector_dimension
