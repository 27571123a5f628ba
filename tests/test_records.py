import numpy as np
import pytest

from embedpipe.errors import CollectionDimensionMismatch
from embedpipe.records import EmbeddingCollection, VectorRecord


def test_record_values_are_float32_and_read_only():
    record = VectorRecord(values=[1, 2, 3], text='x', timestamp=1)
    assert record.values.dtype == np.float32
    assert record.dimension == 3
    with pytest.raises(ValueError):
        record.values[0] = 9.0


def test_record_timestamp_defaults_to_now():
    record = VectorRecord(values=[0.0])
    assert record.timestamp > 1_600_000_000


def test_record_equality_is_bit_exact():
    a = VectorRecord(values=[0.0, 1.0], text='t', timestamp=1)
    b = VectorRecord(values=[-0.0, 1.0], text='t', timestamp=1)
    assert a == VectorRecord(values=[0.0, 1.0], text='t', timestamp=1)
    assert a != b


def test_append_checks_dimension():
    c = EmbeddingCollection('m', 'v', 3)
    c.append(VectorRecord(values=[1.0, 2.0, 3.0]))
    with pytest.raises(CollectionDimensionMismatch) as exc:
        c.append(VectorRecord(values=[1.0, 2.0]))
    assert exc.value.index == 1
    assert len(c) == 1


def test_constructor_checks_dimension():
    with pytest.raises(CollectionDimensionMismatch):
        EmbeddingCollection('m', 'v', 2, [VectorRecord(values=[1.0])])


def test_vectors_matrix():
    c = EmbeddingCollection('m', 'v', 2)
    assert c.vectors().shape == (0, 2)
    c.extend([VectorRecord(values=[1.0, 0.0]), VectorRecord(values=[0.0, 1.0])])
    assert c.vectors().shape == (2, 2)
    assert [r.values.tolist() for r in c] == [[1.0, 0.0], [0.0, 1.0]]


@pytest.mark.parametrize('values', [np.zeros((2, 3)), 1.0])
def test_record_values_must_be_one_dimensional(values):
    with pytest.raises(ValueError):
        VectorRecord(values=values)
