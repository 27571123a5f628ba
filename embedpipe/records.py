"""
Vector records and the collections that hold them.
"""
import time
from dataclasses import dataclass, field

import numpy as np

from embedpipe.errors import CollectionDimensionMismatch


def as_vector(values) -> np.ndarray:
    """Return a read-only 1-D float32 copy of `values`. Anything not 1-D is rejected."""
    arr = np.array(values, dtype=np.float32)
    if arr.ndim != 1:
        raise ValueError(f"Vector values must be 1-D, got shape {arr.shape}")
    arr.flags.writeable = False
    return arr


@dataclass(eq=False)
class VectorRecord:
    """Embedding vector + original text + creation time (epoch seconds)."""
    values: np.ndarray
    text: str = ''
    timestamp: int = field(default_factory=lambda: int(time.time()))

    def __post_init__(self):
        self.values = as_vector(self.values)

    @property
    def dimension(self) -> int:
        return int(self.values.shape[0])

    def __eq__(self, other):
        if not isinstance(other, VectorRecord):
            return NotImplemented
        # Bit-exact: NaN payloads and signed zeros must survive a round trip too
        return (
            self.text == other.text
            and self.timestamp == other.timestamp
            and self.values.tobytes() == other.values.tobytes()
        )

    def __repr__(self):
        preview = ', '.join(f"{v:.4f}" for v in self.values[:3])
        return f"VectorRecord(dim={self.dimension}, values=[{preview}, ...], text={self.text!r}, timestamp={self.timestamp})"


@dataclass
class EmbeddingCollection:
    """
    Ordered records plus the provenance of the model that produced them.

    `dimension` is fixed at creation; every appended record must match it.
    """
    model_name: str
    model_version: str
    dimension: int
    records: list[VectorRecord] = field(default_factory=list)

    def __post_init__(self):
        if self.dimension < 0:
            raise ValueError(f"dimension must be non-negative, got {self.dimension}")
        for i, record in enumerate(self.records):
            self._check(record, i)

    def _check(self, record: VectorRecord, index: int | None = None) -> None:
        if record.dimension != self.dimension:
            raise CollectionDimensionMismatch(self.dimension, record.dimension, index)

    def append(self, record: VectorRecord) -> None:
        self._check(record, len(self.records))
        self.records.append(record)

    def extend(self, records) -> None:
        for record in records:
            self.append(record)

    def vectors(self) -> np.ndarray:
        """All values as a (n, dimension) matrix."""
        if not self.records:
            return np.empty((0, self.dimension), dtype=np.float32)
        return np.stack([r.values for r in self.records])

    def __len__(self):
        return len(self.records)

    def __iter__(self):
        return iter(self.records)

    def __getitem__(self, index):
        return self.records[index]
