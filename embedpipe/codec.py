"""
Protobuf codec for embedding collections.

Schema (package `embeddings`):

    message Embedding {
      repeated float values = 1 [packed=true];
      string text = 2;
      int64 timestamp = 3;
    }

    message EmbeddingCollection {
      repeated Embedding embeddings = 1;
      string model_name = 2;
      string model_version = 3;
      int32 dimension = 4;
    }

The message classes are built from a FileDescriptorProto at import time, so no
protoc step is needed. Values travel as a packed float field: one contiguous
little-endian float32 run per record.

Concatenated protobuf messages merge, with repeated fields appended. The
streaming CollectionWriter relies on this: a metadata header followed by one
single-record message per append is itself a valid EmbeddingCollection, so
the file can be read back after every completed append.
"""
import logging
import os
import tempfile
from pathlib import Path

import numpy as np
from google.protobuf import descriptor_pb2, descriptor_pool, message_factory
from google.protobuf.message import DecodeError

from embedpipe.errors import CollectionDimensionMismatch, MalformedInput
from embedpipe.records import EmbeddingCollection, VectorRecord

logger = logging.getLogger(__name__)

_FIELD = descriptor_pb2.FieldDescriptorProto


def _build_messages():
    fdp = descriptor_pb2.FileDescriptorProto(
        name='embeddings.proto',
        package='embeddings',
        syntax='proto3',
    )

    embedding = fdp.message_type.add(name='Embedding')
    values = embedding.field.add(name='values', number=1, type=_FIELD.TYPE_FLOAT, label=_FIELD.LABEL_REPEATED)
    values.options.packed = True
    embedding.field.add(name='text', number=2, type=_FIELD.TYPE_STRING, label=_FIELD.LABEL_OPTIONAL)
    embedding.field.add(name='timestamp', number=3, type=_FIELD.TYPE_INT64, label=_FIELD.LABEL_OPTIONAL)

    collection = fdp.message_type.add(name='EmbeddingCollection')
    collection.field.add(
        name='embeddings', number=1, type=_FIELD.TYPE_MESSAGE, label=_FIELD.LABEL_REPEATED,
        type_name='.embeddings.Embedding',
    )
    collection.field.add(name='model_name', number=2, type=_FIELD.TYPE_STRING, label=_FIELD.LABEL_OPTIONAL)
    collection.field.add(name='model_version', number=3, type=_FIELD.TYPE_STRING, label=_FIELD.LABEL_OPTIONAL)
    collection.field.add(name='dimension', number=4, type=_FIELD.TYPE_INT32, label=_FIELD.LABEL_OPTIONAL)

    pool = descriptor_pool.DescriptorPool()
    pool.AddSerializedFile(fdp.SerializeToString())
    return (
        message_factory.GetMessageClass(pool.FindMessageTypeByName('embeddings.Embedding')),
        message_factory.GetMessageClass(pool.FindMessageTypeByName('embeddings.EmbeddingCollection')),
    )


EmbeddingMessage, EmbeddingCollectionMessage = _build_messages()


def _to_message(record: VectorRecord):
    msg = EmbeddingMessage(text=record.text, timestamp=record.timestamp)
    msg.values.extend(record.values.tolist())
    return msg


def _from_message(msg) -> VectorRecord:
    return VectorRecord(
        values=np.array(msg.values, dtype=np.float32),
        text=msg.text,
        timestamp=msg.timestamp,
    )


def encode(collection: EmbeddingCollection) -> bytes:
    """Serialize a collection. Output is deterministic for equal collections."""
    msg = EmbeddingCollectionMessage(
        model_name=collection.model_name,
        model_version=collection.model_version,
        dimension=collection.dimension,
    )
    msg.embeddings.extend(_to_message(r) for r in collection.records)
    return msg.SerializeToString(deterministic=True)


def decode(data: bytes) -> EmbeddingCollection:
    """
    Parse bytes produced by `encode` or by a CollectionWriter.

    Raises:
        MalformedInput: bytes are not a structurally valid collection
        CollectionDimensionMismatch: a record's length differs from `dimension`
    """
    msg = EmbeddingCollectionMessage()
    try:
        msg.ParseFromString(bytes(data))
    except DecodeError as e:
        raise MalformedInput(f"Cannot parse embedding collection: {e}") from e

    if msg.dimension < 0:
        raise MalformedInput(f"Negative dimension in collection header: {msg.dimension}")

    records = []
    for i, emb in enumerate(msg.embeddings):
        if len(emb.values) != msg.dimension:
            raise CollectionDimensionMismatch(msg.dimension, len(emb.values), i)
        records.append(_from_message(emb))

    return EmbeddingCollection(
        model_name=msg.model_name,
        model_version=msg.model_version,
        dimension=msg.dimension,
        records=records,
    )


def save(collection: EmbeddingCollection, path) -> Path:
    """
    Write a collection atomically: temp file in the target directory, then rename.
    A reader never sees a half-written file at `path`.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = encode(collection)

    fd, tmp_name = tempfile.mkstemp(prefix=f'.{path.name}.', suffix='.tmp', dir=path.parent)
    try:
        with os.fdopen(fd, 'wb') as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise

    logger.info(f"Saved {len(collection)} embeddings to {path} ({len(data)} bytes)")
    return path


def load(path) -> EmbeddingCollection:
    path = Path(path)
    collection = decode(path.read_bytes())
    logger.info(f"Loaded {len(collection)} embeddings from {path} (model={collection.model_name}, dim={collection.dimension})")
    return collection


class CollectionWriter:
    """
    Append-as-computed writer for collections too large to hold in memory.

    Usage:
        with CollectionWriter(path, 'all-MiniLM-L6-v2', 'v1.0', 384) as writer:
            for record in records:
                writer.append(record)

    Each append is written and flushed as one unit, so after any completed
    append (including after cancellation or a crash between appends) the file
    decodes to the records written so far.
    """

    def __init__(self, path, model_name: str, model_version: str, dimension: int):
        self.path = Path(path)
        self.model_name = model_name
        self.model_version = model_version
        self.dimension = dimension
        self.count = 0

        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(self.path, 'wb')
        header = EmbeddingCollectionMessage(
            model_name=model_name,
            model_version=model_version,
            dimension=dimension,
        )
        self._file.write(header.SerializeToString(deterministic=True))
        self._file.flush()

    @classmethod
    def for_collection(cls, path, collection: EmbeddingCollection) -> 'CollectionWriter':
        """Open a writer with the same provenance as `collection` (records are not copied)."""
        return cls(path, collection.model_name, collection.model_version, collection.dimension)

    @property
    def closed(self) -> bool:
        return self._file.closed

    def append(self, record: VectorRecord) -> None:
        if record.dimension != self.dimension:
            raise CollectionDimensionMismatch(self.dimension, record.dimension, self.count)
        chunk = EmbeddingCollectionMessage()
        chunk.embeddings.append(_to_message(record))
        self._file.write(chunk.SerializeToString(deterministic=True))
        self._file.flush()
        self.count += 1

    def close(self) -> None:
        if not self._file.closed:
            self._file.close()
            logger.info(f"Streamed {self.count} embeddings to {self.path}")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False
