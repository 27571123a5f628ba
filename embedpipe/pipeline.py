"""
Batch pipeline core logic. Framework-agnostic: the CLI feeds it texts and
decides whether records are collected in memory or streamed to a file.

Input is consumed lazily, chunk_size texts at a time. Each chunk is fanned out
over a bounded thread pool; results come back in input order regardless of
which worker finishes first. Cancellation is checked between chunks.
"""
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from itertools import islice
from pathlib import Path
from typing import Callable, Iterable, Iterator

from embedpipe import config
from embedpipe.cache import EmbeddingCache
from embedpipe.codec import CollectionWriter
from embedpipe.embedder import Embedder
from embedpipe.errors import BatchCancelled, EmbedError, NotInitialized
from embedpipe.metrics import batch_chunk_latency, batch_records
from embedpipe.records import EmbeddingCollection, VectorRecord

logger = logging.getLogger(__name__)

Failure = tuple[int, EmbedError]


def iter_lines(path) -> Iterator[str]:
    """
    Yield the lines of a UTF-8 text file one at a time, without line endings.

    Undecodable bytes come through as lone surrogates, so a bad line fails on
    its own (InvalidText from the embedder) instead of aborting the read.
    """
    with open(Path(path), 'r', encoding='utf-8', errors='surrogateescape') as f:
        for line in f:
            yield line.rstrip('\r\n')


class BatchPipeline:
    def __init__(self, embedder: Embedder, cache: EmbeddingCache | None = None,
                 concurrency: int | None = None, chunk_size: int = config.CHUNK_SIZE):
        if concurrency is not None and concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")
        if chunk_size < 1:
            raise ValueError(f"chunk_size must be >= 1, got {chunk_size}")
        self.embedder = embedder
        self.cache = cache
        self.concurrency = concurrency or config.WORKERS
        self.chunk_size = chunk_size

    def _embed_one(self, text: str) -> VectorRecord:
        if self.cache is not None:
            vector = self.cache.get_or_compute(text, self.embedder)
        else:
            vector = self.embedder.embed_text(text)
        return VectorRecord(values=vector, text=text)

    def _attempt(self, item: tuple[int, str]):
        index, text = item
        try:
            return index, self._embed_one(text), None
        except EmbedError as e:
            return index, None, e

    def _chunks(self, texts: Iterable[str]) -> Iterator[list[tuple[int, str]]]:
        numbered = enumerate(texts)
        while True:
            chunk = list(islice(numbered, self.chunk_size))
            if not chunk:
                return
            yield chunk

    def _process(self, texts: Iterable[str], emit: Callable[[VectorRecord], None],
                 cancel: threading.Event | None) -> tuple[int, list[Failure]]:
        if not self.embedder.is_ready:
            raise NotInitialized("Embedder must be initialized before a batch run")

        produced = 0
        failures: list[Failure] = []

        logger.info(f"Batch run: workers={self.concurrency}, chunk_size={self.chunk_size}")
        with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix='embed') as pool:
            for chunk in self._chunks(texts):
                if cancel is not None and cancel.is_set():
                    logger.warning(f"Batch cancelled after {produced} records")
                    raise BatchCancelled(produced)

                start = time.time()
                # map() yields in submission order, not completion order
                for index, record, error in pool.map(self._attempt, chunk):
                    if error is not None:
                        batch_records.labels(outcome='failed').inc()
                        logger.warning(f"Skipping input {index}: {type(error).__name__}: {error}")
                        failures.append((index, error))
                        continue
                    emit(record)
                    produced += 1
                    batch_records.labels(outcome='ok').inc()

                elapsed = time.time() - start
                batch_chunk_latency.observe(elapsed)
                logger.info(f"Chunk of {len(chunk)} done in {elapsed:.2f}s ({produced} records so far)")

        logger.info(f"Batch complete: {produced} records, {len(failures)} failed")
        return produced, failures

    def run(self, texts: Iterable[str],
            cancel: threading.Event | None = None) -> tuple[EmbeddingCollection, list[Failure]]:
        """
        Embed every text into an in-memory collection.

        Returns (collection, failures); failures lists (input index, error) for
        skipped items. Raises BatchCancelled if `cancel` is set mid-run.
        """
        collection = self.embedder.new_collection()
        _, failures = self._process(texts, collection.append, cancel)
        return collection, failures

    def stream(self, texts: Iterable[str], writer: CollectionWriter,
               cancel: threading.Event | None = None) -> tuple[int, list[Failure]]:
        """
        Embed every text, appending each record to `writer` as soon as its
        chunk completes. Returns (records written, failures).
        """
        return self._process(texts, writer.append, cancel)

    def drain(self, texts: Iterable[str],
              cancel: threading.Event | None = None) -> tuple[int, list[Failure]]:
        """Embed every text and discard the records. Returns (records produced, failures)."""
        return self._process(texts, lambda record: None, cancel)
