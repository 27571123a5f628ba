"""
Embed a single text, or a newline-delimited file of texts, into a collection file.

Usage:
    embedpipe-embed --text "The cat sat." --output cat.pb
    embedpipe-embed --file corpus.txt --output corpus.pb --workers 8

Files larger than EMBEDPIPE_STREAM_THRESHOLD_BYTES are streamed to the output
record by record; smaller ones are embedded in memory and written atomically.
Without --output nothing is kept, only counted.

Exit codes: 0 ok, 1 model/embedding/codec/file error, 2 bad arguments,
130 interrupted (anything already streamed stays readable).
"""
import argparse
import contextlib
import logging
import signal
import sys
import threading
from pathlib import Path

from embedpipe import codec, config
from embedpipe.cache import EmbeddingCache
from embedpipe.embedder import Embedder
from embedpipe.errors import BatchCancelled, EmbedPipeError
from embedpipe.metrics import write_metrics
from embedpipe.pipeline import BatchPipeline, iter_lines

logger = logging.getLogger(__name__)

PREVIEW_VALUES = 5


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='embedpipe-embed',
        description=f"Embed text with {config.MODEL_NAME} and store the vectors.",
    )
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument('-t', '--text', help='Text to embed')
    source.add_argument('-f', '--file', type=Path, help='File containing text to embed (one text per line)')
    parser.add_argument('-o', '--output', type=Path, help='Output file for the embeddings (.pb)')
    parser.add_argument('--workers', type=int, default=config.WORKERS, help='Worker threads for --file')
    parser.add_argument('--chunk-size', type=int, default=config.CHUNK_SIZE, help='Texts per work chunk')
    parser.add_argument('--cache-size', type=int, default=config.CACHE_MAX_ENTRIES,
                        help='Max cached embeddings, 0 for unbounded')
    parser.add_argument('--device', default=config.DEVICE, help='auto, cpu, cuda or mps')
    return parser


@contextlib.contextmanager
def cancel_on_sigint():
    """
    Turn the first Ctrl-C into a cooperative cancel flag; a second one
    interrupts immediately.
    """
    cancel = threading.Event()

    def _handler(signum, frame):
        logger.warning("Interrupt received, stopping after the current chunk (Ctrl-C again to abort)")
        cancel.set()
        signal.signal(signal.SIGINT, previous)

    if threading.current_thread() is not threading.main_thread():
        yield cancel
        return

    previous = signal.signal(signal.SIGINT, _handler)
    try:
        yield cancel
    finally:
        signal.signal(signal.SIGINT, previous)


def embed_single(embedder: Embedder, text: str, output: Path | None) -> None:
    print(f"Embedding single text: {text}")
    record = embedder.embed_record(text)
    print(f"Embedding size: {record.dimension}")
    print(f"First few values: {record.values[:PREVIEW_VALUES].tolist()}")

    if output:
        collection = embedder.new_collection()
        collection.append(record)
        codec.save(collection, output)
        print(f"Embedding saved to {output}")


def embed_file(embedder: Embedder, path: Path, output: Path | None, *, workers: int,
               chunk_size: int, cache_size: int) -> None:
    print(f"Embedding texts from file: {path}")
    size = path.stat().st_size
    cache = EmbeddingCache(max_entries=cache_size)
    pipeline = BatchPipeline(embedder, cache=cache, concurrency=workers, chunk_size=chunk_size)

    with cancel_on_sigint() as cancel:
        if not output:
            count, failures = pipeline.drain(iter_lines(path), cancel)
        elif size > config.STREAM_THRESHOLD_BYTES:
            logger.info(f"Input is {size} bytes (> {config.STREAM_THRESHOLD_BYTES}), streaming to {output}")
            with codec.CollectionWriter.for_collection(output, embedder.new_collection()) as writer:
                count, failures = pipeline.stream(iter_lines(path), writer, cancel)
        else:
            collection, failures = pipeline.run(iter_lines(path), cancel)
            count = len(collection)
            codec.save(collection, output)

    print(f"Embedded {count} texts")
    if failures:
        print(f"Skipped {len(failures)} lines (first: line {failures[0][0] + 1}: {failures[0][1]})")
    print(f"Cache: {cache.hits} hits, {cache.misses} misses")
    if output:
        print(f"Embeddings saved to {output}")


def main(argv=None, embedder: Embedder | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=config.LOG_LEVEL)

    try:
        if embedder is None:
            embedder = Embedder(device=args.device)
        print("Loading model...")
        embedder.initialize()
        print(f"Using the {embedder.model_name} model for generating embeddings.")

        if args.text is not None:
            embed_single(embedder, args.text, args.output)
        else:
            embed_file(
                embedder, args.file, args.output,
                workers=args.workers, chunk_size=args.chunk_size, cache_size=args.cache_size,
            )
    except BatchCancelled as e:
        print(f"Cancelled: {e}", file=sys.stderr)
        return 130
    except KeyboardInterrupt:
        print("Cancelled: interrupted", file=sys.stderr)
        return 130
    except (EmbedPipeError, OSError) as e:
        logger.error(f"embedpipe-embed failed: {e}")
        print(f"{type(e).__name__}: {e}", file=sys.stderr)
        return 1
    finally:
        if config.METRICS_FILE:
            write_metrics(config.METRICS_FILE)

    return 0


if __name__ == '__main__':
    sys.exit(main())
