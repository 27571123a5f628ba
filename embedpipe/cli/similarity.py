"""
Compare a new text against embeddings stored in a collection file.

Usage:
    embedpipe-similarity --embedding-file cat.pb --text "A cat was sitting."
    embedpipe-similarity -e corpus.pb -t "dogs" --top-k 5
"""
import argparse
import logging
import sys
from pathlib import Path

from embedpipe import codec, config
from embedpipe.embedder import Embedder, cosine_similarity
from embedpipe.errors import EmbedPipeError
from embedpipe.metrics import write_metrics

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='embedpipe-similarity',
        description='Cosine similarity between a stored embedding and a new text.',
    )
    parser.add_argument('-e', '--embedding-file', type=Path, required=True,
                        help='Collection file produced by embedpipe-embed')
    parser.add_argument('-t', '--text', required=True, help='Text to compare with the embedding')
    parser.add_argument('-i', '--index', type=int, default=0, help='Stored record to compare against')
    parser.add_argument('-k', '--top-k', type=int,
                        help='Rank every stored record and print the K most similar')
    parser.add_argument('--device', default=config.DEVICE, help='auto, cpu, cuda or mps')
    return parser


def rank(collection, vector, top_k: int) -> list[tuple[int, float]]:
    """(record index, similarity) for the top_k most similar records, best first."""
    scores = [(i, cosine_similarity(record.values, vector)) for i, record in enumerate(collection)]
    scores.sort(key=lambda item: item[1], reverse=True)
    return scores[:top_k]


def main(argv=None, embedder: Embedder | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.top_k is not None and args.top_k < 1:
        parser.error('--top-k must be >= 1')
    logging.basicConfig(level=config.LOG_LEVEL)

    try:
        print(f"Loading embedding from {args.embedding_file}")
        collection = codec.load(args.embedding_file)
        if not len(collection):
            print("No embeddings found in the file")
            return 0
        if args.top_k is None and not 0 <= args.index < len(collection):
            print(f"IndexError: record {args.index} out of range (file holds {len(collection)})", file=sys.stderr)
            return 1

        if embedder is None:
            embedder = Embedder(device=args.device)
        print("Loading model...")
        embedder.initialize()
        if collection.model_name != embedder.model_name:
            logger.warning(f"File was embedded with {collection.model_name}, comparing with {embedder.model_name}")

        print(f"Embedding text: {args.text}")
        vector = embedder.embed_text(args.text)

        if args.top_k is not None:
            for i, score in rank(collection, vector, args.top_k):
                print(f"{score:.6f}  [{i}] {collection[i].text}")
        else:
            stored = collection[args.index]
            similarity = embedder.cosine_similarity(stored.values, vector)
            print(f"Similarity: {similarity:.6f}")
            if stored.text:
                print(f"Original text: {stored.text}")
        print(f"Input text: {args.text}")

    except KeyboardInterrupt:
        print("Cancelled: interrupted", file=sys.stderr)
        return 130
    except (EmbedPipeError, OSError) as e:
        logger.error(f"embedpipe-similarity failed: {e}")
        print(f"{type(e).__name__}: {e}", file=sys.stderr)
        return 1
    finally:
        if config.METRICS_FILE:
            write_metrics(config.METRICS_FILE)

    return 0


if __name__ == '__main__':
    sys.exit(main())
