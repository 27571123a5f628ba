"""
Download the embedding model into the local cache directory.
Run once before working offline:
    python -m scripts.download_model

Safe to re-run: a model that is already cached is left untouched.
"""
import logging
import sys

from embedpipe import config
from embedpipe.errors import ModelUnavailable
from embedpipe.runner.model_store import ModelStore


def main():
    logging.basicConfig(level=config.LOG_LEVEL)
    store = ModelStore(
        config.MODEL_REPO,
        config.CACHE_DIR,
        retries=config.DOWNLOAD_RETRIES,
        backoff=config.DOWNLOAD_BACKOFF,
    )
    print(f"Fetching {config.MODEL_REPO} into {store.cache_dir}...")
    try:
        path = store.ensure()
    except ModelUnavailable as e:
        print(f"ModelUnavailable: {e}", file=sys.stderr)
        return 1
    print(f"Done: {path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
