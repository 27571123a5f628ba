import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()


def _bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == '':
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'y', 'on')


def _default_cache_dir() -> Path:
    xdg = os.getenv('XDG_CACHE_HOME')
    base = Path(xdg) if xdg else Path.home() / '.cache'
    return base / 'embedpipe'


# Model
MODEL_NAME = os.getenv('EMBEDPIPE_MODEL_NAME', 'all-MiniLM-L6-v2')
MODEL_REPO = os.getenv('EMBEDPIPE_MODEL_REPO', 'sentence-transformers/all-MiniLM-L6-v2')
MODEL_VERSION = os.getenv('EMBEDPIPE_MODEL_VERSION', 'v1.0')
EMBEDDING_DIM = int(os.getenv('EMBEDPIPE_EMBEDDING_DIM', 384))

# Model cache / download
CACHE_DIR = Path(os.getenv('EMBEDPIPE_CACHE_DIR') or _default_cache_dir())
DOWNLOAD_RETRIES = int(os.getenv('EMBEDPIPE_DOWNLOAD_RETRIES', 3))
DOWNLOAD_BACKOFF = float(os.getenv('EMBEDPIPE_DOWNLOAD_BACKOFF', 0.8))

# Hardware: auto | cpu | cuda | mps
DEVICE = os.getenv('EMBEDPIPE_DEVICE', 'auto')
ALLOW_CPU_FALLBACK = _bool('EMBEDPIPE_ALLOW_CPU_FALLBACK', True)

# Batch pipeline
WORKERS = int(os.getenv('EMBEDPIPE_WORKERS') or os.cpu_count() or 1)
CHUNK_SIZE = int(os.getenv('EMBEDPIPE_CHUNK_SIZE', 256))
# 0 means unbounded
CACHE_MAX_ENTRIES = int(os.getenv('EMBEDPIPE_CACHE_MAX_ENTRIES', 0))
# Input files larger than this are streamed to the output instead of buffered
STREAM_THRESHOLD_BYTES = int(os.getenv('EMBEDPIPE_STREAM_THRESHOLD_BYTES', 64 * 1024 * 1024))

# Metrics textfile (node-exporter textfile collector); unset disables export
METRICS_FILE = os.getenv('EMBEDPIPE_METRICS_FILE')

# Logging
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
