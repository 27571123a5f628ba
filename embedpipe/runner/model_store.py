"""
Local model cache with a retrying download from the Hugging Face Hub.

Model files live under <cache_dir>/<org>--<name>/. A directory that already
holds a config.json counts as cached and is used without touching the network.
"""
import logging
import threading
import time
from pathlib import Path
from typing import Callable

from embedpipe.errors import ModelUnavailable
from embedpipe.metrics import model_downloads

logger = logging.getLogger(__name__)

MARKER_FILE = 'config.json'
BACKOFF_FACTOR = 1.7


def hub_download(repo_id: str, target: Path) -> None:
    """Fetch a full model snapshot into `target`."""
    from huggingface_hub import snapshot_download

    snapshot_download(repo_id=repo_id, local_dir=str(target))


class ModelStore:
    def __init__(self, repo_id: str, cache_dir, *, retries: int = 3, backoff: float = 0.8,
                 fetcher: Callable[[str, Path], None] | None = None,
                 sleep: Callable[[float], None] = time.sleep):
        if retries < 1:
            raise ValueError(f"retries must be >= 1, got {retries}")
        self.repo_id = repo_id
        self.cache_dir = Path(cache_dir)
        self.retries = retries
        self.backoff = backoff
        self._fetch = fetcher or hub_download
        self._sleep = sleep

    @property
    def model_dir(self) -> Path:
        return self.cache_dir / self.repo_id.replace('/', '--')

    def is_cached(self) -> bool:
        return (self.model_dir / MARKER_FILE).is_file()

    def _wait(self, delay: float, cancel: threading.Event | None) -> None:
        if cancel is None:
            self._sleep(delay)
        elif cancel.wait(delay):
            raise ModelUnavailable(f"Download of {self.repo_id} cancelled")

    def ensure(self, cancel: threading.Event | None = None) -> Path:
        """
        Return the local model directory, downloading it first if needed.

        Retries the download `retries` times with multiplicative backoff.
        Raises ModelUnavailable when every attempt fails or `cancel` is set.
        """
        if self.is_cached():
            logger.info(f"Model {self.repo_id} found in cache: {self.model_dir}")
            return self.model_dir

        self.model_dir.mkdir(parents=True, exist_ok=True)
        delay = self.backoff
        last_error = None

        for attempt in range(1, self.retries + 1):
            if cancel is not None and cancel.is_set():
                raise ModelUnavailable(f"Download of {self.repo_id} cancelled")

            logger.info(f"Downloading {self.repo_id} to {self.model_dir} (attempt {attempt}/{self.retries})")
            try:
                self._fetch(self.repo_id, self.model_dir)
                if not self.is_cached():
                    raise FileNotFoundError(f"{MARKER_FILE} missing after download")
                model_downloads.labels(outcome='success').inc()
                logger.info(f"Model {self.repo_id} downloaded.")
                return self.model_dir
            except Exception as e:
                model_downloads.labels(outcome='failure').inc()
                logger.warning(f"Model download failed (attempt {attempt}/{self.retries}): {e}")
                last_error = e

            if attempt < self.retries:
                self._wait(delay, cancel)
                delay *= BACKOFF_FACTOR

        raise ModelUnavailable(
            f"Could not obtain model {self.repo_id} after {self.retries} attempts: {last_error}"
        ) from last_error
