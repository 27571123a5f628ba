import hashlib
import threading
import time

import numpy as np
import pytest

from embedpipe.embedder import Embedder
from embedpipe.runner.hardware import Accelerator
from embedpipe.runner.model_store import MARKER_FILE, ModelStore
from embedpipe.runner.sentence_transformer import TokenEmbeddings

DIM = 384
REPO_ID = 'test-org/fake-minilm'


class FakeRunner:
    """
    Deterministic stand-in for a transformer: each whitespace token maps to a
    fixed pseudo-random vector seeded by its hash. A padding row with a zero
    attention mask is appended to every output.
    """

    def __init__(self, dimension: int = DIM, accelerators=None, fail_on=(), delay: float = 0.0):
        self._dimension = dimension
        self.accelerators = set(accelerators or {Accelerator.CPU})
        self.fail_on = set(fail_on)
        self.delay = delay
        self.calls = 0
        self.loads = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    @property
    def dimension(self) -> int:
        return self._dimension

    def capabilities(self):
        return self.accelerators

    def load(self, model_dir, accelerator):
        self.loads.append((model_dir, accelerator))

    def tokenize(self, text):
        return text.split()

    def _token_vector(self, token: str) -> np.ndarray:
        seed = int.from_bytes(hashlib.sha256(token.encode('utf-8')).digest()[:8], 'little')
        return np.random.default_rng(seed).standard_normal(self._dimension).astype(np.float32)

    def forward(self, tokens):
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            self.calls += 1
        try:
            if self.delay:
                time.sleep(self.delay)
            if self.fail_on.intersection(tokens):
                raise RuntimeError(f"forward failed on {tokens}")
            rows = [self._token_vector(t) for t in tokens]
            rows.append(np.full(self._dimension, 100.0, dtype=np.float32))
            mask = np.array([1] * len(tokens) + [0])
            return TokenEmbeddings(values=np.stack(rows), attention_mask=mask)
        finally:
            with self._lock:
                self.active -= 1


def make_cached_store(cache_dir, **kwargs) -> ModelStore:
    store = ModelStore(REPO_ID, cache_dir, **kwargs)
    store.model_dir.mkdir(parents=True, exist_ok=True)
    (store.model_dir / MARKER_FILE).write_text('{}')
    return store


def make_embedder(store, runner=None, **kwargs) -> Embedder:
    kwargs.setdefault('model_name', 'fake-minilm')
    kwargs.setdefault('model_version', 'test')
    kwargs.setdefault('dimension', DIM)
    kwargs.setdefault('device', 'cpu')
    return Embedder(runner or FakeRunner(), store, **kwargs)


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def cached_store(tmp_path):
    return make_cached_store(tmp_path / 'models')


@pytest.fixture
def embedder(runner, cached_store):
    emb = make_embedder(cached_store, runner)
    emb.initialize()
    yield emb
