"""
Sentence embedder.

tokenize -> transformer forward pass -> mean pooling over the attention mask
-> L2 normalisation. Every vector it returns has unit norm, so cosine
similarity between two of them is a plain dot product.

An Embedder is an explicit object: create one, initialize() it, pass it to
whatever needs embeddings. There is no process-wide model.
"""
import enum
import logging
import threading
import time
from dataclasses import dataclass

import numpy as np

from embedpipe import config
from embedpipe.errors import (
    DimensionMismatch, EmbedError, EmptyInput, InitError, InvalidText, ModelFailure, ModelUnavailable,
    NotInitialized,
)
from embedpipe.metrics import embed_errors, embed_latency, model_runner_invocations
from embedpipe.records import EmbeddingCollection, VectorRecord, as_vector
from embedpipe.runner.hardware import Accelerator, select_device
from embedpipe.runner.model_store import ModelStore
from embedpipe.runner.sentence_transformer import ModelRunner, SentenceTransformerRunner, TokenEmbeddings

logger = logging.getLogger(__name__)


class EmbedderState(enum.Enum):
    UNINITIALIZED = 'uninitialized'
    INITIALIZING = 'initializing'
    READY = 'ready'
    FAILED = 'failed'


@dataclass
class EmbedResult:
    """Outcome for one item of embed_batch(): exactly one of vector / error is set."""
    index: int
    vector: np.ndarray | None = None
    error: EmbedError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def preprocess_text(text: str) -> str:
    """Trim, lower-case and collapse runs of whitespace."""
    return ' '.join(text.strip().lower().split())


def mean_pool(output: TokenEmbeddings) -> np.ndarray:
    """Average token vectors, counting only positions where the attention mask is set."""
    values = np.asarray(output.values, dtype=np.float32)
    mask = np.asarray(output.attention_mask, dtype=np.float32).reshape(-1)
    if values.ndim != 2 or values.shape[0] != mask.shape[0]:
        raise ModelFailure(f"Unexpected forward output shape {values.shape} for mask of {mask.shape[0]} tokens")

    count = mask.sum()
    if count <= 0:
        raise ModelFailure("Forward pass produced no attended tokens")
    return (values * mask[:, None]).sum(axis=0) / count


def l2_normalize(vector: np.ndarray) -> np.ndarray:
    norm = np.linalg.norm(vector)
    if norm == 0:
        return vector
    return vector / norm


def cosine_similarity(a, b) -> float:
    """
    dot(a, b) / (|a| * |b|), clamped to [-1, 1].

    Returns 0.0 when either vector is all zeros (by convention, not an error).
    Raises DimensionMismatch when the lengths differ.
    """
    a = np.asarray(a, dtype=np.float64).reshape(-1)
    b = np.asarray(b, dtype=np.float64).reshape(-1)
    if a.shape[0] != b.shape[0]:
        raise DimensionMismatch(a.shape[0], b.shape[0])

    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return float(np.clip(np.dot(a, b) / (norm_a * norm_b), -1.0, 1.0))


class Embedder:
    """
    Turns text into unit-length vectors through a ModelRunner.

    A single runner is shared by all threads using this embedder; tokenize and
    forward run under a lock, pooling and normalisation do not.

    States: UNINITIALIZED -> INITIALIZING -> READY, or -> FAILED. Calling
    initialize() again from FAILED retries from scratch.
    """

    def __init__(
            self,
            runner: ModelRunner | None = None,
            store: ModelStore | None = None,
            *,
            model_name: str = config.MODEL_NAME,
            model_version: str = config.MODEL_VERSION,
            dimension: int = config.EMBEDDING_DIM,
            device: str = config.DEVICE,
            allow_cpu_fallback: bool = config.ALLOW_CPU_FALLBACK,
            preprocess: bool = False,
    ):
        self.runner = runner or SentenceTransformerRunner()
        self.store = store or ModelStore(
            config.MODEL_REPO,
            config.CACHE_DIR,
            retries=config.DOWNLOAD_RETRIES,
            backoff=config.DOWNLOAD_BACKOFF,
        )
        self.model_name = model_name
        self.model_version = model_version
        self.dimension = dimension
        self.preferred_device = device
        self.allow_cpu_fallback = allow_cpu_fallback
        self.preprocess = preprocess

        self._state = EmbedderState.UNINITIALIZED
        self._accelerator: Accelerator | None = None
        self._init_lock = threading.Lock()
        self._runner_lock = threading.Lock()

    @property
    def state(self) -> EmbedderState:
        return self._state

    @property
    def accelerator(self) -> Accelerator | None:
        return self._accelerator

    @property
    def is_ready(self) -> bool:
        return self._state is EmbedderState.READY

    # --- lifecycle ---

    def initialize(self, cancel: threading.Event | None = None) -> None:
        """
        Obtain the model (cache or download), pick a device and load the runner.

        No-op once READY. Raises ModelUnavailable or HardwareUnsupported and
        leaves the embedder FAILED.
        """
        with self._init_lock:
            if self._state is EmbedderState.READY:
                return

            self._state = EmbedderState.INITIALIZING
            logger.info(f"Initializing embedder: {self.model_name} ({self.model_version})")
            try:
                accelerator = select_device(
                    self.preferred_device,
                    self.runner.capabilities(),
                    self.allow_cpu_fallback,
                )
                model_dir = self.store.ensure(cancel)
                try:
                    self.runner.load(model_dir, accelerator)
                except Exception as e:
                    raise ModelUnavailable(f"Failed to load model from {model_dir}: {e}") from e

                if self.runner.dimension != self.dimension:
                    raise ModelUnavailable(
                        f"Model produces {self.runner.dimension}-dim vectors, expected {self.dimension}"
                    )
            except InitError as e:
                self._state = EmbedderState.FAILED
                logger.error(f"Embedder initialization failed: {e}")
                raise
            except Exception as e:
                self._state = EmbedderState.FAILED
                logger.error(f"Embedder initialization failed: {e}")
                raise ModelUnavailable(str(e)) from e

            self._accelerator = accelerator
            self._state = EmbedderState.READY
            logger.info(f"Embedder ready on {accelerator.name} ({accelerator.device}), dim={self.dimension}")

    def _require_ready(self) -> None:
        if self._state is not EmbedderState.READY:
            embed_errors.labels(error_type='not_initialized').inc()
            raise NotInitialized(f"Embedder is {self._state.value}; call initialize() first")

    # --- embedding ---

    def embed_text(self, text: str) -> np.ndarray:
        """Return the unit-norm embedding of `text` as a read-only float32 array."""
        self._require_ready()
        if not text or not text.strip():
            embed_errors.labels(error_type='empty_input').inc()
            raise EmptyInput("Cannot embed empty or whitespace-only text")
        try:
            text.encode('utf-8')
        except UnicodeEncodeError as e:
            embed_errors.labels(error_type='invalid_text').inc()
            raise InvalidText(f"Text is not valid UTF-8 at position {e.start}") from e

        if self.preprocess:
            text = preprocess_text(text)

        start = time.time()
        try:
            with self._runner_lock:
                tokens = self.runner.tokenize(text)
                output = self.runner.forward(tokens)
                model_runner_invocations.inc()
            vector = l2_normalize(mean_pool(output))
        except ModelFailure:
            embed_errors.labels(error_type='model_failure').inc()
            raise
        except Exception as e:
            embed_errors.labels(error_type='model_failure').inc()
            raise ModelFailure(f"Forward pass failed: {e}") from e

        if vector.shape[0] != self.dimension:
            embed_errors.labels(error_type='model_failure').inc()
            raise ModelFailure(f"Model returned {vector.shape[0]} values, expected {self.dimension}")
        if not np.all(np.isfinite(vector)):
            embed_errors.labels(error_type='model_failure').inc()
            raise ModelFailure("Model returned non-finite values")

        embed_latency.observe(time.time() - start)
        return as_vector(vector)

    def embed_batch(self, texts) -> list[EmbedResult]:
        """
        Embed each text independently. One EmbedResult per input, same order;
        a bad item carries its error instead of failing the batch.
        """
        self._require_ready()
        results = []
        for i, text in enumerate(texts):
            try:
                results.append(EmbedResult(index=i, vector=self.embed_text(text)))
            except EmbedError as e:
                logger.warning(f"Item {i} failed: {e}")
                results.append(EmbedResult(index=i, error=e))
        return results

    def cosine_similarity(self, a, b) -> float:
        return cosine_similarity(a, b)

    # --- records ---

    def embed_record(self, text: str) -> VectorRecord:
        return VectorRecord(values=self.embed_text(text), text=text)

    def new_collection(self) -> EmbeddingCollection:
        """Empty collection stamped with this embedder's model provenance."""
        return EmbeddingCollection(
            model_name=self.model_name,
            model_version=self.model_version,
            dimension=self.dimension,
        )
