"""
Model runner contract and its sentence-transformers implementation.

The embedder only talks to a runner through ModelRunner: load it onto an
accelerator, tokenize one text, run the transformer forward pass. Pooling and
normalisation are not the runner's job, so only the first module (the
transformer) of the SentenceTransformer pipeline is used here.
"""
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

import numpy as np

from embedpipe.runner.hardware import Accelerator, detect_accelerators

logger = logging.getLogger(__name__)


@dataclass
class TokenEmbeddings:
    """Per-token output of one forward pass."""
    values: np.ndarray          # (tokens, hidden)
    attention_mask: np.ndarray  # (tokens,) 1 for real tokens, 0 for padding


class ModelRunner(Protocol):
    """Minimal runner interface the embedder depends on."""

    @property
    def dimension(self) -> int:
        ...

    def capabilities(self) -> set[Accelerator]:
        ...

    def load(self, model_dir: Path, accelerator: Accelerator) -> None:
        ...

    def tokenize(self, text: str) -> Any:
        ...

    def forward(self, tokens: Any) -> TokenEmbeddings:
        ...


class SentenceTransformerRunner:
    """
    ModelRunner backed by a local sentence-transformers model directory.

    Not thread-safe: the fast tokenizer and most torch backends must not be
    driven from several threads at once. The embedder serialises calls.
    """

    def __init__(self, max_seq_length: int | None = None):
        self.max_seq_length = max_seq_length
        self._model = None
        self._transformer = None

    @property
    def dimension(self) -> int:
        self._require_loaded()
        return self._transformer.get_word_embedding_dimension()

    def capabilities(self) -> set[Accelerator]:
        return detect_accelerators()

    def load(self, model_dir: Path, accelerator: Accelerator) -> None:
        from sentence_transformers import SentenceTransformer

        logger.info(f"Loading sentence-transformers model from {model_dir} on {accelerator.device}")
        model = SentenceTransformer(str(model_dir), device=accelerator.device)
        if self.max_seq_length:
            model.max_seq_length = self.max_seq_length
        model.eval()
        self._model = model
        self._transformer = model[0]
        logger.info(f"Model loaded (max_seq_length={model.max_seq_length}).")

    def _require_loaded(self) -> None:
        if self._model is None:
            raise RuntimeError("SentenceTransformerRunner.load() has not been called")

    def tokenize(self, text: str) -> dict:
        self._require_loaded()
        return self._model.tokenize([text])

    def forward(self, tokens: dict) -> TokenEmbeddings:
        import torch

        self._require_loaded()
        device = self._model.device
        features = {k: v.to(device) for k, v in tokens.items() if isinstance(v, torch.Tensor)}
        with torch.no_grad():
            out = self._transformer(features)

        return TokenEmbeddings(
            values=out['token_embeddings'][0].float().cpu().numpy(),
            attention_mask=features['attention_mask'][0].cpu().numpy(),
        )
