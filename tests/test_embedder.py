import numpy as np
import pytest

from embedpipe.embedder import Embedder, EmbedderState, cosine_similarity, mean_pool
from embedpipe.errors import (
    DimensionMismatch, EmptyInput, HardwareUnsupported, InvalidText, ModelFailure, ModelUnavailable,
    NotInitialized,
)
from embedpipe.runner.hardware import Accelerator
from embedpipe.runner.model_store import ModelStore
from embedpipe.runner.sentence_transformer import TokenEmbeddings

from conftest import DIM, REPO_ID, FakeRunner, make_cached_store, make_embedder


def test_embed_before_initialize(cached_store):
    emb = make_embedder(cached_store)
    assert emb.state is EmbedderState.UNINITIALIZED
    with pytest.raises(NotInitialized):
        emb.embed_text('hello')
    with pytest.raises(NotInitialized):
        emb.embed_batch(['hello'])


def test_initialize_is_idempotent(runner, cached_store):
    emb = make_embedder(cached_store, runner)
    emb.initialize()
    emb.initialize()
    assert emb.state is EmbedderState.READY
    assert emb.accelerator is Accelerator.CPU
    assert len(runner.loads) == 1
    assert runner.loads[0] == (cached_store.model_dir, Accelerator.CPU)


def test_vectors_have_unit_norm(embedder):
    for text in ['The cat sat.', 'A dog ran in the park', 'x']:
        v = embedder.embed_text(text)
        assert v.shape == (DIM,)
        assert v.dtype == np.float32
        assert abs(np.linalg.norm(v) - 1.0) < 1e-5


def test_embedding_is_deterministic(embedder):
    a = embedder.embed_text('The cat sat.')
    b = embedder.embed_text('The cat sat.')
    assert a.tobytes() == b.tobytes()


@pytest.mark.parametrize('text', ['', '   ', '\n\t'])
def test_empty_input(embedder, runner, text):
    with pytest.raises(EmptyInput):
        embedder.embed_text(text)
    assert runner.calls == 0


def test_undecodable_text_is_rejected(embedder, runner):
    text = b'caf\xe9 au lait'.decode('utf-8', 'surrogateescape')
    with pytest.raises(InvalidText):
        embedder.embed_text(text)
    assert runner.calls == 0


def test_runner_error_becomes_model_failure(cached_store):
    emb = make_embedder(cached_store, FakeRunner(fail_on={'boom'}))
    emb.initialize()
    with pytest.raises(ModelFailure):
        emb.embed_text('this goes boom')


def test_wrong_output_dimension_is_model_failure(cached_store):
    class ShortRunner(FakeRunner):
        def forward(self, tokens):
            out = super().forward(tokens)
            return TokenEmbeddings(values=out.values[:, :10], attention_mask=out.attention_mask)

    emb = make_embedder(cached_store, ShortRunner())
    emb.initialize()
    with pytest.raises(ModelFailure):
        emb.embed_text('hello')


def test_embed_batch_reports_per_item(embedder):
    results = embedder.embed_batch(['The cat sat.', '', 'A dog ran.'])

    assert [r.index for r in results] == [0, 1, 2]
    assert [r.ok for r in results] == [True, False, True]
    assert isinstance(results[1].error, EmptyInput)
    assert results[0].vector.tobytes() == embedder.embed_text('The cat sat.').tobytes()


def test_preprocess_normalises_text(cached_store):
    emb = make_embedder(cached_store, preprocess=True)
    emb.initialize()
    assert emb.embed_text('  The   CAT sat ').tobytes() == emb.embed_text('the cat sat').tobytes()


def test_embed_record_and_new_collection(embedder):
    c = embedder.new_collection()
    c.append(embedder.embed_record('The cat sat.'))
    assert (c.model_name, c.model_version, c.dimension) == ('fake-minilm', 'test', DIM)
    assert c[0].text == 'The cat sat.'


def test_mean_pool_ignores_masked_tokens():
    out = TokenEmbeddings(
        values=np.array([[1.0, 2.0], [3.0, 4.0], [100.0, 100.0]]),
        attention_mask=np.array([1, 1, 0]),
    )
    np.testing.assert_allclose(mean_pool(out), [2.0, 3.0])


def test_mean_pool_without_tokens_fails():
    out = TokenEmbeddings(values=np.zeros((2, 3)), attention_mask=np.array([0, 0]))
    with pytest.raises(ModelFailure):
        mean_pool(out)


# --- cosine similarity ---

def test_cosine_self_similarity(embedder):
    v = embedder.embed_text('The cat sat.')
    assert embedder.cosine_similarity(v, v) == pytest.approx(1.0, abs=1e-6)


def test_cosine_is_symmetric(embedder):
    a = embedder.embed_text('The cat sat.')
    b = embedder.embed_text('A dog ran.')
    assert embedder.cosine_similarity(a, b) == embedder.cosine_similarity(b, a)


def test_cosine_dimension_mismatch():
    with pytest.raises(DimensionMismatch) as exc:
        cosine_similarity([1.0, 0.0], [1.0, 0.0, 0.0])
    assert (exc.value.expected, exc.value.actual) == (2, 3)


def test_cosine_zero_vector_is_zero():
    assert cosine_similarity([0.0, 0.0], [1.0, 2.0]) == 0.0
    assert cosine_similarity([1.0, 2.0], [0.0, 0.0]) == 0.0


def test_cosine_is_clamped():
    v = np.full(DIM, 1e-3, dtype=np.float32)
    assert -1.0 <= cosine_similarity(v, v * 1.0000001) <= 1.0
    assert cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == -1.0


def test_cosine_works_without_initialize(cached_store):
    emb = make_embedder(cached_store)
    assert emb.cosine_similarity([1.0, 0.0], [0.0, 1.0]) == 0.0


# --- initialize() failures ---

def test_missing_accelerator_without_fallback(cached_store):
    emb = make_embedder(cached_store, device='cuda', allow_cpu_fallback=False)
    with pytest.raises(HardwareUnsupported):
        emb.initialize()
    assert emb.state is EmbedderState.FAILED
    with pytest.raises(NotInitialized):
        emb.embed_text('hello')


def test_missing_accelerator_falls_back_to_cpu(cached_store):
    emb = make_embedder(cached_store, device='cuda')
    emb.initialize()
    assert emb.accelerator is Accelerator.CPU


def test_uses_gpu_when_available(cached_store):
    runner = FakeRunner(accelerators={Accelerator.CPU, Accelerator.GPU})
    emb = make_embedder(cached_store, runner, device='auto')
    emb.initialize()
    assert emb.accelerator is Accelerator.GPU
    assert runner.loads[0][1] is Accelerator.GPU


def test_model_unavailable_then_recover(tmp_path):
    calls = []

    def offline(repo_id, target):
        calls.append(repo_id)
        raise ConnectionError('no network')

    store = ModelStore(REPO_ID, tmp_path, retries=2, fetcher=offline, sleep=lambda s: None)
    emb = make_embedder(store)

    with pytest.raises(ModelUnavailable):
        emb.initialize()
    assert emb.state is EmbedderState.FAILED
    assert calls == [REPO_ID, REPO_ID]

    make_cached_store(tmp_path)
    emb.initialize()
    assert emb.state is EmbedderState.READY
    assert calls == [REPO_ID, REPO_ID]


def test_runner_load_error_is_model_unavailable(cached_store):
    class BrokenRunner(FakeRunner):
        def load(self, model_dir, accelerator):
            raise OSError('corrupt weights')

    emb = make_embedder(cached_store, BrokenRunner())
    with pytest.raises(ModelUnavailable):
        emb.initialize()
    assert emb.state is EmbedderState.FAILED


def test_model_dimension_must_match(cached_store):
    emb = make_embedder(cached_store, FakeRunner(dimension=10))
    with pytest.raises(ModelUnavailable):
        emb.initialize()


def test_default_embedder_uses_sentence_transformer_runner():
    from embedpipe.runner.sentence_transformer import SentenceTransformerRunner

    emb = Embedder()
    assert isinstance(emb.runner, SentenceTransformerRunner)
    assert emb.dimension == 384
    assert emb.state is EmbedderState.UNINITIALIZED
