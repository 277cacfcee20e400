from __future__ import annotations

from types import SimpleNamespace

import pytest

from genloop.common.config import ModelConfig
from genloop.common.errors import ArtifactError
from genloop.engine import model_loader
from genloop.engine.model_loader import declared_eos_ids, resolve_device, resolve_stop_token_ids
from genloop.engine.tokenizer import TokenizerAdapter


class _VocabTokenizer:
    def __init__(self, vocab: dict[str, int]):
        self.vocab = vocab

    def get_vocab(self):
        return self.vocab


def _model(eos=None, generation_eos=None):
    model = SimpleNamespace(config=SimpleNamespace(eos_token_id=eos))
    if generation_eos is not None:
        model.generation_config = SimpleNamespace(eos_token_id=generation_eos)
    return model


def test_declared_eos_id_wins_over_vocab():
    tok = TokenizerAdapter(_VocabTokenizer({"</s>": 2, "<|endoftext|>": 0}))
    assert resolve_stop_token_ids(_model(eos=50256), tok) == frozenset({50256})


def test_declared_eos_list_and_generation_config_are_merged():
    model = _model(eos=1, generation_eos=[1, 106, 107])
    assert declared_eos_ids(model) == [1, 106, 107]
    assert resolve_stop_token_ids(model, TokenizerAdapter(_VocabTokenizer({}))) == frozenset({1, 106, 107})


def test_vocab_is_probed_when_nothing_declared():
    vocab = {"hello": 5, "<|eot_id|>": 128009, "<|endoftext|>": 128001, "<unk>": 0}
    tok = TokenizerAdapter(_VocabTokenizer(vocab))
    assert resolve_stop_token_ids(_model(), tok) == frozenset({128009, 128001})


def test_sentence_end_marker_is_probed():
    tok = TokenizerAdapter(_VocabTokenizer({"</s>": 2}))
    assert resolve_stop_token_ids(SimpleNamespace(), tok) == frozenset({2})


def test_no_markers_gives_empty_stop_set():
    tok = TokenizerAdapter(_VocabTokenizer({"a": 1}))
    assert resolve_stop_token_ids(_model(), tok) == frozenset()


def test_missing_artifacts_raise_artifact_error(monkeypatch):
    def _fail(*args, **kwargs):
        raise OSError("nope/not-a-model is not a valid model identifier")

    monkeypatch.setattr(model_loader.AutoTokenizer, "from_pretrained", _fail)
    with pytest.raises(ArtifactError, match="nope/not-a-model"):
        model_loader.load_model_and_tokenizer(ModelConfig(model_id="nope/not-a-model"))


def test_corrupt_weights_raise_artifact_error(monkeypatch):
    def _corrupt(*args, **kwargs):
        raise RuntimeError("Error while deserializing header: HeaderTooLarge")

    monkeypatch.setattr(model_loader.AutoTokenizer, "from_pretrained", lambda *a, **k: "tok")
    monkeypatch.setattr(model_loader.AutoModelForCausalLM, "from_pretrained", _corrupt)
    with pytest.raises(ArtifactError, match="deserializing header") as excinfo:
        model_loader.load_model_and_tokenizer(ModelConfig())
    assert isinstance(excinfo.value.__cause__, RuntimeError)


def test_loader_places_model_and_reports_device(monkeypatch):
    class _FakeModel:
        def __init__(self):
            self.moved_to = None
            self.eval_called = False

        def eval(self):
            self.eval_called = True

        def to(self, device):
            self.moved_to = device

    fake = _FakeModel()
    monkeypatch.setattr(model_loader.AutoTokenizer, "from_pretrained", lambda *a, **k: "tok")
    monkeypatch.setattr(model_loader.AutoModelForCausalLM, "from_pretrained", lambda *a, **k: fake)
    monkeypatch.setattr(model_loader.torch.cuda, "is_available", lambda: False)

    model, tokenizer, cfg = model_loader.load_model_and_tokenizer(ModelConfig(device="cuda"))
    assert model is fake
    assert tokenizer == "tok"
    assert fake.eval_called
    assert fake.moved_to == "cpu"
    assert cfg.device == "cpu"


def test_resolve_device_cpu_is_always_available():
    assert resolve_device("cpu") == "cpu"
    assert resolve_device("mps") == "cpu"
