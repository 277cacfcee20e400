from __future__ import annotations

import json
from types import SimpleNamespace

import torch
from fastapi.testclient import TestClient

from genloop.common.config import ModelConfig
from genloop.engine.server_fastapi import create_app
from genloop.engine.session import LanguageModel


class _ToyTokenizer:
    chat_template = None

    def encode(self, text: str, add_special_tokens: bool = True):
        del add_special_tokens
        return list(text.encode("utf-8"))

    def decode(self, ids, skip_special_tokens: bool = True):
        return bytes(int(t) for t in ids if int(t) < 256).decode("utf-8", errors="replace")

    def get_vocab(self):
        return {"</s>": 256}


class _EchoModel(torch.nn.Module):
    """Answers 'Hi there!' then end-of-sequence."""

    script = list(b"Hi there!") + [256]

    def __init__(self):
        super().__init__()
        self.config = SimpleNamespace()
        self.prompt_lens: list[int] = []

    def forward(self, input_ids, past_key_values=None, use_cache=True, return_dict=True):
        del use_cache, return_dict
        if past_key_values is None:
            self.prompt_lens.append(input_ids.shape[1])
        step = 0 if past_key_values is None else past_key_values[0] + 1
        logits = torch.full((1, input_ids.shape[1], 257), -1e9)
        logits[0, -1, self.script[min(step, len(self.script) - 1)]] = 0.0
        return SimpleNamespace(logits=logits, past_key_values=(step,))


def _client(model=None) -> TestClient:
    session = LanguageModel(model or _EchoModel(), _ToyTokenizer(), ModelConfig())
    return TestClient(create_app(session=session))


def test_health_and_params():
    with _client() as client:
        assert client.get("/health").json() == {"status": "ok"}
        params = client.get("/params").json()
        assert set(params) == {"default_top_k", "max_top_k", "default_temperature", "max_temperature"}


def test_generate_non_stream():
    with _client() as client:
        resp = client.post("/generate", json={"prompt": "Hello", "temperature": 0.0, "max_tokens": 32})
        assert resp.status_code == 200
        data = resp.json()
        assert data["text"] == "Hi there!"
        assert data["finish_reason"] == "stop"
        assert data["token_ids"] == list(b"Hi there!")
        assert data["timing"]["total_s"] >= 0.0


def test_generate_respects_max_tokens():
    with _client() as client:
        data = client.post("/generate", json={"prompt": "Hello", "temperature": 0.0, "max_tokens": 2}).json()
        assert data["text"] == "Hi"
        assert data["finish_reason"] == "length"


def test_generate_with_messages():
    with _client() as client:
        resp = client.post(
            "/generate",
            json={
                "messages": [
                    {"role": "system", "content": "be friendly"},
                    {"role": "user", "content": [{"kind": "text", "value": "Hello"}]},
                ],
                "temperature": 0.0,
            },
        )
        assert resp.status_code == 200
        assert resp.json()["text"] == "Hi there!"


def test_generate_stream_ndjson():
    with _client() as client:
        resp = client.post("/generate", json={"prompt": "Hello", "temperature": 0.0, "stream": True})
        assert resp.status_code == 200
        msgs = [json.loads(line) for line in resp.text.splitlines() if line]
        assert msgs[-1]["type"] == "done"
        assert msgs[-1]["finish_reason"] == "stop"
        assert "".join(m["text"] for m in msgs if m["type"] == "token") == "Hi there!"


def test_invalid_options_are_422():
    with _client() as client:
        assert client.post("/generate", json={"prompt": "x", "top_p": 2.0}).status_code == 422
        assert client.post("/generate", json={"prompt": "x", "top_k": 1000}).status_code == 422
        assert client.post("/generate", json={"temperature": 0.0}).status_code == 422
        resp = client.post(
            "/generate",
            json={"messages": [{"role": "user", "content": [{"kind": "image", "value": "AAAA"}]}]},
        )
        assert resp.status_code == 422
        assert resp.json()["detail"]["error"] == "config_error"


def test_requests_do_not_see_each_other():
    model = _EchoModel()
    with _client(model) as client:
        first = client.post("/generate", json={"prompt": "my secret is 1234", "temperature": 0.0}).json()
        second = client.post("/generate", json={"prompt": "Hello", "temperature": 0.0}).json()
    assert first["text"] == second["text"] == "Hi there!"
    # the second prompt is encoded on its own, without the first exchange
    assert model.prompt_lens == [len("my secret is 1234"), len("Hello")]


def test_non_finite_temperature_is_422():
    with _client() as client:
        for literal in ("NaN", "Infinity"):
            resp = client.post(
                "/generate",
                content='{"prompt": "x", "temperature": %s}' % literal,
                headers={"content-type": "application/json"},
            )
            assert resp.status_code == 422
