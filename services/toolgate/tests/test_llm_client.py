"""LLM client error mapping, exercised through httpx.MockTransport (no network)."""

import json

import httpx
import pytest

from toolgate.llm_client import LlmClient, LlmError


def _client(handler, api_key="sk-test"):
    return LlmClient(
        "https://llm.test/v1/",
        api_key,
        model="gpt-test",
        embedding_model="embed-test",
        timeout_s=1,
        transport=httpx.MockTransport(handler),
    )


def _completion(content):
    return httpx.Response(200, json={"choices": [{"message": {"role": "assistant", "content": content}}]})


def test_generate_sends_system_history_and_user():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["authorization"]
        seen["body"] = json.loads(request.content)
        return _completion("Stable.")

    history = [{"role": "user", "content": "hi"}, {"role": "assistant", "content": "hello"}]
    text = _client(handler).generate("SYSTEM", "How is she?", history=history)

    assert text == "Stable."
    assert seen["url"] == "https://llm.test/v1/chat/completions"
    assert seen["auth"] == "Bearer sk-test"
    assert [m["role"] for m in seen["body"]["messages"]] == ["system", "user", "assistant", "user"]
    assert seen["body"]["messages"][-1]["content"] == "How is she?"
    assert seen["body"]["model"] == "gpt-test"


def test_embed_returns_floats():
    def handler(request):
        assert request.url.path == "/v1/embeddings"
        return httpx.Response(200, json={"data": [{"embedding": [0, 0.5, 1]}]})

    assert _client(handler).embed("text") == [0.0, 0.5, 1.0]


def test_missing_key_is_unavailable():
    client = _client(lambda r: _completion("x"), api_key="")
    assert client.configured is False
    with pytest.raises(LlmError) as exc:
        client.generate("s", "u")
    assert exc.value.kind == "unavailable"


@pytest.mark.parametrize(
    "handler, kind",
    [
        (lambda r: (_ for _ in ()).throw(httpx.ReadTimeout("slow", request=r)), "timeout"),
        (lambda r: (_ for _ in ()).throw(httpx.ConnectError("refused", request=r)), "unavailable"),
        (lambda r: httpx.Response(503, text="overloaded"), "bad_status"),
        (lambda r: httpx.Response(200, text="<html>"), "bad_response"),
        (lambda r: httpx.Response(200, json=["not", "an", "object"]), "bad_response"),
        (lambda r: httpx.Response(200, json={"choices": []}), "bad_response"),
        (lambda r: _completion("   "), "bad_response"),
    ],
)
def test_generate_error_kinds(handler, kind):
    with pytest.raises(LlmError) as exc:
        _client(handler).generate("s", "u")
    assert exc.value.kind == kind


def test_malformed_embedding_is_bad_response():
    with pytest.raises(LlmError) as exc:
        _client(lambda r: httpx.Response(200, json={"data": []})).embed("x")
    assert exc.value.kind == "bad_response"
