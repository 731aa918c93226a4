from __future__ import annotations

import json

import httpx
import pytest

from context_vault.embedding.embedder import HttpEmbedder, StubEmbedder, build_embedder
from context_vault.embedding.http import is_transient
from context_vault.errors import ProviderFailure


def _ok(vectors: list[list[float]], *, reverse: bool = False) -> httpx.Response:
    data = [{"index": i, "embedding": v} for i, v in enumerate(vectors)]
    if reverse:
        data.reverse()
    return httpx.Response(200, json={"data": data})


class Server:
    """Answers /embeddings from a script of responses and records requests."""

    def __init__(self, *responses: httpx.Response):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responses.pop(0)


def _embedder(server: Server, dim: int = 2, **kw) -> HttpEmbedder:
    return HttpEmbedder(
        "http://embed.test/v1/", model="m", dim=dim, transport=httpx.MockTransport(server), **kw
    )


def test_request_shape_and_index_order() -> None:
    server = Server(_ok([[1.0, 0.0], [0.0, 1.0]], reverse=True))
    emb = _embedder(server, api_key="sk-test")

    assert emb.embed(["a", "b"]) == [[1.0, 0.0], [0.0, 1.0]]

    [req] = server.requests
    assert req.url.path == "/v1/embeddings"
    assert req.headers["authorization"] == "Bearer sk-test"
    assert json.loads(req.content) == {"model": "m", "input": ["a", "b"]}
    emb.close()


def test_empty_input_skips_the_call() -> None:
    server = Server()
    assert _embedder(server).embed([]) == []
    assert server.requests == []


def test_service_unavailable_is_retried() -> None:
    server = Server(httpx.Response(503), _ok([[0.5, 0.5]]))
    assert _embedder(server).embed(["a"]) == [[0.5, 0.5]]
    assert len(server.requests) == 2


def test_client_error_is_not_retried() -> None:
    server = Server(httpx.Response(400, json={"error": "bad input"}), _ok([[0.5, 0.5]]))
    with pytest.raises(ProviderFailure):
        _embedder(server).embed(["a"])
    assert len(server.requests) == 1


@pytest.mark.parametrize(
    "response",
    [
        _ok([[1.0, 0.0, 0.0]]),
        _ok([[1.0, 0.0], [0.0, 1.0]]),
        httpx.Response(200, json={"vectors": []}),
        httpx.Response(200, json={"data": [{"index": 0, "embedding": ["x", "y"]}]}),
    ],
    ids=["wrong-dim", "wrong-count", "no-data", "not-numbers"],
)
def test_bad_payload_is_provider_failure(response: httpx.Response) -> None:
    with pytest.raises(ProviderFailure):
        _embedder(Server(response)).embed(["a"])


def test_is_transient() -> None:
    req = httpx.Request("POST", "http://embed.test/embeddings")
    assert is_transient(httpx.ConnectError("down", request=req))
    assert is_transient(httpx.ReadTimeout("slow", request=req))
    for status, expected in [(429, True), (502, True), (401, False), (404, False)]:
        exc = httpx.HTTPStatusError("x", request=req, response=httpx.Response(status, request=req))
        assert is_transient(exc) is expected
    assert not is_transient(ValueError("nope"))


def test_stub_is_deterministic_and_normalized() -> None:
    emb = StubEmbedder(dim=16)
    [a, b] = emb.embed(["hello", "hello"])
    assert a == b
    assert len(a) == 16
    assert sum(x * x for x in a) == pytest.approx(1.0)


def test_build_embedder_picks_http_for_url() -> None:
    emb = build_embedder(url="http://embed.test/v1", dim=8)
    assert isinstance(emb, HttpEmbedder)
    assert emb.dim == 8
    emb.close()
    assert isinstance(build_embedder(dim=8), StubEmbedder)
