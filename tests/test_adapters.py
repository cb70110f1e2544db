from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime
from typing import Any, Callable, List

import httpx
import pytest

from TrackSearch.Adapters.audio_features import AudioFeaturesAdapter
from TrackSearch.Adapters.base import (
    SCHEMA_ERROR_STATUS,
    ServiceRateLimiter,
    classify_response,
    parse_retry_after,
)
from TrackSearch.Adapters.embedding import EmbeddingAdapter
from TrackSearch.Adapters.interpretation import InterpretationAdapter, parse_query_expansion
from TrackSearch.Adapters.lyrics import LyricsAdapter
from TrackSearch.errors import RateLimitExceeded

Handler = Callable[[httpx.Request], httpx.Response]


def _call(build: Callable[[httpx.AsyncClient], Any], handler: Handler, method: str, *args, **kwargs):
    """Run one adapter call against ``handler`` and return ``(result, requests)``."""
    requests: List[httpx.Request] = []

    def recording(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return handler(request)

    async def scenario():
        async with httpx.AsyncClient(transport=httpx.MockTransport(recording)) as client:
            adapter = build(client)
            return await getattr(adapter, method)(*args, **kwargs)

    return asyncio.run(scenario()), requests


def _features(client: httpx.AsyncClient) -> AudioFeaturesAdapter:
    return AudioFeaturesAdapter(client, base_url="https://features.test/v1")


def _lyrics(client: httpx.AsyncClient) -> LyricsAdapter:
    return LyricsAdapter(client, base_url="https://lyrics.test/ws/1.1", api_key="k")


def _llm(client: httpx.AsyncClient) -> InterpretationAdapter:
    return InterpretationAdapter(
        client,
        base_url="https://llm.test/v1",
        api_key="secret",
        model="interp-model",
        description_model="small-model",
    )


def _embedder(client: httpx.AsyncClient) -> EmbeddingAdapter:
    return EmbeddingAdapter(
        client, base_url="http://tei.test", dimension=4, instruction="Instruct: find songs\nQuery:"
    )


# --------------------------------------------------------------------------- classification


@pytest.mark.parametrize(
    "status, retryable",
    [(400, False), (401, False), (403, False), (404, False), (408, True), (500, True), (502, True), (503, True)],
)
def test_status_classification(status: int, retryable: bool) -> None:
    error = classify_response(httpx.Response(status), "svc")
    assert error.retryable is retryable
    assert error.status_code == status


def test_429_becomes_rate_limit_with_retry_after() -> None:
    error = classify_response(httpx.Response(429, headers={"Retry-After": "30"}), "svc")
    assert isinstance(error, RateLimitExceeded)
    assert error.retryable and error.retry_after == 30.0


def test_retry_after_http_date() -> None:
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)
    header = format_datetime(now + timedelta(seconds=90), usegmt=True)
    assert parse_retry_after(header, now=now) == pytest.approx(90.0)
    assert parse_retry_after("-5") is None


def test_rate_limiter_fails_after_bounded_wait() -> None:
    now = [0.0]

    async def fake_sleep(seconds: float) -> None:
        now[0] += seconds

    limiter = ServiceRateLimiter(
        {"tei": "1/minute"}, max_wait_s=0.1, clock=lambda: now[0], sleep=fake_sleep
    )

    async def scenario() -> None:
        await limiter.acquire("tei")
        await limiter.acquire("unlimited")
        await limiter.acquire("tei")

    with pytest.raises(RateLimitExceeded) as excinfo:
        asyncio.run(scenario())
    assert excinfo.value.retryable
    assert limiter.limits("tei") and not limiter.limits("unlimited")


def test_parse_rate_rejects_unknown_units() -> None:
    with pytest.raises(ValueError):
        ServiceRateLimiter.parse_rate("5/fortnight")


# --------------------------------------------------------------------------- audio features


def test_audio_features_success() -> None:
    body = {"content": [{"id": "x", "href": "h", "energy": 0.85, "tempo": 150.0, "key": 4}]}
    result, requests = _call(_features, lambda r: httpx.Response(200, json=body), "fetch", "USRC17607839")
    assert result.ok
    assert result.value.energy == 0.85 and result.value.tempo == 150.0
    assert requests[0].url.params["ids"] == "USRC17607839"
    assert requests[0].url.path == "/v1/audio-features"


@pytest.mark.parametrize(
    "response",
    [httpx.Response(404), httpx.Response(200, json={"content": []}), httpx.Response(200, json={"content": [{}]})],
)
def test_audio_features_absent(response: httpx.Response) -> None:
    result, _ = _call(_features, lambda r: response, "fetch", "USRC17607839")
    assert result.ok and result.value is None


def test_audio_features_multiple_results_use_first(caplog: pytest.LogCaptureFixture) -> None:
    body = {"content": [{"energy": 0.1}, {"energy": 0.9}]}
    with caplog.at_level(logging.WARNING, logger="TrackSearch"):
        result, _ = _call(_features, lambda r: httpx.Response(200, json=body), "fetch", "USRC17607839")
    assert result.value.energy == 0.1
    assert any(record.getMessage() == "audio_features_multiple_results" for record in caplog.records)


@pytest.mark.parametrize(
    "body",
    [{"content": [{"energy": 0.5, "tempo": 251.0}]}, {"content": [{"energy": 2.0}]}, {"content": "oops"}],
)
def test_audio_features_invalid_payload_counts_as_absent(body: Any, caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.WARNING, logger="TrackSearch"):
        result, _ = _call(_features, lambda r: httpx.Response(200, json=body), "fetch", "USRC17607839")
    assert result.ok and result.value is None
    assert any(record.getMessage() == "audio_features_invalid" for record in caplog.records)


def test_transport_failures_are_retryable() -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    def slow(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    refused, _ = _call(_features, refuse, "fetch", "USRC17607839")
    timed_out, _ = _call(_features, slow, "fetch", "USRC17607839")
    assert refused.error.retryable and refused.error.status_code == 503
    assert timed_out.error.retryable and timed_out.error.status_code == 408


def test_unwrap_raises_classified_error() -> None:
    result, _ = _call(_features, lambda r: httpx.Response(503), "fetch", "USRC17607839")
    with pytest.raises(Exception) as excinfo:
        result.unwrap()
    assert excinfo.value is result.error


# --------------------------------------------------------------------------- lyrics


def _envelope(status: int, body: Any) -> dict:
    return {"message": {"header": {"status_code": status}, "body": body}}


def test_lyrics_by_isrc() -> None:
    body = _envelope(200, {"lyrics": {"lyrics_body": "Waiting in a car\n", "lyrics_language": "en", "explicit": 0}})
    result, requests = _call(_lyrics, lambda r: httpx.Response(200, json=body), "fetch", "USRC17607839")
    assert result.ok
    assert result.value.text == "Waiting in a car"
    assert result.value.explicit is False
    assert requests[0].url.params["track_isrc"] == "USRC17607839"
    assert requests[0].url.params["apikey"] == "k"


def test_lyrics_fall_back_to_title_artist_match() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("track.lyrics.get"):
            return httpx.Response(200, json=_envelope(404, []))
        return httpx.Response(
            200, json=_envelope(200, {"lyrics": {"lyrics_body": "found by match"}})
        )

    result, requests = _call(
        _lyrics, handler, "fetch", "USRC17607839", title="Midnight City", artist="M83"
    )
    assert result.value.text == "found by match"
    assert [r.url.path.rsplit("/", 1)[-1] for r in requests] == ["track.lyrics.get", "matcher.lyrics.get"]
    assert requests[1].url.params["q_track"] == "Midnight City"


def test_lyrics_empty_body_means_instrumental() -> None:
    result, requests = _call(
        _lyrics, lambda r: httpx.Response(200, json=_envelope(200, [])), "fetch", "USRC17607839"
    )
    assert result.ok and result.value is None
    assert len(requests) == 1


@pytest.mark.parametrize(
    "status, retryable", [(401, False), (503, True), (429, True), (501, True), (520, True)]
)
def test_lyrics_envelope_status_is_classified(status: int, retryable: bool) -> None:
    result, _ = _call(
        _lyrics, lambda r: httpx.Response(200, json=_envelope(status, [])), "fetch", "USRC17607839"
    )
    assert not result.ok
    assert result.error.retryable is retryable
    assert result.error.status_code == status


def test_lyrics_without_key_fails_without_request() -> None:
    result, requests = _call(
        lambda c: LyricsAdapter(c, base_url="https://lyrics.test"),
        lambda r: httpx.Response(200),
        "fetch",
        "USRC17607839",
    )
    assert result.error.status_code == 401 and not result.error.retryable
    assert requests == []


# --------------------------------------------------------------------------- interpretation


def _message(text: str) -> dict:
    return {
        "model": "interp-model",
        "content": [{"type": "text", "text": text}],
        "usage": {"input_tokens": 12, "output_tokens": 34},
    }


def test_interpret_sends_messages_request() -> None:
    result, requests = _call(
        _llm,
        lambda r: httpx.Response(200, json=_message("An ode to youth.")),
        "interpret",
        "Midnight City",
        "M83",
        "Hurry Up",
        "Waiting in a car",
    )
    assert result.value.text == "An ode to youth."
    assert result.value.output_tokens == 34
    sent = json.loads(requests[0].content)
    assert sent["model"] == "interp-model"
    assert "Waiting in a car" in sent["messages"][0]["content"]
    assert requests[0].headers["x-api-key"] == "secret"
    assert requests[0].headers["anthropic-version"] == "2023-06-01"


def test_describe_uses_description_model() -> None:
    _, requests = _call(_llm, lambda r: httpx.Response(200, json=_message("Short.")), "describe", "prompt")
    assert json.loads(requests[0].content)["model"] == "small-model"


def test_empty_completion_is_retryable() -> None:
    result, _ = _call(_llm, lambda r: httpx.Response(200, json=_message("  ")), "describe", "prompt")
    assert result.error.retryable and result.error.status_code == 500


def test_expand_query_parses_array() -> None:
    reply = 'Here you go: ["upbeat running songs", "high energy workout"]'
    result, _ = _call(_llm, lambda r: httpx.Response(200, json=_message(reply)), "expand_query", "gym music")
    assert result.value == ["upbeat running songs", "high energy workout"]


def test_parse_query_expansion_limits_and_falls_back() -> None:
    assert parse_query_expansion('["a", "b", "c", "d"]', "x") == ["a", "b", "c"]
    assert parse_query_expansion('{"queries": []}', "x") == ["x"]
    assert parse_query_expansion("[]", "x") == ["x"]


# --------------------------------------------------------------------------- embedding


def test_embedding_accepts_nested_and_flat_shapes() -> None:
    nested, requests = _call(
        _embedder, lambda r: httpx.Response(200, json=[[0.1, 0.2, 0.3, 0.4]]), "embed", "text"
    )
    flat, _ = _call(_embedder, lambda r: httpx.Response(200, json=[1, 2, 3, 4]), "embed", "text")
    assert nested.value == [0.1, 0.2, 0.3, 0.4]
    assert flat.value == [1.0, 2.0, 3.0, 4.0]
    assert json.loads(requests[0].content) == {"inputs": "text"}


def test_embedding_401_is_not_retryable() -> None:
    result, _ = _call(_embedder, lambda r: httpx.Response(401), "embed", "text")
    assert result.error.status_code == 401
    assert not result.error.retryable


def test_embedding_empty_text_makes_no_request() -> None:
    result, requests = _call(_embedder, lambda r: httpx.Response(200, json=[[0.0] * 4]), "embed", "   ")
    assert result.error.status_code == 400 and not result.error.retryable
    assert requests == []


@pytest.mark.parametrize("payload", [[[0.1, 0.2]], {"embedding": [0.1]}, [["a", "b", "c", "d"]]])
def test_embedding_schema_violations(payload: Any) -> None:
    result, _ = _call(_embedder, lambda r: httpx.Response(200, json=payload), "embed", "text")
    assert result.error.status_code == SCHEMA_ERROR_STATUS
    assert not result.error.retryable


def test_embed_query_prefixes_instruction() -> None:
    _, requests = _call(
        _embedder, lambda r: httpx.Response(200, json=[[0.1, 0.2, 0.3, 0.4]]), "embed_query", " sad songs "
    )
    assert json.loads(requests[0].content)["inputs"] == "Instruct: find songs\nQuery: sad songs"
