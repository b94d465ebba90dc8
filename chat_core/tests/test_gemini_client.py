import json

import pytest

from chat_core.domain.exceptions import ApiError
from chat_core.domain.models import FinishReason, GenerationSettings, Message, TokenUsage
from chat_core.domain.streaming import FragmentChannel, RequestScope
from chat_core.engine.accumulator import build_final_message
from chat_core.providers.gemini_client import GeminiClient


class SettingsStub:
    gemini_api_key = "g"
    gemini_base_url = "https://generativelanguage.googleapis.com/v1beta"
    http_timeout = 1.0
    system_message = ""


def _line(data):
    return "data: " + json.dumps(data)


def _candidate(text, finish_reason=None, citations=None):
    candidate = {"content": {"role": "model", "parts": [{"text": text}]}}
    if finish_reason:
        candidate["finishReason"] = finish_reason
    if citations:
        candidate["citationMetadata"] = {"citationSources": [{"uri": u} for u in citations]}
    return candidate


class StreamResponse:
    def __init__(self, lines, status_code=200, text=""):
        self.status_code = status_code
        self.text = text
        self._lines = lines

    async def aiter_lines(self):
        for line in self._lines:
            yield line

    async def aread(self):
        return self.text.encode()


class JsonResponse:
    status_code = 200
    text = ""

    def __init__(self, data):
        self._data = data

    def json(self):
        return self._data


def _install_client(monkeypatch, response=None, pages=None):
    captured = {"gets": []}
    pages = list(pages or [])

    class StreamCM:
        async def __aenter__(self):
            return response

        async def __aexit__(self, *a):
            return False

    class Client:
        def __init__(self, *a, **kw):
            pass

        async def __aenter__(self):
            return self

        async def __aexit__(self, *a):
            return False

        def stream(self, method, url, **kw):
            captured.update(method=method, url=url, **kw)
            return StreamCM()

        async def get(self, url, **kw):
            captured["gets"].append((url, kw.get("params")))
            return pages.pop(0)

    monkeypatch.setattr("httpx.AsyncClient", Client)
    return captured


async def _run(client, messages=None, gen=None):
    channel = FragmentChannel()
    await client.request_completion(
        RequestScope(),
        messages or [Message("user", "hi")],
        gen or GenerationSettings(model="gemini-1.5-flash", max_tokens=100),
        channel,
    )
    channel.close()
    return [f async for f in channel]


@pytest.mark.asyncio
async def test_gemini_stream_parse_with_citations(monkeypatch):
    lines = [
        _line({"candidates": [_candidate("Hel", citations=["https://a"])]}),
        _line(
            {
                "candidates": [_candidate("lo", "STOP", citations=["https://a"])],
                "usageMetadata": {"promptTokenCount": 5, "candidatesTokenCount": 2},
            }
        ),
    ]
    _install_client(monkeypatch, StreamResponse(lines))

    fragments = await _run(GeminiClient(SettingsStub()))

    assert [f.sequence_id for f in fragments] == [0, 1, 2, 3]
    assert fragments[1].finish_reason is FinishReason.NONE
    assert fragments[1].usage == TokenUsage(5, 2)
    assert fragments[-1].is_final and fragments[-1].finish_reason is FinishReason.STOP
    assert build_final_message(fragments).content == "Hello\n\n`Sources`\n\t* [https://a](https://a)"


@pytest.mark.asyncio
async def test_gemini_stream_without_citations_ends_with_sentinel(monkeypatch):
    _install_client(monkeypatch, StreamResponse([_line({"candidates": [_candidate("ok", "MAX_TOKENS")]})]))

    fragments = await _run(GeminiClient(SettingsStub()))

    assert [f.sequence_id for f in fragments] == [0, 1]
    assert build_final_message(fragments).content == "ok"


@pytest.mark.asyncio
async def test_gemini_payload(monkeypatch):
    captured = _install_client(monkeypatch, StreamResponse([]))
    messages = [Message("system", "ignored"), Message("user", "q"), Message("assistant", "a")]
    gen = GenerationSettings(model="gemini-1.5-pro", max_tokens=64, top_p=0.9, system_prompt="be nice")

    await _run(GeminiClient(SettingsStub()), messages, gen)

    assert captured["url"].endswith("/models/gemini-1.5-pro:streamGenerateContent")
    assert captured["params"] == {"alt": "sse"}
    assert captured["headers"]["x-goog-api-key"] == "g"
    payload = captured["json"]
    assert payload["contents"] == [
        {"role": "user", "parts": [{"text": "q"}]},
        {"role": "model", "parts": [{"text": "a"}]},
    ]
    assert payload["generationConfig"] == {"maxOutputTokens": 64, "topP": 0.9}
    assert payload["systemInstruction"] == {"parts": [{"text": "be nice"}]}


@pytest.mark.asyncio
async def test_gemini_recitation_is_an_error(monkeypatch):
    _install_client(monkeypatch, StreamResponse([_line({"candidates": [_candidate("x", "RECITATION")]})]))

    fragments = await _run(GeminiClient(SettingsStub()))

    assert len(fragments) == 1
    assert isinstance(fragments[0].error, ApiError)
    assert fragments[0].error.code == "RECITATION"


@pytest.mark.asyncio
async def test_gemini_unknown_finish_reason(monkeypatch):
    _install_client(monkeypatch, StreamResponse([_line({"candidates": [_candidate("x", "BLOCKLIST")]})]))

    fragments = await _run(GeminiClient(SettingsStub()))

    assert fragments[0].error.code == "UNSUPPORTED_FINISH_REASON"


@pytest.mark.asyncio
async def test_gemini_blocked_prompt(monkeypatch):
    _install_client(monkeypatch, StreamResponse([_line({"promptFeedback": {"blockReason": "SAFETY"}})]))

    fragments = await _run(GeminiClient(SettingsStub()))

    assert fragments[0].error.code == "PROMPT_BLOCKED"


@pytest.mark.asyncio
async def test_gemini_http_error(monkeypatch):
    _install_client(monkeypatch, StreamResponse([], status_code=400, text="bad request"))

    fragments = await _run(GeminiClient(SettingsStub()))

    assert fragments[0].error.code == "API_ERROR"
    assert fragments[0].error.http_status == 400


@pytest.mark.asyncio
async def test_gemini_list_models_paginates(monkeypatch):
    pages = [
        JsonResponse({"models": [{"name": "models/gemini-1.5-pro"}, {"name": "models/embedding-001"}], "nextPageToken": "p2"}),
        JsonResponse({"models": [{"name": "models/gemini-1.5-flash"}]}),
    ]
    captured = _install_client(monkeypatch, pages=pages)

    models = await GeminiClient(SettingsStub()).list_models()

    assert models == ["gemini-1.5-pro", "gemini-1.5-flash"]
    assert [params for _, params in captured["gets"]] == [None, {"pageToken": "p2"}]


@pytest.mark.asyncio
async def test_gemini_malformed_candidate_shapes(monkeypatch):
    lines = [
        _line({"candidates": [_candidate("ok")]}),
        _line({"candidates": ["oops"]}),
    ]
    _install_client(monkeypatch, StreamResponse(lines))

    fragments = await _run(GeminiClient(SettingsStub()))

    assert len(fragments) == 2
    assert fragments[1].error.code == "MALFORMED_FRAGMENT"


@pytest.mark.asyncio
async def test_gemini_non_numeric_usage_and_odd_citations(monkeypatch):
    candidate = _candidate("ok", "STOP")
    candidate["citationMetadata"] = {"citationSources": ["not-a-dict", {"uri": "https://b"}]}
    lines = [_line({"candidates": [candidate], "usageMetadata": {"promptTokenCount": "x"}})]
    _install_client(monkeypatch, StreamResponse(lines))

    fragments = await _run(GeminiClient(SettingsStub()))

    assert len(fragments) == 1
    assert fragments[0].error.code == "MALFORMED_FRAGMENT"

    lines = [_line({"candidates": [candidate]})]
    _install_client(monkeypatch, StreamResponse(lines))
    fragments = await _run(GeminiClient(SettingsStub()))
    assert build_final_message(fragments).content == "ok\n\n`Sources`\n\t* [https://b](https://b)"
