from __future__ import annotations

import json
from dataclasses import replace
from urllib.parse import quote

import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import FakeUpstream, put_secret
from st_gateway.core.token_estimation import estimate_tokens

GENERATE_URL = "/api/backends/chat-completions/generate"


def _sse_payloads(body: str) -> list[str]:
    return [line[len("data: ") :] for line in body.splitlines() if line.startswith("data: ")]


def _openai_reply(text: str) -> httpx.Response:
    return httpx.Response(
        200,
        json={"choices": [{"index": 0, "message": {"role": "assistant", "content": text}}]},
    )


def _gemini_reply(text: str) -> httpx.Response:
    return httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": text}]}}]})


@pytest.fixture()
def openai_store(store):
    put_secret(store, "guest", "api_key_openai", "sk-test")
    return store


@pytest.fixture()
def gemini_settings(settings):
    return replace(settings, makersuite_api_key="g-key")


def test_status_endpoint(make_client):
    client: TestClient = make_client()

    response = client.post("/api/backends/chat-completions/status")

    assert response.status_code == 200
    assert response.json() == {"ok": True, "provider": "gateway", "online": True}


def test_healthz(make_client):
    response = make_client().get("/internal/healthz")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_demo_math_short_circuit_makes_no_upstream_call(make_client):
    upstream = FakeUpstream()
    client = make_client(upstream)

    response = client.post(
        GENERATE_URL,
        json={"messages": [{"role": "user", "content": "2+2=?"}], "source": "demo"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["object"] == "chat.completion"
    assert body["choices"][0]["message"] == {"role": "assistant", "content": "4"}
    assert body["usage"]["completion_tokens"] == estimate_tokens("4")
    assert upstream.calls == 0
    assert response.headers["x-st-llm-branch"] == "math-local"
    assert response.headers["x-st-intent-rule"] == "math"


def test_math_short_circuit_applies_to_networked_branches(make_client, gemini_settings):
    upstream = FakeUpstream(_gemini_reply("should not be used"))
    client = make_client(upstream, settings=gemini_settings)

    response = client.post(
        GENERATE_URL,
        json={
            "messages": [{"role": "user", "content": "(12 + 8) * 3 = ?"}],
            "source": "makersuite",
            "model": "gemini-1.5-flash",
        },
    )

    assert response.json()["choices"][0]["message"]["content"] == "60"
    assert upstream.calls == 0


def test_missing_credential_returns_demo_echo(make_client):
    upstream = FakeUpstream()
    client = make_client(upstream)

    response = client.post(
        GENERATE_URL,
        json={
            "messages": [{"role": "user", "content": "hello there"}],
            "source": "makersuite",
            "model": "gemini-1.5-flash",
        },
    )

    assert response.status_code == 200
    content = response.json()["choices"][0]["message"]["content"]
    assert "hello there" in content
    assert response.headers["x-st-llm-branch"] == "gemini-fallback"
    assert response.headers["x-st-fallback"] == "missing-credential"
    assert upstream.calls == 0


def test_demo_reply_is_localized_for_chinese_callers(make_client):
    response = make_client().post(
        GENERATE_URL,
        json={"messages": [{"role": "user", "content": "你好"}]},
        headers={"Accept-Language": "zh-CN,zh;q=0.9"},
    )

    assert response.json()["choices"][0]["message"]["content"] == "（演示回复）你说：你好"
    assert response.headers["x-st-lang-injected"] == "1"


def test_last_input_header_is_used_when_no_user_turn(make_client):
    response = make_client().post(
        GENERATE_URL,
        json={"messages": [], "source": "demo"},
        headers={"X-ST-Last-Input": quote("open the door")},
    )

    assert response.json()["choices"][0]["message"]["content"] == (
        "(demo reply) You said: open the door"
    )
    assert response.headers["x-st-last-input-used"] == "1"
    assert response.headers["x-st-anchor-source"] == "header"


def test_gemini_success_forwards_key_and_system_instruction(make_client, gemini_settings):
    upstream = FakeUpstream(_gemini_reply("The gate opens."))
    client = make_client(upstream, settings=gemini_settings)

    response = client.post(
        GENERATE_URL,
        json={
            "messages": [
                {"role": "system", "content": "You are the narrator."},
                {"role": "user", "content": "I push the gate"},
            ],
            "source": "makersuite",
            "model": "gemini-1.5-flash",
            "max_tokens": 300,
        },
    )

    assert response.status_code == 200
    assert response.json()["choices"][0]["message"]["content"] == "The gate opens."
    assert response.headers["x-st-llm-branch"] == "gemini"
    assert response.headers["x-st-max-tokens-used"] == "300"

    sent = upstream.requests[0]
    assert sent.headers["x-goog-api-key"] == "g-key"
    assert "key" not in sent.url.params
    assert sent.url.path.endswith("/models/gemini-1.5-flash:generateContent")
    payload = json.loads(sent.content)
    assert "You are the narrator." in payload["systemInstruction"]["parts"][0]["text"]
    assert payload["contents"][0] == {"role": "user", "parts": [{"text": "I push the gate"}]}


def test_persistent_upstream_500_maps_to_502(make_client, openai_store, sleeps):
    upstream = FakeUpstream(httpx.Response(500, text="upstream exploded"))
    client = make_client(upstream, store=openai_store)

    response = client.post(
        GENERATE_URL,
        json={
            "messages": [{"role": "user", "content": "hello"}],
            "source": "openai",
            "model": "gpt-4o-mini",
        },
    )

    assert response.status_code == 502
    body = response.json()
    assert body["error"] is True
    assert body["provider"] == "openai-compat"
    assert body["status"] == 500
    assert body["message"] == "upstream exploded"
    assert body["requestId"] == response.headers["x-st-request-id"]
    assert upstream.calls == 3
    assert sleeps == sorted(sleeps)
    assert len(sleeps) == 2


def test_non_transient_upstream_error_is_not_retried(make_client, openai_store):
    upstream = FakeUpstream(httpx.Response(401, text="bad key"))
    client = make_client(upstream, store=openai_store)

    response = client.post(
        GENERATE_URL,
        json={"messages": [{"role": "user", "content": "hello"}], "source": "openai"},
    )

    assert response.status_code == 502
    assert response.json()["status"] == 401
    assert upstream.calls == 1


def test_transient_failures_then_success(make_client, store, sleeps):
    put_secret(store, "guest", "api_key_openrouter", "or-key")
    upstream = FakeUpstream(
        httpx.Response(503, text="busy"),
        httpx.Response(503, text="busy"),
        _openai_reply("finally"),
    )
    client = make_client(upstream, store=store)

    response = client.post(
        GENERATE_URL,
        json={
            "messages": [{"role": "user", "content": "hello"}],
            "source": "openrouter",
            "model": "meta/llama-3",
        },
    )

    assert response.status_code == 200
    assert response.json()["choices"][0]["message"]["content"] == "finally"
    assert upstream.calls == 3
    assert sleeps == [0.01, 0.02]
    sent = upstream.requests[-1]
    assert str(sent.url) == "https://openrouter.ai/api/v1/chat/completions"
    assert sent.headers["authorization"] == "Bearer or-key"
    assert sent.headers["x-title"] == "SillyTavern"


def test_math_fallback_after_upstream_failure(make_client, openai_store):
    upstream = FakeUpstream(httpx.Response(500, text="down"))
    client = make_client(upstream, store=openai_store)

    response = client.post(
        GENERATE_URL,
        json={
            "messages": [{"role": "user", "content": "tell me 3 * 3 in numbers only"}],
            "source": "openai",
        },
    )

    assert response.status_code == 200
    assert response.json()["choices"][0]["message"]["content"] == "9"
    assert response.headers["x-st-llm-branch"] == "math-local"
    assert response.headers["x-st-fallback"] == "upstream-error"
    assert upstream.calls == 3


def test_arithmetic_anchor_answered_locally_when_hint_is_freshest(make_client, openai_store):
    upstream = FakeUpstream(_openai_reply("should not be called"))
    client = make_client(upstream, store=openai_store)

    response = client.post(
        GENERATE_URL,
        json={"messages": [{"role": "assistant", "content": "7*6=?"}], "source": "openai"},
        headers={"X-ST-Last-Input": quote("what")},
    )

    assert response.status_code == 200
    assert response.json()["choices"][0]["message"]["content"] == "42"
    assert response.headers["x-st-llm-branch"] == "math-local"
    assert upstream.calls == 0


@pytest.mark.parametrize(
    "text",
    ["Plan a 3-4 day trip to Kyoto", "Call me at 555-1234 tomorrow", "I rate it 8/10, why?"],
)
def test_prose_with_numbers_reaches_the_model(make_client, openai_store, text):
    upstream = FakeUpstream(_openai_reply("model answer"))
    client = make_client(upstream, store=openai_store)

    response = client.post(
        GENERATE_URL,
        json={"messages": [{"role": "user", "content": text}], "source": "openai"},
    )

    assert response.status_code == 200
    assert response.json()["choices"][0]["message"]["content"] == "model answer"
    assert response.headers["x-st-llm-branch"] == "openai-compat"
    assert response.headers["x-st-intent-rule"] != "math"
    assert upstream.calls == 1


def test_blank_upstream_reply_echoes_user_text(make_client, openai_store):
    upstream = FakeUpstream(_openai_reply(""))
    client = make_client(upstream, store=openai_store)

    response = client.post(
        GENERATE_URL,
        json={"messages": [{"role": "user", "content": "anyone there"}], "source": "openai"},
    )

    assert response.json()["choices"][0]["message"]["content"] == (
        "(blank reply, echoed) You said: anyone there"
    )


def test_strict_latest_only_collapses_outgoing_messages(make_client, openai_store):
    upstream = FakeUpstream(_openai_reply("ok"))
    client = make_client(upstream, store=openai_store)

    response = client.post(
        GENERATE_URL,
        json={
            "messages": [
                {"role": "system", "content": "Persona"},
                {"role": "user", "content": "first"},
                {"role": "assistant", "content": "reply"},
                {"role": "user", "content": "the latest ask"},
            ],
            "source": "openai",
            "strictLatestOnly": True,
        },
    )

    assert response.status_code == 200
    payload = json.loads(upstream.requests[0].content)
    assert payload["messages"] == [{"role": "user", "content": "the latest ask"}]


def test_streaming_openai_shape_rechunks_reply(make_client, openai_store):
    reply = "x" * 300
    upstream = FakeUpstream(_openai_reply(reply))
    client = make_client(upstream, store=openai_store)

    with client.stream(
        "POST",
        GENERATE_URL,
        json={
            "messages": [{"role": "user", "content": "tell me"}],
            "source": "openai",
            "stream": True,
        },
    ) as response:
        body = "".join(response.iter_text())

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    payloads = _sse_payloads(body)
    assert payloads[-1] == "[DONE]"

    chunks = [json.loads(item) for item in payloads[:-1]]
    deltas = [chunk["choices"][0]["delta"].get("content") for chunk in chunks[:-1]]
    assert [len(delta) for delta in deltas] == [120, 120, 60]
    assert "".join(deltas) == reply
    assert chunks[-1]["choices"][0]["finish_reason"] == "stop"
    assert all(chunk["object"] == "chat.completion.chunk" for chunk in chunks)

    sent = json.loads(upstream.requests[0].content)
    assert sent["stream"] is False


def test_streaming_makersuite_shape(make_client, gemini_settings):
    upstream = FakeUpstream(_gemini_reply("short answer"))
    client = make_client(upstream, settings=gemini_settings)

    response = client.post(
        GENERATE_URL,
        json={
            "messages": [{"role": "user", "content": "hi"}],
            "source": "makersuite",
            "model": "gemini-1.5-flash",
            "stream": True,
        },
    )

    payloads = _sse_payloads(response.text)
    assert payloads[-1] == "[DONE]"
    assert [json.loads(item) for item in payloads[:-1]] == [
        {"candidates": [{"content": {"parts": [{"text": "short answer"}]}}]}
    ]


def test_streaming_errors_are_returned_before_any_chunk(make_client, openai_store):
    upstream = FakeUpstream(httpx.Response(502, text="bad gateway"))
    client = make_client(upstream, store=openai_store)

    response = client.post(
        GENERATE_URL,
        json={"messages": [{"role": "user", "content": "hi"}], "source": "openai", "stream": True},
    )

    assert response.status_code == 502
    assert response.headers["content-type"].startswith("application/json")
    assert response.json()["status"] == 502


def test_non_object_body_is_rejected(make_client):
    client = make_client()

    response = client.post(GENERATE_URL, json=["not", "an", "object"])

    assert response.status_code == 400
    body = response.json()
    assert body["error"] is True
    assert body["status"] == 400

    response = client.post(
        GENERATE_URL, content=b"{broken", headers={"content-type": "application/json"}
    )
    assert response.status_code == 400


def test_lax_field_types_are_coerced(make_client):
    response = make_client().post(
        GENERATE_URL,
        json={
            "messages": [{"role": "user", "content": [{"type": "text", "text": "hello"}]}, 5],
            "stream": "no",
            "temperature": "warm",
            "max_tokens": {"bad": 1},
            "model": None,
        },
    )

    assert response.status_code == 200
    body = response.json()
    assert body["model"] == "stub"
    assert body["choices"][0]["message"]["content"] == "(demo reply) You said: hello"
