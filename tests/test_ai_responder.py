from __future__ import annotations

import json

import httpx
import pytest

from src.ai.responder import AIResponderError, HistoryMessage, OpenAIChatResponder, to_chat_messages


def _responder(handler, **kwargs) -> OpenAIChatResponder:
    return OpenAIChatResponder(
        api_key="sk-test",
        base_url="https://llm.example.com/v1/",
        client=httpx.Client(transport=httpx.MockTransport(handler)),
        **kwargs,
    )


def test_history_maps_senders_to_chat_roles() -> None:
    messages = to_chat_messages(
        [
            HistoryMessage(sender_type="CLIENT", content="Oi"),
            HistoryMessage(sender_type="AI", content="Olá! Como posso ajudar?"),
            HistoryMessage(sender_type="SYSTEM", content="   "),
            HistoryMessage(sender_type="AGENT", content="Um momento"),
        ],
        system_prompt="Be brief.",
    )

    assert messages == [
        {"role": "system", "content": "Be brief."},
        {"role": "user", "content": "Oi"},
        {"role": "assistant", "content": "Olá! Como posso ajudar?"},
        {"role": "assistant", "content": "Um momento"},
    ]


def test_complete_posts_chat_request_and_returns_text() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"choices": [{"message": {"content": "  Claro!  "}}]})

    reply = _responder(handler).complete(
        [HistoryMessage(sender_type="CLIENT", content="Pode me ajudar?")],
        system_prompt="Workspace prompt",
        model="gpt-4o",
    )

    assert reply == "Claro!"
    assert seen["url"] == "https://llm.example.com/v1/chat/completions"
    assert seen["auth"] == "Bearer sk-test"
    assert seen["body"]["model"] == "gpt-4o"
    assert seen["body"]["messages"][0] == {"role": "system", "content": "Workspace prompt"}
    assert seen["body"]["max_tokens"] == 1500


def test_complete_falls_back_to_default_prompt_and_model() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]})

    _responder(handler, default_model="small-model", default_system_prompt="Default prompt").complete(
        [HistoryMessage(sender_type="CLIENT", content="hi")],
        system_prompt="  ",
        model=None,
    )

    assert seen["body"]["model"] == "small-model"
    assert seen["body"]["messages"][0]["content"] == "Default prompt"


def test_complete_returns_empty_text_without_choices() -> None:
    reply = _responder(lambda request: httpx.Response(200, json={"choices": []})).complete([])

    assert reply == ""


def test_provider_error_status_raises() -> None:
    responder = _responder(lambda request: httpx.Response(429, text="rate limited"))

    with pytest.raises(AIResponderError, match="status=429"):
        responder.complete([HistoryMessage(sender_type="CLIENT", content="hi")])


def test_unreachable_provider_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(AIResponderError, match="ai_provider_unreachable"):
        _responder(handler).complete([HistoryMessage(sender_type="CLIENT", content="hi")])


def test_missing_api_key_raises() -> None:
    responder = OpenAIChatResponder(
        api_key="",
        client=httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(200, json={}))),
    )

    with pytest.raises(AIResponderError, match="ai_api_key_missing"):
        responder.complete([HistoryMessage(sender_type="CLIENT", content="hi")])
