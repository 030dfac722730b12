import asyncio
import json
import logging

import httpx
import pytest

from errors import UpstreamError
from vision import VisionClient


def _completion(content):
    return {
        "id": "chatcmpl-1",
        "model": "gpt-4o-mini",
        "choices": [{"message": {"role": "assistant", "content": content}}],
        "usage": {"total_tokens": 42},
    }


def _client(handler, model="gpt-4o-mini", timeout=60.0):
    return VisionClient(
        api_key="sk-test",
        model=model,
        base_url="https://llm.example/v1/",
        timeout_seconds=timeout,
        transport=httpx.MockTransport(handler),
    )


def test_recognize_sends_image_and_returns_text():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=_completion('{"is_artwork": true}'))

    text = asyncio.run(_client(handler).recognize("data:image/jpeg;base64,AAAA", max_tokens=3500))

    assert text == '{"is_artwork": true}'
    assert seen["url"] == "https://llm.example/v1/chat/completions"
    assert seen["auth"] == "Bearer sk-test"
    body = seen["body"]
    assert body["temperature"] == 0
    assert body["max_tokens"] == 3500
    user_parts = body["messages"][1]["content"]
    assert user_parts[1] == {"type": "image_url", "image_url": {"url": "data:image/jpeg;base64,AAAA"}}


def test_gpt5_models_use_completion_token_limit():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=_completion("{}"))

    asyncio.run(_client(handler, model="gpt-5-mini").recognize("data:image/png;base64,AA", max_tokens=100))

    assert seen["body"]["max_completion_tokens"] == 100
    assert "temperature" not in seen["body"]
    assert "max_tokens" not in seen["body"]


def test_character_prompt_names_the_work():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=_completion([{"type": "text", "text": '{"personajes": []}'}]))

    text = asyncio.run(
        _client(handler).analyze_characters("https://img.example/a.jpg", "The Last Supper", "Leonardo", max_tokens=4000)
    )

    assert text == '{"personajes": []}'
    assert '"The Last Supper" by Leonardo' in seen["body"]["messages"][0]["content"]
    assert seen["body"]["max_tokens"] == 4000


def test_http_error_carries_provider_message():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": {"message": "Incorrect API key provided"}})

    with pytest.raises(UpstreamError) as excinfo:
        asyncio.run(_client(handler).recognize("data:image/jpeg;base64,AA"))

    assert excinfo.value.status_code == 502
    assert excinfo.value.message == "Incorrect API key provided"
    assert excinfo.value.suggestion


def test_timeout_becomes_upstream_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(UpstreamError) as excinfo:
        asyncio.run(_client(handler, timeout=5.0).recognize("data:image/jpeg;base64,AA"))

    assert "timed out after 5s" in excinfo.value.message


def test_non_json_body_becomes_upstream_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>gateway</html>")

    with pytest.raises(UpstreamError):
        asyncio.run(_client(handler).recognize("data:image/jpeg;base64,AA"))


@pytest.mark.parametrize(
    "body",
    [
        {"choices": ["oops"]},
        {"choices": []},
        {"choices": [{"message": "not an object"}]},
        {"id": "chatcmpl-2"},
    ],
)
def test_body_without_message_becomes_upstream_error(body):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=body)

    with pytest.raises(UpstreamError) as excinfo:
        asyncio.run(_client(handler).recognize("data:image/jpeg;base64,AA"))

    assert excinfo.value.status_code == 502
    assert excinfo.value.suggestion


def test_odd_usage_field_is_ignored():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={**_completion("{}"), "usage": "n/a"})

    assert asyncio.run(_client(handler).recognize("data:image/jpeg;base64,AA")) == "{}"


def test_gpt5_model_logs_temperature_warning(caplog):
    with caplog.at_level(logging.WARNING, logger="vision"):
        client = VisionClient(api_key="sk-test", model="gpt-5")

    assert client.supports_temperature is False
    assert "does not accept temperature" in caplog.text
