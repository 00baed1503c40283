import json

import httpx
import pytest
import respx
from httpx import Response

from interview_research.errors import ConfigError, MalformedResponseError, TransientNetworkError
from interview_research.llm import CompletionClient, message_text, parse_json_content, strip_code_fences

URL = "http://llm.test/v1/chat/completions"
MESSAGES = [{"role": "system", "content": "sys"}, {"role": "user", "content": "hi"}]


def _ok(content: str = "{}") -> Response:
    return Response(200, json={"model": "gpt-test", "choices": [{"message": {"content": content}}]})


def _client(**kwargs) -> CompletionClient:
    return CompletionClient("sk-test", base_url="http://llm.test/v1/", retry_initial_delay=0, **kwargs)


@pytest.mark.asyncio
async def test_chat_completion_payload_and_model_used():
    client = _client(max_output_tokens=1000)
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                captured["auth"] = request.headers["Authorization"]
                return _ok('{"a": 1}')

            respx_mock.post(URL).mock(side_effect=handler)
            data = await client.chat_completion(
                "gpt-test",
                MESSAGES + [{"role": "tool", "content": "dropped"}],
                max_tokens=8000,
                response_format={"type": "json_object"},
            )
        assert data["_model_used"] == "gpt-test"
        assert message_text(data) == '{"a": 1}'
        assert captured["auth"] == "Bearer sk-test"
        assert captured["json"]["max_tokens"] == 1000
        assert captured["json"]["response_format"] == {"type": "json_object"}
        assert [m["role"] for m in captured["json"]["messages"]] == ["system", "user"]
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_chat_completion_retries_transient_status():
    client = _client(max_retries=2)
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            route = respx_mock.post(URL).mock(side_effect=[Response(503), Response(503), _ok()])
            data = await client.chat_completion("gpt-test", MESSAGES)
            assert route.call_count == 3
            assert data["choices"]
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_chat_completion_exhausted_retries_raise_transient():
    client = _client(max_retries=1)
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            route = respx_mock.post(URL).mock(return_value=Response(502, json={"error": "bad gateway"}))
            with pytest.raises(TransientNetworkError) as excinfo:
                await client.chat_completion("gpt-test", MESSAGES)
            assert excinfo.value.status_code == 502
            assert route.call_count == 2
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_chat_completion_client_error_is_not_retried():
    client = _client(max_retries=2)
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            route = respx_mock.post(URL).mock(return_value=Response(400, json={"error": "bad request"}))
            with pytest.raises(httpx.HTTPStatusError):
                await client.chat_completion("gpt-test", MESSAGES)
            assert route.call_count == 1
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_chat_completion_connection_error_is_transient():
    client = _client(max_retries=0)
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post(URL).mock(side_effect=httpx.ConnectError("refused"))
            with pytest.raises(TransientNetworkError):
                await client.chat_completion("gpt-test", MESSAGES)
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_chat_completion_non_json_body():
    client = _client(max_retries=0)
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post(URL).mock(return_value=Response(200, text="<html>oops</html>"))
            with pytest.raises(MalformedResponseError):
                await client.chat_completion("gpt-test", MESSAGES)
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_chat_completion_requires_key():
    client = CompletionClient(None)
    try:
        assert not client.enabled
        with pytest.raises(ConfigError):
            await client.chat_completion("gpt-test", MESSAGES)
    finally:
        await client.close()


def test_parse_json_content_strips_fences():
    assert parse_json_content('```json\n{"a": 1}\n```') == {"a": 1}
    assert parse_json_content("```\n[1, 2]\n```") == [1, 2]
    assert parse_json_content("not json") is None
    assert parse_json_content("") is None
    assert strip_code_fences('```JSON {"b": 2}```') == '{"b": 2}'


def test_message_text_handles_missing_choices():
    assert message_text({}) == ""
    assert message_text(None) == ""
    assert message_text({"choices": [{"message": {"content": None}}]}) == ""
