"""Unit tests for LLMClient networking behavior."""

from __future__ import annotations

import json

import httpx
import pytest

from parley.config import LLMConfig, ModelConfig
from parley.errors import ConfigError, ModelProviderError
from parley.llm_client import LLMClient


@pytest.fixture(autouse=True)
def allow_network(monkeypatch):
    monkeypatch.delenv("PARLEY_DISABLE_NETWORK", raising=False)
    monkeypatch.setenv("TEST_OPENAI_KEY", "sk-test")
    monkeypatch.setenv("TEST_ANTHROPIC_KEY", "ant-test")


def openai_model(model_id="gpt-test"):
    return ModelConfig(
        provider="openai",
        model_id=model_id,
        base_url="https://openai.test/v1",
        api_key_env="TEST_OPENAI_KEY",
    )


def make_config(*models, default=None, retries=2):
    models = list(models) or [openai_model()]
    return LLMConfig(
        models=models,
        default_model=default or models[0].model_id,
        retries=retries,
        backoff_base_seconds=0.0,
    )


def openai_reply(content="hello", tool_calls=None):
    message = {"role": "assistant", "content": content}
    if tool_calls:
        message["tool_calls"] = tool_calls
    return httpx.Response(
        200,
        json={
            "choices": [{"message": message}],
            "usage": {"prompt_tokens": 3, "completion_tokens": 5},
        },
    )


class Recorder:
    """MockTransport handler that replays responses and records requests."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response

    def body(self, i=0):
        return json.loads(self.requests[i].content)


@pytest.mark.asyncio
async def test_disable_network_blocks_requests(monkeypatch):
    monkeypatch.setenv("PARLEY_DISABLE_NETWORK", "1")
    client = LLMClient(make_config())

    with pytest.raises(ModelProviderError, match="PARLEY_DISABLE_NETWORK") as exc_info:
        await client.chat([{"role": "user", "content": "hi"}])
    assert exc_info.value.retryable is False


def test_no_models_is_config_error():
    with pytest.raises(ConfigError):
        LLMClient(LLMConfig(models=[]))


class TestResolution:
    def test_by_id_and_qualified_name(self):
        a, b = openai_model("a"), ModelConfig(provider="anthropic", model_id="b")
        client = LLMClient(make_config(a, b))
        assert client.resolve_model("b") is b
        assert client.resolve_model("anthropic/b") is b

    def test_unknown_falls_back_to_first(self, caplog):
        a = openai_model("a")
        client = LLMClient(make_config(a))
        assert client.resolve_model("nope") is a
        assert "not found" in caplog.text


class TestOpenAI:
    @pytest.mark.asyncio
    async def test_request_shape(self):
        recorder = Recorder(openai_reply())
        client = LLMClient(make_config(), transport=httpx.MockTransport(recorder))

        response = await client.chat(
            [{"role": "user", "content": "hi"}],
            system_prompt="be brief",
            tools=[{"name": "bash", "description": "run", "parameters": {"type": "object", "properties": {}}}],
            max_tokens=100,
        )

        request = recorder.requests[0]
        assert str(request.url) == "https://openai.test/v1/chat/completions"
        assert request.headers["Authorization"] == "Bearer sk-test"
        body = recorder.body()
        assert body["model"] == "gpt-test"
        assert body["messages"][0] == {"role": "system", "content": "be brief"}
        assert body["messages"][1] == {"role": "user", "content": "hi"}
        assert body["tools"][0]["type"] == "function"
        assert body["tools"][0]["function"]["name"] == "bash"
        assert body["max_tokens"] == 100
        assert response.content == "hello"
        assert response.usage == {"input": 3, "output": 5}

    @pytest.mark.asyncio
    async def test_tool_calls_parsed(self):
        recorder = Recorder(
            openai_reply(
                content=None,
                tool_calls=[
                    {"id": "c1", "type": "function", "function": {"name": "bash", "arguments": '{"command": "ls"}'}},
                    {"id": "c2", "type": "function", "function": {"name": "bash", "arguments": "not json"}},
                ],
            )
        )
        client = LLMClient(make_config(), transport=httpx.MockTransport(recorder))

        response = await client.chat([{"role": "user", "content": "hi"}])

        assert response.content == ""
        assert [tc.id for tc in response.tool_calls] == ["c1", "c2"]
        assert response.tool_calls[0].arguments == {"command": "ls"}
        assert response.tool_calls[1].arguments == {}


class TestAnthropic:
    @pytest.mark.asyncio
    async def test_request_and_response(self):
        recorder = Recorder(
            httpx.Response(
                200,
                json={
                    "content": [
                        {"type": "text", "text": "checking"},
                        {"type": "tool_use", "id": "tu1", "name": "bash", "input": {"command": "ls"}},
                    ],
                    "usage": {"input_tokens": 7, "output_tokens": 2},
                },
            )
        )
        model = ModelConfig(provider="anthropic", model_id="claude-test", api_key_env="TEST_ANTHROPIC_KEY")
        client = LLMClient(make_config(model), transport=httpx.MockTransport(recorder))

        response = await client.chat(
            [{"role": "system", "content": "sys"}, {"role": "user", "content": "hi"}],
            tools=[{"name": "bash", "description": "run", "parameters": {"type": "object"}}],
        )

        request = recorder.requests[0]
        assert str(request.url) == "https://api.anthropic.com/v1/messages"
        assert request.headers["x-api-key"] == "ant-test"
        assert "anthropic-version" in request.headers
        body = recorder.body()
        assert body["system"] == "sys"
        assert body["messages"] == [{"role": "user", "content": "hi"}]
        assert body["tools"][0]["input_schema"] == {"type": "object"}
        assert response.content == "checking"
        assert response.tool_calls[0].name == "bash"
        assert response.usage == {"input": 7, "output": 2}


class TestRetries:
    @pytest.mark.asyncio
    async def test_retryable_status_then_success(self):
        recorder = Recorder(httpx.Response(429, text="slow down"), httpx.Response(503), openai_reply("ok"))
        client = LLMClient(make_config(retries=2), transport=httpx.MockTransport(recorder))

        response = await client.chat([{"role": "user", "content": "hi"}])

        assert response.content == "ok"
        assert len(recorder.requests) == 3

    @pytest.mark.asyncio
    async def test_network_error_is_retryable(self):
        recorder = Recorder(httpx.ConnectError("refused"), openai_reply("ok"))
        client = LLMClient(make_config(retries=1), transport=httpx.MockTransport(recorder))
        assert (await client.chat([{"role": "user", "content": "hi"}])).content == "ok"

    @pytest.mark.asyncio
    async def test_gives_up_after_retries(self):
        recorder = Recorder(httpx.Response(500, text="down"))
        client = LLMClient(make_config(retries=2), transport=httpx.MockTransport(recorder))

        with pytest.raises(ModelProviderError) as exc_info:
            await client.chat([{"role": "user", "content": "hi"}])

        assert exc_info.value.retryable
        assert exc_info.value.status_code == 500
        assert len(recorder.requests) == 3

    @pytest.mark.asyncio
    async def test_raises_error_from_last_attempt(self):
        recorder = Recorder(httpx.Response(503), httpx.Response(500, text="down"))
        client = LLMClient(make_config(retries=1), transport=httpx.MockTransport(recorder))

        with pytest.raises(ModelProviderError) as exc_info:
            await client.chat([{"role": "user", "content": "hi"}])

        assert exc_info.value.status_code == 500
        assert len(recorder.requests) == 2

    @pytest.mark.asyncio
    async def test_zero_retries_makes_one_attempt(self):
        recorder = Recorder(httpx.Response(503))
        client = LLMClient(make_config(retries=0), transport=httpx.MockTransport(recorder))

        with pytest.raises(ModelProviderError) as exc_info:
            await client.chat([{"role": "user", "content": "hi"}])

        assert exc_info.value.status_code == 503
        assert len(recorder.requests) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [400, 401, 403, 404, 422])
    async def test_terminal_status_not_retried(self, status):
        recorder = Recorder(httpx.Response(status, text="nope"))
        client = LLMClient(make_config(retries=2), transport=httpx.MockTransport(recorder))

        with pytest.raises(ModelProviderError) as exc_info:
            await client.chat([{"role": "user", "content": "hi"}])

        assert not exc_info.value.retryable
        assert len(recorder.requests) == 1

    @pytest.mark.asyncio
    async def test_missing_key_is_terminal(self, monkeypatch):
        monkeypatch.delenv("TEST_OPENAI_KEY")
        recorder = Recorder(openai_reply())
        client = LLMClient(make_config(), transport=httpx.MockTransport(recorder))

        with pytest.raises(ModelProviderError, match="Missing API key"):
            await client.chat([{"role": "user", "content": "hi"}])
        assert recorder.requests == []


class TestFallback:
    @pytest.mark.asyncio
    async def test_falls_back_to_default_model(self):
        def handler(request):
            model = json.loads(request.content)["model"]
            if model == "flaky":
                return httpx.Response(503)
            return openai_reply(f"from {model}")

        client = LLMClient(
            make_config(openai_model("main"), openai_model("flaky"), default="main", retries=1),
            transport=httpx.MockTransport(handler),
        )

        response = await client.chat([{"role": "user", "content": "hi"}], model="flaky")
        assert response.content == "from main"

    @pytest.mark.asyncio
    async def test_no_fallback_when_default_fails(self):
        calls = []

        def handler(request):
            calls.append(json.loads(request.content)["model"])
            return httpx.Response(503)

        client = LLMClient(
            make_config(openai_model("main"), openai_model("other"), default="main", retries=1),
            transport=httpx.MockTransport(handler),
        )

        with pytest.raises(ModelProviderError):
            await client.chat([{"role": "user", "content": "hi"}])
        assert calls == ["main", "main"]

    @pytest.mark.asyncio
    async def test_fallback_failure_raises_original_error(self):
        def handler(request):
            model = json.loads(request.content)["model"]
            return httpx.Response(503 if model == "flaky" else 500)

        client = LLMClient(
            make_config(openai_model("main"), openai_model("flaky"), default="main", retries=0),
            transport=httpx.MockTransport(handler),
        )

        with pytest.raises(ModelProviderError) as exc_info:
            await client.chat([{"role": "user", "content": "hi"}], model="flaky")
        assert exc_info.value.status_code == 503
