"""Tests for the generation service client."""

import asyncio
import json

import httpx
import pytest

from taskpilot.integrations.generation import (
    GenerationService,
    GenerationServiceError,
    OpenAIChatService,
)


def _service(handler, **kwargs):
    client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="https://llm.test/v1"
    )
    return OpenAIChatService("sk-test", client=client, **kwargs)


def _complete(service, prompt="Hello"):
    async def run():
        try:
            return await service.complete(prompt)
        finally:
            await service._client.aclose()

    return asyncio.run(run())


def _ok(content):
    return httpx.Response(200, json={"choices": [{"message": {"content": content}}]})


class TestOpenAIChatService:
    def test_complete(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return _ok("Hi there")

        service = _service(handler, model="gpt-test")
        assert _complete(service, "Say hi") == "Hi there"
        assert seen["path"] == "/v1/chat/completions"
        assert seen["body"]["model"] == "gpt-test"
        assert seen["body"]["messages"] == [
            {"role": "system", "content": "You are a helpful assistant."},
            {"role": "user", "content": "Say hi"},
        ]

    def test_satisfies_protocol(self):
        assert isinstance(_service(lambda r: _ok("x")), GenerationService)

    def test_requires_api_key(self):
        with pytest.raises(ValueError):
            OpenAIChatService("")

    def test_sends_bearer_token(self):
        service = OpenAIChatService("sk-secret", base_url="https://llm.test/v1/")
        try:
            assert service._client.headers["Authorization"] == "Bearer sk-secret"
            assert str(service._client.base_url) == "https://llm.test/v1/"
        finally:
            asyncio.run(service.aclose())

    @pytest.mark.parametrize(
        "status, category",
        [(401, "auth"), (403, "auth"), (429, "rate_limit"), (500, "server"),
         (503, "server"), (400, "http"), (404, "http")],
    )
    def test_http_errors(self, status, category):
        service = _service(lambda r: httpx.Response(status, text="nope"))
        with pytest.raises(GenerationServiceError) as exc_info:
            _complete(service)
        assert exc_info.value.status_code == status
        assert exc_info.value.category == category
        assert str(status) in str(exc_info.value)

    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(200, text="not json"),
            httpx.Response(200, json={"choices": []}),
            httpx.Response(200, json={"unexpected": True}),
        ],
    )
    def test_malformed_body(self, response):
        service = _service(lambda r: response)
        with pytest.raises(GenerationServiceError) as exc_info:
            _complete(service)
        assert exc_info.value.category == "malformed"

    def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(GenerationServiceError) as exc_info:
            _complete(_service(handler))
        assert exc_info.value.category == "timeout"

    def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(GenerationServiceError) as exc_info:
            _complete(_service(handler))
        assert exc_info.value.category == "transport"

    def test_injected_client_not_closed(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: _ok("x")))
        service = OpenAIChatService("sk-test", client=client)

        async def run():
            async with service:
                pass
            closed = client.is_closed
            await client.aclose()
            return closed

        assert asyncio.run(run()) is False
