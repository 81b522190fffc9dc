import httpx
import pytest

from charforge.errors import (
    AuthError,
    GatewayTimeoutError,
    MalformedResponseError,
    NetworkUnavailableError,
    NotFoundError,
    ParseError,
    RateLimitedError,
    UnknownGatewayError,
)
from charforge.llm.gateway import ProviderGateway, map_http_error
from charforge.models import GenerationResult, ProviderConfig


def _config() -> ProviderConfig:
    return ProviderConfig(provider="openai", api_key="test-key")


def _status_transport(status_code: int):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, json={"error": {"message": "nope"}})

    return httpx.MockTransport(handler)


def _content_transport(content: str):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"choices": [{"message": {"content": content}}]})

    return httpx.MockTransport(handler)


class StubClient:
    def __init__(self, text: str = "", exc: Exception | None = None) -> None:
        self.text = text
        self.exc = exc
        self.calls: list[tuple[str, str | None]] = []

    async def generate(self, prompt: str, system_prompt: str | None = None) -> GenerationResult:
        self.calls.append((prompt, system_prompt))
        if self.exc is not None:
            raise self.exc
        return GenerationResult(text=self.text)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status_code, error_cls",
    [
        (401, AuthError),
        (403, AuthError),
        (404, NotFoundError),
        (429, RateLimitedError),
        (500, UnknownGatewayError),
    ],
)
async def test_http_status_maps_to_gateway_error(status_code, error_cls):
    gateway = ProviderGateway(_config(), transport=_status_transport(status_code))

    with pytest.raises(error_cls) as exc_info:
        await gateway.generate("hello")

    assert exc_info.value.status_code == status_code
    assert exc_info.value.provider == "openai"


@pytest.mark.asyncio
async def test_timeout_maps_to_gateway_timeout():
    request = httpx.Request("POST", "https://api.test/llm")
    stub = StubClient(exc=httpx.ReadTimeout("slow", request=request))
    gateway = ProviderGateway(_config(), client=stub)

    with pytest.raises(GatewayTimeoutError):
        await gateway.generate("hello")


@pytest.mark.asyncio
async def test_connect_error_maps_to_network_unavailable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    gateway = ProviderGateway(_config(), transport=httpx.MockTransport(handler))

    with pytest.raises(NetworkUnavailableError):
        await gateway.generate("hello")


@pytest.mark.asyncio
async def test_empty_content_is_malformed():
    gateway = ProviderGateway(_config(), transport=_content_transport("   "))

    with pytest.raises(MalformedResponseError):
        await gateway.generate("hello")


@pytest.mark.asyncio
async def test_generate_passes_system_prompt_to_client():
    stub = StubClient(text="ok")
    gateway = ProviderGateway(_config(), client=stub)

    result = await gateway.generate("prompt", "system")

    assert result.text == "ok"
    assert stub.calls == [("prompt", "system")]


@pytest.mark.asyncio
async def test_generate_json_extracts_fenced_object():
    stub = StubClient(text='Sure!\n```json\n{"name": "Ada"}\n```')
    gateway = ProviderGateway(_config(), client=stub)

    assert await gateway.generate_json("prompt") == {"name": "Ada"}


@pytest.mark.asyncio
async def test_generate_json_raises_parse_error_for_prose():
    gateway = ProviderGateway(_config(), client=StubClient(text="no json here"))

    with pytest.raises(ParseError):
        await gateway.generate_json("prompt")


@pytest.mark.asyncio
async def test_test_connection_reports_failure_without_raising():
    ok = ProviderGateway(_config(), client=StubClient(text="ok"))
    broken = ProviderGateway(_config(), transport=_status_transport(401))

    assert await ok.test_connection() is True
    assert await broken.test_connection() is False


def test_map_http_error_falls_back_to_unknown():
    mapped = map_http_error(httpx.HTTPError("weird"), "ollama")
    assert isinstance(mapped, UnknownGatewayError)
    assert mapped.kind.value == "unknown"
