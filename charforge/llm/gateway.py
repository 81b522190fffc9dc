"""统一生成网关：按 provider 选择适配器，把 httpx 异常映射为 GatewayError 分类。"""

from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from charforge.errors import (
    AuthError,
    GatewayError,
    GatewayTimeoutError,
    MalformedResponseError,
    NetworkUnavailableError,
    NotFoundError,
    RateLimitedError,
    UnknownGatewayError,
)
from charforge.llm.extraction import extract_json_object
from charforge.models import GenerationResult, ProviderConfig
from charforge.services.provider_clients import ProviderClient, create_provider_client

logger = logging.getLogger(__name__)

CONNECTION_TEST_PROMPT = "Reply with the single word: ok"

__all__ = ["ProviderGateway", "create_provider_client", "map_http_error"]


def _status_error(exc: httpx.HTTPStatusError, provider: str) -> GatewayError:
    status = exc.response.status_code
    detail = exc.response.text[:200]
    message = f"{provider} request failed with HTTP {status}"
    if detail:
        message = f"{message}: {detail}"
    if status in (401, 403):
        return AuthError(message, provider=provider, status_code=status)
    if status == 404:
        return NotFoundError(message, provider=provider, status_code=status)
    if status == 429:
        return RateLimitedError(message, provider=provider, status_code=status)
    return UnknownGatewayError(message, provider=provider, status_code=status)


def map_http_error(exc: httpx.HTTPError, provider: str) -> GatewayError:
    if isinstance(exc, httpx.HTTPStatusError):
        return _status_error(exc, provider)
    if isinstance(exc, httpx.TimeoutException):
        return GatewayTimeoutError(f"{provider} request timed out", provider=provider)
    if isinstance(exc, httpx.TransportError):
        return NetworkUnavailableError(f"{provider} is unreachable: {exc}", provider=provider)
    return UnknownGatewayError(f"{provider} request failed: {exc}", provider=provider)


class ProviderGateway:
    """对流程层暴露的唯一生成入口；流程层不感知具体供应商。"""

    def __init__(
        self,
        config: ProviderConfig,
        *,
        client: ProviderClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self._client = client or create_provider_client(config, transport=transport)

    @property
    def provider(self) -> str:
        return self.config.provider

    async def generate(self, prompt: str, system_prompt: str | None = None) -> GenerationResult:
        started = time.monotonic()
        try:
            result = await self._client.generate(prompt, system_prompt)
        except GatewayError:
            raise
        except httpx.HTTPError as exc:
            mapped = map_http_error(exc, self.provider)
            logger.warning(
                "provider call failed",
                extra={"payload": {"provider": self.provider, "kind": mapped.kind.value}},
            )
            raise mapped from exc
        if not result.text.strip():
            raise MalformedResponseError(
                f"{self.provider} returned empty content", provider=self.provider
            )
        logger.debug(
            "provider call finished",
            extra={
                "payload": {
                    "provider": self.provider,
                    "model": self.config.resolved_model(),
                    "elapsed_ms": int((time.monotonic() - started) * 1000),
                    "content_length": len(result.text),
                }
            },
        )
        return result

    async def generate_json(self, prompt: str, system_prompt: str | None = None) -> dict[str, Any]:
        result = await self.generate(prompt, system_prompt)
        return extract_json_object(result.text)

    async def test_connection(self) -> bool:
        """发送一个最小提示；任何网关错误都视为连接失败。"""
        try:
            await self.generate(CONNECTION_TEST_PROMPT)
        except GatewayError as exc:
            logger.info("connection test failed for %s: %s", self.provider, exc)
            return False
        return True
