"""各文本生成后端的 httpx 封装：每次调用恰好一次网络往返，不做重试。"""
from __future__ import annotations

from typing import Any, Mapping

import httpx

from charforge.constants import CLAUDE_API_VERSION, USER_AGENT
from charforge.errors import MalformedResponseError
from charforge.models import GenerationResult, ProviderConfig, TokenUsage


class ProviderClient:
    """单个供应商适配器的公共骨架；子类只负责请求体和响应解析。"""

    provider: str = ""

    def __init__(
        self,
        config: ProviderConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self.provider = config.provider
        self._transport = transport

    def _url(self) -> str:
        return self.config.resolved_endpoint()

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json", "User-Agent": USER_AGENT}

    def _params(self) -> dict[str, str]:
        return {}

    def _build_payload(self, prompt: str, system_prompt: str | None) -> dict[str, Any]:
        raise NotImplementedError

    def _parse_response(self, data: Mapping[str, Any]) -> GenerationResult:
        raise NotImplementedError

    def _malformed(self, detail: str) -> MalformedResponseError:
        return MalformedResponseError(f"{self.provider}: {detail}", provider=self.provider)

    async def generate(self, prompt: str, system_prompt: str | None = None) -> GenerationResult:
        """发送一次生成请求；HTTP 错误以 httpx 异常形式抛出，由网关统一映射。"""
        payload = self._build_payload(prompt, system_prompt)
        async with httpx.AsyncClient(
            timeout=self.config.timeout,
            transport=self._transport,
        ) as client:
            response = await client.post(
                self._url(),
                params=self._params() or None,
                headers=self._headers(),
                json=payload,
            )
            response.raise_for_status()
            try:
                data = response.json()
            except ValueError as exc:
                raise self._malformed("response body is not JSON") from exc
        if not isinstance(data, Mapping):
            raise self._malformed("response body is not a JSON object")
        return self._parse_response(data)


class GeminiClient(ProviderClient):
    @staticmethod
    def _strip_thoughts(payload: dict[str, Any]) -> dict[str, Any]:
        """去除 thought 标记的内容块，避免上层收到思考过程."""
        candidates = payload.get("candidates", [])
        for candidate in candidates:
            content = candidate.get("content")
            if not content:
                continue
            parts = content.get("parts", [])
            content["parts"] = [part for part in parts if not part.get("thought")]
        return payload

    def _url(self) -> str:
        base = self.config.resolved_endpoint().rstrip("/")
        return f"{base}/v1beta/models/{self.config.resolved_model()}:generateContent"

    def _params(self) -> dict[str, str]:
        return {"key": self.config.api_key or ""}

    def _build_payload(self, prompt: str, system_prompt: str | None) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "maxOutputTokens": self.config.max_tokens,
                "temperature": self.config.temperature,
            },
        }
        if system_prompt:
            payload["systemInstruction"] = {"parts": [{"text": system_prompt}]}
        return payload

    def _parse_response(self, data: Mapping[str, Any]) -> GenerationResult:
        try:
            stripped = self._strip_thoughts(dict(data))
            parts = stripped["candidates"][0]["content"]["parts"]
            text = "".join(part["text"] for part in parts if "text" in part)
        except (KeyError, IndexError, TypeError, AttributeError) as exc:
            raise self._malformed("missing candidates[0].content.parts") from exc
        usage = None
        metadata = data.get("usageMetadata")
        if isinstance(metadata, Mapping):
            usage = TokenUsage(
                prompt=int(metadata.get("promptTokenCount", 0) or 0),
                completion=int(metadata.get("candidatesTokenCount", 0) or 0),
                total=int(metadata.get("totalTokenCount", 0) or 0),
            )
        return GenerationResult(text=text, token_usage=usage)


class ClaudeClient(ProviderClient):
    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        headers["x-api-key"] = self.config.api_key or ""
        headers["anthropic-version"] = CLAUDE_API_VERSION
        return headers

    def _build_payload(self, prompt: str, system_prompt: str | None) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.config.resolved_model(),
            "max_tokens": self.config.max_tokens,
            "temperature": self.config.temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system_prompt:
            payload["system"] = system_prompt
        return payload

    def _parse_response(self, data: Mapping[str, Any]) -> GenerationResult:
        blocks = data.get("content")
        if not isinstance(blocks, list) or not blocks:
            raise self._malformed("missing content blocks")
        texts = [
            block["text"]
            for block in blocks
            if isinstance(block, Mapping)
            and block.get("type") == "text"
            and isinstance(block.get("text"), str)
        ]
        if not texts:
            raise self._malformed("no text block in response")
        usage = None
        raw_usage = data.get("usage")
        if isinstance(raw_usage, Mapping):
            prompt_tokens = int(raw_usage.get("input_tokens", 0) or 0)
            completion_tokens = int(raw_usage.get("output_tokens", 0) or 0)
            usage = TokenUsage(
                prompt=prompt_tokens,
                completion=completion_tokens,
                total=prompt_tokens + completion_tokens,
            )
        return GenerationResult(text="".join(texts), token_usage=usage)


class ChatCompletionsClient(ProviderClient):
    """OpenAI 兼容的 chat/completions 接口（openai、custom-openai、lm-studio）。"""

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        return headers

    def _build_payload(self, prompt: str, system_prompt: str | None) -> dict[str, Any]:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})
        return {
            "model": self.config.resolved_model(),
            "messages": messages,
            "max_tokens": self.config.max_tokens,
            "temperature": self.config.temperature,
            "stream": False,
        }

    def _parse_response(self, data: Mapping[str, Any]) -> GenerationResult:
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise self._malformed("missing choices[0].message.content") from exc
        if not isinstance(content, str):
            raise self._malformed("message content is not text")
        usage = None
        raw_usage = data.get("usage")
        if isinstance(raw_usage, Mapping):
            usage = TokenUsage(
                prompt=int(raw_usage.get("prompt_tokens", 0) or 0),
                completion=int(raw_usage.get("completion_tokens", 0) or 0),
                total=int(raw_usage.get("total_tokens", 0) or 0),
            )
        return GenerationResult(text=content, token_usage=usage)


class OllamaClient(ProviderClient):
    def _build_payload(self, prompt: str, system_prompt: str | None) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.config.resolved_model(),
            "prompt": prompt,
            "stream": False,
            "options": {
                "temperature": self.config.temperature,
                "num_predict": self.config.max_tokens,
            },
        }
        if system_prompt:
            payload["system"] = system_prompt
        return payload

    def _parse_response(self, data: Mapping[str, Any]) -> GenerationResult:
        text = data.get("response")
        if not isinstance(text, str):
            raise self._malformed("missing response field")
        prompt_tokens = int(data.get("prompt_eval_count", 0) or 0)
        completion_tokens = int(data.get("eval_count", 0) or 0)
        usage = None
        if prompt_tokens or completion_tokens:
            usage = TokenUsage(
                prompt=prompt_tokens,
                completion=completion_tokens,
                total=prompt_tokens + completion_tokens,
            )
        return GenerationResult(text=text, token_usage=usage)


_CLIENTS: dict[str, type[ProviderClient]] = {
    "gemini": GeminiClient,
    "claude": ClaudeClient,
    "openai": ChatCompletionsClient,
    "custom-openai": ChatCompletionsClient,
    "lm-studio": ChatCompletionsClient,
    "ollama": OllamaClient,
}


def create_provider_client(
    config: ProviderConfig,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ProviderClient:
    try:
        client_cls = _CLIENTS[config.provider]
    except KeyError as exc:
        raise ValueError(f"Unsupported provider: {config.provider}") from exc
    return client_cls(config, transport=transport)
