from __future__ import annotations

from typing import Any, Mapping, Protocol

import httpx
from pydantic import BaseModel, Field

from ..core.config import EndpointSettings
from ..core.exceptions import ProviderError
from ..core.logging import get_logger
from ..schemas.agents import AIProvider, provider_id

logger = get_logger(name=__name__)

ANTHROPIC_API_VERSION = "2023-06-01"


class ProviderRequest(BaseModel):
    model: str
    prompt: str
    system: str | None = None
    max_output_tokens: int = Field(1024, ge=1)
    temperature: float = Field(0.2, ge=0.0, le=2.0)


class ProviderResponse(BaseModel):
    output: str
    input_tokens: int = Field(0, ge=0)
    output_tokens: int = Field(0, ge=0)
    model: str | None = None


class ProviderClient(Protocol):
    provider: str

    async def complete(self, request: ProviderRequest) -> ProviderResponse:
        ...


def _is_transient_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


def raise_for_provider_status(provider: str, response: httpx.Response) -> None:
    """Translate non-2xx responses into ``ProviderError`` with a transient flag."""
    if response.is_success:
        return
    detail = response.text[:200] if response.content else response.reason_phrase
    raise ProviderError(
        provider,
        f"HTTP {response.status_code}: {detail}",
        transient=_is_transient_status(response.status_code),
        status_code=response.status_code,
    )


class _HTTPProviderClient:
    provider: str

    def __init__(
        self,
        provider: AIProvider | str,
        endpoint: EndpointSettings,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        key = provider_id(provider)
        assert key is not None
        self.provider = key
        self._endpoint = endpoint
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=endpoint.timeout_seconds)

    def _url(self, path: str) -> str:
        return f"{self._endpoint.base_url.rstrip('/')}/{path.lstrip('/')}"

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    async def _post(self, path: str, body: Mapping[str, Any]) -> dict[str, Any]:
        try:
            response = await self._client.post(
                self._url(path),
                json=dict(body),
                headers=self._headers(),
                timeout=self._endpoint.timeout_seconds,
            )
        except httpx.TimeoutException as exc:
            raise ProviderError(self.provider, f"request timed out: {exc}", transient=True) from exc
        except httpx.TransportError as exc:
            raise ProviderError(self.provider, f"transport error: {exc}", transient=True) from exc
        raise_for_provider_status(self.provider, response)
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderError(self.provider, "response was not valid JSON", transient=False) from exc

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class ChatCompletionsClient(_HTTPProviderClient):
    """Client for OpenAI-compatible ``/chat/completions`` APIs (OpenAI, Perplexity, Ollama)."""

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        if self._endpoint.api_key:
            headers["Authorization"] = f"Bearer {self._endpoint.api_key}"
        return headers

    async def complete(self, request: ProviderRequest) -> ProviderResponse:
        messages: list[dict[str, str]] = []
        if request.system:
            messages.append({"role": "system", "content": request.system})
        messages.append({"role": "user", "content": request.prompt})
        data = await self._post(
            "chat/completions",
            {
                "model": request.model,
                "messages": messages,
                "max_tokens": request.max_output_tokens,
                "temperature": request.temperature,
            },
        )
        choices = data.get("choices") or []
        if not choices:
            raise ProviderError(self.provider, "response contained no choices", transient=True)
        message = choices[0].get("message") or {}
        usage = data.get("usage") or {}
        return ProviderResponse(
            output=str(message.get("content") or ""),
            input_tokens=int(usage.get("prompt_tokens") or 0),
            output_tokens=int(usage.get("completion_tokens") or 0),
            model=data.get("model") or request.model,
        )


class AnthropicMessagesClient(_HTTPProviderClient):
    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        headers["anthropic-version"] = ANTHROPIC_API_VERSION
        if self._endpoint.api_key:
            headers["x-api-key"] = self._endpoint.api_key
        return headers

    async def complete(self, request: ProviderRequest) -> ProviderResponse:
        body: dict[str, Any] = {
            "model": request.model,
            "max_tokens": request.max_output_tokens,
            "temperature": request.temperature,
            "messages": [{"role": "user", "content": request.prompt}],
        }
        if request.system:
            body["system"] = request.system
        data = await self._post("messages", body)
        blocks = data.get("content") or []
        text = "".join(str(block.get("text", "")) for block in blocks if block.get("type") == "text")
        usage = data.get("usage") or {}
        return ProviderResponse(
            output=text,
            input_tokens=int(usage.get("input_tokens") or 0),
            output_tokens=int(usage.get("output_tokens") or 0),
            model=data.get("model") or request.model,
        )


def build_provider_clients(
    endpoints: Mapping[str, EndpointSettings],
    *,
    http_client: httpx.AsyncClient | None = None,
) -> dict[str, ProviderClient]:
    """Create one HTTP client per configured AI provider endpoint."""
    clients: dict[str, ProviderClient] = {}
    for provider in AIProvider:
        endpoint = endpoints.get(provider.value)
        if endpoint is None:
            continue
        if provider is AIProvider.ANTHROPIC:
            clients[provider.value] = AnthropicMessagesClient(provider, endpoint, http_client=http_client)
        else:
            clients[provider.value] = ChatCompletionsClient(provider, endpoint, http_client=http_client)
    logger.info("provider_clients_built", providers=sorted(clients))
    return clients


__all__ = [
    "AnthropicMessagesClient",
    "ChatCompletionsClient",
    "ProviderClient",
    "ProviderRequest",
    "ProviderResponse",
    "build_provider_clients",
    "raise_for_provider_status",
]
