from __future__ import annotations

import json
from typing import Any, Mapping, Protocol, runtime_checkable

from ..core.exceptions import AgentError, ProviderError
from ..core.logging import get_logger
from ..schemas.agents import (
    AIProvider,
    AgentCapability,
    AgentDescriptor,
    AgentInput,
    AgentOutput,
    AgentScope,
    TokenUsage,
)
from ..services.providers import ProviderClient, ProviderRequest, ProviderResponse

logger = get_logger(name=__name__)


@runtime_checkable
class BaseAgent(Protocol):
    descriptor: AgentDescriptor

    async def invoke(self, agent_input: AgentInput) -> AgentOutput:
        ...


class ProviderBackedAgent:
    """Agent that turns its input into one prompt for an AI provider.

    Subclasses describe the prompt (``build_prompt``) and how to shape the raw
    completion (``parse_output``). Provider failures are translated into
    ``AgentError`` so the orchestrator can decide whether to retry.

    ``client`` is the preferred provider. ``alternates`` are further clients
    the agent may be asked to use through ``AgentInput.provider``, and
    ``fallback`` is the client the orchestrator switches to once the
    preferred one keeps failing.
    """

    capability: AgentCapability
    system_prompt: str = "You are a careful research assistant working with scientific papers."
    max_output_tokens: int = 1024

    def __init__(
        self,
        client: ProviderClient,
        *,
        model: str,
        name: str | None = None,
        scope: AgentScope = AgentScope.SYSTEM,
        concurrency_limit: int = 4,
        max_output_tokens: int | None = None,
        alternates: Mapping[str, ProviderClient] | None = None,
        fallback: ProviderClient | None = None,
        models: Mapping[str, str] | None = None,
    ) -> None:
        self._client = client
        self._model = model
        self._models = dict(models or {})
        self._clients: dict[str, ProviderClient] = {client.provider: client}
        for alternate in (alternates or {}).values():
            self._clients.setdefault(alternate.provider, alternate)
        if fallback is not None:
            self._clients.setdefault(fallback.provider, fallback)
        if max_output_tokens is not None:
            self.max_output_tokens = max_output_tokens
        self.descriptor = AgentDescriptor.create(
            name or self.capability.value,
            self.capability,
            provider=client.provider,
            scope=scope,
            concurrency_limit=concurrency_limit,
            description=(self.__doc__ or "").strip().splitlines()[0] if self.__doc__ else "",
            alternates=list(self._clients),
            fallback_provider=fallback.provider if fallback is not None else None,
        )

    @property
    def provider(self) -> str:
        return self._client.provider

    def _client_for(self, provider: str | None) -> tuple[ProviderClient, str]:
        if provider is None or provider == self.provider:
            return self._client, self._model
        client = self._clients.get(provider)
        if client is None:
            raise AgentError.permanent_error(f"Agent '{self.descriptor.name}' cannot call provider '{provider}'")
        return client, default_model(self._models, provider)

    def build_prompt(self, agent_input: AgentInput) -> str:
        raise NotImplementedError

    def parse_output(self, response: ProviderResponse, agent_input: AgentInput) -> Any:
        return response.output.strip()

    async def invoke(self, agent_input: AgentInput) -> AgentOutput:
        client, model = self._client_for(agent_input.provider)
        prompt = self.build_prompt(agent_input)
        request = ProviderRequest(
            model=model,
            prompt=prompt,
            system=self.system_prompt,
            max_output_tokens=self.max_output_tokens,
        )
        try:
            response = await client.complete(request)
        except ProviderError as exc:
            logger.warning(
                "agent_provider_call_failed",
                agent=self.descriptor.name,
                provider=client.provider,
                task_id=agent_input.task_id,
                transient=exc.transient,
                error=str(exc),
            )
            raise AgentError(str(exc), transient=exc.transient) from exc

        usage = TokenUsage(
            provider=client.provider,
            model=response.model or model,
            input_tokens=response.input_tokens,
            output_tokens=response.output_tokens,
        )
        try:
            payload = self.parse_output(response, agent_input)
        except ValueError as exc:
            raise AgentError.transient_error(f"Unusable provider output: {exc}", usage=usage) from exc
        return AgentOutput(
            agent=self.descriptor.name,
            capability=self.descriptor.capability,
            payload=payload,
            usage=usage,
            metadata={"model": usage.model},
        )


def upstream_text(agent_input: AgentInput, key: str = "text") -> str:
    """Collect a text field from upstream outputs, falling back to the task payload."""
    parts: list[str] = []
    for output in agent_input.upstream.values():
        if isinstance(output, Mapping) and output.get(key):
            parts.append(str(output[key]))
        elif isinstance(output, str) and output:
            parts.append(output)
    if not parts and agent_input.payload.get(key):
        parts.append(str(agent_input.payload[key]))
    return "\n\n".join(parts)


def parse_json_object(raw: str) -> dict[str, Any]:
    """Parse a JSON object from a completion, tolerating fenced code blocks."""
    text = raw.strip()
    if text.startswith("```"):
        text = text.strip("`")
        if text.lower().startswith("json"):
            text = text[4:]
    start, end = text.find("{"), text.rfind("}")
    if start == -1 or end < start:
        raise ValueError("no JSON object in completion")
    data = json.loads(text[start : end + 1])
    if not isinstance(data, dict):
        raise ValueError("completion JSON is not an object")
    return data


def default_model(models: Mapping[str, str], provider: AIProvider | str) -> str:
    key = provider.value if isinstance(provider, AIProvider) else str(provider)
    return models.get(key, "default")


__all__ = [
    "BaseAgent",
    "ProviderBackedAgent",
    "default_model",
    "parse_json_object",
    "upstream_text",
]
