from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Mapping

from ..core.exceptions import AgentError
from ..schemas.agents import AgentCapability, AgentInput, AgentOutput, AgentScope
from ..services.providers import ProviderClient, ProviderResponse
from .base import ProviderBackedAgent


@dataclass(slots=True)
class ChatTurn:
    role: str
    content: str


class ChatAgent(ProviderBackedAgent):
    """Conversational agent bound to one user session.

    Keeps the most recent turns so follow-up questions see earlier context.
    History is only extended after a successful reply.
    """

    capability = AgentCapability.CHAT
    system_prompt = "You are a helpful assistant answering questions about scientific papers."

    def __init__(
        self,
        client: ProviderClient,
        *,
        model: str,
        user_id: str,
        history_limit: int = 20,
        concurrency_limit: int = 1,
        alternates: Mapping[str, ProviderClient] | None = None,
        fallback: ProviderClient | None = None,
        models: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(
            client,
            model=model,
            name=f"chat:{user_id}",
            scope=AgentScope.USER,
            concurrency_limit=concurrency_limit,
            alternates=alternates,
            fallback=fallback,
            models=models,
        )
        self.user_id = user_id
        self._history: Deque[ChatTurn] = deque(maxlen=max(2, history_limit))

    @property
    def history(self) -> list[ChatTurn]:
        return list(self._history)

    def build_prompt(self, agent_input: AgentInput) -> str:
        message = str(agent_input.payload.get("message") or "").strip()
        if not message:
            raise AgentError.permanent_error("Chat message must not be empty")
        lines = [f"{turn.role}: {turn.content}" for turn in self._history]
        papers = agent_input.payload.get("paper_ids") or []
        if papers:
            lines.insert(0, f"(Context papers: {', '.join(map(str, papers))})")
        lines.append(f"user: {message}")
        return "\n".join(lines)

    def parse_output(self, response: ProviderResponse, agent_input: AgentInput) -> Any:
        return {"reply": response.output.strip(), "turns": len(self._history) + 2}

    async def invoke(self, agent_input: AgentInput) -> AgentOutput:
        output = await super().invoke(agent_input)
        self._history.append(ChatTurn("user", str(agent_input.payload.get("message"))))
        self._history.append(ChatTurn("assistant", output.payload["reply"]))
        return output

    async def close(self) -> None:
        self._history.clear()


__all__ = ["ChatAgent", "ChatTurn"]
