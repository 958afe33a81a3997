from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass
from typing import Callable, Union

from ..core.exceptions import AgentInitializationError, CapabilityNotFoundError
from ..core.logging import get_logger
from ..schemas.agents import AgentCapability, AgentDescriptor, AgentScope, capability_id
from .base import BaseAgent

logger = get_logger(name=__name__)

AgentFactory = Callable[[str], BaseAgent]
AgentOrFactory = Union[BaseAgent, AgentFactory]


@dataclass(slots=True)
class _Registration:
    capability: str
    scope: AgentScope
    agent: BaseAgent | None = None
    factory: AgentFactory | None = None
    descriptor: AgentDescriptor | None = None


class AgentRegistry:
    """Maps capabilities to agents.

    System agents are shared instances registered up front. User-scoped
    agents are registered as factories and created on the first ``resolve``
    for a given user, then reused until ``end_session`` tears them down.
    """

    def __init__(self) -> None:
        self._registrations: dict[str, _Registration] = {}
        self._sessions: dict[str, dict[str, BaseAgent]] = {}

    def register(
        self,
        capability: AgentCapability | str,
        agent_or_factory: AgentOrFactory,
        scope: AgentScope = AgentScope.SYSTEM,
    ) -> None:
        key = capability_id(capability)
        if scope is AgentScope.SYSTEM:
            if not isinstance(agent_or_factory, BaseAgent):
                raise TypeError(f"System agent for '{key}' must be an agent instance")
            registration = _Registration(
                capability=key,
                scope=scope,
                agent=agent_or_factory,
                descriptor=agent_or_factory.descriptor,
            )
        else:
            if isinstance(agent_or_factory, BaseAgent) or not callable(agent_or_factory):
                raise TypeError(f"User-scoped agent for '{key}' must be registered as a factory")
            registration = _Registration(capability=key, scope=scope, factory=agent_or_factory)
        replaced = key in self._registrations
        self._registrations[key] = registration
        logger.info("agent_registered", capability=key, scope=scope.value, replaced=replaced)

    def unregister(self, capability: AgentCapability | str) -> None:
        key = capability_id(capability)
        self._registrations.pop(key, None)
        for agents in self._sessions.values():
            agents.pop(key, None)

    def resolve(self, capability: AgentCapability | str, user_id: str | None = None) -> BaseAgent:
        key = capability_id(capability)
        registration = self._registrations.get(key)
        if registration is None:
            raise CapabilityNotFoundError(key, user_id=user_id)
        if registration.scope is AgentScope.SYSTEM:
            assert registration.agent is not None
            return registration.agent

        if user_id is None:
            raise CapabilityNotFoundError(key)
        agent = self._sessions.get(user_id, {}).get(key)
        if agent is not None:
            return agent
        assert registration.factory is not None
        try:
            agent = registration.factory(user_id)
        except Exception as exc:
            logger.warning("agent_initialization_failed", capability=key, user_id=user_id, error=str(exc))
            raise AgentInitializationError(key, user_id, exc) from exc
        self._sessions.setdefault(user_id, {})[key] = agent
        if registration.descriptor is None:
            registration.descriptor = agent.descriptor
        logger.info("user_agent_created", capability=key, user_id=user_id, agent=agent.descriptor.name)
        return agent

    async def end_session(self, user_id: str) -> int:
        agents = self._sessions.pop(user_id, {})
        for agent in agents.values():
            close = getattr(agent, "close", None)
            if callable(close):
                result = close()
                if inspect.isawaitable(result):
                    await result
        if agents:
            logger.info("user_session_ended", user_id=user_id, agents=len(agents))
        return len(agents)

    async def close(self) -> None:
        await asyncio.gather(*(self.end_session(user_id) for user_id in list(self._sessions)))

    def descriptors(self) -> list[AgentDescriptor]:
        return [
            registration.descriptor
            for registration in self._registrations.values()
            if registration.descriptor is not None
        ]

    def capabilities(self) -> list[str]:
        return sorted(self._registrations)

    def active_sessions(self) -> list[str]:
        return sorted(self._sessions)

    def __contains__(self, capability: object) -> bool:
        if isinstance(capability, (AgentCapability, str)):
            return capability_id(capability) in self._registrations
        return False


__all__ = ["AgentFactory", "AgentRegistry"]
