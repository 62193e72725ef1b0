"""Supervisor responsible for provisioning agents and tearing them down."""
from __future__ import annotations

import asyncio
from typing import Callable, Dict, Iterable, Optional

from agentforge.agents.base import DEFAULT_HEARTBEAT_INTERVAL, Agent, AgentBehavior
from agentforge.core.errors import AgentNotFoundError, ConfigurationError
from agentforge.core.message_bus import MessageBroker
from agentforge.core.models import AgentConfig, AgentState
from agentforge.state.store import StateStore

from .workflow_orchestrator import WorkflowOrchestrator

BehaviorFactory = Callable[[], AgentBehavior]


class AgentSupervisor:
    """Build agents from a catalog of behaviors and keep them registered with the orchestrator."""

    def __init__(
        self,
        *,
        broker: MessageBroker,
        catalog: Dict[str, BehaviorFactory],
        state_store: Optional[StateStore] = None,
        orchestrator: Optional[WorkflowOrchestrator] = None,
        heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL,
    ) -> None:
        self._broker = broker
        self._catalog = catalog
        self._state_store = state_store
        self._orchestrator = orchestrator
        self._heartbeat_interval = heartbeat_interval
        self._agents: Dict[str, Agent] = {}
        self._lock = asyncio.Lock()

    @property
    def roles(self) -> Iterable[str]:
        return list(self._catalog)

    async def spawn_agent(self, config: AgentConfig, role: Optional[str] = None) -> AgentState:
        """Create, initialize and start an agent; ``role`` defaults to ``config.type``."""
        behavior = self._resolve_behavior(role or config.type)
        async with self._lock:
            if config.id in self._agents:
                raise ConfigurationError(f"Agent {config.id} already exists", context={"agent_id": config.id})
            agent = Agent(
                config,
                behavior=behavior,
                broker=self._broker,
                state_store=self._state_store,
                heartbeat_interval=self._heartbeat_interval,
            )
            self._agents[config.id] = agent
        try:
            await agent.initialize()
            await agent.start()
        except BaseException:
            async with self._lock:
                self._agents.pop(config.id, None)
            raise
        if self._orchestrator is not None:
            self._orchestrator.register_agent(agent)
        return agent.get_state()

    async def terminate_agent(self, agent_id: str) -> None:
        """Terminate and forget an agent. Raises :class:`AgentNotFoundError` when unknown."""
        async with self._lock:
            agent = self._agents.pop(agent_id, None)
        if agent is None:
            raise AgentNotFoundError(agent_id)
        if self._orchestrator is not None:
            self._orchestrator.unregister_agent(agent_id)
        await agent.terminate()

    async def terminate_all(self) -> None:
        """Shutdown every agent currently managed by the supervisor."""
        async with self._lock:
            agents = list(self._agents.values())
            self._agents.clear()
        if self._orchestrator is not None:
            for agent in agents:
                self._orchestrator.unregister_agent(agent.id)
        await asyncio.gather(*(agent.terminate() for agent in agents), return_exceptions=True)

    def list_agents(self) -> Iterable[AgentState]:
        return [agent.get_state() for agent in self._agents.values()]

    def get_agent(self, agent_id: str) -> Optional[Agent]:
        return self._agents.get(agent_id)

    def _resolve_behavior(self, role: str) -> AgentBehavior:
        if role not in self._catalog:
            raise ConfigurationError(
                f"No behavior registered for role '{role}'",
                context={"role": role, "available": sorted(self._catalog)},
            )
        return self._catalog[role]()
