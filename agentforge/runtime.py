"""Application runtime composition helpers."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from agentforge.agents.echo import EchoBehavior
from agentforge.config import Config
from agentforge.config import config as default_config
from agentforge.core.message_bus import InMemoryMessageBroker, MessageBroker
from agentforge.orchestration.supervisor import AgentSupervisor, BehaviorFactory
from agentforge.orchestration.workflow_orchestrator import WorkflowOrchestrator
from agentforge.state.storage import StorageFactory
from agentforge.state.store import StateStore

logger = logging.getLogger(__name__)

DEFAULT_CATALOG: Dict[str, BehaviorFactory] = {
    "echo": EchoBehavior,
}


@dataclass
class Runtime:
    """Explicitly wired broker, state store, orchestrator and supervisor."""

    config: Config
    broker: MessageBroker
    state_store: StateStore
    orchestrator: WorkflowOrchestrator
    supervisor: AgentSupervisor

    async def start(self) -> None:
        await self.orchestrator.start()
        logger.info("Runtime started (%s)", self.config.environment)

    async def stop(self) -> None:
        await self.supervisor.terminate_all()
        await self.orchestrator.close()
        await self.broker.close()
        await self.state_store.close()
        logger.info("Runtime stopped")


def build_runtime(
    config: Optional[Config] = None,
    *,
    catalog: Optional[Dict[str, BehaviorFactory]] = None,
    broker: Optional[MessageBroker] = None,
) -> Runtime:
    config = config or default_config
    storage_options = {}
    if config.storage.type == "memory":
        storage_options = {"ttl": config.storage.ttl, "max_size": config.storage.max_size}
    state_store = StateStore(StorageFactory.create(config.storage.type, **storage_options))
    broker = broker or InMemoryMessageBroker()
    orchestrator = WorkflowOrchestrator(
        broker=broker,
        state_store=state_store,
        max_retries=config.max_retries,
        retry_delay_ms=config.retry_delay_ms,
    )
    supervisor = AgentSupervisor(
        broker=broker,
        catalog=dict(catalog or DEFAULT_CATALOG),
        state_store=state_store,
        orchestrator=orchestrator,
        heartbeat_interval=config.heartbeat_interval,
    )
    return Runtime(
        config=config,
        broker=broker,
        state_store=state_store,
        orchestrator=orchestrator,
        supervisor=supervisor,
    )
