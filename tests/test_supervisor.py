"""Minimal tests for supervisor lifecycle management."""
from __future__ import annotations

import asyncio

import pytest

from agentforge.agents.echo import EchoBehavior
from agentforge.core.errors import AgentNotFoundError, ConfigurationError
from agentforge.core.message_bus import InMemoryMessageBroker, Subscription
from agentforge.core.models import AgentConfig, AgentStatus, Message, MessageType
from agentforge.core.payloads import CommandPayload, decode_payload, encode_payload
from agentforge.orchestration.supervisor import AgentSupervisor
from agentforge.orchestration.workflow_orchestrator import WorkflowOrchestrator
from agentforge.state.store import StateStore


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.mark.anyio
async def test_spawn_and_terminate_agent() -> None:
    broker = InMemoryMessageBroker()
    store = StateStore()
    orchestrator = WorkflowOrchestrator(broker=broker, state_store=store)
    supervisor = AgentSupervisor(broker=broker, catalog={"echo": EchoBehavior}, state_store=store, orchestrator=orchestrator)

    state = await supervisor.spawn_agent(AgentConfig(name="test", type="echo"))

    assert state.metadata.status is AgentStatus.IDLE
    assert supervisor.get_agent(state.config.id) is not None
    assert [config.id for config in orchestrator.registered_agents()] == [state.config.id]
    assert (await store.get_agent_state(state.config.id)).config.name == "test"

    await supervisor.terminate_agent(state.config.id)
    assert supervisor.get_agent(state.config.id) is None
    assert orchestrator.registered_agents() == []
    with pytest.raises(AgentNotFoundError):
        await supervisor.terminate_agent(state.config.id)
    await broker.close()


@pytest.mark.anyio
async def test_agent_handles_message_roundtrip() -> None:
    broker = InMemoryMessageBroker()
    supervisor = AgentSupervisor(broker=broker, catalog={"echo": EchoBehavior})
    state = await supervisor.spawn_agent(AgentConfig(name="test"), role="echo")

    inbox: asyncio.Queue = asyncio.Queue()
    await broker.subscribe(Subscription(type=MessageType.COMMAND, handler=inbox.put, subscriber_id="pytest-client"))
    await broker.publish(
        Message(
            type=MessageType.COMMAND,
            sender="pytest-client",
            recipient=state.config.id,
            payload=encode_payload(CommandPayload(command="ping")),
        )
    )
    reply = await asyncio.wait_for(inbox.get(), timeout=2)

    assert reply.recipient == "pytest-client"
    assert decode_payload(reply, CommandPayload).command == "pong"
    await supervisor.terminate_agent(state.config.id)
    await broker.close()


@pytest.mark.anyio
async def test_unknown_role_and_duplicate_id_are_rejected() -> None:
    broker = InMemoryMessageBroker()
    supervisor = AgentSupervisor(broker=broker, catalog={"echo": EchoBehavior})

    with pytest.raises(ConfigurationError):
        await supervisor.spawn_agent(AgentConfig(name="x"), role="llm")

    await supervisor.spawn_agent(AgentConfig(name="a", id="dup"), role="echo")
    with pytest.raises(ConfigurationError):
        await supervisor.spawn_agent(AgentConfig(name="b", id="dup"), role="echo")
    assert len(supervisor.list_agents()) == 1

    await supervisor.terminate_all()
    await broker.close()


@pytest.mark.anyio
async def test_terminate_all() -> None:
    broker = InMemoryMessageBroker()
    orchestrator = WorkflowOrchestrator(broker=broker, state_store=StateStore())
    supervisor = AgentSupervisor(broker=broker, catalog={"echo": EchoBehavior}, orchestrator=orchestrator)
    agents = [await supervisor.spawn_agent(AgentConfig(name=f"a{n}"), role="echo") for n in range(3)]
    handles = [supervisor.get_agent(state.config.id) for state in agents]

    await supervisor.terminate_all()

    assert supervisor.list_agents() == []
    assert orchestrator.registered_agents() == []
    assert all(agent.is_terminated for agent in handles)
    assert broker.subscriber_count(MessageType.TASK_ASSIGNMENT) == 0
    await broker.close()
