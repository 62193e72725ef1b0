"""Echo behavior: the built-in role every runtime catalog ships with."""
from __future__ import annotations

import asyncio
from typing import Any, Dict

from agentforge.agents.base import Agent, AgentBehavior
from agentforge.core.models import Message, MessageType, Task, TaskResult
from agentforge.core.payloads import CommandPayload, decode_payload, encode_payload


class EchoBehavior(AgentBehavior):
    """Echo task input back as the result and answer ``ping`` commands."""

    def __init__(self, delay: float = 0.0) -> None:
        self.delay = delay

    async def execute_task(self, task: Task, agent: Agent) -> TaskResult:
        if self.delay:
            await asyncio.sleep(self.delay)  # Simulate work
        data: Dict[str, Any] = {
            "echo": f"{agent.config.name} heard {task.config.input.get('content', '')}",
            "task_type": task.config.type,
            "input": dict(task.config.input),
        }
        return TaskResult(success=True, data=data)

    async def setup_message_handlers(self, agent: Agent) -> None:
        async def on_command(message: Message) -> None:
            command = decode_payload(message, CommandPayload)
            if command.command != "ping":
                return
            await agent.send(
                Message(
                    type=MessageType.COMMAND,
                    sender=agent.id,
                    recipient=message.reply_to or message.sender,
                    correlation_id=message.id,
                    payload=encode_payload(CommandPayload(command="pong", args=command.args)),
                )
            )

        agent.messages.add_handler(MessageType.COMMAND, on_command)
