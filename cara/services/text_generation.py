"""
Anthropic chat client shared by every stage worker.
Each call carries a hard deadline and is never retried here; a failed call
surfaces as an exception for the worker to turn into a failed-stage output.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Sequence

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import AIMessage, BaseMessage
from langchain_core.tools import BaseTool

from cara.config import settings
from cara.graph.state import ToolCall, message_text

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Completion:
    content: str
    tool_call: ToolCall | None
    message: AIMessage


class TextGenerationClient:
    def __init__(
        self,
        model: str = settings.model,
        temperature: float = 0.3,
        max_tokens: int = settings.max_tokens,
        timeout: float = settings.request_timeout,
        llm=None,
    ) -> None:
        self.timeout = timeout
        self._llm = llm or ChatAnthropic(
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
            timeout=timeout,
            max_retries=0,
        )

    async def send(
        self,
        conversation: Sequence[BaseMessage],
        tools: Sequence[BaseTool] | None = None,
    ) -> Completion:
        llm = self._llm.bind_tools(list(tools), parallel_tool_calls=False) if tools else self._llm
        message = await asyncio.wait_for(llm.ainvoke(list(conversation)), timeout=self.timeout)

        tool_call = None
        if getattr(message, "tool_calls", None):
            first = message.tool_calls[0]
            tool_call = ToolCall(
                id=first.get("id") or f"call_{first['name']}",
                name=first["name"],
                arguments=first.get("args") or {},
            )
            if len(message.tool_calls) > 1:
                logger.warning("Model requested %d tools; using %s", len(message.tool_calls), first["name"])

        return Completion(content=message_text(message), tool_call=tool_call, message=message)
