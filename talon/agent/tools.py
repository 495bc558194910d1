"""Tool registry -- typed tool handlers behind one dispatch contract.

Tools are registered once at startup. dispatch() never raises for tool
problems: unknown tools, handler exceptions and bad arguments all come
back as a failed ToolOutcome so the turn can fold them into history.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from talon.agent.models import Tool
from talon.agent.schemas import ToolOutcome

logger = logging.getLogger(__name__)

ToolHandler = Callable[[dict[str, Any]], Awaitable[str]]


@dataclass
class FunctionTool:
    """Adapts a plain async function to the Tool contract."""

    name: str
    handler: ToolHandler
    description: str = ""
    parameters: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})

    async def execute(self, args: dict[str, Any]) -> str:
        return await self.handler(args)


class ToolRegistry:
    """Maps tool name -> Tool and dispatches calls."""

    def __init__(self, max_output_chars: int = 8000) -> None:
        self._tools: dict[str, Tool] = {}
        self._max_output_chars = max_output_chars

    def register(self, tool: Tool) -> None:
        """Register a tool. Re-registering a name replaces the handler."""
        if tool.name in self._tools:
            logger.warning("Tool %s re-registered, replacing previous handler", tool.name)
        self._tools[tool.name] = tool
        logger.info("Tool registered: %s", tool.name)

    def register_function(
        self,
        name: str,
        handler: ToolHandler,
        description: str = "",
        parameters: dict[str, Any] | None = None,
    ) -> None:
        tool = FunctionTool(name=name, handler=handler, description=description)
        if parameters is not None:
            tool.parameters = parameters
        self.register(tool)

    def names(self) -> list[str]:
        return list(self._tools)

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def definitions(self) -> list[dict[str, Any]]:
        """Tool definitions in OpenAI function-calling format."""
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": tool.parameters,
                },
            }
            for tool in self._tools.values()
        ]

    def describe(self) -> list[str]:
        """One "name: description" line per tool, for the system prompt."""
        return [f"{t.name}: {t.description}" for t in self._tools.values()]

    async def dispatch(self, name: str, args: dict[str, Any]) -> ToolOutcome:
        """Run a tool and return its outcome. Only cancellation propagates."""
        start = time.monotonic()
        tool = self._tools.get(name)
        if tool is None:
            return ToolOutcome(output=f'Error: Unknown tool "{name}"', success=False)

        try:
            output = await tool.execute(args)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Tool dispatch error for %s", name)
            return ToolOutcome(
                output=f"Error: {e}" if str(e) else f"Error: {type(e).__name__}",
                success=False,
                duration_ms=int((time.monotonic() - start) * 1000),
            )

        if not isinstance(output, str):
            output = str(output)
        return ToolOutcome(
            output=self._truncate(output),
            success=True,
            duration_ms=int((time.monotonic() - start) * 1000),
        )

    def _truncate(self, output: str) -> str:
        limit = self._max_output_chars
        if limit <= 0 or len(output) <= limit:
            return output
        head = limit * 3 // 4
        tail = limit - head
        return (
            f"{output[:head]}\n\n"
            f"--- trimmed (kept {head} head + {tail} tail of {len(output)} chars) ---\n\n"
            f"{output[-tail:]}"
        )
