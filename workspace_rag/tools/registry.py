"""Registry through which agents invoke the indexing tools.

Each tool pairs a pydantic input model with an async handler. Calls are
validated, bounded by a timeout, and never raise: every outcome comes back
as a ToolResult.
"""
import asyncio
import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, ValidationError
import structlog

from workspace_rag import config

logger = structlog.get_logger()


@dataclass
class Tool:
    """A named operation with typed input/output and an optional own timeout."""
    name: str
    description: str
    input_model: type[BaseModel]
    output_model: type[BaseModel]
    handler: Callable[[BaseModel], Awaitable[BaseModel]]
    timeout: Optional[float] = None

    def schema(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_model.model_json_schema(),
            "output_schema": self.output_model.model_json_schema(),
        }


@dataclass
class ToolResult:
    """Outcome of one tool call: data on success, a message otherwise."""
    success: bool
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


class ToolRegistry:
    """Name-indexed collection of tools."""

    def __init__(self, default_timeout: float = None):
        """Initialize an empty registry.

        Args:
            default_timeout: Seconds allowed for tools without their own
                timeout (default config.TOOL_TIMEOUT)
        """
        self.tools: Dict[str, Tool] = {}
        self.default_timeout = default_timeout or config.TOOL_TIMEOUT

    def register(self, tool: Tool) -> None:
        if tool.name in self.tools:
            logger.warning("tool_replaced", tool_name=tool.name)
        self.tools[tool.name] = tool
        logger.info("tool_registered", tool_name=tool.name, timeout=tool.timeout)

    def get_tool(self, name: str) -> Optional[Tool]:
        return self.tools.get(name)

    def list_tools(self) -> List[Tool]:
        return list(self.tools.values())

    def get_tool_schemas(self) -> List[Dict[str, Any]]:
        """JSON schemas of every tool, for function-calling APIs."""
        return [tool.schema() for tool in self.tools.values()]

    def get_tools_description(self) -> str:
        """Plain-text tool listing for an agent system prompt."""
        if not self.tools:
            return "No tools available."

        return "\n".join(
            f"Tool: {tool.name}\n"
            f"Description: {tool.description}\n"
            f"Input schema: {json.dumps(tool.input_model.model_json_schema(), indent=2)}\n"
            for tool in self.tools.values()
        )

    async def execute_tool(self, tool_name: str, args: Dict[str, Any]) -> ToolResult:
        """Validate arguments and run a tool.

        Args:
            tool_name: Registered tool name
            args: Raw arguments, validated against the tool's input model

        Returns:
            ToolResult with the handler's output as a dict, or an error message
            (unknown tool, invalid input, timeout, handler failure)
        """
        tool = self.get_tool(tool_name)

        if tool is None:
            logger.error("tool_not_found", tool_name=tool_name)
            return ToolResult(success=False, error=f"Tool '{tool_name}' not found")

        timeout = tool.timeout or self.default_timeout

        try:
            validated_input = tool.input_model(**args)

            async with asyncio.timeout(timeout):
                result = await tool.handler(validated_input)

            data = result.model_dump()

        except ValidationError as e:
            logger.warning("tool_input_invalid", tool_name=tool_name, errors=e.error_count())
            return ToolResult(success=False, error=f"Invalid input: {e}")

        except TimeoutError:
            logger.error("tool_timeout", tool_name=tool_name, timeout=timeout)
            return ToolResult(success=False, error=f"Tool execution timeout after {timeout}s")

        except Exception as e:
            logger.exception("tool_execution_failed", tool_name=tool_name, error=str(e))
            return ToolResult(success=False, error=f"Tool execution failed: {e}")

        logger.info("tool_executed", tool_name=tool_name, result_preview=str(data)[:100])
        return ToolResult(success=True, data=data)
