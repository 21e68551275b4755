"""Single entry point that routes a tool call to a local tool or an MCP server."""

import asyncio
import logging

from .context import ToolCallRequest, ToolResult
from .errors import AgentError, ToolArgumentError
from .mcp_client import McpClient
from .tools import LocalTool

logger = logging.getLogger(__name__)


class ToolDispatcher:
    """Resolves tool names and turns every outcome into a ToolResult.

    ``dispatch()`` never raises (cancellation aside): argument problems,
    tool exceptions, unknown names and MCP transport failures all come back
    as failed results the model can read.
    """

    def __init__(self, local_tools: dict[str, LocalTool], mcp: McpClient | None = None):
        self.local_tools = dict(local_tools)
        self.mcp = mcp

    def schemas(self) -> list[dict]:
        """OpenAI tool list: local tools first, then registered remote tools."""
        tools = [tool.schema for tool in self.local_tools.values()]
        if self.mcp is not None:
            tools.extend(self.mcp.list_tools())
        return tools

    async def register_remote_tools(self) -> dict[str, str]:
        """List tools of every configured server; returns {server: failure}."""
        if self.mcp is None:
            return {}
        return await self.mcp.register_all()

    async def dispatch(self, request: ToolCallRequest) -> ToolResult:
        try:
            return await self._dispatch(request)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("tool %r raised", request.name)
            return ToolResult.fail(f"{request.name}: internal error: {e}")

    async def _dispatch(self, request: ToolCallRequest) -> ToolResult:
        name = request.name
        if not name:
            return ToolResult.fail("tool call is missing a tool name")

        try:
            args = request.parse_arguments()
        except ToolArgumentError as e:
            return ToolResult.fail(f"{name}: {e}")

        tool = self.local_tools.get(name)
        if tool is not None:
            return await self._run_local(tool, args)

        if self.mcp is not None and self.mcp.resolve(name) is not None:
            try:
                return await self.mcp.call_tool(name, args)
            except AgentError as e:
                logger.info("remote tool %r failed: %s", name, e)
                return ToolResult.fail(str(e))

        return ToolResult.fail(f"unknown tool: {name}")

    async def _run_local(self, tool: LocalTool, args: dict) -> ToolResult:
        missing = [key for key in tool.required if key not in args]
        if missing:
            return ToolResult.fail(
                f"{tool.name}: missing required argument(s): {', '.join(missing)}"
            )
        try:
            return await asyncio.to_thread(tool.execute, args)
        except KeyError as e:
            return ToolResult.fail(f"{tool.name}: missing argument {e}")
        except (TypeError, ValueError) as e:
            return ToolResult.fail(f"{tool.name}: invalid arguments: {e}")
