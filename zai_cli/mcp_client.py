"""MCP (Model Context Protocol) client for zai-cli.

Owns one ServerConnection per configured server and exposes the servers'
tools in OpenAI function-calling format, namespaced as
``mcp__<server>__<tool>`` so they can sit beside the local tools.

Each connection is opened lazily by a long-lived asyncio Task that owns the
transport's AsyncExitStack from connect through shutdown.  This keeps the
cancel-scopes created by the MCP SDK's anyio transports entered and exited
inside the same Task, avoiding "Attempted to exit cancel scope in a
different task" errors.
"""

import asyncio
import copy
import json
import logging
import re

from mcp import types
from mcp.shared.exceptions import McpError

from .context import ToolResult
from .errors import (
    AgentError,
    ConfigError,
    McpConnectionError,
    TransportIncompatibleError,
)
from .transports import Transport, TransportConfig

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 120
CONNECT_TIMEOUT = 30
CLOSE_TIMEOUT = 5

_SERVER_NAME_RE = re.compile(r"^[a-zA-Z0-9_-]+$")
_SANITIZE_RE = re.compile(r"[^a-zA-Z0-9_-]")
_DOUBLE_UNDER_RE = re.compile(r"__+")

# SDK-level errors that mean the stream itself is gone, not that the server
# rejected the request.
_TRANSPORT_ERROR_CODES = {types.CONNECTION_CLOSED, 408}


class McpShutdownError(AgentError):
    """Raised when the client is used during or after close()."""


class ServerConnection:
    """One server's channel: unconnected -> connected -> closed."""

    def __init__(self, name: str, config: TransportConfig, timeout: float = CONNECT_TIMEOUT):
        self.name = name
        self.transport = Transport(name, config)
        self.timeout = timeout
        self.state = "unconnected"
        self.channel = None
        self._task: asyncio.Task | None = None
        self._shutdown: asyncio.Event | None = None

    @property
    def connected(self) -> bool:
        return self.state == "connected" and self.channel is not None

    async def open(self) -> None:
        """Start the lifecycle task and wait until the handshake is done."""
        ready = asyncio.Event()
        startup_error: list[BaseException | None] = [None]
        self._shutdown = asyncio.Event()
        self._task = asyncio.create_task(
            self._lifecycle(ready, startup_error), name=f"mcp-{self.name}"
        )
        try:
            await asyncio.wait_for(ready.wait(), self.timeout)
        except TimeoutError:
            self._task.cancel()
            self.state = "closed"
            raise McpConnectionError(self.name, "startup timed out") from None

        if startup_error[0] is not None:
            self.state = "closed"
            raise startup_error[0]
        self.state = "connected"

    async def _lifecycle(self, ready: asyncio.Event, startup_error: list) -> None:
        try:
            channel = await self.transport.connect(self.timeout)
            await channel.initialize()
            self.channel = channel
            ready.set()
            await self._shutdown.wait()
        except Exception as exc:
            startup_error[0] = exc
            ready.set()
        finally:
            try:
                await asyncio.wait_for(self.transport.disconnect(), CLOSE_TIMEOUT)
            except TimeoutError:
                logger.warning(
                    f"MCP server {self.name!r}: graceful close timed out "
                    f"(SDK handles SIGTERM->SIGKILL internally)"
                )
            except Exception as e:
                logger.warning(f"Error closing MCP server {self.name!r}: {e}")
            self.channel = None

    async def close(self) -> None:
        """Signal the lifecycle task to shut down and wait for it."""
        self.state = "closed"
        if self._shutdown is not None:
            self._shutdown.set()
        task, self._task = self._task, None
        if task is None:
            return
        try:
            await asyncio.wait_for(task, CLOSE_TIMEOUT * 2)
        except (TimeoutError, asyncio.CancelledError):
            logger.warning(f"MCP server {self.name!r}: lifecycle task did not stop cleanly")
        except Exception as e:
            logger.warning(f"MCP server task error during shutdown: {e}")


class McpClient:
    """Routes tool calls to MCP servers, one connection per server.

    A bad entry in ``server_configs`` does not raise: the server is recorded
    in ``unavailable`` with the reason, and every other server still works.
    """

    def __init__(
        self,
        server_configs: dict[str, dict],
        timeout: float = DEFAULT_TIMEOUT,
        connect_timeout: float = CONNECT_TIMEOUT,
    ):
        """
        server_configs: {
            "server-name": {"kind": "stdio", "command": "npx", "args": [...], "env": {...}},
            "other":       {"kind": "sse", "url": "https://...", "headers": {...}},
        }
        """
        self.timeout = timeout
        self.connect_timeout = connect_timeout
        self.configs: dict[str, TransportConfig] = {}
        self.unavailable: dict[str, str] = {}
        for name, raw in server_configs.items():
            try:
                validate_server_name(name)
                self.configs[name] = TransportConfig.from_dict(name, raw)
            except ConfigError as e:
                self.unavailable[name] = str(e)
                logger.warning("MCP server %r disabled: %s", name, e)

        self._connections: dict[str, ServerConnection] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._tool_schemas: dict[str, list[dict]] = {}
        self._original_names: dict[str, dict[str, str]] = {}
        self.tool_map: dict[str, tuple[str, str]] = {}
        self._closed = False

    # --- Public API ---

    def knows_server(self, name: str) -> bool:
        return name in self.configs or name in self.unavailable

    async def connect(self, name: str) -> ServerConnection:
        """Idempotent; a failure is reported to this caller only."""
        async with self._lock(name):
            return await self._connect_locked(name)

    async def list_available_tools(self, name: str) -> list[dict]:
        """List one server's tools as namespaced OpenAI schemas."""
        async with self._lock(name):
            conn = await self._connect_locked(name)
            result = await self._request(
                name, conn, conn.channel.list_tools(), "tools/list"
            )
        if isinstance(result, ToolResult):
            raise McpConnectionError(name, f"tools/list rejected: {result.error}")

        schemas = []
        originals = {}
        for tool in result.tools:
            schema = _mcp_tool_to_openai(name, tool)
            schemas.append(schema)
            originals[schema["function"]["name"]] = tool.name
        self._tool_schemas[name] = schemas
        self._original_names[name] = originals
        self._build_tool_map()
        return list(self._tool_schemas[name])

    async def register_all(self) -> dict[str, str]:
        """List every configured server concurrently.

        Returns {server: reason} for servers that failed, including those
        whose configuration was rejected.
        """
        names = list(self.configs)
        results = await asyncio.gather(
            *(self.list_available_tools(n) for n in names), return_exceptions=True
        )
        failures = dict(self.unavailable)
        for name, outcome in zip(names, results):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                failures[name] = str(outcome)
                logger.warning("MCP server %r failed to register: %s", name, outcome)
        return failures

    def list_tools(self) -> list[dict]:
        """Every registered remote tool in OpenAI function-calling format."""
        registered = set(self.tool_map)
        return [
            schema
            for schemas in self._tool_schemas.values()
            for schema in schemas
            if schema["function"]["name"] in registered
        ]

    def resolve(self, namespaced_name: str) -> tuple[str, str] | None:
        """Map ``mcp__server__tool`` to (server, original tool name).

        Unregistered names still resolve when the server part names a known
        server, so a tool can be reached before its server was listed.
        """
        if namespaced_name in self.tool_map:
            return self.tool_map[namespaced_name]
        if not namespaced_name.startswith("mcp__"):
            return None
        server, sep, tool = namespaced_name[len("mcp__") :].partition("__")
        if not sep or not tool or not self.knows_server(server):
            return None
        return server, tool

    async def call_tool(self, namespaced_name: str, arguments: dict) -> ToolResult:
        target = self.resolve(namespaced_name)
        if target is None:
            return ToolResult.fail(f"unknown MCP tool: {namespaced_name}")
        server, original = target
        return await self.invoke(server, original, arguments)

    async def invoke(self, name: str, method: str, arguments: dict) -> ToolResult:
        """Call one tool on one server.

        Server-side rejections come back as failed ToolResults. Transport
        faults drop the connection and raise McpConnectionError; the next
        call reconnects.
        """
        async with self._lock(name):
            conn = await self._connect_locked(name)
            result = await self._request(
                name, conn, conn.channel.call_tool(method, arguments or {}), method
            )
        if isinstance(result, ToolResult):
            return result
        return normalize_result(result)

    def status(self) -> dict[str, str]:
        out = {}
        for name in self.configs:
            conn = self._connections.get(name)
            state = conn.state if conn else "unconnected"
            tools = len(self._original_names.get(name, {}))
            out[name] = f"{self.configs[name].kind.value}, {state}, {tools} tools"
        for name, reason in self.unavailable.items():
            out[name] = f"unavailable: {reason}"
        return out

    async def reset(self, name: str) -> None:
        async with self._lock(name):
            await self._drop(name)

    async def close(self) -> None:
        """Idempotent shutdown of every connection."""
        if self._closed:
            return
        self._closed = True
        conns = list(self._connections.values())
        self._connections.clear()
        if conns:
            await asyncio.gather(*(c.close() for c in conns), return_exceptions=True)

    # --- Internal helpers ---

    def _lock(self, name: str) -> asyncio.Lock:
        lock = self._locks.get(name)
        if lock is None:
            lock = self._locks[name] = asyncio.Lock()
        return lock

    async def _connect_locked(self, name: str) -> ServerConnection:
        if self._closed:
            raise McpShutdownError("MCP client is closed")
        if name in self.unavailable:
            raise McpConnectionError(name, f"unavailable: {self.unavailable[name]}")
        if name not in self.configs:
            raise McpConnectionError(name, "not configured")

        conn = self._connections.get(name)
        if conn is not None and conn.connected:
            return conn

        conn = ServerConnection(name, self.configs[name], timeout=self.connect_timeout)
        try:
            await conn.open()
        except McpConnectionError:
            raise
        except Exception as e:
            raise McpConnectionError(name, f"connect failed: {e}") from e
        self._connections[name] = conn
        logger.debug("connected to MCP server %r", name)
        return conn

    async def _request(self, name: str, conn: ServerConnection, coro, what: str):
        """Await one channel request; returns the result or a failed ToolResult."""
        try:
            return await asyncio.wait_for(coro, self.timeout)
        except TransportIncompatibleError:
            raise
        except McpError as e:
            if e.error.code not in _TRANSPORT_ERROR_CODES:
                return ToolResult.fail(f"MCP server {name!r} rejected {what!r}: {e}")
            await self._drop(name)
            raise McpConnectionError(name, f"{what!r} failed: {e}") from e
        except TimeoutError:
            await self._drop(name)
            raise McpConnectionError(
                name, f"{what!r} timed out after {self.timeout}s"
            ) from None
        except Exception as e:
            await self._drop(name)
            raise McpConnectionError(
                name, f"{what!r} failed: {e or type(e).__name__}"
            ) from e

    async def _drop(self, name: str) -> None:
        conn = self._connections.pop(name, None)
        if conn is not None:
            await conn.close()

    def _build_tool_map(self) -> None:
        """Build the routing table with collision detection.

        Collisions are handled per-server: the colliding server's tools
        are all skipped with a warning, but other servers continue.
        """
        tool_map: dict[str, tuple[str, str]] = {}

        for server_name, originals in self._original_names.items():
            server_collisions = []
            for namespaced, original in originals.items():
                if namespaced in tool_map:
                    existing_server, existing_orig = tool_map[namespaced]
                    server_collisions.append(
                        f"  {namespaced!r}: {existing_server}/{existing_orig} vs {server_name}/{original}"
                    )
                else:
                    tool_map[namespaced] = (server_name, original)

            if server_collisions:
                for n in originals:
                    if tool_map.get(n, (None,))[0] == server_name:
                        del tool_map[n]
                logger.warning(
                    "MCP server %r: tool name collision after sanitization, "
                    "skipping all its tools:\n%s",
                    server_name,
                    "\n".join(server_collisions),
                )

        self.tool_map = tool_map


def _sanitize_tool_name(name: str) -> str:
    """Sanitize an MCP tool name for use in namespaced identifiers."""
    name = _SANITIZE_RE.sub("_", name)
    name = _DOUBLE_UNDER_RE.sub("_", name)
    return name.strip("_-")


def validate_server_name(name: str) -> None:
    """Validate an MCP server name. Raises ConfigError if invalid."""
    if not _SERVER_NAME_RE.match(name):
        raise ConfigError(
            f"MCP server name {name!r} is invalid: must match [a-zA-Z0-9_-]+"
        )
    if "__" in name:
        raise ConfigError(
            f"MCP server name {name!r} must not contain double underscores"
        )


def _mcp_tool_to_openai(server_name: str, tool) -> dict:
    """Convert an MCP Tool object to OpenAI function-calling format."""
    namespaced = f"mcp__{server_name}__{_sanitize_tool_name(tool.name)}"
    return {
        "type": "function",
        "function": {
            "name": namespaced,
            "description": tool.description or f"MCP tool from {server_name}",
            "parameters": _convert_schema(tool.inputSchema or {}),
        },
    }


def _convert_schema(input_schema: dict) -> dict:
    """Keep everything except keys known to cause provider rejections."""
    schema = copy.deepcopy(input_schema)
    schema.setdefault("type", "object")
    schema.setdefault("properties", {})
    schema.pop("$schema", None)
    schema.pop("$id", None)
    return schema


def _envelope_result(result) -> ToolResult | None:
    """Recognize ``{"ok": ..., "result"|"error": ...}`` JSON text envelopes."""
    for block in result.content:
        if getattr(block, "type", None) != "text" or not isinstance(block.text, str):
            continue
        try:
            payload = json.loads(block.text)
        except json.JSONDecodeError:
            continue
        if not isinstance(payload, dict) or "ok" not in payload:
            continue

        if payload.get("ok") is False:
            error_msg = payload.get("error") or payload.get("message")
            if not error_msg and isinstance(payload.get("stack"), str):
                error_msg = payload["stack"].splitlines()[0] if payload["stack"] else ""
            return ToolResult.fail(error_msg or "MCP tool returned an error")
        if payload.get("ok") is True and "result" in payload:
            return ToolResult.ok(json.dumps(payload["result"], ensure_ascii=False))
    return None


def normalize_result(result) -> ToolResult:
    """Convert an MCP CallToolResult to a ToolResult."""
    envelope = _envelope_result(result)
    if envelope is not None:
        return envelope

    parts = []
    for block in result.content:
        block_type = getattr(block, "type", None)
        if block_type == "text":
            parts.append(block.text)
        elif block_type in ("image", "audio"):
            mime = getattr(block, "mimeType", "unknown")
            data = getattr(block, "data", "")
            parts.append(f"[{block_type}: {mime}, {len(data)} bytes]")
        elif block_type == "resource":
            resource = getattr(block, "resource", None)
            if resource is not None and getattr(resource, "text", None):
                parts.append(resource.text)
            else:
                uri = getattr(resource, "uri", "unknown") if resource else "unknown"
                parts.append(f"[resource: {uri}]")
        else:
            parts.append(f"[{block_type or 'unknown'}: unsupported content type]")

    text = "\n".join(parts)
    if result.isError:
        return ToolResult.fail(text or "MCP tool returned an error")
    return ToolResult.ok(text)
