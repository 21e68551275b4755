"""Transports connecting the MCP client to one external tool server.

A transport is described by a TransportConfig whose ``kind`` selects an
opener coroutine from ``_OPENERS``.  Openers enter their resources on the
AsyncExitStack they are given and return a *channel*: an object exposing
``initialize()``, ``list_tools()`` and ``call_tool(name, arguments)``.

Kinds:
    stdio            local subprocess, JSON-RPC over stdin/stdout (MCP SDK)
    http             one JSON-RPC POST per call, no persistent socket
    sse              long-lived server-sent event stream (MCP SDK)
    streamable_http  push-only stream; cannot serve request/response calls
"""

import logging
import os
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum

import httpx
from mcp import types
from mcp.shared.exceptions import McpError

from .errors import ConfigError, TransportIncompatibleError

logger = logging.getLogger(__name__)

HEALTH_PROBE_TIMEOUT = 5
SSE_READ_TIMEOUT = 300


class TransportKind(str, Enum):
    STDIO = "stdio"
    HTTP = "http"
    SSE = "sse"
    STREAMABLE_HTTP = "streamable_http"


_REQUIRED_FIELD = {
    TransportKind.STDIO: "command",
    TransportKind.HTTP: "url",
    TransportKind.SSE: "url",
    TransportKind.STREAMABLE_HTTP: "url",
}


@dataclass(frozen=True)
class TransportConfig:
    kind: TransportKind
    command: str | None = None
    args: tuple[str, ...] = ()
    env: dict[str, str] | None = None
    url: str | None = None
    headers: dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        required = _REQUIRED_FIELD[self.kind]
        if not getattr(self, required):
            raise ConfigError(f"'{required}' is required for {self.kind.value} transport")

    @classmethod
    def from_dict(cls, name: str, raw: dict) -> "TransportConfig":
        """Build a config from a ``{"kind": ..., ...}`` table.

        ``type`` is accepted as an alias of ``kind``. There is no default
        kind: a missing or unrecognized one is a ConfigError.
        """
        if not isinstance(raw, dict):
            raise ConfigError(f"MCP server {name!r}: transport must be a table")
        kind_value = raw.get("kind", raw.get("type"))
        if kind_value is None:
            raise ConfigError(f"MCP server {name!r}: transport kind is missing")
        try:
            kind = TransportKind(kind_value)
        except ValueError:
            supported = ", ".join(k.value for k in TransportKind)
            raise ConfigError(
                f"MCP server {name!r}: unsupported transport kind {kind_value!r} "
                f"(expected one of: {supported})"
            ) from None
        _check_field_types(name, raw)
        try:
            return cls(
                kind=kind,
                command=raw.get("command"),
                args=tuple(raw.get("args") or ()),
                env=dict(raw["env"]) if raw.get("env") else None,
                url=raw.get("url"),
                headers=dict(raw.get("headers") or {}),
            )
        except ConfigError as e:
            raise ConfigError(f"MCP server {name!r}: {e}") from None


_FIELD_TYPES: dict[str, type] = {
    "command": str,
    "url": str,
    "args": list,
    "env": dict,
    "headers": dict,
}


def _check_field_types(name: str, raw: dict) -> None:
    prefix = f"MCP server {name!r}"
    for key, expected in _FIELD_TYPES.items():
        if key in raw and not isinstance(raw[key], expected):
            raise ConfigError(
                f"{prefix}: {key}: expected {expected.__name__}, got {type(raw[key]).__name__}"
            )
    for i, elem in enumerate(raw.get("args") or ()):
        if not isinstance(elem, str):
            raise ConfigError(
                f"{prefix}: args[{i}]: expected string, got {type(elem).__name__}"
            )
    for table in ("env", "headers"):
        for k, v in (raw.get(table) or {}).items():
            if not isinstance(v, str):
                raise ConfigError(
                    f"{prefix}: {table}.{k}: expected string, got {type(v).__name__}"
                )


def merged_environment(extra: dict[str, str] | None) -> dict[str, str]:
    """Inherited environment with the configured variables taking precedence."""
    env = dict(os.environ)
    if extra:
        env.update(extra)
    return env


# --- Channels ---------------------------------------------------------------


class HttpChannel:
    """Plain request/response JSON-RPC, POSTed to ``<url>/rpc``."""

    def __init__(self, client: httpx.AsyncClient, url: str):
        self._client = client
        self._url = url
        self._rpc_url = url.rstrip("/") + "/rpc"
        self._next_id = 0

    async def initialize(self) -> None:
        # Reachability probe only; servers without /health are accepted.
        try:
            await self._client.get(
                self._url.rstrip("/") + "/health", timeout=HEALTH_PROBE_TIMEOUT
            )
        except httpx.HTTPError as e:
            logger.debug("health probe for %s failed (%s), continuing", self._url, e)

    async def list_tools(self) -> types.ListToolsResult:
        result = await self._request("tools/list", {})
        return types.ListToolsResult.model_validate(result)

    async def call_tool(self, name: str, arguments: dict) -> types.CallToolResult:
        result = await self._request(
            "tools/call", {"name": name, "arguments": arguments or {}}
        )
        return types.CallToolResult.model_validate(result)

    async def _request(self, method: str, params: dict) -> dict:
        self._next_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._next_id,
            "method": method,
            "params": params,
        }
        response = await self._client.post(self._rpc_url, json=payload)
        response.raise_for_status()
        body = response.json()
        error = body.get("error") if isinstance(body, dict) else None
        if error:
            raise McpError(
                types.ErrorData(
                    code=error.get("code", types.INTERNAL_ERROR),
                    message=error.get("message", "unknown error"),
                    data=error.get("data"),
                )
            )
        return body.get("result") or {}


class PushOnlyChannel:
    """Inbound event stream with no way to correlate a request to a reply."""

    def __init__(self, server: str, url: str):
        self._server = server
        self._url = url

    async def initialize(self) -> None:
        logger.debug("push-only channel to %s opened without handshake", self._url)

    async def list_tools(self):
        raise self._incompatible("tools/list")

    async def call_tool(self, name: str, arguments: dict):
        raise self._incompatible(f"tools/call {name!r}")

    def _incompatible(self, what: str) -> TransportIncompatibleError:
        return TransportIncompatibleError(
            self._server,
            f"streamable_http endpoint {self._url} is a push-only channel and "
            f"cannot serve request/response call {what}",
        )


# --- Openers ----------------------------------------------------------------


async def _open_stdio(name: str, config: TransportConfig, stack: AsyncExitStack, timeout: float):
    import mcp

    params = mcp.StdioServerParameters(
        command=config.command,
        args=list(config.args),
        env=merged_environment(config.env),
    )
    read_stream, write_stream = await stack.enter_async_context(mcp.stdio_client(params))
    return await stack.enter_async_context(
        mcp.ClientSession(
            read_stream, write_stream, read_timeout_seconds=timedelta(seconds=timeout)
        )
    )


async def _open_sse(name: str, config: TransportConfig, stack: AsyncExitStack, timeout: float):
    import mcp
    from mcp.client.sse import sse_client

    read_stream, write_stream = await stack.enter_async_context(
        sse_client(
            url=config.url,
            headers=config.headers or None,
            timeout=min(timeout, 10),
            sse_read_timeout=SSE_READ_TIMEOUT,
        )
    )
    return await stack.enter_async_context(
        mcp.ClientSession(
            read_stream, write_stream, read_timeout_seconds=timedelta(seconds=timeout)
        )
    )


async def _open_http(name: str, config: TransportConfig, stack: AsyncExitStack, timeout: float):
    client = httpx.AsyncClient(
        headers={"Content-Type": "application/json", **config.headers},
        timeout=timeout,
    )
    stack.push_async_callback(client.aclose)
    return HttpChannel(client, config.url)


async def _open_push_only(name: str, config: TransportConfig, stack: AsyncExitStack, timeout: float):
    return PushOnlyChannel(name, config.url)


_OPENERS = {
    TransportKind.STDIO: _open_stdio,
    TransportKind.HTTP: _open_http,
    TransportKind.SSE: _open_sse,
    TransportKind.STREAMABLE_HTTP: _open_push_only,
}


class Transport:
    """One channel to one server: connect, disconnect, kind."""

    def __init__(self, name: str, config: TransportConfig):
        self.name = name
        self.config = config
        self._stack: AsyncExitStack | None = None
        self._channel = None

    def kind(self) -> TransportKind:
        return self.config.kind

    @property
    def channel(self):
        return self._channel

    async def connect(self, timeout: float = 30):
        """Open the channel; returns the existing one if already open."""
        if self._channel is not None:
            return self._channel
        opener = _OPENERS[self.config.kind]
        stack = AsyncExitStack()
        await stack.__aenter__()
        try:
            channel = await opener(self.name, self.config, stack, timeout)
        except BaseException:
            await stack.aclose()
            raise
        self._stack = stack
        self._channel = channel
        logger.debug("opened %s transport for %s", self.config.kind.value, self.name)
        return channel

    async def disconnect(self) -> None:
        """Close the channel. For stdio this terminates the subprocess."""
        stack, self._stack, self._channel = self._stack, None, None
        if stack is not None:
            await stack.aclose()
