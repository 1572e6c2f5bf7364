"""
MCP Server implementation.

Main server that handles the MCP protocol, tool execution, and lifecycle
management.
"""

import asyncio
import json
import logging
import os
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional

from . import __version__
from .errors import MCPProtocolError, TransportDecodeError, TransportError
from .protocol import (
    METHOD_INITIALIZE,
    METHOD_PING,
    METHOD_TOOLS_CALL,
    METHOD_TOOLS_LIST,
    NOTIFICATION_CANCELLED,
    NOTIFICATION_INITIALIZED,
    PROTOCOL_VERSION,
    MCPError,
    MCPErrorCode,
    MCPNotification,
    MCPRequest,
    MCPResponse,
    ToolResult,
    parse_message,
    recover_id_from_raw,
)
from .tools import (
    BaseTool,
    CreateVEXStatementTool,
    MergeVEXDocumentsTool,
    ToolContext,
    ToolRegistry,
    VEXBackend,
    validate_arguments,
)
from .transport import StdioTransport, Transport
from .vex import DEFAULT_AUTHOR, VEXClient, VexctlClient


logger = logging.getLogger(__name__)

BACKENDS = ("native", "vexctl")


@dataclass
class ServerConfig:
    """Configuration for MCP server."""
    name: str = "vexdoc-mcp-server"
    version: str = __version__
    protocol_version: str = PROTOCOL_VERSION
    tool_timeout: Optional[float] = 60.0
    max_concurrent_requests: int = 10
    shutdown_timeout: float = 5.0
    default_author: str = DEFAULT_AUTHOR
    backend: str = "native"
    vexctl_path: str = "vexctl"
    http_host: str = "127.0.0.1"
    http_port: int = 3000
    http_path: str = "/mcp"

    def __post_init__(self):
        if self.tool_timeout is not None and self.tool_timeout <= 0:
            raise ValueError(f"tool_timeout must be positive, got {self.tool_timeout!r}")

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ServerConfig":
        """
        Build a config from ``VEXDOC_*`` environment variables.

        Unset variables keep their defaults. A value that cannot be
        converted raises ``ValueError`` naming the variable.
        """
        env = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        for field_name, (var, convert) in _ENV_VARS.items():
            raw = env.get(var)
            if raw is None or raw == "":
                continue
            try:
                values[field_name] = convert(raw)
            except ValueError:
                raise ValueError(f"Invalid value for {var}: {raw!r}")

        backend = values.get("backend", "native")
        if backend not in BACKENDS:
            raise ValueError(f"Invalid value for VEXDOC_BACKEND: {backend!r}")
        if values.get("tool_timeout", 1.0) <= 0:
            raise ValueError(
                f"Invalid value for VEXDOC_TOOL_TIMEOUT: {env['VEXDOC_TOOL_TIMEOUT']!r} "
                "(must be positive)"
            )
        return cls(**values)


_ENV_VARS: Dict[str, Any] = {
    "name": ("VEXDOC_SERVER_NAME", str),
    "tool_timeout": ("VEXDOC_TOOL_TIMEOUT", float),
    "max_concurrent_requests": ("VEXDOC_MAX_CONCURRENT_REQUESTS", int),
    "shutdown_timeout": ("VEXDOC_SHUTDOWN_TIMEOUT", float),
    "default_author": ("VEXDOC_DEFAULT_AUTHOR", str),
    "backend": ("VEXDOC_BACKEND", str),
    "vexctl_path": ("VEXDOC_VEXCTL_PATH", str),
    "http_host": ("VEXDOC_HTTP_HOST", str),
    "http_port": ("VEXDOC_HTTP_PORT", int),
    "http_path": ("VEXDOC_HTTP_PATH", str),
}


class ServerState(Enum):
    """Server lifecycle. Transitions only move forward."""
    CREATED = 0
    RUNNING = 1
    STOPPING = 2
    STOPPED = 3


class MCPServer:
    """
    MCP Server that handles tool registration, request processing, and lifecycle.

    Requests other than ``tools/call`` are answered inline, in read order.
    Each ``tools/call`` runs in its own task so a slow tool never holds up
    reading or other responses; responses are correlated by id.
    """

    def __init__(
        self,
        config: Optional[ServerConfig] = None,
        registry: Optional[ToolRegistry] = None,
    ):
        self.config = config or ServerConfig()
        self.registry = registry if registry is not None else ToolRegistry()
        self._transport: Optional[Transport] = None
        self._state = ServerState.CREATED
        self._stop_event = asyncio.Event()
        self._semaphore = asyncio.Semaphore(self.config.max_concurrent_requests)
        self._inflight: Dict[asyncio.Task, MCPRequest] = {}
        self._contexts: Dict[str, ToolContext] = {}
        self._write_failed = False
        self.client_info: Optional[dict] = None

        self._handlers: Dict[str, Callable] = {
            METHOD_INITIALIZE: self._handle_initialize,
            METHOD_PING: self._handle_ping,
            METHOD_TOOLS_LIST: self._handle_list_tools,
            METHOD_TOOLS_CALL: self._handle_call_tool,
        }
        self._notification_handlers: Dict[str, Callable] = {
            NOTIFICATION_INITIALIZED: self._on_initialized,
            "initialized": self._on_initialized,
            NOTIFICATION_CANCELLED: self._on_cancelled,
        }

    @property
    def state(self) -> ServerState:
        return self._state

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)

    def _set_state(self, state: ServerState) -> None:
        if state.value < self._state.value:
            raise RuntimeError(f"Cannot move from {self._state.name} to {state.name}")
        logger.debug("Server state %s -> %s", self._state.name, state.name)
        self._state = state

    def register_tool(self, tool: BaseTool) -> None:
        """Register a tool with the server."""
        self.registry.register(tool)

    async def _handle_initialize(self, request: MCPRequest) -> dict:
        """Handle initialize request."""
        params = request.params
        if params is not None and not isinstance(params, dict):
            raise MCPProtocolError(MCPErrorCode.INVALID_PARAMS.value, "Params must be an object")

        params = params or {}
        self.client_info = params.get("clientInfo")
        logger.info(
            "Client initializing: %s (protocol %s)",
            self.client_info, params.get("protocolVersion"),
        )
        return {
            "protocolVersion": self.config.protocol_version,
            "capabilities": {
                "tools": {"listChanged": False},
            },
            "serverInfo": {
                "name": self.config.name,
                "version": self.config.version,
            },
        }

    async def _handle_ping(self, request: MCPRequest) -> dict:
        return {}

    async def _handle_list_tools(self, request: MCPRequest) -> dict:
        """Handle tools/list request."""
        return {
            "tools": [t.to_dict() for t in self.registry.list_tools()],
        }

    async def _handle_call_tool(self, request: MCPRequest) -> dict:
        """Handle tools/call request."""
        params = request.params
        if not isinstance(params, dict):
            raise MCPProtocolError(
                MCPErrorCode.INVALID_PARAMS.value, "Params must be an object with a tool name"
            )

        name = params.get("name")
        if not isinstance(name, str) or not name:
            raise MCPProtocolError(
                MCPErrorCode.INVALID_PARAMS.value, "Tool name must be a non-empty string"
            )

        tool = self.registry.get(name)
        if tool is None:
            raise MCPProtocolError(
                MCPErrorCode.INVALID_PARAMS.value, f"Unknown tool: {name}", data={"tool": name}
            )

        arguments = params.get("arguments")
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            raise MCPProtocolError(
                MCPErrorCode.INVALID_PARAMS.value, "Arguments must be an object"
            )

        invalid = validate_arguments(self.registry.validator(name), arguments)
        if invalid is not None:
            raise MCPProtocolError(
                MCPErrorCode.INVALID_PARAMS.value, invalid.message, data=invalid.to_dict()
            )

        timeout = self.config.tool_timeout
        async with self._semaphore:
            ctx = ToolContext(request_id=request.id, tool_name=name, timeout=timeout)
            key = _id_key(request.id)
            self._contexts[key] = ctx
            try:
                result = await self._execute(tool, ctx, arguments)
            except MCPProtocolError:
                raise
            except Exception:
                logger.exception("Tool %s raised during execution", name)
                raise MCPProtocolError(
                    MCPErrorCode.INTERNAL_ERROR.value, "Tool execution failed", data={"tool": name}
                )
            finally:
                if self._contexts.get(key) is ctx:
                    del self._contexts[key]

        if not isinstance(result, ToolResult):
            logger.error("Tool %s returned %s instead of a ToolResult", name, type(result).__name__)
            raise MCPProtocolError(
                MCPErrorCode.INTERNAL_ERROR.value, "Tool execution failed", data={"tool": name}
            )

        if result.is_error:
            logger.info("Tool %s reported an error", name)
        return result.to_dict()

    async def _execute(self, tool: BaseTool, ctx: ToolContext, arguments: dict) -> Any:
        """
        Run ``tool`` under the call deadline.

        The tool runs in its own task so an expired deadline is told apart
        from a ``TimeoutError`` the tool raises itself; the latter is an
        ordinary execution failure.
        """
        execution = asyncio.ensure_future(tool.execute(ctx, arguments))
        try:
            done, _ = await asyncio.wait({execution}, timeout=ctx.timeout)
        except asyncio.CancelledError:
            execution.cancel()
            raise

        if not done:
            ctx.cancel()
            execution.cancel()
            await asyncio.gather(execution, return_exceptions=True)
            logger.warning("Tool %s timed out after %ss", ctx.tool_name, ctx.timeout)
            raise MCPProtocolError(
                MCPErrorCode.INTERNAL_ERROR.value,
                f"Tool {ctx.tool_name} timed out after {ctx.timeout}s",
                data={"reason": "timeout", "tool": ctx.tool_name, "timeout": ctx.timeout},
            )
        return execution.result()

    async def _on_initialized(self, params: Any) -> None:
        logger.info("Client initialized")

    async def _on_cancelled(self, params: Any) -> None:
        if not isinstance(params, dict) or "requestId" not in params:
            return
        request_id = params["requestId"]
        for task, request in list(self._inflight.items()):
            if request.id == request_id and not task.done():
                logger.info("Client cancelled request %s (%s)", request_id, params.get("reason"))
                ctx = self._contexts.get(_id_key(request_id))
                if ctx is not None:
                    ctx.cancel()
                task.cancel()
                if self._transport is not None:
                    await self._transport.discard(request_id)

    async def process_request(self, request: MCPRequest) -> MCPResponse:
        """Process a single MCP request."""
        handler = self._handlers.get(request.method)

        if handler is None:
            error = MCPError.from_code(
                MCPErrorCode.METHOD_NOT_FOUND,
                f"Method not found: {request.method}",
            )
            return MCPResponse.failure(request.id, error)

        try:
            result = await handler(request)
            return MCPResponse.success(request.id, result)
        except MCPProtocolError as e:
            return MCPResponse.failure(request.id, MCPError.from_exception(e))
        except Exception as e:
            logger.exception(f"Error processing {request.method}: {e}")
            error = MCPError.from_code(MCPErrorCode.INTERNAL_ERROR, "Internal error")
            return MCPResponse.failure(request.id, error)

    async def handle_notification(self, notification: MCPNotification) -> None:
        """Run a lifecycle hook. Notifications are never answered."""
        handler = self._notification_handlers.get(notification.method)
        if handler is None:
            logger.debug("Ignoring notification %s", notification.method)
            return
        try:
            await handler(notification.params)
        except Exception as e:
            logger.exception(f"Error handling notification {notification.method}: {e}")

    async def handle_message(self, data: Any) -> Optional[dict]:
        """
        Handle one incoming message and return the response to send.

        Returns ``None`` for notifications, for responses sent by the
        client, and for malformed messages whose id cannot be recovered.
        """
        try:
            message = parse_message(data)
        except MCPProtocolError as e:
            if e.request_id is None and isinstance(data, (str, bytes)):
                raw = data.decode("utf-8", errors="replace") if isinstance(data, bytes) else data
                e.request_id = recover_id_from_raw(raw)
            return self._reject(e)

        if isinstance(message, MCPNotification):
            await self.handle_notification(message)
            return None
        if isinstance(message, MCPResponse):
            logger.debug("Ignoring response from client for id %s", message.id)
            return None

        response = await self.process_request(message)
        return response.to_dict()

    def _reject(self, error: MCPProtocolError) -> Optional[dict]:
        if error.request_id is None:
            logger.warning("Dropping malformed message: %s", error.message)
            return None
        return MCPResponse.failure(error.request_id, MCPError.from_exception(error)).to_dict()

    async def start(self, transport: Optional[Transport] = None) -> None:
        """
        Serve until end of stream, a failed write, or ``stop()``.

        The registry is frozen for the life of the server. Raises
        ``RuntimeError`` if the server was already started.
        """
        if self._state is not ServerState.CREATED:
            raise RuntimeError("Server has already been started")

        self._transport = transport or StdioTransport()
        self.registry.freeze()
        self._set_state(ServerState.RUNNING)

        logger.info(
            "MCP Server %s v%s starting with %d tools",
            self.config.name, self.config.version, len(self.registry),
        )

        try:
            await self._transport.start()
            await self._serve()
        finally:
            await self._shutdown()

    async def run(self, transport: Optional[Transport] = None) -> None:
        """Run the server main loop."""
        await self.start(transport)

    def stop(self) -> None:
        """Signal the server to stop."""
        if self._state is ServerState.RUNNING:
            logger.info("Stop requested")
            self._stop_event.set()

    async def _serve(self) -> None:
        stop_wait = asyncio.ensure_future(self._stop_event.wait())
        try:
            while not self._stop_event.is_set():
                receive = asyncio.ensure_future(self._transport.receive())
                await asyncio.wait({receive, stop_wait}, return_when=asyncio.FIRST_COMPLETED)
                if not receive.done():
                    receive.cancel()
                    break

                try:
                    data = receive.result()
                except TransportDecodeError as e:
                    if not await self._answer_decode_error(e):
                        break
                    continue
                except TransportError as e:
                    logger.error("Transport read failed: %s", e)
                    break

                if data is None:
                    logger.info("End of stream, shutting down")
                    break

                await self._dispatch(data)
        finally:
            stop_wait.cancel()

    async def _dispatch(self, data: Any) -> None:
        try:
            message = parse_message(data)
        except MCPProtocolError as e:
            response = self._reject(e)
            if response is not None:
                await self._send(response)
            return

        if isinstance(message, MCPNotification):
            await self.handle_notification(message)
        elif isinstance(message, MCPResponse):
            logger.debug("Ignoring response from client for id %s", message.id)
        elif message.method == METHOD_TOOLS_CALL:
            task = asyncio.create_task(self._run_call(message))
            self._inflight[task] = message
            task.add_done_callback(self._call_done)
        else:
            response = await self.process_request(message)
            await self._send(response.to_dict())

    async def _run_call(self, request: MCPRequest) -> None:
        response = await self.process_request(request)
        await self._send(response.to_dict())

    def _call_done(self, task: asyncio.Task) -> None:
        self._inflight.pop(task, None)

    async def _answer_decode_error(self, error: TransportDecodeError) -> bool:
        """Answer an undecodable frame. Returns False when the stream must close."""
        request_id = recover_id_from_raw(error.raw)
        if request_id is None:
            logger.error("Unrecoverable parse error, closing stream: %s", error.detail)
            return False
        response = MCPResponse.failure(
            request_id,
            MCPError.from_code(MCPErrorCode.PARSE_ERROR, "Parse error", {"detail": error.detail}),
        )
        return await self._send(response.to_dict())

    async def _send(self, message: dict) -> bool:
        if self._write_failed:
            return False
        try:
            await self._transport.send(message)
            return True
        except TransportError as e:
            # a broken output stream ends the session
            logger.error("Transport write failed: %s", e)
            self._write_failed = True
            self._stop_event.set()
            return False

    async def _shutdown(self) -> None:
        self._set_state(ServerState.STOPPING)

        pending = dict(self._inflight)
        if pending:
            logger.info("Waiting for %d in-flight calls", len(pending))
            _, unfinished = await asyncio.wait(
                list(pending), timeout=self.config.shutdown_timeout
            )
            for task in unfinished:
                ctx = self._contexts.get(_id_key(pending[task].id))
                if ctx is not None:
                    ctx.cancel()
                task.cancel()
            if unfinished:
                await asyncio.gather(*unfinished, return_exceptions=True)
                for task in unfinished:
                    request = pending[task]
                    logger.warning("Cancelled call %s (%s) at shutdown", request.id, request.method)
                    if not self._transport.closed:
                        await self._send(
                            MCPResponse.failure(
                                request.id,
                                MCPError.from_code(
                                    MCPErrorCode.INTERNAL_ERROR,
                                    "Server shutting down",
                                    {"reason": "shutdown"},
                                ),
                            ).to_dict()
                        )

        try:
            await self._transport.close()
        finally:
            self._set_state(ServerState.STOPPED)
            logger.info("Server stopped")


def _id_key(request_id: Any) -> str:
    return json.dumps(request_id)


def create_backend(config: ServerConfig) -> VEXBackend:
    """Build the VEX backend selected by ``config.backend``."""
    if config.backend == "native":
        return VEXClient(default_author=config.default_author)
    if config.backend == "vexctl":
        return VexctlClient(
            executable=config.vexctl_path,
            timeout=config.tool_timeout or 30.0,
            default_author=config.default_author,
        )
    raise ValueError(f"Unknown backend: {config.backend}")


def create_server(
    config: Optional[ServerConfig] = None,
    tools: Optional[List[BaseTool]] = None,
) -> MCPServer:
    """
    Create an MCP server with configuration and tools.

    Args:
        config: Server configuration
        tools: Additional tools to register after the VEX tools

    Returns:
        Configured MCPServer instance
    """
    config = config or ServerConfig()
    server = MCPServer(config)

    backend = create_backend(config)
    server.register_tool(CreateVEXStatementTool(backend))
    server.register_tool(MergeVEXDocumentsTool(backend))

    if tools:
        for tool in tools:
            server.register_tool(tool)

    return server
