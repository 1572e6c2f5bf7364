"""
MCP Transport layer implementations.

Provides transport mechanisms for MCP communication:
- StdioTransport: newline-delimited JSON over stdin/stdout
- HTTPTransport: one JSON-RPC message per HTTP POST body

Every transport hands the server decoded JSON values from ``receive`` and
accepts response dicts in ``send``. ``receive`` returns ``None`` at end of
stream and raises ``TransportDecodeError`` for frames that are not JSON.
"""

import asyncio
import json
import logging
import sys
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from .errors import TransportClosedError, TransportDecodeError, TransportError
from .protocol import MCPError, MCPErrorCode, MCPResponse, recover_id_from_raw


logger = logging.getLogger(__name__)


class Transport(ABC):
    """Abstract base class for MCP transports."""

    async def start(self) -> None:
        """Acquire any resources needed before the first ``receive``."""
        pass

    @abstractmethod
    async def send(self, message: dict) -> None:
        """Send a message."""
        pass

    @abstractmethod
    async def receive(self) -> Optional[Any]:
        """Receive a message. Returns None on EOF/close."""
        pass

    async def discard(self, request_id: Any) -> None:
        """
        Drop a request the client cancelled before it was answered.

        Stream transports send nothing for a cancelled request, so the
        default does nothing.
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close the transport. Safe to call more than once."""
        pass

    @property
    @abstractmethod
    def closed(self) -> bool:
        pass

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


class StdioTransport(Transport):
    """
    Transport using stdin/stdout for communication.

    Framing is newline-delimited JSON: one UTF-8 JSON object per line.
    Blank lines are skipped. Nothing but protocol frames is ever written to
    the output stream.
    """

    def __init__(
        self,
        input_stream=None,
        output_stream=None,
    ):
        self.input = input_stream or sys.stdin
        self.output = output_stream or sys.stdout
        self._closed = False
        self._write_lock = asyncio.Lock()

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, message: dict) -> None:
        """Write one frame to the output stream."""
        if self._closed:
            raise TransportClosedError()

        frame = json.dumps(message) + "\n"

        async with self._write_lock:
            try:
                self.output.write(frame)
                self.output.flush()
            except (OSError, ValueError) as e:
                raise TransportError(f"Failed to send: {e}")

    async def receive(self) -> Optional[Any]:
        """Read the next frame from the input stream."""
        loop = asyncio.get_running_loop()

        while not self._closed:
            # readline blocks; keep it off the event loop
            line = await loop.run_in_executor(None, self.input.readline)
            if not line:
                return None  # EOF

            line = line.strip()
            if not line:
                continue

            try:
                return json.loads(line)
            except json.JSONDecodeError as e:
                raise TransportDecodeError(str(e), raw=line)

        return None

    async def close(self) -> None:
        """Close the transport."""
        if self._closed:
            return
        self._closed = True
        logger.debug("stdio transport closed")


_EOF = object()


class HTTPTransport(Transport):
    """
    Transport using HTTP POST requests.

    Each POST to ``path`` carries exactly one JSON-RPC message. A request is
    held open until the server sends the response with the same id, which
    is returned as the HTTP body with status 200. Notifications and client
    responses are acknowledged with ``202 Accepted`` and no body. Bodies
    that are not JSON, or that carry no usable id, are rejected at this
    edge with a JSON-RPC error and status 400.

    A request the client cancels still holds an open POST, so ``discard``
    answers it with an internal error whose data reason is ``cancelled``.

    With ``port=None`` no listener is started and ``app`` can be mounted in
    any ASGI server.
    """

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: Optional[int] = 3000,
        path: str = "/mcp",
    ):
        self.host = host
        self.port = port
        self.path = path
        self._closed = False
        self._inbox: Optional[asyncio.Queue] = None
        # id key -> (original id, future resolved with the response dict)
        self._pending: Dict[str, Tuple[Any, asyncio.Future]] = {}
        self._server: Optional[uvicorn.Server] = None
        self._serve_task: Optional[asyncio.Task] = None
        self.app = Starlette(
            routes=[
                Route(path, self._handle_message, methods=["POST"]),
                Route("/health", self._handle_health, methods=["GET"]),
            ]
        )

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def inbox(self) -> asyncio.Queue:
        if self._inbox is None:
            self._inbox = asyncio.Queue()
        return self._inbox

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def start(self) -> None:
        """Start the uvicorn listener, if a port was configured."""
        if self.port is None or self._serve_task is not None:
            return

        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level="warning",
            lifespan="off",
        )
        self._server = uvicorn.Server(config)
        self._serve_task = asyncio.create_task(self._server.serve())
        self._serve_task.add_done_callback(lambda _: self.inbox.put_nowait(_EOF))

        while not self._server.started:
            if self._serve_task.done():
                raise TransportError(f"HTTP server failed to start on {self.host}:{self.port}")
            await asyncio.sleep(0.05)

        logger.info("HTTP transport listening on http://%s:%s%s", self.host, self.port, self.path)

    async def send(self, message: dict) -> None:
        """Deliver a response to the HTTP request waiting on its id."""
        if self._closed:
            raise TransportClosedError()

        entry = self._pending.get(_id_key(message.get("id")))
        if entry is None or entry[1].done():
            logger.warning("No pending HTTP request for response id %s", message.get("id"))
            return
        entry[1].set_result(message)

    async def discard(self, request_id: Any) -> None:
        """Answer the POST still waiting on a cancelled request."""
        entry = self._pending.get(_id_key(request_id))
        if entry is None or entry[1].done():
            return
        logger.debug("Releasing HTTP request %s after client cancellation", request_id)
        entry[1].set_result(
            _failure(request_id, "Request cancelled", {"reason": "cancelled"})
        )

    async def receive(self) -> Optional[Any]:
        """Wait for the next inbound message."""
        if self._closed:
            return None
        item = await self.inbox.get()
        if item is _EOF:
            return None
        return item

    async def close(self) -> None:
        """Stop accepting requests and shut the listener down."""
        if self._closed:
            return
        self._closed = True

        for msg_id, future in self._pending.values():
            if not future.done():
                future.set_result(_failure(msg_id, "Server shutting down", {"reason": "shutdown"}))
        self.inbox.put_nowait(_EOF)

        if self._server is not None and self._serve_task is not None:
            self._server.should_exit = True
            try:
                await asyncio.wait_for(asyncio.shield(self._serve_task), timeout=5.0)
            except asyncio.TimeoutError:
                logger.warning("HTTP listener did not stop in time")
                self._serve_task.cancel()
        logger.debug("HTTP transport closed")

    async def _handle_health(self, request: Request) -> Response:
        return JSONResponse({"status": "closed" if self._closed else "ok"})

    async def _handle_message(self, request: Request) -> Response:
        if self._closed:
            return _error_response(None, MCPErrorCode.INTERNAL_ERROR, "Server shutting down", 503)

        body = await request.body()
        try:
            message = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            raw = body.decode("utf-8", errors="replace")
            logger.warning("Rejected HTTP body that is not valid JSON")
            return _error_response(recover_id_from_raw(raw), MCPErrorCode.PARSE_ERROR, "Parse error", 400)

        if not isinstance(message, dict):
            return _error_response(
                None, MCPErrorCode.INVALID_REQUEST, "Message must be a JSON object", 400
            )

        if "method" not in message or "id" not in message:
            # notifications and client responses are never answered
            await self.inbox.put(message)
            return Response(status_code=202)

        msg_id = message["id"]
        if isinstance(msg_id, bool) or not isinstance(msg_id, (str, int)):
            return _error_response(
                None, MCPErrorCode.INVALID_REQUEST, "Id must be a string or integer", 400
            )

        key = _id_key(msg_id)
        if key in self._pending:
            return _error_response(
                msg_id, MCPErrorCode.INVALID_REQUEST, "Request id already in flight", 409
            )

        future = asyncio.get_running_loop().create_future()
        self._pending[key] = (msg_id, future)
        try:
            await self.inbox.put(message)
            response = await future
        finally:
            self._pending.pop(key, None)

        return JSONResponse(response)


def _id_key(msg_id: Any) -> str:
    return json.dumps(msg_id)


def _failure(msg_id: Any, message: str, data: dict) -> dict:
    error = MCPError.from_code(MCPErrorCode.INTERNAL_ERROR, message, data)
    return MCPResponse.failure(msg_id, error).to_dict()


def _error_response(msg_id: Any, code: MCPErrorCode, message: str, status: int) -> JSONResponse:
    body = MCPResponse.failure(msg_id, MCPError.from_code(code, message)).to_dict()
    return JSONResponse(body, status_code=status)
