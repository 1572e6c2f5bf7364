"""Shared error types for the MCP server."""

from typing import Any, Optional, Union


class MCPServerError(Exception):
    """Base error for all server-side failures."""


class MCPProtocolError(MCPServerError):
    """
    A failure that is reported to the client as a JSON-RPC error.

    ``code`` is one of the reserved JSON-RPC codes. ``request_id`` is set
    when the failing message carried a recoverable id.
    """

    def __init__(
        self,
        code: int,
        message: str,
        data: Any = None,
        request_id: Optional[Union[str, int]] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.data = data
        self.request_id = request_id
        super().__init__(message)


class RegistrationError(MCPServerError):
    """A tool could not be added to the registry."""


class DuplicateToolError(RegistrationError):
    """A tool with the same name is already registered."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool already registered: {name}")


class RegistryFrozenError(RegistrationError):
    """The registry no longer accepts tools because the server has started."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Cannot register tool {name}: registry is frozen")


class ToolNotFoundError(MCPServerError):
    """Requested tool does not exist in the registry."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool not found: {name}")


class TransportError(MCPServerError):
    """The transport could not deliver or receive a message."""


class TransportClosedError(TransportError):
    """The transport was used after close."""

    def __init__(self) -> None:
        super().__init__("Transport is closed")


class TransportDecodeError(TransportError):
    """An inbound frame could not be decoded into a JSON value."""

    def __init__(self, detail: str, raw: str = "") -> None:
        self.detail = detail
        self.raw = raw
        super().__init__(f"Invalid JSON: {detail}")
