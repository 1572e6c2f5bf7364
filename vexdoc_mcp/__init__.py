"""
vexdoc MCP Server - MCP server exposing OpenVEX document tools.

The Model Context Protocol (MCP) enables AI assistants to interact with
external tools and data sources through a standardized interface. This
server offers tools to create VEX statements and merge VEX documents.
"""

__version__ = "0.1.0"

from .errors import (
    DuplicateToolError,
    MCPProtocolError,
    MCPServerError,
    RegistrationError,
    RegistryFrozenError,
    ToolNotFoundError,
    TransportClosedError,
    TransportDecodeError,
    TransportError,
)
from .protocol import (
    MCPMessage,
    MCPNotification,
    MCPRequest,
    MCPResponse,
    MCPError,
    MCPErrorCode,
    TextContent,
    ToolDescriptor,
    ToolResult,
)
from .server import MCPServer, ServerConfig, ServerState, create_server
from .tools import (
    BaseTool,
    CreateVEXStatementTool,
    MergeVEXDocumentsTool,
    ToolContext,
    ToolRegistry,
)
from .transport import (
    Transport,
    StdioTransport,
    HTTPTransport,
)

__all__ = [
    # Errors
    "DuplicateToolError",
    "MCPProtocolError",
    "MCPServerError",
    "RegistrationError",
    "RegistryFrozenError",
    "ToolNotFoundError",
    "TransportClosedError",
    "TransportDecodeError",
    "TransportError",
    # Protocol
    "MCPMessage",
    "MCPNotification",
    "MCPRequest",
    "MCPResponse",
    "MCPError",
    "MCPErrorCode",
    "TextContent",
    "ToolDescriptor",
    "ToolResult",
    # Server
    "MCPServer",
    "ServerConfig",
    "ServerState",
    "create_server",
    # Tools
    "BaseTool",
    "CreateVEXStatementTool",
    "MergeVEXDocumentsTool",
    "ToolContext",
    "ToolRegistry",
    # Transport
    "Transport",
    "StdioTransport",
    "HTTPTransport",
]
