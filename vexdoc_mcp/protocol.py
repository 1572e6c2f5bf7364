"""
MCP Protocol definitions.

Implements the JSON-RPC 2.0 envelopes used by the Model Context Protocol,
plus the tool descriptor and tool result shapes carried inside them.
"""

import json
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from .errors import MCPProtocolError


JSONRPC_VERSION = "2.0"
PROTOCOL_VERSION = "2024-11-05"

METHOD_INITIALIZE = "initialize"
METHOD_PING = "ping"
METHOD_TOOLS_LIST = "tools/list"
METHOD_TOOLS_CALL = "tools/call"

NOTIFICATION_INITIALIZED = "notifications/initialized"
NOTIFICATION_CANCELLED = "notifications/cancelled"


class MCPErrorCode(Enum):
    """Reserved JSON-RPC error codes."""
    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603


@dataclass
class MCPError:
    """JSON-RPC error object."""
    code: int
    message: str
    data: Optional[Any] = None

    @classmethod
    def from_code(cls, code: MCPErrorCode, message: str, data: Any = None) -> "MCPError":
        return cls(code=code.value, message=message, data=data)

    @classmethod
    def from_exception(cls, exc: MCPProtocolError) -> "MCPError":
        return cls(code=exc.code, message=exc.message, data=exc.data)

    def to_dict(self) -> dict:
        result = {"code": self.code, "message": self.message}
        if self.data is not None:
            result["data"] = self.data
        return result

    @classmethod
    def from_dict(cls, data: dict) -> "MCPError":
        return cls(
            code=data.get("code", MCPErrorCode.INTERNAL_ERROR.value),
            message=data.get("message", ""),
            data=data.get("data"),
        )


@dataclass
class MCPMessage:
    """Base JSON-RPC message."""
    jsonrpc: str = JSONRPC_VERSION

    def to_dict(self) -> dict:
        return {"jsonrpc": self.jsonrpc}

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


@dataclass
class MCPNotification(MCPMessage):
    """A method invocation without an id. Never answered."""
    method: str = ""
    params: Optional[Any] = None

    def to_dict(self) -> dict:
        result = super().to_dict()
        result["method"] = self.method
        if self.params is not None:
            result["params"] = self.params
        return result

    @classmethod
    def from_dict(cls, data: dict) -> "MCPNotification":
        return cls(
            jsonrpc=data.get("jsonrpc", JSONRPC_VERSION),
            method=data.get("method", ""),
            params=data.get("params"),
        )


@dataclass
class MCPRequest(MCPMessage):
    """A method invocation that expects exactly one response."""
    id: Optional[Union[str, int]] = None
    method: str = ""
    params: Optional[Any] = None

    def to_dict(self) -> dict:
        result = super().to_dict()
        result["id"] = self.id
        result["method"] = self.method
        if self.params is not None:
            result["params"] = self.params
        return result

    @classmethod
    def from_dict(cls, data: dict) -> "MCPRequest":
        return cls(
            jsonrpc=data.get("jsonrpc", JSONRPC_VERSION),
            id=data.get("id"),
            method=data.get("method", ""),
            params=data.get("params"),
        )

    @classmethod
    def from_json(cls, json_str: str) -> "MCPRequest":
        return cls.from_dict(json.loads(json_str))


@dataclass
class MCPResponse(MCPMessage):
    """
    JSON-RPC response.

    Carries exactly one of ``result`` or ``error``; ``to_dict`` never emits
    both and never emits neither.
    """
    id: Optional[Union[str, int]] = None
    result: Optional[Any] = None
    error: Optional[MCPError] = None

    def __post_init__(self):
        if self.error is not None and self.result is not None:
            raise ValueError("A response cannot carry both result and error")

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def to_dict(self) -> dict:
        result = super().to_dict()
        result["id"] = self.id
        if self.error is not None:
            result["error"] = self.error.to_dict()
        else:
            result["result"] = self.result if self.result is not None else {}
        return result

    @classmethod
    def from_dict(cls, data: dict) -> "MCPResponse":
        error = data.get("error")
        return cls(
            jsonrpc=data.get("jsonrpc", JSONRPC_VERSION),
            id=data.get("id"),
            result=data.get("result") if error is None else None,
            error=MCPError.from_dict(error) if isinstance(error, dict) else None,
        )

    @classmethod
    def success(cls, id: Optional[Union[str, int]], result: Any) -> "MCPResponse":
        return cls(id=id, result=result)

    @classmethod
    def failure(cls, id: Optional[Union[str, int]], error: MCPError) -> "MCPResponse":
        return cls(id=id, error=error)


@dataclass
class ToolDescriptor:
    """Tool definition as advertised by ``tools/list``."""
    name: str
    description: str
    input_schema: Dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
        }


@dataclass
class TextContent:
    """A single text item in a tool result."""
    text: str
    type: str = "text"

    def to_dict(self) -> dict:
        return {"type": self.type, "text": self.text}


@dataclass
class ToolResult:
    """
    Outcome of a tool execution.

    A result with ``is_error`` set still travels inside a successful
    response; it describes a domain failure, not a protocol failure.
    """
    content: List[TextContent] = field(default_factory=list)
    is_error: bool = False

    @classmethod
    def text(cls, text: str) -> "ToolResult":
        return cls(content=[TextContent(text=text)])

    @classmethod
    def error(cls, text: str) -> "ToolResult":
        return cls(content=[TextContent(text=text)], is_error=True)

    def to_dict(self) -> dict:
        result = {"content": [c.to_dict() for c in self.content]}
        if self.is_error:
            result["isError"] = True
        return result


Envelope = Union[MCPRequest, MCPNotification, MCPResponse]


def recover_id(data: Any) -> Optional[Union[str, int]]:
    """Best-effort extraction of a usable correlation id from a raw message."""
    if not isinstance(data, dict):
        return None
    msg_id = data.get("id")
    if _is_valid_id(msg_id):
        return msg_id
    return None


_RAW_ID_PATTERN = re.compile(r'"id"\s*:\s*(?:"((?:[^"\\]|\\.)*)"|(-?\d+))')


def recover_id_from_raw(raw: str) -> Optional[Union[str, int]]:
    """Scan undecodable text for an ``"id"`` member so a parse error can still be answered."""
    match = _RAW_ID_PATTERN.search(raw or "")
    if match is None:
        return None
    if match.group(1) is not None:
        try:
            return json.loads(f'"{match.group(1)}"')
        except json.JSONDecodeError:
            return None
    return int(match.group(2))


def _is_valid_id(value: Any) -> bool:
    # bool is a subclass of int but never a valid id
    return isinstance(value, (str, int)) and not isinstance(value, bool)


def parse_message(data: Union[str, bytes, dict]) -> Envelope:
    """
    Parse a raw message into an envelope object.

    Raises:
        MCPProtocolError: PARSE_ERROR for undecodable JSON, INVALID_REQUEST
            for JSON that is not a valid envelope. ``request_id`` is set
            whenever an id could be recovered.
    """
    if isinstance(data, (str, bytes)):
        try:
            data = json.loads(data)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise MCPProtocolError(
                MCPErrorCode.PARSE_ERROR.value, "Parse error", data={"detail": str(e)}
            )

    request_id = recover_id(data)

    if not isinstance(data, dict):
        raise MCPProtocolError(
            MCPErrorCode.INVALID_REQUEST.value, "Message must be a JSON object"
        )

    if data.get("jsonrpc", JSONRPC_VERSION) != JSONRPC_VERSION:
        raise MCPProtocolError(
            MCPErrorCode.INVALID_REQUEST.value,
            "Unsupported jsonrpc version",
            request_id=request_id,
        )

    if "method" in data:
        method = data["method"]
        if not isinstance(method, str) or not method:
            raise MCPProtocolError(
                MCPErrorCode.INVALID_REQUEST.value,
                "Method must be a non-empty string",
                request_id=request_id,
            )
        params = data.get("params")
        if params is not None and not isinstance(params, (dict, list)):
            raise MCPProtocolError(
                MCPErrorCode.INVALID_REQUEST.value,
                "Params must be an object or array",
                request_id=request_id,
            )
        if "id" not in data:
            return MCPNotification.from_dict(data)
        if not _is_valid_id(data["id"]):
            raise MCPProtocolError(
                MCPErrorCode.INVALID_REQUEST.value, "Id must be a string or integer"
            )
        return MCPRequest.from_dict(data)

    if "result" in data or "error" in data:
        return MCPResponse.from_dict(data)

    raise MCPProtocolError(
        MCPErrorCode.INVALID_REQUEST.value,
        "Message is neither a request nor a response",
        request_id=request_id,
    )
