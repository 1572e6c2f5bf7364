"""Tests for vexdoc_mcp.protocol module."""

import pytest
import json

from vexdoc_mcp.errors import MCPProtocolError
from vexdoc_mcp.protocol import (
    MCPMessage,
    MCPNotification,
    MCPRequest,
    MCPResponse,
    MCPError,
    MCPErrorCode,
    TextContent,
    ToolDescriptor,
    ToolResult,
    parse_message,
    recover_id,
    recover_id_from_raw,
)


class TestMCPError:
    def test_create(self):
        error = MCPError(code=-32600, message="Invalid Request")
        assert error.code == -32600
        assert error.message == "Invalid Request"

    def test_from_code(self):
        error = MCPError.from_code(MCPErrorCode.PARSE_ERROR, "Parse failed")
        assert error.code == -32700
        assert error.message == "Parse failed"

    def test_from_exception(self):
        exc = MCPProtocolError(-32602, "Unknown tool: x", data={"tool": "x"})
        error = MCPError.from_exception(exc)
        assert error.code == -32602
        assert error.data == {"tool": "x"}

    def test_to_dict(self):
        error = MCPError(code=-32600, message="Test", data={"detail": "info"})
        d = error.to_dict()
        assert d["code"] == -32600
        assert d["message"] == "Test"
        assert d["data"]["detail"] == "info"

    def test_to_dict_no_data(self):
        error = MCPError(code=-32600, message="Test")
        d = error.to_dict()
        assert "data" not in d

    def test_reserved_codes(self):
        assert {c.value for c in MCPErrorCode} == {-32700, -32600, -32601, -32602, -32603}


class TestMCPMessage:
    def test_create(self):
        msg = MCPMessage()
        assert msg.jsonrpc == "2.0"

    def test_to_json(self):
        msg = MCPMessage()
        j = msg.to_json()
        assert '"jsonrpc": "2.0"' in j


class TestMCPRequest:
    def test_create(self):
        req = MCPRequest(id=1, method="tools/list")
        assert req.method == "tools/list"
        assert req.params is None

    def test_to_dict(self):
        req = MCPRequest(id="a", method="tools/call", params={"name": "x"})
        d = req.to_dict()
        assert d == {"jsonrpc": "2.0", "id": "a", "method": "tools/call", "params": {"name": "x"}}

    def test_to_dict_without_params(self):
        d = MCPRequest(id=1, method="ping").to_dict()
        assert "params" not in d

    def test_from_json(self):
        req = MCPRequest.from_json('{"jsonrpc": "2.0", "id": 7, "method": "ping"}')
        assert req.id == 7
        assert req.method == "ping"


class TestMCPNotification:
    def test_to_dict_has_no_id(self):
        d = MCPNotification(method="notifications/initialized").to_dict()
        assert "id" not in d
        assert d["method"] == "notifications/initialized"


class TestMCPResponse:
    def test_success(self):
        resp = MCPResponse.success("1", {"data": "value"})
        assert resp.id == "1"
        assert resp.result == {"data": "value"}
        assert resp.is_error is False

    def test_failure(self):
        error = MCPError.from_code(MCPErrorCode.METHOD_NOT_FOUND, "nope")
        resp = MCPResponse.failure(3, error)
        assert resp.is_error is True

    def test_to_dict_success(self):
        d = MCPResponse.success(1, {"tools": []}).to_dict()
        assert d["id"] == 1
        assert d["result"] == {"tools": []}
        assert "error" not in d

    def test_to_dict_failure(self):
        error = MCPError.from_code(MCPErrorCode.INVALID_PARAMS, "bad")
        d = MCPResponse.failure(1, error).to_dict()
        assert d["error"]["code"] == -32602
        assert "result" not in d

    def test_to_dict_empty_result(self):
        d = MCPResponse.success(1, None).to_dict()
        assert d["result"] == {}

    def test_to_dict_null_id(self):
        error = MCPError.from_code(MCPErrorCode.PARSE_ERROR, "Parse error")
        d = MCPResponse.failure(None, error).to_dict()
        assert "id" in d
        assert d["id"] is None

    def test_result_and_error_rejected(self):
        with pytest.raises(ValueError):
            MCPResponse(id=1, result={}, error=MCPError(code=-32603, message="x"))

    def test_from_dict(self):
        resp = MCPResponse.from_dict(
            {"jsonrpc": "2.0", "id": 2, "error": {"code": -32601, "message": "Method not found"}}
        )
        assert resp.is_error
        assert resp.error.code == -32601
        assert resp.result is None


class TestToolDescriptor:
    def test_to_dict(self):
        schema = {"type": "object", "properties": {"msg": {"type": "string"}}}
        d = ToolDescriptor("echo", "Echo a message", schema).to_dict()
        assert d == {"name": "echo", "description": "Echo a message", "inputSchema": schema}

    def test_default_schema(self):
        d = ToolDescriptor("noop", "Does nothing").to_dict()
        assert d["inputSchema"]["type"] == "object"


class TestToolResult:
    def test_text(self):
        d = ToolResult.text("hello").to_dict()
        assert d == {"content": [{"type": "text", "text": "hello"}]}

    def test_error(self):
        result = ToolResult.error("Error: broken")
        assert result.is_error is True
        d = result.to_dict()
        assert d["isError"] is True
        assert d["content"][0]["text"] == "Error: broken"

    def test_multiple_content(self):
        result = ToolResult(content=[TextContent("a"), TextContent("b")])
        assert [c["text"] for c in result.to_dict()["content"]] == ["a", "b"]

    def test_json_serializable(self):
        assert json.loads(json.dumps(ToolResult.error("x").to_dict()))["isError"] is True


class TestRecoverId:
    def test_from_dict(self):
        assert recover_id({"id": 5}) == 5
        assert recover_id({"id": "abc"}) == "abc"

    def test_rejects_unusable_ids(self):
        assert recover_id({"id": True}) is None
        assert recover_id({"id": [1]}) is None
        assert recover_id({"id": None}) is None
        assert recover_id(["id"]) is None

    def test_from_raw(self):
        assert recover_id_from_raw('{"jsonrpc": "2.0", "id": 12, "method": ') == 12
        assert recover_id_from_raw('{"id":"req-1", "method": tools/list}') == "req-1"
        assert recover_id_from_raw('{"id": -4,') == -4

    def test_from_raw_escaped_string(self):
        assert recover_id_from_raw(r'{"id": "a\"b", oops') == 'a"b'

    def test_from_raw_missing(self):
        assert recover_id_from_raw("not json at all") is None
        assert recover_id_from_raw("") is None


class TestParseMessage:
    def test_request(self):
        msg = parse_message({"jsonrpc": "2.0", "id": 1, "method": "tools/list"})
        assert isinstance(msg, MCPRequest)
        assert msg.id == 1

    def test_request_from_string(self):
        msg = parse_message('{"jsonrpc": "2.0", "id": "x", "method": "ping"}')
        assert isinstance(msg, MCPRequest)
        assert msg.method == "ping"

    def test_request_from_bytes(self):
        msg = parse_message(b'{"jsonrpc": "2.0", "id": "x", "method": "ping"}')
        assert isinstance(msg, MCPRequest)

    def test_notification(self):
        msg = parse_message({"jsonrpc": "2.0", "method": "notifications/initialized"})
        assert isinstance(msg, MCPNotification)

    def test_response(self):
        msg = parse_message({"jsonrpc": "2.0", "id": 1, "result": {}})
        assert isinstance(msg, MCPResponse)

    def test_invalid_json(self):
        with pytest.raises(MCPProtocolError) as exc_info:
            parse_message("{not json")
        assert exc_info.value.code == MCPErrorCode.PARSE_ERROR.value
        assert exc_info.value.request_id is None

    def test_not_an_object(self):
        with pytest.raises(MCPProtocolError) as exc_info:
            parse_message([1, 2, 3])
        assert exc_info.value.code == MCPErrorCode.INVALID_REQUEST.value

    def test_wrong_version_keeps_id(self):
        with pytest.raises(MCPProtocolError) as exc_info:
            parse_message({"jsonrpc": "1.0", "id": 9, "method": "ping"})
        assert exc_info.value.code == MCPErrorCode.INVALID_REQUEST.value
        assert exc_info.value.request_id == 9

    def test_non_string_method(self):
        with pytest.raises(MCPProtocolError) as exc_info:
            parse_message({"jsonrpc": "2.0", "id": "m", "method": 42})
        assert exc_info.value.code == MCPErrorCode.INVALID_REQUEST.value
        assert exc_info.value.request_id == "m"

    def test_scalar_params(self):
        with pytest.raises(MCPProtocolError) as exc_info:
            parse_message({"jsonrpc": "2.0", "id": 1, "method": "ping", "params": "x"})
        assert exc_info.value.code == MCPErrorCode.INVALID_REQUEST.value

    def test_invalid_id_type(self):
        with pytest.raises(MCPProtocolError) as exc_info:
            parse_message({"jsonrpc": "2.0", "id": {"a": 1}, "method": "ping"})
        assert exc_info.value.request_id is None

    def test_neither_request_nor_response(self):
        with pytest.raises(MCPProtocolError) as exc_info:
            parse_message({"jsonrpc": "2.0", "id": 4})
        assert exc_info.value.code == MCPErrorCode.INVALID_REQUEST.value
        assert exc_info.value.request_id == 4
