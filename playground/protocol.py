"""
JSON-RPC 2.0 channel protocol between host and guest.

One JSON document per line. The host sends requests; the guest answers each
request with exactly one response and may send notifications (no id) at any
time before it, e.g. to call a host global or announce readiness.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

from playground.errors import ProtocolError


class JsonRpcErrorCodes:
    """JSON-RPC 2.0 error codes used on the guest channel."""

    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603

    # Server error range: -32000 to -32099
    GUEST_EXECUTION_ERROR = -32000
    PACKAGE_LOAD_ERROR = -32001


class Methods:
    """Method names spoken on the channel."""

    # host -> guest requests
    PING = "ping"
    LOAD_PACKAGES = "load_packages"
    SET_GLOBAL = "set_global"
    EXECUTE = "execute"

    # guest -> host notifications
    READY = "ready"
    CALL = "call"


@dataclass
class JsonRpcRequest:
    """JSON-RPC 2.0 request structure."""

    method: str
    params: Dict[str, Any] = field(default_factory=dict)
    id: Optional[Union[str, int]] = None

    @property
    def is_notification(self) -> bool:
        return self.id is None

    def to_dict(self) -> Dict[str, Any]:
        data = {"jsonrpc": "2.0", "method": self.method, "params": self.params}
        if self.id is not None:
            data["id"] = self.id
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JsonRpcRequest":
        params = data.get("params", {})
        if not isinstance(params, dict):
            raise ProtocolError(f"Invalid params for {data.get('method')!r}")
        return cls(method=data["method"], params=params, id=data.get("id"))


@dataclass
class JsonRpcResponse:
    """JSON-RPC 2.0 response structure."""

    result: Optional[Any] = None
    error: Optional[Dict[str, Any]] = None
    id: Optional[Union[str, int]] = None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    @property
    def error_message(self) -> str:
        if not self.error:
            return ""
        return str(self.error.get("message") or "")

    @property
    def error_code(self) -> Optional[int]:
        if not self.error:
            return None
        return self.error.get("code")

    def to_dict(self) -> Dict[str, Any]:
        response = {"jsonrpc": "2.0", "id": self.id}
        if self.error:
            response["error"] = self.error
        else:
            response["result"] = self.result
        return response

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JsonRpcResponse":
        if "error" in data:
            error = data["error"]
            if not isinstance(error, dict) or "message" not in error:
                raise ProtocolError("Error response missing 'code' or 'message'")
            return cls(error=error, id=data.get("id"))
        if "result" not in data:
            raise ProtocolError("Response must have either 'result' or 'error'")
        return cls(result=data["result"], id=data.get("id"))


Message = Union[JsonRpcRequest, JsonRpcResponse]


def parse_message(line: Union[str, bytes]) -> Message:
    """Parse one channel line into a request/notification or a response.

    Raises:
        ProtocolError: The line is not a JSON-RPC 2.0 object.
    """
    try:
        data = json.loads(line)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ProtocolError(f"Parse error: {e}") from e

    if not isinstance(data, dict) or data.get("jsonrpc") != "2.0":
        raise ProtocolError("Not a JSON-RPC 2.0 message")

    if "method" in data:
        if not isinstance(data["method"], str):
            raise ProtocolError("Request 'method' must be a string")
        return JsonRpcRequest.from_dict(data)

    if "id" not in data:
        raise ProtocolError("Response missing 'id' field")
    return JsonRpcResponse.from_dict(data)


def encode_message(message: Message) -> bytes:
    """Serialize a message as one newline-terminated line."""
    return (message.to_json() + "\n").encode("utf-8")
