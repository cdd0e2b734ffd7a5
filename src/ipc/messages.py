"""JSON-RPC message models for adapter ↔ MCP subprocess communication."""

import json

from pydantic import BaseModel, ConfigDict, ValidationError, model_validator
from typing import Any, Dict, List, Literal, Optional, Union

from .errors import ParseError


JSONRPC_VERSION = "2.0"

# MCP handshake
PROTOCOL_VERSION = "2025-06-18"
INITIALIZE_METHOD = "initialize"
INITIALIZED_NOTIFICATION = "notifications/initialized"
CLIENT_NAME = "local-mcp-filesystem"
CLIENT_VERSION = "1.0.0"

RequestId = Union[int, str]
Params = Optional[Union[Dict[str, Any], List[Any]]]


class JsonRpcError(BaseModel):
    """Error object carried by a failed response."""
    code: int
    message: str
    data: Optional[Any] = None


# Adapter → Subprocess Messages

class JsonRpcRequest(BaseModel):
    """Request expecting a response with the same id."""
    jsonrpc: Literal["2.0"] = JSONRPC_VERSION
    id: RequestId
    method: str
    params: Params = None

    def to_wire(self) -> str:
        """Serialize to one JSON line (without the trailing newline)."""
        return self.model_dump_json(exclude_none=True)


class JsonRpcNotification(BaseModel):
    """Fire-and-forget message; never answered."""
    jsonrpc: Literal["2.0"] = JSONRPC_VERSION
    method: str
    params: Params = None

    def to_wire(self) -> str:
        return self.model_dump_json(exclude_none=True)


# Subprocess → Adapter Messages

class JsonRpcResponse(BaseModel):
    """Response to a request.

    Exactly one of ``result`` / ``error`` is set. A ``result`` of JSON null
    still counts as a result, so presence is tracked through
    ``model_fields_set`` rather than by value.
    """
    model_config = ConfigDict(extra="ignore")

    jsonrpc: Literal["2.0"] = JSONRPC_VERSION
    id: Optional[RequestId] = None
    result: Any = None
    error: Optional[JsonRpcError] = None

    @model_validator(mode="after")
    def _exactly_one_outcome(self) -> "JsonRpcResponse":
        if self.is_error == self.has_result:
            raise ValueError("response must carry exactly one of 'result' or 'error'")
        return self

    @property
    def is_error(self) -> bool:
        return self.error is not None

    @property
    def has_result(self) -> bool:
        # {"result": null, "error": {...}} is treated as an error response
        return "result" in self.model_fields_set and not (self.is_error and self.result is None)

    def to_wire(self) -> str:
        payload: Dict[str, Any] = {"jsonrpc": self.jsonrpc, "id": self.id}
        if self.is_error:
            payload["error"] = self.error.model_dump(exclude_none=True)
        else:
            payload["result"] = self.result
        return json.dumps(payload, separators=(",", ":"))


IncomingMessage = Union[JsonRpcResponse, JsonRpcRequest, JsonRpcNotification]


def classify_message(data: Dict[str, Any]) -> IncomingMessage:
    """
    Sort a decoded line into response, server request, or notification.

    Args:
        data: JSON object decoded from one line of subprocess output

    Returns:
        Parsed message model

    Raises:
        ParseError: If the object is not a valid JSON-RPC envelope
    """
    try:
        if "method" in data:
            if "id" in data:
                return JsonRpcRequest(**data)
            return JsonRpcNotification(**data)
        if "id" in data:
            return JsonRpcResponse(**data)
    except ValidationError as e:
        raise ParseError(f"Invalid message format: {e}")
    raise ParseError("Message has neither 'method' nor 'id'")


def build_initialize_request(request_id: int) -> JsonRpcRequest:
    """Build the fixed handshake request sent before any caller traffic."""
    return JsonRpcRequest(
        id=request_id,
        method=INITIALIZE_METHOD,
        params={
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {},
            "clientInfo": {
                "name": CLIENT_NAME,
                "version": CLIENT_VERSION,
            },
        },
    )
