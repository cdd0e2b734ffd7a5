"""JSON-RPC response formatters for the /mcp endpoint.

Every outward response carries the caller's own id, never the internal id
the subprocess saw.
"""

import uuid
from typing import Any, Dict, Optional

from ..ipc.errors import AdapterError
from ..ipc.messages import JSONRPC_VERSION, JsonRpcResponse, RequestId


def generate_request_key() -> str:
    """Generate unique key for metrics/log correlation of one HTTP request."""
    return f"req-{uuid.uuid4().hex[:12]}"


def format_result(request_id: Optional[RequestId], result: Any) -> Dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": result}


def format_error(
    request_id: Optional[RequestId],
    code: int,
    message: str,
    data: Any = None
) -> Dict[str, Any]:
    """Format a JSON-RPC error response.

    Args:
        request_id: Caller's id (None when it could not be read)
        code: JSON-RPC error code
        message: Human-readable description
        data: Optional extra error data

    Returns:
        JSON-RPC error response
    """
    error: Dict[str, Any] = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "error": error}


def format_adapter_error(request_id: Optional[RequestId], exc: AdapterError) -> Dict[str, Any]:
    return format_error(request_id, exc.code, str(exc))


def format_subprocess_response(
    request_id: Optional[RequestId],
    response: JsonRpcResponse
) -> Dict[str, Any]:
    """Re-stamp a subprocess response with the caller's id.

    Exactly one of result/error is copied over.
    """
    if response.is_error:
        return format_error(
            request_id,
            response.error.code,
            response.error.message,
            response.error.data,
        )
    return format_result(request_id, response.result)
