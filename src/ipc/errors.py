"""Error taxonomy for the stdio ↔ HTTP adapter.

Every error that can reach an HTTP caller carries the JSON-RPC error code
and HTTP status it is reported with, so the API layer never has to guess.
"""


# JSON-RPC 2.0 reserved codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

# Implementation-defined server errors (-32000 to -32099)
SERVER_NOT_RUNNING = -32000
REQUEST_TIMEOUT = -32001


class AdapterError(Exception):
    """Base exception for adapter errors."""
    code: int = INTERNAL_ERROR
    http_status: int = 500


class ParseError(AdapterError):
    """Subprocess emitted a line that is not a valid JSON-RPC message."""
    code = PARSE_ERROR


class DuplicateIDError(AdapterError):
    """An identifier was registered while already in flight."""

    def __init__(self, request_id):
        self.request_id = request_id
        super().__init__(f"Request id {request_id!r} is already in flight")


class RequestTimeoutError(AdapterError):
    """Subprocess did not answer before the request deadline."""
    code = REQUEST_TIMEOUT
    http_status = 504

    def __init__(self, request_id, timeout: float):
        self.request_id = request_id
        self.timeout = timeout
        super().__init__(f"Request timeout after {timeout:g}s (id {request_id!r})")


class ProcessUnavailableError(AdapterError):
    """Subprocess is not running or not ready to take traffic."""
    code = SERVER_NOT_RUNNING
    http_status = 503


class ProcessSpawnError(ProcessUnavailableError):
    """Subprocess executable could not be launched."""
    pass


class HandshakeFailureError(AdapterError):
    """Subprocess did not complete initialization in time."""
    code = SERVER_NOT_RUNNING
    http_status = 503
