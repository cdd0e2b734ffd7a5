"""FastAPI application exposing the MCP server over HTTP."""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse

from ..config.server_config import ServerConfig
from ..ipc.errors import (
    INTERNAL_ERROR,
    INVALID_REQUEST,
    AdapterError,
    DuplicateIDError,
    HandshakeFailureError,
    ProcessUnavailableError,
    RequestTimeoutError,
)
from .health_checks import check_memory_health, check_subprocess_health
from .lifecycle_manager import LifecycleManager
from .prometheus_metrics import metrics_collector, metrics_router
from .response_formatters import (
    format_adapter_error,
    format_error,
    format_subprocess_response,
    generate_request_key,
)
from .shutdown_manager import ShutdownManager

logger = logging.getLogger(__name__)

VERSION = "1.0.0"


def create_app(
    config: ServerConfig,
    lifecycle_manager: LifecycleManager,
    manage_lifecycle: bool = True
) -> FastAPI:
    """
    Create FastAPI application.

    Args:
        config: Server configuration
        lifecycle_manager: LifecycleManager instance
        manage_lifecycle: Start the MCP server on startup and stop it on
            shutdown (disable when the caller drives the lifecycle itself)

    Returns:
        FastAPI application
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        startup_task: Optional[asyncio.Task] = None

        if manage_lifecycle:
            # Listen first, handshake in the background; /mcp answers 503 until ready
            startup_task = asyncio.create_task(_start_subprocess(lifecycle_manager))

        yield

        if manage_lifecycle:
            if startup_task is not None and not startup_task.done():
                startup_task.cancel()
                await asyncio.gather(startup_task, return_exceptions=True)
            shutdown_manager = ShutdownManager(
                lifecycle_manager,
                drain_timeout=config.drain_timeout_seconds
            )
            await shutdown_manager.graceful_shutdown()

    app = FastAPI(
        title="MCP HTTP Adapter",
        description="Exposes a stdio MCP server over HTTP",
        version=VERSION,
        lifespan=lifespan
    )
    app.include_router(metrics_router)
    metrics_collector.set_server_info(VERSION, lifecycle_manager.session_id)

    def reply(
        request_key: str,
        method: str,
        outcome: str,
        status_code: int,
        payload: Dict[str, Any]
    ) -> JSONResponse:
        metrics_collector.record_request_end(request_key, method, outcome)
        return JSONResponse(status_code=status_code, content=payload)

    # Health check
    @app.get("/healthz")
    async def healthz():
        """Liveness plus the session id generated at process start."""
        return {
            "ok": True,
            "session": lifecycle_manager.session_id,
            "state": lifecycle_manager.state.value
        }

    @app.get("/ready")
    async def ready():
        """Readiness: 200 only once the handshake completed."""
        is_ready = lifecycle_manager.is_ready
        return JSONResponse(
            status_code=200 if is_ready else 503,
            content={"ready": is_ready, "state": lifecycle_manager.state.value}
        )

    @app.get("/status")
    async def status():
        """Detailed status: lifecycle, pending table, process resources."""
        return {
            **lifecycle_manager.get_status(),
            "subprocess": check_subprocess_health(lifecycle_manager),
            "memory": check_memory_health(),
            "config": config.to_dict()
        }

    # MCP endpoint
    @app.post("/mcp")
    async def mcp(request: Request):
        """
        Forward one JSON-RPC message to the MCP server.

        The caller's id is only stamped back onto the response; the MCP
        server sees a fresh internal id. A failure here is reported to this
        caller alone.
        """
        request_key = generate_request_key()
        metrics_collector.record_request_start(request_key)
        request_id = None
        method = "unknown"

        try:
            try:
                body = json.loads(await request.body())
            except ValueError as e:
                logger.debug(f"Malformed request body: {e}")
                return reply(request_key, method, "internal_error", 500, format_error(
                    None, INTERNAL_ERROR, "Internal error: malformed JSON body"
                ))

            if not isinstance(body, dict):
                return reply(request_key, method, "internal_error", 500, format_error(
                    None, INTERNAL_ERROR, "Internal error: request body must be a JSON object"
                ))

            request_id = body.get("id")
            if not isinstance(body.get("method"), str) or not body["method"]:
                return reply(request_key, method, "invalid_request", 400, format_error(
                    request_id, INVALID_REQUEST, "Invalid Request: missing method"
                ))
            method = body["method"]

            params = body.get("params")
            if params is not None and not isinstance(params, (dict, list)):
                return reply(request_key, method, "invalid_request", 400, format_error(
                    request_id, INVALID_REQUEST, "Invalid Request: params must be an object or array"
                ))

            logger.debug(f"HTTP request: {request_id!r} {method}")

            if "id" not in body:
                await lifecycle_manager.notify(method, params)
                metrics_collector.record_request_end(request_key, method, "notification")
                return Response(status_code=202)

            response = await lifecycle_manager.submit(method, params, external_id=request_id)
            outcome = "error" if response.is_error else "result"
            return reply(request_key, method, outcome, 200,
                         format_subprocess_response(request_id, response))

        except (ProcessUnavailableError, HandshakeFailureError) as e:
            logger.debug(f"Rejecting {method} ({request_id!r}): {e}")
            return reply(request_key, method, "unavailable", e.http_status,
                         format_adapter_error(request_id, e))
        except RequestTimeoutError as e:
            return reply(request_key, method, "timeout", e.http_status,
                         format_adapter_error(request_id, e))
        except DuplicateIDError as e:
            logger.error(f"Internal id collision for {method}: {e}")
            return reply(request_key, method, "internal_error", e.http_status,
                         format_adapter_error(request_id, e))
        except AdapterError as e:
            logger.error(f"Adapter error for {method}: {e}")
            return reply(request_key, method, "internal_error", e.http_status,
                         format_adapter_error(request_id, e))
        except Exception as e:
            logger.error(f"Unexpected error handling {method}: {e}", exc_info=True)
            return reply(request_key, method, "internal_error", 500, format_error(
                request_id, INTERNAL_ERROR, f"Internal error: {e}"
            ))

    return app


async def _start_subprocess(lifecycle_manager: LifecycleManager) -> None:
    try:
        await lifecycle_manager.start()
    except (ProcessUnavailableError, HandshakeFailureError) as e:
        # Stays stopped; requests get 503 until the adapter is restarted
        logger.error(f"MCP server unavailable: {e}")
