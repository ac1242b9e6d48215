"""Global exception handlers — map relay errors to HTTP responses."""

from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import ORJSONResponse
import structlog

from relay.domain.exceptions import (
    ChatError,
    CircuitOpenError,
    ConfigurationError,
    NetworkError,
    RequestCancelledError,
    ServiceError,
    TerminalClientError,
)

logger = structlog.get_logger(__name__)

# nginx's "client closed request"; there is no standard code for it.
HTTP_CLIENT_CLOSED_REQUEST = 499


def _error_response(status_code: int, exc: ChatError) -> ORJSONResponse:
    return ORJSONResponse(
        status_code=status_code,
        content={"code": exc.code, "message": exc.message},
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Register all relay-error→HTTP mappings."""

    @app.exception_handler(ConfigurationError)
    async def handle_configuration(
        request: Request, exc: ConfigurationError
    ) -> ORJSONResponse:
        logger.error("providers_exhausted_http", message=exc.message, attempted=list(exc.attempted))
        return _error_response(503, exc)

    @app.exception_handler(CircuitOpenError)
    async def handle_circuit(request: Request, exc: CircuitOpenError) -> ORJSONResponse:
        logger.warning("circuit_open_http", provider=exc.provider)
        return _error_response(503, exc)

    @app.exception_handler(NetworkError)
    async def handle_network(request: Request, exc: NetworkError) -> ORJSONResponse:
        logger.warning("network_error_http", message=exc.message)
        return _error_response(504, exc)

    @app.exception_handler(ServiceError)
    async def handle_service(request: Request, exc: ServiceError) -> ORJSONResponse:
        logger.error("service_error_http", message=exc.message, status_code=exc.status_code)
        return _error_response(502, exc)

    @app.exception_handler(TerminalClientError)
    async def handle_terminal(request: Request, exc: TerminalClientError) -> ORJSONResponse:
        logger.warning("client_error_http", message=exc.message, status_code=exc.status_code)
        return _error_response(502, exc)

    @app.exception_handler(RequestCancelledError)
    async def handle_cancelled(request: Request, exc: RequestCancelledError) -> ORJSONResponse:
        logger.info("request_cancelled_http", message=exc.message)
        return _error_response(HTTP_CLIENT_CLOSED_REQUEST, exc)

    @app.exception_handler(ChatError)
    async def handle_chat(request: Request, exc: ChatError) -> ORJSONResponse:
        return _error_response(400, exc)

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception) -> ORJSONResponse:
        logger.exception("unhandled_exception", error=str(exc))
        return ORJSONResponse(
            status_code=500,
            content={
                "code": "INTERNAL_ERROR",
                "message": "An unexpected error occurred",
            },
        )
