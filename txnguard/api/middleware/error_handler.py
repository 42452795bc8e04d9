"""Global exception handling."""

import structlog
from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from txnguard.domains.screening.errors import InvalidTransactionError, ReviewStateError

logger = structlog.get_logger()


def _error(status_code: int, error: str, message: str, request_id: str, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": error, "message": message, "request_id": request_id, **extra},
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    request_id = getattr(request.state, "request_id", "unknown")

    if isinstance(exc, InvalidTransactionError):
        logger.warning(
            "invalid_transaction",
            request_id=request_id,
            transaction_id=exc.transaction_id,
            problems=exc.problems,
        )
        return _error(400, "bad_request", str(exc), request_id, problems=exc.problems)

    if isinstance(exc, ReviewStateError):
        logger.warning("conflict", request_id=request_id, error=str(exc))
        return _error(409, "conflict", str(exc), request_id)

    if isinstance(exc, ValueError):
        logger.warning("bad_request", request_id=request_id, error=str(exc))
        return _error(400, "bad_request", str(exc), request_id)

    if isinstance(exc, (KeyError, LookupError)):
        # str(KeyError) wraps the message in quotes
        message = exc.args[0] if exc.args else str(exc)
        logger.warning("not_found", request_id=request_id, error=message)
        return _error(404, "not_found", str(message), request_id)

    logger.exception("unhandled_exception", request_id=request_id, error=str(exc))
    return _error(500, "internal_server_error", "An unexpected error occurred", request_id)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Malformed request bodies are bad requests, same as invalid transactions."""
    request_id = getattr(request.state, "request_id", "unknown")
    problems = [
        f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg', '')}"
        for err in exc.errors()
    ]
    logger.warning("request_validation_failed", request_id=request_id, problems=problems)
    return _error(400, "bad_request", "Request validation failed", request_id, problems=problems)
