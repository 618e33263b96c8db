"""
Exception handlers: every error response is JSON {"detail": ...} and carries CORS headers.

Domain errors raised by the tracking services map to HTTP statuses here so
controllers can let them propagate.
"""
import logging

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.config import settings
from app.services.carrier_adapter import CarrierUnresolvedError
from app.services.record_store import RecordNotFoundError

logger = logging.getLogger(__name__)


def cors_headers(request: Request) -> dict:
    """CORS headers for error responses, which bypass CORSMiddleware."""
    origin = request.headers.get("origin", "")
    allowed = settings.ALLOWED_ORIGINS
    if origin and (origin in allowed or (settings.IS_DEVELOPMENT and origin.startswith(("http://localhost", "http://127.0.0.1")))):
        allow_origin = origin
    else:
        allow_origin = allowed[0] if allowed else "*"
    return {
        "Access-Control-Allow-Origin": allow_origin,
        "Access-Control-Allow-Credentials": "true",
        "Access-Control-Allow-Methods": "GET, POST, PUT, OPTIONS",
        "Access-Control-Allow-Headers": "*",
    }


def _error(request: Request, status_code: int, detail, headers: dict = None, **extra) -> JSONResponse:
    response_headers = cors_headers(request)
    if headers:
        response_headers.update(headers)
    return JSONResponse(status_code=status_code, content={"detail": detail, **extra}, headers=response_headers)


def validation_errors(exc: RequestValidationError) -> list:
    return [{"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")} for e in exc.errors()]


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        logger.warning("Rejected %s %s: %s", request.method, request.url.path, exc.errors())
        return _error(request, status.HTTP_400_BAD_REQUEST, validation_errors(exc), message="Invalid request body")

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return _error(request, exc.status_code, exc.detail, headers=exc.headers)

    @app.exception_handler(RecordNotFoundError)
    async def record_not_found_handler(request: Request, exc: RecordNotFoundError):
        return _error(request, status.HTTP_404_NOT_FOUND, str(exc))

    @app.exception_handler(CarrierUnresolvedError)
    async def carrier_unresolved_handler(request: Request, exc: CarrierUnresolvedError):
        return _error(request, status.HTTP_422_UNPROCESSABLE_ENTITY, str(exc), carrier=exc.carrier_text)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception on {request.method} {request.url.path}: {exc}", exc_info=True)
        return _error(
            request,
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "Internal server error",
            message=str(exc) if settings.IS_DEVELOPMENT else "An error occurred",
        )
