import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


def create_error(status: int, message: str) -> HTTPException:
    return HTTPException(status_code=status, detail=message)


def _error_body(status: int, message: str) -> dict:
    return {"status": "error", "statusCode": status, "message": message}


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        message = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
        if exc.status_code >= 500:
            logger.error("Error %s on %s %s: %s", exc.status_code, request.method, request.url.path, message)
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_body(exc.status_code, message),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        messages = []
        for err in exc.errors():
            loc = ".".join(str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path"))
            messages.append(f"{loc}: {err.get('msg')}" if loc else err.get("msg", "Invalid input"))
        return JSONResponse(status_code=400, content=_error_body(400, ". ".join(messages) or "Invalid input"))

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content=_error_body(500, "Something went wrong!"))
