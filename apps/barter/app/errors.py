import logging

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse


logger = logging.getLogger("barter.errors")


class AppError(Exception):
    """Base for failures the API reports as typed, distinguishable errors."""

    status_code = 400
    code = "bad_request"

    def __init__(self, detail: str | None = None, code: str | None = None):
        self.detail = detail or self.code.replace("_", " ")
        if code:
            self.code = code
        super().__init__(self.detail)


class NotFoundError(AppError):
    status_code = 404
    code = "not_found"


class ForbiddenError(AppError):
    status_code = 403
    code = "forbidden"


class InvalidStateError(AppError):
    status_code = 409
    code = "invalid_state"


class ValidationError(AppError):
    status_code = 422
    code = "validation_error"


class ConflictError(AppError):
    """Another request changed the offer between our read and our write."""

    status_code = 409
    code = "conflict"


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    logger.info("%s %s -> %s %s", request.method, request.url.path, exc.status_code, exc.code)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail, "code": exc.code})


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    detail = exc.detail
    code = detail.get("code") if isinstance(detail, dict) else None
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": detail, "code": code or "http_error"},
        headers=getattr(exc, "headers", None),
    )
