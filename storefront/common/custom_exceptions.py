from typing import Any, Optional
from fastapi import FastAPI, HTTPException, Request,status
from fastapi.exceptions import RequestValidationError
from storefront.common.logging_setup import get_logger
from storefront.common.utils import build_error, json_error
from storefront.common.constants import request_id_ctx

logger = get_logger("storefront.common")


class StorefrontError(HTTPException):
    """HTTPException carrying a machine readable error code next to the human readable detail."""

    def __init__(self, status_code: int, code: str, detail: Any = None, headers: Optional[dict] = None):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.code = code


def unauthorized(detail: str = "Invalid user session") -> StorefrontError:
    return StorefrontError(status.HTTP_401_UNAUTHORIZED, "UNAUTHORIZED", detail)


def forbidden(detail: str) -> StorefrontError:
    return StorefrontError(status.HTTP_403_FORBIDDEN, "FORBIDDEN", detail)


def order_not_found() -> StorefrontError:
    return StorefrontError(status.HTTP_404_NOT_FOUND, "ORDER_NOT_FOUND", "Order not found")


async def fallback_handler(request: Request, exc: Exception):

    rid = request_id_ctx.get(None)

    logger.error(
        "unexpected.exception",
        extra={
            "path": request.url.path,
            "method": request.method,
            "request_id": rid,
        },
        exc_info=exc,
    )

    payload = build_error(code="SERVER_ERROR", details={"message": "Internal Server Error"}, request_id=rid)
    return json_error(payload, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    rid = request_id_ctx.get(None)
    logger.warning(
        "request.validation_failed",
        extra={
            "errors": exc.errors(),
            "path": request.url.path,
            "request_id": rid,
        },
    )

    fields = [".".join(str(p) for p in err.get("loc", ()) if p != "body") for err in exc.errors()]
    payload = build_error(code="VALIDATION_ERROR", details={"message": "invalid request", "fields": fields}, request_id=rid)
    return json_error(payload, status_code=status.HTTP_422_UNPROCESSABLE_ENTITY)


async def http_exception_handler(request: Request, exc: HTTPException):

    rid = request_id_ctx.get(None)

    error_code = getattr(exc, "code", None) or f"HTTP_{exc.status_code}"

    payload = build_error(code=error_code, details={"message": exc.detail}, request_id=rid)
    return json_error(payload, status_code=exc.status_code, headers=getattr(exc, "headers", None))


def register_all_exceptions(app: FastAPI):

    app.add_exception_handler(
        Exception, # catch all unidentified/unhandled exceptions
        fallback_handler
    )

    app.add_exception_handler(
        RequestValidationError,
        validation_exception_handler
    )

    app.add_exception_handler(
        HTTPException,
        http_exception_handler
    )
