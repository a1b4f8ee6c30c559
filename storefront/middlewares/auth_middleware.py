from typing import Iterable, Optional
from fastapi import Request, status
from starlette.middleware.base import BaseHTTPMiddleware
from storefront.auth.dependencies import Authentication
from storefront.common.constants import request_id_ctx
from storefront.common.utils import build_error, json_error
from storefront.middlewares.constants import logger


class AuthenticationMiddleware(BaseHTTPMiddleware):
    """Attach ``request.state.user_identifier`` from the identity provider token.

    ``paths`` are skipped entirely (prefix match). ``maybe_auth_paths`` (exact match)
    let unauthenticated requests through with no identity so the route can look
    elsewhere for one.
    """

    def __init__(self, app, *, paths: Iterable[str], maybe_auth_paths: Optional[Iterable[str]] = None):
        super().__init__(app)
        self.paths = tuple(paths)
        self.maybe_auth_paths = frozenset(maybe_auth_paths or ())

    async def dispatch(self, request: Request, call_next):
        request.state.user_identifier = None

        if any(request.url.path.startswith(p) for p in self.paths):
            return await call_next(request)

        maybe_auth = request.url.path.rstrip("/") in self.maybe_auth_paths
        if maybe_auth and not request.headers.get("authorization"):
            return await call_next(request)

        try:
            auth_token = await Authentication()(request)
        except Exception as e:
            reason = getattr(e, "detail", "Missing or Invalid Auth Headers")
            logger.warning("auth.middleware.failed", extra={
                "reason": reason,
                "path": request.url.path,
                "method": request.method
            })
            if maybe_auth:
                return await call_next(request)
            payload = build_error(code="UNAUTHORIZED", details={"message": "Missing or Invalid Auth Headers"},
                                  request_id=request_id_ctx.get(None))
            return json_error(payload, status_code=status.HTTP_401_UNAUTHORIZED)

        user_identifier = auth_token.get("sub") if auth_token else None
        if not user_identifier:
            logger.warning("auth.middleware.no_subject", extra={"path": request.url.path})
            payload = build_error(code="UNAUTHORIZED", details={"message": "Token carries no subject"},
                                  request_id=request_id_ctx.get(None))
            return json_error(payload, status_code=status.HTTP_401_UNAUTHORIZED)

        request.state.user_identifier = str(user_identifier)

        return await call_next(request)
