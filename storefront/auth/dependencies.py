from typing import Optional
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession
from storefront.auth.constants import DEFAULT_ROLE, logger
from storefront.auth.repository import get_profile_role
from storefront.common.custom_exceptions import forbidden, unauthorized
from storefront.config.admin_config import admin_config
from storefront.config.settings import config_settings
from storefront.db.dependencies import get_session


def decode_token(token: str) -> Optional[dict]:
    """Verify signature, expiry and (when configured) audience of an identity provider token."""
    options = {"verify_aud": config_settings.IDP_JWT_AUDIENCE is not None}
    try:
        return jwt.decode(
            token,
            key=config_settings.IDP_JWT_SECRET,
            algorithms=[config_settings.IDP_JWT_ALGO],
            audience=config_settings.IDP_JWT_AUDIENCE,
            options=options,
        )
    except JWTError as e:
        logger.info("auth.token_rejected", extra={"reason": str(e)})
        return None


def subject_of(token: Optional[str]) -> Optional[str]:
    if not token:
        return None
    claims = decode_token(token)
    if not claims:
        return None
    sub = claims.get("sub")
    return str(sub) if sub else None


class Authentication(HTTPBearer):
    def __init__(self, auto_error=True):
        super().__init__(auto_error=auto_error)

    async def __call__(self, request: Request) -> Optional[dict]:
        auth_creds = await super().__call__(request)
        if auth_creds is None:
            return None

        decoded_token = decode_token(auth_creds.credentials)
        if not decoded_token:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token provided.")

        return decoded_token


def get_identity(request: Request) -> str:
    user_identifier = getattr(request.state, "user_identifier", None)
    if not user_identifier:
        raise unauthorized()
    return user_identifier


def resolve_checkout_identity(request: Request, credential: Optional[str]) -> Optional[str]:
    """Checkout may carry the credential in the body , the bearer header is the fallback."""
    if credential:
        return subject_of(credential)
    return getattr(request.state, "user_identifier", None)


async def require_admin(request: Request, session: AsyncSession = Depends(get_session)) -> str:
    user_identifier = get_identity(request)
    role = await get_profile_role(session, user_identifier) or DEFAULT_ROLE
    if role != admin_config.ADMIN_ROLE:
        logger.warning("auth.admin_denied", extra={"user_id": user_identifier, "path": request.url.path, "role": role})
        raise forbidden("Admin access required")
    return user_identifier
