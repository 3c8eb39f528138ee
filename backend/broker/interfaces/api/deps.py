from uuid import UUID

import jwt
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from broker.application.services.connection_service import AdapterResolver
from broker.core.config import settings
from broker.core.context import RequestContext
from broker.core.errors import Forbidden, Unauthorized
from broker.core.security import decode_token
from broker.infrastructure.logging.context import set_user_id
from broker.integrations.platform_adapters import get_platform_adapter

bearer_scheme = HTTPBearer(auto_error=False)


def get_client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


async def get_request_context(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> RequestContext:
    if credentials is None or not credentials.credentials:
        raise Unauthorized("Authentication required")
    try:
        claims = decode_token(credentials.credentials)
    except jwt.PyJWTError as exc:
        raise Unauthorized("Invalid token") from exc

    if claims.get("type") != "access":
        raise Unauthorized("Invalid token type")

    try:
        user_id = UUID(claims["sub"])
    except (KeyError, ValueError) as exc:
        raise Unauthorized("Invalid token payload") from exc

    is_admin = bool(claims.get("is_admin")) or str(user_id).lower() in settings.platform_admin_id_list
    request.state.user_id = str(user_id)
    set_user_id(str(user_id))
    return RequestContext(
        user_id=user_id,
        request_id=getattr(request.state, "request_id", None),
        client_ip=get_client_ip(request),
        is_admin=is_admin,
    )


def require_admin(context: RequestContext = Depends(get_request_context)) -> RequestContext:
    if not context.is_admin:
        raise Forbidden("Admin access required")
    return context


def get_adapter_resolver() -> AdapterResolver:
    return get_platform_adapter
