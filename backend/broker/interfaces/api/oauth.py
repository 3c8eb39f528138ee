from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from broker.application.services import connection_service
from broker.application.services.connection_service import AdapterResolver, CallbackOutcome, CallbackParams
from broker.core.config import settings
from broker.core.context import RequestContext
from broker.infrastructure.db.session import get_db
from broker.interfaces.api.deps import get_adapter_resolver, get_client_ip, get_request_context

router = APIRouter(prefix="/auth", tags=["oauth"])


def _dashboard_redirect(outcome: CallbackOutcome) -> RedirectResponse:
    if outcome.success:
        params = {"success": outcome.message, "platform": outcome.platform or ""}
    else:
        params = {"error": outcome.message}
    base_url = settings.dashboard_redirect_url
    separator = "&" if "?" in base_url else "?"
    return RedirectResponse(url=f"{base_url}{separator}{urlencode(params)}", status_code=307)


@router.get("/callback")
async def oauth_callback(
    request: Request,
    connection_id: str | None = Query(default=None, alias="connectionId"),
    state: str | None = Query(default=None),
    code: str | None = Query(default=None),
    error: str | None = Query(default=None),
    error_description: str | None = Query(default=None),
    db: Session = Depends(get_db),
    resolve_adapter: AdapterResolver = Depends(get_adapter_resolver),
) -> RedirectResponse:
    outcome = await connection_service.handle_callback(
        db,
        params=CallbackParams(
            connection_id=connection_id,
            state=state,
            code=code,
            error=error,
            error_description=error_description,
        ),
        client_ip=get_client_ip(request),
        resolve_adapter=resolve_adapter,
    )
    return _dashboard_redirect(outcome)


@router.post("/{platform}")
def initiate_connection(
    platform: str,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
    resolve_adapter: AdapterResolver = Depends(get_adapter_resolver),
) -> dict:
    result = connection_service.initiate(
        db,
        context=context,
        platform=platform,
        resolve_adapter=resolve_adapter,
    )
    return {
        "success": True,
        "authUrl": result.auth_url,
        "connectionId": str(result.connection_id),
        "state": result.state,
        "platform": result.platform,
    }
