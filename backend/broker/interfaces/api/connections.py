from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from broker.application.services import connection_service
from broker.application.services.connection_service import AdapterResolver
from broker.core.clock import ensure_utc, utcnow
from broker.core.context import RequestContext
from broker.domain.models.connection import PLATFORM_LABELS, Connection, Platform
from broker.infrastructure.db.session import get_db
from broker.interfaces.api.deps import get_adapter_resolver, get_request_context

router = APIRouter(prefix="/connections", tags=["connections"])


def _serialize_connection(connection: Connection, *, is_expired: bool) -> dict:
    metadata = connection.metadata_json or {}
    connected_at = ensure_utc(connection.connected_at)
    return {
        "id": str(connection.id),
        "platform": connection.platform,
        "username": connection.external_username,
        "accountId": connection.external_account_id,
        "status": connection.status,
        "connectedAt": connected_at.isoformat() if connected_at else None,
        "verified": bool(metadata.get("verified", False)),
        "followerCount": metadata.get("follower_count"),
        "lastVerifiedAt": metadata.get("last_verified_at"),
        "isExpired": is_expired,
    }


@router.get("")
def list_connections(
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> dict:
    now = utcnow()
    connections = [
        _serialize_connection(item, is_expired=connection_service.connection_is_stale(item, now=now))
        for item in connection_service.list_connections(db, user_id=context.user_id)
    ]
    return {
        "success": True,
        "connections": connections,
        "count": len(connections),
        "hasExpiredConnections": any(item["isExpired"] for item in connections),
    }


@router.get("/{platform}/status")
def connection_status(
    platform: str,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> dict:
    selected = connection_service.parse_platform(platform)
    return {
        "platform": selected.value,
        "connected": connection_service.is_connected(db, user_id=context.user_id, platform=selected.value),
    }


@router.delete("")
async def disconnect_connection(
    platform: str | None = Query(default=None),
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
    resolve_adapter: AdapterResolver = Depends(get_adapter_resolver),
) -> dict:
    result = await connection_service.disconnect(
        db,
        context=context,
        platform=platform,
        resolve_adapter=resolve_adapter,
    )
    label = PLATFORM_LABELS[Platform(result.platform)]
    return {
        "success": True,
        "message": f"{label} disconnected successfully",
        "platform": result.platform,
        "revokedAt": result.revoked_at.isoformat(),
        "remoteRevoked": result.remote_revoked,
    }
