"""OAuth account linking: initiation, callback finalization and disconnect.

Uniqueness per (user, platform) is enforced by the two partial unique indexes on
``connections``; this module only decides which transition to attempt and commits at
the boundaries where a rejection must still leave a trace (the rate-limit counter, the
duplicate audit entry, the consumed state).
"""

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import select, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from broker.application.services import oauth_state_service, rate_limit_service
from broker.application.services.audit_service import log_audit_event
from broker.application.services.oauth_state_service import StateCheck
from broker.core.clock import ensure_utc, utcnow
from broker.core.config import settings
from broker.core.context import RequestContext
from broker.core.errors import (
    AdapterFailure,
    AlreadyConnected,
    ConnectionInProgress,
    InvalidInput,
    NotFound,
    PlatformNotImplemented,
    RateLimited,
    SessionExpired,
    Unauthorized,
)
from broker.core.security import (
    build_code_challenge,
    decrypt_secret,
    encrypt_secret,
    generate_code_verifier,
)
from broker.domain.models.audit_log import AuditAction
from broker.domain.models.connection import (
    IMPLEMENTED_PLATFORMS,
    PLATFORM_LABELS,
    Connection,
    ConnectionStatus,
    Platform,
)
from broker.infrastructure.db.atomic import compare_and_set, insert_if_absent
from broker.infrastructure.observability.metrics import record_oauth_callback, record_oauth_initiation
from broker.integrations.platform_adapters import AdapterError, AdapterResolutionError, BasePlatformAdapter

logger = logging.getLogger(__name__)

AdapterResolver = Callable[[str], BasePlatformAdapter]

SESSION_EXPIRED_MESSAGE = SessionExpired.default_message
MISSING_PARAMETERS_MESSAGE = "Missing parameters"
CALLBACK_RATE_LIMITED_MESSAGE = RateLimited.default_message


@dataclass(frozen=True)
class InitiationResult:
    auth_url: str
    connection_id: UUID
    state: str
    platform: str


@dataclass(frozen=True)
class CallbackParams:
    connection_id: str | None = None
    state: str | None = None
    code: str | None = None
    error: str | None = None
    error_description: str | None = None


@dataclass(frozen=True)
class CallbackOutcome:
    success: bool
    message: str
    platform: str | None = None


@dataclass(frozen=True)
class DisconnectResult:
    platform: str
    revoked_at: datetime
    remote_revoked: bool


def parse_platform(value: str | None) -> Platform:
    normalized = (value or "").strip().lower()
    if not normalized:
        raise InvalidInput("Platform is required")
    try:
        return Platform(normalized)
    except ValueError:
        raise InvalidInput("Invalid platform") from None


def require_implemented(platform: Platform) -> Platform:
    if platform not in IMPLEMENTED_PLATFORMS:
        raise PlatformNotImplemented(f"{PLATFORM_LABELS[platform]} integration coming soon")
    return platform


def build_redirect_uri(connection_id: UUID) -> str:
    return f"{settings.oauth_callback_url}?connectionId={connection_id}"


def get_connected_connection(db: Session, *, user_id: UUID, platform: str) -> Connection | None:
    return db.execute(
        select(Connection).where(
            Connection.user_id == user_id,
            Connection.platform == platform,
            Connection.status == ConnectionStatus.CONNECTED.value,
        )
    ).scalar_one_or_none()


def is_connected(db: Session, *, user_id: UUID, platform: str) -> bool:
    return get_connected_connection(db, user_id=user_id, platform=platform) is not None


def list_connections(db: Session, *, user_id: UUID) -> list[Connection]:
    return list(
        db.execute(
            select(Connection)
            .where(Connection.user_id == user_id, Connection.status == ConnectionStatus.CONNECTED.value)
            .order_by(Connection.connected_at.desc())
        )
        .scalars()
        .all()
    )


def connection_is_stale(connection: Connection, *, now: datetime | None = None) -> bool:
    if connection.connected_at is None:
        return False
    now = now or utcnow()
    return ensure_utc(connection.connected_at) < now - timedelta(days=settings.connection_expiry_warning_days)


def _supersede_pending(db: Session, *, user_id: UUID, platform: str, now: datetime) -> None:
    pending_ids = db.execute(
        select(Connection.id).where(
            Connection.user_id == user_id,
            Connection.platform == platform,
            Connection.status == ConnectionStatus.PENDING.value,
        )
    ).scalars().all()
    for pending_id in pending_ids:
        superseded = compare_and_set(
            db,
            Connection,
            where=[Connection.id == pending_id, Connection.status == ConnectionStatus.PENDING.value],
            values={
                "status": ConnectionStatus.ERROR.value,
                "last_error": "superseded by a newer connection attempt",
                "updated_at": now,
            },
        )
        if not superseded:
            continue
        oauth_state_service.consume_states_for_connection(db, connection_id=pending_id, now=now)
        log_audit_event(
            db,
            user_id=user_id,
            action=AuditAction.CONNECTION_SUPERSEDED,
            metadata={"platform": platform, "connection_id": str(pending_id)},
        )
        logger.info("connection_superseded user_id=%s platform=%s connection_id=%s", user_id, platform, pending_id)


def initiate(
    db: Session,
    *,
    context: RequestContext,
    platform: str,
    resolve_adapter: AdapterResolver,
    now: datetime | None = None,
) -> InitiationResult:
    if not context.is_authenticated:
        raise Unauthorized()
    selected = require_implemented(parse_platform(platform))
    platform_value = selected.value
    user_id = context.user_id
    now = now or utcnow()

    decision = rate_limit_service.hit(
        db,
        subject=f"{context.rate_limit_subject()}:{platform_value}",
        action=rate_limit_service.OAUTH_INITIATE_ACTION,
        limit=settings.oauth_initiate_max_attempts,
        window_seconds=settings.oauth_initiate_window_seconds,
        now=now,
    )
    if not decision.allowed:
        log_audit_event(
            db,
            user_id=user_id,
            action=AuditAction.CONNECTION_RATE_LIMITED,
            metadata={"platform": platform_value, "retry_after": decision.retry_after_seconds},
        )
        db.commit()
        record_oauth_initiation(platform_value, "rate_limited")
        raise RateLimited(retry_after=decision.retry_after_seconds)
    db.commit()

    if get_connected_connection(db, user_id=user_id, platform=platform_value) is not None:
        log_audit_event(
            db,
            user_id=user_id,
            action=AuditAction.CONNECTION_DUPLICATE_REJECTED,
            metadata={"platform": platform_value, "ip": context.client_ip},
        )
        db.commit()
        record_oauth_initiation(platform_value, "already_connected")
        raise AlreadyConnected(f"{PLATFORM_LABELS[selected]} is already connected")

    _supersede_pending(db, user_id=user_id, platform=platform_value, now=now)
    connection_id = insert_if_absent(
        db,
        Connection,
        values={
            "id": uuid.uuid4(),
            "user_id": user_id,
            "platform": platform_value,
            "status": ConnectionStatus.PENDING.value,
            "metadata_json": {},
            "created_at": now,
            "updated_at": now,
        },
        conflict_columns=["user_id", "platform"],
        conflict_where=text("status = 'pending'"),
    )
    if connection_id is None:
        db.rollback()
        record_oauth_initiation(platform_value, "in_progress")
        raise ConnectionInProgress()

    code_verifier = generate_code_verifier()
    state = oauth_state_service.issue_state(
        db,
        user_id=user_id,
        platform=platform_value,
        connection_id=connection_id,
        code_verifier=code_verifier,
        now=now,
    )
    try:
        adapter = resolve_adapter(platform_value)
        auth_url = adapter.build_authorization_url(
            state=state.state_token,
            redirect_uri=build_redirect_uri(connection_id),
            code_challenge=build_code_challenge(code_verifier),
        )
    except (AdapterError, AdapterResolutionError) as exc:
        db.rollback()
        logger.error("oauth_initiate_adapter_failed platform=%s reason=%s", platform_value, exc)
        record_oauth_initiation(platform_value, "adapter_failure")
        raise AdapterFailure(f"{PLATFORM_LABELS[selected]} is not available right now") from exc

    log_audit_event(
        db,
        user_id=user_id,
        action=AuditAction.CONNECTION_INITIATED,
        metadata={"platform": platform_value, "connection_id": str(connection_id), "ip": context.client_ip},
    )
    db.commit()
    record_oauth_initiation(platform_value, "initiated")
    logger.info(
        "oauth_initiated user_id=%s platform=%s connection_id=%s",
        user_id,
        platform_value,
        connection_id,
    )
    return InitiationResult(
        auth_url=auth_url,
        connection_id=connection_id,
        state=state.state_token,
        platform=platform_value,
    )


def _parse_connection_id(value: str | None) -> UUID | None:
    if not value:
        return None
    try:
        return UUID(value)
    except ValueError:
        return None


def _denial_message(error: str, error_description: str | None) -> str:
    if error == "access_denied":
        return "Authorization was denied"
    return error_description or "Authorization failed"


def _mark_connection_error(db: Session, *, connection_id: UUID, reason: str, now: datetime) -> int:
    return compare_and_set(
        db,
        Connection,
        where=[Connection.id == connection_id, Connection.status == ConnectionStatus.PENDING.value],
        values={"status": ConnectionStatus.ERROR.value, "last_error": reason[:1000], "updated_at": now},
    )


def _handle_denied_callback(db: Session, params: CallbackParams, *, now: datetime) -> CallbackOutcome:
    message = _denial_message(params.error or "", params.error_description)
    if not params.state:
        record_oauth_callback("unknown", "denied")
        return CallbackOutcome(success=False, message=message)

    check, state = oauth_state_service.consume_state(
        db,
        state_token=params.state,
        connection_id=_parse_connection_id(params.connection_id),
        now=now,
    )
    if check is not StateCheck.VALID or state is None:
        db.commit()
        record_oauth_callback("unknown", "denied")
        return CallbackOutcome(success=False, message=message)

    _mark_connection_error(db, connection_id=state.connection_id, reason=f"denied: {params.error}", now=now)
    log_audit_event(
        db,
        user_id=state.user_id,
        action=AuditAction.CONNECTION_CALLBACK_DENIED,
        metadata={
            "platform": state.platform,
            "connection_id": str(state.connection_id),
            "error": params.error,
            "error_description": params.error_description,
        },
    )
    db.commit()
    record_oauth_callback(state.platform, "denied")
    return CallbackOutcome(success=False, message=message, platform=state.platform)


async def handle_callback(
    db: Session,
    *,
    params: CallbackParams,
    client_ip: str | None,
    resolve_adapter: AdapterResolver,
    now: datetime | None = None,
) -> CallbackOutcome:
    now = now or utcnow()

    decision = rate_limit_service.hit(
        db,
        subject=f"ip:{client_ip or 'unknown'}",
        action=rate_limit_service.OAUTH_CALLBACK_ACTION,
        limit=settings.oauth_callback_max_attempts_per_ip,
        window_seconds=settings.oauth_callback_window_seconds,
        now=now,
    )
    db.commit()
    if not decision.allowed:
        record_oauth_callback("unknown", "rate_limited")
        return CallbackOutcome(success=False, message=CALLBACK_RATE_LIMITED_MESSAGE)

    if params.error:
        return _handle_denied_callback(db, params, now=now)

    if not params.connection_id or not params.state or not params.code:
        record_oauth_callback("unknown", "missing_parameters")
        return CallbackOutcome(success=False, message=MISSING_PARAMETERS_MESSAGE)

    connection_id = _parse_connection_id(params.connection_id)
    if connection_id is None:
        logger.info("oauth_state_rejected reason=%s connection_id=%s", StateCheck.MISMATCHED.value, params.connection_id)
        record_oauth_callback("unknown", "session_expired")
        return CallbackOutcome(success=False, message=SESSION_EXPIRED_MESSAGE)

    check, state = oauth_state_service.consume_state(
        db, state_token=params.state, connection_id=connection_id, now=now
    )
    if check is not StateCheck.VALID or state is None:
        db.commit()
        record_oauth_callback(state.platform if state is not None else "unknown", "session_expired")
        return CallbackOutcome(success=False, message=SESSION_EXPIRED_MESSAGE)

    connection = db.get(Connection, connection_id, populate_existing=True)
    if connection is None or connection.status != ConnectionStatus.PENDING.value:
        db.commit()
        logger.info("oauth_callback_connection_not_pending connection_id=%s", connection_id)
        record_oauth_callback(state.platform, "session_expired")
        return CallbackOutcome(success=False, message=SESSION_EXPIRED_MESSAGE)

    platform_value = connection.platform
    label = PLATFORM_LABELS.get(Platform(platform_value), platform_value)
    code_verifier = str((state.extra or {}).get("code_verifier") or "")
    user_id = connection.user_id
    # The consumed state is durable before the exchange so a replay cannot race it.
    db.commit()

    try:
        adapter = resolve_adapter(platform_value)
        identity = await adapter.exchange_code(
            code=params.code,
            redirect_uri=build_redirect_uri(connection_id),
            code_verifier=code_verifier,
        )
    except (AdapterError, AdapterResolutionError) as exc:
        logger.warning(
            "oauth_exchange_failed platform=%s connection_id=%s reason=%s", platform_value, connection_id, exc
        )
        _mark_connection_error(db, connection_id=connection_id, reason=str(exc), now=now)
        log_audit_event(
            db,
            user_id=user_id,
            action=AuditAction.CONNECTION_FAILED,
            metadata={"platform": platform_value, "connection_id": str(connection_id), "reason": str(exc)},
        )
        db.commit()
        record_oauth_callback(platform_value, "exchange_failed")
        return CallbackOutcome(success=False, message=f"Failed to connect {label}. Please try again.")

    try:
        completed = compare_and_set(
            db,
            Connection,
            where=[Connection.id == connection_id, Connection.status == ConnectionStatus.PENDING.value],
            values={
                "status": ConnectionStatus.CONNECTED.value,
                "external_account_id": identity.external_account_id,
                "external_username": identity.username,
                "scopes": " ".join(identity.scopes),
                "access_token_encrypted": encrypt_secret(identity.access_token),
                "refresh_token_encrypted": encrypt_secret(identity.refresh_token or "") or None,
                "token_expires_at": identity.expires_at,
                "last_error": None,
                "metadata_json": {
                    "verified": identity.verified,
                    "follower_count": identity.follower_count,
                    "last_verified_at": now.isoformat(),
                },
                "connected_at": now,
                "updated_at": now,
            },
        )
    except IntegrityError:
        db.rollback()
        completed = 0
        reason = "platform already connected"
    else:
        reason = "connection no longer pending"

    if not completed:
        _mark_connection_error(db, connection_id=connection_id, reason=reason, now=now)
        log_audit_event(
            db,
            user_id=user_id,
            action=AuditAction.CONNECTION_FAILED,
            metadata={"platform": platform_value, "connection_id": str(connection_id), "reason": reason},
        )
        db.commit()
        record_oauth_callback(platform_value, "conflict")
        return CallbackOutcome(success=False, message=f"Failed to connect {label}. Please try again.")

    log_audit_event(
        db,
        user_id=user_id,
        action=AuditAction.CONNECTION_COMPLETED,
        metadata={
            "platform": platform_value,
            "connection_id": str(connection_id),
            "external_account_id": identity.external_account_id,
            "username": identity.username,
        },
    )
    db.commit()
    record_oauth_callback(platform_value, "connected")
    logger.info("oauth_connected user_id=%s platform=%s connection_id=%s", user_id, platform_value, connection_id)
    return CallbackOutcome(success=True, message=f"{label} connected successfully", platform=platform_value)


async def disconnect(
    db: Session,
    *,
    context: RequestContext,
    platform: str | None,
    resolve_adapter: AdapterResolver,
    now: datetime | None = None,
) -> DisconnectResult:
    if not context.is_authenticated:
        raise Unauthorized()
    selected = parse_platform(platform)
    platform_value = selected.value
    user_id = context.user_id

    connection = get_connected_connection(db, user_id=user_id, platform=platform_value)
    if connection is None:
        raise NotFound(f"No connected {PLATFORM_LABELS[selected]} account found")
    connection_id = connection.id
    encrypted_token = connection.access_token_encrypted
    # Release the read before the remote call.
    db.commit()

    remote_revoked = False
    if encrypted_token:
        try:
            adapter = resolve_adapter(platform_value)
            remote_revoked = await adapter.revoke(access_token=decrypt_secret(encrypted_token))
        except (AdapterError, AdapterResolutionError, ValueError) as exc:
            logger.warning(
                "connection_remote_revoke_failed platform=%s connection_id=%s reason=%s",
                platform_value,
                connection_id,
                exc,
            )

    revoked_at = now or utcnow()
    revoked = compare_and_set(
        db,
        Connection,
        where=[Connection.id == connection_id, Connection.status == ConnectionStatus.CONNECTED.value],
        values={
            "status": ConnectionStatus.REVOKED.value,
            "revoked_at": revoked_at,
            "access_token_encrypted": None,
            "refresh_token_encrypted": None,
            "token_expires_at": None,
            "updated_at": revoked_at,
        },
    )
    if not revoked:
        db.rollback()
        raise NotFound(f"No connected {PLATFORM_LABELS[selected]} account found")

    log_audit_event(
        db,
        user_id=user_id,
        action=AuditAction.CONNECTION_REVOKED,
        metadata={
            "platform": platform_value,
            "connection_id": str(connection_id),
            "remote_revoked": remote_revoked,
            "ip": context.client_ip,
        },
    )
    db.commit()
    logger.info(
        "connection_revoked user_id=%s platform=%s connection_id=%s remote_revoked=%s",
        user_id,
        platform_value,
        connection_id,
        remote_revoked,
    )
    return DisconnectResult(platform=platform_value, revoked_at=revoked_at, remote_revoked=remote_revoked)
