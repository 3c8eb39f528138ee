"""Single-use CSRF state tokens for the OAuth connect flow.

A state row is issued together with its pending connection and can be consumed
exactly once, by the callback that carries both the token and that connection's id,
before it expires. Consumption is a conditional UPDATE; when it matches nothing the
row is re-read only to classify the failure for the server log.
"""

import logging
from datetime import datetime, timedelta
from enum import StrEnum
from uuid import UUID

from sqlalchemy import delete, false, select
from sqlalchemy.orm import Session

from broker.core.clock import ensure_utc, utcnow
from broker.core.config import settings
from broker.core.security import generate_state_token
from broker.domain.models.oauth_state import OAuthState
from broker.infrastructure.db.atomic import compare_and_set

logger = logging.getLogger(__name__)


class StateCheck(StrEnum):
    VALID = "valid"
    ABSENT = "absent"
    CONSUMED = "consumed"
    EXPIRED = "expired"
    MISMATCHED = "mismatched"


def issue_state(
    db: Session,
    *,
    user_id: UUID,
    platform: str,
    connection_id: UUID,
    code_verifier: str,
    now: datetime | None = None,
) -> OAuthState:
    issued_at = now or utcnow()
    state = OAuthState(
        state_token=generate_state_token(),
        user_id=user_id,
        platform=platform,
        connection_id=connection_id,
        issued_at=issued_at,
        expires_at=issued_at + timedelta(seconds=settings.oauth_state_ttl_seconds),
        consumed=False,
        extra={"code_verifier": code_verifier},
    )
    db.add(state)
    db.flush()
    return state


def _load_state(db: Session, state_token: str) -> OAuthState | None:
    return db.execute(
        select(OAuthState)
        .where(OAuthState.state_token == state_token)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def classify_state(
    state: OAuthState | None,
    *,
    connection_id: UUID | None,
    now: datetime,
) -> StateCheck:
    if state is None:
        return StateCheck.ABSENT
    if state.consumed:
        return StateCheck.CONSUMED
    if ensure_utc(state.expires_at) <= now:
        return StateCheck.EXPIRED
    if connection_id is not None and state.connection_id != connection_id:
        return StateCheck.MISMATCHED
    return StateCheck.VALID


def consume_state(
    db: Session,
    *,
    state_token: str,
    connection_id: UUID | None,
    now: datetime | None = None,
) -> tuple[StateCheck, OAuthState | None]:
    """Atomically consume ``state_token``.

    Returns ``(StateCheck.VALID, state)`` only for the single caller whose update
    transitioned the row. Every other outcome returns the classified reason and
    whatever row exists, which callers must not treat as authorization.
    """
    now = now or utcnow()
    conditions = [
        OAuthState.state_token == state_token,
        OAuthState.consumed == false(),
        OAuthState.expires_at > now,
    ]
    if connection_id is not None:
        conditions.append(OAuthState.connection_id == connection_id)

    transitioned = compare_and_set(
        db,
        OAuthState,
        where=conditions,
        values={"consumed": True, "consumed_at": now},
    )
    state = _load_state(db, state_token)
    if transitioned == 1:
        return StateCheck.VALID, state

    reason = classify_state(state, connection_id=connection_id, now=now)
    if reason is StateCheck.VALID:
        # The row was valid when re-read, so another request consumed it first.
        reason = StateCheck.CONSUMED
    logger.info(
        "oauth_state_rejected reason=%s connection_id=%s",
        reason.value,
        connection_id,
    )
    return reason, state


def consume_states_for_connection(db: Session, *, connection_id: UUID, now: datetime | None = None) -> int:
    now = now or utcnow()
    return compare_and_set(
        db,
        OAuthState,
        where=[OAuthState.connection_id == connection_id, OAuthState.consumed == false()],
        values={"consumed": True, "consumed_at": now},
    )


def prune_expired_states(db: Session, *, now: datetime | None = None) -> int:
    now = now or utcnow()
    cutoff = now - timedelta(seconds=settings.oauth_state_retention_seconds)
    result = db.execute(delete(OAuthState).where(OAuthState.expires_at < cutoff))
    return int(result.rowcount or 0)
