import asyncio
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from sqlalchemy import func, select

from broker.application.services import connection_service, oauth_state_service
from broker.application.services.connection_service import CallbackParams
from broker.application.services.oauth_state_service import StateCheck
from broker.core.context import RequestContext
from broker.domain.models.connection import Connection
from broker.domain.models.oauth_state import OAuthState
from conftest import FakePlatformAdapter

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _start(db, user_id, adapter: FakePlatformAdapter, *, now=T0):
    return connection_service.initiate(
        db,
        context=RequestContext(user_id=user_id, client_ip="203.0.113.7"),
        platform=adapter.platform,
        resolve_adapter=lambda _platform: adapter,
        now=now,
    )


def _finish(db, started, adapter: FakePlatformAdapter, *, now):
    return asyncio.run(
        connection_service.handle_callback(
            db,
            params=CallbackParams(
                connection_id=str(started.connection_id),
                state=started.state,
                code="abc",
            ),
            client_ip="203.0.113.7",
            resolve_adapter=lambda _platform: adapter,
            now=now,
        )
    )


def test_callback_after_state_ttl_reports_session_expired(db, user_id):
    adapter = FakePlatformAdapter("twitter")
    started = _start(db, user_id, adapter)

    outcome = _finish(db, started, adapter, now=T0 + timedelta(seconds=901))

    assert outcome.success is False
    assert outcome.message == "Session expired. Please try connecting again."
    assert adapter.exchanged_codes == []
    assert db.get(Connection, started.connection_id).status == "pending"


def test_callback_just_inside_ttl_connects(db, user_id):
    adapter = FakePlatformAdapter("twitter")
    started = _start(db, user_id, adapter)

    outcome = _finish(db, started, adapter, now=T0 + timedelta(seconds=899))

    assert outcome.success is True
    assert outcome.platform == "twitter"


def test_consume_state_is_single_use(db, user_id):
    adapter = FakePlatformAdapter("reddit")
    started = _start(db, user_id, adapter)
    later = T0 + timedelta(seconds=10)

    check, state = oauth_state_service.consume_state(
        db, state_token=started.state, connection_id=started.connection_id, now=later
    )
    db.commit()
    assert check is StateCheck.VALID
    assert state.consumed is True

    check, _ = oauth_state_service.consume_state(
        db, state_token=started.state, connection_id=started.connection_id, now=later
    )
    assert check is StateCheck.CONSUMED


def test_consume_state_classifies_failures(db, user_id):
    adapter = FakePlatformAdapter("reddit")
    started = _start(db, user_id, adapter)

    check, state = oauth_state_service.consume_state(db, state_token="missing", connection_id=None, now=T0)
    assert check is StateCheck.ABSENT
    assert state is None

    check, _ = oauth_state_service.consume_state(
        db, state_token=started.state, connection_id=uuid4(), now=T0
    )
    assert check is StateCheck.MISMATCHED

    check, _ = oauth_state_service.consume_state(
        db, state_token=started.state, connection_id=started.connection_id, now=T0 + timedelta(seconds=900)
    )
    assert check is StateCheck.EXPIRED


def test_state_carries_code_verifier_for_exchange(db, user_id):
    adapter = FakePlatformAdapter("twitter")
    started = _start(db, user_id, adapter)

    state = db.get(OAuthState, started.state)
    assert state.user_id == user_id
    assert state.platform == "twitter"
    assert state.connection_id == started.connection_id
    assert len(state.extra["code_verifier"]) >= 43


def test_prune_expired_states_keeps_recent_rows(db, user_id):
    adapter = FakePlatformAdapter("twitter")
    _start(db, user_id, adapter, now=T0)
    _start(db, user_id, adapter, now=T0 + timedelta(days=2))

    removed = oauth_state_service.prune_expired_states(db, now=T0 + timedelta(days=2, minutes=1))
    db.commit()

    assert removed == 1
    assert db.execute(select(func.count()).select_from(OAuthState)).scalar_one() == 1
