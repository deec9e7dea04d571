from datetime import datetime, timedelta, timezone

import pytest

from schoolauth.config import Settings
from schoolauth.service.sessions import RequestContext, SessionManager, extract_device_info
from schoolauth.storage.memory import MemoryStore
from schoolauth.storage.models import User


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def manager(store):
    return SessionManager(store, Settings(jwt_secret="unit-test-secret-" + "x" * 32))


@pytest.fixture
def user(store):
    return store.create_user("teacher1", "teacher1@school.example", role="teacher", department="academic")


def _open_sessions(manager, store, user, count):
    base = datetime.now(timezone.utc) - timedelta(hours=1)
    sessions = []
    for i in range(count):
        sess = manager.create_session(user, f"token-{i}")
        # Distinct activity times so "oldest" is well defined
        store.touch_session(sess.id, base + timedelta(minutes=i))
        sessions.append(sess)
    return sessions


def test_create_session_snapshots_request_context(manager, user):
    ctx = RequestContext(ip_address="10.0.0.7", user_agent="Mozilla/5.0 (Windows NT 10.0)")
    sess = manager.create_session(user, "tok", ctx)
    assert sess.user_id == user.id
    assert sess.ip_address == "10.0.0.7"
    assert sess.device_info == "Windows Desktop"
    assert sess.department == "academic"
    assert sess.role == "teacher"
    assert len(sess.id) == 64
    assert sess.expires_at - sess.login_time == timedelta(days=7)


def test_create_session_returns_none_for_unknown_user(manager):
    ghost = User(id="missing", username="ghost", email="ghost@school.example")
    assert manager.create_session(ghost, "tok") is None


def test_session_limit_evicts_oldest(manager, store, user):
    sessions = _open_sessions(manager, store, user, 5)
    assert manager.enforce_session_limit(user.id) == 1
    remaining = {s.id for s in manager.list_user_sessions(user.id)}
    assert sessions[0].id not in remaining
    assert len(remaining) == 4
    assert store.get_session(sessions[0].id).logout_time is not None


def test_session_limit_noop_below_threshold(manager, store, user):
    _open_sessions(manager, store, user, 3)
    assert manager.enforce_session_limit(user.id) == 0
    assert len(manager.list_user_sessions(user.id)) == 3


def test_refresh_token_rotation(manager, user):
    sess = manager.create_session(user, "tok")
    manager.set_refresh_token(sess.id, "raw-refresh")
    assert manager.get_session(sess.id).refresh_token_hash not in (None, "raw-refresh")
    assert manager.rotate_refresh_token(sess.id, "other", "next") is None
    assert manager.rotate_refresh_token("unknown", "raw-refresh", "next") is None

    assert manager.rotate_refresh_token(sess.id, "raw-refresh", "next").id == sess.id
    # The old token is spent once rotated
    assert manager.rotate_refresh_token(sess.id, "raw-refresh", "again") is None

    manager.invalidate(sess)
    assert manager.rotate_refresh_token(sess.id, "next", "again") is None


def test_refresh_rotation_rejects_expired_session(manager, store, user):
    sess = manager.create_session(user, "tok")
    manager.set_refresh_token(sess.id, "raw-refresh")
    store.sessions[sess.id].expires_at = datetime.now(timezone.utc) - timedelta(seconds=1)
    assert manager.rotate_refresh_token(sess.id, "raw-refresh", "next") is None


def test_find_active_by_token_and_bind(manager, user):
    sess = manager.create_session(user, "first")
    manager.bind_token(sess, "second")
    assert manager.find_active_by_token("first") is None
    assert manager.find_active_by_token("second").id == sess.id


def test_invalidate_user_sessions_keeps_exception(manager, store, user):
    sessions = _open_sessions(manager, store, user, 3)
    count = manager.invalidate_user_sessions(user.id, except_session_id=sessions[1].id)
    assert count == 2
    assert [s.id for s in manager.list_user_sessions(user.id)] == [sessions[1].id]


def test_clean_expired_sessions(manager, store, user):
    live = manager.create_session(user, "live")
    stale = manager.create_session(user, "stale")
    store.sessions[stale.id].expires_at = datetime.now(timezone.utc) - timedelta(minutes=1)

    assert manager.clean_expired_sessions() == 1
    assert store.get_session(stale.id).is_active is False
    assert store.get_session(live.id).is_active is True
    assert manager.clean_expired_sessions() == 0


def test_stats_groups_active_sessions_by_department(manager, store, user):
    other = store.create_user("clerk", "clerk@school.example", role="finance_staff", department="finance")
    manager.create_session(user, "a")
    manager.create_session(user, "b")
    manager.create_session(other, "c")
    stale = manager.create_session(other, "d")
    store.sessions[stale.id].expires_at = datetime.now(timezone.utc) - timedelta(minutes=1)
    manager.clean_expired_sessions()

    stats = manager.stats()
    assert stats["total_active"] == 3
    assert stats["total_expired"] == 1
    assert stats["department_stats"][0] == {"department": "academic", "count": 2}
    assert len(stats["recent_sessions"]) == 3


@pytest.mark.parametrize(
    "agent,label",
    [
        (None, "Unknown"),
        ("Mozilla/5.0 (iPhone) Mobile Safari", "Mobile"),
        ("Mozilla/5.0 (Macintosh; Intel Mac OS X)", "Mac Desktop"),
        ("Mozilla/5.0 (X11; Linux x86_64)", "Linux Desktop"),
        ("curl/8.0", "Desktop"),
    ],
)
def test_extract_device_info(agent, label):
    assert extract_device_info(agent) == label
