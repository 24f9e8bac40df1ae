import json
from datetime import timedelta

import pytest

from marketauth.storage.errors import ConcurrentModification, ConstraintViolation
from marketauth.storage.memory import MemoryStore
from marketauth.storage.models import (
    OtpPurpose,
    OtpSession,
    RefreshToken,
    UserMeta,
    utcnow,
)


def _refresh_token(user_id, token_hash, family="family-1"):
    return RefreshToken(
        id=token_hash + "-id",
        token_hash=token_hash,
        user_id=user_id,
        token_family=family,
        expires_at=utcnow() + timedelta(days=7),
    )


def test_memory_store_persists_auth_state(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("persist@example.com", "Persist", "Me", role="admin")
    store.create_credential(user.id, user.email, "$argon2id$hash", "argon2id")
    session = OtpSession.new(user.id, "digest", OtpPurpose.EMAIL_VERIFICATION, 5)
    store.create_otp_session(session)
    store.increment_otp_attempts(session.id)
    store.create_refresh_token(_refresh_token(user.id, "abc"))

    reloaded = MemoryStore(fs_root=str(tmp_path))

    reloaded_user = reloaded.get_user(user.id)
    assert reloaded_user.role == "admin"
    assert reloaded_user.display_name == "Persist Me"
    assert reloaded_user.meta == UserMeta()
    assert reloaded.get_credential_by_email(user.email).password_hash == "$argon2id$hash"
    reloaded_session = reloaded.get_otp_session(session.id, OtpPurpose.EMAIL_VERIFICATION)
    assert reloaded_session.attempts == 1
    assert reloaded_session.expires_at == session.expires_at
    assert reloaded.get_refresh_token_by_hash("abc").user_id == user.id


def test_store_without_fs_root_keeps_state_in_memory(tmp_path):
    store = MemoryStore()
    store.create_user("ephemeral@example.com")

    assert store.get_user_by_email("ephemeral@example.com") is not None
    assert not (tmp_path / "state").exists()


def test_unit_of_work_rolls_back_on_error(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))

    with pytest.raises(RuntimeError):
        with store.unit_of_work():
            store.create_user("rollback@example.com")
            raise RuntimeError("abort")

    assert store.get_user_by_email("rollback@example.com") is None
    assert MemoryStore(fs_root=str(tmp_path)).get_user_by_email("rollback@example.com") is None


def test_unit_of_work_commits_and_persists_once(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))

    with store.unit_of_work():
        user = store.create_user("commit@example.com")
        store.create_credential(user.id, user.email, "hash", "argon2id")
        assert not (tmp_path / "state" / "auth_store.json").exists()

    state = json.loads((tmp_path / "state" / "auth_store.json").read_text())
    assert [u["email"] for u in state["users"]] == ["commit@example.com"]
    assert len(state["credentials"]) == 1


def test_constraint_violations(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("unique@example.com")
    store.create_credential(user.id, user.email, "hash", "argon2id")

    with pytest.raises(ConstraintViolation):
        store.create_user("unique@example.com")
    with pytest.raises(ConstraintViolation):
        store.create_credential(user.id, "second@example.com", "hash", "argon2id")
    with pytest.raises(ConstraintViolation):
        store.create_credential("missing", "third@example.com", "hash", "argon2id")
    store.create_refresh_token(_refresh_token(user.id, "dup"))
    with pytest.raises(ConstraintViolation):
        store.create_refresh_token(_refresh_token(user.id, "dup", family="family-2"))


def test_returned_records_are_copies(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("copy@example.com")
    session = OtpSession.new(user.id, "digest", OtpPurpose.PASSWORD_RESET, 5)
    store.create_otp_session(session)

    fetched = store.get_otp_session(session.id)
    fetched.attempts = 99

    assert store.get_otp_session(session.id).attempts == 0


def test_replace_refresh_token_is_atomic(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("rotate@example.com")
    old = store.create_refresh_token(_refresh_token(user.id, "old"))
    store.create_refresh_token(_refresh_token(user.id, "taken", family="other"))

    # successor hash collides, so the old token must stay active
    with pytest.raises(ConstraintViolation):
        store.replace_refresh_token(old.id, _refresh_token(user.id, "taken"), utcnow())

    assert store.get_refresh_token_by_hash("old").is_revoked is False


def test_replace_refresh_token_only_once(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("race@example.com")
    old = store.create_refresh_token(_refresh_token(user.id, "old"))
    store.replace_refresh_token(old.id, _refresh_token(user.id, "first"), utcnow())

    with pytest.raises(ConcurrentModification):
        store.replace_refresh_token(old.id, _refresh_token(user.id, "second"), utcnow())

    active = [t for t in store.list_token_family("family-1") if not t.is_revoked]
    assert [t.token_hash for t in active] == ["first"]
    assert store.get_refresh_token_by_hash("second") is None
    assert store.get_refresh_token_by_hash("old").replaced_by_token_hash == "first"


def test_unknown_user_meta_version_rejected(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    store.create_user("meta@example.com")
    path = tmp_path / "state" / "auth_store.json"
    state = json.loads(path.read_text())
    state["users"][0]["meta"]["schema_version"] = 99
    path.write_text(json.dumps(state))

    with pytest.raises(ValueError):
        MemoryStore(fs_root=str(tmp_path))
