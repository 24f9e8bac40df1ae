"""End-to-end tests for the auth orchestrator over the memory store.

Tests for:
- Registration and email verification
- Login gating
- Refresh rotation and reuse detection
- Password reset with one-time codes
- Access-token authentication
"""

import uuid

import pytest

from marketauth.service.errors import AuthError, AuthErrorKind
from marketauth.service.tokens import hash_token
from marketauth.storage.models import OtpPurpose


async def _expect(kind, coro):
    with pytest.raises(AuthError) as exc_info:
        await coro
    assert exc_info.value.kind == kind
    return exc_info.value


class TestRegistration:
    async def test_register_creates_identity_and_sends_code(self, auth_service, memory_store, notifier):
        session_id = await auth_service.register(
            "  New.Seller@Example.com ", "Secret123!", "Grace", "Hopper"
        )

        user = memory_store.get_user_by_email("new.seller@example.com")
        assert user is not None
        assert user.display_name == "Grace Hopper"
        assert user.meta.schema_version == 1
        assert user.meta.auth_provider == "local"
        credential = memory_store.get_credential(user.id)
        assert credential.email == user.email
        session = memory_store.get_otp_session(session_id, OtpPurpose.EMAIL_VERIFICATION)
        assert session.user_id == user.id
        assert notifier.sent[-1]["email"] == "new.seller@example.com"

    async def test_duplicate_email_rejected(self, auth_service):
        await auth_service.register("dup@example.com", "Secret123!")

        err = await _expect(
            AuthErrorKind.EMAIL_ALREADY_EXISTS,
            auth_service.register("DUP@example.com", "Other123!"),
        )
        assert err.status_code == 409

    async def test_failed_credential_rolls_back_identity(self, auth_service, memory_store, monkeypatch):
        """An identity never survives without its credential."""

        def broken(*args, **kwargs):
            raise RuntimeError("hasher unavailable")

        monkeypatch.setattr(auth_service.vault, "create_credential", broken)

        with pytest.raises(RuntimeError):
            await auth_service.register("ghost@example.com", "Secret123!")
        assert memory_store.get_user_by_email("ghost@example.com") is None

    async def test_verify_email_marks_credential(self, auth_service, memory_store, notifier):
        session_id = await auth_service.register("v@example.com", "Secret123!")

        user_id = await auth_service.verify_email(session_id, notifier.last_code)

        assert memory_store.get_credential(user_id).is_verified is True
        assert auth_service.otp.is_email_verified(user_id) is True

    async def test_resend_verification_issues_new_session(self, auth_service, notifier):
        session_id = await auth_service.register("r@example.com", "Secret123!")

        new_id = await auth_service.resend_verification(session_id)

        assert new_id != session_id
        assert len(notifier.sent) == 2
        await auth_service.verify_email(new_id, notifier.last_code)
        await _expect(
            AuthErrorKind.ALREADY_VERIFIED,
            auth_service.resend_verification(new_id),
        )


class TestLogin:
    async def test_login_returns_token_pair(self, auth_service, memory_store, verified_user):
        tokens = await auth_service.login(
            verified_user["email"].upper(), verified_user["password"], ip_address="10.1.1.1"
        )

        assert tokens.token_type == "Bearer"
        assert tokens.expires_in == 900
        stored = memory_store.get_refresh_token_by_hash(hash_token(tokens.refresh_token))
        assert stored.user_id == verified_user["user"].id
        assert stored.ip_address == "10.1.1.1"
        claims = auth_service.access_tokens.decode(tokens.access_token)
        assert claims.user_id == verified_user["user"].id
        assert memory_store.get_credential(verified_user["user"].id).last_login is not None

    async def test_unverified_email_blocks_login(self, auth_service):
        await auth_service.register("pending@example.com", "Secret123!")

        err = await _expect(
            AuthErrorKind.EMAIL_NOT_VERIFIED,
            auth_service.login("pending@example.com", "Secret123!"),
        )
        assert err.status_code == 403

    async def test_bad_credentials(self, auth_service, verified_user):
        await _expect(
            AuthErrorKind.INVALID_CREDENTIALS,
            auth_service.login(verified_user["email"], "wrong-password"),
        )
        await _expect(
            AuthErrorKind.INVALID_CREDENTIALS,
            auth_service.login("nobody@example.com", "whatever"),
        )

    async def test_inactive_identity_cannot_login(self, auth_service, memory_store, verified_user):
        memory_store.set_user_active(verified_user["user"].id, False)

        await _expect(
            AuthErrorKind.INVALID_CREDENTIALS,
            auth_service.login(verified_user["email"], verified_user["password"]),
        )


class TestRefresh:
    async def test_refresh_rotates_tokens(self, auth_service, verified_user):
        tokens = await auth_service.login(verified_user["email"], verified_user["password"])

        rotated = await auth_service.refresh(tokens.refresh_token)

        assert rotated.refresh_token != tokens.refresh_token
        assert auth_service.access_tokens.decode(rotated.access_token) is not None
        again = await auth_service.refresh(rotated.refresh_token)
        assert again.refresh_token != rotated.refresh_token

    async def test_stolen_token_replay_revokes_family(self, auth_service, verified_user):
        tokens = await auth_service.login(verified_user["email"], verified_user["password"])
        legit = await auth_service.refresh(tokens.refresh_token)

        await _expect(
            AuthErrorKind.TOKEN_REUSE_DETECTED,
            auth_service.refresh(tokens.refresh_token),
        )
        await _expect(
            AuthErrorKind.TOKEN_REUSE_DETECTED,
            auth_service.refresh(legit.refresh_token),
        )

    async def test_logout_then_refresh(self, auth_service, verified_user):
        tokens = await auth_service.login(verified_user["email"], verified_user["password"])

        await auth_service.logout(tokens.refresh_token)

        await _expect(
            AuthErrorKind.TOKEN_REUSE_DETECTED,
            auth_service.refresh(tokens.refresh_token),
        )
        await _expect(AuthErrorKind.INVALID_TOKEN, auth_service.logout("unknown"))

    async def test_revoke_all(self, auth_service, verified_user):
        first = await auth_service.login(verified_user["email"], verified_user["password"])
        second = await auth_service.login(verified_user["email"], verified_user["password"])

        assert await auth_service.revoke_all(verified_user["user"].id) == 2

        for tokens in (first, second):
            await _expect(
                AuthErrorKind.TOKEN_REUSE_DETECTED,
                auth_service.refresh(tokens.refresh_token),
            )


class TestPasswordReset:
    async def test_reset_changes_password_and_revokes_sessions(
        self, auth_service, memory_store, notifier, verified_user
    ):
        tokens = await auth_service.login(verified_user["email"], verified_user["password"])
        session_id = await auth_service.forgot_password(verified_user["email"])
        assert notifier.sent[-1]["kind"] == OtpPurpose.PASSWORD_RESET.value

        await auth_service.reset_password_with_otp(session_id, notifier.last_code, "BrandNew456!")

        await _expect(
            AuthErrorKind.INVALID_CREDENTIALS,
            auth_service.login(verified_user["email"], verified_user["password"]),
        )
        assert await auth_service.login(verified_user["email"], "BrandNew456!")
        stored = memory_store.get_refresh_token_by_hash(hash_token(tokens.refresh_token))
        assert stored.is_revoked and stored.revocation_reason == "password_reset"
        redeemed = memory_store.get_otp_session(session_id)
        assert redeemed.is_used is True
        assert redeemed.verified_at is not None

    async def test_reset_code_cannot_be_reused(self, auth_service, notifier, verified_user):
        session_id = await auth_service.forgot_password(verified_user["email"])
        code = notifier.last_code
        await auth_service.reset_password_with_otp(session_id, code, "BrandNew456!")

        await _expect(
            AuthErrorKind.SESSION_USED,
            auth_service.reset_password_with_otp(session_id, code, "Another789!"),
        )

    async def test_same_password_is_refused_and_counted(
        self, auth_service, memory_store, notifier, verified_user
    ):
        session_id = await auth_service.forgot_password(verified_user["email"])
        code = notifier.last_code

        err = await _expect(
            AuthErrorKind.SAME_PASSWORD,
            auth_service.reset_password_with_otp(session_id, code, verified_user["password"]),
        )
        assert err.status_code == 400
        session = memory_store.get_otp_session(session_id)
        assert session.attempts == 1
        assert session.is_used is False
        # Still usable with a different password
        await auth_service.reset_password_with_otp(session_id, code, "BrandNew456!")

    async def test_reset_verifies_email_of_unverified_identity(self, auth_service, memory_store, notifier):
        await auth_service.register("late@example.com", "Secret123!")
        session_id = await auth_service.forgot_password("late@example.com")

        await auth_service.reset_password_with_otp(session_id, notifier.last_code, "BrandNew456!")

        user = memory_store.get_user_by_email("late@example.com")
        assert auth_service.otp.is_email_verified(user.id) is True
        assert memory_store.get_credential(user.id).is_verified is True
        assert await auth_service.login("late@example.com", "BrandNew456!")

    async def test_wrong_reset_code(self, auth_service, notifier, verified_user):
        session_id = await auth_service.forgot_password(verified_user["email"])
        code = notifier.last_code
        wrong = "1" * 6 if code != "1" * 6 else "2" * 6

        err = await _expect(
            AuthErrorKind.INVALID_CODE,
            auth_service.reset_password_with_otp(session_id, wrong, "BrandNew456!"),
        )
        assert err.detail["remaining_attempts"] == 2

    async def test_forgot_password_unknown_email(self, auth_service):
        err = await _expect(
            AuthErrorKind.EMAIL_NOT_FOUND,
            auth_service.forgot_password("nobody@example.com"),
        )
        assert err.status_code == 404

    async def test_forgot_password_can_hide_unknown_email(self, runtime, notifier):
        runtime.auth.settings = runtime.settings.model_copy(
            update={"forgot_password_reveals_email": False}
        )

        session_id = await runtime.auth.forgot_password("nobody@example.com")

        assert uuid.UUID(session_id)
        assert notifier.sent == []
        await _expect(
            AuthErrorKind.SESSION_NOT_FOUND,
            runtime.auth.reset_password_with_otp(session_id, "123456", "BrandNew456!"),
        )


class TestAccessTokens:
    async def test_get_profile(self, auth_service, verified_user):
        tokens = await auth_service.login(verified_user["email"], verified_user["password"])

        profile = await auth_service.get_profile(tokens.access_token)

        assert profile == {
            "userId": verified_user["user"].id,
            "email": verified_user["email"],
            "role": "user",
        }

    async def test_invalid_access_token(self, auth_service):
        await _expect(AuthErrorKind.INVALID_ACCESS_TOKEN, auth_service.authenticate("bogus"))

    async def test_deactivated_identity_token_rejected(self, auth_service, memory_store, verified_user):
        tokens = await auth_service.login(verified_user["email"], verified_user["password"])
        memory_store.set_user_active(verified_user["user"].id, False)

        await _expect(
            AuthErrorKind.INVALID_ACCESS_TOKEN,
            auth_service.authenticate(tokens.access_token),
        )
