import smtplib

from marketauth.config import Settings, get_settings, reset_settings_cache
from marketauth.logging import _redact_pii, email_digest, get_correlation_id, set_correlation_id
from marketauth.service.email import EmailService


class TestSettings:
    def test_from_env_reads_environment(self, monkeypatch, tmp_path):
        monkeypatch.setenv("OTP_MAX_ATTEMPTS", "5")
        monkeypatch.setenv("REFRESH_TOKEN_TTL_DAYS", "30")
        monkeypatch.setenv("FORGOT_PASSWORD_REVEALS_EMAIL", "false")
        monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))

        settings = Settings.from_env()

        assert settings.otp_max_attempts == 5
        assert settings.refresh_token_ttl_days == 30
        assert settings.forgot_password_reveals_email is False
        assert settings.otp_code_length == 6
        assert settings.access_token_ttl_minutes == 15

    def test_missing_jwt_secret_is_generated_and_persisted(self, monkeypatch, tmp_path):
        monkeypatch.delenv("JWT_SECRET", raising=False)
        monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))

        first = Settings()
        second = Settings()

        assert len(first.jwt_secret) >= 32
        assert first.jwt_secret == second.jwt_secret
        assert (tmp_path / ".jwt_secret").read_text() == first.jwt_secret

    def test_get_settings_caches_until_reset(self, monkeypatch):
        monkeypatch.setenv("OTP_TTL_MINUTES", "7")
        cached = get_settings()
        monkeypatch.setenv("OTP_TTL_MINUTES", "9")

        assert get_settings() is cached
        reset_settings_cache()
        assert get_settings().otp_ttl_minutes == 9


class TestLogging:
    def test_redaction_masks_sensitive_keys(self):
        event = _redact_pii(
            None,
            "info",
            {
                "event": "login",
                "password": "hunter2-secret",
                "email": "someone@example.com",
                "email_hash": email_digest("someone@example.com"),
                "user_id": "user-1234",
            },
        )

        assert event["password"] == "hu***et"
        assert "someone" not in event["email"]
        assert event["email_hash"] == email_digest("someone@example.com")
        assert event["user_id"] == "user-1234"

    def test_email_digest_is_stable_and_opaque(self):
        digest = email_digest("a@example.com")

        assert digest == email_digest("a@example.com")
        assert len(digest) == 16
        assert "example" not in digest

    def test_correlation_id(self):
        assert set_correlation_id("cid-1") == "cid-1"
        assert get_correlation_id() == "cid-1"
        generated = set_correlation_id()
        assert generated != "cid-1"


class TestEmailService:
    def test_dev_mode_logs_instead_of_sending(self, monkeypatch):
        def fail(*args, **kwargs):
            raise AssertionError("SMTP must not be used in dev mode")

        monkeypatch.setattr(smtplib, "SMTP", fail)
        service = EmailService()

        assert service.is_configured is False
        assert service.send_otp_email("dev@example.com", "123456", "Dev") is True

    def test_smtp_failure_returns_false(self, monkeypatch):
        class BrokenSMTP:
            def __init__(self, *args, **kwargs):
                raise smtplib.SMTPConnectError(421, "unavailable")

        monkeypatch.setattr(smtplib, "SMTP", BrokenSMTP)
        service = EmailService(smtp_host="smtp.example.com", from_email="noreply@example.com")

        assert service.send_password_reset_email("user@example.com", "123456", "User") is False

    def test_smtp_success(self, monkeypatch):
        sent = []

        class FakeSMTP:
            def __init__(self, host, port, timeout=None):
                self.host = host

            def __enter__(self):
                return self

            def __exit__(self, *exc):
                return False

            def starttls(self, context=None):
                pass

            def login(self, user, password):
                pass

            def sendmail(self, sender, recipient, message):
                sent.append((sender, recipient, message))

        monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
        service = EmailService(
            smtp_host="smtp.example.com",
            smtp_user="mailer",
            smtp_password="pw",
            from_email="noreply@example.com",
            code_ttl_minutes=5,
        )

        assert service.send_otp_email("user@example.com", "654321", "Ada Lovelace") is True
        sender, recipient, message = sent[0]
        assert sender == "noreply@example.com"
        assert recipient == "user@example.com"
        assert "verification code" in message

    def test_display_name_is_escaped_in_html(self):
        service = EmailService()

        html_body, text_body = service._code_email(
            "Verify your email",
            "Use the code below:",
            "123456",
            "<a href='http://evil.example'>click</a>",
        )

        assert "<a href=" not in html_body
        assert "&lt;a href=&#x27;http://evil.example&#x27;&gt;click&lt;/a&gt;" in html_body
        assert "123456" in html_body
        assert "Hi <a href='http://evil.example'>click</a>," in text_body
