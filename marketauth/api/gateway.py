from __future__ import annotations

from typing import Any, Awaitable, Callable, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from marketauth.api.schemas import (
    Envelope,
    ErrorBody,
    ForgotPasswordRequest,
    LoginRequest,
    ProfileResponse,
    RegisterRequest,
    Reply,
    ResendOtpRequest,
    ResetPasswordRequest,
    RevokedResponse,
    SessionIdResponse,
    TokenPairResponse,
    TokenRefreshRequest,
    VerifyOtpRequest,
)
from marketauth.logging import get_logger, set_correlation_id
from marketauth.service.auth import AuthService
from marketauth.service.errors import ServiceError

logger = get_logger(__name__)

RequestT = TypeVar("RequestT", bound=BaseModel)


def _ok(data: Any = None, message: Optional[str] = None, status_code: int = 200) -> Reply:
    if isinstance(data, BaseModel):
        data = data.model_dump(by_alias=True)
    return Reply(
        status_code=status_code,
        body=Envelope(status="ok", message=message, data=data),
    )


def _error_reply(
    status_code: int, code: str, message: str, details: Any = None
) -> Reply:
    error_body = ErrorBody(code=code, message=message, details=details or None)
    return Reply(status_code=status_code, body=Envelope(status="error", error=error_body))


class AuthGateway:
    """Caller-facing operations that turn service outcomes into envelopes.

    Business errors pass through with their own code and status. Anything
    else is logged with full context and answered with a bare server_error.
    """

    def __init__(self, auth: AuthService) -> None:
        self.auth = auth

    async def _run(
        self,
        operation: str,
        handler: Callable[[], Awaitable[Reply]],
        correlation_id: Optional[str] = None,
    ) -> Reply:
        cid = set_correlation_id(correlation_id)
        try:
            reply = await handler()
        except ValidationError as exc:
            logger.info("request_invalid", operation=operation, error_count=exc.error_count())
            reply = _error_reply(
                400,
                "validation_error",
                "invalid request",
                [
                    {"loc": list(err["loc"]), "msg": err["msg"]}
                    for err in exc.errors()
                ],
            )
        except ServiceError as exc:
            log_fn = logger.error if exc.status_code >= 500 else logger.warning
            log_fn(
                "service_error",
                operation=operation,
                status_code=exc.status_code,
                error_code=exc.error_code,
                message=exc.message,
            )
            reply = _error_reply(exc.status_code, exc.error_code, exc.message, exc.detail)
        except Exception as exc:
            logger.exception(
                "unhandled_exception",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            reply = _error_reply(500, "server_error", "internal server error")
        reply.body.request_id = cid
        return reply

    @staticmethod
    def _parse(model: Type[RequestT], payload: dict) -> RequestT:
        return model.model_validate(payload or {})

    async def register(self, payload: dict, *, correlation_id: Optional[str] = None) -> Reply:
        async def handler() -> Reply:
            req = self._parse(RegisterRequest, payload)
            session_id = await self.auth.register(
                req.email, req.password, req.first_name, req.last_name
            )
            return _ok(
                SessionIdResponse(session_id=session_id),
                "Registration successful. Check your email for the verification code.",
                status_code=201,
            )

        return await self._run("register", handler, correlation_id)

    async def verify_email(self, payload: dict, *, correlation_id: Optional[str] = None) -> Reply:
        async def handler() -> Reply:
            req = self._parse(VerifyOtpRequest, payload)
            await self.auth.verify_email(req.session_id, req.code)
            return _ok(message="Email verified successfully.")

        return await self._run("verify_email", handler, correlation_id)

    async def resend_verification(
        self, payload: dict, *, correlation_id: Optional[str] = None
    ) -> Reply:
        async def handler() -> Reply:
            req = self._parse(ResendOtpRequest, payload)
            session_id = await self.auth.resend_verification(req.session_id)
            return _ok(
                SessionIdResponse(session_id=session_id), "A new code has been sent."
            )

        return await self._run("resend_verification", handler, correlation_id)

    async def login(self, payload: dict, *, correlation_id: Optional[str] = None) -> Reply:
        async def handler() -> Reply:
            req = self._parse(LoginRequest, payload)
            tokens = await self.auth.login(
                req.email,
                req.password,
                ip_address=req.ip_address,
                user_agent=req.user_agent,
            )
            return _ok(TokenPairResponse(**tokens.to_dict()), "Login successful.")

        return await self._run("login", handler, correlation_id)

    async def refresh(self, payload: dict, *, correlation_id: Optional[str] = None) -> Reply:
        async def handler() -> Reply:
            req = self._parse(TokenRefreshRequest, payload)
            tokens = await self.auth.refresh(req.refresh_token)
            return _ok(TokenPairResponse(**tokens.to_dict()))

        return await self._run("refresh", handler, correlation_id)

    async def logout(self, payload: dict, *, correlation_id: Optional[str] = None) -> Reply:
        async def handler() -> Reply:
            req = self._parse(TokenRefreshRequest, payload)
            await self.auth.logout(req.refresh_token)
            return _ok(message="Logged out.")

        return await self._run("logout", handler, correlation_id)

    async def revoke_all(
        self, access_token: str, *, correlation_id: Optional[str] = None
    ) -> Reply:
        async def handler() -> Reply:
            claims = await self.auth.authenticate(access_token)
            revoked = await self.auth.revoke_all(claims.user_id)
            return _ok(RevokedResponse(revoked=revoked), "All sessions revoked.")

        return await self._run("revoke_all", handler, correlation_id)

    async def forgot_password(
        self, payload: dict, *, correlation_id: Optional[str] = None
    ) -> Reply:
        async def handler() -> Reply:
            req = self._parse(ForgotPasswordRequest, payload)
            session_id = await self.auth.forgot_password(req.email)
            return _ok(
                SessionIdResponse(session_id=session_id),
                "Password reset code sent to your email.",
            )

        return await self._run("forgot_password", handler, correlation_id)

    async def reset_password(
        self, payload: dict, *, correlation_id: Optional[str] = None
    ) -> Reply:
        async def handler() -> Reply:
            req = self._parse(ResetPasswordRequest, payload)
            await self.auth.reset_password_with_otp(
                req.session_id, req.code, req.new_password
            )
            return _ok(
                message="Password reset successfully. Please login with your new password."
            )

        return await self._run("reset_password", handler, correlation_id)

    async def get_profile(
        self, access_token: str, *, correlation_id: Optional[str] = None
    ) -> Reply:
        async def handler() -> Reply:
            profile = await self.auth.get_profile(access_token)
            return _ok(ProfileResponse(**profile))

        return await self._run("get_profile", handler, correlation_id)
