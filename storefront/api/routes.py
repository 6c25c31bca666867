"""HTTP routes for the auth service, mounted under ``/api/auth``."""

from __future__ import annotations

from typing import Iterator

from fastapi import APIRouter, Depends, Header, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from storefront.auth import AuthService, ClientInfo, UpstreamIdentityError, bearer_token
from storefront.logging import AuditLogger
from storefront.models import Account

from .schemas import (
    AdminLoginRequest,
    AdminOtpRequest,
    AdminOtpResetRequest,
    ChangePasswordRequest,
    EmailRequest,
    LoginRequest,
    OAuthCodeRequest,
    RegisterRequest,
    ResetPasswordRequest,
    ResetTokenRequest,
    UpdateProfileRequest,
    VerifyOtpRequest,
)

RESET_REQUESTED_MSG = "If an account with that email exists, a password reset link has been sent"
ADMIN_RESET_REQUESTED_MSG = "If an admin account exists with this email, a password reset link has been sent"
ADMIN_OTP_REQUESTED_MSG = "If an admin account exists with this email, a reset code has been sent"

router = APIRouter(prefix="/api/auth", tags=["auth"])


def get_session(request: Request) -> Iterator[Session]:
    session = request.app.state.session_factory()
    try:
        yield session
    finally:
        session.close()


def get_auth_service(request: Request, session: Session = Depends(get_session)) -> AuthService:
    state = request.app.state
    return AuthService(
        session,
        state.tokens,
        state.mail_delivery,
        state.settings.admin_secret,
        otp_policy=state.otp_policy,
        rate_limits=state.rate_limits,
        audit=AuditLogger(session),
        client_url=state.settings.client_url,
    )


def get_client_info(request: Request) -> ClientInfo:
    return ClientInfo(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


def get_current_account(
    authorization: str | None = Header(default=None),
    service: AuthService = Depends(get_auth_service),
) -> Account:
    return service.current_account(bearer_token(authorization))


def _session_payload(token: str, account: Account) -> dict:
    return {"success": True, "token": token, "user": account.to_public_dict()}


@router.post("/register", status_code=201)
def register(
    body: RegisterRequest,
    service: AuthService = Depends(get_auth_service),
    client: ClientInfo = Depends(get_client_info),
) -> dict:
    result = service.register(body.username, body.name, body.email, body.password, client=client)
    payload = {
        "success": True,
        "msg": "Registration successful. Check your email for the verification code.",
        "email": result.account.email,
    }
    if result.warning:
        payload["warning"] = result.warning
    return payload


@router.post("/verify-otp")
def verify_otp(
    body: VerifyOtpRequest,
    service: AuthService = Depends(get_auth_service),
    client: ClientInfo = Depends(get_client_info),
) -> dict:
    result = service.verify_otp(body.email, body.otp, client=client)
    return _session_payload(result.token, result.account)


@router.post("/resend-otp")
def resend_otp(
    body: EmailRequest,
    service: AuthService = Depends(get_auth_service),
    client: ClientInfo = Depends(get_client_info),
) -> dict:
    service.resend_otp(body.email, client=client)
    return {"success": True, "msg": "A new OTP has been sent to your email"}


@router.post("/login")
def login(
    body: LoginRequest,
    service: AuthService = Depends(get_auth_service),
    client: ClientInfo = Depends(get_client_info),
) -> dict:
    result = service.login(body.email, body.password, client=client)
    return _session_payload(result.token, result.account)


@router.post("/admin-login")
def admin_login(
    body: AdminLoginRequest,
    service: AuthService = Depends(get_auth_service),
    client: ClientInfo = Depends(get_client_info),
) -> dict:
    result = service.admin_login(body.email, body.password, body.admin_key, client=client)
    return _session_payload(result.token, result.account)


@router.get("/google")
def google_redirect(request: Request) -> RedirectResponse:
    identity_client = request.app.state.identity_client
    if identity_client is None:
        raise UpstreamIdentityError("google sign-in is not configured")
    return RedirectResponse(identity_client.authorization_url())


@router.post("/oauth/google")
async def google_login(
    body: OAuthCodeRequest,
    request: Request,
    service: AuthService = Depends(get_auth_service),
    client: ClientInfo = Depends(get_client_info),
) -> dict:
    identity_client = request.app.state.identity_client
    if identity_client is None:
        raise UpstreamIdentityError("google sign-in is not configured")
    identity = await identity_client.exchange_code(body.code)
    result = await run_in_threadpool(service.login_with_external_identity, identity, client)
    return _session_payload(result.token, result.account)


@router.get("/me")
def me(account: Account = Depends(get_current_account)) -> dict:
    return {"success": True, "user": account.to_public_dict()}


@router.post("/forgot-password")
def forgot_password(
    body: EmailRequest,
    service: AuthService = Depends(get_auth_service),
    client: ClientInfo = Depends(get_client_info),
) -> dict:
    service.request_password_reset(body.email, client=client)
    return {"success": True, "msg": RESET_REQUESTED_MSG}


@router.post("/reset-password")
def reset_password(
    body: ResetPasswordRequest,
    service: AuthService = Depends(get_auth_service),
    client: ClientInfo = Depends(get_client_info),
) -> dict:
    service.reset_password(body.email, body.token, body.new_password, client=client)
    return {"success": True, "msg": "Password has been reset successfully. You can now log in."}


@router.put("/change-password")
def change_password(
    body: ChangePasswordRequest,
    account: Account = Depends(get_current_account),
    service: AuthService = Depends(get_auth_service),
    client: ClientInfo = Depends(get_client_info),
) -> dict:
    service.change_password(account, body.current_password, body.new_password, client=client)
    return {"success": True, "msg": "Password changed successfully"}


@router.put("/update-profile")
def update_profile(
    body: UpdateProfileRequest,
    account: Account = Depends(get_current_account),
    service: AuthService = Depends(get_auth_service),
    client: ClientInfo = Depends(get_client_info),
) -> dict:
    account = service.update_profile(account, body.name, body.email, client=client)
    return {"success": True, "msg": "Profile updated successfully", "user": account.to_public_dict()}


@router.post("/check-verification")
def check_verification(
    body: EmailRequest,
    service: AuthService = Depends(get_auth_service),
    client: ClientInfo = Depends(get_client_info),
) -> dict:
    exists, is_verified = service.check_verification(body.email, client=client)
    return {"success": True, "exists": exists, "isVerified": is_verified}


@router.post("/admin-forgot-password")
def admin_forgot_password(
    body: EmailRequest,
    service: AuthService = Depends(get_auth_service),
    client: ClientInfo = Depends(get_client_info),
) -> dict:
    service.request_password_reset(body.email, client=client, admin=True)
    return {"success": True, "msg": ADMIN_RESET_REQUESTED_MSG}


@router.post("/admin-validate-reset-token")
def admin_validate_reset_token(
    body: ResetTokenRequest,
    service: AuthService = Depends(get_auth_service),
    client: ClientInfo = Depends(get_client_info),
) -> dict:
    service.validate_reset_token(body.email, body.token, client=client, admin=True)
    return {"success": True, "msg": "Token is valid"}


@router.post("/admin-reset-password")
def admin_reset_password(
    body: ResetPasswordRequest,
    service: AuthService = Depends(get_auth_service),
    client: ClientInfo = Depends(get_client_info),
) -> dict:
    service.reset_password(body.email, body.token, body.new_password, client=client, admin=True)
    return {"success": True, "msg": "Admin password has been reset successfully"}


@router.post("/admin-send-reset-otp")
def admin_send_reset_otp(
    body: EmailRequest,
    service: AuthService = Depends(get_auth_service),
    client: ClientInfo = Depends(get_client_info),
) -> dict:
    service.send_admin_reset_otp(body.email, client=client)
    return {"success": True, "msg": ADMIN_OTP_REQUESTED_MSG}


@router.post("/admin-verify-reset-otp")
def admin_verify_reset_otp(
    body: AdminOtpRequest,
    service: AuthService = Depends(get_auth_service),
    client: ClientInfo = Depends(get_client_info),
) -> dict:
    service.verify_admin_reset_otp(body.email, body.otp, client=client)
    return {"success": True, "msg": "OTP verified successfully"}


@router.post("/admin-reset-password-with-otp")
def admin_reset_password_with_otp(
    body: AdminOtpResetRequest,
    service: AuthService = Depends(get_auth_service),
    client: ClientInfo = Depends(get_client_info),
) -> dict:
    service.reset_admin_password_with_otp(body.email, body.otp, body.new_password, client=client)
    return {"success": True, "msg": "Admin password has been reset successfully"}
