"""
Authentication endpoints (no bearer token required).

- Signup: verification mail -> email verification -> account completion
- Sign-in and token refresh through the Keycloak realm
- Forgot-password / reset-with-token
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, Query
from pydantic import EmailStr

from app.api.v1.common import get_rpc, ok
from credhub_shared.schemas import commands as c
from credhub_shared.schemas.common import APIResponse
from credhub_shared.schemas.users import (
    CompleteSignupRequest,
    ForgotPasswordRequest,
    LoginRequest,
    RefreshTokenRequest,
    ResetTokenPasswordRequest,
    SendVerificationRequest,
)

log = structlog.get_logger()
router = APIRouter()


# ---------------------------------------------------------------------------
# Signup
# ---------------------------------------------------------------------------

@router.post("/verification-mail", response_model=APIResponse, status_code=201)
async def send_verification_mail(body: SendVerificationRequest, rpc=Depends(get_rpc)):
    data = await rpc.send(
        c.SendVerificationMail(
            email=body.email,
            client_id=body.client_id,
            client_secret=body.client_secret,
            platform_name=body.platform_name,
            brand_logo_url=body.brand_logo_url,
        )
    )
    return ok("Verification mail sent successfully", data, 201)


@router.get("/verify", response_model=APIResponse)
async def verify_email(
    email: EmailStr = Query(...),
    verificationCode: str = Query(..., min_length=1),
    rpc=Depends(get_rpc),
):
    data = await rpc.send(c.VerifyEmail(email=str(email).lower(), verification_code=verificationCode))
    return ok("Email verified successfully", data)


@router.post("/signup", response_model=APIResponse, status_code=201)
async def complete_signup(body: CompleteSignupRequest, rpc=Depends(get_rpc)):
    data = await rpc.send(
        c.CompleteSignup(
            email=body.email,
            password=body.password,
            first_name=body.first_name,
            last_name=body.last_name,
            is_holder=body.is_holder,
        )
    )
    return ok("User registered successfully", data, 201)


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------

@router.post("/signin", response_model=APIResponse)
async def signin(body: LoginRequest, rpc=Depends(get_rpc)):
    data = await rpc.send(c.UserLogin(email=body.email, password=body.password))
    return ok("User login successfully", data)


@router.post("/refresh-token", response_model=APIResponse)
async def refresh_token(body: RefreshTokenRequest, rpc=Depends(get_rpc)):
    data = await rpc.send(c.RefreshToken(refresh_token=body.refresh_token))
    return ok("Token refreshed successfully", data)


# ---------------------------------------------------------------------------
# Password recovery
# ---------------------------------------------------------------------------

@router.post("/forgot-password", response_model=APIResponse)
async def forgot_password(body: ForgotPasswordRequest, rpc=Depends(get_rpc)):
    data = await rpc.send(c.ForgotPassword(email=body.email))
    return ok("Reset password link sent to your email", data)


@router.post("/password-reset", response_model=APIResponse)
async def reset_token_password(body: ResetTokenPasswordRequest, rpc=Depends(get_rpc)):
    data = await rpc.send(c.ResetTokenPassword(email=body.email, token=body.token, password=body.password))
    return ok("Password reset successfully", data)
