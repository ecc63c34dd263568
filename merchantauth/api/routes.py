from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request, Response

from merchantauth.api.schemas import (
    AdminSigninRequest,
    Envelope,
    MerchantProfileUpdate,
    PasswordResetRequest,
    PasswordResetVerify,
    SendOtpRequest,
    SigninRequest,
    SignupRequest,
    VerifyOtpRequest,
)
from merchantauth.logging import get_logger
from merchantauth.service.auth import AuthContext
from merchantauth.service.runtime import Runtime, get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/api")

NEW_TOKEN_HEADER = "X-New-Token"


def _remember_principal(request: Request, ctx: AuthContext) -> None:
    # Read back by the audit middleware once the response is produced
    request.state.principal = ctx.audit_principal()


async def get_merchant_user(
    request: Request,
    response: Response,
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
) -> AuthContext:
    ctx, renewed = runtime.auth.authenticate_merchant(authorization)
    if renewed:
        response.headers[NEW_TOKEN_HEADER] = renewed
    _remember_principal(request, ctx)
    return ctx


async def get_admin_user(
    request: Request,
    response: Response,
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
) -> AuthContext:
    ctx, renewed = runtime.auth.authenticate_admin(authorization)
    if renewed:
        response.headers[NEW_TOKEN_HEADER] = renewed
    _remember_principal(request, ctx)
    return ctx


# -- merchant auth ---------------------------------------------------------


@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(body: SignupRequest, runtime: Runtime = Depends(get_runtime)):
    """Register a merchant; the account stays inactive until both channels are verified."""
    data = await runtime.auth.signup(
        name=body.name,
        email=body.email,
        mobile=body.mobile,
        password=body.password,
        state=body.state,
    )
    return Envelope(status="ok", data=data)


@router.post("/auth/signin", response_model=Envelope, tags=["auth"])
async def signin(body: SigninRequest, runtime: Runtime = Depends(get_runtime)):
    """Check credentials and start either first activation or routine MFA.

    Raises:
        401: Unknown email or wrong password (same message for both)
        422: Account flags in a combination no flow accepts
        503: The SMS code could not be sent
    """
    data = await runtime.auth.signin(email=body.email, password=body.password)
    return Envelope(status="ok", data=data)


@router.post("/auth/send-otp", response_model=Envelope, tags=["auth"])
async def send_otp(body: SendOtpRequest, runtime: Runtime = Depends(get_runtime)):
    data = await runtime.auth.send_otp(email=body.email, otp_type=body.otp_type)
    return Envelope(status="ok", data=data)


@router.post("/auth/verify-otp", response_model=Envelope, tags=["auth"])
async def verify_otp(body: VerifyOtpRequest, runtime: Runtime = Depends(get_runtime)):
    """Verify a code against an MFA session, or by email for the legacy flow."""
    data = await runtime.auth.verify_otp(
        otp=body.otp,
        otp_type=body.otp_type,
        email=body.email,
        mfa_session_token=body.mfa_session_token,
    )
    return Envelope(status="ok", data=data)


@router.post("/auth/password-reset/request", response_model=Envelope, tags=["auth"])
async def request_password_reset(
    body: PasswordResetRequest, runtime: Runtime = Depends(get_runtime)
):
    data = await runtime.auth.request_password_reset(email=body.email)
    return Envelope(status="ok", data=data)


@router.post("/auth/password-reset/verify", response_model=Envelope, tags=["auth"])
async def verify_password_reset(
    body: PasswordResetVerify, runtime: Runtime = Depends(get_runtime)
):
    data = await runtime.auth.verify_password_reset(
        email=body.email, otp=body.otp, new_password=body.new_password
    )
    return Envelope(status="ok", data=data)


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    principal: AuthContext = Depends(get_merchant_user),
    runtime: Runtime = Depends(get_runtime),
):
    data = await runtime.auth.logout(principal)
    return Envelope(status="ok", data=data)


@router.get("/merchant/profile", response_model=Envelope, tags=["merchant"])
async def merchant_profile(
    principal: AuthContext = Depends(get_merchant_user),
    runtime: Runtime = Depends(get_runtime),
):
    return Envelope(status="ok", data=runtime.auth.get_profile(principal))


# -- admin -----------------------------------------------------------------


@router.post("/admin/signin", response_model=Envelope, tags=["admin"])
async def admin_signin(body: AdminSigninRequest, runtime: Runtime = Depends(get_runtime)):
    data = await runtime.admin.signin(email=body.email, password=body.password)
    return Envelope(status="ok", data=data)


@router.get("/admin/merchants", response_model=Envelope, tags=["admin"])
async def admin_list_merchants(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    search: Optional[str] = Query(None, max_length=256),
    principal: AuthContext = Depends(get_admin_user),
    runtime: Runtime = Depends(get_runtime),
):
    data = runtime.admin.list_merchants(page=page, limit=limit, search=search)
    return Envelope(status="ok", data=data)


@router.get("/admin/merchants/{merchant_id}", response_model=Envelope, tags=["admin"])
async def admin_get_merchant(
    merchant_id: str = Path(..., max_length=32),
    principal: AuthContext = Depends(get_admin_user),
    runtime: Runtime = Depends(get_runtime),
):
    return Envelope(status="ok", data=runtime.admin.get_merchant(merchant_id))


@router.put("/admin/merchants/{merchant_id}/profile", response_model=Envelope, tags=["admin"])
async def admin_update_merchant_profile(
    body: MerchantProfileUpdate,
    merchant_id: str = Path(..., max_length=32),
    principal: AuthContext = Depends(get_admin_user),
    runtime: Runtime = Depends(get_runtime),
):
    data = runtime.admin.update_merchant_profile(merchant_id, body.document(), actor=principal)
    return Envelope(status="ok", data=data)


@router.post("/admin/merchants/{merchant_id}/disable", response_model=Envelope, tags=["admin"])
async def admin_disable_merchant(
    merchant_id: str = Path(..., max_length=32),
    principal: AuthContext = Depends(get_admin_user),
    runtime: Runtime = Depends(get_runtime),
):
    data = runtime.admin.set_merchant_active(merchant_id, False, actor=principal)
    return Envelope(status="ok", data=data)


@router.post("/admin/merchants/{merchant_id}/enable", response_model=Envelope, tags=["admin"])
async def admin_enable_merchant(
    merchant_id: str = Path(..., max_length=32),
    principal: AuthContext = Depends(get_admin_user),
    runtime: Runtime = Depends(get_runtime),
):
    data = runtime.admin.set_merchant_active(merchant_id, True, actor=principal)
    return Envelope(status="ok", data=data)


@router.post("/admin/password-reset/request", response_model=Envelope, tags=["admin"])
async def admin_request_password_reset(
    body: PasswordResetRequest, runtime: Runtime = Depends(get_runtime)
):
    data = await runtime.admin.request_password_reset(email=body.email)
    return Envelope(status="ok", data=data)


@router.post("/admin/password-reset/verify", response_model=Envelope, tags=["admin"])
async def admin_verify_password_reset(
    body: PasswordResetVerify, runtime: Runtime = Depends(get_runtime)
):
    data = await runtime.admin.verify_password_reset(
        email=body.email, otp=body.otp, new_password=body.new_password
    )
    return Envelope(status="ok", data=data)
