from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Request, Response

from eguard.api.schemas import (
    AccessTokenResponse,
    AuthorityResponse,
    AuthorizeRequest,
    AuthorizeResponse,
    CallerInfoResponse,
    Envelope,
    LoginRequest,
    RenewRequest,
    ResetPasswordRequest,
    TokenResponse,
    TwoFactorCodeRequest,
    UpdatePasswordRequest,
)
from eguard.service.identity import (
    ACCESS_TOKEN_COOKIE,
    REFRESH_TOKEN_COOKIE,
    CallerIdentity,
    extract_token,
)
from eguard.service.runtime import get_runtime
from eguard.service.tokens import TokenPair

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


async def get_caller(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> CallerIdentity:
    runtime = get_runtime()
    return runtime.identity.bind(authorization, request.cookies)


def _apply_session_cookies(response: Response, pair: TokenPair, *, secure: bool) -> None:
    response.set_cookie(
        ACCESS_TOKEN_COOKIE,
        pair.access_token,
        httponly=True,
        secure=secure,
        samesite="lax",
        expires=pair.access_expires_at,
        path="/",
    )
    response.set_cookie(
        REFRESH_TOKEN_COOKIE,
        pair.refresh_token,
        httponly=True,
        secure=secure,
        samesite="lax",
        expires=pair.refresh_expires_at,
        path="/",
    )


@router.post("/auth/2fa", response_model=Envelope, status_code=202, tags=["auth"])
async def request_two_factor_code(body: TwoFactorCodeRequest):
    """Email a fresh two-factor code.

    Always answers 202 for unknown addresses so the endpoint cannot be used to
    probe which accounts exist.

    Raises:
        429: If a code was issued within the cooldown window
    """
    runtime = get_runtime()
    await runtime.auth.request_two_factor_code(body.email)
    return Envelope(status="ok", data={"message": "code sent if the account exists"})


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Authenticate with email and password, plus a code when the tenant requires one.

    Raises:
        401: Invalid credentials or missing two-factor code
        403/409/423: Account status forbids login
    """
    runtime = get_runtime()
    pair = await runtime.auth.login(body.email, body.password, body.auth_code)
    _apply_session_cookies(response, pair, secure=runtime.settings.auth_cookie_secure)
    return Envelope(
        status="ok",
        data=TokenResponse(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            token_type=pair.token_type,
            access_expires_at=pair.access_expires_at,
            refresh_expires_at=pair.refresh_expires_at,
        ),
    )


@router.post("/auth/renew", response_model=Envelope, tags=["auth"])
async def renew(body: RenewRequest, response: Response):
    runtime = get_runtime()
    access_token = await runtime.auth.renew(body.refresh_token)
    response.set_cookie(
        ACCESS_TOKEN_COOKIE,
        access_token,
        httponly=True,
        secure=runtime.settings.auth_cookie_secure,
        samesite="lax",
        max_age=runtime.settings.access_token_ttl_minutes * 60,
        path="/",
    )
    return Envelope(status="ok", data=AccessTokenResponse(access_token=access_token))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    authorization: Optional[str] = Header(None),
):
    runtime = get_runtime()
    token = extract_token(authorization, request.cookies)
    if not token:
        raise _http_error("unauthorized", "authentication required", status_code=401)
    await runtime.auth.revoke_session(token)
    secure = runtime.settings.auth_cookie_secure
    response.delete_cookie(ACCESS_TOKEN_COOKIE, path="/", secure=secure, samesite="lax")
    response.delete_cookie(REFRESH_TOKEN_COOKIE, path="/", secure=secure, samesite="lax")
    return Envelope(status="ok", data={"message": "session revoked"})


@router.get("/auth/info", response_model=Envelope, tags=["auth"])
async def caller_info(caller: CallerIdentity = Depends(get_caller)):
    runtime = get_runtime()
    snapshot = runtime.auth.caller_info(caller)
    return Envelope(status="ok", data=CallerInfoResponse(**snapshot.to_claims()))


@router.get("/auth/authority", response_model=Envelope, tags=["auth"])
async def caller_authority(caller: CallerIdentity = Depends(get_caller)):
    runtime = get_runtime()
    return Envelope(status="ok", data=AuthorityResponse(**runtime.auth.caller_authority(caller)))


@router.patch("/auth/reset-password", response_model=Envelope, status_code=202, tags=["auth"])
async def reset_password(body: ResetPasswordRequest):
    """Replace the password with an emailed temporary one.

    Unknown addresses get the same 202 as known ones.
    """
    runtime = get_runtime()
    await runtime.auth.reset_password(body.email)
    return Envelope(status="ok", data={"message": "temporary password sent if the account exists"})


@router.patch("/auth/update-password", response_model=Envelope, tags=["auth"])
async def update_password(body: UpdatePasswordRequest):
    runtime = get_runtime()
    await runtime.auth.update_password(body.email, body.password, body.new_password)
    return Envelope(status="ok", data={"message": "password updated"})


@router.post(
    "/admin/employees/{employee_id}/reset-password",
    response_model=Envelope,
    status_code=202,
    tags=["admin"],
)
async def admin_reset_password(
    employee_id: int = Path(..., ge=1),
    caller: CallerIdentity = Depends(get_caller),
):
    """Reset another employee's password on their behalf.

    Raises:
        403: Caller is neither MANAGER nor ADMIN
        404: Employee missing or outside the caller's factory
    """
    runtime = get_runtime()
    await runtime.auth.admin_reset_password(caller, employee_id)
    return Envelope(status="ok", data={"employee_id": employee_id, "message": "password reset"})


@router.post("/access/authorize", response_model=Envelope, tags=["access"])
async def authorize(body: AuthorizeRequest, caller: CallerIdentity = Depends(get_caller)):
    runtime = get_runtime()
    allowed = runtime.access.authorize(caller, body.kind, body.ids)
    return Envelope(status="ok", data=AuthorizeResponse(kind=body.kind, ids=allowed))
