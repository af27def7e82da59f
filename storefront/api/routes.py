from __future__ import annotations

from typing import Optional, Tuple

from fastapi import APIRouter, Cookie, Depends, Header, HTTPException, Path, Query, Request, Response

from storefront.api.schemas import (
    AccountListResponse,
    AccountProfile,
    AuditEventResponse,
    AuthResponse,
    BackupCodesResponse,
    CancelOrderRequest,
    CaptchaResponse,
    CreateOrderRequest,
    EmailRequest,
    Envelope,
    ExpiryStatusResponse,
    LoginRequest,
    MessageResponse,
    OrderListResponse,
    OrderResponse,
    OrderStatusUpdateRequest,
    PasswordChangeRequest,
    PasswordConfirmRequest,
    PasswordResetConfirmRequest,
    PasswordStrengthRequest,
    PasswordStrengthResponse,
    PaymentInitiateRequest,
    PaymentInitiateResponse,
    PaymentResponse,
    PaymentVerifyRequest,
    PaymentVerifyResponse,
    ProductResponse,
    ProductUpsertRequest,
    RefundRequest,
    RoleUpdateRequest,
    SessionResponse,
    SignupRequest,
    TwoFactorChallengeResponse,
    TwoFactorCodeRequest,
    TwoFactorLoginRequest,
    TwoFactorSetupResponse,
    TwoFactorStatusResponse,
)
from storefront.logging import get_logger
from storefront.service.auth import AuthContext
from storefront.service.errors import NotFoundError
from storefront.service.runtime import check_rate_limit, get_runtime
from storefront.storage.models import Account, Product, Session

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

SESSION_COOKIE = "session_id"
EXPIRY_WARNING_HEADER = "X-Password-Expiry-Warning"
_SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict | str] = None,
    headers: Optional[dict] = None,
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Consume one token for ``key`` or raise 429 with a Retry-After hint."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        raise _http_error(
            "rate_limited",
            "too many requests; try again later",
            status_code=429,
            details={"retryAfter": max(1, reset_seconds)},
            headers={"Retry-After": str(max(1, reset_seconds))},
        )
    return info


def _client_meta(request: Request) -> Tuple[Optional[str], Optional[str]]:
    ip = request.client.host if request.client else None
    return ip, request.headers.get("user-agent")


def _apply_session_cookie(response: Response, session: Session, runtime) -> None:
    response.set_cookie(
        SESSION_COOKIE,
        session.id,
        httponly=True,
        secure=runtime.settings.secure_cookies,
        samesite="strict",
        max_age=runtime.settings.session_inactivity_minutes * 60,
        path="/",
    )


def _clear_session_cookie(response: Response, runtime) -> None:
    response.delete_cookie(
        SESSION_COOKIE,
        path="/",
        secure=runtime.settings.secure_cookies,
        httponly=True,
        samesite="strict",
    )


def _presented_session(header_value: Optional[str], cookie_value: Optional[str]) -> Optional[str]:
    return header_value or cookie_value


async def _resolve_principal(
    request: Request,
    response: Response,
    session_header: Optional[str],
    session_cookie: Optional[str],
    *,
    enforce_password_expiry: bool,
) -> Tuple[AuthContext, Account]:
    runtime = get_runtime()
    session_id = _presented_session(session_header, session_cookie)
    ctx, account = runtime.auth.authenticate(session_id)
    # rolling inactivity window
    if session_cookie:
        response.set_cookie(
            SESSION_COOKIE,
            session_cookie,
            httponly=True,
            secure=runtime.settings.secure_cookies,
            samesite="strict",
            max_age=runtime.settings.session_inactivity_minutes * 60,
            path="/",
        )
    status = runtime.auth.passwords.expiry_status(account)
    if status.in_warning_window:
        response.headers[EXPIRY_WARNING_HEADER] = (
            f"Password expires in {status.days_remaining} day(s)"
        )
    if enforce_password_expiry and request.method not in _SAFE_METHODS:
        runtime.auth.ensure_password_current(account)
    return ctx, account


async def get_user(
    request: Request,
    response: Response,
    session_id: Optional[str] = Header(None, convert_underscores=False),
    session_cookie: Optional[str] = Cookie(None, alias=SESSION_COOKIE),
) -> AuthContext:
    ctx, _ = await _resolve_principal(
        request, response, session_id, session_cookie, enforce_password_expiry=True
    )
    return ctx


async def get_user_allow_expired(
    request: Request,
    response: Response,
    session_id: Optional[str] = Header(None, convert_underscores=False),
    session_cookie: Optional[str] = Cookie(None, alias=SESSION_COOKIE),
) -> AuthContext:
    """Session check for endpoints that must stay reachable with an expired password."""
    ctx, _ = await _resolve_principal(
        request, response, session_id, session_cookie, enforce_password_expiry=False
    )
    return ctx


async def get_admin_user(principal: AuthContext = Depends(get_user)) -> AuthContext:
    if principal.role != "admin":
        raise _http_error("forbidden", "admin access required", status_code=403)
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"admin:{principal.account_id}",
        runtime.settings.admin_rate_limit_per_minute,
        60,
    )
    return principal


def _auth_payload(result) -> AuthResponse:
    runtime = get_runtime()
    session = result.session
    second = result.second_factor
    return AuthResponse(
        session_id=session.id,
        session_expires_at=runtime.auth.sessions.idle_expires_at(session),
        account=AccountProfile.from_account(result.account),
        second_factor_method=second.method if second else None,
        backup_codes_remaining=second.remaining_backup_codes if second else None,
    )


# ---------------------------------------------------------------------------
# auth
# ---------------------------------------------------------------------------
@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(body: SignupRequest, request: Request):
    """Register an unverified account and send the verification email.

    Raises:
        400: If the password fails the complexity rules
        409: If the email is already registered
        429: If the signup rate limit is exceeded
    """
    runtime = get_runtime()
    ip, user_agent = _client_meta(request)
    await _enforce_rate_limit(
        runtime, f"signup:{ip}", runtime.settings.signup_rate_limit_per_minute, 60
    )
    account = await runtime.auth.signup(
        body.email, body.password, name=body.name, ip=ip, user_agent=user_agent
    )
    return Envelope(
        status="ok",
        data={
            "message": "Account created. Check your email to verify your address.",
            "account": AccountProfile.from_account(account).model_dump(mode="json"),
        },
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    session_id: Optional[str] = Header(None, convert_underscores=False),
    session_cookie: Optional[str] = Cookie(None, alias=SESSION_COOKIE),
):
    """Authenticate with email and password.

    Accounts with two-factor enabled get ``require2FA`` and a challenge id
    unless ``two_factor_code`` is sent along. A successful login always
    issues a brand-new session id.
    """
    runtime = get_runtime()
    ip, user_agent = _client_meta(request)
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        60,
    )
    result = await runtime.auth.login(
        body.email,
        body.password,
        two_factor_code=body.two_factor_code,
        captcha_id=body.captcha_id,
        captcha_text=body.captcha_text,
        previous_session_id=_presented_session(session_id, session_cookie),
        ip=ip,
        user_agent=user_agent,
    )
    if result.require_two_factor:
        return Envelope(
            status="ok", data=TwoFactorChallengeResponse(challenge_id=result.challenge_id)
        )
    _apply_session_cookie(response, result.session, runtime)
    return Envelope(status="ok", data=_auth_payload(result))


@router.post("/auth/login/2fa", response_model=Envelope, tags=["auth"])
async def login_two_factor(
    body: TwoFactorLoginRequest,
    request: Request,
    response: Response,
    session_id: Optional[str] = Header(None, convert_underscores=False),
    session_cookie: Optional[str] = Cookie(None, alias=SESSION_COOKIE),
):
    runtime = get_runtime()
    ip, user_agent = _client_meta(request)
    await _enforce_rate_limit(
        runtime,
        f"mfa:{body.challenge_id}",
        runtime.settings.mfa_rate_limit_per_minute,
        60,
    )
    result = await runtime.auth.complete_two_factor_login(
        body.challenge_id,
        body.code,
        previous_session_id=_presented_session(session_id, session_cookie),
        ip=ip,
        user_agent=user_agent,
    )
    _apply_session_cookie(response, result.session, runtime)
    return Envelope(status="ok", data=_auth_payload(result))


@router.get("/auth/captcha", response_model=Envelope, tags=["auth"])
async def get_captcha(request: Request):
    runtime = get_runtime()
    ip, _ = _client_meta(request)
    await _enforce_rate_limit(
        runtime, f"captcha:{ip}", runtime.settings.verify_rate_limit_per_minute, 60
    )
    challenge = await runtime.auth.issue_captcha()
    return Envelope(
        status="ok",
        data=CaptchaResponse(
            captcha_id=challenge.captcha_id,
            captcha_text=challenge.captcha_text,
            expires_in=challenge.expires_in,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    session_id: Optional[str] = Header(None, convert_underscores=False),
    session_cookie: Optional[str] = Cookie(None, alias=SESSION_COOKIE),
):
    """Destroy the current session; logging out without one is not an error."""
    runtime = get_runtime()
    ip, user_agent = _client_meta(request)
    await runtime.auth.logout(
        _presented_session(session_id, session_cookie), ip=ip, user_agent=user_agent
    )
    _clear_session_cookie(response, runtime)
    return Envelope(status="ok", data=MessageResponse(message="logged out"))


@router.post("/auth/refresh-session", response_model=Envelope, tags=["auth"])
async def refresh_session(principal: AuthContext = Depends(get_user_allow_expired)):
    runtime = get_runtime()
    session = runtime.auth.refresh_session(principal.session_id)
    return Envelope(
        status="ok",
        data=SessionResponse(
            session_expires_at=runtime.auth.sessions.idle_expires_at(session),
            account_id=principal.account_id,
            role=principal.role,
        ),
    )


@router.get("/auth/verify-email/{token}", response_model=Envelope, tags=["auth"])
async def verify_email(request: Request, token: str = Path(..., max_length=256)):
    runtime = get_runtime()
    ip, _ = _client_meta(request)
    await _enforce_rate_limit(
        runtime, f"verify:{ip}", runtime.settings.verify_rate_limit_per_minute, 60
    )
    account = await runtime.auth.verify_email(token)
    return Envelope(
        status="ok",
        data={"message": "Email verified. You can now log in.", "email_verified": account.email_verified},
    )


@router.post("/auth/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(body: EmailRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"verify:{body.email}",
        runtime.settings.verify_rate_limit_per_minute,
        60,
    )
    await runtime.auth.resend_verification(body.email)
    return Envelope(
        status="ok",
        data=MessageResponse(
            message="If an unverified account exists for that email, a new link has been sent."
        ),
    )


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: EmailRequest, request: Request):
    """Start a password reset; the answer never reveals whether the account exists."""
    runtime = get_runtime()
    ip, user_agent = _client_meta(request)
    await _enforce_rate_limit(
        runtime,
        f"reset:{body.email}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
    )
    await runtime.auth.request_password_reset(body.email, ip=ip, user_agent=user_agent)
    return Envelope(
        status="ok",
        data=MessageResponse(
            message="If an account exists for that email, a reset link has been sent."
        ),
    )


@router.get("/auth/verify-reset-token/{token}", response_model=Envelope, tags=["auth"])
async def verify_reset_token(request: Request, token: str = Path(..., max_length=256)):
    runtime = get_runtime()
    ip, _ = _client_meta(request)
    await _enforce_rate_limit(
        runtime, f"reset-token:{ip}", runtime.settings.verify_rate_limit_per_minute, 60
    )
    runtime.auth.verify_reset_token(token)
    return Envelope(status="ok", data={"valid": True})


@router.post("/auth/reset-password/{token}", response_model=Envelope, tags=["auth"])
async def reset_password(
    body: PasswordResetConfirmRequest,
    request: Request,
    token: str = Path(..., max_length=256),
):
    runtime = get_runtime()
    ip, user_agent = _client_meta(request)
    await _enforce_rate_limit(
        runtime, f"reset-confirm:{ip}", runtime.settings.reset_rate_limit_per_minute, 60
    )
    await runtime.auth.reset_password(token, body.password, ip=ip, user_agent=user_agent)
    return Envelope(
        status="ok",
        data=MessageResponse(message="Password has been reset. You can now log in."),
    )


@router.post("/auth/unlock-account/{account_id}", response_model=Envelope, tags=["admin"])
async def unlock_account(
    request: Request,
    account_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    ip, user_agent = _client_meta(request)
    account = runtime.auth.unlock_account(
        principal.account_id, account_id, ip=ip, user_agent=user_agent
    )
    return Envelope(
        status="ok",
        data={"message": "account unlocked", "account": AccountProfile.from_account(account).model_dump(mode="json")},
    )


@router.get("/me", response_model=Envelope, tags=["auth"])
async def get_current_account(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    account = runtime.store.get_account(principal.account_id)
    if not account:
        raise NotFoundError("account not found")
    return Envelope(status="ok", data=AccountProfile.from_account(account))


# ---------------------------------------------------------------------------
# two-factor
# ---------------------------------------------------------------------------
@router.get("/2fa/status", response_model=Envelope, tags=["2fa"])
async def two_factor_status(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    account = runtime.store.get_account(principal.account_id)
    if not account:
        raise NotFoundError("account not found")
    return Envelope(
        status="ok", data=TwoFactorStatusResponse(**runtime.auth.two_factor.status(account))
    )


@router.post("/2fa/setup", response_model=Envelope, tags=["2fa"])
async def two_factor_setup(principal: AuthContext = Depends(get_user)):
    """Stage a new TOTP secret; it only becomes active after /2fa/enable."""
    runtime = get_runtime()
    setup = runtime.auth.setup_two_factor(principal.account_id)
    return Envelope(
        status="ok",
        data=TwoFactorSetupResponse(secret=setup.secret, otpauth_url=setup.otpauth_url),
    )


@router.post("/2fa/enable", response_model=Envelope, tags=["2fa"])
async def two_factor_enable(
    body: TwoFactorCodeRequest, principal: AuthContext = Depends(get_user)
):
    """Confirm the staged secret and return the backup codes (shown once)."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"mfa:{principal.account_id}",
        runtime.settings.mfa_rate_limit_per_minute,
        60,
    )
    codes = await runtime.auth.enable_two_factor(principal.account_id, body.code)
    return Envelope(status="ok", data=BackupCodesResponse(backup_codes=codes))


@router.post("/2fa/disable", response_model=Envelope, tags=["2fa"])
async def two_factor_disable(
    body: PasswordConfirmRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"mfa:{principal.account_id}",
        runtime.settings.mfa_rate_limit_per_minute,
        60,
    )
    await runtime.auth.disable_two_factor(principal.account_id, body.password)
    return Envelope(
        status="ok", data=MessageResponse(message="two-factor authentication disabled")
    )


@router.post("/2fa/backup-codes", response_model=Envelope, tags=["2fa"])
async def two_factor_backup_codes(
    body: PasswordConfirmRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"mfa:{principal.account_id}",
        runtime.settings.mfa_rate_limit_per_minute,
        60,
    )
    codes = await runtime.auth.regenerate_backup_codes(principal.account_id, body.password)
    return Envelope(status="ok", data=BackupCodesResponse(backup_codes=codes))


# ---------------------------------------------------------------------------
# password lifecycle
# ---------------------------------------------------------------------------
@router.post("/password/check-strength", response_model=Envelope, tags=["password"])
async def check_password_strength(body: PasswordStrengthRequest):
    """Advisory strength score plus the hard complexity checklist."""
    runtime = get_runtime()
    strength = runtime.auth.check_strength(
        body.password, [value for value in (body.email, body.name) if value]
    )
    errors = runtime.auth.passwords.complexity_errors(body.password)
    return Envelope(
        status="ok",
        data=PasswordStrengthResponse(
            **strength.as_dict(), meets_requirements=not errors, errors=errors
        ),
    )


@router.post("/password/change", response_model=Envelope, tags=["password"])
async def change_password(
    body: PasswordChangeRequest,
    request: Request,
    principal: AuthContext = Depends(get_user_allow_expired),
):
    runtime = get_runtime()
    ip, user_agent = _client_meta(request)
    strength = await runtime.auth.change_password(
        principal.account_id,
        body.current_password,
        body.new_password,
        current_session_id=principal.session_id,
        ip=ip,
        user_agent=user_agent,
    )
    return Envelope(
        status="ok",
        data={
            "message": "Password changed successfully",
            "strength": PasswordStrengthResponse(**strength.as_dict()).model_dump(mode="json"),
        },
    )


@router.get("/password/expiry-status", response_model=Envelope, tags=["password"])
async def password_expiry_status(principal: AuthContext = Depends(get_user_allow_expired)):
    runtime = get_runtime()
    status = await runtime.auth.expiry_status(principal.account_id)
    return Envelope(status="ok", data=ExpiryStatusResponse(**status.__dict__))


# ---------------------------------------------------------------------------
# admin
# ---------------------------------------------------------------------------
@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def admin_list_accounts(
    limit: int = Query(100, ge=1, le=500),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    accounts = runtime.auth.list_accounts(limit=limit)
    return Envelope(
        status="ok",
        data=AccountListResponse(items=[AccountProfile.from_account(a) for a in accounts]),
    )


@router.post("/admin/users/{account_id}/role", response_model=Envelope, tags=["admin"])
async def admin_set_role(
    body: RoleUpdateRequest,
    request: Request,
    account_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    ip, user_agent = _client_meta(request)
    account = runtime.auth.set_role(
        principal.account_id, account_id, body.role, ip=ip, user_agent=user_agent
    )
    return Envelope(status="ok", data=AccountProfile.from_account(account))


@router.delete("/admin/users/{account_id}", response_model=Envelope, tags=["admin"])
async def admin_delete_account(
    request: Request,
    account_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    ip, user_agent = _client_meta(request)
    runtime.auth.delete_account(principal.account_id, account_id, ip=ip, user_agent=user_agent)
    return Envelope(status="ok", data={"deleted": True, "account_id": account_id})


@router.get("/admin/audit-events", response_model=Envelope, tags=["admin"])
async def admin_audit_events(
    account_id: Optional[str] = Query(None, max_length=128),
    action: Optional[str] = Query(None, max_length=64),
    limit: int = Query(100, ge=1, le=500),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    events = runtime.store.list_audit_events(account_id=account_id, action=action, limit=limit)
    return Envelope(
        status="ok",
        data={"items": [AuditEventResponse.from_event(e).model_dump(mode="json") for e in events]},
    )


# ---------------------------------------------------------------------------
# products
# ---------------------------------------------------------------------------
@router.put("/admin/products/{product_id}", response_model=Envelope, tags=["products"])
async def admin_upsert_product(
    body: ProductUpsertRequest,
    product_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    product = runtime.store.upsert_product(
        Product(
            id=product_id,
            name=body.name,
            price=body.price,
            rental_price=body.rental_price,
        )
    )
    return Envelope(status="ok", data=ProductResponse.from_product(product))


@router.get("/products/{product_id}", response_model=Envelope, tags=["products"])
async def get_product(product_id: str = Path(..., max_length=128)):
    runtime = get_runtime()
    product = runtime.store.get_product(product_id)
    if not product:
        raise NotFoundError("product not found")
    return Envelope(status="ok", data=ProductResponse.from_product(product))


# ---------------------------------------------------------------------------
# orders
# ---------------------------------------------------------------------------
@router.post("/orders", response_model=Envelope, status_code=201, tags=["orders"])
async def create_order(body: CreateOrderRequest, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    order = runtime.orders.create(
        principal,
        [item.model_dump() for item in body.items],
        shipping_address=body.shipping_address.to_model() if body.shipping_address else None,
        order_type=body.order_type,
        payment_method=body.payment_method,
        notes=body.notes,
    )
    return Envelope(status="ok", data=OrderResponse.from_order(order))


@router.get("/orders/mine", response_model=Envelope, tags=["orders"])
async def list_my_orders(
    status: Optional[str] = Query(None, max_length=32),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    orders, total = runtime.orders.list_mine(principal, status=status, limit=limit, offset=offset)
    return Envelope(
        status="ok",
        data=OrderListResponse(
            items=[OrderResponse.from_order(o) for o in orders],
            total=total,
            limit=limit,
            offset=offset,
        ),
    )


@router.get("/orders", response_model=Envelope, tags=["orders"])
async def list_all_orders(
    status: Optional[str] = Query(None, max_length=32),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    orders, total = runtime.orders.list_all(status=status, limit=limit, offset=offset)
    return Envelope(
        status="ok",
        data=OrderListResponse(
            items=[OrderResponse.from_order(o) for o in orders],
            total=total,
            limit=limit,
            offset=offset,
        ),
    )


@router.get("/orders/{order_id}", response_model=Envelope, tags=["orders"])
async def get_order(
    order_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    return Envelope(
        status="ok", data=OrderResponse.from_order(runtime.orders.get(order_id, principal))
    )


@router.get("/orders/{order_id}/track", response_model=Envelope, tags=["orders"])
async def track_order(
    order_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    tracking = runtime.orders.track(order_id, principal)
    tracking["timeline"] = [
        {"status": entry["status"], "at": entry["at"].isoformat()} for entry in tracking["timeline"]
    ]
    return Envelope(status="ok", data=tracking)


@router.post("/orders/{order_id}/cancel", response_model=Envelope, tags=["orders"])
async def cancel_order(
    body: CancelOrderRequest,
    order_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    order = runtime.orders.cancel(order_id, principal, reason=body.reason)
    return Envelope(status="ok", data=OrderResponse.from_order(order))


@router.patch("/orders/{order_id}/status", response_model=Envelope, tags=["orders"])
async def update_order_status(
    body: OrderStatusUpdateRequest,
    order_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    order = runtime.orders.update_status(
        order_id, body.status, principal, tracking_number=body.tracking_number
    )
    return Envelope(status="ok", data=OrderResponse.from_order(order))


# ---------------------------------------------------------------------------
# payments
# ---------------------------------------------------------------------------
@router.post("/payments/khalti/initiate", response_model=Envelope, tags=["payments"])
async def initiate_payment(
    body: PaymentInitiateRequest,
    request: Request,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    ip, user_agent = _client_meta(request)
    await _enforce_rate_limit(
        runtime,
        f"payment:{principal.account_id}",
        runtime.settings.payment_rate_limit_per_minute,
        60,
        response=response,
    )
    account = runtime.store.get_account(principal.account_id)
    if not account:
        raise NotFoundError("account not found")
    initiation = await runtime.payments.initiate(
        account,
        body.amount,
        body.product_info,
        order_id=body.order_id,
        ip=ip,
        user_agent=user_agent,
    )
    return Envelope(
        status="ok",
        data=PaymentInitiateResponse(
            payment_id=initiation.payment.id,
            amount=initiation.amount_paisa,
            pidx=initiation.pidx,
            payment_url=initiation.payment_url,
            public_key=initiation.public_key,
        ),
    )


@router.post("/payments/khalti/verify", response_model=Envelope, tags=["payments"])
async def verify_payment(
    body: PaymentVerifyRequest,
    request: Request,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    """Reconcile a gateway callback into a completed payment and its order.

    Safe to call repeatedly for the same pidx; replays never create a second
    order.
    """
    runtime = get_runtime()
    ip, user_agent = _client_meta(request)
    await _enforce_rate_limit(
        runtime,
        f"payment:{principal.account_id}",
        runtime.settings.payment_rate_limit_per_minute,
        60,
        response=response,
    )
    result = await runtime.payments.verify(principal, body.pidx, ip=ip, user_agent=user_agent)
    return Envelope(
        status="ok",
        data=PaymentVerifyResponse(
            message="Payment verified successfully",
            payment=PaymentResponse.from_payment(result.payment),
            order=OrderResponse.from_order(result.order) if result.order else None,
            order_created=result.order_created,
        ),
    )


@router.get("/payments/history", response_model=Envelope, tags=["payments"])
async def payment_history(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    payments = runtime.payments.history(principal)
    return Envelope(
        status="ok",
        data={"items": [PaymentResponse.from_payment(p).model_dump(mode="json") for p in payments]},
    )


@router.get("/payments", response_model=Envelope, tags=["payments"])
async def list_payments(principal: AuthContext = Depends(get_admin_user)):
    runtime = get_runtime()
    payments = runtime.payments.list_all()
    return Envelope(
        status="ok",
        data={"items": [PaymentResponse.from_payment(p).model_dump(mode="json") for p in payments]},
    )


@router.get("/payments/{payment_id}", response_model=Envelope, tags=["payments"])
async def get_payment(
    payment_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    payment = runtime.payments.get(payment_id, principal)
    return Envelope(status="ok", data=PaymentResponse.from_payment(payment))


@router.post("/payments/{payment_id}/refund", response_model=Envelope, tags=["payments"])
async def refund_payment(
    body: RefundRequest,
    payment_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    payment = runtime.payments.refund(payment_id, principal, reason=body.reason)
    return Envelope(status="ok", data=PaymentResponse.from_payment(payment))
