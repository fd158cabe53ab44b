from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import APIRouter, Depends, Request, Response

from sumpauth.api.cookies import clear_session_cookie, read_session_token, set_session_cookie
from sumpauth.api.schemas import (
    FORGOT_PASSWORD_MESSAGE,
    RESET_PASSWORD_MESSAGE,
    AccountStatusResponse,
    ChangePasswordRequest,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    ResetPasswordRequest,
    ResetPasswordResponse,
    RevokedResponse,
    ScopeSegment,
    SessionListResponse,
    SessionResponse,
    SignupRequest,
)
from sumpauth.logging import get_logger
from sumpauth.service import roles
from sumpauth.service.errors import (
    AuthorizationDenied,
    NotFoundError,
    SessionNotFound,
    TokenInvalid,
)
from sumpauth.service.runtime import Runtime, get_runtime
from sumpauth.storage.models import (
    AccountRecord,
    AccountRef,
    AuthScope,
    ContextType,
    Role,
    Session,
    SessionDescriptor,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/v1/auth")

_SCOPED = "/{scope}/{context_id}"


@dataclass
class Principal:
    """The caller behind a validated session cookie."""

    session: Session
    token: str
    scope: AuthScope

    @property
    def account(self) -> AccountRef:
        return AccountRef(self.session.account_type, self.session.account_id)


def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else None


def _user_agent(request: Request) -> Optional[str]:
    agent = request.headers.get("user-agent")
    return agent[:512] if agent else None


async def _require_context(runtime: Runtime, scope: AuthScope) -> None:
    if not await runtime.accounts.context_exists(scope):
        label = "Tenant" if scope.context_type == ContextType.TENANT else "Environment"
        raise NotFoundError(f"{label} not found", detail={"context_id": scope.context_id})


async def get_principal(
    request: Request, scope: ScopeSegment, context_id: str
) -> Principal:
    runtime = get_runtime()
    auth_scope = scope.to_scope(context_id)
    token = read_session_token(request, runtime.settings)
    session = await runtime.auth.require_session(token, auth_scope)
    return Principal(session=session, token=token or "", scope=auth_scope)


def require_role(minimum: Role, *, self_param: Optional[str] = None):
    """Dependency admitting callers whose role in the addressed context is at
    least ``minimum``.

    When ``self_param`` names a path parameter, a caller addressing its own
    account id through it is admitted regardless of role.
    """

    async def dependency(
        request: Request, principal: Principal = Depends(get_principal)
    ) -> Principal:
        if self_param and request.path_params.get(self_param) == principal.session.account_id:
            return principal
        runtime = get_runtime()
        actor = await runtime.accounts.get_account(
            principal.session.account_type, principal.session.account_id, principal.scope
        )
        if actor is None:
            raise SessionNotFound()
        role = roles.effective_role(actor.role, principal.scope)
        if role is None or not roles.at_least(role, minimum):
            logger.info(
                "role_requirement_denied",
                account_id=actor.id,
                required=minimum.value,
                context_id=principal.scope.context_id,
            )
            raise AuthorizationDenied(
                "Insufficient permissions", reason=roles.REASON_INSUFFICIENT_POWER
            )
        return principal

    return dependency


@router.post(
    "/environments/{environment_id}/signup",
    response_model=Envelope,
    status_code=201,
    tags=["auth"],
)
async def signup(
    environment_id: str, body: SignupRequest, request: Request, response: Response
):
    """Create an environment account with a password and start its session.

    Raises:
        400: If the input is invalid or the password is too weak
        404: If the environment does not exist
        409: If the email, username or phone is already taken
    """
    runtime = get_runtime()
    auth_scope = AuthScope(ContextType.ENVIRONMENT, environment_id)
    await _require_context(runtime, auth_scope)

    password_hash = await runtime.auth.hash_password(body.password)
    account = await runtime.accounts.create_account(
        auth_scope,
        password_hash=password_hash,
        name=body.name,
        email=body.email,
        phone=body.phone,
        username=body.username,
    )
    session = await runtime.sessions.issue(
        SessionDescriptor(
            account_type=account.account_type,
            account_id=account.id,
            context_type=auth_scope.context_type,
            context_id=auth_scope.context_id,
            ip_address=_client_ip(request),
            user_agent=_user_agent(request),
        )
    )
    logger.info("signup_succeeded", account_id=account.id, context_id=environment_id)
    set_session_cookie(response, session.token or "", runtime.settings)
    return Envelope(
        status="ok",
        data=LoginResponse(
            account_id=account.id,
            session=SessionResponse.from_session(session),
        ),
    )


@router.post(_SCOPED + "/login", response_model=Envelope, tags=["auth"])
async def login(
    scope: ScopeSegment,
    context_id: str,
    body: LoginRequest,
    request: Request,
    response: Response,
):
    """Authenticate with one identifier and a password.

    Raises:
        400: If no identifier (or more than one) is supplied
        401: If the credentials are invalid
        403: If the account is disabled
        404: If the tenant or environment does not exist
    """
    identifier = body.single_identifier()
    runtime = get_runtime()
    auth_scope = scope.to_scope(context_id)
    await _require_context(runtime, auth_scope)
    session = await runtime.auth.login(
        identifier,
        body.password,
        auth_scope,
        ip_address=_client_ip(request),
        user_agent=_user_agent(request),
    )
    set_session_cookie(response, session.token or "", runtime.settings)
    return Envelope(
        status="ok",
        data=LoginResponse(
            account_id=session.account_id,
            session=SessionResponse.from_session(session),
        ),
    )


@router.post(_SCOPED + "/logout", response_model=Envelope, tags=["auth"])
async def logout(
    scope: ScopeSegment, context_id: str, request: Request, response: Response
):
    runtime = get_runtime()
    token = read_session_token(request, runtime.settings)
    if token:
        await runtime.auth.signout(token)
    clear_session_cookie(response, runtime.settings)
    return Envelope(status="ok", data=MessageResponse(message="Logged out"))


@router.get(_SCOPED + "/session", response_model=Envelope, tags=["auth"])
async def current_session(principal: Principal = Depends(get_principal)):
    return Envelope(status="ok", data=SessionResponse.from_session(principal.session))


@router.get(_SCOPED + "/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    sessions = await runtime.auth.list_sessions(
        principal.session.account_type, principal.session.account_id
    )
    return Envelope(
        status="ok",
        data=SessionListResponse(
            sessions=[SessionResponse.from_session(s) for s in sessions],
            current_session_id=principal.session.id,
        ),
    )


@router.post(_SCOPED + "/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(response: Response, principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    revoked = await runtime.auth.signout_all(
        principal.token, principal.session.account_type, principal.session.account_id
    )
    clear_session_cookie(response, runtime.settings)
    return Envelope(status="ok", data=RevokedResponse(revoked=revoked))


@router.post(_SCOPED + "/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(
    scope: ScopeSegment, context_id: str, body: ForgotPasswordRequest
):
    """Start a password reset.

    The response is identical whether or not the identifier matched an
    account, so it cannot be used to enumerate accounts.
    """
    identifier = body.single_identifier()
    runtime = get_runtime()
    auth_scope = scope.to_scope(context_id)
    await _require_context(runtime, auth_scope)

    account = await runtime.accounts.find_by_identifier(identifier, auth_scope)
    if account is not None:
        ticket = await runtime.password_reset.request_reset(account.account_type, account.id)
        await runtime.reset_delivery(account, auth_scope, ticket)

    return Envelope(status="ok", data=MessageResponse(message=FORGOT_PASSWORD_MESSAGE))


@router.post(_SCOPED + "/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(
    scope: ScopeSegment, context_id: str, body: ResetPasswordRequest
):
    """Redeem a reset token. Every session of the account is revoked on success.

    Raises:
        400: If the token is invalid or expired, or the password is too weak
        404: If the tenant or environment does not exist
    """
    runtime = get_runtime()
    auth_scope = scope.to_scope(context_id)
    await _require_context(runtime, auth_scope)

    # A token only redeems within the context its account belongs to
    owner = await runtime.password_reset.validate_token(body.token)
    if owner is None or owner.account_type != auth_scope.account_type:
        raise TokenInvalid()
    if await runtime.accounts.get_account(owner.account_type, owner.account_id, auth_scope) is None:
        raise TokenInvalid()

    success = await runtime.password_reset.reset_password(
        body.token,
        body.new_password,
        runtime.password_updater(owner.account_type),
    )
    if not success:
        raise TokenInvalid()
    return Envelope(
        status="ok",
        data=ResetPasswordResponse(success=True, message=RESET_PASSWORD_MESSAGE),
    )


@router.post(_SCOPED + "/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest, principal: Principal = Depends(get_principal)
):
    """Change the caller's password and sign out every other device."""
    runtime = get_runtime()
    revoked = await runtime.auth.change_password(
        principal.account,
        principal.scope,
        body.current_password,
        body.new_password,
        runtime.password_updater(principal.session.account_type),
        keep_token=principal.token,
    )
    return Envelope(status="ok", data=RevokedResponse(revoked=revoked))


async def _load_actor_and_target(
    runtime: Runtime, principal: Principal, account_id: str
) -> tuple[AccountRecord, AccountRecord]:
    actor = await runtime.accounts.get_account(
        principal.session.account_type, principal.session.account_id, principal.scope
    )
    if actor is None:
        raise SessionNotFound()
    target = await runtime.accounts.get_account(
        principal.scope.account_type, account_id, principal.scope
    )
    if target is None:
        raise NotFoundError("Account not found", detail={"account_id": account_id})
    return actor, target


def _role_gate(
    verb: str, actor: AccountRecord, target: AccountRecord, scope: AuthScope
) -> None:
    decide = roles.can_disable if verb == "disable" else roles.can_enable
    actor_role = roles.effective_role(actor.role, scope)
    target_role = roles.effective_role(target.role, scope)
    if actor.id == target.id:
        # Self is refused before roles are consulted, even for roleless accounts
        decision = decide(Role.USER, actor.id, Role.USER, target.id)
    elif actor_role is None or target_role is None:
        raise AuthorizationDenied(
            f"Accounts without a role cannot {verb} other accounts",
            reason=roles.REASON_INSUFFICIENT_POWER,
        )
    else:
        decision = decide(actor_role, actor.id, target_role, target.id)
    if not decision.allowed:
        raise AuthorizationDenied(decision.message or "forbidden", reason=decision.reason or "")


@router.post(
    _SCOPED + "/accounts/{account_id}/disable", response_model=Envelope, tags=["accounts"]
)
async def disable_account(
    account_id: str,
    principal: Principal = Depends(require_role(Role.ADMIN, self_param="account_id")),
):
    """Suspend an account of lower role power and end all of its sessions."""
    runtime = get_runtime()
    actor, target = await _load_actor_and_target(runtime, principal, account_id)
    _role_gate("disable", actor, target, principal.scope)
    await runtime.accounts.set_disabled(target.account_type, target.id, True)
    revoked = await runtime.sessions.revoke_all(target.account_type, target.id)
    logger.info(
        "account_disabled", actor_id=actor.id, account_id=target.id, sessions_revoked=revoked
    )
    return Envelope(
        status="ok",
        data=AccountStatusResponse(account_id=target.id, disabled=True, sessions_revoked=revoked),
    )


@router.post(
    _SCOPED + "/accounts/{account_id}/enable", response_model=Envelope, tags=["accounts"]
)
async def enable_account(
    account_id: str,
    principal: Principal = Depends(require_role(Role.ADMIN, self_param="account_id")),
):
    runtime = get_runtime()
    actor, target = await _load_actor_and_target(runtime, principal, account_id)
    _role_gate("enable", actor, target, principal.scope)
    await runtime.accounts.set_disabled(target.account_type, target.id, False)
    logger.info("account_enabled", actor_id=actor.id, account_id=target.id)
    return Envelope(
        status="ok", data=AccountStatusResponse(account_id=target.id, disabled=False)
    )
