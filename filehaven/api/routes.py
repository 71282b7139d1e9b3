from __future__ import annotations

from typing import Optional
from urllib.parse import urlencode

from fastapi import (
    APIRouter,
    BackgroundTasks,
    Path,
    Query,
    Request,
    Response,
)
from fastapi.responses import RedirectResponse

from filehaven.api.schemas import (
    CurrentUserResponse,
    Envelope,
    LoginLogDeleteResponse,
    LoginLogListResponse,
    LoginLogResponse,
    LoginRequest,
    RegisterRequest,
    SessionUser,
    SessionView,
    UserDeleteResponse,
    UserListResponse,
    UserResponse,
    UserUpdateRequest,
)
from filehaven.config import Settings
from filehaven.logging import get_logger
from filehaven.service.auth import AuthProvider
from filehaven.service.errors import (
    AuthenticationError,
    InvalidCredentialsError,
    NotFoundError,
)
from filehaven.service.runtime import Runtime, get_runtime
from filehaven.service.tokens import SessionClaims, reconstruct_session_view
from filehaven.storage.models import LoginLog, User

logger = get_logger(__name__)

router = APIRouter(prefix="/api")

OAUTH_STATE_COOKIE = "filehaven.oauth-state"


def _apply_session_cookie(response: Response, token: str, settings: Settings) -> None:
    response.set_cookie(
        settings.session_cookie_name,
        token,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
        max_age=settings.session_ttl_minutes * 60,
        path="/",
    )


def _clear_session_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        settings.session_cookie_name,
        path="/",
        secure=settings.is_production,
        httponly=True,
        samesite="lax",
    )


def _current_claims(runtime: Runtime, request: Request) -> Optional[SessionClaims]:
    return runtime.access.session_claims(request.cookies)


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        name=user.name,
        phone=user.phone,
        provider=user.provider,
        role=user.role,
        created_at=user.created_at,
        updated_at=user.updated_at,
    )


def _login_log_response(entry: LoginLog) -> LoginLogResponse:
    return LoginLogResponse(
        id=entry.id,
        email=entry.email,
        user_id=entry.user_id,
        provider=entry.provider,
        ip=entry.ip,
        device=entry.device,
        timestamp=entry.timestamp,
    )


def _session_view(claims: SessionClaims) -> SessionView:
    view = reconstruct_session_view(claims)
    return SessionView(user=SessionUser(**view["user"]))


@router.post("/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create a locally registered identity.

    Raises:
        409: If the email or phone is already registered
    """
    runtime = get_runtime()
    user = await runtime.auth.register(
        body.email, body.password, name=body.name, phone=body.phone
    )
    return Envelope(status="ok", data=_user_response(user))


@router.post("/auth/callback/credentials", response_model=Envelope, tags=["auth"])
async def credentials_signin(
    body: LoginRequest,
    request: Request,
    response: Response,
    background_tasks: BackgroundTasks,
):
    """Sign in with email and password and set the session cookie.

    Unknown email, federated-only account and wrong password all produce the
    same 401.
    """
    runtime = get_runtime()
    verified = await runtime.auth.verify_credentials(body.email, body.password)
    user = None
    if verified is not None:
        user = await runtime.auth.resolve_identity(
            verified.email, verified.name, AuthProvider.CREDENTIALS, identity=verified
        )
    if user is None:
        raise InvalidCredentialsError()
    claims, token = runtime.auth.issue_session(user)
    _apply_session_cookie(response, token, runtime.settings)
    background_tasks.add_task(
        runtime.activity.record,
        user.email,
        user.id,
        AuthProvider.CREDENTIALS.value,
        dict(request.headers),
    )
    logger.info("login_succeeded", user_id=user.id, provider=AuthProvider.CREDENTIALS.value)
    return Envelope(status="ok", data=_session_view(claims))


@router.get("/auth/signin/google", tags=["auth"])
async def google_signin(
    callback_url: Optional[str] = Query(None, alias="callbackUrl", max_length=2048),
):
    runtime = get_runtime()
    authorization_url, state_cookie = runtime.auth.start_google_signin(callback_url)
    redirect = RedirectResponse(authorization_url, status_code=302)
    redirect.set_cookie(
        OAUTH_STATE_COOKIE,
        state_cookie,
        httponly=True,
        secure=runtime.settings.is_production,
        samesite="lax",
        max_age=10 * 60,
        path="/api/auth",
    )
    return redirect


@router.get("/auth/callback/google", tags=["auth"])
async def google_callback(
    request: Request,
    background_tasks: BackgroundTasks,
    code: Optional[str] = Query(None, max_length=512),
    state: Optional[str] = Query(None, max_length=128),
):
    """Finish Google sign-in and send the browser back to its callback target."""
    runtime = get_runtime()
    settings = runtime.settings
    try:
        result = await runtime.auth.complete_google_signin(
            code, state, request.cookies.get(OAUTH_STATE_COOKIE)
        )
    except AuthenticationError as exc:
        logger.warning("google_signin_failed", reason=exc.message)
        failure = RedirectResponse(
            f"{settings.signin_path}?{urlencode({'error': 'OAuthCallback'})}",
            status_code=302,
        )
        failure.delete_cookie(OAUTH_STATE_COOKIE, path="/api/auth")
        return failure

    user = result.user
    _, token = runtime.auth.issue_session(user, picture=result.picture)
    redirect = RedirectResponse(result.callback_url, status_code=302)
    _apply_session_cookie(redirect, token, settings)
    redirect.delete_cookie(OAUTH_STATE_COOKIE, path="/api/auth")
    background_tasks.add_task(
        runtime.activity.record,
        user.email,
        user.id,
        AuthProvider.GOOGLE.value,
        dict(request.headers),
    )
    logger.info("login_succeeded", user_id=user.id, provider=AuthProvider.GOOGLE.value)
    return redirect


@router.get("/auth/session", response_model=Envelope, tags=["auth"])
async def get_session(request: Request):
    runtime = get_runtime()
    claims = _current_claims(runtime, request)
    return Envelope(status="ok", data=_session_view(claims) if claims else None)


@router.post("/auth/signout", response_model=Envelope, tags=["auth"])
async def signout(response: Response):
    runtime = get_runtime()
    _clear_session_cookie(response, runtime.settings)
    return Envelope(status="ok", data={"signed_out": True})


@router.get("/user", response_model=Envelope, tags=["users"])
async def current_user(request: Request):
    """Identity of the signed-in caller, all fields null when signed out."""
    runtime = get_runtime()
    claims = _current_claims(runtime, request)
    if claims is None:
        return Envelope(status="ok", data=CurrentUserResponse())
    return Envelope(
        status="ok",
        data=CurrentUserResponse(
            id=claims.id, name=claims.name, email=claims.email, role=claims.role
        ),
    )


@router.get("/users", response_model=Envelope, tags=["users"])
async def list_users(limit: int = Query(100, ge=1, le=1000)):
    runtime = get_runtime()
    users = runtime.store.list_users(limit=limit)
    return Envelope(
        status="ok", data=UserListResponse(items=[_user_response(u) for u in users])
    )


@router.get("/users/{user_id}", response_model=Envelope, tags=["users"])
async def get_user(user_id: str = Path(..., max_length=128)):
    runtime = get_runtime()
    user = runtime.store.get_user(user_id)
    if user is None:
        raise NotFoundError("user not found", detail={"user_id": user_id})
    return Envelope(status="ok", data=_user_response(user))


@router.put("/users/{user_id}", response_model=Envelope, tags=["users"])
async def update_user(body: UserUpdateRequest, user_id: str = Path(..., max_length=128)):
    """Change the display name, phone or role of one identity.

    Raises:
        404: If no identity has this id
        409: If the phone belongs to another identity
    """
    runtime = get_runtime()
    user = runtime.store.update_user(
        user_id, name=body.name, phone=body.phone, role=body.role
    )
    if user is None:
        raise NotFoundError("user not found", detail={"user_id": user_id})
    logger.info("user_updated", user_id=user_id, role=user.role)
    return Envelope(status="ok", data=_user_response(user))


@router.delete("/users/{user_id}", response_model=Envelope, tags=["users"])
async def delete_user(user_id: str = Path(..., max_length=128)):
    """Delete one identity along with its credential and login history."""
    runtime = get_runtime()
    if not runtime.store.delete_user(user_id):
        raise NotFoundError("user not found", detail={"user_id": user_id})
    logger.info("user_deleted", user_id=user_id)
    return Envelope(status="ok", data=UserDeleteResponse(user_id=user_id, deleted=True))


@router.get("/loginlog", response_model=Envelope, tags=["audit"])
async def list_login_logs(limit: int = Query(500, ge=1, le=5000)):
    runtime = get_runtime()
    entries = runtime.store.list_login_logs(limit=limit)
    return Envelope(
        status="ok",
        data=LoginLogListResponse(items=[_login_log_response(e) for e in entries]),
    )


@router.get("/loginlog/{user_id}", response_model=Envelope, tags=["audit"])
async def list_user_login_logs(user_id: str = Path(..., max_length=128)):
    runtime = get_runtime()
    entries = runtime.store.list_login_logs_for_user(user_id)
    return Envelope(
        status="ok",
        data=LoginLogListResponse(items=[_login_log_response(e) for e in entries]),
    )


@router.delete("/loginlog/{user_id}", response_model=Envelope, tags=["audit"])
async def delete_user_login_logs(user_id: str = Path(..., max_length=128)):
    runtime = get_runtime()
    deleted = runtime.store.delete_login_logs_for_user(user_id)
    logger.info("login_logs_purged", user_id=user_id, deleted_count=deleted)
    return Envelope(
        status="ok",
        data=LoginLogDeleteResponse(user_id=user_id, deleted_count=deleted),
    )
