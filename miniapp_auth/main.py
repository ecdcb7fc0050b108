# miniapp_auth/main.py
#
# -----------------------------------------------------------------------------
# Architectural notes (high level)
# -----------------------------------------------------------------------------
# This file is "thin" orchestration glue:
#   - It wires HTTP endpoints and the session gate to the primitives
#     implemented elsewhere.
#   - It MUST NOT implement crypto itself (launch data verification lives in
#     init_data.py, session tokens in session_tokens.py).
#   - It keeps no session state: the cookie is the session.
#
# Key modules / responsibilities:
#   - config.py          : environment-driven settings
#   - init_data.py       : Telegram launch data (initData) HMAC verification
#   - session_tokens.py  : HS256 session token issue/verify
#   - sessions.py        : login / check / sliding renewal
#   - audit.py           : append-only audit log (security telemetry)
#
# Request flow:
#   - POST /api/auth     : initData -> Verified -> session cookie
#   - every request      : gate reads cookie; protected prefixes redirect to
#                          "/" without a session; a valid session is
#                          re-issued on the way out (sliding expiry)
#   - POST /api/logout   : cookie overwritten with "" and an expiry in 1970
# -----------------------------------------------------------------------------

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional
import time

from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response
from fastapi.templating import Jinja2Templates

from .audit import AuditLog, NullAuditLog, build_common
from .config import BASE_DIR, Settings, settings
from .init_data import InitDataVerifier, Rejected
from .logger import get_logger, setup_logging
from .models import AuthRequest
from .session_tokens import SessionCodec
from .sessions import Clock, IssuedSession, SessionManager

logger = get_logger(__name__)

templates = Jinja2Templates(directory=str(BASE_DIR / "templates"))


# -----------------------------------------------------------------------------
# Cookie helpers
# -----------------------------------------------------------------------------
def _epoch_to_datetime(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def _set_session_cookie(response: Response, cfg: Settings, issued: IssuedSession) -> None:
    response.set_cookie(
        cfg.SESSION_COOKIE_NAME,
        issued.token,
        expires=_epoch_to_datetime(issued.expires_at),
        httponly=True,
        secure=cfg.COOKIE_SECURE,
        samesite="lax",
    )


def _clear_session_cookie(response: Response, cfg: Settings) -> None:
    response.set_cookie(
        cfg.SESSION_COOKIE_NAME,
        "",
        expires=_epoch_to_datetime(0),
        httponly=True,
        secure=cfg.COOKIE_SECURE,
        samesite="lax",
    )


def _sets_cookie(response: Response, name: str) -> bool:
    prefix = f"{name}="
    return any(v.startswith(prefix) for v in response.headers.getlist("set-cookie"))


def _is_protected(path: str, prefixes: list[str]) -> bool:
    return any(path == p or path.startswith(p + "/") for p in prefixes)


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


# -----------------------------------------------------------------------------
# FastAPI application
# -----------------------------------------------------------------------------
def create_app(cfg: Optional[Settings] = None, clock: Clock = time.time) -> FastAPI:
    cfg = cfg or settings

    verifier = InitDataVerifier(cfg.BOT_TOKEN, cfg.INIT_DATA_MAX_AGE_SECONDS)
    sessions = SessionManager(SessionCodec(cfg.signing_key), cfg.SESSION_TTL_SECONDS, clock)
    audit = AuditLog(cfg.AUDIT_DIR) if cfg.AUDIT_ENABLED else NullAuditLog()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(cfg.LOG_LEVEL)
        logger.info("Mini app auth server starting")
        logger.info(f"Session TTL: {cfg.SESSION_TTL_SECONDS}s, initData max age: {cfg.INIT_DATA_MAX_AGE_SECONDS}s")
        logger.info(f"Protected prefixes: {', '.join(cfg.PROTECTED_PREFIXES) or '(none)'}")
        if not verifier.configured:
            logger.warning("BOT_TOKEN is not set; every login will be rejected")
        yield

    app = FastAPI(title="Mini App Auth Server", version="0.1.0", lifespan=lifespan)
    app.state.settings = cfg
    app.state.verifier = verifier
    app.state.sessions = sessions
    app.state.audit = audit

    # -------------------------------------------------------------------------
    # Session gate
    # -------------------------------------------------------------------------
    @app.middleware("http")
    async def session_gate(request: Request, call_next):
        token = request.cookies.get(cfg.SESSION_COOKIE_NAME)
        check = sessions.check(token)
        request.state.session = check.claims

        if check.failure is not None:
            logger.debug(f"Session cookie rejected: {check.failure.value}")

        if check.claims is None:
            if _is_protected(request.url.path, cfg.PROTECTED_PREFIXES):
                return RedirectResponse("/", status_code=307)
            return await call_next(request)

        # renew before the handler so it sees the expiry the response will carry
        renewed = sessions.refresh(check.claims)
        request.state.session = renewed.claims

        response = await call_next(request)

        # login/logout set the cookie themselves; their value wins
        if not _sets_cookie(response, cfg.SESSION_COOKIE_NAME):
            _set_session_cookie(response, cfg, renewed)
            logger.debug(f"Session renewed for user {renewed.claims.user.id} until {renewed.expires_at}")

        return response

    # -------------------------------------------------------------------------
    # API
    # -------------------------------------------------------------------------
    @app.post("/api/auth")
    def login(request: Request, body: AuthRequest):
        now = sessions.now()
        outcome = verifier.verify(body.initData, now)

        common = build_common(
            event="login",
            init_data=body.initData,
            request_ip=_client_ip(request),
            user_agent=request.headers.get("user-agent"),
            now=now,
        )

        if isinstance(outcome, Rejected):
            audit.append({**common, "result": "denied", "reason": outcome.reason.value})
            logger.warning(f"Login rejected: {outcome.reason.value}")
            return JSONResponse(
                {"message": outcome.message, "reason": outcome.reason.value},
                status_code=401,
            )

        issued = sessions.login(outcome, now)
        audit.append(
            {
                **common,
                "user_id": outcome.user.id,
                "result": "approved",
                "reason": "signature_valid",
                "expires_at": issued.expires_at,
            }
        )
        logger.info(f"Login approved for user {outcome.user.id}")

        response = JSONResponse({"message": "Authentication successful"})
        _set_session_cookie(response, cfg, issued)
        return response

    @app.post("/api/logout")
    def logout(request: Request):
        claims = request.state.session
        audit.append(
            {
                **build_common(
                    event="logout",
                    user_id=claims.user.id if claims else None,
                    request_ip=_client_ip(request),
                    user_agent=request.headers.get("user-agent"),
                    now=sessions.now(),
                ),
                "result": "cleared",
            }
        )

        response = JSONResponse({"message": "Logout successful"})
        _clear_session_cookie(response, cfg)
        return response

    @app.get("/api/session")
    def whoami(request: Request):
        claims = request.state.session
        if claims is None:
            return JSONResponse({"isAuthenticated": False}, status_code=401)
        return {
            "isAuthenticated": True,
            "user": claims.user.model_dump(),
            "expiresAt": claims.expires_at,
        }

    @app.get("/health")
    def health():
        return {"status": "healthy"}

    # -------------------------------------------------------------------------
    # Pages
    # -------------------------------------------------------------------------
    @app.get("/", response_class=HTMLResponse)
    def landing(request: Request):
        return templates.TemplateResponse(
            request,
            "landing.html",
            {"session": request.state.session},
        )

    @app.get("/protected", response_class=HTMLResponse)
    def protected(request: Request):
        claims = request.state.session
        if claims is None:
            return RedirectResponse("/", status_code=307)
        return templates.TemplateResponse(request, "protected.html", {"session": claims})

    return app


app = create_app()
