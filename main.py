import logging

from fastapi import FastAPI, Request
from fastapi.responses import RedirectResponse, JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.sessions import SessionMiddleware

# App components
from ident_switch.core.config import SESSION_SECRET, LOG_LEVEL, LOG_FORMAT
from ident_switch.db.init_db import init_db

# Routers
from ident_switch.api.auth import router as auth_router
from ident_switch.api.v1.accounts import router as accounts_router
from ident_switch.api.v1.identities import router as identities_router
from ident_switch.api.v1.switch import router as switch_router

logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)
log = logging.getLogger(__name__)

app = FastAPI(title="ident_switch")
# the session doubles as the per-login account context store
app.add_middleware(SessionMiddleware, secret_key=SESSION_SECRET, same_site="lax", https_only=False)
# Routes
app.include_router(auth_router)             # /auth/login, /auth/logout
app.include_router(identities_router)       # /api/v1/identities
app.include_router(accounts_router)         # /api/v1/accounts
app.include_router(switch_router)           # /api/v1/switch, /refresh, /folders, /connection


@app.on_event("startup")
async def _startup():
    # create tables if missing
    init_db()
    log.info("ident_switch started")


@app.exception_handler(StarletteHTTPException)
async def auth_redirect_handler(request: Request, exc: StarletteHTTPException):
    # 401 from an endpoint and the client wants HTML -> login page
    if exc.status_code == 401 and "text/html" in request.headers.get("accept", ""):
        return RedirectResponse("/auth/login", status_code=302)
    return JSONResponse({"detail": exc.detail}, status_code=exc.status_code)
