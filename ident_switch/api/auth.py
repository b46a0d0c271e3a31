from __future__ import annotations
import logging

from fastapi import APIRouter, Depends, Form, Request, HTTPException
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from ident_switch.core.config import DEFAULT_IMAP_HOST, DEFAULT_IMAP_PORT
from ident_switch.core.errors import ProtocolConnectionError
from ident_switch.core.hosts import parse_host
from ident_switch.db import crud
from ident_switch.db.session import get_db
from ident_switch.db.models import User
from ident_switch.api.deps import get_current_user, require_user
from ident_switch.switcher import protocols
from ident_switch.switcher.context import SessionContext
from ident_switch.switcher.resolver import ConnectionParams, Protocol, default_port

log = logging.getLogger(__name__)

router = APIRouter(prefix="/auth")


def primary_params(username: str, password: str) -> ConnectionParams:
    spec = parse_host(DEFAULT_IMAP_HOST)
    port = DEFAULT_IMAP_PORT or default_port(Protocol.imap, spec.security)
    return ConnectionParams(Protocol.imap, spec.host or "localhost", port, spec.security, username, password)


# ---------- Login / Logout ----------
@router.post("/login")
def login_submit(
        request: Request,
        username: str = Form(...),
        password: str = Form(...),
        db: Session = Depends(get_db),
):
    username = username.strip()
    params = primary_params(username, password)
    # the mail server is the only password authority
    try:
        protocols.imap_test(params)
    except ProtocolConnectionError as e:
        log.info("Login failed for '%s': %s", username, e)
        raise HTTPException(status_code=401, detail="Invalid username or password")

    user = crud.get_or_create_user(db, username)
    request.session.clear()
    request.session["uid"] = user.id
    SessionContext(request.session, user.id, user.username).begin(params)
    log.info("User '%s' logged in", username)
    return RedirectResponse("/mail?_mbox=INBOX", status_code=303)


@router.post("/logout")
async def logout(request: Request, user: User | None = Depends(get_current_user)):
    if user is None:
        request.session.clear()
    else:
        SessionContext(request.session, user.id, user.username).end()
    return RedirectResponse("/auth/login", status_code=303)


# ---------- ME (current user JSON) ----------
@router.get("/me")
async def me(request: Request, user: User = Depends(require_user)):
    ctx = SessionContext(request.session, user.id, user.username)
    return {"id": user.id, "username": user.username, "active_account": ctx.active_account_ref}
