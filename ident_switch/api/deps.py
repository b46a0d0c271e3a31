from __future__ import annotations
from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from ident_switch.db.session import get_db
from ident_switch.db.models import User
from ident_switch.switcher.checker import UnreadChecker
from ident_switch.switcher.context import SessionContext
from ident_switch.switcher.preconfig import Preconfig


async def get_current_user(request: Request, db: Session = Depends(get_db)) -> User | None:
    uid = request.session.get("uid")
    if not uid:
        return None
    return db.get(User, uid)


async def require_user(user: User | None = Depends(get_current_user)) -> User:
    if not user:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return user


async def get_context(request: Request, user: User = Depends(require_user)) -> SessionContext:
    return SessionContext(request.session, user.id, user.username)


def get_preconfig() -> Preconfig:
    return Preconfig.load()


def get_checker() -> UnreadChecker:
    return UnreadChecker()
