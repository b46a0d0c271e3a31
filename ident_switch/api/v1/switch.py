# ident_switch/api/v1/switch.py
from __future__ import annotations

from fastapi import APIRouter, Depends, Form, HTTPException, Response
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from ident_switch.db import crud
from ident_switch.db.session import get_db
from ident_switch.api.deps import get_checker, get_context
from ident_switch.schemas.accounts import ConnectionOut, FoldersIn, SwitchOption
from ident_switch.switcher.checker import UnreadChecker
from ident_switch.switcher.context import PRIMARY, NotFound, SessionContext
from ident_switch.switcher.form import PASSWORD_UNCHANGED
from ident_switch.switcher.resolver import Protocol

router = APIRouter(prefix="/api/v1", tags=["Switch"])


@router.get("/switch", response_model=list[SwitchOption], summary="Accounts the user can switch to")
async def switch_options(ctx: SessionContext = Depends(get_context), db: Session = Depends(get_db)):
    active = ctx.active_account_ref
    primary_label = ctx.shadow("username") if ctx.is_impersonating else None
    options = [SwitchOption(id=PRIMARY, label=primary_label or ctx.username, selected=active == PRIMARY)]
    for r in crud.list_enabled(db, ctx.user_id):
        options.append(SwitchOption(id=r.id, label=r.display_label(), selected=active == r.id))
    return options


@router.post("/switch", summary="Switch the mail view to another account")
async def switch(
        ident_id: int = Form(..., alias="_ident-id"),
        ctx: SessionContext = Depends(get_context),
        db: Session = Depends(get_db),
):
    result = ctx.switch_to(db, ident_id)
    if isinstance(result, NotFound):
        return Response(status_code=204)
    return RedirectResponse("/mail?_mbox=INBOX", status_code=303)


@router.post("/refresh", summary="Check other accounts for new mail")
def refresh(
        ctx: SessionContext = Depends(get_context),
        db: Session = Depends(get_db),
        checker: UnreadChecker = Depends(get_checker),
):
    report = checker.run(ctx, db)
    return {"commands": report.commands(), "total": report.total_delta}


@router.get("/folders", summary="Special folders of the active account")
async def get_folders(ctx: SessionContext = Depends(get_context), db: Session = Depends(get_db)):
    return ctx.special_folders_form(db)


@router.put("/folders", summary="Save special folders of the active account")
async def save_folders(payload: FoldersIn, ctx: SessionContext = Depends(get_context), db: Session = Depends(get_db)):
    if not ctx.save_special_folders(db, payload.model_dump()):
        raise HTTPException(status_code=404, detail="Active account not found")
    return ctx.special_folders_form(db)


@router.get("/connection/{protocol}", summary="Connection settings the mail client should use now")
async def connection(
        protocol: Protocol,
        from_identity: int | None = None,
        ctx: SessionContext = Depends(get_context),
        db: Session = Depends(get_db),
):
    params = ctx.connection_for(db, protocol, from_identity)
    if params is None:
        # keep the server-wide default configuration
        return {"protocol": protocol.value, "default": True}
    return ConnectionOut(
        protocol=params.protocol.value,
        host=params.host,
        port=params.port,
        security=params.security.value,
        username=params.username,
        password=PASSWORD_UNCHANGED if params.password else None,
    )
