# ident_switch/api/v1/identities.py
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Response
from sqlalchemy.orm import Session

from ident_switch.db import crud
from ident_switch.db.session import get_db
from ident_switch.db.models import User
from ident_switch.api.deps import require_user, get_context
from ident_switch.schemas.accounts import IdentityIn, IdentityOut
from ident_switch.switcher.context import PRIMARY, SessionContext

router = APIRouter(prefix="/api/v1/identities", tags=["Identities"])


@router.get("", response_model=list[IdentityOut])
async def list_identities(user: User = Depends(require_user), db: Session = Depends(get_db)):
    return crud.list_identities(db, user.id)


@router.post("", status_code=201, response_model=IdentityOut)
async def create_identity(payload: IdentityIn, user: User = Depends(require_user), db: Session = Depends(get_db)):
    return crud.create_identity(db, user.id, str(payload.email), payload.name)


@router.delete("/{iid}", status_code=204)
async def delete_identity(
        iid: int,
        user: User = Depends(require_user),
        ctx: SessionContext = Depends(get_context),
        db: Session = Depends(get_db),
):
    identity = crud.get_identity(db, user.id, iid)
    if identity is None:
        raise HTTPException(status_code=404, detail="Not found")
    if identity.is_default:
        raise HTTPException(status_code=400, detail="The default identity cannot be deleted")
    # leave the mailbox before its record disappears
    if ctx.active_identity_ref == iid:
        ctx.switch_to(db, PRIMARY)
    crud.delete_identity(db, user.id, iid)
    return Response(status_code=204)
