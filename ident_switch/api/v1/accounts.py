# ident_switch/api/v1/accounts.py
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ident_switch.db import crud
from ident_switch.db.session import get_db
from ident_switch.db.models import IdentSwitchAccount, User
from ident_switch.api.deps import require_user, get_preconfig
from ident_switch.core.errors import ConfigurationError, ConsistencyError, CredentialError, ProtocolConnectionError
from ident_switch.schemas.accounts import AccountForm, AccountOut, AliasIn, ConnectionTestIn
from ident_switch.switcher import form
from ident_switch.switcher.preconfig import Preconfig

router = APIRouter(prefix="/api/v1/accounts", tags=["Accounts"])


def _mask(secret_enc: str | None) -> str | None:
    return form.PASSWORD_UNCHANGED if secret_enc else None


def _out(r: IdentSwitchAccount) -> AccountOut:
    return AccountOut(
        id=r.id, iid=r.iid, parent_id=r.parent_id, enabled=r.enabled,
        label=r.label, email=r.email,
        imap_host=r.imap_host, imap_port=r.imap_port,
        username=r.username, password=_mask(r.password),
        smtp_host=r.smtp_host, smtp_port=r.smtp_port, smtp_auth=r.smtp_auth,
        smtp_username=r.smtp_username, smtp_password=_mask(r.smtp_password),
        sieve_host=r.sieve_host, sieve_port=r.sieve_port, sieve_auth=r.sieve_auth,
        sieve_username=r.sieve_username, sieve_password=_mask(r.sieve_password),
        notify_check=r.notify_check,
    )


def http_error(e: Exception) -> HTTPException:
    if isinstance(e, ConfigurationError):
        return HTTPException(status_code=422, detail={"code": e.code, "field": e.field})
    if isinstance(e, CredentialError):
        return HTTPException(status_code=422, detail={"code": e.code, "message": str(e)})
    if isinstance(e, ConsistencyError):
        return HTTPException(status_code=409, detail={"code": e.code, "message": str(e)})
    if isinstance(e, ProtocolConnectionError):
        return HTTPException(status_code=400, detail={"code": e.code, "message": str(e)})
    return HTTPException(status_code=500, detail=str(e))


def _identity(db: Session, user: User, iid: int):
    identity = crud.get_identity(db, user.id, iid)
    if identity is None:
        raise HTTPException(status_code=404, detail="Identity not found")
    return identity


@router.get("", summary="List account records of the current user", response_model=list[AccountOut])
async def list_accounts(user: User = Depends(require_user), db: Session = Depends(get_db)):
    return [_out(r) for r in crud.list_all(db, user.id)]


@router.post("/test-connection", summary="Test candidate settings without saving")
def test_connection(payload: ConnectionTestIn, user: User = Depends(require_user)):
    try:
        data = form.validate(payload.model_dump(exclude={"email"}))
        form.check_connections(data, payload.email)
    except (ConfigurationError, CredentialError, ProtocolConnectionError) as e:
        raise http_error(e)
    return {"ok": True}


@router.get("/{iid}", summary="Editor values for one identity")
async def get_account_form(
        iid: int,
        user: User = Depends(require_user),
        db: Session = Depends(get_db),
        preconfig: Preconfig = Depends(get_preconfig),
):
    identity = _identity(db, user, iid)
    return form.form_data(identity, crud.find_by_identity(db, user.id, iid), preconfig)


@router.put("/{iid}", summary="Save account settings for one identity")
def save_account(
        iid: int,
        payload: AccountForm,
        user: User = Depends(require_user),
        db: Session = Depends(get_db),
        preconfig: Preconfig = Depends(get_preconfig),
):
    identity = _identity(db, user, iid)
    try:
        row = form.submit(db, user.id, identity, payload.model_dump(), preconfig)
    except (ConfigurationError, CredentialError, ProtocolConnectionError) as e:
        raise http_error(e)
    if row is None:
        return {"saved": False}
    return {"saved": True, "id": row.id}


@router.post("/{iid}/alias", status_code=201, summary="Make an identity an alias of another account")
async def create_alias(
        iid: int,
        payload: AliasIn,
        user: User = Depends(require_user),
        db: Session = Depends(get_db),
):
    identity = _identity(db, user, iid)
    if identity.is_default:
        raise HTTPException(status_code=400, detail="The default identity cannot be an alias")
    try:
        row = form.save_alias(db, user.id, iid, payload.parent_id, payload.label)
    except (ConfigurationError, ConsistencyError) as e:
        raise http_error(e)
    return {"id": row.id, "parent_id": row.parent_id}
