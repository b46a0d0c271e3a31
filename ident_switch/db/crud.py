# ident_switch/db/crud.py
"""
Account record store.

Every query takes the owning user's id as its first argument and filters on
it; there is no unscoped lookup, so one user can never reach another user's
records.
"""
from __future__ import annotations
import logging
from typing import Mapping

from sqlalchemy import select, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from ident_switch.db.models import IdentSwitchAccount, Identity, User, FOLDER_TYPES

log = logging.getLogger(__name__)


def _scoped(user_id: int):
    return (
        select(IdentSwitchAccount)
        .options(joinedload(IdentSwitchAccount.identity))
        .where(IdentSwitchAccount.user_id == user_id)
    )


def find_by_identity(db: Session, user_id: int, identity_ref: int) -> IdentSwitchAccount | None:
    q = _scoped(user_id).where(IdentSwitchAccount.iid == identity_ref)
    return db.execute(q).scalar_one_or_none()


def find_by_id(db: Session, user_id: int, account_id: int) -> IdentSwitchAccount | None:
    q = _scoped(user_id).where(IdentSwitchAccount.id == account_id)
    return db.execute(q).scalar_one_or_none()


def list_enabled(db: Session, user_id: int, exclude_id: int | None = None) -> list[IdentSwitchAccount]:
    q = _scoped(user_id).where(IdentSwitchAccount.enabled == True)
    if exclude_id is not None:
        q = q.where(IdentSwitchAccount.id != exclude_id)
    return list(db.execute(q.order_by(IdentSwitchAccount.id)).scalars().all())


def list_checkable(db: Session, user_id: int) -> list[IdentSwitchAccount]:
    # aliases have no mailbox of their own
    q = _scoped(user_id).where(
        IdentSwitchAccount.enabled == True,
        IdentSwitchAccount.notify_check == True,
        IdentSwitchAccount.parent_id.is_(None),
    )
    return list(db.execute(q.order_by(IdentSwitchAccount.id)).scalars().all())


def label_taken(db: Session, user_id: int, label: str, exclude_identity: int | None = None) -> bool:
    q = select(IdentSwitchAccount.id).where(
        IdentSwitchAccount.user_id == user_id, IdentSwitchAccount.label == label
    )
    if exclude_identity is not None:
        q = q.where(IdentSwitchAccount.iid != exclude_identity)
    return db.execute(q.limit(1)).first() is not None


def upsert(db: Session, record: IdentSwitchAccount) -> IdentSwitchAccount:
    """Insert or update keyed by (user_id, iid)."""
    existing = find_by_identity(db, record.user_id, record.iid)
    if existing is not None and existing is not record:
        for col in IdentSwitchAccount.__table__.columns:
            if col.key == "id":
                continue
            value = getattr(record, col.key)
            # unset flags on a fresh object keep the stored value
            if value is None and not col.nullable:
                continue
            setattr(existing, col.key, value)
        record = existing
    db.add(record)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise
    db.refresh(record)
    return record


def delete_by_identity(db: Session, user_id: int, identity_ref: int) -> bool:
    res = db.execute(
        delete(IdentSwitchAccount).where(
            IdentSwitchAccount.user_id == user_id,
            IdentSwitchAccount.iid == identity_ref,
        )
    )
    db.commit()
    if res.rowcount:
        log.info("Deleted account data for identity %s (user %s)", identity_ref, user_id)
        return True
    return False


def disable(db: Session, user_id: int, identity_ref: int) -> None:
    row = find_by_identity(db, user_id, identity_ref)
    if row is not None and row.enabled:
        row.enabled = False
        db.commit()
        log.info("Disabled account switching for identity %s", identity_ref)


def update_special_folders(db: Session, user_id: int, account_id: int, folders: Mapping[str, str | None]) -> bool:
    row = find_by_id(db, user_id, account_id)
    if row is None:
        return False
    for t in FOLDER_TYPES:
        setattr(row, f"{t}_mbox", folders.get(t) or None)
    db.commit()
    return True


# --- host framework side: users and identities ---

def get_or_create_user(db: Session, username: str) -> User:
    row = db.execute(select(User).where(User.username == username)).scalar_one_or_none()
    if row is None:
        row = User(username=username)
        db.add(row)
        db.flush()
        # the login address is always the default identity
        db.add(Identity(user_id=row.id, name=username, email=username, is_default=True))
        db.commit()
        db.refresh(row)
        log.info("Created user %s", username)
    return row


def get_identity(db: Session, user_id: int, identity_id: int) -> Identity | None:
    q = select(Identity).where(Identity.user_id == user_id, Identity.id == identity_id)
    return db.execute(q).scalar_one_or_none()


def list_identities(db: Session, user_id: int) -> list[Identity]:
    q = select(Identity).where(Identity.user_id == user_id).order_by(Identity.id)
    return list(db.execute(q).scalars().all())


def list_all(db: Session, user_id: int) -> list[IdentSwitchAccount]:
    return list(db.execute(_scoped(user_id).order_by(IdentSwitchAccount.id)).scalars().all())


def create_identity(db: Session, user_id: int, email: str, name: str | None = None) -> Identity:
    row = Identity(user_id=user_id, email=email, name=name, is_default=False)
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


def delete_identity(db: Session, user_id: int, identity_id: int) -> bool:
    row = get_identity(db, user_id, identity_id)
    if row is None:
        return False
    delete_by_identity(db, user_id, identity_id)
    db.delete(row)
    db.commit()
    log.info("Deleted identity %s (user %s)", identity_id, user_id)
    return True
