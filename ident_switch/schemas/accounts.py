from __future__ import annotations
from pydantic import BaseModel, EmailStr, Field

from ident_switch.db.models import AuthMode, NotifyMode


class IdentityIn(BaseModel):
    name: str | None = None
    email: EmailStr


class IdentityOut(BaseModel):
    id: int
    name: str | None
    email: str
    is_default: bool

    class Config:
        from_attributes = True


class AccountForm(BaseModel):
    # values as the identity editor submits them; validated by switcher.form
    enabled: bool = False
    label: str | None = None
    imap_host: str | None = None
    imap_security: str | None = None
    imap_port: str | int | None = None
    imap_delimiter_mode: str | None = "auto"
    imap_delimiter: str | None = None
    imap_username: str | None = None
    imap_password: str | None = None
    smtp_host: str | None = None
    smtp_security: str | None = None
    smtp_port: str | int | None = None
    smtp_auth: str | int | None = None
    smtp_username: str | None = None
    smtp_password: str | None = None
    sieve_host: str | None = None
    sieve_security: str | None = None
    sieve_port: str | int | None = None
    sieve_auth: str | int | None = None
    sieve_username: str | None = None
    sieve_password: str | None = None
    notify_check: bool = True
    notify_basic: NotifyMode = NotifyMode.inherit
    notify_sound: NotifyMode = NotifyMode.inherit
    notify_desktop: NotifyMode = NotifyMode.inherit


class ConnectionTestIn(AccountForm):
    email: EmailStr


class AliasIn(BaseModel):
    parent_id: int
    label: str | None = Field(default=None, max_length=32)


class AccountOut(BaseModel):
    id: int
    iid: int
    parent_id: int | None
    enabled: bool
    label: str | None
    email: str | None
    imap_host: str | None
    imap_port: int | None
    username: str | None
    password: str | None
    smtp_host: str | None
    smtp_port: int | None
    smtp_auth: AuthMode
    smtp_username: str | None
    smtp_password: str | None
    sieve_host: str | None
    sieve_port: int | None
    sieve_auth: AuthMode
    sieve_username: str | None
    sieve_password: str | None
    notify_check: bool

    class Config:
        from_attributes = True


class SwitchOption(BaseModel):
    id: int
    label: str
    selected: bool = False


class FoldersIn(BaseModel):
    drafts: str | None = None
    sent: str | None = None
    junk: str | None = None
    trash: str | None = None


class ConnectionOut(BaseModel):
    protocol: str
    host: str
    port: int
    security: str
    username: str
    password: str | None
