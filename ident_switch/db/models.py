from __future__ import annotations
from sqlalchemy.orm import declarative_base, relationship, Mapped, mapped_column
from sqlalchemy import String, DateTime, Boolean, ForeignKey, Integer, Enum, UniqueConstraint, Text
from datetime import datetime, timezone
import enum
from typing import Optional

from ident_switch.core.hosts import parse_host

Base = declarative_base()

FOLDER_TYPES = ("drafts", "sent", "junk", "trash")


class AuthMode(int, enum.Enum):
    """SMTP / Sieve credential choice."""
    imap = 1      # same credentials as IMAP
    none = 2      # no authentication
    custom = 3    # protocol's own username + password


class NotifyMode(str, enum.Enum):
    """Per-account override of a global notification default."""
    inherit = "inherit"
    on = "on"
    off = "off"

    def resolve(self, default: bool) -> bool:
        if self is NotifyMode.inherit:
            return bool(default)
        return self is NotifyMode.on


class User(Base):
    __tablename__ = "users"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    username: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    identities: Mapped[list["Identity"]] = relationship(back_populates="user", cascade="all, delete-orphan", passive_deletes=True)


class Identity(Base):
    """Sender profile of the host webmail. The default identity never has an account record."""
    __tablename__ = "identities"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    name: Mapped[str | None] = mapped_column(String(128))
    email: Mapped[str] = mapped_column(String(128))
    is_default: Mapped[bool] = mapped_column(Boolean, default=False)

    user: Mapped[User] = relationship(back_populates="identities")
    account: Mapped[Optional["IdentSwitchAccount"]] = relationship(
        back_populates="identity", cascade="all, delete-orphan", passive_deletes=True, uselist=False
    )


class IdentSwitchAccount(Base):
    """
    One row per separate account or alias.

    An alias (parent_id set) inherits every protocol setting from its parent;
    only parent_id, label and enabled carry meaning on the alias row itself.
    Hosts are stored with their ssl:// / tls:// prefix.
    """
    __tablename__ = "ident_switch"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    iid: Mapped[int] = mapped_column(ForeignKey("identities.id", ondelete="CASCADE"), unique=True, index=True)
    parent_id: Mapped[int | None] = mapped_column(ForeignKey("ident_switch.id", ondelete="CASCADE"), index=True)

    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    label: Mapped[str | None] = mapped_column(String(32))

    # IMAP
    imap_host: Mapped[str | None] = mapped_column(String(64))
    imap_port: Mapped[int | None] = mapped_column(Integer)
    imap_delimiter: Mapped[str | None] = mapped_column(String(1))
    username: Mapped[str | None] = mapped_column(String(64))
    password: Mapped[str | None] = mapped_column(Text)
    # records written before hosts carried a scheme prefix
    secure_imap: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # SMTP
    smtp_host: Mapped[str | None] = mapped_column(String(64))
    smtp_port: Mapped[int | None] = mapped_column(Integer)
    smtp_auth: Mapped[AuthMode] = mapped_column(Enum(AuthMode), nullable=False, default=AuthMode.imap)
    smtp_username: Mapped[str | None] = mapped_column(String(64))
    smtp_password: Mapped[str | None] = mapped_column(Text)

    # ManageSieve (no host = feature disabled)
    sieve_host: Mapped[str | None] = mapped_column(String(64))
    sieve_port: Mapped[int | None] = mapped_column(Integer)
    sieve_auth: Mapped[AuthMode] = mapped_column(Enum(AuthMode), nullable=False, default=AuthMode.imap)
    sieve_username: Mapped[str | None] = mapped_column(String(64))
    sieve_password: Mapped[str | None] = mapped_column(Text)

    # New mail notifications
    notify_check: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    notify_basic: Mapped[NotifyMode] = mapped_column(Enum(NotifyMode), nullable=False, default=NotifyMode.inherit)
    notify_sound: Mapped[NotifyMode] = mapped_column(Enum(NotifyMode), nullable=False, default=NotifyMode.inherit)
    notify_desktop: Mapped[NotifyMode] = mapped_column(Enum(NotifyMode), nullable=False, default=NotifyMode.inherit)

    # Special folders, editable only while switched to this account
    drafts_mbox: Mapped[str | None] = mapped_column(String(64))
    sent_mbox: Mapped[str | None] = mapped_column(String(64))
    junk_mbox: Mapped[str | None] = mapped_column(String(64))
    trash_mbox: Mapped[str | None] = mapped_column(String(64))

    identity: Mapped[Identity] = relationship(back_populates="account")

    __table_args__ = (
        UniqueConstraint("user_id", "label", name="uq_ident_switch_user_label"),
    )

    @property
    def is_alias(self) -> bool:
        return self.parent_id is not None

    @property
    def email(self) -> str | None:
        return self.identity.email if self.identity is not None else None

    def folders(self) -> dict[str, str]:
        out = {}
        for t in FOLDER_TYPES:
            v = getattr(self, f"{t}_mbox")
            if v:
                out[t] = v
        return out

    def display_label(self) -> str:
        """Label, else username or email; a bare username gets "@host" appended."""
        if self.label:
            return self.label
        name = self.username or self.email or ""
        if "@" in name:
            return name
        return f"{name}@{parse_host(self.imap_host).host or 'localhost'}"
