"""
Per-session "active account" context.

The session store is an opaque mutable mapping (Starlette's request.session
in production, a plain dict in tests). Live slots hold whatever account the
mail view currently talks to; when the user first leaves the primary account
the primary's values are copied into shadow slots (key + MY_POSTFIX) and
restored from there on the way back.
"""
from __future__ import annotations
import logging
import time
from dataclasses import dataclass
from typing import Any, MutableMapping, Union

from sqlalchemy.orm import Session

from ident_switch.core import crypto
from ident_switch.core.hosts import Security
from ident_switch.db import crud
from ident_switch.db.models import FOLDER_TYPES, IdentSwitchAccount
from ident_switch.switcher.resolver import (
    ConnectionParams, Protocol, Unavailable, resolve, record_lookup,
)

log = logging.getLogger(__name__)

MY_POSTFIX = "_iswitch"
PRIMARY = -1
PRIMARY_COUNT_KEY = 0

ACTIVE_KEY = "account" + MY_POSTFIX
ACTIVE_IID_KEY = "iid" + MY_POSTFIX
COUNTS_KEY = "ident_switch_counts"
CURSOR_KEY = "ident_switch_check_index"

STORAGE_KEYS = ("storage_host", "storage_port", "storage_ssl")
CREDENTIAL_KEYS = ("username", "password", "imap_delimiter")
FOLDER_KEYS = tuple(f"{t}_mbox" for t in FOLDER_TYPES)
LIVE_KEYS = STORAGE_KEYS + CREDENTIAL_KEYS + FOLDER_KEYS

# cached by the host's mail view for the current mailbox only
VOLATILE_KEYS = ("folders", "unseen_count")


def _override_key(folder_type: str) -> str:
    return f"{folder_type}_mbox_account{MY_POSTFIX}"


@dataclass(frozen=True)
class Primary:
    pass


@dataclass(frozen=True)
class SwitchedTo:
    account_id: int


@dataclass(frozen=True)
class NotFound:
    account_id: int
    reason: str = "not-found"


SwitchResult = Union[Primary, SwitchedTo, NotFound]


class SessionContext:
    def __init__(self, store: MutableMapping[str, Any], user_id: int, username: str):
        self.store = store
        self.user_id = user_id
        self.username = username

    # --- lifecycle ---

    def begin(self, params: ConnectionParams, folders: dict[str, str | None] | None = None) -> None:
        """Populate the live slots for a fresh login on the primary account."""
        self.store["storage_host"] = params.host
        self.store["storage_port"] = params.port
        self.store["storage_ssl"] = params.security.value if params.security is not Security.none else None
        self.store["username"] = params.username
        self.store["password"] = crypto.encrypt(params.password)
        self.store["imap_delimiter"] = None
        for t in FOLDER_TYPES:
            self.store[f"{t}_mbox"] = (folders or {}).get(t)
        self.store[ACTIVE_KEY] = PRIMARY
        self.store[ACTIVE_IID_KEY] = PRIMARY

    def end(self) -> None:
        self.store.clear()
        log.info("Session ended for user %s", self.user_id)

    # --- state ---

    @property
    def active_account_ref(self) -> int:
        try:
            return int(self.store.get(ACTIVE_KEY, PRIMARY))
        except (TypeError, ValueError):
            return PRIMARY

    @property
    def active_identity_ref(self) -> int:
        try:
            return int(self.store.get(ACTIVE_IID_KEY, PRIMARY))
        except (TypeError, ValueError):
            return PRIMARY

    @property
    def is_impersonating(self) -> bool:
        return self.active_account_ref != PRIMARY

    def shadow(self, key: str, default: Any = None) -> Any:
        return self.store.get(key + MY_POSTFIX, default)

    # --- switching ---

    def switch_to(self, db: Session, account_id: int) -> SwitchResult:
        account_id = int(account_id)
        for k in VOLATILE_KEYS:
            self.store.pop(k, None)

        if account_id == PRIMARY:
            self.reset_baseline(PRIMARY)
            if not self.is_impersonating:
                log.debug("Already on the default mailbox for user %s", self.user_id)
                return Primary()
            log.info("Switching mailbox back to default for user %s", self.user_id)
            self._restore_primary()
            return Primary()

        if account_id == self.active_account_ref:
            self.reset_baseline(account_id)
            return SwitchedTo(account_id)

        record = crud.find_by_id(db, self.user_id, account_id)
        if record is None or not record.enabled:
            log.warning("Requested remote mailbox with ID = %s not found (user %s)", account_id, self.user_id)
            return NotFound(account_id)

        lookup = record_lookup(db, self.user_id)
        params = resolve(record, Protocol.imap, lookup=lookup)
        if not isinstance(params, ConnectionParams):
            reason = params.reason if isinstance(params, Unavailable) else "alias"
            log.warning("Cannot switch to account %s: %s", account_id, reason)
            return NotFound(account_id, reason)

        log.info("Switching mailbox to identity %s (username = '%s')", record.iid, params.username)
        self.reset_baseline(account_id)
        if not self.is_impersonating:
            self._snapshot_primary()
        self._load_account(record, params, lookup)
        return SwitchedTo(account_id)

    def _snapshot_primary(self) -> None:
        for k in LIVE_KEYS:
            shadow = k + MY_POSTFIX
            if shadow not in self.store:
                self.store[shadow] = self.store.get(k)

    def _restore_primary(self) -> None:
        for k in LIVE_KEYS:
            shadow = k + MY_POSTFIX
            if shadow in self.store:
                self.store[k] = self.store.pop(shadow)
        for t in FOLDER_TYPES:
            self.store.pop(_override_key(t), None)
        self.store[ACTIVE_KEY] = PRIMARY
        self.store[ACTIVE_IID_KEY] = PRIMARY

    def _load_account(self, record: IdentSwitchAccount, params: ConnectionParams, lookup) -> None:
        source = record
        if record.parent_id is not None:
            source = lookup(record.parent_id) or record

        self.store["storage_host"] = params.host
        self.store["storage_port"] = params.port
        self.store["storage_ssl"] = params.security.value if params.security is not Security.none else None
        self.store["username"] = params.username
        self.store["password"] = crypto.encrypt(params.password)
        self.store["imap_delimiter"] = source.imap_delimiter or None
        self.store[ACTIVE_KEY] = record.id
        self.store[ACTIVE_IID_KEY] = record.iid

        folders = {**source.folders(), **record.folders()}
        for t in FOLDER_TYPES:
            self.store.pop(_override_key(t), None)
            if folders.get(t):
                self.store[_override_key(t)] = folders[t]
        self._apply_folders()

    # --- special folders ---

    def primary_folders(self) -> dict[str, str | None]:
        if self.is_impersonating:
            return {t: self.shadow(f"{t}_mbox") for t in FOLDER_TYPES}
        return {t: self.store.get(f"{t}_mbox") for t in FOLDER_TYPES}

    def effective_folders(self) -> dict[str, str | None]:
        """Account override where one exists, else the primary's mailbox name."""
        primary = self.primary_folders()
        return {t: self.store.get(_override_key(t)) or primary.get(t) for t in FOLDER_TYPES}

    def _apply_folders(self) -> None:
        for t, v in self.effective_folders().items():
            self.store[f"{t}_mbox"] = v

    def special_folders_form(self, db: Session) -> dict[str, Any]:
        title = None
        if self.is_impersonating:
            record = crud.find_by_id(db, self.user_id, self.active_account_ref)
            title = f"server: {record.label}" if record is not None and record.label else "remote"
        return {"remote": self.is_impersonating, "title": title, "folders": self.effective_folders()}

    def save_special_folders(self, db: Session, folders: dict[str, str | None]) -> bool:
        folders = {t: (folders.get(t) or None) for t in FOLDER_TYPES}
        if not self.is_impersonating:
            for t, v in folders.items():
                if v:
                    self.store[f"{t}_mbox"] = v
            return True

        if not crud.update_special_folders(db, self.user_id, self.active_account_ref, folders):
            log.warning("Active account %s vanished while saving special folders", self.active_account_ref)
            return False
        for t, v in folders.items():
            if v:
                self.store[_override_key(t)] = v
            else:
                self.store.pop(_override_key(t), None)
        self._apply_folders()
        return True

    # --- unread counts ---

    def counts(self) -> dict[int, dict[str, Any]]:
        raw = self.store.get(COUNTS_KEY) or {}
        # JSON-backed sessions turn int keys into strings
        return {int(k): dict(v) for k, v in raw.items()}

    def save_counts(self, counts: dict[int, dict[str, Any]]) -> None:
        self.store[COUNTS_KEY] = {str(k): v for k, v in counts.items()}

    def record_count(self, account_key: int, unseen: int) -> tuple[int, int]:
        """Store an observation; returns (previous unseen, baseline)."""
        counts = self.counts()
        prev = counts.get(account_key, {})
        previous = int(prev.get("unseen", 0))
        baseline = prev.get("baseline")
        baseline = unseen if baseline is None else int(baseline)
        counts[account_key] = {"unseen": unseen, "baseline": baseline, "checked_at": int(time.time())}
        self.save_counts(counts)
        return previous, baseline

    def reset_baseline(self, account_id: int) -> None:
        key = PRIMARY_COUNT_KEY if int(account_id) == PRIMARY else int(account_id)
        counts = self.counts()
        if key in counts and "baseline" in counts[key]:
            del counts[key]["baseline"]
            self.save_counts(counts)

    @property
    def check_cursor(self) -> int:
        return int(self.store.get(CURSOR_KEY, -1))

    @check_cursor.setter
    def check_cursor(self, value: int) -> None:
        self.store[CURSOR_KEY] = int(value)

    # --- connection parameters for the active account ---

    def primary_params(self) -> ConnectionParams | None:
        """The primary account's IMAP parameters while impersonating (from shadow slots)."""
        if not self.is_impersonating:
            return self._live_params()
        token = self.shadow("password")
        if token is None:
            return None
        password = crypto.decrypt(token)
        if password is None:
            log.warning("Failed to decrypt primary password for user %s", self.user_id)
            return None
        return ConnectionParams(
            Protocol.imap,
            self.shadow("storage_host") or "localhost",
            int(self.shadow("storage_port") or 143),
            Security.coerce(self.shadow("storage_ssl")),
            self.shadow("username") or self.username,
            password,
            PRIMARY_COUNT_KEY,
            None,
        )

    def _live_params(self) -> ConnectionParams | None:
        token = self.store.get("password")
        password = crypto.decrypt(token) if token else ""
        if password is None:
            return None
        return ConnectionParams(
            Protocol.imap,
            self.store.get("storage_host") or "localhost",
            int(self.store.get("storage_port") or 143),
            Security.coerce(self.store.get("storage_ssl")),
            self.store.get("username") or self.username,
            password,
            self.active_account_ref if self.is_impersonating else PRIMARY_COUNT_KEY,
            None,
        )

    def connection_for(self, db: Session, protocol: Protocol | str, from_identity: int | None = None) -> ConnectionParams | None:
        """
        Parameters the host's protocol client should use right now.

        None means "keep the host's default configuration". With no active
        switch, SMTP follows the identity picked in the compose From field.
        """
        protocol = Protocol(protocol)
        if protocol is Protocol.imap:
            return self._live_params()

        record = None
        if self.is_impersonating:
            record = crud.find_by_id(db, self.user_id, self.active_account_ref)
        elif protocol is Protocol.smtp and from_identity:
            record = crud.find_by_identity(db, self.user_id, int(from_identity))
        if record is None:
            return None

        res = resolve(record, protocol, lookup=record_lookup(db, self.user_id))
        if isinstance(res, ConnectionParams):
            log.debug("%s: identity %s -> %s, user=%s", protocol.value.upper(), record.iid, res.hostport, res.username)
            return res
        log.debug("%s: identity %s unavailable (%s), using default config", protocol.value.upper(), record.iid,
                  getattr(res, "reason", res))
        return None
