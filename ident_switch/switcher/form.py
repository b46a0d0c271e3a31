"""
Account form: validation, pre-save connection test and persistence.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, Mapping

from sqlalchemy import select
from sqlalchemy.orm import Session

from ident_switch.core import crypto
from ident_switch.core.errors import (
    ConfigurationError, ConsistencyError, CredentialError, ProtocolConnectionError,
)
from ident_switch.core.hosts import Security, compose_host, parse_host
from ident_switch.db import crud
from ident_switch.db.models import AuthMode, IdentSwitchAccount, Identity, NotifyMode
from ident_switch.switcher import protocols
from ident_switch.switcher.preconfig import Preconfig
from ident_switch.switcher.resolver import ConnectionParams, Protocol, resolve

log = logging.getLogger(__name__)

# shown instead of a stored password; submitting it back means "unchanged"
PASSWORD_UNCHANGED = "••••••"

MAX_LABEL = 32
MAX_HOST = 64
MAX_USER = 64

# anything with imap_test / smtp_test / sieve_test; the module itself by default
DEFAULT_CLIENTS = protocols


@dataclass
class ValidatedAccount:
    label: str | None
    imap_host: str | None
    imap_port: int | None
    imap_delimiter: str | None
    imap_username: str | None
    imap_password: str | None
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
    notify_check: bool = True
    notify_basic: NotifyMode = NotifyMode.inherit
    notify_sound: NotifyMode = NotifyMode.inherit
    notify_desktop: NotifyMode = NotifyMode.inherit


def _ntrim(value: Any) -> str | None:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def _port(raw: Mapping[str, Any], key: str) -> int | None:
    value = _ntrim(raw.get(key))
    if value is None:
        return None
    if not value.isdigit():
        raise ConfigurationError("port.num", key)
    port = int(value)
    if not 0 < port <= 65535:
        raise ConfigurationError("port.range", key)
    return port


def _host(raw: Mapping[str, Any], proto: str, fallback: str | None = None) -> str | None:
    host = _ntrim(raw.get(f"{proto}_host")) or fallback
    # a pasted "ssl://host" wins over the separate security field
    spec = parse_host(host)
    security = spec.security if spec.security is not Security.none else Security.coerce(raw.get(f"{proto}_security"))
    composed = compose_host(spec.host or None, security)
    if len(composed or "") > MAX_HOST:
        raise ConfigurationError("host.long", f"{proto}_host")
    return composed


def _user(raw: Mapping[str, Any], key: str) -> str | None:
    value = _ntrim(raw.get(key))
    if len(value or "") > MAX_USER:
        raise ConfigurationError("user.long", key)
    return value


def _auth(raw: Mapping[str, Any], key: str) -> AuthMode:
    value = raw.get(key)
    if value is None or value == "":
        return AuthMode.imap
    if isinstance(value, AuthMode):
        return value
    s = str(value).strip()
    if not s.isdigit():
        raise ConfigurationError("auth.num", key)
    try:
        return AuthMode(int(s))
    except ValueError:
        raise ConfigurationError("auth.num", key) from None


def _notify(value: Any) -> NotifyMode:
    if isinstance(value, NotifyMode):
        return value
    if value is None or value == "":
        return NotifyMode.inherit
    if isinstance(value, bool):
        return NotifyMode.on if value else NotifyMode.off
    s = str(value).strip().lower()
    if s in ("1", "on", "true"):
        return NotifyMode.on
    if s in ("0", "off", "false"):
        return NotifyMode.off
    return NotifyMode.inherit


def _custom_credentials(raw: Mapping[str, Any], proto: str, auth: AuthMode) -> tuple[str | None, str | None]:
    if auth is not AuthMode.custom:
        return None, None
    user = _user(raw, f"{proto}_username")
    if not user:
        raise ConfigurationError("user.required", f"{proto}_username")
    password = raw.get(f"{proto}_password")
    if not password:
        raise ConfigurationError("password.required", f"{proto}_password")
    return user, password


def validate(raw: Mapping[str, Any]) -> ValidatedAccount:
    """Check field lengths, ports and auth modes. The first problem found is raised."""
    label = _ntrim(raw.get("label"))
    if len(label or "") > MAX_LABEL:
        raise ConfigurationError("label.long", "label")

    imap_host = _host(raw, "imap")
    imap_port = _port(raw, "imap_port")

    delimiter = None
    if (_ntrim(raw.get("imap_delimiter_mode")) or "auto") == "manual":
        delimiter = _ntrim(raw.get("imap_delimiter"))
        if len(delimiter or "") > 1:
            raise ConfigurationError("delim.long", "imap_delimiter")

    imap_username = _user(raw, "imap_username")

    # SMTP defaults to the IMAP server
    smtp_host = _host(raw, "smtp", fallback=parse_host(imap_host).host or None)
    smtp_port = _port(raw, "smtp_port")
    smtp_auth = _auth(raw, "smtp_auth")
    smtp_username, smtp_password = _custom_credentials(raw, "smtp", smtp_auth)

    sieve_host = _host(raw, "sieve")
    sieve_port = _port(raw, "sieve_port")
    sieve_auth = _auth(raw, "sieve_auth")
    sieve_username, sieve_password = _custom_credentials(raw, "sieve", sieve_auth)

    notify_check = raw.get("notify_check")
    return ValidatedAccount(
        label=label,
        imap_host=imap_host,
        imap_port=imap_port,
        imap_delimiter=delimiter,
        imap_username=imap_username,
        imap_password=raw.get("imap_password") or None,
        smtp_host=smtp_host,
        smtp_port=smtp_port,
        smtp_auth=smtp_auth,
        smtp_username=smtp_username,
        smtp_password=smtp_password,
        sieve_host=sieve_host,
        sieve_port=sieve_port,
        sieve_auth=sieve_auth,
        sieve_username=sieve_username,
        sieve_password=sieve_password,
        notify_check=True if notify_check is None else bool(notify_check),
        notify_basic=_notify(raw.get("notify_basic")),
        notify_sound=_notify(raw.get("notify_sound")),
        notify_desktop=_notify(raw.get("notify_desktop")),
    )


def _plaintext(submitted: str | None, stored: str | None) -> str | None:
    """Turn the unchanged-sentinel back into the stored plaintext."""
    if submitted == PASSWORD_UNCHANGED:
        if not stored:
            return None
        plain = crypto.decrypt(stored)
        if plain is None:
            raise CredentialError("stored password cannot be decrypted, enter it again")
        return plain
    return submitted


def _candidate(data: ValidatedAccount, existing: IdentSwitchAccount | None) -> IdentSwitchAccount:
    """Transient record carrying plaintext passwords, for the connection test only."""
    return IdentSwitchAccount(
        imap_host=data.imap_host,
        imap_port=data.imap_port,
        username=data.imap_username,
        password=_plaintext(data.imap_password, existing.password if existing else None),
        smtp_host=data.smtp_host,
        smtp_port=data.smtp_port,
        smtp_auth=data.smtp_auth,
        smtp_username=data.smtp_username,
        smtp_password=_plaintext(data.smtp_password, existing.smtp_password if existing else None),
        sieve_host=data.sieve_host,
        sieve_port=data.sieve_port,
        sieve_auth=data.sieve_auth,
        sieve_username=data.sieve_username,
        sieve_password=_plaintext(data.sieve_password, existing.sieve_password if existing else None),
    )


def check_connections(data: ValidatedAccount, email: str, existing: IdentSwitchAccount | None = None,
                     clients=DEFAULT_CLIENTS) -> None:
    """Open and close each configured protocol with the candidate credentials."""
    cand = _candidate(data, existing)

    def params(proto: Protocol) -> ConnectionParams | None:
        res = resolve(cand, proto, decrypt=lambda s: s, email=email)
        return res if isinstance(res, ConnectionParams) else None

    imap = params(Protocol.imap)
    if imap is None:
        raise ProtocolConnectionError("imap", "no usable IMAP credentials")
    clients.imap_test(imap)

    if data.smtp_auth is not AuthMode.none:
        smtp = params(Protocol.smtp)
        if smtp is None:
            raise ProtocolConnectionError("smtp", "no usable SMTP credentials")
        clients.smtp_test(smtp)

    if data.sieve_host and data.sieve_auth is not AuthMode.none:
        sieve = params(Protocol.sieve)
        if sieve is None:
            raise ProtocolConnectionError("sieve", "no usable Sieve credentials")
        clients.sieve_test(sieve)


def _secret(submitted: str | None, stored: str | None) -> str | None:
    """Ciphertext to persist; re-encrypt only when the plaintext actually changed."""
    if submitted == PASSWORD_UNCHANGED:
        return stored
    current = crypto.decrypt(stored) if stored else None
    if submitted and current is not None and submitted == current:
        return stored
    return crypto.encrypt(submitted) if submitted else None


def _check_label(db: Session, user_id: int, identity_ref: int, label: str | None) -> None:
    if label and crud.label_taken(db, user_id, label, exclude_identity=identity_ref):
        raise ConfigurationError("label.exists", "label")


def save(db: Session, user_id: int, identity: Identity, data: ValidatedAccount,
         existing: IdentSwitchAccount | None = None) -> IdentSwitchAccount:
    _check_label(db, user_id, identity.id, data.label)
    if existing is None:
        existing = crud.find_by_identity(db, user_id, identity.id)
    row = existing or IdentSwitchAccount(user_id=user_id, iid=identity.id)

    row.parent_id = None
    row.enabled = True
    row.label = data.label
    row.imap_host = data.imap_host
    row.imap_port = data.imap_port
    row.imap_delimiter = data.imap_delimiter
    row.username = data.imap_username
    row.password = _secret(data.imap_password, row.password)
    row.secure_imap = False
    row.smtp_host = data.smtp_host
    row.smtp_port = data.smtp_port
    row.smtp_auth = data.smtp_auth
    row.smtp_username = data.smtp_username
    row.smtp_password = _secret(data.smtp_password, row.smtp_password)
    row.sieve_host = data.sieve_host
    row.sieve_port = data.sieve_port
    row.sieve_auth = data.sieve_auth
    row.sieve_username = data.sieve_username
    row.sieve_password = _secret(data.sieve_password, row.sieve_password)
    row.notify_check = data.notify_check
    row.notify_basic = data.notify_basic
    row.notify_sound = data.notify_sound
    row.notify_desktop = data.notify_desktop

    row = crud.upsert(db, row)
    log.info("Saved account settings for identity %s (account %s)", identity.id, row.id)
    return row


_PROTOCOL_FIELDS = (
    "imap_host", "imap_port", "imap_delimiter", "username", "password",
    "smtp_host", "smtp_port", "smtp_username", "smtp_password",
    "sieve_host", "sieve_port", "sieve_username", "sieve_password",
    "drafts_mbox", "sent_mbox", "junk_mbox", "trash_mbox",
)


def save_alias(db: Session, user_id: int, identity_ref: int, parent_id: int,
               label: str | None = None) -> IdentSwitchAccount:
    """Make `identity_ref` an alias of account `parent_id` (same user, not itself an alias)."""
    label = _ntrim(label)
    if len(label or "") > MAX_LABEL:
        raise ConfigurationError("label.long", "label")
    _check_label(db, user_id, identity_ref, label)
    parent = crud.find_by_id(db, user_id, parent_id)
    if parent is None or parent.iid == identity_ref:
        raise ConsistencyError(f"parent account {parent_id} not found", code="alias.parent")
    if parent.parent_id is not None:
        raise ConsistencyError(f"account {parent_id} is itself an alias", code="alias.chain")

    row = crud.find_by_identity(db, user_id, identity_ref)
    if row is not None:
        has_children = db.execute(
            select(IdentSwitchAccount.id).where(
                IdentSwitchAccount.user_id == user_id, IdentSwitchAccount.parent_id == row.id
            ).limit(1)
        ).first()
        if has_children:
            raise ConsistencyError(f"identity {identity_ref} already has aliases", code="alias.chain")
    else:
        row = IdentSwitchAccount(user_id=user_id, iid=identity_ref)

    for name in _PROTOCOL_FIELDS:
        setattr(row, name, None)
    row.secure_imap = False
    row.smtp_auth = AuthMode.imap
    row.sieve_auth = AuthMode.imap
    row.parent_id = parent.id
    row.label = label
    row.enabled = True

    row = crud.upsert(db, row)
    log.info("Identity %s is now an alias of account %s", identity_ref, parent.id)
    return row


def submit(db: Session, user_id: int, identity: Identity, raw: Mapping[str, Any],
           preconfig: Preconfig | None = None, clients=DEFAULT_CLIENTS) -> IdentSwitchAccount | None:
    """
    Full save flow for the identity editor.

    Returns the saved record, or None when nothing was stored (default
    identity, domain not allowed, or switching disabled for the identity).
    Raises ConfigurationError, CredentialError or ProtocolConnectionError
    to abort the save.
    """
    if identity.is_default:
        return None
    preconfig = preconfig or Preconfig.load()

    if not preconfig.is_domain_allowed(identity.email):
        log.info("Domain of '%s' is not preconfigured; account switching disabled", identity.email)
        crud.disable(db, user_id, identity.id)
        return None
    if not raw.get("enabled"):
        crud.disable(db, user_id, identity.id)
        return None

    raw = preconfig.fill_readonly(dict(raw), identity.email)
    data = validate(raw)
    _check_label(db, user_id, identity.id, data.label)
    existing = crud.find_by_identity(db, user_id, identity.id)
    try:
        check_connections(data, identity.email, existing, clients)
    except ProtocolConnectionError as e:
        log.warning("%s connection test failed for '%s': %s", e.protocol.upper(), identity.email, e)
        raise
    return save(db, user_id, identity, data, existing)


def form_data(identity: Identity, record: IdentSwitchAccount | None,
              preconfig: Preconfig | None = None) -> dict[str, Any]:
    """Field values for the identity editor. Stored passwords come back as the sentinel."""
    form: dict[str, Any] = {"identity_id": identity.id, "email": identity.email, "readonly": 0}
    if record is None:
        form.update(enabled=False, smtp_auth=AuthMode.imap.value, sieve_auth=AuthMode.imap.value,
                    notify_check=True, imap_delimiter_mode="auto")
        (preconfig or Preconfig.load()).apply(form, identity.email)
        return form

    form.update(enabled=record.enabled, label=record.label, parent_id=record.parent_id)
    for proto, host_field in (("imap", record.imap_host), ("smtp", record.smtp_host), ("sieve", record.sieve_host)):
        spec = parse_host(host_field)
        form[f"{proto}_host"] = spec.host or None
        form[f"{proto}_security"] = spec.security.value
    if record.secure_imap and form["imap_security"] == Security.none.value:
        form["imap_security"] = Security.tls.value
    form.update(
        imap_port=record.imap_port,
        imap_username=record.username,
        imap_password=PASSWORD_UNCHANGED if record.password else None,
        imap_delimiter_mode="manual" if record.imap_delimiter else "auto",
        imap_delimiter=record.imap_delimiter,
        smtp_port=record.smtp_port,
        smtp_auth=AuthMode(record.smtp_auth or AuthMode.imap).value,
        smtp_username=record.smtp_username,
        smtp_password=PASSWORD_UNCHANGED if record.smtp_password else None,
        sieve_port=record.sieve_port,
        sieve_auth=AuthMode(record.sieve_auth or AuthMode.imap).value,
        sieve_username=record.sieve_username,
        sieve_password=PASSWORD_UNCHANGED if record.sieve_password else None,
        notify_check=record.notify_check,
        notify_basic=record.notify_basic.value,
        notify_sound=record.notify_sound.value,
        notify_desktop=record.notify_desktop.value,
    )
    preconfig = preconfig or Preconfig.load()
    level = preconfig.readonly_level(identity.email)
    if level:
        # locked records show the domain delimiter, not the stored one
        delimiter = preconfig.get(identity.email).get("delimiter")
        form.update(readonly=level, imap_delimiter=delimiter,
                    imap_delimiter_mode="manual" if delimiter else "auto")
    return form
