"""
Credential and host resolver.

Turns an account record into connection parameters for one protocol. The
resolver is pure: it never touches the session or the network, and reads
the database only through the `lookup` callable used to follow aliases.
"""
from __future__ import annotations
import enum
import logging
from dataclasses import dataclass, field
from typing import Callable, Union

from ident_switch.core import crypto
from ident_switch.core.hosts import HostSpec, Security, parse_host
from ident_switch.db import crud
from ident_switch.db.models import AuthMode, IdentSwitchAccount

log = logging.getLogger(__name__)


class Protocol(str, enum.Enum):
    imap = "imap"
    smtp = "smtp"
    sieve = "sieve"


DEFAULT_PORTS = {
    Protocol.imap: {Security.ssl: 993, None: 143},
    Protocol.smtp: {Security.ssl: 465, None: 587},
    Protocol.sieve: {None: 4190},
}


def default_port(protocol: Protocol, security: Security) -> int:
    table = DEFAULT_PORTS[Protocol(protocol)]
    return table.get(security, table[None])


@dataclass(frozen=True)
class ConnectionParams:
    protocol: Protocol
    host: str
    port: int
    security: Security
    username: str
    password: str = field(repr=False)
    # where the parameters came from; not part of the endpoint identity
    account_id: int | None = field(default=None, compare=False)
    identity_ref: int | None = field(default=None, compare=False)

    @property
    def hostport(self) -> str:
        prefix = "" if self.security is Security.none else f"{self.security.value}://"
        return f"{prefix}{self.host}:{self.port}"


@dataclass(frozen=True)
class AliasFollowed:
    parent_id: int


@dataclass(frozen=True)
class Unavailable:
    reason: str


Resolution = Union[ConnectionParams, AliasFollowed, Unavailable]
Lookup = Callable[[int], "IdentSwitchAccount | None"]
Decrypt = Callable[["str | None"], "str | None"]


def _imap_endpoint(rec: IdentSwitchAccount) -> tuple[str, int, Security]:
    spec = parse_host(rec.imap_host or "localhost")
    security = spec.security
    if security is Security.none and rec.secure_imap:
        security = Security.tls  # pre-scheme records kept a boolean flag instead
    port = rec.imap_port or default_port(Protocol.imap, security)
    return spec.host or "localhost", port, security


def _imap_credentials(rec: IdentSwitchAccount, email: str | None, decrypt: Decrypt) -> tuple[str, str | None]:
    username = rec.username or email or ""
    password = decrypt(rec.password) if rec.password else ""
    return username, password


def resolve(
    record: IdentSwitchAccount,
    protocol: Protocol | str,
    lookup: Lookup | None = None,
    decrypt: Decrypt = crypto.decrypt,
    email: str | None = None,
) -> Resolution:
    """
    Connection parameters of `record` for `protocol`.

    `email` overrides the identity address used as the fallback username
    (for records not yet attached to an identity).
    """
    protocol = Protocol(protocol)
    origin = record
    if record.parent_id is not None:
        if lookup is None:
            return AliasFollowed(record.parent_id)
        parent = lookup(record.parent_id)
        if parent is None:
            log.warning("Alias %s (identity %s) points to missing parent %s", origin.id, origin.iid, record.parent_id)
            return Unavailable("alias.parent")
        if parent.parent_id is not None:
            log.warning("Alias %s (identity %s) points to alias %s; chained aliases are not allowed",
                        origin.id, origin.iid, parent.id)
            return Unavailable("alias.chain")
        log.debug("Identity %s is an alias, following parent %s for %s", origin.iid, parent.id, protocol.value)
        record = parent

    email = email or record.email
    imap_user, imap_pass = _imap_credentials(record, email, decrypt)

    if protocol is Protocol.imap:
        if imap_pass is None:
            log.warning("Failed to decrypt IMAP password for identity %s", origin.iid)
            return Unavailable("credential.decrypt")
        host, port, security = _imap_endpoint(record)
        return ConnectionParams(protocol, host, port, security, imap_user, imap_pass, origin.id, origin.iid)

    if protocol is Protocol.smtp:
        if record.smtp_host:
            spec = parse_host(record.smtp_host)
        else:
            spec = HostSpec(Security.none, parse_host(record.imap_host).host)
        host = spec.host or "localhost"
        port = record.smtp_port or default_port(protocol, spec.security)
        auth, user_field, pass_field = record.smtp_auth, record.smtp_username, record.smtp_password
    else:
        if not record.sieve_host:
            return Unavailable("sieve.disabled")
        spec = parse_host(record.sieve_host)
        host = spec.host
        port = record.sieve_port or default_port(protocol, spec.security)
        auth, user_field, pass_field = record.sieve_auth, record.sieve_username, record.sieve_password

    auth = AuthMode(auth) if auth is not None else AuthMode.imap
    if auth is AuthMode.none:
        username, password = "", ""
    elif auth is AuthMode.custom:
        username = user_field or ""
        password = decrypt(pass_field) if pass_field else ""
    else:
        username, password = imap_user, imap_pass

    if password is None:
        log.warning("Failed to decrypt %s password for identity %s", protocol.value.upper(), origin.iid)
        return Unavailable("credential.decrypt")

    return ConnectionParams(protocol, host, port, spec.security, username, password, origin.id, origin.iid)


def record_lookup(db, user_id: int) -> Lookup:
    """Alias lookup bound to one user's records."""
    return lambda account_id: crud.find_by_id(db, user_id, account_id)
