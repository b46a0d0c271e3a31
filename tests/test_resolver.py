from ident_switch.core import crypto
from ident_switch.core.hosts import Security
from ident_switch.db.models import AuthMode, IdentSwitchAccount
from ident_switch.switcher.resolver import (
    AliasFollowed, ConnectionParams, Protocol, Unavailable, default_port, resolve,
)


def plain(s):
    return s


def account(**kw):
    values = {"id": 5, "iid": 9, "imap_host": "ssl://imap.a.test", "username": "bob", "password": "pw"}
    values.update(kw)
    return IdentSwitchAccount(**values)


def test_imap_ssl_uses_default_port():
    p = resolve(account(), Protocol.imap, decrypt=plain)
    assert isinstance(p, ConnectionParams)
    assert (p.host, p.port, p.security) == ("imap.a.test", 993, Security.ssl)
    assert (p.username, p.password) == ("bob", "pw")
    assert (p.account_id, p.identity_ref) == (5, 9)


def test_imap_explicit_port_and_plain_host():
    p = resolve(account(imap_host="imap.a.test"), "imap", decrypt=plain)
    assert (p.port, p.security) == (143, Security.none)
    p = resolve(account(imap_port=1143), "imap", decrypt=plain)
    assert p.port == 1143


def test_legacy_secure_flag_means_starttls():
    p = resolve(account(imap_host="imap.a.test", secure_imap=True), Protocol.imap, decrypt=plain)
    assert (p.security, p.port) == (Security.tls, 143)


def test_username_falls_back_to_email():
    p = resolve(account(username=None), Protocol.imap, decrypt=plain, email="bob@a.test")
    assert p.username == "bob@a.test"


def test_smtp_without_host_uses_bare_imap_host():
    p = resolve(account(), Protocol.smtp, decrypt=plain)
    assert (p.host, p.port, p.security) == ("imap.a.test", 587, Security.none)
    assert (p.username, p.password) == ("bob", "pw")


def test_smtp_ssl_host():
    p = resolve(account(smtp_host="ssl://smtp.a.test"), Protocol.smtp, decrypt=plain)
    assert (p.host, p.port, p.security) == ("smtp.a.test", 465, Security.ssl)


def test_smtp_auth_modes():
    p = resolve(account(smtp_auth=AuthMode.none), Protocol.smtp, decrypt=plain)
    assert (p.username, p.password) == ("", "")

    p = resolve(account(smtp_auth=AuthMode.custom, smtp_username="relay", smtp_password="relay-pw"),
                Protocol.smtp, decrypt=plain)
    assert (p.username, p.password) == ("relay", "relay-pw")


def test_sieve_requires_host():
    assert resolve(account(), Protocol.sieve, decrypt=plain) == Unavailable("sieve.disabled")

    p = resolve(account(sieve_host="tls://sieve.a.test"), Protocol.sieve, decrypt=plain)
    assert (p.host, p.port, p.security) == ("sieve.a.test", 4190, Security.tls)
    assert p.username == "bob"


def test_alias_without_lookup_reports_parent():
    alias = IdentSwitchAccount(id=2, iid=3, parent_id=1)
    assert resolve(alias, Protocol.imap) == AliasFollowed(1)


def test_alias_follows_parent_settings():
    parent = account(id=1)
    alias = IdentSwitchAccount(id=2, iid=3, parent_id=1)
    p = resolve(alias, Protocol.imap, lookup={1: parent}.get, decrypt=plain)
    assert (p.host, p.username) == ("imap.a.test", "bob")
    assert (p.account_id, p.identity_ref) == (2, 3)


def test_alias_fails_closed():
    alias = IdentSwitchAccount(id=2, iid=3, parent_id=1)
    assert resolve(alias, Protocol.imap, lookup=lambda _id: None) == Unavailable("alias.parent")

    chained = account(id=1, parent_id=7)
    assert resolve(alias, Protocol.imap, lookup={1: chained}.get) == Unavailable("alias.chain")


def test_decrypt_failure_is_unavailable():
    assert resolve(account(password="not-a-token"), Protocol.imap) == Unavailable("credential.decrypt")


def test_encrypted_password_round_trip():
    p = resolve(account(password=crypto.encrypt("s3cret")), Protocol.imap)
    assert p.password == "s3cret"


def test_password_not_in_repr():
    p = resolve(account(password="hunter2"), Protocol.imap, decrypt=plain)
    assert "hunter2" not in repr(p)


def test_default_ports():
    assert default_port(Protocol.imap, Security.tls) == 143
    assert default_port(Protocol.smtp, Security.ssl) == 465
    assert default_port(Protocol.sieve, Security.ssl) == 4190


def test_alias_resolves_like_its_parent():
    parent = account(id=1, smtp_host="tls://smtp.a.test", sieve_host="sieve.a.test")
    alias = IdentSwitchAccount(id=2, iid=3, parent_id=1)
    for proto in Protocol:
        assert resolve(alias, proto, lookup={1: parent}.get, decrypt=plain) == resolve(parent, proto, decrypt=plain)
