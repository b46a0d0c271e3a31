"""
Thin, short-lived protocol clients.

Each function opens one connection, performs one operation and closes the
connection before returning. Failures surface as ProtocolConnectionError;
there is no retry.
"""
from __future__ import annotations
import logging
import smtplib
import ssl
from contextlib import contextmanager
from typing import Iterator

from imapclient import IMAPClient
from imapclient.exceptions import IMAPClientError
from sievelib.managesieve import Client as SieveClient, Error as SieveError

from ident_switch.core.config import CHECK_TIMEOUT, TEST_TIMEOUT
from ident_switch.core.errors import ProtocolConnectionError
from ident_switch.core.hosts import Security
from ident_switch.switcher.resolver import ConnectionParams

log = logging.getLogger(__name__)


@contextmanager
def imap_session(params: ConnectionParams, timeout: float) -> Iterator[IMAPClient]:
    try:
        client = IMAPClient(
            params.host,
            port=params.port,
            ssl=params.security is Security.ssl,
            ssl_context=ssl.create_default_context(),
            timeout=timeout,
        )
    except (OSError, IMAPClientError) as e:
        raise ProtocolConnectionError("imap", f"{params.host}:{params.port}: {e}") from e
    try:
        if params.security is Security.tls:
            client.starttls(ssl.create_default_context())
        client.login(params.username, params.password)
        yield client
    except (OSError, IMAPClientError) as e:
        raise ProtocolConnectionError("imap", f"{params.host}:{params.port}: {e}") from e
    finally:
        try:
            client.logout()
        except (OSError, IMAPClientError):
            log.debug("IMAP logout failed for %s", params.host)


def imap_unseen(params: ConnectionParams, timeout: float = CHECK_TIMEOUT, mailbox: str = "INBOX") -> int:
    with imap_session(params, timeout) as client:
        try:
            status = client.folder_status(mailbox, [b"UNSEEN"])
        except IMAPClientError as e:
            raise ProtocolConnectionError("imap", f"STATUS {mailbox}: {e}") from e
    return int(status.get(b"UNSEEN", 0))


def imap_test(params: ConnectionParams, timeout: float = TEST_TIMEOUT) -> None:
    with imap_session(params, timeout):
        pass


def smtp_test(params: ConnectionParams, timeout: float = TEST_TIMEOUT) -> None:
    ctx = ssl.create_default_context()
    try:
        if params.security is Security.ssl:
            smtp = smtplib.SMTP_SSL(params.host, params.port, timeout=timeout, context=ctx)
        else:
            smtp = smtplib.SMTP(params.host, params.port, timeout=timeout)
        try:
            if params.security is Security.tls:
                smtp.starttls(context=ctx)
            if params.username:
                smtp.login(params.username, params.password)
        finally:
            try:
                smtp.quit()
            except smtplib.SMTPException:
                smtp.close()
    except (OSError, smtplib.SMTPException) as e:
        raise ProtocolConnectionError("smtp", f"{params.host}:{params.port}: {e}") from e


def sieve_test(params: ConnectionParams) -> None:
    # ManageSieve has no implicit-TLS port: ssl and tls both negotiate STARTTLS
    starttls = params.security is not Security.none
    client = SieveClient(params.host, params.port)
    try:
        ok = client.connect(params.username, params.password, starttls=starttls)
    except (OSError, SieveError) as e:
        raise ProtocolConnectionError("sieve", f"{params.host}:{params.port}: {e}") from e
    if not ok:
        raise ProtocolConnectionError("sieve", f"{params.host}:{params.port}: {client.errmsg!r}")
    try:
        client.logout()
    except (OSError, SieveError):
        log.debug("Sieve logout failed for %s", params.host)
