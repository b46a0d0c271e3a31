"""
Error taxonomy for account switching.

ConfigurationError is raised by form validation and never reaches a
connection attempt. ProtocolConnectionError aborts a save during the
pre-save connection test; the background checker only logs it.
CredentialError and ConsistencyError are fail-soft / fail-closed
conditions reported by the resolver.
"""
from __future__ import annotations


class IdentSwitchError(Exception):
    code = "error"

    def __init__(self, message: str | None = None, *, code: str | None = None):
        if code:
            self.code = code
        super().__init__(message or self.code)


class ConfigurationError(IdentSwitchError):
    """Malformed host, port or field length. `field` names the offending input."""

    def __init__(self, code: str, field: str | None = None, message: str | None = None):
        self.field = field
        super().__init__(message or (f"{code} ({field})" if field else code), code=code)


class CredentialError(IdentSwitchError):
    code = "credential.decrypt"


class ProtocolConnectionError(IdentSwitchError):
    def __init__(self, protocol: str, message: str | None = None):
        self.protocol = protocol
        super().__init__(message, code=f"{protocol}.connect")


class ConsistencyError(IdentSwitchError):
    code = "alias.parent"
