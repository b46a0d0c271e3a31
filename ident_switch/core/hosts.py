from __future__ import annotations
import enum
from typing import NamedTuple


class Security(str, enum.Enum):
    none = "none"
    tls = "tls"
    ssl = "ssl"

    @classmethod
    def coerce(cls, value: "Security | str | None") -> "Security":
        if isinstance(value, Security):
            return value
        v = (value or "").strip().lower()
        return cls(v) if v in ("tls", "ssl") else cls.none


class HostSpec(NamedTuple):
    security: Security
    host: str


_PREFIXES = {"ssl://": Security.ssl, "tls://": Security.tls}


def parse_host(value: str | None) -> HostSpec:
    """Split a stored host like "ssl://mail.example.com" into (security, bare host)."""
    value = value or ""
    lower = value.lower()
    for prefix, sec in _PREFIXES.items():
        if lower.startswith(prefix):
            return HostSpec(sec, value[len(prefix):])
    return HostSpec(Security.none, value)


def compose_host(host: str | None, security: Security | str | None) -> str | None:
    if not host:
        return host
    sec = Security.coerce(security)
    if sec is Security.none:
        return host
    return f"{sec.value}://{host}"
