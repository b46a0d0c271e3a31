"""
Domain-based preconfiguration.

PRECONFIG_FILE is a JSON object keyed by mail domain (or "*" for any
domain), e.g.

    {"example.com": {"imap_host": "ssl://imap.example.com:993",
                     "smtp_host": "tls://smtp.example.com",
                     "sieve_host": "tls://sieve.example.com:4190",
                     "user": "EMAIL", "readonly": true}}

"host" may stand in for both imap_host and smtp_host.
"""
from __future__ import annotations
import json
import logging
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

from ident_switch.core import config

log = logging.getLogger(__name__)

PROTOCOLS = ("imap", "smtp", "sieve")


class Preconfig:
    def __init__(self, entries: dict[str, dict[str, Any]] | None = None, only: bool | None = None):
        self.entries = entries if entries is not None else {}
        self.only = config.PRECONFIG_ONLY if only is None else only

    @classmethod
    def load(cls, path: str | None = None) -> "Preconfig":
        path = path or config.PRECONFIG_FILE
        if not path:
            return cls({})
        p = Path(path)
        if not p.exists():
            log.warning("Preconfig file not found: %s", p)
            return cls({})
        with p.open(encoding="utf-8") as fh:
            return cls(json.load(fh))

    def get(self, email: str | None) -> dict[str, Any] | None:
        domain = (email or "").partition("@")[2].lower()
        if not domain:
            return None
        cfg = self.entries.get(domain) or self.entries.get("*")
        if not cfg or not (cfg.get("imap_host") or cfg.get("host")):
            return None
        return cfg

    def is_domain_allowed(self, email: str | None) -> bool:
        return not self.only or self.get(email) is not None

    @staticmethod
    def _urls(cfg: dict[str, Any]) -> dict[str, str]:
        return {
            "imap": cfg.get("imap_host") or cfg.get("host") or "",
            "smtp": cfg.get("smtp_host") or cfg.get("host") or "",
            "sieve": cfg.get("sieve_host") or "",
        }

    def apply(self, form: dict[str, Any], email: str) -> bool:
        """Fill form fields for a new record from the domain's settings; returns readonly."""
        cfg = self.get(email)
        if cfg is None:
            return False
        log.info("Applying predefined configuration for '%s'", email)

        for proto, url in self._urls(cfg).items():
            if not url:
                continue
            parts = urlsplit(url if "://" in url else f"//{url}")
            scheme = (parts.scheme or "").lower()
            form[f"{proto}_host"] = parts.hostname or ""
            form[f"{proto}_security"] = scheme if scheme in ("ssl", "tls") else "none"
            form[f"{proto}_port"] = parts.port

        login_set = False
        user = str(cfg.get("user") or "").upper()
        if user == "EMAIL":
            form["imap_username"] = email
            login_set = True
        elif user == "MBOX":
            form["imap_username"] = email.partition("@")[0]
            login_set = True

        readonly = bool(cfg.get("readonly"))
        if readonly:
            form["readonly"] = 2 if login_set else 1
        if "delimiter" in cfg:
            form["imap_delimiter"] = cfg["delimiter"]
            form["imap_delimiter_mode"] = "manual" if cfg["delimiter"] else "auto"
        if "notify_check" in cfg:
            form["notify_check"] = bool(cfg["notify_check"])
        for key in ("notify_basic", "notify_sound", "notify_desktop"):
            if key in cfg:
                v = cfg[key]
                form[key] = "inherit" if v is None else ("on" if v else "off")
        return readonly

    def readonly_level(self, email: str | None) -> int:
        """0 = editable, 1 = server fields locked, 2 = login locked too."""
        cfg = self.get(email)
        if cfg is None or not cfg.get("readonly"):
            return 0
        return 2 if str(cfg.get("user") or "").upper() in ("EMAIL", "MBOX") else 1

    def fill_readonly(self, raw: dict[str, Any], email: str) -> dict[str, Any]:
        """Readonly fields are not submitted by the browser; take them from the preconfig."""
        cfg = self.get(email)
        if cfg is None or not cfg.get("readonly"):
            return raw
        filled = dict(raw)
        preset: dict[str, Any] = {}
        self.apply(preset, email)
        for key in ("imap_host", "imap_security", "imap_port", "imap_username",
                    "smtp_host", "smtp_security", "smtp_port", "sieve_host", "sieve_security", "sieve_port"):
            if not filled.get(key) and preset.get(key) is not None:
                filled[key] = preset[key]
        # the delimiter is locked too; a mode default of "auto" must not hide it
        if "delimiter" in cfg:
            filled["imap_delimiter"] = preset["imap_delimiter"]
            filled["imap_delimiter_mode"] = preset["imap_delimiter_mode"]
        return filled
