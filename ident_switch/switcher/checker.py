"""
Background unread checker.

Runs once per refresh cycle: reads the INBOX unseen count of every other
account the user has (plus the primary account while impersonating),
keeps per-account counts in the session and reports which accounts got
new mail.
"""
from __future__ import annotations
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, asdict
from typing import Any, Callable

from sqlalchemy.orm import Session

from ident_switch.core import config
from ident_switch.core.errors import IdentSwitchError
from ident_switch.db import crud
from ident_switch.db.models import IdentSwitchAccount, NotifyMode
from ident_switch.switcher import protocols
from ident_switch.switcher.context import PRIMARY_COUNT_KEY, SessionContext
from ident_switch.switcher.resolver import ConnectionParams, Protocol, resolve

log = logging.getLogger(__name__)

UnseenFn = Callable[[ConnectionParams, float], int]


@dataclass(frozen=True)
class NotifyDefaults:
    basic: bool = False
    sound: bool = False
    desktop: bool = False

    @classmethod
    def from_config(cls) -> "NotifyDefaults":
        return cls(config.NOTIFY_BASIC, config.NOTIFY_SOUND, config.NOTIFY_DESKTOP)


@dataclass
class Candidate:
    key: int
    label: str
    params: ConnectionParams | None
    basic: NotifyMode = NotifyMode.inherit
    sound: NotifyMode = NotifyMode.inherit
    desktop: NotifyMode = NotifyMode.inherit

    @classmethod
    def from_record(cls, record: IdentSwitchAccount) -> "Candidate":
        res = resolve(record, Protocol.imap)
        return cls(
            key=record.id,
            label=record.label or record.email or record.display_label(),
            params=res if isinstance(res, ConnectionParams) else None,
            basic=record.notify_basic,
            sound=record.notify_sound,
            desktop=record.notify_desktop,
        )


@dataclass(frozen=True)
class Notification:
    account_id: int
    label: str
    count: int
    basic: bool
    sound: bool
    desktop: bool


@dataclass
class CheckReport:
    counts: dict[int, dict[str, int]]
    notifications: list[Notification] = field(default_factory=list)
    checked: list[int] = field(default_factory=list)

    @property
    def total_delta(self) -> int:
        return total_delta(self.counts)

    def commands(self) -> list[dict[str, Any]]:
        cmds = [{"name": "notify", "args": asdict(n)} for n in self.notifications]
        cmds.append({"name": "update_counts", "args": {str(k): v for k, v in self.counts.items()}})
        return cmds


def total_delta(counts: dict[int, dict[str, int]]) -> int:
    return sum(max(0, int(c.get("unseen", 0)) - int(c.get("baseline", c.get("unseen", 0)))) for c in counts.values())


class UnreadChecker:
    def __init__(
        self,
        unseen: UnseenFn | None = None,
        *,
        round_robin: bool | None = None,
        workers: int | None = None,
        timeout: float | None = None,
        defaults: NotifyDefaults | None = None,
    ):
        self.unseen = unseen or protocols.imap_unseen
        self.round_robin = config.ROUND_ROBIN if round_robin is None else round_robin
        self.workers = max(1, config.CHECK_WORKERS if workers is None else workers)
        self.timeout = config.CHECK_TIMEOUT if timeout is None else timeout
        self.defaults = defaults or NotifyDefaults.from_config()
        self._lock = threading.Lock()

    def candidates(self, ctx: SessionContext, db: Session) -> list[Candidate]:
        active = ctx.active_account_ref
        out = [Candidate.from_record(r) for r in crud.list_checkable(db, ctx.user_id) if r.id != active]
        if ctx.is_impersonating:
            primary = ctx.primary_params()
            if primary is not None:
                out.append(Candidate(PRIMARY_COUNT_KEY, ctx.username, primary))
        return out

    def run(self, ctx: SessionContext, db: Session) -> CheckReport:
        report = CheckReport(counts={})
        todo = self.candidates(ctx, db)

        if todo:
            if self.round_robin:
                index = ctx.check_cursor + 1
                if index >= len(todo):
                    index = 0
                ctx.check_cursor = index
                todo = [todo[index]]

            if self.workers > 1 and len(todo) > 1:
                with ThreadPoolExecutor(max_workers=min(self.workers, len(todo))) as pool:
                    for cand, observed in zip(todo, pool.map(self._observe, todo)):
                        self._apply(ctx, cand, observed, report)
            else:
                for cand in todo:
                    self._apply(ctx, cand, self._observe(cand), report)

        report.counts = {k: {"unseen": v["unseen"], "baseline": v.get("baseline", v["unseen"])}
                         for k, v in ctx.counts().items()}
        return report

    def _observe(self, cand: Candidate) -> int | None:
        """Unseen count, or None when the account could not be checked this cycle."""
        if cand.params is None:
            log.warning("Skipping account %s this cycle: no usable IMAP credentials", cand.key)
            return None
        try:
            return int(self.unseen(cand.params, self.timeout))
        except IdentSwitchError as e:
            log.warning("Failed to check mail for account %s: %s", cand.key, e)
        except Exception:
            log.exception("Unexpected error checking mail for account %s", cand.key)
        return None

    def _apply(self, ctx: SessionContext, cand: Candidate, observed: int | None, report: CheckReport) -> None:
        if observed is None:
            return
        with self._lock:
            first = cand.key not in ctx.counts()
            previous, baseline = ctx.record_count(cand.key, observed)
        report.checked.append(cand.key)
        log.info("Check account %s (%s): unseen=%s, previous=%s, baseline=%s",
                 cand.key, cand.label, observed, previous, baseline)
        if not first and observed > previous:
            report.notifications.append(Notification(
                account_id=cand.key,
                label=cand.label,
                count=observed,
                basic=NotifyMode(cand.basic).resolve(self.defaults.basic),
                sound=NotifyMode(cand.sound).resolve(self.defaults.sound),
                desktop=NotifyMode(cand.desktop).resolve(self.defaults.desktop),
            ))
