from __future__ import annotations
import logging

from ident_switch.db.session import engine
from ident_switch.db.models import Base

log = logging.getLogger(__name__)


# create_all only adds missing tables, it never drops or alters existing ones
def init_db(bind=None) -> None:
    bind = bind or engine
    Base.metadata.create_all(bind=bind)
    log.info("Database schema ready (%s)", bind.url.render_as_string(hide_password=True))
