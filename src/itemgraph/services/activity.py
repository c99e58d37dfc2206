"""Activity log service."""

from __future__ import annotations

from typing import Optional

from ..config import Settings
from ..core.defs import SchemaOverview
from ..database.connection import Database
from ..messaging.events import HookEmitter
from ..runtime.context import Accountability
from .items import ItemsService


class Action:
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    SOFT_DELETE = "soft-delete"
    RESTORE = "restore"
    COMMENT = "comment"


class ActivityService(ItemsService):
    """Items service bound to ``directus_activity``."""

    def __init__(
        self,
        *,
        schema: SchemaOverview,
        db: Database,
        accountability: Optional[Accountability] = None,
        emitter: Optional[HookEmitter] = None,
        settings: Optional[Settings] = None,
    ):
        super().__init__(
            "directus_activity",
            schema=schema,
            db=db,
            accountability=accountability,
            emitter=emitter,
            settings=settings,
        )
