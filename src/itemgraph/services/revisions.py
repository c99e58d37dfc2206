"""Revisions service."""

from __future__ import annotations

from typing import Optional

from ..config import Settings
from ..core.defs import SchemaOverview
from ..core.query_types import Query
from ..database.connection import Database
from ..messaging.events import HookEmitter
from ..runtime.context import Accountability
from .items import ItemsService


class RevisionsService(ItemsService):
    """
    Items service bound to ``directus_revisions``.

    A revision stores the post-write snapshot of one item (``data``) and the
    values that changed (``delta``). Revisions of nested writes point at the
    revision of the outer write through ``parent``.
    """

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
            "directus_revisions",
            schema=schema,
            db=db,
            accountability=accountability,
            emitter=emitter,
            settings=settings,
        )

    async def read_children(self, parent: int) -> list[dict]:
        """Revisions written by nested writes of revision ``parent``."""
        return await self.read_by_query(Query(filter={"parent": {"_eq": parent}}, limit=-1))
