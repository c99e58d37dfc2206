"""
Services module - items, metadata and bookkeeping services.
"""

from __future__ import annotations

from .items import ItemsService
from .activity import Action, ActivityService
from .collections import CollectionsService
from .fields import FieldsService
from .meta import MetaService
from .payload import PayloadService
from .relations import RelationsService
from .revisions import RevisionsService

__all__ = [
    "ItemsService",
    "Action",
    "ActivityService",
    "CollectionsService",
    "FieldsService",
    "MetaService",
    "PayloadService",
    "RelationsService",
    "RevisionsService",
]
