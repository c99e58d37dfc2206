"""
Post-fetch field transformers, selected by a field's special flags.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

from ..core.defs import FieldOverview

logger = logging.getLogger(__name__)

MASK = "**********"


def transform_value(value: Any, field: FieldOverview, options: Optional[dict[str, bool]] = None) -> Any:
    """
    Apply read transformers to one value.

    - conceal: replaced by the mask
    - hash: returned as stored, never re-hashed
    - json: stored text parsed; json-stringify returns text
    - csv: split into a list
    - boolean / cast-boolean: cast to bool
    """
    options = options or {}
    special = field.special

    if value is None:
        return None

    if "conceal" in special and options.get("conceal", True):
        return MASK

    if "hash" in special:
        return value

    if "json-stringify" in special:
        return value if isinstance(value, str) else json.dumps(value)

    if (field.type == "json" or "json" in special or "cast-json" in special) and options.get("json", True):
        if isinstance(value, (str, bytes)):
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                logger.warning(f'Field "{field.field}" holds invalid JSON; returning it as text')
                return value
        return value

    if field.type == "csv" or "csv" in special:
        if isinstance(value, str):
            return [part for part in value.split(",") if part]
        return value

    if "boolean" in special or "cast-boolean" in special:
        if isinstance(value, str):
            return value.lower() in ("1", "true", "yes")
        return bool(value)

    return value
