from __future__ import annotations

import dataclasses
from datetime import date, datetime
from enum import Enum
from typing import Any


def camel_case(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def to_json_dict(value: Any) -> Any:
    """
    Convert dataclasses (recursively) into JSON-ready structures.

    Field names become camelCase. Fields declared with metadata {"omitempty": True}
    are dropped when None or empty, mirroring the API's wire shapes.
    """
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        out = {}
        for f in dataclasses.fields(value):
            raw = getattr(value, f.name)
            if f.metadata.get("omitempty") and _is_empty(raw):
                continue
            out[f.metadata.get("json", camel_case(f.name))] = to_json_dict(raw)
        return out
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, bytes):
        return value.decode("utf-8", "replace")
    if isinstance(value, dict):
        return {k: to_json_dict(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_json_dict(v) for v in value]
    return value
