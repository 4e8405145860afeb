from __future__ import annotations

from typing import Any, Mapping


def get_field(obj: Any, name: str, default: Any = None) -> Any:
    """Read ``name`` from a Stripe object, a plain mapping or any attribute holder."""
    if obj is None:
        return default
    if isinstance(obj, Mapping):
        value = obj.get(name, default)
    else:
        value = getattr(obj, name, default)
    return default if value is None else value


def object_id(obj: Any) -> str | None:
    """Return the id of an expanded object, or the value itself when it is already an id."""
    if obj is None:
        return None
    if isinstance(obj, str):
        return obj or None
    value = get_field(obj, "id")
    return str(value) if value else None
