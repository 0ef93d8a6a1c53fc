from typing import Any, Optional

# keys under which a populated reference may carry its id
_ID_KEYS = ("_id", "id", "userId")


def canonical_id(value: Any) -> Optional[str]:
    """Stringify and trim an identifier; populated refs resolve to their id.

    Wire ids pass through here once, where they enter the schemas, so
    ``42``, ``"42 "`` and ``{"_id": 42}`` all become ``"42"`` and later
    comparisons are plain string equality.
    """
    if isinstance(value, dict):
        value = next((value[k] for k in _ID_KEYS if value.get(k) is not None), None)
    if value is None or isinstance(value, bool):
        return None
    text = str(value).strip()
    return text or None
