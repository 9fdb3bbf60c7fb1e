"""
Field access over vendor payloads whose shape varies between gateway versions.

Payloads may be flat (``{"messageId": ..., "text": ...}``), wrapped
(``{"event": ..., "data": {...}}``) or carry the WhatsApp message proto under
``msgContent`` / ``message``. Lookups walk an ordered list of layers and
an ordered list of dotted field names; the first non-empty value wins.
"""
from typing import Any, Dict, Iterable, List, Optional


INSTANCE_FIELDS = ("instanceId", "instance_id", "instance", "instanceName")
MESSAGE_ID_FIELDS = ("messageId", "message_id", "key.id", "id")
FROM_ME_FIELDS = ("fromMe", "isFromMe", "key.fromMe")


def is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (dict, list, tuple)):
        return len(value) == 0
    return False


def get_path(obj: Any, path: str) -> Any:
    """Resolve a dotted path through nested dicts; None when any step is missing."""
    for part in path.split("."):
        if not isinstance(obj, dict):
            return None
        obj = obj.get(part)
    return obj


def first_value(layers: Iterable[Dict[str, Any]], names: Iterable[str]) -> Any:
    """First non-empty value of ``names`` across ``layers`` (layer-major order)."""
    names = tuple(names)
    for layer in layers:
        for name in names:
            value = get_path(layer, name)
            if not is_empty(value):
                return value
    return None


def first_string(layers: Iterable[Dict[str, Any]], names: Iterable[str]) -> Optional[str]:
    """Like ``first_value`` but only accepts scalar values, returned stripped."""
    names = tuple(names)
    for layer in layers:
        for name in names:
            value = get_path(layer, name)
            if isinstance(value, bool) or value is None:
                continue
            if isinstance(value, (int, float)):
                return str(value)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return None


def first_bool(layers: Iterable[Dict[str, Any]], names: Iterable[str]) -> Optional[bool]:
    names = tuple(names)
    for layer in layers:
        for name in names:
            value = get_path(layer, name)
            if isinstance(value, bool):
                return value
            if isinstance(value, str) and value.lower() in ("true", "false"):
                return value.lower() == "true"
    return None


def layers(payload: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Nesting layers ordered from the innermost message container outwards."""
    data = payload.get("data") if isinstance(payload.get("data"), dict) else None
    candidates = [
        payload.get("msgContent"),
        payload.get("message"),
    ]
    if data is not None:
        candidates += [data.get("msgContent"), data.get("message"), data]
    candidates.append(payload)

    result = []
    for candidate in candidates:
        if isinstance(candidate, dict) and not any(candidate is seen for seen in result):
            result.append(candidate)
    return result


def envelope_layers(payload: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Top-level and ``data`` layers, where routing fields (ids, flags, chat) live."""
    result = [payload]
    data = payload.get("data")
    if isinstance(data, dict):
        result.append(data)
    return result


def instance_id(payload: Dict[str, Any]) -> Optional[str]:
    return first_string(envelope_layers(payload), INSTANCE_FIELDS)


def provider_message_id(payload: Dict[str, Any]) -> Optional[str]:
    return first_string(envelope_layers(payload), MESSAGE_ID_FIELDS)


def is_from_me(payload: Dict[str, Any]) -> Optional[bool]:
    return first_bool(envelope_layers(payload), FROM_ME_FIELDS)
