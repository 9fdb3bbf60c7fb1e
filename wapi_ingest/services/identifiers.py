"""
WhatsApp remote identifier (JID) helpers.

Individual chats normalize to ``<digits>@s.whatsapp.net``. Group ids and
anonymized ``@lid`` ids are kept verbatim since their digits are not a phone
number.
"""
import re
from typing import Optional

INDIVIDUAL_SUFFIX = "@s.whatsapp.net"
GROUP_SUFFIX = "@g.us"
LID_SUFFIX = "@lid"
BROADCAST_ID = "status@broadcast"

_NON_DIGITS = re.compile(r"\D")


def _local_part(raw: str) -> str:
    # "5511999999999:12@s.whatsapp.net" -> "5511999999999"
    return raw.split("@", 1)[0].split(":", 1)[0]


def normalize_phone(value: Optional[str]) -> Optional[str]:
    """Digits only, or None when nothing is left."""
    if value is None:
        return None
    digits = _NON_DIGITS.sub("", str(value))
    return digits or None


def is_broadcast(raw: Optional[str]) -> bool:
    return bool(raw) and raw.strip().lower() == BROADCAST_ID


def is_lid(raw: Optional[str]) -> bool:
    return bool(raw) and raw.strip().lower().endswith(LID_SUFFIX)


def is_group_identifier(raw: Optional[str], explicit: Optional[bool] = None) -> bool:
    """Whether ``raw`` addresses a group chat.

    An explicit flag from the payload wins. Otherwise this falls back to
    textual heuristics: the group domain suffix, or the legacy
    ``<creator>-<timestamp>`` form. A hyphenated value that is not digits on
    both sides (a formatted phone such as ``+55 11 9999-9999``) is treated
    as an individual.
    """
    if explicit is not None:
        return explicit
    if not raw:
        return False
    raw = raw.strip()
    if raw.lower().endswith(GROUP_SUFFIX):
        return True
    if "@" in raw:
        return False
    local = _local_part(raw)
    return "-" in local and local.replace("-", "").isdigit()


def normalize_remote_id(raw: str, is_group: bool) -> str:
    """Canonical form used as the conversation key."""
    raw = raw.strip()
    if is_group:
        return raw if "@" in raw else f"{raw}{GROUP_SUFFIX}"
    if is_lid(raw) or is_broadcast(raw):
        return raw
    digits = normalize_phone(_local_part(raw))
    return f"{digits}{INDIVIDUAL_SUFFIX}" if digits else raw


def phone_from_remote_id(raw: Optional[str]) -> Optional[str]:
    """The phone number embedded in an individual identifier, if any."""
    if not raw or is_group_identifier(raw) or is_lid(raw) or is_broadcast(raw):
        return None
    return normalize_phone(_local_part(raw))
