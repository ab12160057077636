import html
import re
from typing import Any, Dict, Optional

_TAG_RE = re.compile(r"<[^>]*>")
_LINE_BREAK_RE = re.compile(r"(?i)<br\s*/?>|</(p|div|li|h[1-6]|blockquote|pre)>")
_BLANK_LINES_RE = re.compile(r"\n{3,}")


def clean_id(channel_id: str) -> str:
    """Turn a Teams channel ID into something usable in a room alias.

    '19:abc123@thread.tacv2' -> '19abc123'
    """
    s = channel_id or ""
    s = s.replace("@thread.tacv2", "")
    s = s.replace(":", "")
    return s


def alias_localpart(room_alias: str) -> str:
    """Local part of a room alias, without its sigil.

    '#teams_abc:example.org' -> 'teams_abc'
    """
    if not room_alias:
        return ""
    return room_alias.split(":", 1)[0][1:]


def full_alias(localpart: str, server_name: Optional[str] = None) -> str:
    if server_name:
        return f"#{localpart}:{server_name}"
    return f"#{localpart}"


def html_to_text(content: str) -> str:
    """Plain text rendering of a Teams HTML message body"""
    if not content:
        return ""
    text = _LINE_BREAK_RE.sub("\n", content)
    text = _TAG_RE.sub("", text)
    text = html.unescape(text).replace("\xa0", " ")
    text = "\n".join(line.rstrip() for line in text.splitlines())
    return _BLANK_LINES_RE.sub("\n\n", text).strip()


def message_content(content: str) -> Optional[Dict[str, Any]]:
    """Build the m.room.message content for a Teams message.

    Returns None when nothing readable is left, e.g. for control messages.
    """
    body = html_to_text(content)
    if not body:
        return None

    payload: Dict[str, Any] = {"msgtype": "m.text", "body": body}
    if _TAG_RE.search(content):
        payload["format"] = "org.matrix.custom.html"
        payload["formatted_body"] = content.strip()
    return payload
