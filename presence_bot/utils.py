"""Small text helpers shared by the repository and the notifier."""

import html
import re

_STRIP_CHARS = re.compile(r"[<>]")
_INVALID_CHARS = re.compile(r"[^a-z0-9_\-]")


def sanitize_name(raw: str | None) -> str:
    """Normalize a user-supplied entity name.

    Returns an empty string for input that is unusable after normalization.
    """
    if not raw:
        return ""
    name = _STRIP_CHARS.sub("", raw).strip().lower()
    return _INVALID_CHARS.sub("", name)


def escape_html(text: str) -> str:
    if not text:
        return ""
    return html.escape(text, quote=True)


def format_duration(seconds: float) -> str:
    """Render an online duration: "45 minutes", "1hr 30m", "2d 3hrs"."""
    if seconds < 0:
        return "0 minutes"

    minutes = int(seconds // 60)
    hours = minutes // 60
    days = hours // 24

    if days > 0:
        remaining_hours = hours % 24
        return f"{days}d {remaining_hours}hrs" if remaining_hours else f"{days}d"
    if hours > 0:
        remaining_minutes = minutes % 60
        return f"{hours}hr {remaining_minutes}m" if remaining_minutes else f"{hours}hr"
    return f"{minutes} minutes"
