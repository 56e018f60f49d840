"""Human-readable countdown and "time ago" strings for the dashboard and CLI."""

from __future__ import annotations

from datetime import datetime, timedelta


def format_countdown(remaining: timedelta) -> str:
    """Render a remaining duration as ``M:SS`` (e.g. ``59:07``)."""
    total = max(0, int(remaining.total_seconds()))
    minutes, seconds = divmod(total, 60)
    return f"{minutes}:{seconds:02d}"


def format_relative(when: datetime | None, now: datetime) -> str:
    """Short relative age: ``Just now``, ``5m ago``, ``3h ago``, ``yesterday``, ``4d ago``."""
    if when is None:
        return "Just now"
    diff = now - when
    minutes = int(diff.total_seconds() // 60)
    if minutes < 1:
        return "Just now"
    if minutes < 60:
        return f"{minutes}m ago"
    hours = minutes // 60
    if hours < 24:
        return f"{hours}h ago"
    days = hours // 24
    if days == 1:
        return "yesterday"
    return f"{days}d ago"
