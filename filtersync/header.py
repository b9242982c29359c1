"""
header.py - Filter List Header Parser

Extracts version metadata from the leading comment block of a filter list:

    ! Title: AdGuard Base filter
    ! Version: 2.3.45.12
    ! TimeUpdated: 2024-05-20T10:30:00+00:00
    ! Expires: 4 days (update frequency)
    ! Diff-Path: ../patches/2/2-s-1716201000-3600.patch

Only the header block is scanned; it ends at the first non-comment line.
"""
from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Final, NamedTuple

#: Used when the list does not declare ``Expires``
DEFAULT_EXPIRES: Final[int] = 86400

HEADER_LINE_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"^\s*!\s*([A-Za-z][\w -]*?)\s*:\s*(.*?)\s*$"
)

EXPIRES_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"^(\d+)\s*(days?|hours?|d|h)?\b", re.IGNORECASE
)

#: Comment prefixes allowed inside the header block
COMMENT_PREFIXES: Final[tuple[str, ...]] = ("!", "#", "[")


def split_lines(text: str) -> list[str]:
    """
    Split filter text into lines on ``\\n`` or ``\\r\\n``.

    Other characters that ``str.splitlines`` treats as breaks (form feed,
    ``\\u2028`` and so on) stay inside the line, so patch line numbers and
    checksums match the published ones.

    Example:
        >>> split_lines("a\\r\\nb\\x0cc\\n")
        ['a', 'b\\x0cc']
    """
    if not text:
        return []
    lines = text.split("\n")
    if lines[-1] == "":
        lines.pop()
    return [line[:-1] if line.endswith("\r") else line for line in lines]


class FilterHeader(NamedTuple):
    """Parsed header fields."""
    version: str
    expires: int
    time_updated: int
    title: str | None = None
    diff_path: str | None = None


def parse_expires(value: str | None) -> int:
    """
    Convert an ``Expires`` header value to seconds.

    Example:
        >>> parse_expires("4 days (update frequency)")
        345600
        >>> parse_expires("12 hours")
        43200
        >>> parse_expires("garbage")
        86400
    """
    if not value:
        return DEFAULT_EXPIRES
    match = EXPIRES_PATTERN.match(value.strip())
    if not match:
        return DEFAULT_EXPIRES
    amount = int(match.group(1))
    unit = (match.group(2) or "days").lower()
    if unit.startswith("h"):
        return amount * 60 * 60
    return amount * 24 * 60 * 60


def parse_time_updated(value: str | None, fallback: int) -> int:
    """Parse an ISO-8601 timestamp to epoch ms, or return ``fallback``."""
    if not value:
        return fallback
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return fallback
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)


def read_header_fields(lines: list[str]) -> dict[str, str]:
    """Collect ``! Key: value`` pairs from the leading comment block."""
    found: dict[str, str] = {}
    for line in lines:
        stripped = line.strip()
        if not stripped:
            continue
        if not stripped.startswith(COMMENT_PREFIXES):
            break
        match = HEADER_LINE_PATTERN.match(stripped)
        if match:
            found.setdefault(match.group(1).lower(), match.group(2))
    return found


def parse_header(lines: list[str], now: int) -> FilterHeader | None:
    """
    Parse version metadata from filter content.

    Args:
        lines: Filter content
        now: Current time in ms, used when ``TimeUpdated`` is absent

    Returns:
        The parsed header, or None if the content has no ``Version`` field
    """
    found = read_header_fields(lines)
    version = found.get("version")
    if not version:
        return None

    time_updated = found.get("timeupdated") or found.get("last modified")
    return FilterHeader(
        version=version,
        expires=parse_expires(found.get("expires")),
        time_updated=parse_time_updated(time_updated, now),
        title=found.get("title") or None,
        diff_path=found.get("diff-path") or None,
    )
