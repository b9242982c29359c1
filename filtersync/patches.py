"""
patches.py - Incremental (Diff) Updates for Filter Lists

Lists that support incremental updates declare where their next patch lives:

    ! Diff-Path: ../patches/2/2-s-1716201000-3600.patch#base

The path is relative to the list URL. The optional ``#name`` fragment
selects one section of a batch patch that serves several lists.

Patch Format (RCS):
    diff name:base checksum:4f1c...e2 lines:4
    d3 1
    a3 2
    ! Version: 2.3.46
    ||new-tracker.example^

    - ``dN M`` deletes M lines starting at line N of the old file
    - ``aN M`` appends the next M lines after line N of the old file
    - line numbers always refer to the OLD file; commands are ascending
    - the optional ``diff`` line carries the SHA-1 of the resulting file
      (lines joined with ``\\n``) and the number of patch lines after it

A missing patch (HTTP 404) means no newer version is published yet.
Patches are chained: every applied patch carries the ``Diff-Path`` of
the next one, so we keep applying until the feed runs dry.
"""
from __future__ import annotations

import hashlib
import logging
import re
from typing import Awaitable, Callable, Final, NamedTuple
from urllib.parse import urldefrag, urljoin

from filtersync.header import read_header_fields, split_lines

logger = logging.getLogger(__name__)

#: Fetches a URL; returns None when the resource does not exist
PatchFetcher = Callable[[str], Awaitable["str | None"]]

#: Upper bound on chained patches applied in one call
MAX_CHAINED_PATCHES: Final[int] = 32

COMMAND_PATTERN: Final[re.Pattern[str]] = re.compile(r"^([ad])(\d+) (\d+)$")

DIFF_HEADER_PATTERN: Final[re.Pattern[str]] = re.compile(r"^diff\s+(.*)$")


class PatchError(ValueError):
    """The patch is malformed or does not apply to the given content."""


class PatchSection(NamedTuple):
    """One ``diff`` section of a (possibly batched) patch file."""
    name: str | None
    checksum: str | None
    line_count: int | None
    body: list[str]


# =============================================================================
# PARSING
# =============================================================================

def _parse_diff_header(line: str) -> dict[str, str]:
    match = DIFF_HEADER_PATTERN.match(line)
    if not match:
        return {}
    attrs = {}
    for token in match.group(1).split():
        key, sep, value = token.partition(":")
        if sep:
            attrs[key] = value
    return attrs


def split_sections(patch_text: str) -> list[PatchSection]:
    """
    Split a patch file into sections.

    A file without ``diff`` lines is a single anonymous section.
    """
    sections: list[PatchSection] = []
    attrs: dict[str, str] | None = None
    body: list[str] = []

    def flush() -> None:
        if attrs is None and not body:
            return
        meta = attrs or {}
        count = meta.get("lines")
        sections.append(PatchSection(
            name=meta.get("name"),
            checksum=meta.get("checksum"),
            line_count=int(count) if count and count.isdigit() else None,
            body=body,
        ))

    for line in split_lines(patch_text):
        if line.startswith("diff ") and (attrs is not None or not body):
            flush()
            attrs = _parse_diff_header(line)
            body = []
            continue
        body.append(line)
    flush()
    return sections


def select_section(sections: list[PatchSection], name: str | None) -> PatchSection | None:
    if not sections:
        return None
    if name is None:
        return sections[0]
    for section in sections:
        if section.name == name:
            return section
    return None


# =============================================================================
# APPLYING
# =============================================================================

def apply_rcs(lines: list[str], commands: list[str]) -> list[str]:
    """
    Apply RCS-style diff commands to ``lines``.

    Example:
        >>> apply_rcs(["a", "b", "c"], ["d2 1", "a3 1", "d"])
        ['a', 'c', 'd']
    """
    result = list(lines)
    offset = 0
    i = 0
    while i < len(commands):
        command = commands[i]
        i += 1
        if not command.strip():
            continue
        match = COMMAND_PATTERN.match(command.strip())
        if not match:
            raise PatchError(f"invalid patch command: {command!r}")

        op, start, count = match.group(1), int(match.group(2)), int(match.group(3))
        if op == "d":
            index = start - 1 + offset
            if start < 1 or index + count > len(result):
                raise PatchError(f"delete out of range: {command}")
            del result[index:index + count]
            offset -= count
        else:
            added = commands[i:i + count]
            if len(added) != count:
                raise PatchError(f"truncated add block: {command}")
            i += count
            index = start + offset
            if index > len(result):
                raise PatchError(f"add out of range: {command}")
            result[index:index] = added
            offset += count
    return result


def checksum(lines: list[str]) -> str:
    return hashlib.sha1("\n".join(lines).encode("utf-8")).hexdigest()


def apply_section(lines: list[str], section: PatchSection) -> list[str]:
    """Apply one patch section and validate it against its ``diff`` line."""
    if section.line_count is not None and section.line_count != len(section.body):
        raise PatchError(
            f"patch declares {section.line_count} lines, has {len(section.body)}"
        )
    result = apply_rcs(lines, section.body)
    if section.checksum and checksum(result) != section.checksum:
        raise PatchError("checksum mismatch after applying patch")
    return result


async def apply_patch(url: str, content: str, fetch: PatchFetcher) -> str | None:
    """
    Bring ``content`` up to date by applying the chain of published patches.

    Args:
        url: URL the filter was downloaded from; ``Diff-Path`` is relative to it
        content: Current filter content, lines joined with ``\\n``
        fetch: Coroutine fetching a URL, returning None for a missing resource

    Returns:
        The patched content (identical to ``content`` when no newer patch is
        published yet), or None when the list has no patch feed at all

    Raises:
        PatchError: If a fetched patch is malformed or does not apply
    """
    lines = split_lines(content)
    base_url = url
    applied = 0

    for _ in range(MAX_CHAINED_PATCHES):
        diff_path = read_header_fields(lines).get("diff-path")
        if not diff_path:
            if applied == 0:
                return None
            break

        patch_url, fragment = urldefrag(urljoin(base_url, diff_path))
        patch_text = await fetch(patch_url)
        if patch_text is None:
            logger.debug("No patch published yet at %s", patch_url)
            break
        if not patch_text.strip():
            break

        section = select_section(split_sections(patch_text), fragment or None)
        if section is None:
            raise PatchError(f"patch {patch_url} has no section {fragment!r}")

        patched = apply_section(lines, section)
        applied += 1
        if patched == lines:
            break
        lines = patched
    else:
        logger.warning("Stopped after %d chained patches for %s", MAX_CHAINED_PATCHES, url)

    if applied:
        logger.debug("Applied %d patch(es) to %s", applied, url)
    return "\n".join(lines)
