"""
directives.py - Preprocessor Directive Resolution for Filter Lists

Raw filter text may contain conditional and include directives:

    !#if (adguard_ext_chromium && !adguard_ext_safari)
    ||chromium-only.example^
    !#else
    ||other.example^
    !#endif
    !#include ../common/trackers.txt

Resolution keeps the active branch of every ``!#if`` block and inlines
``!#include`` targets (resolved relative to the including list, same
origin only, recursively). The result is the "resolved" content handed
to the rule engine; the unresolved text is kept separately as raw content.
"""
from __future__ import annotations

import re
from typing import Awaitable, Callable, Final, Mapping
from urllib.parse import urljoin, urlparse

#: Fetches an included list; raises on failure
IncludeFetcher = Callable[[str], Awaitable[list[str]]]

IF_DIRECTIVE: Final[str] = "!#if"
ELSE_DIRECTIVE: Final[str] = "!#else"
ENDIF_DIRECTIVE: Final[str] = "!#endif"
INCLUDE_DIRECTIVE: Final[str] = "!#include"

MAX_INCLUDE_DEPTH: Final[int] = 8

TOKEN_PATTERN: Final[re.Pattern[str]] = re.compile(r"\s*(&&|\|\||!|\(|\)|[A-Za-z_][\w]*)")

#: Conditions true for this build; unknown identifiers evaluate to false
DEFAULT_CONDITIONS: Final[Mapping[str, bool]] = {
    "adguard": True,
    "adguard_ext_chromium": True,
    "adguard_ext_chromium_mv3": False,
    "adguard_ext_firefox": False,
    "adguard_ext_edge": False,
    "adguard_ext_safari": False,
    "adguard_ext_opera": False,
    "adguard_ext_android_cb": False,
    "adguard_app_windows": False,
    "adguard_app_mac": False,
    "adguard_app_android": False,
    "adguard_app_ios": False,
    "ext_abp": False,
    "ext_ublock": False,
    "env_chromium": True,
    "env_firefox": False,
    "env_edge": False,
    "env_safari": False,
    "env_opera": False,
    "env_mobile": False,
}


class DirectiveError(ValueError):
    """Directives are malformed or an include cannot be resolved."""


# =============================================================================
# CONDITION EXPRESSIONS
# =============================================================================

def _tokenize(expression: str) -> list[str]:
    tokens = []
    pos = 0
    expression = expression.rstrip()
    while pos < len(expression):
        match = TOKEN_PATTERN.match(expression, pos)
        if not match:
            raise DirectiveError(f"invalid condition: {expression!r}")
        tokens.append(match.group(1))
        pos = match.end()
    return tokens


def evaluate_condition(expression: str, conditions: Mapping[str, bool]) -> bool:
    """
    Evaluate a ``!#if`` expression.

    Precedence, highest first: ``!``, ``&&``, ``||``.

    Example:
        >>> evaluate_condition("adguard && !ext_ublock", {"adguard": True})
        True
        >>> evaluate_condition("(env_firefox || env_safari)", {})
        False
    """
    tokens = _tokenize(expression)
    if not tokens:
        raise DirectiveError("empty condition")
    pos = 0

    def peek() -> str | None:
        return tokens[pos] if pos < len(tokens) else None

    def take() -> str:
        nonlocal pos
        if pos >= len(tokens):
            raise DirectiveError(f"unexpected end of condition: {expression!r}")
        token = tokens[pos]
        pos += 1
        return token

    def parse_or() -> bool:
        value = parse_and()
        while peek() == "||":
            take()
            rhs = parse_and()
            value = value or rhs
        return value

    def parse_and() -> bool:
        value = parse_not()
        while peek() == "&&":
            take()
            rhs = parse_not()
            value = value and rhs
        return value

    def parse_not() -> bool:
        if peek() == "!":
            take()
            return not parse_not()
        return parse_atom()

    def parse_atom() -> bool:
        token = take()
        if token == "(":
            value = parse_or()
            if take() != ")":
                raise DirectiveError(f"unbalanced parentheses: {expression!r}")
            return value
        if token in ("&&", "||", ")"):
            raise DirectiveError(f"unexpected {token!r} in {expression!r}")
        if token == "true":
            return True
        if token == "false":
            return False
        return bool(conditions.get(token, False))

    result = parse_or()
    if pos != len(tokens):
        raise DirectiveError(f"trailing tokens in condition: {expression!r}")
    return result


# =============================================================================
# RESOLUTION
# =============================================================================

def resolve_conditions(lines: list[str], conditions: Mapping[str, bool]) -> list[str]:
    """Drop inactive ``!#if``/``!#else`` branches and the directive lines."""
    result: list[str] = []
    # Each frame: (branch active, parent active, inside else)
    stack: list[tuple[bool, bool, bool]] = []
    active = True

    for line in lines:
        stripped = line.strip()
        if stripped.startswith(IF_DIRECTIVE):
            branch = active and evaluate_condition(stripped[len(IF_DIRECTIVE):], conditions)
            stack.append((branch, active, False))
            active = branch
        elif stripped.startswith(ELSE_DIRECTIVE):
            if not stack or stack[-1][2]:
                raise DirectiveError("!#else without matching !#if")
            branch, parent, _ = stack.pop()
            stack.append((not branch and parent, parent, True))
            active = not branch and parent
        elif stripped.startswith(ENDIF_DIRECTIVE):
            if not stack:
                raise DirectiveError("!#endif without matching !#if")
            _, parent, _ = stack.pop()
            active = parent
        elif active:
            result.append(line)

    if stack:
        raise DirectiveError("unterminated !#if block")
    return result


def _same_origin(a: str, b: str) -> bool:
    pa, pb = urlparse(a), urlparse(b)
    return (pa.scheme, pa.netloc) == (pb.scheme, pb.netloc)


async def resolve_directives(
    url: str,
    lines: list[str],
    conditions: Mapping[str, bool],
    fetch: IncludeFetcher,
    depth: int = 0,
) -> list[str]:
    """
    Resolve conditional and include directives.

    Args:
        url: URL of the list; includes are resolved relative to it
        lines: Raw list content
        conditions: Known condition constants
        fetch: Coroutine returning the lines of an included list
        depth: Current include depth (internal)

    Returns:
        Resolved content

    Raises:
        DirectiveError: On malformed directives, cross-origin or too deep includes
    """
    if depth > MAX_INCLUDE_DEPTH:
        raise DirectiveError(f"includes nested deeper than {MAX_INCLUDE_DEPTH} at {url}")

    result: list[str] = []
    for line in resolve_conditions(lines, conditions):
        stripped = line.strip()
        if not stripped.startswith(INCLUDE_DIRECTIVE):
            result.append(line)
            continue

        target = stripped[len(INCLUDE_DIRECTIVE):].strip()
        if not target:
            raise DirectiveError(f"empty include in {url}")
        include_url = urljoin(url, target)
        if not _same_origin(url, include_url):
            raise DirectiveError(f"include from a different origin is not allowed: {include_url}")

        included = await fetch(include_url)
        result.extend(await resolve_directives(include_url, included, conditions, fetch, depth + 1))
    return result
