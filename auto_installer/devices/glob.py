"""Shell-style glob patterns used by device filters.

Supported syntax:
    ?        exactly one character
    *        any run of characters, including the empty run
    [abc]    one character out of a set
    [a-z]    one character out of a range
    [!abc]   one character not in the set

A ``]`` directly after ``[`` or ``[!`` is a member of the set. There is no
escape character. Patterns always match the whole value.

Unlike :mod:`fnmatch`, an unterminated ``[`` is rejected when the pattern is
compiled instead of being matched literally.
"""

from __future__ import annotations

import re
from functools import lru_cache

from auto_installer.exceptions import InvalidGlobError


def _translate_class(pattern: str, start: int) -> tuple[str, int]:
    """Translate the set starting at ``pattern[start] == "["``.

    Returns the regex fragment and the index just past the closing ``]``.
    """
    i = start + 1
    negate = False
    if i < len(pattern) and pattern[i] == "!":
        negate = True
        i += 1

    members: list[str] = []
    first = True
    while i < len(pattern):
        char = pattern[i]
        if char == "]" and not first:
            break
        first = False
        if i + 2 < len(pattern) and pattern[i + 1] == "-" and pattern[i + 2] != "]":
            low, high = char, pattern[i + 2]
            # a reversed range is empty
            if low <= high:
                members.append(f"{re.escape(low)}-{re.escape(high)}")
            i += 3
            continue
        members.append(re.escape(char))
        i += 1
    else:
        raise InvalidGlobError(pattern, f"unterminated '[' at position {start}")

    if not members:
        return ("." if negate else "(?!)"), i + 1
    prefix = "^" if negate else ""
    return f"[{prefix}{''.join(members)}]", i + 1


def translate(pattern: str) -> str:
    """Translate a glob pattern into an equivalent regular expression."""
    parts: list[str] = []
    i = 0
    while i < len(pattern):
        char = pattern[i]
        if char == "*":
            # Collapse runs of stars, they are equivalent to a single one
            while i + 1 < len(pattern) and pattern[i + 1] == "*":
                i += 1
            parts.append(".*")
            i += 1
        elif char == "?":
            parts.append(".")
            i += 1
        elif char == "[":
            fragment, i = _translate_class(pattern, i)
            parts.append(fragment)
        else:
            parts.append(re.escape(char))
            i += 1
    return "".join(parts)


class GlobPattern:
    """A compiled glob pattern."""

    __slots__ = ("pattern", "_regex")

    def __init__(self, pattern: str):
        self.pattern = pattern
        self._regex = re.compile(translate(pattern), re.DOTALL)

    def matches(self, value: str) -> bool:
        return self._regex.fullmatch(value) is not None

    def __repr__(self) -> str:
        return f"GlobPattern({self.pattern!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, GlobPattern):
            return NotImplemented
        return self.pattern == other.pattern

    def __hash__(self) -> int:
        return hash(self.pattern)


@lru_cache(maxsize=256)
def compile_glob(pattern: str) -> GlobPattern:
    return GlobPattern(pattern)


def matches(pattern: str, value: str) -> bool:
    """Return True if ``value`` matches the glob ``pattern`` in full.

    Raises:
        InvalidGlobError: If the pattern cannot be compiled
    """
    return compile_glob(pattern).matches(value)
