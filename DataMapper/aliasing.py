"""
Alias translation

Collections let callers write conditions in terms of attribute paths
(``name``, ``pets.name``). translate() rewrites those paths into qualified
column references (```pets`.`name```) using an alias map, leaving anything
between quotes untouched.
"""

import re
from typing import Iterator, Mapping

QUOTES = "'\"`"

_IDENTIFIER = re.compile(r"[A-Za-z0-9_.]+")


def tokenize(text: str) -> Iterator[tuple[str, str]]:
    """
    Split SQL text into ``(kind, text)`` tokens.

    Kinds are ``quoted`` (a span between matching quote characters,
    quotes included; backslash escapes stay inside the span), ``identifier``
    (a run of letters, digits, underscores and dots) and ``other``.
    An unterminated quote swallows the rest of the text.
    """
    position = 0
    length = len(text)

    while position < length:
        char = text[position]

        if char in QUOTES:
            end = position + 1
            while end < length and text[end] != char:
                end += 2 if text[end] == "\\" else 1
            end = min(end + 1, length)
            yield "quoted", text[position:end]
            position = end
            continue

        match = _IDENTIFIER.match(text, position)
        if match:
            yield "identifier", match.group(0)
            position = match.end()
            continue

        yield "other", char
        position += 1


def translate(text: str, alias_map: Mapping[str, str]) -> str:
    """
    Replace every whole identifier found in the alias map.

    Usage:
        translate("pets.name LIKE 'pets.name%'", {'pets.name': '`pets`.`name`'})
        # "`pets`.`name` LIKE 'pets.name%'"
    """
    if not alias_map:
        return text

    return "".join(
        alias_map.get(token, token) if kind == "identifier" else token
        for kind, token in tokenize(text)
    )
