"""Small string helpers shared across the SIP stack."""

from __future__ import annotations

import random
from typing import Any, NamedTuple

LETTERS = "0123456789abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ"

# Whitespace characters recognised by the SIP grammar.
ABNF_WS = " \t"

_UPPER = "ABCDEFGHIJKLMNOPQRSTUVWXYZ"
_LOWER = "abcdefghijklmnopqrstuvwxyz"
_TO_LOWER = str.maketrans(_UPPER, _LOWER)
_TO_UPPER = str.maketrans(_LOWER, _UPPER)

_KNOWN_HEADERS = {
    "Via": "via",
    "via": "via",
    "From": "from",
    "from": "from",
    "To": "to",
    "to": "to",
    "Call-ID": "call-id",
    "call-id": "call-id",
    "Contact": "contact",
    "contact": "contact",
    "CSeq": "cseq",
    "CSEQ": "cseq",
    "cseq": "cseq",
    "Content-Type": "content-type",
    "content-type": "content-type",
    "Route": "route",
    "route": "route",
    "Record-Route": "record-route",
    "record-route": "record-route",
    "Max-Forwards": "max-forwards",
    "Timestamp": "timestamp",
    "timestamp": "timestamp",
}


class Delimiter(NamedTuple):
    """A pair of characters that quote a stretch of text."""

    start: str
    end: str


QUOTES_DELIM = Delimiter('"', '"')
ANGLES_DELIM = Delimiter("<", ">")


def rand_string(n: int) -> str:
    """Return a random alphanumeric string of length ``n``."""
    return "".join(random.choices(LETTERS, k=n))


def nonce(n: int) -> str:
    """Return a random alphanumeric nonce of length ``n``."""
    return "".join(random.choice(LETTERS) for _ in range(n))


def ascii_to_lower(s: str) -> str:
    """Lower-case ASCII letters only, leaving everything else untouched."""
    return s.translate(_TO_LOWER)


def ascii_to_upper(s: str) -> str:
    """Upper-case ASCII letters only, leaving everything else untouched."""
    return s.translate(_TO_UPPER)


def header_to_lower(s: str) -> str:
    """Return the canonical lower-case form of a header name."""
    known = _KNOWN_HEADERS.get(s)
    if known is not None:
        return known
    return ascii_to_lower(s)


def uri_is_sip(s: str) -> bool:
    """Tell whether a scheme is ``sip``."""
    return s in ("sip", "SIP")


def uri_is_sips(s: str) -> bool:
    """Tell whether a scheme is ``sips``."""
    return s in ("sips", "SIPS")


def split_by_whitespace(text: str) -> list[str]:
    """Split text on runs of SIP whitespace.

    Leading whitespace yields an empty first element.
    """
    result: list[str] = []
    buffer: list[str] = []
    in_string = True
    for char in text:
        if char in ABNF_WS:
            if in_string:
                result.append("".join(buffer))
                buffer.clear()
            in_string = False
        else:
            buffer.append(char)
            in_string = True
    if buffer:
        result.append("".join(buffer))
    return result


def find_unescaped(text: str, target: str, *args: Delimiter) -> int:
    """Index of the first ``target`` outside any of the given delimiters, or -1."""
    return find_any_unescaped(text, target, *args)


def find_any_unescaped(text: str, targets: str, *args: Delimiter) -> int:
    """Index of the first character from ``targets`` outside the delimiters, or -1."""
    end_chars = {delim.start: delim.end for delim in args}
    escaped = False
    end_escape = ""
    for idx, char in enumerate(text):
        if not escaped and char in targets:
            return idx
        if escaped:
            escaped = char != end_escape
        elif char in end_chars:
            end_escape = end_chars[char]
            escaped = True
    return -1


def message_short_string(msg: Any) -> str:
    """Short one-line description of a message, for logging."""
    short = getattr(msg, "short", None)
    if callable(short):
        return short()
    return "Unknown message type"