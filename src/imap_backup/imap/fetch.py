"""FETCH response parsing and IMAP argument formatting."""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime
from email.utils import parsedate_to_datetime
from typing import TypeAlias

from imap_backup.errors import ProtocolError

_LINE_LITERAL_RE = re.compile(rb"\{(?P<n>\d+)\+?\}\s*$")
_ATOM_END = frozenset(b" ()\r\n\"")
_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")

# Parsed IMAP data: atoms are str, quoted strings and literals are bytes, NIL is None.
Value: TypeAlias = "str | bytes | None | list[Value]"


@dataclass(frozen=True)
class UidItem:
    """UID data item."""

    uid: int


@dataclass(frozen=True)
class SizeItem:
    """RFC822.SIZE data item."""

    size: int


@dataclass(frozen=True)
class EnvelopeItem:
    """The parts of ENVELOPE the archive keeps."""

    sender: str | None
    date: datetime | None


@dataclass(frozen=True)
class BodyItem:
    """BODY[] data item (None when the server answered NIL)."""

    data: bytes | None


FetchItem: TypeAlias = "UidItem | SizeItem | EnvelopeItem | BodyItem"


@dataclass(frozen=True)
class FetchedMessage:
    """One `<seq> FETCH (...)` response with its items in server order."""

    seq_num: int
    items: tuple[FetchItem, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class MessageSummary:
    """Sequence number, UID and declared size from a metadata-only fetch."""

    seq_num: int
    uid: int
    size: int


class _Tokenizer:
    """Split aioimaplib response lines into IMAP tokens.

    A text line ending in `{n}` is followed by an element holding exactly n bytes of
    literal data; the text after the literal arrives as the next line.
    """

    def __init__(self, lines: Sequence[bytes | bytearray]) -> None:
        self._lines = lines

    def tokens(self) -> list[Value | _Paren]:
        out: list[Value | _Paren] = []
        idx = 0
        while idx < len(self._lines):
            line = bytes(self._lines[idx])
            literal = _LINE_LITERAL_RE.search(line)
            if literal is not None:
                out.extend(self._scan(line[: literal.start()]))
                if idx + 1 >= len(self._lines):
                    raise ProtocolError(f"literal of {literal.group('n')} bytes is missing")
                data = bytes(self._lines[idx + 1])
                size = int(literal.group("n"))
                if len(data) < size:
                    raise ProtocolError(f"literal truncated: expected {size}, got {len(data)}")
                out.append(data[:size])
                idx += 2
                continue
            out.extend(self._scan(line))
            idx += 1
        return out

    def _scan(self, line: bytes) -> list[Value | _Paren]:
        out: list[Value | _Paren] = []
        pos = 0
        end = len(line)
        while pos < end:
            ch = line[pos]
            if ch in b" \r\n":
                pos += 1
            elif ch == ord("("):
                out.append(_OPEN)
                pos += 1
            elif ch == ord(")"):
                out.append(_CLOSE)
                pos += 1
            elif ch == ord('"'):
                value, pos = _read_quoted(line, pos)
                out.append(value)
            else:
                start = pos
                depth = 0
                while pos < end:
                    ch = line[pos]
                    if ch == ord("["):
                        depth += 1
                    elif ch == ord("]"):
                        depth -= 1
                    elif depth <= 0 and ch in _ATOM_END:
                        break
                    pos += 1
                atom = line[start:pos].decode("ascii", errors="replace")
                out.append(None if atom.upper() == "NIL" else atom)
        return out


class _Paren:
    __slots__ = ("kind",)

    def __init__(self, kind: str) -> None:
        self.kind = kind


_OPEN = _Paren("(")
_CLOSE = _Paren(")")


def _read_quoted(line: bytes, pos: int) -> tuple[bytes, int]:
    """Read a quoted string starting at `pos` (the opening quote)."""
    out = bytearray()
    pos += 1
    while pos < len(line):
        ch = line[pos]
        if ch == ord("\\") and pos + 1 < len(line):
            out.append(line[pos + 1])
            pos += 2
            continue
        if ch == ord('"'):
            return bytes(out), pos + 1
        out.append(ch)
        pos += 1
    raise ProtocolError(f"unterminated quoted string in {line!r}")


def _nest(tokens: list[Value | _Paren]) -> list[Value]:
    """Fold flat tokens into nested lists."""
    stack: list[list[Value]] = [[]]
    for tok in tokens:
        if tok is _OPEN:
            stack.append([])
        elif tok is _CLOSE:
            if len(stack) == 1:
                # stray ')' in free-form status text
                continue
            done = stack.pop()
            stack[-1].append(done)
        else:
            stack[-1].append(tok)  # type: ignore[arg-type]
    while len(stack) > 1:
        done = stack.pop()
        stack[-1].append(done)
    return stack[0]


def parse_values(lines: Sequence[bytes | bytearray]) -> list[Value]:
    """Parse raw response lines into nested IMAP values.

    Args:
        lines: Response lines as returned by aioimaplib.

    Returns:
        Top-level values (atoms, strings, literals, lists).
    """
    return _nest(_Tokenizer(lines).tokens())


def _iter_fetch_responses(values: list[Value]) -> Iterable[tuple[int, list[Value]]]:
    """Yield `(seq_num, attributes)` for every `<n> FETCH (...)` in the stream."""
    for idx in range(len(values) - 2):
        seq, keyword, attrs = values[idx], values[idx + 1], values[idx + 2]
        if not (isinstance(seq, str) and seq.isdigit()):
            continue
        if not (isinstance(keyword, str) and keyword.upper() == "FETCH"):
            continue
        if isinstance(attrs, list):
            yield int(seq), attrs


def _as_text(value: Value) -> str | None:
    if value is None:
        return None
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, str):
        return value
    return None


def _as_int(value: Value, *, name: str) -> int:
    text = _as_text(value)
    if text is None or not text.isdigit():
        raise ProtocolError(f"{name} is not a number: {value!r}")
    return int(text)


def _parse_date(value: str | None) -> datetime | None:
    """Parse an envelope date, returning None for missing or malformed values."""
    if not value:
        return None
    try:
        return parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None


def parse_envelope(value: Value) -> EnvelopeItem:
    """Decode an ENVELOPE structure.

    Only the Date and the first From address are kept.

    Args:
        value: Parsed ENVELOPE list.

    Returns:
        EnvelopeItem with sender as `mailbox@host` (None if absent).

    Raises:
        ProtocolError: If the value is not an envelope list.
    """
    if not isinstance(value, list) or len(value) < 3:
        raise ProtocolError(f"malformed ENVELOPE: {value!r}")
    date_value = _as_text(value[0])

    sender: str | None = None
    from_list = value[2]
    if isinstance(from_list, list) and from_list and isinstance(from_list[0], list):
        addr = from_list[0]
        mailbox = _as_text(addr[2]) if len(addr) > 2 else None
        host = _as_text(addr[3]) if len(addr) > 3 else None
        if mailbox and host:
            sender = f"{mailbox}@{host}"
        elif mailbox:
            sender = mailbox

    return EnvelopeItem(sender=sender, date=_parse_date(date_value))


def _parse_items(attrs: list[Value]) -> tuple[FetchItem, ...]:
    """Convert a flat FETCH attribute list into typed items, keeping server order."""
    items: list[FetchItem] = []
    for idx in range(0, len(attrs) - 1, 2):
        name, value = attrs[idx], attrs[idx + 1]
        if not isinstance(name, str):
            continue
        key = name.upper()
        if key == "UID":
            items.append(UidItem(uid=_as_int(value, name="UID")))
        elif key == "RFC822.SIZE":
            items.append(SizeItem(size=_as_int(value, name="RFC822.SIZE")))
        elif key == "ENVELOPE":
            items.append(parse_envelope(value))
        elif key.startswith("BODY[]") or key == "RFC822":
            if isinstance(value, bytes):
                items.append(BodyItem(data=value))
            else:
                items.append(BodyItem(data=None))
    return tuple(items)


def parse_fetch_response(lines: Sequence[bytes | bytearray]) -> list[FetchedMessage]:
    """Parse a FETCH command response into messages.

    Args:
        lines: Response lines as returned by aioimaplib.

    Returns:
        FetchedMessage objects in the order the server sent them.
    """
    return [
        FetchedMessage(seq_num=seq, items=_parse_items(attrs))
        for seq, attrs in _iter_fetch_responses(parse_values(lines))
    ]


def parse_metadata_response(lines: Sequence[bytes | bytearray]) -> list[MessageSummary]:
    """Parse a `FETCH (UID RFC822.SIZE)` response.

    Args:
        lines: Response lines as returned by aioimaplib.

    Returns:
        MessageSummary objects in server order.

    Raises:
        ProtocolError: If a response lacks UID or RFC822.SIZE.
    """
    out: list[MessageSummary] = []
    for message in parse_fetch_response(lines):
        uid: int | None = None
        size: int | None = None
        for item in message.items:
            match item:
                case UidItem(uid=value):
                    uid = value
                case SizeItem(size=value):
                    size = value
        if uid is None or size is None:
            raise ProtocolError(f"FETCH for seq={message.seq_num} lacks UID or RFC822.SIZE")
        out.append(MessageSummary(seq_num=message.seq_num, uid=uid, size=size))
    return out


def format_sequence_set(numbers: Iterable[int]) -> str:
    """Format numbers as a compact IMAP sequence/UID set (`1:3,7,9:10`).

    Args:
        numbers: Sequence numbers or UIDs.

    Returns:
        IMAP set string.

    Raises:
        ValueError: If no numbers are given.
    """
    ordered = sorted(set(numbers))
    if not ordered:
        raise ValueError("empty sequence set")
    parts: list[str] = []
    start = prev = ordered[0]
    for num in ordered[1:]:
        if num == prev + 1:
            prev = num
            continue
        parts.append(str(start) if start == prev else f"{start}:{prev}")
        start = prev = num
    parts.append(str(start) if start == prev else f"{start}:{prev}")
    return ",".join(parts)


def imap_date(value: date) -> str:
    """Format a date for SEARCH criteria (`01-Jan-2021`), independent of locale."""
    return f"{value.day:02d}-{_MONTHS[value.month - 1]}-{value.year:04d}"
