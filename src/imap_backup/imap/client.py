"""IMAP client wrappers used as the remote session of a backup run."""

from __future__ import annotations

import asyncio
import base64
import logging
import re
from collections.abc import AsyncIterator, Awaitable, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

import aioimaplib

from imap_backup.errors import NotFoundError, ProtocolError
from imap_backup.imap.fetch import (
    FetchedMessage,
    MessageSummary,
    format_sequence_set,
    parse_fetch_response,
    parse_metadata_response,
)
from imap_backup.utils.retry import retry_async

_LIST_MAILBOX_RE = re.compile(
    rb'^\* LIST \([^\)]*\)\s+(?P<delim>NIL|"[^"]*"|[^\s]+)\s+(?P<name>.+)$',
)
_LITERAL_RE = re.compile(rb"^\{(?P<n>\d+)\}$")
_UIDVALIDITY_RE = re.compile(rb"\[UIDVALIDITY (?P<uidvalidity>\d+)\]")
_UIDNEXT_RE = re.compile(rb"\[UIDNEXT (?P<uidnext>\d+)\]")
_EXISTS_RE = re.compile(rb"(?i)^(?:\* )?(?P<exists>\d+) EXISTS")
_UTF7_SHIFT_RE = re.compile(r"&([^-]*)-")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SelectInfo:
    """IMAP SELECT response metadata."""

    mailbox: str
    uidvalidity: int | None
    uidnext: int | None
    exists: int | None

    @property
    def message_count(self) -> int:
        """Return EXISTS, treating a missing value as an empty mailbox."""
        return self.exists or 0


class ImapClient:
    """Async IMAP session with one selected mailbox at a time.

    Every command holds the connection lock, so a single client is never driven by two
    folder operations at once.
    """

    def __init__(
        self,
        *,
        host: str,
        port: int,
        ssl: bool,
        timeout_seconds: float = 120.0,
        fetch_timeout_seconds: float = 1800.0,
    ) -> None:
        """Initialize the IMAP client.

        Args:
            host: IMAP host.
            port: IMAP port.
            ssl: Whether to use SSL.
            timeout_seconds: Network timeout for IMAP commands.
            fetch_timeout_seconds: Timeout for FETCH commands that transfer bodies.
        """
        self._host = host
        self._port = port
        self._ssl = ssl
        self._timeout = timeout_seconds
        self._fetch_timeout = fetch_timeout_seconds
        self._imap: aioimaplib.IMAP4 | aioimaplib.IMAP4_SSL | None = None
        self._lock = asyncio.Lock()
        self._selected: str | None = None

    @property
    def selected(self) -> str | None:
        """Return the currently selected mailbox, if any."""
        return self._selected

    async def connect(self) -> None:
        """Connect to the IMAP server."""
        async with self._lock:
            if self._imap is not None:
                return
            if self._ssl:
                imap = aioimaplib.IMAP4_SSL(self._host, self._port, timeout=self._timeout)
            else:
                imap = aioimaplib.IMAP4(self._host, self._port, timeout=self._timeout)
            await self._run(imap.wait_hello_from_server(), what="greeting")
            self._imap = imap

    async def login(self, *, username: str, password: str) -> None:
        """Login to the IMAP server.

        Args:
            username: IMAP username.
            password: IMAP password or app-specific password.

        Raises:
            ProtocolError: If authentication fails.
        """
        async with self._lock:
            imap = self._require()
            resp = await self._run(imap.login(username, password), what="LOGIN")
            if resp.result != "OK":
                raise ProtocolError(f"IMAP login failed: {resp.result} {resp.lines!r}")

    async def logout(self) -> None:
        """Logout and close the IMAP connection."""
        async with self._lock:
            if self._imap is None:
                return
            try:
                await self._imap.logout()
            finally:
                self._imap = None
                self._selected = None

    async def list_mailboxes(self, pattern: str = "*") -> list[str]:
        """List available IMAP mailboxes.

        Args:
            pattern: LIST wildcard pattern relative to the root.

        Returns:
            List of mailbox names, deduplicated, in server order.

        Raises:
            ProtocolError: If the LIST command fails.
        """
        async with self._lock:
            imap = self._require()
            resp = await self._run(imap.list('""', pattern), what="LIST")
            if resp.result != "OK":
                raise ProtocolError(f"IMAP LIST failed: {resp.result} {resp.lines!r}")
            mailboxes = _parse_list_response(resp.lines)
            if not mailboxes:
                logger.debug("IMAP LIST raw lines: %r", resp.lines)
            return mailboxes

    async def select(self, mailbox: str) -> SelectInfo:
        """Select a mailbox and return metadata.

        Args:
            mailbox: Mailbox name.

        Returns:
            SelectInfo with UIDVALIDITY and EXISTS info.

        Raises:
            NotFoundError: If the server refuses to select the mailbox.
            ProtocolError: If the SELECT command fails otherwise.
        """
        async with self._lock:
            imap = self._require()
            self._selected = None
            encoded = _imap_quote(_encode_mailbox_name(mailbox))
            resp = await self._run(imap.select(encoded), what="SELECT")
            if resp.result == "NO":
                raise NotFoundError(f"IMAP SELECT refused ({mailbox}): {resp.lines!r}")
            if resp.result != "OK":
                raise ProtocolError(
                    f"IMAP SELECT failed ({mailbox}): {resp.result} {resp.lines!r}",
                )

            uidvalidity: int | None = None
            uidnext: int | None = None
            exists: int | None = None

            for line in resp.lines:
                match = _UIDVALIDITY_RE.search(line)
                if match:
                    uidvalidity = int(match.group("uidvalidity"))
                match = _UIDNEXT_RE.search(line)
                if match:
                    uidnext = int(match.group("uidnext"))
                match = _EXISTS_RE.search(line)
                if match:
                    exists = int(match.group("exists"))

            self._selected = mailbox
            logger.debug(
                "Selected %s (uidvalidity=%s, exists=%s)",
                mailbox,
                uidvalidity,
                exists,
            )
            return SelectInfo(
                mailbox=mailbox,
                uidvalidity=uidvalidity,
                uidnext=uidnext,
                exists=exists,
            )

    async def fetch_metadata(self, first: int, last: int) -> list[MessageSummary]:
        """Fetch UID and RFC822.SIZE for a sequence range of the selected mailbox.

        Args:
            first: First sequence number (1-based).
            last: Last sequence number.

        Returns:
            MessageSummary items in server order.

        Raises:
            ProtocolError: If the FETCH command fails.
        """
        async with self._lock:
            imap = self._require_selected()
            resp = await self._run(
                imap.fetch(f"{first}:{last}", "(UID RFC822.SIZE)"),
                what="FETCH",
            )
            if resp.result != "OK":
                raise ProtocolError(f"IMAP FETCH failed: {resp.result} {resp.lines!r}")
            return parse_metadata_response(resp.lines)

    async def fetch_full(self, first: int, last: int) -> AsyncIterator[FetchedMessage]:
        """Fetch UID, size, envelope and body for a sequence range.

        Items inside each message are yielded in the order the server sent them.
        aioimaplib returns a command's response only once it is complete, so the whole
        range is held in memory before the first message is yielded; callers bound memory
        through the range they ask for.

        Args:
            first: First sequence number (1-based).
            last: Last sequence number.

        Yields:
            FetchedMessage items in server order.

        Raises:
            ProtocolError: If the FETCH command fails.
        """
        async with self._lock:
            imap = self._require_selected()
            resp = await self._run(
                imap.fetch(f"{first}:{last}", "(UID RFC822.SIZE ENVELOPE BODY.PEEK[])"),
                what="FETCH",
                timeout=self._fetch_timeout,
            )
            if resp.result != "OK":
                raise ProtocolError(f"IMAP FETCH failed: {resp.result} {resp.lines!r}")
            messages = parse_fetch_response(resp.lines)
        for message in messages:
            yield message

    async def uid_search(self, criteria: Iterable[str]) -> list[int]:
        """Run UID SEARCH and return matching UIDs.

        Args:
            criteria: IMAP search criteria.

        Returns:
            List of matching UIDs.

        Raises:
            ProtocolError: If the SEARCH command fails.
        """
        criteria = list(criteria)
        async with self._lock:
            imap = self._require_selected()
            resp = await self._run(
                imap.protocol.search(*criteria, by_uid=True),
                what="UID SEARCH",
            )
            if resp.result != "OK":
                raise ProtocolError(f"IMAP UID SEARCH failed: {resp.result} {resp.lines!r}")

            uids: list[int] = []
            for line in resp.lines:
                parts = line.split()
                if len(parts) >= 2 and parts[0] == b"*" and parts[1] == b"SEARCH":
                    parts = parts[2:]
                elif parts and parts[0] == b"SEARCH":
                    parts = parts[1:]

                if parts and all(p.isdigit() for p in parts):
                    uids.extend(int(p) for p in parts)

            if not uids:
                logger.debug(
                    "IMAP UID SEARCH returned no matches (criteria=%s, lines=%r)",
                    criteria,
                    resp.lines,
                )
            return uids

    async def add_flags(
        self,
        uids: Iterable[int],
        flags: Iterable[str],
        *,
        silent: bool = True,
    ) -> None:
        """Add flags to messages by UID in one STORE command.

        Args:
            uids: Message UIDs.
            flags: Flags to add, e.g. `\\Deleted`.
            silent: Whether to suppress per-message FETCH answers.

        Raises:
            ProtocolError: If the STORE command fails.
        """
        uid_set = format_sequence_set(uids)
        item = "+FLAGS.SILENT" if silent else "+FLAGS"
        flag_list = "(" + " ".join(flags) + ")"
        async with self._lock:
            imap = self._require_selected()
            resp = await self._run(imap.uid("store", uid_set, item, flag_list), what="UID STORE")
            if resp.result != "OK":
                raise ProtocolError(f"IMAP UID STORE failed: {resp.result} {resp.lines!r}")

    async def expunge(self) -> None:
        """Permanently remove messages flagged \\Deleted from the selected mailbox.

        Raises:
            ProtocolError: If the EXPUNGE command fails.
        """
        async with self._lock:
            imap = self._require_selected()
            resp = await self._run(imap.expunge(), what="EXPUNGE")
            if resp.result != "OK":
                raise ProtocolError(f"IMAP EXPUNGE failed: {resp.result} {resp.lines!r}")

    async def _run(self, coro: Awaitable[Any], *, what: str, timeout: float | None = None) -> Any:
        """Await an aioimaplib command, mapping transport failures to ProtocolError."""
        try:
            return await asyncio.wait_for(coro, timeout=timeout or self._timeout)
        except TimeoutError as exc:
            raise ProtocolError(f"IMAP {what} timed out") from exc
        except Exception as exc:
            raise ProtocolError(f"IMAP {what} failed: {exc!r}") from exc

    def _require(self) -> aioimaplib.IMAP4 | aioimaplib.IMAP4_SSL:
        """Return the underlying IMAP client or raise if not connected."""
        if self._imap is None:
            raise ProtocolError("IMAP client not connected")
        return self._imap

    def _require_selected(self) -> aioimaplib.IMAP4 | aioimaplib.IMAP4_SSL:
        """Return the underlying IMAP client or raise if no mailbox is selected."""
        imap = self._require()
        if self._selected is None:
            raise ProtocolError("no mailbox selected")
        return imap


class ImapPool:
    """Connection pool for IMAP clients; one client serves one folder at a time."""

    def __init__(
        self,
        *,
        host: str,
        port: int,
        ssl: bool,
        username: str,
        password: str,
        size: int,
        timeout_seconds: float = 120.0,
        fetch_timeout_seconds: float = 1800.0,
        connect_attempts: int = 1,
    ) -> None:
        """Initialize the IMAP client pool.

        Args:
            host: IMAP host.
            port: IMAP port.
            ssl: Whether to use SSL.
            username: IMAP username.
            password: IMAP password.
            size: Pool size.
            timeout_seconds: Network timeout for IMAP commands.
            fetch_timeout_seconds: Timeout for body FETCH commands.
            connect_attempts: Attempts per connection before giving up.
        """
        self._host = host
        self._port = port
        self._ssl = ssl
        self._username = username
        self._password = password
        self._size = size
        self._timeout = timeout_seconds
        self._fetch_timeout = fetch_timeout_seconds
        self._connect_attempts = connect_attempts
        self._clients: list[ImapClient] = []
        self._queue: asyncio.Queue[ImapClient] = asyncio.Queue()
        self._connected = False

    @property
    def size(self) -> int:
        """Return the configured number of connections."""
        return self._size

    async def connect(self) -> None:
        """Connect all IMAP clients in the pool."""
        if self._connected:
            return
        for _ in range(self._size):
            client = await retry_async(
                self._open_client,
                attempts=self._connect_attempts,
                retry_on=(ProtocolError,),
            )
            self._clients.append(client)
            await self._queue.put(client)
        self._connected = True

    async def _open_client(self) -> ImapClient:
        """Connect and log in one client, closing it again if login fails."""
        client = ImapClient(
            host=self._host,
            port=self._port,
            ssl=self._ssl,
            timeout_seconds=self._timeout,
            fetch_timeout_seconds=self._fetch_timeout,
        )
        await client.connect()
        try:
            await client.login(username=self._username, password=self._password)
        except ProtocolError:
            try:
                await client.logout()
            except Exception as exc:
                logger.debug("Logout after failed login also failed: %r", exc)
            raise
        return client

    async def logout(self) -> None:
        """Logout all IMAP clients and clear the pool."""
        for client in self._clients:
            try:
                await client.logout()
            except Exception as exc:
                logger.warning("IMAP logout failed: %r", exc)
        self._clients.clear()
        self._queue = asyncio.Queue()
        self._connected = False

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[ImapClient]:
        """Acquire an IMAP client from the pool."""
        client = await self._queue.get()
        try:
            yield client
        finally:
            await self._queue.put(client)


def _parse_list_response(lines: list[bytes]) -> list[str]:
    """Parse mailbox names from an IMAP LIST response.

    Args:
        lines: IMAP LIST response lines.

    Returns:
        Mailbox names.
    """
    out: list[str] = []
    idx = 0
    while idx < len(lines):
        line = lines[idx].strip()
        if line.startswith(b"+"):
            idx += 1
            continue
        if line.startswith(b"("):
            line = b"* LIST " + line
        elif line.startswith(b"LIST "):
            line = b"* " + line
        match = _LIST_MAILBOX_RE.match(line)
        if not match:
            idx += 1
            continue

        name_token = match.group("name").strip()
        if b'"' in name_token:
            first_quote = name_token.find(b'"')
            last_quote = name_token.rfind(b'"')
            if last_quote > first_quote:
                name_token = name_token[first_quote : last_quote + 1]
        else:
            parts = name_token.split()
            if parts:
                name_token = parts[-1]

        literal_match = _LITERAL_RE.match(name_token)
        if literal_match:
            if idx + 1 >= len(lines):
                break
            raw_name = bytes(lines[idx + 1]).strip()
            idx += 2
        else:
            raw_name = name_token
            idx += 1

        name = _decode_mailbox_name(raw_name)
        if name:
            out.append(name)

    seen: set[str] = set()
    result: list[str] = []
    for name in out:
        if name in seen:
            continue
        seen.add(name)
        result.append(name)
    return result


def _decode_mailbox_name(raw: bytes) -> str:
    """Decode an IMAP mailbox name with modified UTF-7 if needed.

    Args:
        raw: Raw mailbox token.

    Returns:
        Decoded mailbox name, or empty string if invalid.
    """
    value = raw.strip()
    if not value or value.upper() == b"NIL":
        return ""

    if value.startswith(b'"') and value.endswith(b'"') and len(value) >= 2:
        value = value[1:-1]
        value = value.replace(b'\\"', b'"').replace(b"\\\\", b"\\")

    decoded = value.decode("ascii", errors="replace")
    try:
        return _UTF7_SHIFT_RE.sub(_decode_utf7_run, decoded)
    except (ValueError, UnicodeDecodeError):
        return decoded


def _decode_utf7_run(match: re.Match[str]) -> str:
    """Decode one `&...-` run of modified UTF-7 (RFC 3501 5.1.3)."""
    run = match.group(1)
    if not run:
        return "&"
    data = run.replace(",", "/")
    data += "=" * (-len(data) % 4)
    return base64.b64decode(data, validate=True).decode("utf-16-be")


def _encode_mailbox_name(name: str) -> str:
    """Encode a mailbox name in modified UTF-7 for use in commands."""
    out: list[str] = []
    pending: list[str] = []

    def flush() -> None:
        if pending:
            raw = base64.b64encode("".join(pending).encode("utf-16-be")).decode("ascii")
            out.append("&" + raw.rstrip("=").replace("/", ",") + "-")
            pending.clear()

    for ch in name:
        if 0x20 <= ord(ch) <= 0x7E:
            flush()
            out.append("&-" if ch == "&" else ch)
        else:
            pending.append(ch)
    flush()
    return "".join(out)


def _imap_quote(value: str) -> str:
    """Quote a string for use in IMAP commands.

    Args:
        value: Raw mailbox name.

    Returns:
        Quoted string safe for IMAP commands.
    """
    stripped = value.strip()
    if not stripped:
        return '""'
    escaped = stripped.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'
