"""Line-oriented TCP/TLS transport over asyncio streams."""

from __future__ import annotations

import asyncio
import contextlib
import ssl
from collections.abc import Callable
from enum import IntEnum
from urllib.parse import urlsplit

from loguru import logger

from tobby.core.constants import DEFAULT_PORT, DEFAULT_TLS_PORT
from tobby.core.errors import ConfigurationError, NotConnected

_CONNECT_TIMEOUT = 30.0
_SENSITIVE_COMMANDS = ("PASS ", "AUTHENTICATE ")


class ReadyState(IntEnum):
    CONNECTING = 0
    OPEN = 1
    CLOSING = 2
    CLOSED = 3


def parse_target(url: str) -> tuple[str, int, bool]:
    """Split ``irc://host[:port]`` / ``ircs://host[:port]`` into (host, port, tls)."""
    parts = urlsplit(url)
    if parts.scheme not in ("irc", "ircs"):
        raise ConfigurationError(f"Unsupported scheme in {url!r}", code="invalid_url", details={"url": url})
    if not parts.hostname:
        raise ConfigurationError(f"Missing host in {url!r}", code="invalid_url", details={"url": url})
    tls = parts.scheme == "ircs"
    port = parts.port or (DEFAULT_TLS_PORT if tls else DEFAULT_PORT)
    return parts.hostname, port, tls


def _redact(line: str) -> str:
    for prefix in _SENSITIVE_COMMANDS:
        if line.startswith(prefix) and line not in ("AUTHENTICATE PLAIN", "AUTHENTICATE *", "AUTHENTICATE +"):
            return prefix + "****"
    return line


class TransportSocket:
    """One stream to one server.

    State only moves forward: CONNECTING -> OPEN -> CLOSING -> CLOSED, or
    CONNECTING -> CLOSED when the connect fails. ``on_close`` fires exactly
    once, with the error that caused it (None for a clean close).
    """

    def __init__(
        self,
        url: str,
        *,
        tls_verify: bool = False,
        connect_timeout: float = _CONNECT_TIMEOUT,
        on_open: Callable[[], None] | None = None,
        on_line: Callable[[str], None] | None = None,
        on_close: Callable[[BaseException | None], None] | None = None,
    ) -> None:
        self.url = url
        self.host, self.port, self.tls = parse_target(url)
        self.tls_verify = tls_verify
        self.connect_timeout = connect_timeout
        self.on_open = on_open
        self.on_line = on_line
        self.on_close = on_close
        self._state = ReadyState.CONNECTING
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._read_task: asyncio.Task | None = None
        self._abort_requested = False
        self._close_cause: BaseException | None = None

    @property
    def state(self) -> ReadyState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is ReadyState.OPEN

    def _ssl_context(self) -> ssl.SSLContext | None:
        if not self.tls:
            return None
        ctx = ssl.create_default_context()
        if not self.tls_verify:
            ctx.check_hostname = False
            ctx.verify_mode = ssl.CERT_NONE
        return ctx

    async def open(self) -> bool:
        """Connect. Returns True once OPEN; on failure the socket is CLOSED and on_close has fired."""
        if self._state is not ReadyState.CONNECTING:
            logger.warning("open() on {} in state {}", self.url, self._state.name)
            return False
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(
                    self.host,
                    self.port,
                    ssl=self._ssl_context(),
                    server_hostname=self.host if self.tls else None,
                ),
                timeout=self.connect_timeout,
            )
        except (OSError, asyncio.TimeoutError) as exc:
            logger.warning("Connect to {} failed: {}", self.url, exc)
            self._finish(exc)
            return False
        except asyncio.CancelledError:
            self._finish(None)
            raise

        self._reader, self._writer = reader, writer
        if self._abort_requested:
            writer.close()
            self._finish(self._close_cause)
            return False

        self._state = ReadyState.OPEN
        logger.debug("Socket open: {}", self.url)
        self._read_task = asyncio.create_task(self._read_loop(), name=f"irc-read:{self.host}")
        if self.on_open is not None:
            self.on_open()
        return True

    def send(self, line: str) -> None:
        """Write one line, appending CRLF if absent. Raises NotConnected unless OPEN."""
        if self._state is not ReadyState.OPEN or self._writer is None:
            raise NotConnected()
        if not line.endswith("\r\n"):
            line = line.rstrip("\r\n") + "\r\n"
        logger.debug(">> {}", _redact(line.rstrip("\r\n")))
        self._writer.write(line.encode("utf-8"))

    def close(self, cause: BaseException | None = None) -> None:
        """Close the stream. Idempotent; a close while CONNECTING takes effect once the connect settles."""
        if self._state is ReadyState.CONNECTING:
            self._abort_requested = True
            self._close_cause = cause
            return
        if self._state is not ReadyState.OPEN:
            return
        self._state = ReadyState.CLOSING
        if self._writer is not None:
            with contextlib.suppress(Exception):
                self._writer.close()
        if self._read_task is not None and self._read_task is not asyncio.current_task():
            self._read_task.cancel()
        self._finish(cause)

    async def _read_loop(self) -> None:
        assert self._reader is not None
        cause: BaseException | None = None
        try:
            while True:
                data = await self._reader.readline()
                if not data:
                    break
                line = data.decode("utf-8", errors="replace").rstrip("\r\n")
                if not line:
                    continue
                logger.debug("<< {}", line)
                if self.on_line is not None:
                    try:
                        self.on_line(line)
                    except Exception as exc:
                        logger.exception("Line handler failed on {}: {}", self.url, exc)
        except (OSError, ValueError, asyncio.IncompleteReadError) as exc:
            cause = exc
        if self._state is ReadyState.OPEN:
            self._state = ReadyState.CLOSING
            if self._writer is not None:
                with contextlib.suppress(Exception):
                    self._writer.close()
        self._finish(cause)

    def _finish(self, cause: BaseException | None) -> None:
        if self._state is ReadyState.CLOSED:
            return
        self._state = ReadyState.CLOSED
        logger.debug("Socket closed: {} ({})", self.url, cause)
        if self.on_close is not None:
            try:
                self.on_close(cause)
            except Exception as exc:
                logger.exception("Close handler failed on {}: {}", self.url, exc)
