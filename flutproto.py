"""
Pixelflut wire protocol
Command encoding, reply parsing and the plain TCP connections used by flutstream.
"""

import logging
import re
import socket
from typing import NamedTuple, Optional, Tuple, Union

logger = logging.getLogger(__name__)

DEFAULT_PORT = 1337
SEND_BUFFER_SIZE = 8388608
MAX_LINE_LENGTH = 4096

Color = Tuple[int, ...]

_PX_RE = re.compile(r"PX (\d+) (\d+) ([0-9a-fA-F]{6}|[0-9a-fA-F]{8})")
_SIZE_RE = re.compile(r"(\d+)\s+(\d+)")
_COLOR_RE = re.compile(r"#?([0-9a-fA-F]{6}|[0-9a-fA-F]{8})")


class PixelflutError(Exception):
    """Base class for every error raised by flutstream."""


class CanvasConnectionError(PixelflutError, ConnectionError):
    """Connecting, reading or writing one canvas connection failed."""


class ProtocolError(PixelflutError):
    """The server reply (or a command line) does not follow the protocol."""


class ImageDecodeError(PixelflutError):
    """The source image could not be fetched or decoded."""


class ConfigError(PixelflutError, ValueError):
    """Invalid run configuration."""


class Pixel(NamedTuple):
    x: int
    y: int
    color: Color


class CanvasBounds(NamedTuple):
    width: int
    height: int

    def contains(self, x: int, y: int) -> bool:
        return 0 <= x < self.width and 0 <= y < self.height


def parse_address(address: str) -> Tuple[str, int]:
    """Split a ``host:port`` string, accepting ``[v6addr]:port`` too."""
    host, sep, port = address.rpartition(":")
    if not sep or not host:
        raise ConfigError(f"Server address must look like host:port, got {address!r}")
    if not port.isdigit() or not 0 < int(port) < 65536:
        raise ConfigError(f"Invalid port in server address {address!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    return host, int(port)


def parse_color(text: str) -> Color:
    """Parse ``rrggbb``/``rrggbbaa`` (optionally ``#``-prefixed) into a channel tuple."""
    match = _COLOR_RE.fullmatch(text.strip())
    if not match:
        raise ConfigError(f"Color must be rrggbb or rrggbbaa hex, got {text!r}")
    digits = match.group(1)
    return tuple(int(digits[i:i + 2], 16) for i in range(0, len(digits), 2))


def format_color(color: Color) -> str:
    return "".join(f"{channel:02x}" for channel in color)


def encode_pixel(x: int, y: int, color: Color) -> bytes:
    """Encode one pixel as a ``PX x y rrggbb[aa]`` command line."""
    return f"PX {x} {y} {format_color(color)}\n".encode("ascii")


def parse_px_command(line: Union[bytes, str]) -> Pixel:
    """Parse a ``PX`` set-pixel command back into a Pixel."""
    if isinstance(line, bytes):
        line = line.decode("ascii", errors="replace")
    match = _PX_RE.fullmatch(line.rstrip("\r\n"))
    if not match:
        raise ProtocolError(f"Not a PX set-pixel command: {line!r}")
    x, y, digits = match.groups()
    color = tuple(int(digits[i:i + 2], 16) for i in range(0, len(digits), 2))
    return Pixel(int(x), int(y), color)


def parse_size_reply(line: Union[bytes, str]) -> CanvasBounds:
    """Parse a ``SIZE <width> <height>`` reply line."""
    if isinstance(line, bytes):
        line = line.decode("ascii", errors="replace")
    if not line.startswith("SIZE "):
        raise ProtocolError(f"Unexpected SIZE response: {line!r}")
    match = _SIZE_RE.fullmatch(line[5:].rstrip("\r\n"))
    if not match:
        raise ProtocolError(f"Malformed SIZE response: {line!r}")
    width, height = match.groups()
    return CanvasBounds(int(width), int(height))


def open_connection(address: str, timeout: Optional[float] = 10.0) -> socket.socket:
    """Connect to the canvas server.

    The timeout only applies while connecting; the returned socket blocks
    without a timeout.
    """
    host, port = parse_address(address)
    try:
        sock = socket.create_connection((host, port), timeout=timeout)
    except OSError as e:
        raise CanvasConnectionError(f"Could not connect to {address}: {e}") from e
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_SNDBUF, SEND_BUFFER_SIZE)
        sock.settimeout(None)
    except OSError as e:
        sock.close()
        raise CanvasConnectionError(f"Could not configure socket for {address}: {e}") from e
    logger.debug("Connected to %s", address)
    return sock


def read_line(sock: socket.socket) -> bytes:
    """Read one ``\\n``-terminated line, one byte at a time so nothing past it is consumed."""
    buffer = bytearray()
    while not buffer.endswith(b"\n"):
        if len(buffer) >= MAX_LINE_LENGTH:
            raise ProtocolError(f"Reply line exceeds {MAX_LINE_LENGTH} bytes")
        try:
            chunk = sock.recv(1)
        except OSError as e:
            raise CanvasConnectionError(f"Read failed: {e}") from e
        if not chunk:
            raise CanvasConnectionError("Connection closed before a full reply line arrived")
        buffer += chunk
    return bytes(buffer)


def _request_line(target: Union[str, socket.socket], command: bytes, timeout: Optional[float]) -> bytes:
    if isinstance(target, socket.socket):
        return _exchange(target, command)
    sock = open_connection(target, timeout)
    try:
        return _exchange(sock, command)
    finally:
        sock.close()


def _exchange(sock: socket.socket, command: bytes) -> bytes:
    try:
        sock.sendall(command)
    except OSError as e:
        raise CanvasConnectionError(f"Write failed: {e}") from e
    return read_line(sock)


def query_size(target: Union[str, socket.socket], timeout: Optional[float] = 10.0) -> CanvasBounds:
    """Ask the server for its canvas size.

    ``target`` is either an open socket or a ``host:port`` address, in which
    case a connection is opened just for this query. There is no retry.
    """
    bounds = parse_size_reply(_request_line(target, b"SIZE\n", timeout))
    logger.debug("Server canvas size: %dx%d", bounds.width, bounds.height)
    return bounds


def query_help(target: Union[str, socket.socket], timeout: Optional[float] = 10.0) -> str:
    """Ask the server for its help text and return the first line of it."""
    return _request_line(target, b"HELP\n", timeout).decode("utf-8", errors="replace").strip()
